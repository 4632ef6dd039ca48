import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from taleturn.config import ensure_dev_database_schema, settings
from taleturn.db import session as db_session
from taleturn.modules.ledger.router import router as wallet_router
from taleturn.modules.sessions.router import router as session_router
from taleturn.modules.telemetry.router import router as telemetry_router
from taleturn.modules.turns.orchestrator import TurnPipelineDeps, build_turn_pipeline_deps
from taleturn.modules.turns.router import router as turn_router

logging.basicConfig(
    level=getattr(logging, str(settings.log_level).upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)


@asynccontextmanager
async def _lifespan(_app: FastAPI):
    if settings.env == "dev":
        ensure_dev_database_schema(str(db_session.engine.url))
    yield


async def health() -> dict[str, str]:
    return {"status": "ok"}


def create_app(pipeline: TurnPipelineDeps | None = None) -> FastAPI:
    application = FastAPI(title="Taleturn Turn Pipeline", lifespan=_lifespan)
    application.state.turn_pipeline = pipeline or build_turn_pipeline_deps()
    application.add_api_route("/health", health, methods=["GET"])
    application.include_router(session_router)
    application.include_router(turn_router)
    application.include_router(wallet_router)
    application.include_router(telemetry_router)
    return application


app = create_app()
