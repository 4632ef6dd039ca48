from __future__ import annotations

from fastapi import APIRouter, Depends

from taleturn.modules.turns.deps import get_turn_pipeline
from taleturn.modules.turns.orchestrator import TurnPipelineDeps

router = APIRouter(prefix="/telemetry", tags=["telemetry"])


@router.get("/summary")
def telemetry_summary(deps: TurnPipelineDeps = Depends(get_turn_pipeline)) -> dict:
    return deps.telemetry.summary()
