from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from taleturn import error_codes
from taleturn.config import settings
from taleturn.db.models import Session as StorySession
from taleturn.db.models import Turn, World
from taleturn.modules.context.assembler import ContextAssembler
from taleturn.modules.idempotency.service import (
    OPERATION_TURN,
    STATUS_COMPLETED,
    IdempotencyGuard,
    normalized_optional_text,
    request_hash,
    safe_response_payload,
)
from taleturn.modules.ledger.service import REASON_TURN_SPEND, ResourceLedger, resolve_turn_cost
from taleturn.modules.llm.client import GenerationClient, GenerationOutcome, build_generation_client
from taleturn.modules.llm.errors import MalformedOutput, UpstreamFailure, UpstreamTimeout
from taleturn.modules.llm.prompts import build_turn_envelope
from taleturn.modules.telemetry.service import (
    EVENT_CONTEXT_ASSEMBLED,
    EVENT_TURN_COMMIT_FAILED,
    EVENT_TURN_CREATED,
    EVENT_TURN_FAILED,
    EVENT_TURN_REPLAYED,
    TurnTelemetry,
)
from taleturn.modules.turns.errors import StateConflict, ValidationFailed
from taleturn.modules.turns.normalizer import NormalizedTurn, normalize
from taleturn.modules.turns.schemas import TurnDTO
from taleturn.modules.turns.state_applier import StateApplier

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class TurnCommand:
    session_id: uuid.UUID
    owner_id: str
    idempotency_key: str | None
    option_id: str | None = None
    input_text: str | None = None
    is_guest: bool = False


@dataclass(frozen=True, slots=True)
class TurnOutcome:
    success: bool
    turn: dict | None = None
    error_code: str | None = None
    message: str | None = None
    replayed: bool = False


@dataclass(slots=True)
class TurnPipelineDeps:
    guard: IdempotencyGuard
    ledger: ResourceLedger
    assembler: ContextAssembler
    generation: GenerationClient
    applier: StateApplier
    telemetry: TurnTelemetry
    normalize: Callable[[dict], NormalizedTurn] = normalize
    resolve_turn_cost: Callable[[str | None], int] = resolve_turn_cost
    strategy: str = field(default_factory=lambda: settings.turn_pipeline)
    budget_tokens: int = field(default_factory=lambda: settings.context_token_budget)


class TurnFailure(Exception):
    """Terminal failure of one turn, already mapped to a response code."""

    def __init__(self, error_code: str, message: str):
        super().__init__(message)
        self.error_code = error_code
        self.message = message


def turn_to_dto(turn: Turn, *, balance_after: int | None) -> dict:
    dto = TurnDTO(
        id=turn.id,
        session_id=turn.session_id,
        turn_number=turn.turn_number,
        narrative=turn.narrative,
        emotion=turn.emotion,
        choices=list(turn.choices or []),
        relationship_deltas=turn.relationship_deltas,
        faction_deltas=turn.faction_deltas,
        balance_after=balance_after,
        created_at=turn.created_at,
    )
    return safe_response_payload(dto.model_dump(mode="json"))


def ledger_key_for(session_id: uuid.UUID, idempotency_key: str) -> str:
    return f"turn:{session_id}:{idempotency_key}"


class TurnOrchestrator:
    """Runs one player turn end to end.

    Order: idempotency check, balance check, context assembly, generation,
    normalization, then one transaction holding state application, debit and
    the completed idempotency record. Any failure before that transaction
    leaves the ledger and the session untouched.
    """

    def __init__(self, deps: TurnPipelineDeps) -> None:
        self.deps = deps

    @contextmanager
    def _phase(self, name: str, timings: dict[str, float]) -> Iterator[None]:
        started = time.perf_counter()
        try:
            yield
        finally:
            elapsed_ms = (time.perf_counter() - started) * 1000.0
            timings[name] = round(elapsed_ms, 3)
            self.deps.telemetry.record_phase(name, elapsed_ms)

    def run_turn(self, db: Session, command: TurnCommand) -> TurnOutcome:
        option_id = normalized_optional_text(command.option_id)
        input_text = normalized_optional_text(command.input_text)
        key = normalized_optional_text(command.idempotency_key)
        log_ctx = {"session_id": str(command.session_id), "owner_id": command.owner_id, "idempotency_key": key}

        if not key:
            return self._reject(error_codes.VALIDATION_FAILED, "Idempotency key is required", log_ctx)
        if bool(option_id) == bool(input_text):
            return self._reject(
                error_codes.VALIDATION_FAILED,
                "Provide exactly one of option_id or input_text",
                log_ctx,
            )

        session = db.get(StorySession, command.session_id)
        if session is None or session.owner_id != command.owner_id:
            db.rollback()
            return self._reject(error_codes.NOT_FOUND, "Session not found", log_ctx)

        hash_value = request_hash(option_id=option_id, input_text=input_text)
        decision = self.deps.guard.check(
            db,
            key=key,
            owner_id=command.owner_id,
            session_id=command.session_id,
            operation=OPERATION_TURN,
            request_hash_value=hash_value,
        )
        if decision.error_code:
            return self._reject(decision.error_code, decision.message or "Request rejected", log_ctx)
        if decision.duplicate:
            self.deps.telemetry.emit(EVENT_TURN_REPLAYED, **log_ctx)
            logger.info("turn replayed session=%s key=%s", command.session_id, key)
            return TurnOutcome(success=True, turn=decision.cached_response, replayed=True)

        started = time.perf_counter()
        try:
            turn_payload, timings = self._execute(
                db,
                command,
                key=key,
                option_id=option_id,
                input_text=input_text,
                hash_value=hash_value,
                log_ctx=log_ctx,
            )
        except TurnFailure as exc:
            self.deps.guard.mark_failed(
                db,
                key=key,
                owner_id=command.owner_id,
                session_id=command.session_id,
                operation=OPERATION_TURN,
                request_hash_value=hash_value,
                error_code=exc.error_code,
            )
            return self._reject(exc.error_code, exc.message, log_ctx)
        except Exception:  # noqa: BLE001
            logger.exception(
                "turn crashed session=%s owner=%s key=%s",
                command.session_id,
                command.owner_id,
                key,
            )
            self.deps.guard.mark_failed(
                db,
                key=key,
                owner_id=command.owner_id,
                session_id=command.session_id,
                operation=OPERATION_TURN,
                request_hash_value=hash_value,
                error_code=error_codes.INTERNAL_ERROR,
            )
            return self._reject(error_codes.INTERNAL_ERROR, "Internal error", log_ctx)

        latency_ms = round((time.perf_counter() - started) * 1000.0, 3)
        self.deps.telemetry.emit(
            EVENT_TURN_CREATED,
            **log_ctx,
            turn_id=turn_payload["id"],
            turn_number=turn_payload["turn_number"],
            latency_ms=latency_ms,
            phases=timings,
        )
        logger.info(
            "turn created session=%s turn_number=%s balance_after=%s",
            command.session_id,
            turn_payload["turn_number"],
            turn_payload["balance_after"],
        )
        return TurnOutcome(success=True, turn=turn_payload)

    def _execute(
        self,
        db: Session,
        command: TurnCommand,
        *,
        key: str,
        option_id: str | None,
        input_text: str | None,
        hash_value: str,
        log_ctx: dict,
    ) -> tuple[dict, dict[str, float]]:
        timings: dict[str, float] = {}
        session = db.get(StorySession, command.session_id)
        if session is None:
            raise TurnFailure(error_codes.NOT_FOUND, "Session not found")

        with self._phase("balance_check", timings):
            cost = self.deps.resolve_turn_cost(session.world_ref)
            balance = self.deps.ledger.get_balance(db, command.owner_id)
            if balance < cost:
                raise TurnFailure(
                    error_codes.INSUFFICIENT_RESOURCE,
                    f"Insufficient balance. Have {balance}, need {cost}",
                )

        with self._phase("context", timings):
            world = db.execute(select(World).where(World.slug == session.world_ref)).scalar_one_or_none()
            recent_turns = list(
                db.execute(
                    select(Turn)
                    .where(Turn.session_id == session.id)
                    .order_by(Turn.turn_number.desc())
                    .limit(max(1, self.deps.assembler.recent_turns_limit))
                ).scalars()
            )
            context = self.deps.assembler.assemble(
                session,
                option_id=option_id,
                input_text=input_text,
                budget_tokens=self.deps.budget_tokens,
                world=world,
                recent_turns=recent_turns,
            )
            self.deps.telemetry.emit(EVENT_CONTEXT_ASSEMBLED, **log_ctx, **context.to_meta())
        # end the read transaction; nothing may be held open across the generator call
        db.commit()

        with self._phase("generation", timings):
            outcome = self._generate(context.prompt_text)

        with self._phase("normalize", timings):
            try:
                normalized = self.deps.normalize(outcome.payload)
            except ValidationFailed as exc:
                raise TurnFailure(error_codes.VALIDATION_FAILED, str(exc)) from exc

        with self._phase("commit", timings):
            turn_payload = self._commit(
                db,
                session,
                command,
                normalized,
                key=key,
                option_id=option_id,
                input_text=input_text,
                hash_value=hash_value,
                cost=cost,
                prompt_meta={"strategy": self.deps.strategy, "context": context.to_meta()},
                response_meta={
                    "shape": normalized.shape,
                    "violations": list(normalized.violations),
                    **outcome.to_meta(),
                },
                log_ctx=log_ctx,
            )
        return turn_payload, timings

    def _generate(self, prompt_text: str) -> GenerationOutcome:
        envelope = build_turn_envelope(prompt_text, strategy=self.deps.strategy)
        try:
            return self.deps.generation.generate(envelope)
        except UpstreamTimeout as exc:
            raise TurnFailure(error_codes.UPSTREAM_TIMEOUT, "Generation timed out") from exc
        except UpstreamFailure as exc:
            raise TurnFailure(error_codes.UPSTREAM_FAILURE, "Generation service unavailable") from exc
        except MalformedOutput as exc:
            raise TurnFailure(error_codes.VALIDATION_FAILED, "Generation output could not be parsed") from exc

    def _commit(
        self,
        db: Session,
        session: StorySession,
        command: TurnCommand,
        normalized: NormalizedTurn,
        *,
        key: str,
        option_id: str | None,
        input_text: str | None,
        hash_value: str,
        cost: int,
        prompt_meta: dict,
        response_meta: dict,
        log_ctx: dict,
    ) -> dict:
        try:
            turn = self.deps.applier.apply(
                db,
                session,
                normalized,
                option_id=option_id,
                input_text=input_text,
                prompt_meta=prompt_meta,
                response_meta=response_meta,
            )
            debit = self.deps.ledger.debit(
                db,
                command.owner_id,
                amount=cost,
                idempotency_key=ledger_key_for(command.session_id, key),
                session_id=command.session_id,
                reason=REASON_TURN_SPEND,
                turn_id=turn.id,
            )
            if not debit.success:
                db.rollback()
                raise TurnFailure(debit.error_code or error_codes.INTERNAL_ERROR, debit.message or "Debit failed")
            if debit.replayed:
                db.rollback()
                raise TurnFailure(error_codes.CONFLICT, "Idempotency key was already charged")

            payload = turn_to_dto(turn, balance_after=debit.new_balance)
            stored = self.deps.guard.store(
                db,
                key=key,
                owner_id=command.owner_id,
                session_id=command.session_id,
                operation=OPERATION_TURN,
                request_hash_value=hash_value,
                payload=payload,
                status=STATUS_COMPLETED,
            )
            if not stored:
                db.rollback()
                raise TurnFailure(error_codes.CONFLICT, "Idempotency key was already used for a different request")
            db.commit()
            return payload
        except StateConflict as exc:
            db.rollback()
            raise TurnFailure(error_codes.CONFLICT, str(exc)) from exc
        except SQLAlchemyError as exc:
            db.rollback()
            self.deps.telemetry.emit(EVENT_TURN_COMMIT_FAILED, **log_ctx, error=type(exc).__name__)
            logger.exception(
                "turn commit failed session=%s owner=%s key=%s",
                command.session_id,
                command.owner_id,
                key,
            )
            raise TurnFailure(error_codes.INTERNAL_ERROR, "Turn could not be recorded") from exc

    def _reject(self, error_code: str, message: str, log_ctx: dict) -> TurnOutcome:
        self.deps.telemetry.emit(EVENT_TURN_FAILED, **log_ctx, error_code=error_code)
        logger.warning(
            "turn failed session=%s owner=%s key=%s code=%s message=%s",
            log_ctx.get("session_id"),
            log_ctx.get("owner_id"),
            log_ctx.get("idempotency_key"),
            error_code,
            message,
        )
        return TurnOutcome(success=False, error_code=error_code, message=message)


def build_turn_pipeline_deps(
    *,
    generation: GenerationClient | None = None,
    telemetry: TurnTelemetry | None = None,
) -> TurnPipelineDeps:
    return TurnPipelineDeps(
        guard=IdempotencyGuard(),
        ledger=ResourceLedger(),
        assembler=ContextAssembler(),
        generation=generation or build_generation_client(),
        applier=StateApplier(),
        telemetry=telemetry or TurnTelemetry(),
    )
