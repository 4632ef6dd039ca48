import uuid

from fastapi import APIRouter, Depends, Header, HTTPException
from sqlalchemy.orm import Session

from taleturn import error_codes
from taleturn.db.session import get_db
from taleturn.modules.auth.deps import OwnerIdentity, resolve_owner
from taleturn.modules.turns.deps import get_turn_pipeline
from taleturn.modules.turns.orchestrator import TurnCommand, TurnOrchestrator, TurnPipelineDeps
from taleturn.modules.turns.schemas import TurnDTO, TurnRequest

router = APIRouter(prefix="", tags=["turns"])


@router.post("/sessions/{session_id}/turn", response_model=TurnDTO)
def take_turn(
    session_id: uuid.UUID,
    payload: TurnRequest,
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
    owner: OwnerIdentity = Depends(resolve_owner),
    deps: TurnPipelineDeps = Depends(get_turn_pipeline),
    db: Session = Depends(get_db),
):
    if not str(idempotency_key or "").strip():
        raise HTTPException(
            status_code=400,
            detail=error_codes.error_detail(error_codes.VALIDATION_FAILED, "Idempotency-Key header is required"),
        )
    has_option = bool(str(payload.option_id or "").strip())
    has_input = bool(str(payload.input_text or "").strip())
    if has_option == has_input:
        raise HTTPException(
            status_code=422,
            detail=error_codes.error_detail(
                error_codes.VALIDATION_FAILED,
                "Provide exactly one of option_id or input_text.",
            ),
        )

    outcome = TurnOrchestrator(deps).run_turn(
        db,
        TurnCommand(
            session_id=session_id,
            owner_id=owner.owner_id,
            is_guest=owner.is_guest,
            idempotency_key=idempotency_key,
            option_id=payload.option_id,
            input_text=payload.input_text,
        ),
    )
    if not outcome.success:
        raise HTTPException(
            status_code=error_codes.http_status_for(outcome.error_code),
            detail=error_codes.error_detail(outcome.error_code or error_codes.INTERNAL_ERROR, outcome.message),
        )
    return outcome.turn
