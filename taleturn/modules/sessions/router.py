import uuid

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from taleturn.db.session import get_db
from taleturn.modules.auth.deps import OwnerIdentity, resolve_owner
from taleturn.modules.sessions import service
from taleturn.modules.sessions.schemas import SessionCreateRequest, SessionOut
from taleturn.modules.turns.deps import get_turn_pipeline
from taleturn.modules.turns.orchestrator import TurnPipelineDeps
from taleturn.modules.turns.schemas import TurnListOut

router = APIRouter(prefix="", tags=["sessions"])


@router.post("/sessions", response_model=SessionOut, status_code=201)
def create_session(
    payload: SessionCreateRequest,
    owner: OwnerIdentity = Depends(resolve_owner),
    deps: TurnPipelineDeps = Depends(get_turn_pipeline),
    db: Session = Depends(get_db),
):
    return service.create_session(
        db,
        deps.ledger,
        owner_id=owner.owner_id,
        is_guest=owner.is_guest,
        world_ref=payload.world_ref,
        character_ref=payload.character_ref,
        entry_point_ref=payload.entry_point_ref,
        character_summary=payload.character_summary,
    )


@router.get("/sessions/{session_id}", response_model=SessionOut)
def get_session(
    session_id: uuid.UUID,
    owner: OwnerIdentity = Depends(resolve_owner),
    deps: TurnPipelineDeps = Depends(get_turn_pipeline),
    db: Session = Depends(get_db),
):
    return service.get_session(db, deps.ledger, session_id, owner_id=owner.owner_id)


@router.get("/sessions/{session_id}/turns", response_model=TurnListOut)
def list_turns(
    session_id: uuid.UUID,
    after_turn: int = 0,
    limit: int = service.TURN_PAGE_DEFAULT,
    owner: OwnerIdentity = Depends(resolve_owner),
    db: Session = Depends(get_db),
):
    return service.list_turns(db, session_id, owner_id=owner.owner_id, after_turn=after_turn, limit=limit)
