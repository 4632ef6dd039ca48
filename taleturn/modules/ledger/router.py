from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from taleturn.db.session import get_db
from taleturn.modules.auth.deps import OwnerIdentity, resolve_owner
from taleturn.modules.ledger.schemas import WalletOut
from taleturn.modules.turns.deps import get_turn_pipeline
from taleturn.modules.turns.orchestrator import TurnPipelineDeps

router = APIRouter(prefix="", tags=["wallet"])


@router.get("/wallet", response_model=WalletOut)
def get_wallet(
    limit: int = 20,
    owner: OwnerIdentity = Depends(resolve_owner),
    deps: TurnPipelineDeps = Depends(get_turn_pipeline),
    db: Session = Depends(get_db),
):
    entries = deps.ledger.entries(db, owner.owner_id, limit=max(1, min(100, int(limit))))
    return {
        "owner_id": owner.owner_id,
        "is_guest": owner.is_guest,
        "balance": deps.ledger.get_balance(db, owner.owner_id),
        "entries": [
            {
                "id": entry.id,
                "delta": entry.delta,
                "balance_after": entry.balance_after,
                "reason": entry.reason,
                "session_id": entry.session_id,
                "turn_id": entry.turn_id,
                "created_at": entry.created_at,
            }
            for entry in entries
        ],
    }
