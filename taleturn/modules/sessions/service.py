from __future__ import annotations

import uuid

from fastapi import HTTPException, status
from sqlalchemy import select
from sqlalchemy.orm import Session

from taleturn import error_codes
from taleturn.db.models import LedgerEntry, Turn
from taleturn.db.models import Session as StorySession
from taleturn.modules.ledger.service import REASON_TURN_SPEND, ResourceLedger
from taleturn.modules.turns.orchestrator import turn_to_dto

TURN_PAGE_DEFAULT = 20
TURN_PAGE_MAX = 100


def _initial_state(entry_point_ref: str | None, character_summary: str | None) -> dict:
    state: dict = {
        "flags": {},
        "resources": {},
        "relationships": {},
        "factions": {},
        "world": {},
        "current_scene": entry_point_ref,
    }
    if character_summary:
        state["character_summary"] = character_summary.strip()
    return state


def require_owned_session(db: Session, session_id: uuid.UUID, owner_id: str) -> StorySession:
    sess = db.get(StorySession, session_id)
    if not sess or sess.owner_id != owner_id:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=error_codes.error_detail(error_codes.NOT_FOUND, "Session not found"),
        )
    return sess


def serialize_session(sess: StorySession, *, balance: int) -> dict:
    return {
        "id": sess.id,
        "owner_id": sess.owner_id,
        "is_guest": sess.is_guest,
        "world_ref": sess.world_ref,
        "character_ref": sess.character_ref,
        "entry_point_ref": sess.entry_point_ref,
        "status": sess.status,
        "turn_count": sess.turn_count,
        "state_json": dict(sess.state_json or {}),
        "balance": balance,
        "created_at": sess.created_at,
        "updated_at": sess.updated_at,
    }


def create_session(
    db: Session,
    ledger: ResourceLedger,
    *,
    owner_id: str,
    is_guest: bool,
    world_ref: str,
    character_ref: str | None = None,
    entry_point_ref: str | None = None,
    character_summary: str | None = None,
) -> dict:
    ledger.ensure_wallet(db, owner_id, is_guest=is_guest)
    sess = StorySession(
        owner_id=owner_id,
        is_guest=is_guest,
        world_ref=world_ref.strip(),
        character_ref=character_ref,
        entry_point_ref=entry_point_ref,
        status="active",
        turn_count=0,
        state_json=_initial_state(entry_point_ref, character_summary),
    )
    db.add(sess)
    db.commit()
    return serialize_session(sess, balance=ledger.get_balance(db, owner_id))


def get_session(db: Session, ledger: ResourceLedger, session_id: uuid.UUID, *, owner_id: str) -> dict:
    sess = require_owned_session(db, session_id, owner_id)
    return serialize_session(sess, balance=ledger.get_balance(db, owner_id))


def list_turns(
    db: Session,
    session_id: uuid.UUID,
    *,
    owner_id: str,
    after_turn: int = 0,
    limit: int = TURN_PAGE_DEFAULT,
) -> dict:
    sess = require_owned_session(db, session_id, owner_id)
    page_size = max(1, min(TURN_PAGE_MAX, int(limit)))
    rows = list(
        db.execute(
            select(Turn)
            .where(Turn.session_id == sess.id, Turn.turn_number > max(0, int(after_turn)))
            .order_by(Turn.turn_number.asc())
            .limit(page_size + 1)
        ).scalars()
    )
    has_more = len(rows) > page_size
    rows = rows[:page_size]

    balances: dict[uuid.UUID, int] = {}
    turn_ids = [row.id for row in rows]
    if turn_ids:
        for turn_id, balance_after in db.execute(
            select(LedgerEntry.turn_id, LedgerEntry.balance_after).where(
                LedgerEntry.turn_id.in_(turn_ids),
                LedgerEntry.reason == REASON_TURN_SPEND,
            )
        ).all():
            balances[turn_id] = int(balance_after)

    return {
        "session_id": sess.id,
        "turns": [turn_to_dto(row, balance_after=balances.get(row.id)) for row in rows],
        "has_more": has_more,
        "next_after_turn": rows[-1].turn_number if has_more and rows else None,
    }
