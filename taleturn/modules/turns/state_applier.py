from __future__ import annotations

import copy
import logging

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from taleturn.db.models import Session as StorySession
from taleturn.db.models import Turn
from taleturn.modules.turns.errors import StateConflict
from taleturn.modules.turns.normalizer import NormalizedTurn
from taleturn.utils.time import utc_now_naive

logger = logging.getLogger(__name__)

MERGE_ADD = "add"
MERGE_SET_BY_KEY = "set_by_key"
MERGE_SET_VALUE = "set_value"

STATE_MERGE_RULES: dict[str, str] = {
    "relationships": MERGE_ADD,
    "factions": MERGE_ADD,
    "resources": MERGE_ADD,
    "flags": MERGE_SET_BY_KEY,
    "world": MERGE_SET_BY_KEY,
    "current_scene": MERGE_SET_VALUE,
}


def _as_number(value: object) -> int | float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return 0
    return value


def merge_state(state: dict | None, changes: dict) -> dict:
    merged = copy.deepcopy(state) if isinstance(state, dict) else {}
    for key, rule in STATE_MERGE_RULES.items():
        change = changes.get(key)
        if rule == MERGE_SET_VALUE:
            if change is not None:
                merged[key] = change
            continue
        if not change:
            continue
        bucket = merged.get(key)
        bucket = dict(bucket) if isinstance(bucket, dict) else {}
        for item_key, value in change.items():
            if rule == MERGE_ADD:
                total = _as_number(bucket.get(item_key)) + value
                bucket[item_key] = int(total) if float(total).is_integer() else total
            else:
                bucket[item_key] = value
        merged[key] = bucket
    return merged


class StateApplier:
    """Writes one turn into a session. Flushes, never commits."""

    def apply(
        self,
        db: Session,
        session: StorySession,
        normalized: NormalizedTurn,
        *,
        option_id: str | None,
        input_text: str | None,
        prompt_meta: dict | None = None,
        response_meta: dict | None = None,
    ) -> Turn:
        prior_count = int(session.turn_count or 0)
        next_state = merge_state(session.state_json, normalized.state_changes())
        now = utc_now_naive()

        moved = db.execute(
            update(StorySession)
            .where(StorySession.id == session.id, StorySession.turn_count == prior_count)
            .values(turn_count=prior_count + 1, state_json=next_state, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if moved.rowcount != 1:
            raise StateConflict(f"session {session.id} advanced past turn {prior_count}")

        turn = Turn(
            session_id=session.id,
            turn_number=prior_count + 1,
            option_id=option_id,
            input_text=input_text,
            narrative=normalized.narrative,
            emotion=normalized.emotion,
            choices=[dict(choice) for choice in normalized.choices],
            relationship_deltas=dict(normalized.relationship_deltas) or None,
            faction_deltas=dict(normalized.faction_deltas) or None,
            prompt_meta=dict(prompt_meta or {}),
            response_meta=dict(response_meta or {}),
            created_at=now,
        )
        db.add(turn)
        try:
            db.flush()
        except IntegrityError as exc:
            raise StateConflict(f"turn {prior_count + 1} already exists for session {session.id}") from exc
        db.refresh(session)
        logger.debug("applied turn session=%s turn_number=%s", session.id, turn.turn_number)
        return turn
