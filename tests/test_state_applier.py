from __future__ import annotations

import pytest
from sqlalchemy import select, update

from taleturn.db import session as db_session
from taleturn.db.models import Session as StorySession
from taleturn.db.models import Turn
from taleturn.modules.turns.errors import StateConflict
from taleturn.modules.turns.normalizer import normalize
from taleturn.modules.turns.state_applier import StateApplier, merge_state
from tests.support.pipeline import bundle_payload, seed_session


def test_merge_state_follows_rule_table() -> None:
    state = {
        "relationships": {"kiera": 1},
        "flags": {"door_open": False},
        "current_scene": "ferry_dock",
        "character_summary": "A quiet ranger.",
    }
    merged = merge_state(
        state,
        {
            "relationships": {"kiera": 2, "guide": -1},
            "factions": {},
            "resources": {"coins": 0.5},
            "flags": {"door_open": True},
            "world": {"weather": "fog"},
            "current_scene": None,
        },
    )

    assert merged["relationships"] == {"kiera": 3, "guide": -1}
    assert merged["resources"] == {"coins": 0.5}
    assert merged["flags"] == {"door_open": True}
    assert merged["world"] == {"weather": "fog"}
    assert merged["current_scene"] == "ferry_dock"
    assert merged["character_summary"] == "A quiet ranger."
    assert "factions" not in merged
    assert state["relationships"] == {"kiera": 1}


def test_apply_appends_turn_and_increments_count_once() -> None:
    normalized = normalize(bundle_payload())
    with db_session.SessionLocal() as db:
        session_id = seed_session(db)
        sess = db.get(StorySession, session_id)
        turn = StateApplier().apply(
            db,
            sess,
            normalized,
            option_id=None,
            input_text="look at the river",
            prompt_meta={"strategy": "bundle"},
        )
        db.commit()

        assert turn.turn_number == 1
        assert turn.input_text == "look at the river"
        assert turn.choices == [{"id": "open_door", "label": "Open the door"}]

    with db_session.SessionLocal() as db:
        sess = db.get(StorySession, session_id)
        assert sess.turn_count == 1
        assert sess.state_json["relationships"] == {"kiera": 3}
        assert sess.state_json["current_scene"] == "hall"
        count = len(list(db.execute(select(Turn).where(Turn.session_id == session_id)).scalars()))
        assert count == 1


def test_apply_raises_conflict_when_turn_count_moved() -> None:
    normalized = normalize(bundle_payload())
    with db_session.SessionLocal() as db:
        session_id = seed_session(db)
        stale = db.get(StorySession, session_id)

        with db_session.SessionLocal() as other:
            other.execute(update(StorySession).where(StorySession.id == session_id).values(turn_count=1))
            other.commit()

        with pytest.raises(StateConflict):
            StateApplier().apply(db, stale, normalized, option_id="open_door", input_text=None)
        db.rollback()

    with db_session.SessionLocal() as db:
        assert db.execute(select(Turn).where(Turn.session_id == session_id)).first() is None
