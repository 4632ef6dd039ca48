from __future__ import annotations

import os
import tempfile
from pathlib import Path

os.environ.setdefault("DATABASE_URL", f"sqlite:///{Path(tempfile.gettempdir()) / 'taleturn_pytest.db'}")

import pytest

from taleturn.config import settings
from taleturn.db import session as db_session
from taleturn.db.bootstrap import drop_db, init_db


@pytest.fixture(autouse=True)
def _reset_db_and_defaults():
    original_url = db_session.engine.url.render_as_string(hide_password=False)
    settings.llm_provider = "fake"
    settings.llm_api_key = ""
    settings.turn_pipeline = "bundle"
    settings.turn_cost_default = 2
    settings.turn_cost_by_world = {}
    settings.guest_starter_balance = 15
    settings.narrative_min_chars = 10
    settings.context_token_budget = 2400
    settings.context_recent_turns = 4
    settings.idempotency_ttl_s = 86400
    settings.idempotency_pending_stale_s = 90
    drop_db()
    init_db()
    yield
    drop_db()
    if db_session.engine.url.render_as_string(hide_password=False) != original_url:
        db_session.engine.dispose()
        db_session.rebind_engine(original_url)
