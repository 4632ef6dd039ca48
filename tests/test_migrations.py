import sqlite3
from pathlib import Path

from tests.support.db_runtime import alembic_upgrade_head

REQUIRED_TABLES = {
    "worlds",
    "sessions",
    "turns",
    "wallets",
    "ledger_entries",
    "idempotency_records",
    "alembic_version",
}


def test_alembic_upgrade_head_smoke(tmp_path: Path) -> None:
    db_path = tmp_path / "migration_smoke.db"

    proc = alembic_upgrade_head(db_path)

    assert proc.returncode == 0, proc.stderr
    assert db_path.exists()

    conn = sqlite3.connect(db_path)
    try:
        rows = conn.execute("SELECT name FROM sqlite_master WHERE type='table'").fetchall()
        turn_columns = {row[1] for row in conn.execute("PRAGMA table_info(turns)").fetchall()}
    finally:
        conn.close()

    names = {r[0] for r in rows}
    missing = REQUIRED_TABLES - names
    assert not missing, f"Missing tables: {missing}"
    assert {"turn_number", "narrative", "choices", "prompt_meta", "response_meta"} <= turn_columns
