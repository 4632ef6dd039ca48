"""initial turn pipeline schema

Revision ID: 0001_init
Revises:
Create Date: 2026-10-19 00:00:00.000000
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

from taleturn.db.types import GUID, JSONType

# revision identifiers, used by Alembic.
revision: str = "0001_init"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "worlds",
        sa.Column("id", GUID(), primary_key=True, nullable=False),
        sa.Column("slug", sa.String(length=128), nullable=False),
        sa.Column("title", sa.String(length=255), nullable=False),
        sa.Column("lore_text", sa.Text(), nullable=False),
        sa.Column("ruleset_text", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_worlds_slug", "worlds", ["slug"], unique=True)
    op.create_index("ix_worlds_created_at", "worlds", ["created_at"], unique=False)

    op.create_table(
        "sessions",
        sa.Column("id", GUID(), primary_key=True, nullable=False),
        sa.Column("owner_id", sa.String(length=128), nullable=False),
        sa.Column("is_guest", sa.Boolean(), nullable=False),
        sa.Column("world_ref", sa.String(length=128), nullable=False),
        sa.Column("character_ref", sa.String(length=128), nullable=True),
        sa.Column("entry_point_ref", sa.String(length=128), nullable=True),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("turn_count", sa.Integer(), nullable=False),
        sa.Column("state_json", JSONType, nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_sessions_owner_id", "sessions", ["owner_id"], unique=False)
    op.create_index("ix_sessions_world_ref", "sessions", ["world_ref"], unique=False)
    op.create_index("ix_sessions_status", "sessions", ["status"], unique=False)
    op.create_index("ix_sessions_created_at", "sessions", ["created_at"], unique=False)
    op.create_index("ix_sessions_updated_at", "sessions", ["updated_at"], unique=False)

    op.create_table(
        "turns",
        sa.Column("id", GUID(), primary_key=True, nullable=False),
        sa.Column("session_id", GUID(), sa.ForeignKey("sessions.id"), nullable=False),
        sa.Column("turn_number", sa.Integer(), nullable=False),
        sa.Column("option_id", sa.String(length=128), nullable=True),
        sa.Column("input_text", sa.Text(), nullable=True),
        sa.Column("narrative", sa.Text(), nullable=False),
        sa.Column("emotion", sa.String(length=32), nullable=False),
        sa.Column("choices", JSONType, nullable=False),
        sa.Column("relationship_deltas", JSONType, nullable=True),
        sa.Column("faction_deltas", JSONType, nullable=True),
        sa.Column("prompt_meta", JSONType, nullable=False),
        sa.Column("response_meta", JSONType, nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("session_id", "turn_number", name="uq_turns_session_turn_number"),
    )
    op.create_index("ix_turns_session_id", "turns", ["session_id"], unique=False)
    op.create_index("ix_turns_created_at", "turns", ["created_at"], unique=False)
    op.create_index("ix_turns_session_created", "turns", ["session_id", "created_at"], unique=False)

    op.create_table(
        "wallets",
        sa.Column("id", GUID(), primary_key=True, nullable=False),
        sa.Column("owner_id", sa.String(length=128), nullable=False),
        sa.Column("is_guest", sa.Boolean(), nullable=False),
        sa.Column("balance", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_wallets_owner_id", "wallets", ["owner_id"], unique=True)
    op.create_index("ix_wallets_created_at", "wallets", ["created_at"], unique=False)

    op.create_table(
        "ledger_entries",
        sa.Column("id", GUID(), primary_key=True, nullable=False),
        sa.Column("wallet_id", GUID(), sa.ForeignKey("wallets.id"), nullable=False),
        sa.Column("owner_id", sa.String(length=128), nullable=False),
        sa.Column("delta", sa.Integer(), nullable=False),
        sa.Column("balance_after", sa.Integer(), nullable=False),
        sa.Column("reason", sa.String(length=64), nullable=False),
        sa.Column("idempotency_key", sa.String(length=255), nullable=True),
        sa.Column("session_id", GUID(), sa.ForeignKey("sessions.id"), nullable=True),
        sa.Column("turn_id", GUID(), sa.ForeignKey("turns.id"), nullable=True),
        sa.Column("metadata_json", JSONType, nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("owner_id", "idempotency_key", "reason", name="uq_ledger_entries_owner_key_reason"),
    )
    op.create_index("ix_ledger_entries_wallet_id", "ledger_entries", ["wallet_id"], unique=False)
    op.create_index("ix_ledger_entries_owner_id", "ledger_entries", ["owner_id"], unique=False)
    op.create_index("ix_ledger_entries_reason", "ledger_entries", ["reason"], unique=False)
    op.create_index("ix_ledger_entries_session_id", "ledger_entries", ["session_id"], unique=False)
    op.create_index("ix_ledger_entries_turn_id", "ledger_entries", ["turn_id"], unique=False)
    op.create_index("ix_ledger_entries_created_at", "ledger_entries", ["created_at"], unique=False)

    op.create_table(
        "idempotency_records",
        sa.Column("id", GUID(), primary_key=True, nullable=False),
        sa.Column("idempotency_key", sa.String(length=255), nullable=False),
        sa.Column("owner_id", sa.String(length=128), nullable=False),
        sa.Column("session_id", GUID(), nullable=False),
        sa.Column("operation", sa.String(length=32), nullable=False),
        sa.Column("request_hash", sa.String(length=64), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("response_json", JSONType, nullable=True),
        sa.Column("error_code", sa.String(length=64), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.Column("expires_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint(
            "idempotency_key",
            "owner_id",
            "session_id",
            "operation",
            name="uq_idempotency_records_key_owner_session_op",
        ),
    )
    op.create_index("ix_idempotency_records_idempotency_key", "idempotency_records", ["idempotency_key"], unique=False)
    op.create_index("ix_idempotency_records_owner_id", "idempotency_records", ["owner_id"], unique=False)
    op.create_index("ix_idempotency_records_session_id", "idempotency_records", ["session_id"], unique=False)
    op.create_index("ix_idempotency_records_status", "idempotency_records", ["status"], unique=False)
    op.create_index("ix_idempotency_records_expires_at", "idempotency_records", ["expires_at"], unique=False)


def downgrade() -> None:
    op.drop_table("idempotency_records")
    op.drop_table("ledger_entries")
    op.drop_table("wallets")
    op.drop_table("turns")
    op.drop_table("sessions")
    op.drop_table("worlds")
