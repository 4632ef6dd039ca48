from __future__ import annotations

import uuid

from sqlalchemy import func, select

from taleturn import error_codes
from taleturn.config import settings
from taleturn.db import session as db_session
from taleturn.db.models import LedgerEntry, Wallet
from taleturn.modules.ledger.service import (
    REASON_GUEST_STARTER,
    REASON_TURN_SPEND,
    ResourceLedger,
    resolve_turn_cost,
)


def _funded(db, owner_id: str = "owner-1", amount: int = 10) -> ResourceLedger:
    ledger = ResourceLedger()
    ledger.ensure_wallet(db, owner_id)
    ledger.credit(db, owner_id, amount=amount)
    db.commit()
    return ledger


def test_get_balance_unknown_owner_is_zero_and_creates_nothing() -> None:
    ledger = ResourceLedger()
    with db_session.SessionLocal() as db:
        assert ledger.get_balance(db, "nobody") == 0
        assert db.execute(select(func.count()).select_from(Wallet)).scalar_one() == 0


def test_guest_wallet_gets_starter_entry() -> None:
    settings.guest_starter_balance = 15
    ledger = ResourceLedger()
    with db_session.SessionLocal() as db:
        ledger.ensure_wallet(db, "guest-abc", is_guest=True)
        db.commit()
        assert ledger.get_balance(db, "guest-abc") == 15
        entries = ledger.entries(db, "guest-abc")
        assert [entry.reason for entry in entries] == [REASON_GUEST_STARTER]
        assert entries[0].balance_after == 15

        ledger.ensure_wallet(db, "guest-abc", is_guest=True)
        db.commit()
        assert ledger.get_balance(db, "guest-abc") == 15


def test_debit_decrements_and_appends_entry() -> None:
    session_id = uuid.uuid4()
    with db_session.SessionLocal() as db:
        ledger = _funded(db)
        result = ledger.debit(db, "owner-1", amount=2, idempotency_key="key-1", session_id=session_id)
        db.commit()

        assert result.success is True
        assert result.new_balance == 8
        assert result.replayed is False
        spend = db.execute(select(LedgerEntry).where(LedgerEntry.reason == REASON_TURN_SPEND)).scalar_one()
        assert spend.delta == -2
        assert spend.balance_after == 8
        assert spend.session_id == session_id


def test_debit_same_key_same_amount_does_not_double_charge() -> None:
    with db_session.SessionLocal() as db:
        ledger = _funded(db)
        ledger.debit(db, "owner-1", amount=2, idempotency_key="key-1", session_id=None)
        db.commit()
        again = ledger.debit(db, "owner-1", amount=2, idempotency_key="key-1", session_id=None)
        db.commit()

        assert again.success is True
        assert again.replayed is True
        assert again.new_balance == 8
        count = db.execute(
            select(func.count()).select_from(LedgerEntry).where(LedgerEntry.reason == REASON_TURN_SPEND)
        ).scalar_one()
        assert count == 1


def test_debit_same_key_different_amount_conflicts() -> None:
    with db_session.SessionLocal() as db:
        ledger = _funded(db)
        ledger.debit(db, "owner-1", amount=2, idempotency_key="key-1", session_id=None)
        db.commit()
        clash = ledger.debit(db, "owner-1", amount=5, idempotency_key="key-1", session_id=None)

    assert clash.success is False
    assert clash.error_code == error_codes.CONFLICT


def test_debit_never_drives_balance_negative() -> None:
    with db_session.SessionLocal() as db:
        ledger = _funded(db, amount=3)
        first = ledger.debit(db, "owner-1", amount=2, idempotency_key="a", session_id=None)
        second = ledger.debit(db, "owner-1", amount=2, idempotency_key="b", session_id=None)
        db.commit()

        assert first.success is True
        assert second.success is False
        assert second.error_code == error_codes.INSUFFICIENT_RESOURCE
        assert ledger.get_balance(db, "owner-1") == 1
        assert ledger.entries_total(db, "owner-1") == 1


def test_debit_without_wallet_is_insufficient() -> None:
    with db_session.SessionLocal() as db:
        result = ResourceLedger().debit(db, "ghost", amount=1, idempotency_key="k", session_id=None)
    assert result.success is False
    assert result.error_code == error_codes.INSUFFICIENT_RESOURCE


def test_balance_equals_sum_of_entries() -> None:
    with db_session.SessionLocal() as db:
        ledger = _funded(db, amount=9)
        for idx in range(4):
            ledger.debit(db, "owner-1", amount=2, idempotency_key=f"k-{idx}", session_id=None)
        db.commit()
        assert ledger.get_balance(db, "owner-1") == 1
        assert ledger.entries_total(db, "owner-1") == ledger.get_balance(db, "owner-1")


def test_resolve_turn_cost_prefers_world_override() -> None:
    settings.turn_cost_default = 2
    settings.turn_cost_by_world = {"mystika": 5}
    assert resolve_turn_cost("mystika") == 5
    assert resolve_turn_cost("elsewhere") == 2
    assert resolve_turn_cost(None) == 2
