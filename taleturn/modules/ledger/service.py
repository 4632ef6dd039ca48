from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from taleturn import error_codes
from taleturn.config import settings
from taleturn.db.models import LedgerEntry, Wallet
from taleturn.utils.time import utc_now_naive

logger = logging.getLogger(__name__)

REASON_TURN_SPEND = "TURN_SPEND"
REASON_GUEST_STARTER = "GUEST_STARTER"
REASON_GRANT = "GRANT"


@dataclass(frozen=True, slots=True)
class DebitResult:
    success: bool
    new_balance: int
    replayed: bool = False
    error_code: str | None = None
    message: str | None = None


def resolve_turn_cost(world_ref: str | None) -> int:
    key = str(world_ref or "").strip()
    overrides = settings.turn_cost_by_world or {}
    if key and key in overrides:
        return max(0, int(overrides[key]))
    return max(0, int(settings.turn_cost_default))


class ResourceLedger:
    """Per-owner metered balance with an append-only entry log.

    ``debit`` and ``credit`` flush but never commit; the caller decides the
    transaction boundary so a debit can share a commit with the turn it pays for.
    """

    @staticmethod
    def _wallet(db: Session, owner_id: str) -> Wallet | None:
        return db.execute(select(Wallet).where(Wallet.owner_id == owner_id)).scalar_one_or_none()

    def get_balance(self, db: Session, owner_id: str) -> int:
        balance = db.execute(select(Wallet.balance).where(Wallet.owner_id == owner_id)).scalar_one_or_none()
        return int(balance or 0)

    def ensure_wallet(self, db: Session, owner_id: str, *, is_guest: bool = False) -> Wallet:
        wallet = self._wallet(db, owner_id)
        if wallet is not None:
            return wallet
        wallet = Wallet(owner_id=owner_id, is_guest=bool(is_guest), balance=0)
        db.add(wallet)
        try:
            db.flush()
        except IntegrityError:
            db.rollback()
            existing = self._wallet(db, owner_id)
            if existing is None:
                raise
            return existing
        starter = int(settings.guest_starter_balance) if is_guest else 0
        if starter > 0:
            self.credit(db, owner_id, amount=starter, reason=REASON_GUEST_STARTER)
        return wallet

    def credit(
        self,
        db: Session,
        owner_id: str,
        *,
        amount: int,
        reason: str = REASON_GRANT,
        is_guest: bool = False,
        metadata: dict | None = None,
    ) -> int:
        if int(amount) <= 0:
            raise ValueError("credit amount must be positive")
        wallet = self._wallet(db, owner_id) or self.ensure_wallet(db, owner_id, is_guest=is_guest)
        db.execute(
            update(Wallet)
            .where(Wallet.id == wallet.id)
            .values(balance=Wallet.balance + int(amount), updated_at=utc_now_naive())
            .execution_options(synchronize_session=False)
        )
        db.refresh(wallet)
        db.add(
            LedgerEntry(
                wallet_id=wallet.id,
                owner_id=owner_id,
                delta=int(amount),
                balance_after=int(wallet.balance),
                reason=reason,
                metadata_json=dict(metadata or {}),
            )
        )
        db.flush()
        return int(wallet.balance)

    def debit(
        self,
        db: Session,
        owner_id: str,
        *,
        amount: int,
        idempotency_key: str,
        session_id: uuid.UUID | None,
        reason: str = REASON_TURN_SPEND,
        turn_id: uuid.UUID | None = None,
    ) -> DebitResult:
        amount = int(amount)
        wallet = self._wallet(db, owner_id)
        if wallet is None:
            return DebitResult(
                success=False,
                new_balance=0,
                error_code=error_codes.INSUFFICIENT_RESOURCE,
                message="No wallet for owner",
            )

        prior = db.execute(
            select(LedgerEntry).where(
                LedgerEntry.owner_id == owner_id,
                LedgerEntry.idempotency_key == idempotency_key,
                LedgerEntry.reason == reason,
            )
        ).scalar_one_or_none()
        if prior is not None:
            if prior.delta != -amount:
                return DebitResult(
                    success=False,
                    new_balance=int(wallet.balance),
                    error_code=error_codes.CONFLICT,
                    message="Idempotency key was already used for a different debit",
                )
            logger.info("debit replayed owner=%s key=%s amount=%s", owner_id, idempotency_key, amount)
            return DebitResult(success=True, new_balance=int(wallet.balance), replayed=True)

        # single conditional row update keeps the balance from going negative
        result = db.execute(
            update(Wallet)
            .where(Wallet.id == wallet.id, Wallet.balance >= amount)
            .values(balance=Wallet.balance - amount, updated_at=utc_now_naive())
            .execution_options(synchronize_session=False)
        )
        db.refresh(wallet)
        if result.rowcount != 1:
            return DebitResult(
                success=False,
                new_balance=int(wallet.balance),
                error_code=error_codes.INSUFFICIENT_RESOURCE,
                message=f"Insufficient balance. Have {wallet.balance}, need {amount}",
            )

        db.add(
            LedgerEntry(
                wallet_id=wallet.id,
                owner_id=owner_id,
                delta=-amount,
                balance_after=int(wallet.balance),
                reason=reason,
                idempotency_key=idempotency_key,
                session_id=session_id,
                turn_id=turn_id,
                metadata_json={},
            )
        )
        db.flush()
        return DebitResult(success=True, new_balance=int(wallet.balance))

    def entries(self, db: Session, owner_id: str, *, limit: int = 20) -> list[LedgerEntry]:
        return list(
            db.execute(
                select(LedgerEntry)
                .where(LedgerEntry.owner_id == owner_id)
                .order_by(LedgerEntry.created_at.desc(), LedgerEntry.id)
                .limit(max(1, int(limit)))
            ).scalars()
        )

    def entries_total(self, db: Session, owner_id: str) -> int:
        total = db.execute(
            select(func.coalesce(func.sum(LedgerEntry.delta), 0)).where(LedgerEntry.owner_id == owner_id)
        ).scalar_one()
        return int(total or 0)
