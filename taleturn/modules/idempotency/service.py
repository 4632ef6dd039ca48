from __future__ import annotations

import hashlib
import json
import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from taleturn import error_codes
from taleturn.config import settings
from taleturn.db.models import IdempotencyRecord
from taleturn.utils.time import utc_now_naive

logger = logging.getLogger(__name__)

OPERATION_TURN = "turn"

STATUS_PENDING = "pending"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"


@dataclass(frozen=True, slots=True)
class IdempotencyDecision:
    duplicate: bool
    cached_response: dict | None = None
    error_code: str | None = None
    message: str | None = None


def normalized_optional_text(value: str | None) -> str | None:
    if value is None:
        return None
    normalized = str(value).strip()
    return normalized or None


def request_hash(*, option_id: str | None, input_text: str | None) -> str:
    canonical = json.dumps(
        {"option_id": option_id, "input_text": input_text},
        ensure_ascii=False,
        sort_keys=True,
        separators=(",", ":"),
    )
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def safe_response_payload(payload: dict) -> dict:
    return json.loads(json.dumps(payload, ensure_ascii=False, default=str))


class IdempotencyGuard:
    """At-most-once execution keyed by (key, owner, session, operation).

    ``check`` commits its pending row before returning so a concurrent request
    carrying the same key sees it. ``store`` only flushes: the caller owns the
    transaction that makes the terminal status durable.
    """

    def __init__(
        self,
        *,
        ttl_s: int | None = None,
        pending_stale_s: int | None = None,
        clock: Callable[[], datetime] = utc_now_naive,
    ) -> None:
        self.ttl_s = max(1, int(ttl_s if ttl_s is not None else settings.idempotency_ttl_s))
        self.pending_stale_s = max(
            1, int(pending_stale_s if pending_stale_s is not None else settings.idempotency_pending_stale_s)
        )
        self._clock = clock

    def _expiry(self, now: datetime) -> datetime:
        return now + timedelta(seconds=self.ttl_s)

    def _is_stale_pending(self, row: IdempotencyRecord, now: datetime) -> bool:
        anchor = row.updated_at or row.created_at or now
        return (now - anchor).total_seconds() > self.pending_stale_s

    @staticmethod
    def _load(
        db: Session,
        *,
        key: str,
        owner_id: str,
        session_id: uuid.UUID,
        operation: str,
    ) -> IdempotencyRecord | None:
        return db.execute(
            select(IdempotencyRecord).where(
                IdempotencyRecord.idempotency_key == key,
                IdempotencyRecord.owner_id == owner_id,
                IdempotencyRecord.session_id == session_id,
                IdempotencyRecord.operation == operation,
            )
        ).scalar_one_or_none()

    def check(
        self,
        db: Session,
        *,
        key: str,
        owner_id: str,
        session_id: uuid.UUID,
        operation: str = OPERATION_TURN,
        request_hash_value: str,
    ) -> IdempotencyDecision:
        try:
            return self._check(
                db,
                key=key,
                owner_id=owner_id,
                session_id=session_id,
                operation=operation,
                request_hash_value=request_hash_value,
            )
        except IntegrityError:
            db.rollback()
            return IdempotencyDecision(
                duplicate=False,
                error_code=error_codes.CONFLICT,
                message="A request with this idempotency key is already in progress",
            )
        except SQLAlchemyError:
            db.rollback()
            logger.exception("idempotency check failed key=%s owner=%s session=%s", key, owner_id, session_id)
            return IdempotencyDecision(
                duplicate=False,
                error_code=error_codes.INTERNAL_ERROR,
                message="Idempotency store unavailable",
            )

    def _check(
        self,
        db: Session,
        *,
        key: str,
        owner_id: str,
        session_id: uuid.UUID,
        operation: str,
        request_hash_value: str,
    ) -> IdempotencyDecision:
        now = self._clock()
        row = self._load(db, key=key, owner_id=owner_id, session_id=session_id, operation=operation)

        if row is not None and row.expires_at is not None and row.expires_at <= now:
            db.delete(row)
            db.flush()
            row = None

        if row is None:
            db.add(
                IdempotencyRecord(
                    idempotency_key=key,
                    owner_id=owner_id,
                    session_id=session_id,
                    operation=operation,
                    request_hash=request_hash_value,
                    status=STATUS_PENDING,
                    response_json=None,
                    error_code=None,
                    created_at=now,
                    updated_at=now,
                    expires_at=self._expiry(now),
                )
            )
            db.commit()
            return IdempotencyDecision(duplicate=False)

        if row.request_hash != request_hash_value:
            db.rollback()
            return IdempotencyDecision(
                duplicate=False,
                error_code=error_codes.CONFLICT,
                message="Idempotency key was already used for a different request",
            )

        if row.status == STATUS_COMPLETED and isinstance(row.response_json, dict):
            cached = dict(row.response_json)
            db.rollback()
            return IdempotencyDecision(duplicate=True, cached_response=cached)

        if row.status == STATUS_COMPLETED:
            # the turn was already charged; running it again would debit twice
            db.rollback()
            logger.error("completed idempotency record has no cached response key=%s session=%s", key, session_id)
            return IdempotencyDecision(
                duplicate=False,
                error_code=error_codes.INTERNAL_ERROR,
                message="Stored result for this idempotency key is unreadable",
            )

        if row.status == STATUS_PENDING and not self._is_stale_pending(row, now):
            db.rollback()
            return IdempotencyDecision(
                duplicate=False,
                error_code=error_codes.CONFLICT,
                message="A request with this idempotency key is already in progress",
            )

        # failed or abandoned pending: nothing was charged, so the key may run again
        rearmed = db.execute(
            update(IdempotencyRecord)
            .where(
                IdempotencyRecord.id == row.id,
                IdempotencyRecord.status == row.status,
                IdempotencyRecord.updated_at == row.updated_at,
            )
            .values(status=STATUS_PENDING, error_code=None, updated_at=now, expires_at=self._expiry(now))
            .execution_options(synchronize_session=False)
        )
        if rearmed.rowcount != 1:
            db.rollback()
            return IdempotencyDecision(
                duplicate=False,
                error_code=error_codes.CONFLICT,
                message="A request with this idempotency key is already in progress",
            )
        db.commit()
        return IdempotencyDecision(duplicate=False)

    def store(
        self,
        db: Session,
        *,
        key: str,
        owner_id: str,
        session_id: uuid.UUID,
        operation: str = OPERATION_TURN,
        request_hash_value: str,
        payload: dict | None,
        status: str,
        error_code: str | None = None,
    ) -> bool:
        now = self._clock()
        row = self._load(db, key=key, owner_id=owner_id, session_id=session_id, operation=operation)
        if row is None:
            db.add(
                IdempotencyRecord(
                    idempotency_key=key,
                    owner_id=owner_id,
                    session_id=session_id,
                    operation=operation,
                    request_hash=request_hash_value,
                    status=status,
                    response_json=safe_response_payload(payload) if payload is not None else None,
                    error_code=error_code,
                    created_at=now,
                    updated_at=now,
                    expires_at=self._expiry(now),
                )
            )
            db.flush()
            return True
        if row.request_hash != request_hash_value:
            return False
        row.status = status
        row.response_json = safe_response_payload(payload) if payload is not None else None
        row.error_code = error_code
        row.updated_at = now
        row.expires_at = self._expiry(now)
        db.flush()
        return True

    def mark_failed(
        self,
        db: Session,
        *,
        key: str,
        owner_id: str,
        session_id: uuid.UUID,
        operation: str = OPERATION_TURN,
        request_hash_value: str,
        error_code: str,
    ) -> None:
        db.rollback()
        try:
            self.store(
                db,
                key=key,
                owner_id=owner_id,
                session_id=session_id,
                operation=operation,
                request_hash_value=request_hash_value,
                payload=None,
                status=STATUS_FAILED,
                error_code=error_code,
            )
            db.commit()
        except SQLAlchemyError:
            db.rollback()
            # the pending row ages out through the stale threshold
            logger.exception("could not mark idempotency record failed key=%s session=%s", key, session_id)
