from __future__ import annotations

from datetime import datetime, timezone


def utc_now_naive() -> datetime:
    """UTC now without tzinfo. Every DateTime column stores naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)
