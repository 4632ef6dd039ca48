import uuid
from datetime import datetime

from pydantic import BaseModel, Field


class LedgerEntryOut(BaseModel):
    id: uuid.UUID
    delta: int
    balance_after: int
    reason: str
    session_id: uuid.UUID | None = None
    turn_id: uuid.UUID | None = None
    created_at: datetime


class WalletOut(BaseModel):
    owner_id: str
    is_guest: bool
    balance: int
    entries: list[LedgerEntryOut] = Field(default_factory=list)
