import uuid
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


class SessionCreateRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    world_ref: str = Field(min_length=1, max_length=128)
    character_ref: str | None = Field(default=None, max_length=128)
    entry_point_ref: str | None = Field(default=None, max_length=128)
    character_summary: str | None = Field(default=None, max_length=2000)


class SessionOut(BaseModel):
    id: uuid.UUID
    owner_id: str
    is_guest: bool
    world_ref: str
    character_ref: str | None = None
    entry_point_ref: str | None = None
    status: str
    turn_count: int
    state_json: dict = Field(default_factory=dict)
    balance: int
    created_at: datetime
    updated_at: datetime
