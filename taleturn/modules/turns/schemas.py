import uuid
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


class ChoiceOut(BaseModel):
    id: str
    label: str
    description: str | None = None


class TurnRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    option_id: str | None = Field(default=None, max_length=128)
    input_text: str | None = Field(default=None, max_length=2000)


class TurnDTO(BaseModel):
    id: uuid.UUID
    session_id: uuid.UUID
    turn_number: int
    narrative: str
    emotion: str
    choices: list[ChoiceOut]
    relationship_deltas: dict | None = None
    faction_deltas: dict | None = None
    balance_after: int | None = None
    created_at: datetime


class TurnListOut(BaseModel):
    session_id: uuid.UUID
    turns: list[TurnDTO]
    has_more: bool = False
    next_after_turn: int | None = None
