from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field


class DeadLetterOut(BaseModel):
    id: uuid.UUID
    fingerprint: str
    user_id: str
    message_id: str
    stage: str
    raw_message_json: dict[str, Any]
    draft_json: dict[str, Any] | None
    last_error: str
    error_history_json: list[dict[str, Any]]
    attempt_count: int
    first_failed_at: datetime
    resolved_at: datetime | None
    resolution: str | None
    resolution_note: str | None


class DeadLetterResolveIn(BaseModel):
    resolution: Literal["discarded", "manual"] = "manual"
    note: str | None = Field(default=None, max_length=2000)


class DeadLetterReplayOut(BaseModel):
    entry_id: uuid.UUID
    state: str
    resolved: bool
    record_id: uuid.UUID | None = None
    dead_letter_id: uuid.UUID | None = None
    cancelled: bool = False
