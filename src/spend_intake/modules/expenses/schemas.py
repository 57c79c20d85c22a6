from __future__ import annotations

import datetime as dt
import enum
import uuid
from decimal import Decimal

from pydantic import BaseModel, ConfigDict

from spend_intake.modules.extraction.schemas import Provenance


class ValidationStatus(str, enum.Enum):
    CLEAN = "clean"
    DEFAULTED = "defaulted"
    NEEDS_REVIEW = "needs_review"


class ExpenseDraft(BaseModel):
    model_config = ConfigDict(frozen=True)

    date: dt.date
    amount: Decimal | None
    currency: str
    vendor: str | None
    category: str
    confidence: float
    validation_status: ValidationStatus
    issues: tuple[str, ...] = ()
    provenance: Provenance


class ExpenseRecordOut(BaseModel):
    id: uuid.UUID
    user_id: str
    fingerprint: str
    message_id: str
    source_channel: str
    transaction_date: dt.date
    amount: Decimal | None
    currency: str
    vendor: str | None
    category: str
    confidence: float
    validation_status: ValidationStatus
    issues: list[str]
    created_at: dt.datetime
