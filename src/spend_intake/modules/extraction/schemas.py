from __future__ import annotations

import datetime as dt
import enum
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class Provenance(BaseModel):
    model_config = ConfigDict(frozen=True)

    template_id: str
    backend_id: str
    latency_ms: int = 0
    attempts: int = 1


class ExtractionCandidate(BaseModel):
    """
    Unvalidated structured output from the extraction backend.

    Values are only type-coerced here; range and plausibility checks belong to the
    normalizer, so a negative amount or a future date is representable.
    """

    model_config = ConfigDict(frozen=True)

    date: dt.date | None = None
    amount: Decimal | None = None
    currency: str | None = None
    vendor: str | None = None
    category: str | None = None
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    provenance: Provenance


class AttemptOutcome(str, enum.Enum):
    CANDIDATE = "candidate"
    TIMEOUT = "timeout"
    RATE_LIMITED = "rate_limited"
    UNAVAILABLE = "unavailable"
    REJECTED = "rejected"
    MALFORMED = "malformed"


@dataclass(frozen=True)
class AttemptRecord:
    template_id: str
    attempt: int
    outcome: AttemptOutcome
    latency_ms: int
    error: str | None = None
    delay_s: float | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "attempt": self.attempt,
            "outcome": self.outcome.value,
            "latency_ms": self.latency_ms,
            "error": self.error,
            "delay_s": round(self.delay_s, 3) if self.delay_s is not None else None,
        }


@dataclass(frozen=True)
class BackendReply:
    payload: Any
    backend_id: str
    meta: dict[str, Any] = field(default_factory=dict)
