from __future__ import annotations

from datetime import datetime

from sqlalchemy import JSON, DateTime, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from spend_intake.core.models import Base, Timestamped, UUIDPrimaryKey


class DeadLetterStage:
    # Accepted but never finished (shutdown or a crash); replay re-runs it from the start.
    QUEUED = "queued"
    EXTRACTING = "extracting"
    PERSISTING = "persisting"


class DeadLetterResolution:
    REPLAYED = "replayed"
    DISCARDED = "discarded"
    MANUAL = "manual"


class DeadLetterEntry(UUIDPrimaryKey, Timestamped, Base):
    __tablename__ = "deadletter_entry"

    fingerprint: Mapped[str] = mapped_column(String(64), index=True)
    user_id: Mapped[str] = mapped_column(String(200), index=True)
    message_id: Mapped[str] = mapped_column(String(200))
    stage: Mapped[str] = mapped_column(String(20), index=True)

    raw_message_json: Mapped[dict] = mapped_column(JSON)
    draft_json: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    last_error: Mapped[str] = mapped_column(Text, default="")
    error_history_json: Mapped[list] = mapped_column(JSON, default=list)
    attempt_count: Mapped[int] = mapped_column(Integer, default=0)

    first_failed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    resolved_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True, index=True
    )
    resolution: Mapped[str | None] = mapped_column(String(50), nullable=True)
    resolution_note: Mapped[str | None] = mapped_column(Text, nullable=True)
