from __future__ import annotations

from datetime import datetime

from sqlalchemy import JSON, DateTime, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from spend_intake.core.models import Base, Timestamped, UUIDPrimaryKey


class ExtractionCacheEntry(UUIDPrimaryKey, Timestamped, Base):
    __tablename__ = "extraction_candidate_cache"

    fingerprint: Mapped[str] = mapped_column(String(64), unique=True, index=True)
    template_id: Mapped[str] = mapped_column(String(64))
    backend_id: Mapped[str] = mapped_column(String(100), default="")
    schema_version: Mapped[int] = mapped_column(Integer, default=1)
    candidate_json: Mapped[dict] = mapped_column(JSON, default=dict)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    last_used_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
