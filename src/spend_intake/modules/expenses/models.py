from __future__ import annotations

from datetime import date
from decimal import Decimal

from sqlalchemy import JSON, Date, Float, Numeric, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from spend_intake.core.models import Base, Timestamped, UUIDPrimaryKey


class ExpenseRecord(UUIDPrimaryKey, Timestamped, Base):
    __tablename__ = "expenses_expense_record"
    __table_args__ = (
        UniqueConstraint("user_id", "fingerprint", name="uq_expense_record_user_fingerprint"),
    )

    user_id: Mapped[str] = mapped_column(String(200), index=True)
    fingerprint: Mapped[str] = mapped_column(String(64), index=True)
    message_id: Mapped[str] = mapped_column(String(200))
    source_channel: Mapped[str] = mapped_column(String(50))

    transaction_date: Mapped[date] = mapped_column(Date)
    amount: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    currency: Mapped[str] = mapped_column(String(3))
    vendor: Mapped[str | None] = mapped_column(String(200), nullable=True)
    category: Mapped[str] = mapped_column(String(100))

    confidence: Mapped[float] = mapped_column(Float, default=0.0)
    validation_status: Mapped[str] = mapped_column(String(20), index=True)
    issues: Mapped[list] = mapped_column(JSON, default=list)
    provenance_json: Mapped[dict] = mapped_column(JSON, default=dict)
