"""
Candidate → draft normalization.

`Normalizer.normalize` never raises for bad field values: each problem becomes an
issue code on the draft and moves its status to `defaulted` or `needs_review`.
The only clock it consults is the message's `received_at`, so the same candidate
and message always normalize to the same draft.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from decimal import Decimal, InvalidOperation

from spend_intake.core.config import Settings
from spend_intake.core.currencies import normalize_currency
from spend_intake.modules.expenses.categories import fallback_category
from spend_intake.modules.expenses.schemas import ExpenseDraft, ValidationStatus
from spend_intake.modules.extraction.schemas import ExtractionCandidate

_CENT = Decimal("0.01")
# Largest value the Numeric(12, 2) amount column holds.
MAX_AMOUNT = Decimal("9999999999.99")


@dataclass(frozen=True)
class NormalizationPolicy:
    default_currency: str = "USD"
    confidence_threshold: float = 0.7
    clock_skew: timedelta = timedelta(minutes=10)

    @classmethod
    def from_settings(cls, settings: Settings) -> NormalizationPolicy:
        return cls(
            default_currency=settings.default_currency.upper(),
            confidence_threshold=settings.category_confidence_threshold,
            clock_skew=timedelta(minutes=settings.date_clock_skew_minutes),
        )


class Normalizer:
    def __init__(self, policy: NormalizationPolicy | None = None) -> None:
        self.policy = policy or NormalizationPolicy()

    def normalize(
        self,
        candidate: ExtractionCandidate,
        *,
        received_at: datetime,
        context_text: str = "",
    ) -> ExpenseDraft:
        review: list[str] = []
        defaulted: list[str] = []
        trusted = candidate.confidence >= self.policy.confidence_threshold

        amount = self._amount(candidate.amount, review)
        tx_date = self._date(candidate, received_at, defaulted)

        currency = normalize_currency(candidate.currency)
        if currency is None:
            currency = self.policy.default_currency
            defaulted.append("currency_defaulted")

        vendor = (candidate.vendor or "").strip() or None
        if vendor is None and not trusted:
            review.append("vendor_missing")

        category = (candidate.category or "").strip()
        if not trusted or not category:
            category = fallback_category(vendor, context_text)
            defaulted.append("category_defaulted")

        if review:
            status = ValidationStatus.NEEDS_REVIEW
        elif defaulted:
            status = ValidationStatus.DEFAULTED
        else:
            status = ValidationStatus.CLEAN

        return ExpenseDraft(
            date=tx_date,
            amount=amount,
            currency=currency,
            vendor=vendor,
            category=category,
            confidence=candidate.confidence,
            validation_status=status,
            issues=tuple(review + defaulted),
            provenance=candidate.provenance,
        )

    def _amount(self, raw: Decimal | None, review: list[str]) -> Decimal | None:
        if raw is None:
            review.append("amount_missing")
            return None
        if not raw.is_finite() or raw < 0:
            review.append("amount_invalid")
            return None
        exponent = raw.normalize().as_tuple().exponent
        if isinstance(exponent, int) and exponent < -2:
            review.append("amount_invalid")
            return None
        if raw > MAX_AMOUNT:
            review.append("amount_invalid")
            return None
        try:
            return raw.quantize(_CENT)
        except InvalidOperation:
            review.append("amount_invalid")
            return None

    def _date(self, candidate: ExtractionCandidate, received_at: datetime, defaulted: list[str]):
        received_utc = _as_utc(received_at)
        latest_allowed = (received_utc + self.policy.clock_skew).date()
        if candidate.date is not None and candidate.date <= latest_allowed:
            return candidate.date
        defaulted.append("date_defaulted")
        return received_utc.date()


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)
