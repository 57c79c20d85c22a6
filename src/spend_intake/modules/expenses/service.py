from __future__ import annotations

import logging
import random
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, InterfaceError, OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session

from spend_intake.core.backoff import Backoff, BackoffPolicy
from spend_intake.core.logging import get_logger, log_event
from spend_intake.modules.deadletter.models import DeadLetterEntry, DeadLetterStage
from spend_intake.modules.deadletter.service import DeadLetterStore
from spend_intake.modules.expenses.errors import (
    PersistenceConflict,
    PersistenceError,
    PersistenceRejected,
    PersistenceUnavailable,
)
from spend_intake.modules.expenses.models import ExpenseRecord
from spend_intake.modules.expenses.schemas import ExpenseDraft
from spend_intake.modules.intake.schemas import RawMessage

logger = get_logger(__name__)


def list_records_for_user(session: Session, *, user_id: str) -> list[ExpenseRecord]:
    return list(
        session.scalars(
            select(ExpenseRecord)
            .where(ExpenseRecord.user_id == user_id)
            .order_by(ExpenseRecord.transaction_date, ExpenseRecord.created_at)
        )
    )


class SqlExpenseStore:
    def __init__(self, session_factory: Callable[[], Session]) -> None:
        self._session_factory = session_factory

    def create_if_absent(
        self,
        *,
        user_id: str,
        fingerprint: str,
        draft: ExpenseDraft,
        message: RawMessage,
    ) -> tuple[ExpenseRecord, bool]:
        """
        Insert the record for (user_id, fingerprint) unless one exists.

        Returns the stored record and whether this call created it. A concurrent
        writer that wins the unique constraint is read back, never overwritten.
        """
        try:
            with self._session_factory() as session:
                existing = self._find(session, user_id=user_id, fingerprint=fingerprint)
                if existing:
                    return existing, False

                record = ExpenseRecord(
                    user_id=user_id,
                    fingerprint=fingerprint,
                    message_id=message.id,
                    source_channel=message.source_channel,
                    transaction_date=draft.date,
                    amount=draft.amount,
                    currency=draft.currency,
                    vendor=draft.vendor,
                    category=draft.category,
                    confidence=draft.confidence,
                    validation_status=draft.validation_status.value,
                    issues=list(draft.issues),
                    provenance_json=draft.provenance.model_dump(mode="json"),
                )
                try:
                    with session.begin_nested():
                        session.add(record)
                        session.flush()
                    session.commit()
                    return record, True
                except IntegrityError as e:
                    winner = self._find(session, user_id=user_id, fingerprint=fingerprint)
                    if not winner:
                        raise PersistenceConflict(
                            f"unique key taken but no record for {fingerprint}"
                        ) from e
                    return winner, False
        except (OperationalError, InterfaceError) as e:
            raise PersistenceUnavailable(str(e)) from e
        except SQLAlchemyError as e:
            raise PersistenceRejected(str(e)) from e

    def _find(self, session: Session, *, user_id: str, fingerprint: str) -> ExpenseRecord | None:
        return session.scalar(
            select(ExpenseRecord).where(
                ExpenseRecord.user_id == user_id,
                ExpenseRecord.fingerprint == fingerprint,
            )
        )


@dataclass(frozen=True)
class IngestOutcome:
    record: ExpenseRecord | None = None
    dead_letter: DeadLetterEntry | None = None
    created: bool = False


class IngestionCoordinator:
    """
    Idempotent write of a normalized draft.

    Replays of the same (user_id, fingerprint) return the stored record unchanged.
    Unavailable or conflicting writes are retried with backoff and a rejected row is not;
    once the budget is spent the draft goes to the dead-letter store with the raw
    message, so nothing is dropped.
    """

    def __init__(
        self,
        store: SqlExpenseStore,
        dead_letters: DeadLetterStore,
        *,
        max_attempts: int = 3,
        backoff: BackoffPolicy | None = None,
        sleep: Callable[[float], None] = time.sleep,
        rng: random.Random | None = None,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.store = store
        self.dead_letters = dead_letters
        self.max_attempts = max_attempts
        self.backoff_policy = backoff or BackoffPolicy(base_seconds=0.2, max_seconds=2.0)
        self._sleep = sleep
        self._rng = rng or random.Random()

    def ingest(
        self,
        *,
        user_id: str,
        fingerprint: str,
        draft: ExpenseDraft,
        message: RawMessage,
    ) -> IngestOutcome:
        backoff = Backoff(self.backoff_policy, rng=self._rng)
        history: list[dict[str, Any]] = []
        last_error: PersistenceError | None = None
        attempts = 0

        for attempt in range(1, self.max_attempts + 1):
            attempts = attempt
            try:
                record, created = self.store.create_if_absent(
                    user_id=user_id, fingerprint=fingerprint, draft=draft, message=message
                )
            except PersistenceError as e:
                last_error = e
                retryable = isinstance(e, (PersistenceUnavailable, PersistenceConflict))
                delay = backoff.next_delay() if retryable and attempt < self.max_attempts else None
                history.append(
                    {
                        "attempt": attempt,
                        "outcome": type(e).__name__,
                        "error": str(e)[:500],
                        "delay_s": round(delay, 3) if delay is not None else None,
                    }
                )
                log_event(
                    logger,
                    "expense_record.persist_failed",
                    level=logging.WARNING,
                    fingerprint=fingerprint,
                    attempt=attempt,
                    error=type(e).__name__,
                    retryable=retryable,
                )
                if not retryable:
                    break
                if delay is not None:
                    self._sleep(delay)
                continue

            log_event(
                logger,
                "expense_record.create",
                record_id=str(record.id),
                fingerprint=fingerprint,
                created=created,
                validation_status=record.validation_status,
            )
            return IngestOutcome(record=record, created=created)

        entry = self.dead_letters.append(
            fingerprint=fingerprint,
            user_id=user_id,
            message=message,
            stage=DeadLetterStage.PERSISTING,
            last_error=f"{type(last_error).__name__}: {last_error}",
            error_history=history,
            attempt_count=attempts,
            draft=draft,
        )
        return IngestOutcome(dead_letter=entry)
