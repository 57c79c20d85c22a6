from __future__ import annotations

import threading
from datetime import date
from decimal import Decimal

from conftest import RECEIVED_AT
from sqlalchemy.exc import DataError
from sqlalchemy.orm import Session, sessionmaker

from spend_intake.core.db import SessionLocal, engine
from spend_intake.modules.deadletter.service import DeadLetterStore
from spend_intake.modules.expenses.errors import PersistenceUnavailable
from spend_intake.modules.expenses.normalization import Normalizer
from spend_intake.modules.expenses.service import (
    IngestionCoordinator,
    SqlExpenseStore,
    list_records_for_user,
)
from spend_intake.modules.extraction.schemas import ExtractionCandidate, Provenance


def _draft(amount: str = "42.50"):
    candidate = ExtractionCandidate(
        date=date(2025, 9, 1),
        amount=Decimal(amount),
        currency="USD",
        vendor="Cafe ABC",
        category="Food",
        confidence=0.95,
        provenance=Provenance(template_id="receipt_email.v1", backend_id="fake:test"),
    )
    return Normalizer().normalize(candidate, received_at=RECEIVED_AT)


class FlakyStore(SqlExpenseStore):
    def __init__(self, failures: int) -> None:
        super().__init__(SessionLocal)
        self.failures = failures
        self.calls = 0

    def create_if_absent(self, **kwargs):
        self.calls += 1
        if self.calls <= self.failures:
            raise PersistenceUnavailable("database is locked")
        return super().create_if_absent(**kwargs)


def _coordinator(store=None, *, max_attempts: int = 3) -> IngestionCoordinator:
    return IngestionCoordinator(
        store or SqlExpenseStore(SessionLocal),
        DeadLetterStore(SessionLocal),
        max_attempts=max_attempts,
        sleep=lambda _s: None,
    )


def test_ingest_twice_returns_same_record(make_inbound) -> None:
    coordinator = _coordinator()
    message = make_inbound().message
    draft = _draft()

    first = coordinator.ingest(user_id="user-1", fingerprint="f" * 64, draft=draft, message=message)
    second = coordinator.ingest(
        user_id="user-1", fingerprint="f" * 64, draft=_draft("99.00"), message=message
    )

    assert first.created is True
    assert second.created is False
    assert first.record.id == second.record.id
    # The stored record is never overwritten by a replay.
    assert second.record.amount == Decimal("42.50")

    with SessionLocal() as session:
        records = list_records_for_user(session, user_id="user-1")
    assert len(records) == 1
    assert records[0].validation_status == "clean"
    assert records[0].provenance_json["backend_id"] == "fake:test"


def test_same_fingerprint_for_different_users_creates_two_records(make_inbound) -> None:
    coordinator = _coordinator()
    message = make_inbound().message

    a = coordinator.ingest(user_id="user-1", fingerprint="a" * 64, draft=_draft(), message=message)
    b = coordinator.ingest(user_id="user-2", fingerprint="a" * 64, draft=_draft(), message=message)

    assert a.created and b.created
    assert a.record.id != b.record.id


def test_concurrent_ingest_creates_exactly_one_record(make_inbound) -> None:
    coordinator = _coordinator()
    message = make_inbound().message
    draft = _draft()
    outcomes = []
    lock = threading.Lock()
    barrier = threading.Barrier(6)

    def _worker() -> None:
        barrier.wait()
        outcome = coordinator.ingest(
            user_id="user-1", fingerprint="c" * 64, draft=draft, message=message
        )
        with lock:
            outcomes.append(outcome)

    threads = [threading.Thread(target=_worker) for _ in range(6)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=30)

    assert len(outcomes) == 6
    assert all(o.record is not None for o in outcomes)
    assert sum(1 for o in outcomes if o.created) == 1
    assert len({o.record.id for o in outcomes}) == 1


def test_transient_persistence_failure_is_retried(make_inbound) -> None:
    store = FlakyStore(failures=2)
    coordinator = _coordinator(store)

    outcome = coordinator.ingest(
        user_id="user-1", fingerprint="d" * 64, draft=_draft(), message=make_inbound().message
    )

    assert store.calls == 3
    assert outcome.created is True
    assert outcome.dead_letter is None


def test_persistence_exhaustion_dead_letters_draft(make_inbound) -> None:
    store = FlakyStore(failures=10)
    coordinator = _coordinator(store)
    message = make_inbound().message

    outcome = coordinator.ingest(
        user_id="user-1", fingerprint="e" * 64, draft=_draft(), message=message
    )

    assert outcome.record is None
    entry = outcome.dead_letter
    assert entry is not None
    assert entry.stage == "persisting"
    assert entry.attempt_count == 3
    assert entry.draft_json["amount"] == "42.50"
    assert entry.raw_message_json["id"] == message.id
    assert entry.last_error.startswith("PersistenceUnavailable")
    assert [h["attempt"] for h in entry.error_history_json] == [1, 2, 3]
    assert entry.error_history_json[-1]["delay_s"] is None

    with SessionLocal() as session:
        assert list_records_for_user(session, user_id="user-1") == []


class _OverflowSession(Session):
    """Refuses every insert the way Postgres refuses a value too large for its column."""

    def flush(self, objects=None) -> None:
        if self.new:
            raise DataError("INSERT INTO expense_record", {}, ValueError("numeric field overflow"))
        super().flush(objects)


def test_rejected_row_is_dead_lettered_without_retry(make_inbound) -> None:
    rejecting = sessionmaker(bind=engine, class_=_OverflowSession, expire_on_commit=False)
    coordinator = _coordinator(SqlExpenseStore(rejecting))
    message = make_inbound().message

    outcome = coordinator.ingest(
        user_id="user-1", fingerprint="9" * 64, draft=_draft(), message=message
    )

    assert outcome.record is None
    entry = outcome.dead_letter
    assert entry.stage == "persisting"
    assert entry.attempt_count == 1
    assert entry.last_error.startswith("PersistenceRejected")
    assert entry.draft_json["amount"] == "42.50"
    assert [h["outcome"] for h in entry.error_history_json] == ["PersistenceRejected"]

    with SessionLocal() as session:
        assert list_records_for_user(session, user_id="user-1") == []
