from __future__ import annotations

import threading
import time

import pytest
from conftest import CAFE_REPLY, FakeBackend

from spend_intake.core.backoff import Backoff, BackoffPolicy
from spend_intake.modules.extraction.client import ExtractionClient
from spend_intake.modules.extraction.errors import (
    BackendMalformedResponse,
    BackendRateLimited,
    BackendRejected,
    BackendTimeout,
    BackendUnavailable,
    ExtractionExhausted,
)
from spend_intake.modules.extraction.schemas import AttemptOutcome
from spend_intake.worker.errors import PipelineCancelled


def _client(backend, *, max_attempts=4, policy=None, sleeps=None, **kwargs) -> ExtractionClient:
    recorded = sleeps if sleeps is not None else []
    return ExtractionClient(
        backend,
        max_attempts=max_attempts,
        backoff=policy or BackoffPolicy(base_seconds=0.1, max_seconds=1.0, jitter_seconds=0.05),
        sleep=recorded.append,
        **kwargs,
    )


def test_successful_extraction_records_provenance():
    backend = FakeBackend(CAFE_REPLY)
    client = _client(backend)

    cand = client.extract("Cafe ABC $42.50 9/1/2025", "receipt_email.v1")

    assert cand.vendor == "Cafe ABC"
    assert cand.provenance.backend_id == "fake:test"
    assert cand.provenance.template_id == "receipt_email.v1"
    assert cand.provenance.attempts == 1
    assert client.snapshot_counters() == {"requests": 1, "candidate": 1}


def test_transient_failures_are_retried_up_to_the_ceiling():
    backend = FakeBackend(BackendTimeout)
    sleeps: list[float] = []
    client = _client(backend, max_attempts=3, sleeps=sleeps)

    with pytest.raises(ExtractionExhausted) as exc:
        client.extract("text", "receipt_email.v1")

    assert exc.value.attempts == 3
    assert isinstance(exc.value.last_error, BackendTimeout)
    assert len(exc.value.history) == 3
    assert len(backend.calls) == 3
    # No sleep after the final attempt.
    assert len(sleeps) == 2
    assert sleeps == sorted(sleeps)


def test_retry_delays_never_decrease_and_honour_retry_after():
    backend = FakeBackend(
        BackendRateLimited("slow down", retry_after=0.8),
        BackendUnavailable,
        BackendTimeout,
        CAFE_REPLY,
    )
    sleeps: list[float] = []
    client = _client(
        backend,
        policy=BackoffPolicy(base_seconds=0.1, max_seconds=2.0, jitter_seconds=0.0),
        sleeps=sleeps,
    )

    cand = client.extract("text", "receipt_email.v1")

    assert cand.provenance.attempts == 4
    assert sleeps[0] == pytest.approx(0.8)
    assert all(b >= a for a, b in zip(sleeps, sleeps[1:]))
    assert sleeps == [pytest.approx(0.8), pytest.approx(0.8), pytest.approx(0.8)]


def test_retry_after_hint_is_capped():
    backend = FakeBackend(BackendRateLimited("slow down", retry_after=120), CAFE_REPLY)
    sleeps: list[float] = []
    client = _client(
        backend,
        policy=BackoffPolicy(base_seconds=0.1, max_seconds=2.0, jitter_seconds=0.0),
        sleeps=sleeps,
    )

    client.extract("text", "receipt_email.v1")
    assert sleeps == [pytest.approx(2.0)]


def test_backoff_schedule_grows_then_plateaus():
    b = Backoff(BackoffPolicy(base_seconds=0.5, max_seconds=3.0, jitter_seconds=0.0))
    assert [b.next_delay() for _ in range(5)] == [0.5, 1.0, 2.0, 3.0, 3.0]


def test_malformed_output_is_not_retried_with_the_same_input():
    backend = FakeBackend("I could not find a receipt in this message.")
    sleeps: list[float] = []
    client = _client(backend, sleeps=sleeps)

    with pytest.raises(BackendMalformedResponse) as exc:
        client.extract("text", "receipt_email.v1")

    assert len(backend.calls) == 1
    assert sleeps == []
    assert exc.value.attempts == 1
    assert exc.value.history[0]["outcome"] == AttemptOutcome.MALFORMED.value


def test_malformed_after_transient_reports_all_attempts():
    backend = FakeBackend(BackendTimeout, "[]")
    client = _client(backend)

    with pytest.raises(BackendMalformedResponse) as exc:
        client.extract("text", "receipt_email.v1")

    assert exc.value.attempts == 2
    assert [h["outcome"] for h in exc.value.history] == ["timeout", "malformed"]


def test_rejected_request_is_not_retried():
    backend = FakeBackend(BackendRejected)
    client = _client(backend)

    with pytest.raises(BackendRejected):
        client.extract("text", "receipt_email.v1")
    assert len(backend.calls) == 1


def test_strict_flag_is_passed_to_backend():
    backend = FakeBackend(CAFE_REPLY)
    client = _client(backend)

    client.extract("text", "receipt_sms.v1", strict=True)
    assert backend.calls == [{"text": "text", "template_id": "receipt_sms.v1", "strict": True}]


def test_per_call_attempt_budget_cannot_exceed_client_ceiling():
    backend = FakeBackend(BackendTimeout)
    client = _client(backend, max_attempts=2)

    with pytest.raises(ExtractionExhausted) as exc:
        client.extract("text", "receipt_email.v1", max_attempts=10)
    assert exc.value.attempts == 2

    backend.calls.clear()
    with pytest.raises(ExtractionExhausted):
        client.extract("text", "receipt_email.v1", max_attempts=1)
    assert len(backend.calls) == 1


def test_cancellation_during_backoff():
    backend = FakeBackend(BackendTimeout)
    cancel = threading.Event()
    client = ExtractionClient(
        backend,
        max_attempts=4,
        backoff=BackoffPolicy(base_seconds=0.01, max_seconds=0.02, jitter_seconds=0.0),
        sleep=lambda _s: cancel.set(),
    )

    with pytest.raises(PipelineCancelled):
        client.extract("text", "receipt_email.v1", cancel_event=cancel)
    assert len(backend.calls) == 1


def test_cancel_event_interrupts_real_backoff_wait():
    backend = FakeBackend(BackendTimeout)
    cancel = threading.Event()
    client = ExtractionClient(
        backend,
        max_attempts=2,
        backoff=BackoffPolicy(base_seconds=30.0, max_seconds=30.0, jitter_seconds=0.0),
    )
    threading.Timer(0.05, cancel.set).start()

    start = time.monotonic()
    with pytest.raises(PipelineCancelled):
        client.extract("text", "receipt_email.v1", cancel_event=cancel)
    assert time.monotonic() - start < 5


def test_in_flight_requests_are_bounded():
    lock = threading.Lock()
    state = {"current": 0, "peak": 0}

    class _SlowBackend(FakeBackend):
        def complete(self, redacted_text, template, *, timeout, strict=False):
            with lock:
                state["current"] += 1
                state["peak"] = max(state["peak"], state["current"])
            try:
                time.sleep(0.05)
                return super().complete(redacted_text, template, timeout=timeout, strict=strict)
            finally:
                with lock:
                    state["current"] -= 1

    client = _client(_SlowBackend(CAFE_REPLY), max_in_flight=2)
    threads = [
        threading.Thread(target=client.extract, args=(f"text {i}", "receipt_email.v1"))
        for i in range(6)
    ]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert state["peak"] <= 2
    assert client.snapshot_counters()["candidate"] == 6


def test_hooks_receive_every_attempt():
    seen = []

    class _Hooks:
        def on_attempt(self, record):
            seen.append(record)

    backend = FakeBackend(BackendUnavailable, CAFE_REPLY)
    client = _client(backend, hooks=_Hooks())
    client.extract("text", "receipt_email.v1")

    assert [r.outcome for r in seen] == [AttemptOutcome.UNAVAILABLE, AttemptOutcome.CANDIDATE]
    assert seen[0].delay_s is not None
    assert [r.attempt for r in seen] == [1, 2]


def test_unknown_template_is_rejected():
    client = _client(FakeBackend(CAFE_REPLY))
    with pytest.raises(ValueError):
        client.extract("text", "nope.v9")
