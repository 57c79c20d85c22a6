from __future__ import annotations

import logging
import random
import threading
import time
from collections import Counter
from collections.abc import Callable
from typing import Any, Protocol

from spend_intake.core.backoff import Backoff, BackoffPolicy
from spend_intake.core.logging import get_logger, log_event, monotonic_ms
from spend_intake.modules.extraction.ai import parse_candidate
from spend_intake.modules.extraction.errors import (
    BackendError,
    BackendMalformedResponse,
    BackendRateLimited,
    BackendRejected,
    BackendTimeout,
    BackendUnavailable,
    ExtractionExhausted,
)
from spend_intake.modules.extraction.schemas import (
    AttemptOutcome,
    AttemptRecord,
    BackendReply,
    ExtractionCandidate,
    Provenance,
)
from spend_intake.modules.extraction.templates import PromptTemplate, get_template
from spend_intake.worker.errors import PipelineCancelled

logger = get_logger(__name__)

_OUTCOMES: dict[type[BackendError], AttemptOutcome] = {
    BackendTimeout: AttemptOutcome.TIMEOUT,
    BackendRateLimited: AttemptOutcome.RATE_LIMITED,
    BackendUnavailable: AttemptOutcome.UNAVAILABLE,
    BackendRejected: AttemptOutcome.REJECTED,
    BackendMalformedResponse: AttemptOutcome.MALFORMED,
}


class ExtractionBackend(Protocol):
    backend_id: str

    def complete(
        self,
        redacted_text: str,
        template: PromptTemplate,
        *,
        timeout: float,
        strict: bool = False,
    ) -> BackendReply: ...


class ExtractionHooks(Protocol):
    def on_attempt(self, record: AttemptRecord) -> None: ...


class LoggingHooks:
    def on_attempt(self, record: AttemptRecord) -> None:
        level = logging.INFO if record.outcome == AttemptOutcome.CANDIDATE else logging.WARNING
        log_event(
            logger,
            "extraction.attempt",
            level=level,
            template_id=record.template_id,
            **record.as_dict(),
        )


class ExtractionClient:
    """
    Calls the extraction backend with a per-call timeout, bounded concurrency and
    exponential backoff.

    Timeouts, rate limits and 5xx are retried up to `max_attempts`; a malformed reply
    or a rejected request is raised on the attempt that produced it.
    """

    def __init__(
        self,
        backend: ExtractionBackend,
        *,
        timeout_seconds: float = 20.0,
        max_attempts: int = 4,
        backoff: BackoffPolicy | None = None,
        max_in_flight: int = 4,
        hooks: ExtractionHooks | None = None,
        sleep: Callable[[float], None] | None = None,
        rng: random.Random | None = None,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.backend = backend
        self.timeout_seconds = timeout_seconds
        self.max_attempts = max_attempts
        self.backoff_policy = backoff or BackoffPolicy()
        self.hooks = hooks or LoggingHooks()
        self._in_flight = threading.BoundedSemaphore(max(1, max_in_flight))
        self._sleep = sleep
        self._rng = rng or random.Random()
        self._counter_lock = threading.Lock()
        self.counters: Counter[str] = Counter()

    def extract(
        self,
        redacted_text: str,
        template_id: str,
        *,
        strict: bool = False,
        max_attempts: int | None = None,
        cancel_event: threading.Event | None = None,
    ) -> ExtractionCandidate:
        template = get_template(template_id)
        budget = max(1, min(max_attempts or self.max_attempts, self.max_attempts))
        backoff = Backoff(self.backoff_policy, rng=self._rng)
        history: list[dict[str, Any]] = []
        last_error: BackendError | None = None

        for attempt in range(1, budget + 1):
            if cancel_event is not None and cancel_event.is_set():
                raise PipelineCancelled("cancelled before extraction attempt")

            start = time.monotonic()
            try:
                with self._in_flight:
                    reply = self.backend.complete(
                        redacted_text,
                        template,
                        timeout=self.timeout_seconds,
                        strict=strict,
                    )
                candidate = parse_candidate(
                    reply.payload,
                    provenance=Provenance(
                        template_id=template_id,
                        backend_id=reply.backend_id,
                        latency_ms=monotonic_ms(start),
                        attempts=attempt,
                    ),
                )
            except (BackendMalformedResponse, BackendRejected) as e:
                history.append(self._record(template_id, attempt, e, start).as_dict())
                e.attempts = attempt
                if isinstance(e, BackendMalformedResponse):
                    e.history = history
                raise
            except (BackendTimeout, BackendRateLimited, BackendUnavailable) as e:
                last_error = e
                delay = None
                if attempt < budget:
                    hint = e.retry_after if isinstance(e, BackendRateLimited) else None
                    delay = backoff.next_delay(hint=hint)
                history.append(self._record(template_id, attempt, e, start, delay).as_dict())
                if delay is None:
                    break
                self._wait(delay, cancel_event)
                continue

            self._record(template_id, attempt, None, start)
            return candidate

        raise ExtractionExhausted(attempts=budget, last_error=last_error, history=history)

    def snapshot_counters(self) -> dict[str, int]:
        with self._counter_lock:
            return dict(self.counters)

    def _record(
        self,
        template_id: str,
        attempt: int,
        error: BackendError | None,
        start: float,
        delay: float | None = None,
    ) -> AttemptRecord:
        outcome = AttemptOutcome.CANDIDATE if error is None else _outcome_for(error)
        record = AttemptRecord(
            template_id=template_id,
            attempt=attempt,
            outcome=outcome,
            latency_ms=monotonic_ms(start),
            error=str(error) if error is not None else None,
            delay_s=delay,
        )
        with self._counter_lock:
            self.counters["requests"] += 1
            self.counters[outcome.value] += 1
        self.hooks.on_attempt(record)
        return record

    def _wait(self, delay: float, cancel_event: threading.Event | None) -> None:
        if self._sleep is not None:
            self._sleep(delay)
            cancelled = cancel_event is not None and cancel_event.is_set()
        elif cancel_event is not None:
            cancelled = cancel_event.wait(delay)
        else:
            time.sleep(delay)
            cancelled = False
        if cancelled:
            raise PipelineCancelled("cancelled during extraction backoff")


def _outcome_for(error: BackendError) -> AttemptOutcome:
    for cls, outcome in _OUTCOMES.items():
        if isinstance(error, cls):
            return outcome
    return AttemptOutcome.UNAVAILABLE
