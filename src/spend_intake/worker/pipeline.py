from __future__ import annotations

import enum
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any

from spend_intake.core.logging import get_logger, log_context, log_event
from spend_intake.modules.deadletter.models import DeadLetterEntry, DeadLetterStage
from spend_intake.modules.deadletter.service import DeadLetterStore
from spend_intake.modules.expenses.models import ExpenseRecord
from spend_intake.modules.expenses.normalization import Normalizer
from spend_intake.modules.expenses.rules import extract_with_rules
from spend_intake.modules.expenses.schemas import ExpenseDraft
from spend_intake.modules.expenses.service import IngestionCoordinator
from spend_intake.modules.extraction.cache import ExtractionCache
from spend_intake.modules.extraction.client import ExtractionClient
from spend_intake.modules.extraction.errors import (
    BackendError,
    BackendMalformedResponse,
    ExtractionExhausted,
)
from spend_intake.modules.extraction.schemas import ExtractionCandidate, Provenance
from spend_intake.modules.intake.fingerprint import fingerprint_message, template_for_channel
from spend_intake.modules.intake.redaction import redact_with_counts
from spend_intake.modules.intake.schemas import InboundMessage, RawMessage
from spend_intake.worker.errors import InvalidTransition, PipelineCancelled

logger = get_logger(__name__)


class MessageState(str, enum.Enum):
    QUEUED = "queued"
    EXTRACTING = "extracting"
    NORMALIZING = "normalizing"
    PERSISTING = "persisting"
    DONE = "done"
    DEAD_LETTERED = "dead_lettered"


ALLOWED_TRANSITIONS: dict[MessageState, frozenset[MessageState]] = {
    MessageState.QUEUED: frozenset({MessageState.EXTRACTING}),
    MessageState.EXTRACTING: frozenset({MessageState.NORMALIZING, MessageState.DEAD_LETTERED}),
    MessageState.NORMALIZING: frozenset({MessageState.PERSISTING}),
    MessageState.PERSISTING: frozenset({MessageState.DONE, MessageState.DEAD_LETTERED}),
    MessageState.DONE: frozenset(),
    MessageState.DEAD_LETTERED: frozenset(),
}

TERMINAL_STATES = frozenset({MessageState.DONE, MessageState.DEAD_LETTERED})


@dataclass
class PipelineRun:
    message_id: str
    user_id: str
    state: MessageState = MessageState.QUEUED
    transitions: list[tuple[MessageState, MessageState]] = field(default_factory=list)

    @property
    def terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def transition(self, to_state: MessageState, **fields: Any) -> None:
        if to_state not in ALLOWED_TRANSITIONS[self.state]:
            raise InvalidTransition(self.state.value, to_state.value)
        from_state = self.state
        self.state = to_state
        self.transitions.append((from_state, to_state))
        log_event(
            logger,
            "pipeline.state.changed",
            user_id=self.user_id,
            from_state=from_state.value,
            to_state=to_state.value,
            **fields,
        )


@dataclass(frozen=True)
class PipelineResult:
    message_id: str
    state: MessageState
    fingerprint: str | None = None
    record: ExpenseRecord | None = None
    dead_letter: DeadLetterEntry | None = None
    created: bool = False
    cache_hit: bool = False
    cancelled: bool = False
    transitions: tuple[tuple[MessageState, MessageState], ...] = ()


class _ExtractionFailed(Exception):
    def __init__(
        self, *, attempts: int, last_error: BaseException | None, history: list[dict[str, Any]]
    ) -> None:
        super().__init__(f"{type(last_error).__name__}: {last_error}")
        self.attempts = attempts
        self.last_error = last_error
        self.history = history


class _KeyedLocks:
    """One lock per key, dropped once nobody holds or waits on it."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._slots: dict[str, list[Any]] = {}

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            slot = self._slots.setdefault(key, [threading.Lock(), 0])
            slot[1] += 1
        try:
            with slot[0]:
                yield
        finally:
            with self._guard:
                slot[1] -= 1
                if not slot[1]:
                    del self._slots[key]


class MessagePipeline:
    """
    Queued -> Extracting -> Normalizing -> Persisting -> Done | DeadLettered.

    One instance is shared by every worker; all per-message state lives on the
    PipelineRun. Cancellation is checked before each step and during extraction
    backoff. Once Persisting is entered the run always completes.
    """

    def __init__(
        self,
        *,
        cache: ExtractionCache,
        client: ExtractionClient,
        normalizer: Normalizer,
        coordinator: IngestionCoordinator,
        dead_letters: DeadLetterStore,
        default_template_id: str = "receipt_email.v1",
        max_attempts: int | None = None,
    ) -> None:
        self.cache = cache
        self.client = client
        self.normalizer = normalizer
        self.coordinator = coordinator
        self.dead_letters = dead_letters
        self.default_template_id = default_template_id
        self.max_attempts = max_attempts or client.max_attempts
        self._extracting = _KeyedLocks()

    def run(
        self, inbound: InboundMessage, cancel_event: threading.Event | None = None
    ) -> PipelineResult:
        message = inbound.message
        run = PipelineRun(message_id=message.id, user_id=inbound.user_id)
        with log_context(message_id=message.id, user_id=inbound.user_id):
            try:
                return self._run(run, inbound, cancel_event)
            except PipelineCancelled as e:
                log_event(
                    logger,
                    "pipeline.cancelled",
                    user_id=inbound.user_id,
                    state=run.state.value,
                    reason=str(e),
                )
                return PipelineResult(
                    message_id=message.id,
                    state=run.state,
                    cancelled=True,
                    transitions=tuple(run.transitions),
                )

    def park(
        self, inbound: InboundMessage, *, reason: str, error: BaseException | None = None
    ) -> DeadLetterEntry:
        """
        Dead-letter a message that was accepted but will not be finished here.

        Used for shutdown and for runs that crashed. The entry holds the raw message
        and no draft, so replaying it runs the whole pipeline from Queued.
        """
        message = inbound.message
        _, _, _, fingerprint = self._identify(message)
        last_error = f"{type(error).__name__}: {error}" if error is not None else reason
        entry = self.dead_letters.append(
            fingerprint=fingerprint,
            user_id=inbound.user_id,
            message=message,
            stage=DeadLetterStage.QUEUED,
            last_error=last_error,
            error_history=[{"attempt": 0, "outcome": reason, "error": last_error[:500]}],
            attempt_count=0,
        )
        log_event(
            logger,
            "pipeline.parked",
            user_id=inbound.user_id,
            message_id=message.id,
            fingerprint=fingerprint,
            reason=reason,
            dead_letter_id=str(entry.id),
        )
        return entry

    def _identify(self, message: RawMessage) -> tuple[str, dict[str, int], str, str]:
        redacted, counts = redact_with_counts(message.body_text)
        template_id = template_for_channel(
            message.source_channel, default=self.default_template_id
        )
        fingerprint = fingerprint_message(message, redacted_text=redacted, template_id=template_id)
        return redacted, counts, template_id, fingerprint

    def _run(
        self,
        run: PipelineRun,
        inbound: InboundMessage,
        cancel_event: threading.Event | None,
    ) -> PipelineResult:
        message = inbound.message
        _check_cancelled(cancel_event, "before extraction")

        redacted, counts, template_id, fingerprint = self._identify(message)
        log_event(
            logger,
            "pipeline.received",
            user_id=inbound.user_id,
            fingerprint=fingerprint,
            source_channel=message.source_channel,
            template_id=template_id,
            attachments=len(message.attachments),
            redactions={k: v for k, v in counts.items() if v} or None,
        )

        run.transition(MessageState.EXTRACTING, fingerprint=fingerprint)
        cache_hit = False
        try:
            candidate, cache_hit = self._extract(
                redacted, template_id, fingerprint=fingerprint, cancel_event=cancel_event
            )
        except _ExtractionFailed as failure:
            entry = self._dead_letter_extraction(
                inbound,
                fingerprint=fingerprint,
                redacted=redacted,
                template_id=template_id,
                failure=failure,
            )
            run.transition(
                MessageState.DEAD_LETTERED,
                fingerprint=fingerprint,
                dead_letter_id=str(entry.id),
            )
            return self._result(run, fingerprint, dead_letter=entry)

        _check_cancelled(cancel_event, "before normalization")
        run.transition(MessageState.NORMALIZING, cache_hit=cache_hit)
        draft = self.normalizer.normalize(
            candidate, received_at=message.received_at, context_text=redacted
        )

        _check_cancelled(cancel_event, "before persistence")
        run.transition(
            MessageState.PERSISTING,
            validation_status=draft.validation_status.value,
            issues=list(draft.issues) or None,
        )
        outcome = self.coordinator.ingest(
            user_id=inbound.user_id, fingerprint=fingerprint, draft=draft, message=message
        )
        if outcome.record is not None:
            run.transition(
                MessageState.DONE,
                record_id=str(outcome.record.id),
                created=outcome.created,
            )
            return self._result(
                run, fingerprint, record=outcome.record, created=outcome.created, cache_hit=cache_hit
            )

        run.transition(
            MessageState.DEAD_LETTERED,
            dead_letter_id=str(outcome.dead_letter.id) if outcome.dead_letter else None,
        )
        return self._result(run, fingerprint, dead_letter=outcome.dead_letter, cache_hit=cache_hit)

    def _extract(
        self,
        redacted: str,
        template_id: str,
        *,
        fingerprint: str,
        cancel_event: threading.Event | None,
    ) -> tuple[ExtractionCandidate, bool]:
        cached = self.cache.get(fingerprint)
        if cached is not None:
            log_event(logger, "cache.hit", fingerprint=fingerprint, template_id=template_id)
            return cached, True

        # Duplicates that arrive together wait here and read what the first one cached.
        with self._extracting.hold(fingerprint):
            cached = self.cache.get(fingerprint)
            if cached is not None:
                log_event(
                    logger, "cache.hit", fingerprint=fingerprint, template_id=template_id, waited=True
                )
                return cached, True
            candidate = self._call_backend(redacted, template_id, cancel_event=cancel_event)
            self.cache.put(fingerprint, candidate)
            return candidate, False

    def _call_backend(
        self, redacted: str, template_id: str, *, cancel_event: threading.Event | None
    ) -> ExtractionCandidate:
        used = 0
        strict = False
        history: list[dict[str, Any]] = []
        while True:
            try:
                candidate = self.client.extract(
                    redacted,
                    template_id,
                    strict=strict,
                    max_attempts=self.max_attempts - used,
                    cancel_event=cancel_event,
                )
            except BackendMalformedResponse as e:
                used += e.attempts
                history.extend(dict(h, strict=strict) for h in e.history)
                if used >= self.max_attempts:
                    raise _ExtractionFailed(
                        attempts=self.max_attempts, last_error=e, history=history
                    ) from e
                # The same request would likely fail the same way; ask with the repair prompt.
                strict = True
                _check_cancelled(cancel_event, "before strict re-ask")
                continue
            except ExtractionExhausted as e:
                used += e.attempts
                history.extend(e.history)
                raise _ExtractionFailed(attempts=used, last_error=e.last_error, history=history) from e
            except BackendError as e:
                used += e.attempts
                history.append({"attempt": used, "outcome": type(e).__name__, "error": str(e)})
                raise _ExtractionFailed(attempts=used, last_error=e, history=history) from e
            return candidate

    def _dead_letter_extraction(
        self,
        inbound: InboundMessage,
        *,
        fingerprint: str,
        redacted: str,
        template_id: str,
        failure: _ExtractionFailed,
    ) -> DeadLetterEntry:
        return self.dead_letters.append(
            fingerprint=fingerprint,
            user_id=inbound.user_id,
            message=inbound.message,
            stage=DeadLetterStage.EXTRACTING,
            last_error=str(failure),
            error_history=failure.history,
            attempt_count=failure.attempts,
            draft=self._best_effort_draft(inbound.message, redacted, template_id, failure.attempts),
        )

    def _best_effort_draft(
        self, message: RawMessage, redacted: str, template_id: str, attempts: int
    ) -> ExpenseDraft | None:
        salvage = extract_with_rules(
            redacted,
            provenance=Provenance(template_id=template_id, backend_id="rules", attempts=attempts),
        )
        if salvage is None:
            return None
        return self.normalizer.normalize(
            salvage, received_at=message.received_at, context_text=redacted
        )

    def _result(self, run: PipelineRun, fingerprint: str, **fields: Any) -> PipelineResult:
        return PipelineResult(
            message_id=run.message_id,
            state=run.state,
            fingerprint=fingerprint,
            transitions=tuple(run.transitions),
            **fields,
        )


def _check_cancelled(cancel_event: threading.Event | None, where: str) -> None:
    if cancel_event is not None and cancel_event.is_set():
        raise PipelineCancelled(f"cancelled {where}")
