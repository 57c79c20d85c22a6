from __future__ import annotations

import os
import threading
import time
from datetime import UTC, datetime

import pytest

# Set env before any spend_intake imports (settings/engine are created at import time).
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("DATABASE_URL", "sqlite:///./.spend_intake_test.db")
os.environ.setdefault("EXTRACTION_CACHE_BACKEND", "memory")
os.environ.setdefault("EXTRACTION_API_KEY", "")


@pytest.fixture(autouse=True)
def _reset_db() -> None:
    import spend_intake.models  # noqa: F401
    from spend_intake.core.db import engine
    from spend_intake.core.models import Base

    Base.metadata.drop_all(engine)
    Base.metadata.create_all(engine)

    yield


RECEIVED_AT = datetime(2025, 9, 2, 12, 0, tzinfo=UTC)

CAFE_REPLY = {
    "date": "2025-09-01",
    "amount": "42.50",
    "currency": "USD",
    "vendor": "Cafe ABC",
    "category": "Food",
    "confidence": 0.95,
}


class FakeBackend:
    """
    Scripted extraction backend.

    Each call consumes the next reply; the last one repeats. A reply that is an
    exception class is raised as a fresh instance, an exception instance is raised as is.
    """

    backend_id = "fake:test"

    def __init__(self, *replies, delay: float = 0.0) -> None:
        self.replies = list(replies) or [CAFE_REPLY]
        self.delay = delay
        self.calls: list[dict] = []
        self._lock = threading.Lock()

    def complete(self, redacted_text, template, *, timeout, strict=False):
        from spend_intake.modules.extraction.schemas import BackendReply

        with self._lock:
            idx = min(len(self.calls), len(self.replies) - 1)
            self.calls.append(
                {"text": redacted_text, "template_id": template.template_id, "strict": strict}
            )
            reply = self.replies[idx]
        if self.delay:
            threading.Event().wait(self.delay)
        if isinstance(reply, type) and issubclass(reply, BaseException):
            raise reply("scripted failure")
        if isinstance(reply, BaseException):
            raise reply
        return BackendReply(payload=reply, backend_id=self.backend_id)


@pytest.fixture
def make_inbound():
    from spend_intake.modules.intake.schemas import InboundMessage, RawMessage

    def _make(
        body: str = "Cafe ABC $42.50 9/1/2025",
        *,
        user_id: str = "user-1",
        message_id: str = "msg-1",
        received_at: datetime = RECEIVED_AT,
        source_channel: str = "email",
        attachments=(),
    ) -> InboundMessage:
        return InboundMessage(
            user_id=user_id,
            message=RawMessage(
                id=message_id,
                received_at=received_at,
                source_channel=source_channel,
                body_text=body,
                attachments=tuple(attachments),
            ),
        )

    return _make


@pytest.fixture
def build_pipeline():
    from spend_intake.core.backoff import BackoffPolicy
    from spend_intake.core.db import SessionLocal
    from spend_intake.modules.deadletter.service import DeadLetterStore
    from spend_intake.modules.expenses.normalization import Normalizer
    from spend_intake.modules.expenses.service import IngestionCoordinator, SqlExpenseStore
    from spend_intake.modules.extraction.cache import MemoryExtractionCache
    from spend_intake.modules.extraction.client import ExtractionClient
    from spend_intake.worker.pipeline import MessagePipeline

    def _build(
        backend,
        *,
        max_attempts: int = 3,
        cache=None,
        store=None,
        persistence_attempts: int = 3,
        sleep=None,
    ) -> MessagePipeline:
        client = ExtractionClient(
            backend,
            max_attempts=max_attempts,
            backoff=BackoffPolicy(base_seconds=0.001, max_seconds=0.01, jitter_seconds=0.0),
            sleep=sleep or (lambda _s: None),
        )
        dead_letters = DeadLetterStore(SessionLocal)
        coordinator = IngestionCoordinator(
            store or SqlExpenseStore(SessionLocal),
            dead_letters,
            max_attempts=persistence_attempts,
            sleep=lambda _s: None,
        )
        return MessagePipeline(
            cache=cache if cache is not None else MemoryExtractionCache(max_entries=100),
            client=client,
            normalizer=Normalizer(),
            coordinator=coordinator,
            dead_letters=dead_letters,
        )

    return _build


class BlockingPipeline:
    """Holds every run until released, or until the pool cancels it."""

    def __init__(self) -> None:
        self.started = threading.Event()
        self.release = threading.Event()

    def run(self, inbound, cancel_event=None):
        from spend_intake.worker.pipeline import MessageState, PipelineResult

        self.started.set()
        while not self.release.is_set():
            if cancel_event is not None and cancel_event.is_set():
                return PipelineResult(
                    message_id=inbound.message.id, state=MessageState.EXTRACTING, cancelled=True
                )
            time.sleep(0.005)
        return PipelineResult(message_id=inbound.message.id, state=MessageState.DONE)
