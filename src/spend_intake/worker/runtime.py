from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass

from sqlalchemy.orm import Session

from spend_intake.core.backoff import BackoffPolicy
from spend_intake.core.config import Settings
from spend_intake.core.logging import get_logger, log_event, log_exception
from spend_intake.modules.deadletter.service import DeadLetterStore
from spend_intake.modules.expenses.errors import PersistenceError
from spend_intake.modules.expenses.normalization import NormalizationPolicy, Normalizer
from spend_intake.modules.expenses.service import IngestionCoordinator, SqlExpenseStore
from spend_intake.modules.extraction.ai import HttpExtractionBackend
from spend_intake.modules.extraction.cache import ExtractionCache, build_cache
from spend_intake.modules.extraction.client import ExtractionBackend, ExtractionClient
from spend_intake.modules.intake.schemas import InboundMessage
from spend_intake.worker.pipeline import MessagePipeline
from spend_intake.worker.pool import WorkerPool

logger = get_logger(__name__)


@dataclass
class PipelineRuntime:
    """Everything one process needs to run messages, built at start and closed at exit."""

    settings: Settings
    cache: ExtractionCache
    backend: ExtractionBackend
    client: ExtractionClient
    dead_letters: DeadLetterStore
    coordinator: IngestionCoordinator
    pipeline: MessagePipeline
    pool: WorkerPool | None = None

    def start_pool(self) -> WorkerPool:
        if self.pool is None:
            self.pool = WorkerPool(
                self.pipeline,
                workers=self.settings.worker_count,
                queue_maxsize=self.settings.queue_maxsize,
            )
        self.pool.start()
        return self.pool

    def close(self, *, drain: bool = False) -> list[InboundMessage]:
        """
        Stop the pool and release clients.

        Messages the pool accepted but did not finish are dead-lettered at the queued
        stage so a replay picks them up. Only those that could not be written are
        returned.
        """
        pending: list[InboundMessage] = []
        if self.pool is not None:
            pending = self.pool.shutdown(drain=drain)
        unparked = self.park(pending, reason="shutdown")
        self.cache.close()
        close_backend = getattr(self.backend, "close", None)
        if callable(close_backend):
            close_backend()
        log_event(
            logger,
            "runtime.close",
            parked=len(pending) - len(unparked),
            redeliver=len(unparked),
        )
        return unparked

    def park(self, messages: list[InboundMessage], *, reason: str) -> list[InboundMessage]:
        unparked = []
        for inbound in messages:
            try:
                self.pipeline.park(inbound, reason=reason)
            except PersistenceError:
                log_exception(logger, "runtime.park_failed", message_id=inbound.message.id)
                unparked.append(inbound)
        return unparked


def build_runtime(
    settings: Settings,
    *,
    session_factory: Callable[[], Session] | None = None,
    backend: ExtractionBackend | None = None,
    cache: ExtractionCache | None = None,
) -> PipelineRuntime:
    if session_factory is None:
        from spend_intake.core.db import SessionLocal

        session_factory = SessionLocal

    if backend is None:
        backend = HttpExtractionBackend(
            base_url=settings.extraction_base_url,
            api_key=settings.extraction_api_key,
            model=settings.extraction_model,
            max_chars=settings.extraction_max_chars,
        )
    if cache is None:
        cache = build_cache(settings, session_factory=session_factory)

    client = ExtractionClient(
        backend,
        timeout_seconds=settings.extraction_timeout_seconds,
        max_attempts=settings.extraction_max_attempts,
        backoff=BackoffPolicy(
            base_seconds=settings.extraction_backoff_base_seconds,
            max_seconds=settings.extraction_backoff_max_seconds,
            jitter_seconds=settings.extraction_backoff_jitter_seconds,
        ),
        max_in_flight=settings.extraction_max_in_flight,
    )
    dead_letters = DeadLetterStore(session_factory)
    coordinator = IngestionCoordinator(
        SqlExpenseStore(session_factory),
        dead_letters,
        max_attempts=settings.persistence_max_attempts,
        backoff=BackoffPolicy(
            base_seconds=settings.persistence_backoff_base_seconds,
            max_seconds=settings.extraction_backoff_max_seconds,
            jitter_seconds=settings.extraction_backoff_jitter_seconds,
        ),
    )
    pipeline = MessagePipeline(
        cache=cache,
        client=client,
        normalizer=Normalizer(NormalizationPolicy.from_settings(settings)),
        coordinator=coordinator,
        dead_letters=dead_letters,
        default_template_id=settings.default_template_id,
    )
    log_event(
        logger,
        "runtime.build",
        cache_backend=settings.extraction_cache_backend,
        backend_id=getattr(backend, "backend_id", type(backend).__name__),
        max_attempts=settings.extraction_max_attempts,
        max_in_flight=settings.extraction_max_in_flight,
    )
    return PipelineRuntime(
        settings=settings,
        cache=cache,
        backend=backend,
        client=client,
        dead_letters=dead_letters,
        coordinator=coordinator,
        pipeline=pipeline,
    )
