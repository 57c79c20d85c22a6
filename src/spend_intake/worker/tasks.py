from __future__ import annotations

# Ensure all models are registered before any task runs
# isort: off
import spend_intake.models  # noqa: F401
# isort: on

import threading
import time
from typing import Any

from celery.exceptions import Retry
from celery.signals import worker_process_init, worker_process_shutdown

from spend_intake.core.config import settings
from spend_intake.core.logging import (
    get_logger,
    log_context,
    log_event,
    log_exception,
    monotonic_ms,
)
from spend_intake.modules.expenses.errors import PersistenceError
from spend_intake.modules.intake.schemas import InboundMessage
from spend_intake.worker.celery_app import celery_app
from spend_intake.worker.runtime import PipelineRuntime, build_runtime

logger = get_logger(__name__)

# One runtime per worker process, owned by the process lifecycle signals below.
_runtime: PipelineRuntime | None = None
_runtime_lock = threading.Lock()
_shutdown = threading.Event()


def get_runtime() -> PipelineRuntime:
    global _runtime  # noqa: PLW0603
    with _runtime_lock:
        if _runtime is None:
            _runtime = build_runtime(settings)
        return _runtime


@worker_process_init.connect
def _init_runtime(**_: Any) -> None:
    _shutdown.clear()
    get_runtime()


@worker_process_shutdown.connect
def _close_runtime(**_: Any) -> None:
    global _runtime  # noqa: PLW0603
    _shutdown.set()
    with _runtime_lock:
        if _runtime is not None:
            _runtime.close()
            _runtime = None


@celery_app.task(name="process_message", bind=True, max_retries=5)
def process_message_task(self, payload: dict[str, Any]) -> dict[str, Any]:
    inbound = InboundMessage.model_validate(payload)
    task_id = getattr(self.request, "id", None)
    start = time.monotonic()
    with log_context(celery_task_id=task_id, message_id=inbound.message.id):
        log_event(logger, "celery.task.start", task_name="process_message")
        runtime = get_runtime()
        try:
            result = runtime.pipeline.run(inbound, cancel_event=_shutdown)
            if result.cancelled:
                # Nothing was persisted; let another worker pick it up.
                raise self.retry(countdown=1)
        except Retry:
            raise
        except Exception as e:
            log_exception(
                logger,
                "celery.task.error",
                task_name="process_message",
                duration_ms=monotonic_ms(start),
            )
            # The broker acks a failed task, so the message has to be kept here.
            try:
                runtime.pipeline.park(inbound, reason="pipeline_failed", error=e)
            except PersistenceError as park_error:
                raise self.retry(countdown=5, exc=park_error) from e
            raise

        log_event(
            logger,
            "celery.task.finish",
            task_name="process_message",
            state=result.state.value,
            duration_ms=monotonic_ms(start),
        )
        return {
            "message_id": result.message_id,
            "state": result.state.value,
            "fingerprint": result.fingerprint,
            "record_id": str(result.record.id) if result.record else None,
            "dead_letter_id": str(result.dead_letter.id) if result.dead_letter else None,
            "created": result.created,
        }
