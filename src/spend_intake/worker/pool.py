from __future__ import annotations

import queue
import threading
import time
from collections import Counter
from collections.abc import Callable
from typing import Any

from spend_intake.core.logging import get_logger, log_event, log_exception, monotonic_ms
from spend_intake.modules.expenses.errors import PersistenceError
from spend_intake.modules.intake.schemas import InboundMessage
from spend_intake.worker.errors import PoolClosed, QueueFull
from spend_intake.worker.pipeline import MessagePipeline, PipelineResult

logger = get_logger(__name__)

_STOP = object()


class WorkerPool:
    """
    Fixed set of worker threads draining a bounded in-memory queue.

    `submit` never blocks longer than the caller allows: a full queue raises QueueFull
    so the intake boundary can push back. `shutdown` returns every message that was
    accepted but not finished, for redelivery. A run that raises is dead-lettered
    through `MessagePipeline.park` and only falls back to redelivery when that fails.
    """

    def __init__(
        self,
        pipeline: MessagePipeline,
        *,
        workers: int = 4,
        queue_maxsize: int = 256,
        on_result: Callable[[PipelineResult], None] | None = None,
        name: str = "spend-intake-worker",
    ) -> None:
        if workers < 1:
            raise ValueError("workers must be >= 1")
        if queue_maxsize < 1:
            raise ValueError("queue_maxsize must be >= 1")
        self.pipeline = pipeline
        self.workers = workers
        self.queue_maxsize = queue_maxsize
        self.name = name
        self._on_result = on_result
        self._queue: queue.Queue[Any] = queue.Queue(maxsize=queue_maxsize)
        self._cancel = threading.Event()
        self._lock = threading.Lock()
        # Held across the closed check and the put so shutdown cannot slip between them.
        self._submit_lock = threading.Lock()
        self._threads: list[threading.Thread] = []
        self._started = False
        self._closed = False
        self._in_flight = 0
        self._redeliver: list[InboundMessage] = []
        self.counters: Counter[str] = Counter()

    def start(self) -> None:
        with self._lock:
            if self._started:
                return
            self._started = True
            for i in range(self.workers):
                t = threading.Thread(target=self._work, name=f"{self.name}-{i}", daemon=True)
                t.start()
                self._threads.append(t)
        log_event(logger, "pool.start", workers=self.workers, queue_maxsize=self.queue_maxsize)

    def submit(
        self, inbound: InboundMessage, *, block: bool = False, timeout: float | None = None
    ) -> int:
        """Enqueue a message and return the queue depth after it was accepted."""
        with self._submit_lock:
            if not self._started or self._closed:
                raise PoolClosed("worker pool is not accepting messages")
            try:
                self._queue.put(inbound, block=block, timeout=timeout)
            except queue.Full:
                full = True
            else:
                full = False
        if full:
            with self._lock:
                self.counters["rejected"] += 1
            log_event(
                logger,
                "pool.backpressure",
                message_id=inbound.message.id,
                queue_depth=self._queue.qsize(),
            )
            raise QueueFull(f"queue is at capacity ({self.queue_maxsize})")
        with self._lock:
            self.counters["submitted"] += 1
        return self._queue.qsize()

    def join(self) -> None:
        """Block until every accepted message has been processed."""
        self._queue.join()

    def shutdown(self, *, drain: bool = False, timeout: float | None = 30.0) -> list[InboundMessage]:
        with self._submit_lock, self._lock:
            if self._closed:
                return []
            self._closed = True
            started = self._started

        start = time.monotonic()
        if drain and started:
            self._queue.join()
        else:
            self._cancel.set()
            while True:
                try:
                    item = self._queue.get_nowait()
                except queue.Empty:
                    break
                if item is not _STOP:
                    self._defer(item)
                self._queue.task_done()

        for _ in self._threads:
            self._queue.put(_STOP)
        for t in self._threads:
            t.join(timeout=timeout)

        with self._lock:
            pending = list(self._redeliver)
            self._redeliver.clear()
        log_event(
            logger,
            "pool.shutdown",
            drain=drain,
            redeliver=len(pending),
            duration_ms=monotonic_ms(start),
        )
        return pending

    def stats(self) -> dict[str, Any]:
        with self._lock:
            return {
                "workers": self.workers,
                "alive": sum(1 for t in self._threads if t.is_alive()),
                "queue_depth": self._queue.qsize(),
                "queue_maxsize": self.queue_maxsize,
                "in_flight": self._in_flight,
                "closed": self._closed,
                **dict(self.counters),
            }

    def _work(self) -> None:
        while True:
            item = self._queue.get()
            try:
                if item is _STOP:
                    return
                if self._cancel.is_set():
                    self._defer(item)
                    continue
                self._process(item)
            finally:
                self._queue.task_done()

    def _process(self, inbound: InboundMessage) -> None:
        with self._lock:
            self._in_flight += 1
        try:
            result = self.pipeline.run(inbound, cancel_event=self._cancel)
        except Exception as e:
            # Keep the worker alive and the message on record.
            log_exception(logger, "pipeline.failed", message_id=inbound.message.id)
            with self._lock:
                self.counters["failed"] += 1
            self._park(inbound, e)
            return
        finally:
            with self._lock:
                self._in_flight -= 1

        if result.cancelled:
            with self._lock:
                self.counters["cancelled"] += 1
            self._defer(inbound)
            return

        with self._lock:
            self.counters[result.state.value] += 1
        if self._on_result is not None:
            self._on_result(result)

    def _park(self, inbound: InboundMessage, error: Exception) -> None:
        try:
            self.pipeline.park(inbound, reason="pipeline_failed", error=error)
        except PersistenceError:
            log_exception(logger, "pipeline.park_failed", message_id=inbound.message.id)
            self._defer(inbound)
            return
        with self._lock:
            self.counters["parked"] += 1

    def _defer(self, inbound: InboundMessage) -> None:
        with self._lock:
            self._redeliver.append(inbound)
