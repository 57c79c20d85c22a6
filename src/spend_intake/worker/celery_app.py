from __future__ import annotations

from celery import Celery

from spend_intake.core.config import settings


def make_celery() -> Celery:
    app = Celery("spend_intake", broker=settings.redis_url, backend=settings.redis_url)
    app.conf.update(
        task_always_eager=settings.environment == "dev",
        task_eager_propagates=True,
        task_track_started=True,
        # Messages are re-delivered if a worker dies mid-run; ingestion is idempotent.
        task_acks_late=True,
        task_reject_on_worker_lost=True,
        worker_prefetch_multiplier=1,
    )
    app.autodiscover_tasks(["spend_intake.worker.tasks"])
    return app


celery_app = make_celery()
