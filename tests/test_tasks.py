from __future__ import annotations

import pytest
from conftest import CAFE_REPLY, FakeBackend
from fastapi.testclient import TestClient

from spend_intake.core.config import Settings
from spend_intake.core.db import SessionLocal
from spend_intake.main import create_app
from spend_intake.modules.deadletter.service import DeadLetterStore
from spend_intake.modules.extraction.errors import BackendTimeout
from spend_intake.worker import tasks
from spend_intake.worker.runtime import build_runtime


def _runtime(backend, **overrides):
    values = {
        "environment": "test",
        "extraction_max_attempts": 2,
        "extraction_backoff_base_seconds": 0.001,
        "extraction_backoff_max_seconds": 0.01,
        "extraction_backoff_jitter_seconds": 0.0,
    }
    values.update(overrides)
    return build_runtime(Settings(**values), backend=backend)


def test_process_message_task_runs_pipeline(monkeypatch, make_inbound) -> None:
    monkeypatch.setattr(tasks, "_runtime", _runtime(FakeBackend(CAFE_REPLY)))
    payload = make_inbound().model_dump(mode="json")

    result = tasks.process_message_task.apply(args=[payload]).get()

    assert result["state"] == "done"
    assert result["created"] is True
    assert result["record_id"]

    again = tasks.process_message_task.apply(args=[payload]).get()
    assert again["created"] is False
    assert again["record_id"] == result["record_id"]


def test_process_message_task_reports_dead_letter(monkeypatch, make_inbound) -> None:
    monkeypatch.setattr(tasks, "_runtime", _runtime(FakeBackend(BackendTimeout)))

    result = tasks.process_message_task.apply(
        args=[make_inbound().model_dump(mode="json")]
    ).get()

    assert result["state"] == "dead_lettered"
    assert result["record_id"] is None
    assert result["dead_letter_id"]


def test_crashed_task_keeps_the_message(monkeypatch, make_inbound) -> None:
    runtime = _runtime(FakeBackend(CAFE_REPLY))

    def _normalize(*_args, **_kwargs):
        raise RuntimeError("normalizer bug")

    runtime.pipeline.normalizer.normalize = _normalize
    monkeypatch.setattr(tasks, "_runtime", runtime)

    with pytest.raises(RuntimeError):
        tasks.process_message_task.apply(args=[make_inbound().model_dump(mode="json")])

    entries = DeadLetterStore(SessionLocal).list_entries()
    assert len(entries) == 1
    assert entries[0].stage == "queued"
    assert entries[0].last_error == "RuntimeError: normalizer bug"


class _TaskStub:
    def __init__(self) -> None:
        self.sent: list[dict] = []

    def delay(self, payload: dict) -> None:
        self.sent.append(payload)


def test_celery_intake_enqueues_instead_of_pool(monkeypatch) -> None:
    stub = _TaskStub()
    monkeypatch.setattr(tasks, "process_message_task", stub)
    app = create_app(
        runtime_factory=lambda: _runtime(FakeBackend(CAFE_REPLY), intake_queue="celery")
    )

    with TestClient(app) as client:
        assert client.app.state.runtime.pool is None
        r = client.post(
            "/api/messages",
            json={
                "user_id": "user-1",
                "id": "msg-9",
                "received_at": "2025-09-02T12:00:00Z",
                "body_text": "Cafe ABC $42.50 9/1/2025",
            },
        )

    assert r.status_code == 202
    assert r.json()["queue_depth"] == 0
    assert len(stub.sent) == 1
    assert stub.sent[0]["user_id"] == "user-1"
    assert stub.sent[0]["message"]["id"] == "msg-9"
