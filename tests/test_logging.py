from __future__ import annotations

import json
import logging

import pytest

from spend_intake.core.logging import JsonFormatter, get_logger, log_context, log_event


class _Capture(logging.Handler):
    def __init__(self) -> None:
        super().__init__()
        self.setFormatter(JsonFormatter())
        self.lines: list[dict] = []

    def emit(self, record: logging.LogRecord) -> None:
        self.lines.append(json.loads(self.format(record)))


@pytest.fixture
def captured():
    logger = get_logger("spend_intake.tests.logging")
    handler = _Capture()
    logger.addHandler(handler)
    try:
        yield logger, handler.lines
    finally:
        logger.removeHandler(handler)


def test_context_ids_are_bound_and_released(captured) -> None:
    logger, lines = captured

    with log_context(message_id="msg-1", user_id="user-1"):
        log_event(logger, "pipeline.received", fingerprint="f" * 64)
    log_event(logger, "pool.start")

    inside, outside = lines
    assert inside["event"] == "pipeline.received"
    assert inside["message_id"] == "msg-1"
    assert inside["user_id"] == "user-1"
    assert inside["ts"].endswith("Z")
    assert "message_id" not in outside


def test_message_content_is_never_written(captured) -> None:
    logger, lines = captured

    log_event(logger, "pipeline.received", body_text="card 4111 1111 1111 1111", attachments=1)

    assert "body_text" not in lines[0]
    assert lines[0]["attachments"] == 1


def test_unknown_context_key_is_refused() -> None:
    with pytest.raises(ValueError):
        with log_context(card_number="4111"):
            pass
