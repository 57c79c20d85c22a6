from __future__ import annotations

import contextvars
import json
import logging
import os
import time
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

# Ids bound for the duration of a request, a pipeline run or a Celery task.
_CONTEXT: dict[str, contextvars.ContextVar[str | None]] = {
    name: contextvars.ContextVar(name, default=None)
    for name in ("request_id", "message_id", "user_id", "celery_task_id")
}

# Message content must never reach the log stream, whatever a caller passes.
_CONTENT_FIELDS = frozenset({"body_text", "content_b64", "redacted_text", "raw_text"})

_configured = False


class JsonFormatter(logging.Formatter):
    """One JSON object per line: ts, level, logger, thread, event and the bound ids."""

    def format(self, record: logging.LogRecord) -> str:
        ts = datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat()
        payload: dict[str, Any] = {
            "ts": ts.replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "thread": record.threadName,
            "message": record.getMessage(),
        }
        if getattr(record, "event", None):
            payload["event"] = record.event
        fields = getattr(record, "fields", None)
        if isinstance(fields, dict):
            payload.update(fields)
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str, ensure_ascii=True)


def configure_logging(level: str | None = None) -> None:
    global _configured  # noqa: PLW0603
    if _configured:
        return
    level_name = (level or os.getenv("LOG_LEVEL") or "INFO").upper()
    resolved = logging.getLevelNamesMapping().get(level_name, logging.INFO)
    handler = logging.StreamHandler()
    handler.setFormatter(JsonFormatter())
    root = logging.getLogger("spend_intake")
    root.setLevel(resolved)
    root.handlers = [handler]
    root.propagate = False
    _configured = True


def get_logger(name: str) -> logging.Logger:
    configure_logging()
    return logging.getLogger(name)


@contextmanager
def log_context(**ids: str | None) -> Iterator[None]:
    """Bind ids (request_id, message_id, user_id, celery_task_id) to every event in the block."""
    unknown = set(ids) - set(_CONTEXT)
    if unknown:
        raise ValueError(f"unknown log context keys: {sorted(unknown)}")
    tokens = [(_CONTEXT[name], _CONTEXT[name].set(value)) for name, value in ids.items()]
    try:
        yield
    finally:
        for var, token in reversed(tokens):
            var.reset(token)


def _merge_fields(fields: dict[str, Any]) -> dict[str, Any]:
    payload = {name: var.get() for name, var in _CONTEXT.items() if var.get()}
    for key, value in fields.items():
        if value is None or key in _CONTENT_FIELDS:
            continue
        payload[key] = value
    return payload


def log_event(
    logger: logging.Logger, event: str, *, level: int = logging.INFO, **fields: Any
) -> None:
    logger.log(level, event, extra={"event": event, "fields": _merge_fields(fields)})


def log_exception(logger: logging.Logger, event: str, **fields: Any) -> None:
    logger.exception(event, extra={"event": event, "fields": _merge_fields(fields)})


class RequestContextMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = request.headers.get("x-request-id") or str(uuid.uuid4())
        with log_context(request_id=request_id):
            try:
                response = await call_next(request)
            except Exception:
                log_exception(
                    get_logger(__name__),
                    "http.request.error",
                    method=request.method,
                    path=request.url.path,
                )
                raise
        response.headers["x-request-id"] = request_id
        return response


def monotonic_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)
