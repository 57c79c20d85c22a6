from __future__ import annotations

from typing import Any


class BackendError(Exception):
    """Base class for failures talking to the extraction backend."""

    transient = False

    def __init__(self, message: str = "", *, attempts: int = 1) -> None:
        super().__init__(message or self.__class__.__name__)
        self.attempts = attempts


class BackendTimeout(BackendError):
    transient = True


class BackendRateLimited(BackendError):
    transient = True

    def __init__(
        self, message: str = "", *, retry_after: float | None = None, attempts: int = 1
    ) -> None:
        super().__init__(message, attempts=attempts)
        self.retry_after = retry_after


class BackendUnavailable(BackendError):
    """5xx responses and transport failures (connection reset, DNS, ...)."""

    transient = True


class BackendRejected(BackendError):
    """Non-retryable 4xx: bad credentials, unknown model, request too large."""


class BackendMalformedResponse(BackendError):
    def __init__(
        self,
        message: str = "",
        *,
        attempts: int = 1,
        history: list[dict[str, Any]] | None = None,
        preview: str | None = None,
    ) -> None:
        super().__init__(message, attempts=attempts)
        self.history = list(history or [])
        self.preview = preview


class ExtractionExhausted(Exception):
    """Transient backend failures persisted through every allowed attempt."""

    def __init__(
        self,
        *,
        attempts: int,
        last_error: BaseException | None,
        history: list[dict[str, Any]],
    ) -> None:
        name = type(last_error).__name__ if last_error else "unknown"
        super().__init__(f"extraction failed after {attempts} attempts: {name}: {last_error}")
        self.attempts = attempts
        self.last_error = last_error
        self.history = history
