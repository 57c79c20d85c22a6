from __future__ import annotations

import random
from dataclasses import dataclass


@dataclass(frozen=True)
class BackoffPolicy:
    base_seconds: float = 0.5
    max_seconds: float = 8.0
    jitter_seconds: float = 0.25


class Backoff:
    """
    Exponential backoff schedule for one logical operation.

    delay(attempt) = min(max, base * 2**attempt) + U(0, jitter), never lower than
    the previous delay handed out, so a retry sequence only slows down.
    """

    def __init__(self, policy: BackoffPolicy, *, rng: random.Random | None = None) -> None:
        self.policy = policy
        self._rng = rng or random.Random()
        self._attempt = 0
        self._last = 0.0

    @property
    def last_delay(self) -> float:
        return self._last

    def next_delay(self, *, hint: float | None = None) -> float:
        p = self.policy
        raw = min(p.max_seconds, p.base_seconds * (2**self._attempt))
        if p.jitter_seconds > 0:
            raw += self._rng.uniform(0, p.jitter_seconds)
        if hint is not None and hint > 0:
            # Server-provided Retry-After is honoured but still bounded by the cap.
            raw = max(raw, min(float(hint), p.max_seconds + p.jitter_seconds))
        delay = max(raw, self._last)
        self._attempt += 1
        self._last = delay
        return delay
