from __future__ import annotations

import threading
import time
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Protocol

from pydantic import ValidationError
from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from spend_intake.core.config import Settings
from spend_intake.core.logging import get_logger, log_event
from spend_intake.modules.extraction.models import ExtractionCacheEntry
from spend_intake.modules.extraction.schemas import ExtractionCandidate

logger = get_logger(__name__)

SCHEMA_VERSION = 1


class ExtractionCache(Protocol):
    def get(self, fingerprint: str) -> ExtractionCandidate | None: ...

    def put(
        self, fingerprint: str, candidate: ExtractionCandidate, ttl: float | None = None
    ) -> None: ...

    def close(self) -> None: ...


@dataclass(frozen=True)
class _Entry:
    candidate: ExtractionCandidate
    expires_at: float


class MemoryExtractionCache:
    """
    In-process cache shared by all pipeline workers.

    Entries live in an OrderedDict kept in least-recently-used order. At the size cap,
    expired entries go first; only if none are expired is the LRU live entry dropped.
    """

    def __init__(
        self,
        *,
        max_entries: int = 10000,
        default_ttl: float = 60 * 60 * 24 * 7,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_entries < 1:
            raise ValueError("max_entries must be >= 1")
        self.max_entries = max_entries
        self.default_ttl = default_ttl
        self._clock = clock
        self._entries: OrderedDict[str, _Entry] = OrderedDict()
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0
        self.evictions = 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def get(self, fingerprint: str) -> ExtractionCandidate | None:
        now = self._clock()
        with self._lock:
            entry = self._entries.get(fingerprint)
            if entry is None:
                self.misses += 1
                return None
            if entry.expires_at <= now:
                del self._entries[fingerprint]
                self.misses += 1
                return None
            self._entries.move_to_end(fingerprint)
            self.hits += 1
            return entry.candidate

    def put(
        self, fingerprint: str, candidate: ExtractionCandidate, ttl: float | None = None
    ) -> None:
        ttl = self.default_ttl if ttl is None else ttl
        if ttl <= 0:
            return
        now = self._clock()
        with self._lock:
            if fingerprint in self._entries:
                self._entries[fingerprint] = _Entry(candidate, now + ttl)
                self._entries.move_to_end(fingerprint)
                return
            if len(self._entries) >= self.max_entries:
                self._evict_locked(now)
            self._entries[fingerprint] = _Entry(candidate, now + ttl)

    def stats(self) -> dict[str, int]:
        with self._lock:
            return {
                "entries": len(self._entries),
                "hits": self.hits,
                "misses": self.misses,
                "evictions": self.evictions,
            }

    def close(self) -> None:
        with self._lock:
            self._entries.clear()

    def _evict_locked(self, now: float) -> None:
        expired = [k for k, e in self._entries.items() if e.expires_at <= now]
        for key in expired:
            del self._entries[key]
            self.evictions += 1
        while len(self._entries) >= self.max_entries:
            self._entries.popitem(last=False)
            self.evictions += 1


class SqlExtractionCache:
    """Cache rows in `extraction_candidate_cache`, shared across processes."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        *,
        max_entries: int = 10000,
        default_ttl: float = 60 * 60 * 24 * 7,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self._session_factory = session_factory
        self.max_entries = max_entries
        self.default_ttl = default_ttl
        self._clock = clock

    def get(self, fingerprint: str) -> ExtractionCandidate | None:
        now = self._clock()
        with self._session_factory() as session:
            row = session.scalar(
                select(ExtractionCacheEntry).where(
                    ExtractionCacheEntry.fingerprint == fingerprint,
                    ExtractionCacheEntry.expires_at > now,
                )
            )
            if not row:
                return None
            if row.schema_version != SCHEMA_VERSION:
                return None
            if not isinstance(row.candidate_json, dict):
                return None
            try:
                candidate = ExtractionCandidate.model_validate(row.candidate_json)
            except ValidationError:
                log_event(logger, "cache.entry.invalid", fingerprint=fingerprint)
                return None
            session.execute(
                update(ExtractionCacheEntry)
                .where(ExtractionCacheEntry.id == row.id)
                .values(last_used_at=now)
            )
            session.commit()
            return candidate

    def put(
        self, fingerprint: str, candidate: ExtractionCandidate, ttl: float | None = None
    ) -> None:
        ttl = self.default_ttl if ttl is None else ttl
        if ttl <= 0:
            return
        now = self._clock()
        expires_at = now + timedelta(seconds=ttl)
        payload = candidate.model_dump(mode="json")

        with self._session_factory() as session:
            cached = session.scalar(
                select(ExtractionCacheEntry).where(ExtractionCacheEntry.fingerprint == fingerprint)
            )
            if not cached:
                row = ExtractionCacheEntry(
                    fingerprint=fingerprint,
                    template_id=candidate.provenance.template_id,
                    backend_id=candidate.provenance.backend_id,
                    schema_version=SCHEMA_VERSION,
                    candidate_json=payload,
                    expires_at=expires_at,
                    last_used_at=now,
                )
                try:
                    with session.begin_nested():
                        session.add(row)
                        session.flush()
                    session.commit()
                    self._prune(session, now)
                    return
                except IntegrityError:
                    cached = session.scalar(
                        select(ExtractionCacheEntry).where(
                            ExtractionCacheEntry.fingerprint == fingerprint
                        )
                    )
                    if not cached:
                        return
            # Last writer wins: values for one fingerprint are interchangeable.
            cached.template_id = candidate.provenance.template_id
            cached.backend_id = candidate.provenance.backend_id
            cached.schema_version = SCHEMA_VERSION
            cached.candidate_json = payload
            cached.expires_at = expires_at
            cached.last_used_at = now
            session.add(cached)
            session.commit()

    def close(self) -> None:
        return None

    def _prune(self, session: Session, now: datetime) -> None:
        count = session.scalar(select(func.count()).select_from(ExtractionCacheEntry)) or 0
        if count <= self.max_entries:
            return
        session.execute(
            delete(ExtractionCacheEntry).where(ExtractionCacheEntry.expires_at <= now)
        )
        count = session.scalar(select(func.count()).select_from(ExtractionCacheEntry)) or 0
        overflow = count - self.max_entries
        if overflow > 0:
            lru_ids = list(
                session.scalars(
                    select(ExtractionCacheEntry.id)
                    .order_by(ExtractionCacheEntry.last_used_at.asc())
                    .limit(overflow)
                )
            )
            session.execute(
                delete(ExtractionCacheEntry).where(ExtractionCacheEntry.id.in_(lru_ids))
            )
        session.commit()


def build_cache(settings: Settings, *, session_factory: Callable[[], Session]) -> ExtractionCache:
    if settings.extraction_cache_backend == "sql":
        return SqlExtractionCache(
            session_factory,
            max_entries=settings.extraction_cache_max_entries,
            default_ttl=settings.extraction_cache_ttl_seconds,
        )
    return MemoryExtractionCache(
        max_entries=settings.extraction_cache_max_entries,
        default_ttl=settings.extraction_cache_ttl_seconds,
    )
