from __future__ import annotations

import uuid
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

from sqlalchemy import select
from sqlalchemy.exc import InterfaceError, OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session

from spend_intake.core.logging import get_logger, log_event
from spend_intake.core.models import utcnow
from spend_intake.modules.deadletter.models import DeadLetterEntry, DeadLetterResolution
from spend_intake.modules.expenses.errors import PersistenceRejected, PersistenceUnavailable
from spend_intake.modules.expenses.schemas import ExpenseDraft
from spend_intake.modules.intake.schemas import InboundMessage, RawMessage

if TYPE_CHECKING:
    from spend_intake.worker.pipeline import MessagePipeline, PipelineResult

logger = get_logger(__name__)


class DeadLetterStore:
    """
    Append-only log of messages that could not be turned into a record.

    Entries are never updated except to mark them resolved, either by an operator or
    by a successful replay.
    """

    def __init__(self, session_factory: Callable[[], Session]) -> None:
        self._session_factory = session_factory

    def append(
        self,
        *,
        fingerprint: str,
        user_id: str,
        message: RawMessage,
        stage: str,
        last_error: str,
        error_history: list[dict[str, Any]] | None = None,
        attempt_count: int,
        draft: ExpenseDraft | None = None,
    ) -> DeadLetterEntry:
        entry = DeadLetterEntry(
            fingerprint=fingerprint,
            user_id=user_id,
            message_id=message.id,
            stage=stage,
            raw_message_json=message.model_dump(mode="json"),
            draft_json=draft.model_dump(mode="json") if draft is not None else None,
            last_error=last_error[:2000],
            error_history_json=list(error_history or []),
            attempt_count=attempt_count,
            first_failed_at=utcnow(),
        )
        try:
            with self._session_factory() as session:
                session.add(entry)
                session.commit()
        except (OperationalError, InterfaceError) as e:
            raise PersistenceUnavailable(f"dead-letter append failed: {e}") from e
        except SQLAlchemyError as e:
            raise PersistenceRejected(f"dead-letter append failed: {e}") from e

        log_event(
            logger,
            "deadletter.append",
            entry_id=str(entry.id),
            fingerprint=fingerprint,
            stage=stage,
            attempt_count=attempt_count,
        )
        return entry

    def list_entries(
        self,
        *,
        unresolved_only: bool = True,
        user_id: str | None = None,
        limit: int = 100,
    ) -> list[DeadLetterEntry]:
        stmt = select(DeadLetterEntry).order_by(DeadLetterEntry.first_failed_at.desc())
        if unresolved_only:
            stmt = stmt.where(DeadLetterEntry.resolved_at.is_(None))
        if user_id:
            stmt = stmt.where(DeadLetterEntry.user_id == user_id)
        with self._session_factory() as session:
            return list(session.scalars(stmt.limit(max(1, limit))))

    def get(self, entry_id: uuid.UUID) -> DeadLetterEntry | None:
        with self._session_factory() as session:
            return session.get(DeadLetterEntry, entry_id)

    def resolve(
        self, entry_id: uuid.UUID, *, resolution: str, note: str | None = None
    ) -> DeadLetterEntry | None:
        with self._session_factory() as session:
            entry = session.get(DeadLetterEntry, entry_id)
            if not entry:
                return None
            if entry.resolved_at is not None:
                return entry
            entry.resolved_at = utcnow()
            entry.resolution = resolution
            entry.resolution_note = note
            session.add(entry)
            session.commit()

        log_event(logger, "deadletter.resolve", entry_id=str(entry_id), resolution=resolution)
        return entry


def inbound_from_entry(entry: DeadLetterEntry) -> InboundMessage:
    return InboundMessage(
        user_id=entry.user_id,
        message=RawMessage.model_validate(entry.raw_message_json),
    )


def replay_dead_letter(
    store: DeadLetterStore, entry_id: uuid.UUID, *, pipeline: MessagePipeline
) -> PipelineResult | None:
    """
    Re-run the full pipeline for a dead-lettered message.

    The entry is resolved only when the run reaches Done; a run that fails again
    appends its own entry and leaves this one open.
    """
    entry = store.get(entry_id)
    if not entry:
        return None

    result = pipeline.run(inbound_from_entry(entry))
    if result.record is not None:
        store.resolve(
            entry_id,
            resolution=DeadLetterResolution.REPLAYED,
            note=f"record {result.record.id}",
        )
    return result
