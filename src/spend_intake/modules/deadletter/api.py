from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, HTTPException, Query, status

from spend_intake.api.deps import get_runtime
from spend_intake.modules.deadletter.schemas import (
    DeadLetterOut,
    DeadLetterReplayOut,
    DeadLetterResolveIn,
)
from spend_intake.modules.deadletter.service import replay_dead_letter
from spend_intake.worker.runtime import PipelineRuntime

router = APIRouter(tags=["dead-letters"])


@router.get("/dead-letters", response_model=list[DeadLetterOut])
def list_dead_letters_endpoint(
    unresolved_only: bool = True,
    user_id: str | None = None,
    limit: int = Query(default=100, ge=1, le=1000),
    runtime: PipelineRuntime = Depends(get_runtime),
) -> list[DeadLetterOut]:
    entries = runtime.dead_letters.list_entries(
        unresolved_only=unresolved_only, user_id=user_id, limit=limit
    )
    return [DeadLetterOut.model_validate(e, from_attributes=True) for e in entries]


@router.get("/dead-letters/{entry_id}", response_model=DeadLetterOut)
def get_dead_letter_endpoint(
    entry_id: uuid.UUID,
    runtime: PipelineRuntime = Depends(get_runtime),
) -> DeadLetterOut:
    entry = runtime.dead_letters.get(entry_id)
    if not entry:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Dead letter not found")
    return DeadLetterOut.model_validate(entry, from_attributes=True)


@router.post("/dead-letters/{entry_id}/replay", response_model=DeadLetterReplayOut)
def replay_dead_letter_endpoint(
    entry_id: uuid.UUID,
    runtime: PipelineRuntime = Depends(get_runtime),
) -> DeadLetterReplayOut:
    result = replay_dead_letter(runtime.dead_letters, entry_id, pipeline=runtime.pipeline)
    if result is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Dead letter not found")
    return DeadLetterReplayOut(
        entry_id=entry_id,
        state=result.state.value,
        resolved=result.record is not None,
        record_id=result.record.id if result.record else None,
        dead_letter_id=result.dead_letter.id if result.dead_letter else None,
        cancelled=result.cancelled,
    )


@router.post("/dead-letters/{entry_id}/resolve", response_model=DeadLetterOut)
def resolve_dead_letter_endpoint(
    entry_id: uuid.UUID,
    payload: DeadLetterResolveIn,
    runtime: PipelineRuntime = Depends(get_runtime),
) -> DeadLetterOut:
    entry = runtime.dead_letters.resolve(
        entry_id, resolution=payload.resolution, note=payload.note
    )
    if not entry:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Dead letter not found")
    return DeadLetterOut.model_validate(entry, from_attributes=True)
