from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import ValidationError

from spend_intake.api.deps import get_runtime
from spend_intake.core.logging import get_logger, log_event
from spend_intake.modules.intake.schemas import MessageAcceptedOut, MessageIn
from spend_intake.worker.errors import PoolClosed, QueueFull
from spend_intake.worker.runtime import PipelineRuntime

logger = get_logger(__name__)

router = APIRouter(tags=["intake"])


@router.post(
    "/messages",
    response_model=MessageAcceptedOut,
    status_code=status.HTTP_202_ACCEPTED,
)
def submit_message_endpoint(
    payload: MessageIn,
    request: Request,
    runtime: PipelineRuntime = Depends(get_runtime),
) -> MessageAcceptedOut:
    try:
        inbound = payload.to_inbound()
    except (ValidationError, ValueError) as e:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e)
        ) from e

    if runtime.settings.intake_queue == "celery":
        from spend_intake.worker.tasks import process_message_task

        process_message_task.delay(inbound.model_dump(mode="json"))
        log_event(logger, "intake.enqueued", queue="celery", message_id=inbound.message.id)
        return MessageAcceptedOut(message_id=inbound.message.id, queue_depth=0)

    pool = runtime.pool
    if pool is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Worker pool not started"
        )
    try:
        depth = pool.submit(
            inbound, block=True, timeout=runtime.settings.queue_submit_timeout_seconds
        )
    except QueueFull as e:
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail="Intake queue is full; retry later",
            headers={"Retry-After": "1"},
        ) from e
    except PoolClosed as e:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Intake is shutting down"
        ) from e

    log_event(
        logger,
        "intake.enqueued",
        queue="pool",
        message_id=inbound.message.id,
        queue_depth=depth,
        client=request.client.host if request.client else None,
    )
    return MessageAcceptedOut(message_id=inbound.message.id, queue_depth=depth)
