from __future__ import annotations

from fastapi import APIRouter, Request

from spend_intake.modules.deadletter.api import router as deadletter_router
from spend_intake.modules.expenses.api import router as expenses_router
from spend_intake.modules.intake.api import router as intake_router

router = APIRouter()

router.include_router(intake_router, prefix="/api")
router.include_router(deadletter_router, prefix="/api")
router.include_router(expenses_router, prefix="/api")


@router.get("/healthz")
def healthz(request: Request) -> dict:
    runtime = getattr(request.app.state, "runtime", None)
    payload: dict = {"status": "ok"}
    if runtime is not None:
        payload["extraction"] = runtime.client.snapshot_counters()
        if runtime.pool is not None:
            payload["pool"] = runtime.pool.stats()
        stats = getattr(runtime.cache, "stats", None)
        if callable(stats):
            payload["cache"] = stats()
    return payload
