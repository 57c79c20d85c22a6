from __future__ import annotations

from collections.abc import Callable
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from spend_intake.api.router import router as api_router
from spend_intake.bootstrap import bootstrap
from spend_intake.core.config import settings
from spend_intake.core.logging import RequestContextMiddleware, get_logger, log_event
from spend_intake.worker.runtime import PipelineRuntime, build_runtime

logger = get_logger(__name__)


def create_app(runtime_factory: Callable[[], PipelineRuntime] | None = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        bootstrap()
        runtime = runtime_factory() if runtime_factory else build_runtime(settings)
        if runtime.settings.intake_queue == "pool":
            runtime.start_pool()
        app.state.runtime = runtime
        try:
            yield
        finally:
            pending = runtime.close()
            app.state.runtime = None
            if pending:
                log_event(
                    logger,
                    "intake.redeliver_required",
                    count=len(pending),
                    message_ids=[p.message.id for p in pending][:50],
                )

    app = FastAPI(title="Spend Intake", version="0.1.0", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(RequestContextMiddleware)
    app.include_router(api_router)
    return app


app = create_app()
