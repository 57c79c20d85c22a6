from __future__ import annotations

from fastapi import HTTPException, Request, status

from spend_intake.worker.runtime import PipelineRuntime


def get_runtime(request: Request) -> PipelineRuntime:
    runtime = getattr(request.app.state, "runtime", None)
    if runtime is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Pipeline not started"
        )
    return runtime
