"""FastAPI surface: health checks, manual sync trigger and the send endpoint."""

from __future__ import annotations

import time

from fastapi import FastAPI, HTTPException, status
from fastapi.responses import JSONResponse

from .engine import MailSyncEngine
from .errors import RunInProgressError, SendError, UnknownConfigError
from .interface import ConfigRepository
from .models import ComposeRequest, HealthStatus, SchedulerStatus, SyncResult
from .scheduler import SyncScheduler


def create_app(
    scheduler: SyncScheduler,
    engine: MailSyncEngine,
    configs: ConfigRepository,
) -> FastAPI:
    """Build the HTTP app around an already constructed scheduler and engine."""
    app = FastAPI(title="crm-mailsync", version="0.1.0", docs_url=None, redoc_url=None)

    @app.get("/health")
    async def health() -> JSONResponse:
        body = HealthStatus(
            status=scheduler.status,
            uptime_seconds=time.monotonic() - scheduler.start_time,
            active_runs=scheduler.active_runs,
            last_results=scheduler.last_results,
        )
        code = 200 if scheduler.status in (SchedulerStatus.RUNNING, SchedulerStatus.STARTING) else 503
        return JSONResponse(content=body.model_dump(mode="json"), status_code=code)

    @app.get("/ready")
    async def ready() -> JSONResponse:
        is_ready = scheduler.status == SchedulerStatus.RUNNING
        return JSONResponse(
            content={"ready": is_ready},
            status_code=200 if is_ready else 503,
        )

    @app.post("/configs/{config_id}/sync", response_model=SyncResult)
    async def trigger_sync(config_id: str) -> SyncResult:
        try:
            return await scheduler.trigger(config_id)
        except UnknownConfigError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
        except RunInProgressError as exc:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc

    @app.post("/configs/{config_id}/send")
    async def send(config_id: str, request: ComposeRequest) -> dict[str, str]:
        config = await configs.get(config_id)
        if config is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Config not found")
        try:
            message_id = await engine.send_email(config, request)
        except SendError as exc:
            raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc)) from exc
        return {"message_id": message_id}

    return app
