"""Entry point for the mail sync service.

Usage::

    python -m crm_mailsync serve              # scheduler + HTTP surface
    python -m crm_mailsync sync <config_id>   # one run, result JSON on stdout
"""

from __future__ import annotations

import asyncio
import sys
from dataclasses import dataclass

import structlog
import uvicorn
from sqlalchemy.ext.asyncio import AsyncEngine

from .api import create_app
from .config import SyncSettings
from .cursor_store import SqlCursorStore
from .db import make_engine, make_session_factory
from .engine import MailSyncEngine
from .logging import setup_logging
from .scheduler import SyncScheduler
from .store import SqlActivityStore, SqlConfigRepository, SqlContactDirectory

logger = structlog.get_logger()


@dataclass
class Service:
    db: AsyncEngine
    configs: SqlConfigRepository
    engine: MailSyncEngine
    scheduler: SyncScheduler


def build_service(settings: SyncSettings) -> Service:
    db = make_engine(settings.database_url)
    sessions = make_session_factory(db)
    configs = SqlConfigRepository(sessions)
    engine = MailSyncEngine(
        settings,
        configs=configs,
        cursors=SqlCursorStore(sessions),
        contacts=SqlContactDirectory(sessions),
        activities=SqlActivityStore(sessions),
    )
    scheduler = SyncScheduler(engine, configs, tick_seconds=settings.scheduler_tick_seconds)
    return Service(db=db, configs=configs, engine=engine, scheduler=scheduler)


async def serve(settings: SyncSettings) -> None:
    service = build_service(settings)
    service.scheduler.install_signal_handlers()

    app = create_app(service.scheduler, service.engine, service.configs)
    server = uvicorn.Server(
        uvicorn.Config(app, host="0.0.0.0", port=settings.health_port, log_level="warning")
    )

    async def _run_http() -> None:
        serve_task = asyncio.create_task(server.serve())
        await service.scheduler.shutdown_event.wait()
        server.should_exit = True
        await serve_task

    try:
        async with asyncio.TaskGroup() as tg:
            tg.create_task(service.scheduler.run())
            tg.create_task(_run_http())
    finally:
        await service.db.dispose()
        logger.info("service_stopped")


async def sync_once(settings: SyncSettings, config_id: str) -> int:
    service = build_service(settings)
    try:
        config = await service.configs.get(config_id)
        if config is None:
            print(f"Unknown config: {config_id}", file=sys.stderr)
            return 1
        result = await service.engine.sync(config)
    finally:
        await service.db.dispose()
    print(result.model_dump_json(indent=2))
    return 0 if result.success else 2


def main() -> None:
    if len(sys.argv) < 2 or sys.argv[1] not in ("serve", "sync"):
        print("Usage: python -m crm_mailsync <serve|sync CONFIG_ID>", file=sys.stderr)
        sys.exit(1)

    settings = SyncSettings()
    setup_logging(json=settings.log_json, level=settings.log_level)

    if sys.argv[1] == "serve":
        asyncio.run(serve(settings))
        return

    if len(sys.argv) < 3:
        print("Usage: python -m crm_mailsync sync CONFIG_ID", file=sys.stderr)
        sys.exit(1)
    sys.exit(asyncio.run(sync_once(settings, sys.argv[2])))


if __name__ == "__main__":
    main()
