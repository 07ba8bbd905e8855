"""Periodic trigger: starts a sync run for every due mailbox integration."""

from __future__ import annotations

import asyncio
import signal
import time
from datetime import datetime

import structlog

from .engine import MailSyncEngine
from .errors import RunInProgressError, UnknownConfigError
from .interface import ConfigRepository
from .models import SchedulerStatus, SyncConfig, SyncResult

logger = structlog.get_logger()


class SyncScheduler:
    """Runs due integrations concurrently, at most one run per integration.

    Every run is its own asyncio task with its own sessions.  Failed runs
    are not retried immediately; the integration becomes due again after
    its interval because ``last_sync_at`` is only stamped on success.
    """

    def __init__(
        self,
        engine: MailSyncEngine,
        configs: ConfigRepository,
        *,
        tick_seconds: float,
        shutdown_event: asyncio.Event | None = None,
    ) -> None:
        self._engine = engine
        self._configs = configs
        self._tick_seconds = tick_seconds
        self._shutdown = shutdown_event or asyncio.Event()
        self._running: dict[str, asyncio.Task[SyncResult]] = {}
        self.last_results: dict[str, SyncResult] = {}
        self.status = SchedulerStatus.STARTING
        self.start_time = time.monotonic()

    @property
    def shutdown_event(self) -> asyncio.Event:
        return self._shutdown

    @property
    def active_runs(self) -> list[str]:
        return sorted(self._running)

    def is_running(self, config_id: str) -> bool:
        return config_id in self._running

    def install_signal_handlers(self) -> None:
        """Stop on SIGTERM / SIGINT.

        In-flight runs see the shutdown event between batches: the batch
        being persisted finishes and advances its cursor, later batches
        are skipped and the sessions are closed.
        """
        loop = asyncio.get_running_loop()

        def _handle(sig: signal.Signals) -> None:
            logger.info("shutdown_signal_received", signal=sig.name)
            self._shutdown.set()

        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, _handle, sig)

    # ------------------------------------------------------------------
    # Triggers
    # ------------------------------------------------------------------

    async def tick(self, now: datetime | None = None) -> list[str]:
        """Start a run for each enabled, due and idle integration."""
        try:
            configs = await self._configs.list_enabled()
        except Exception as exc:
            logger.error("scheduler_config_listing_failed", error=str(exc))
            return []

        started: list[str] = []
        for config in configs:
            if self.is_running(config.id) or not config.is_due(now):
                continue
            self._start(config)
            started.append(config.id)
        if started:
            logger.info("scheduler_runs_started", config_ids=started)
        return started

    async def trigger(self, config_id: str) -> SyncResult:
        """Run *config_id* now and wait for the result (manual sync)."""
        if self.is_running(config_id):
            raise RunInProgressError(config_id)
        config = await self._configs.get(config_id)
        if config is None:
            raise UnknownConfigError(config_id)
        if self.is_running(config_id):
            raise RunInProgressError(config_id)
        return await asyncio.shield(self._start(config))

    def _start(self, config: SyncConfig) -> asyncio.Task[SyncResult]:
        task = asyncio.create_task(self._run(config), name=f"sync-{config.id}")
        self._running[config.id] = task
        task.add_done_callback(lambda _t, cid=config.id: self._running.pop(cid, None))
        return task

    async def _run(self, config: SyncConfig) -> SyncResult:
        try:
            result = await self._engine.sync(config, cancel=self._shutdown)
        except Exception as exc:
            logger.exception("sync_run_crashed", config_id=config.id)
            result = SyncResult(config_id=config.id, success=False, errors=[f"internal: {exc}"])
        self.last_results[config.id] = result
        return result

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    async def run(self) -> None:
        """Tick until the shutdown event fires, then wait for in-flight runs."""
        self.start_time = time.monotonic()
        self.status = SchedulerStatus.RUNNING
        logger.info("scheduler_started", tick_seconds=self._tick_seconds)
        try:
            while not self._shutdown.is_set():
                await self.tick()
                try:
                    await asyncio.wait_for(self._shutdown.wait(), timeout=self._tick_seconds)
                except TimeoutError:
                    pass
        finally:
            self.status = SchedulerStatus.STOPPING
            await self.drain()
            self.status = SchedulerStatus.STOPPED
            logger.info("scheduler_stopped")

    async def drain(self) -> None:
        tasks = list(self._running.values())
        if tasks:
            logger.info("scheduler_draining", active_runs=len(tasks))
            await asyncio.gather(*tasks, return_exceptions=True)
