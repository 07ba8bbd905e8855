"""Inbound and outbound folder sync pipelines.

Each pipeline pages through one folder past its stored cursor, normalizes
every message, correlates it to a contact, records an activity, and only
then advances the cursor.

Cursor policy: the durable cursor advances only through the last
*contiguous* successfully handled ordinal.  A message that fails to fetch
or parse blocks further advancement for the rest of the run, so it is
retried on the next run; later messages in the same run are still
processed and re-delivered idempotently next time.
"""

from __future__ import annotations

import abc
import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum

import structlog

from .config import RetryConfig
from .correlation import ActivityCorrelator
from .errors import CorrelationMiss, FetchError, ParseError
from .interface import CursorStore, FetchBatch, FolderInfo, ReadSession
from .models import CursorFolder, Direction, SyncConfig
from .normalizer import MessageNormalizer
from .retry import storage_call

logger = structlog.get_logger()

INBOX_FOLDER = "INBOX"

SENT_FOLDER_CANDIDATES = (
    "Sent",
    "Sent Items",
    "Sent Mail",
    "[Gmail]/Sent Mail",
    "Sent Messages",
    "INBOX.Sent",
)


class SyncState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    FETCHING_BATCH = "fetching_batch"
    NORMALIZING = "normalizing"
    PERSISTING = "correlating_and_persisting"
    ADVANCING_CURSOR = "advancing_cursor"
    FAILED = "failed"


@dataclass
class StopCondition:
    """When to stop starting new batches: time budget or cancellation."""

    deadline: float
    cancel: asyncio.Event | None = None

    @classmethod
    def after(cls, seconds: float, cancel: asyncio.Event | None = None) -> StopCondition:
        return cls(deadline=time.monotonic() + seconds, cancel=cancel)

    @property
    def reason(self) -> str | None:
        if self.cancel is not None and self.cancel.is_set():
            return "cancelled"
        if time.monotonic() >= self.deadline:
            return "time_budget_exhausted"
        return None


@dataclass
class PipelineResult:
    synced: int = 0
    errors: list[str] = field(default_factory=list)
    cursor: int = 0
    folder: str | None = None


class FolderPipeline(abc.ABC):
    """Shared batch loop; subclasses choose folder, direction and cursor key."""

    direction: Direction
    cursor_folder: CursorFolder

    def __init__(
        self,
        config: SyncConfig,
        session: ReadSession,
        cursors: CursorStore,
        correlator: ActivityCorrelator,
        *,
        batch_size: int,
        retry: RetryConfig,
    ) -> None:
        self._config = config
        self._session = session
        self._cursors = cursors
        self._correlator = correlator
        self._batch_size = batch_size
        self._retry = retry
        self.state = SyncState.IDLE

    @abc.abstractmethod
    async def resolve_folder(self) -> str | None:
        """Server-side folder name to sync, or None when it does not exist."""

    async def run(self, stop: StopCondition) -> PipelineResult:
        try:
            return await self._run(stop)
        except BaseException:
            self.state = SyncState.FAILED
            raise

    async def _run(self, stop: StopCondition) -> PipelineResult:
        folder = await self.resolve_folder()
        if folder is None:
            return PipelineResult()

        log = logger.bind(folder=folder, direction=self.direction.value)
        normalizer = MessageNormalizer(folder)
        durable = await storage_call(
            self._retry,
            "get_cursor",
            lambda: self._cursors.get_cursor(self._config.id, self.cursor_folder),
        )
        result = PipelineResult(cursor=durable, folder=folder)
        scan_from = durable
        blocked = False

        while True:
            self.state = SyncState.FETCHING_BATCH
            batch = await self._session.fetch_since(folder, scan_from, self._batch_size)
            if not batch:
                break

            watermark, blocked = await self._process_batch(batch, normalizer, result, blocked)
            scan_from = batch.highest_uid

            if watermark > durable:
                self.state = SyncState.ADVANCING_CURSOR
                await storage_call(
                    self._retry,
                    "advance_cursor",
                    lambda: self._cursors.advance_cursor(
                        self._config.id, self.cursor_folder, watermark
                    ),
                )
                durable = watermark
                result.cursor = durable

            log.info(
                "batch_synced",
                batch_size=len(batch.uids),
                scanned_to=scan_from,
                cursor=durable,
                blocked=blocked,
            )

            reason = stop.reason
            if reason is not None:
                log.info("pipeline_stopped_early", reason=reason, cursor=durable)
                break

        self.state = SyncState.IDLE
        log.info("pipeline_complete", synced=result.synced, errors=len(result.errors))
        return result

    async def _process_batch(
        self,
        batch: FetchBatch,
        normalizer: MessageNormalizer,
        result: PipelineResult,
        blocked: bool,
    ) -> tuple[int, bool]:
        """Handle one batch; return (highest contiguous handled uid, blocked)."""
        fetched = {m.uid: m for m in batch.messages}
        watermark = 0

        for uid in batch.uids:
            if uid in batch.failures:
                error = FetchError(normalizer.folder, uid, batch.failures[uid])
                logger.error("message_fetch_failed", uid=uid, error=str(error))
                result.errors.append(str(error))
                blocked = True
                continue

            self.state = SyncState.NORMALIZING
            try:
                message = normalizer.normalize(fetched[uid])
            except ParseError as exc:
                logger.error("message_parse_failed", uid=uid, error=str(exc))
                result.errors.append(str(exc))
                blocked = True
                continue
            result.synced += 1

            self.state = SyncState.PERSISTING
            try:
                contact_id = await self._correlator.correlate(message, self.direction)
            except CorrelationMiss as miss:
                logger.debug("correlation_miss", uid=uid, address=miss.address)
            else:
                await self._correlator.record(
                    contact_id, self.direction, message, team_id=self._config.team_id
                )

            if not blocked:
                watermark = uid

        return watermark, blocked


class InboundPipeline(FolderPipeline):
    """Inbox -> ``inbound`` activities, correlated on the sender."""

    direction = Direction.INBOUND
    cursor_folder = CursorFolder.INBOX

    async def resolve_folder(self) -> str | None:
        return INBOX_FOLDER


class OutboundPipeline(FolderPipeline):
    """Sent folder -> ``outbound`` activities, correlated on the primary recipient."""

    direction = Direction.OUTBOUND
    cursor_folder = CursorFolder.SENT

    async def resolve_folder(self) -> str | None:
        folders = await self._session.list_folders()
        folder = find_sent_folder(folders)
        if folder is None:
            logger.warning(
                "sent_folder_not_found",
                config_id=self._config.id,
                candidates=list(SENT_FOLDER_CANDIDATES),
            )
        return folder


def find_sent_folder(folders: list[FolderInfo]) -> str | None:
    """Pick the sent-items folder: ``\\Sent`` special-use flag first, then
    known names (full path, then last path segment), in candidate order.
    """
    selectable = [f for f in folders if "\\noselect" not in {x.lower() for x in f.flags}]

    for folder in selectable:
        if "\\sent" in {x.lower() for x in folder.flags}:
            return folder.name

    by_name = {f.name.lower(): f.name for f in selectable}
    for candidate in SENT_FOLDER_CANDIDATES:
        if candidate.lower() in by_name:
            return by_name[candidate.lower()]

    for candidate in SENT_FOLDER_CANDIDATES:
        for folder in selectable:
            leaf = folder.name.rsplit(folder.delimiter, 1)[-1] if folder.delimiter else folder.name
            if leaf.lower() == candidate.lower():
                return folder.name

    return None
