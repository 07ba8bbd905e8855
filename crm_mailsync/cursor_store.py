"""Durable per-folder sync cursors in ``email_sync_state``."""

from __future__ import annotations

from datetime import UTC, datetime

import structlog
from sqlalchemy import func, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .db import SyncStateRow
from .models import CursorFolder

logger = structlog.get_logger()


class SqlCursorStore:
    """Cursor store backed by one row per (config, folder).

    ``advance_cursor`` is a single ``INSERT ... ON CONFLICT DO UPDATE``
    that keeps the greater of the stored and the new ordinal, so
    concurrent writers are safe and the cursor never moves backwards.
    """

    def __init__(self, sessions: async_sessionmaker[AsyncSession]) -> None:
        self._sessions = sessions

    async def get_cursor(self, config_id: str, folder: CursorFolder) -> int:
        async with self._sessions() as session:
            value = await session.scalar(
                select(SyncStateRow.last_synced_uid).where(
                    SyncStateRow.config_id == config_id,
                    SyncStateRow.folder == folder.value,
                )
            )
        return value or 0

    async def advance_cursor(self, config_id: str, folder: CursorFolder, uid: int) -> None:
        async with self._sessions() as session:
            dialect = session.get_bind().dialect.name
            insert = pg_insert if dialect == "postgresql" else sqlite_insert
            greatest = func.greatest if dialect == "postgresql" else func.max

            stmt = insert(SyncStateRow).values(
                config_id=config_id,
                folder=folder.value,
                last_synced_uid=uid,
                last_synced_at=datetime.now(UTC),
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=[SyncStateRow.config_id, SyncStateRow.folder],
                set_={
                    "last_synced_uid": greatest(
                        SyncStateRow.last_synced_uid,
                        stmt.excluded.last_synced_uid,
                    ),
                    "last_synced_at": stmt.excluded.last_synced_at,
                },
            )
            await session.execute(stmt)
            await session.commit()
        logger.debug("cursor_advanced", config_id=config_id, folder=folder.value, uid=uid)
