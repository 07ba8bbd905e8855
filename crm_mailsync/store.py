"""SQL-backed collaborators: integration configs, contacts and timeline activities."""

from __future__ import annotations

from datetime import UTC, datetime

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .db import ActivityRow, ProspectRow, SyncConfigRow
from .models import Direction, EmailMessage, SyncConfig

logger = structlog.get_logger()

_PREVIEW_CHARS = 200

_ACTIVITY_TYPES = {
    Direction.INBOUND: "email_received",
    Direction.OUTBOUND: "email_sent",
}


def _utc(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes even for timezone-aware columns
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def _to_config(row: SyncConfigRow) -> SyncConfig:
    return SyncConfig(
        id=row.id,
        user_id=row.user_id,
        team_id=row.team_id,
        provider=row.provider,
        access_token=row.access_token,
        refresh_token=row.refresh_token,
        token_expires_at=_utc(row.token_expires_at),
        imap_host=row.imap_host,
        imap_port=row.imap_port,
        imap_secure=row.imap_secure,
        smtp_host=row.smtp_host,
        smtp_port=row.smtp_port,
        smtp_secure=row.smtp_secure,
        username=row.username,
        password=row.password,
        email_address=row.email_address,
        sync_enabled=row.sync_enabled,
        sync_inbound=row.sync_inbound,
        sync_outbound=row.sync_outbound,
        sync_interval=row.sync_interval,
        last_sync_at=_utc(row.last_sync_at),
    )


class SqlConfigRepository:
    """Keyed lookup of ``email_sync_configs`` rows."""

    def __init__(self, sessions: async_sessionmaker[AsyncSession]) -> None:
        self._sessions = sessions

    async def get(self, config_id: str) -> SyncConfig | None:
        async with self._sessions() as session:
            row = await session.get(SyncConfigRow, config_id)
        return _to_config(row) if row is not None else None

    async def list_enabled(self) -> list[SyncConfig]:
        async with self._sessions() as session:
            rows = (
                await session.scalars(
                    select(SyncConfigRow).where(SyncConfigRow.sync_enabled.is_(True))
                )
            ).all()
        return [_to_config(row) for row in rows]

    async def mark_synced(self, config_id: str, at: datetime) -> None:
        async with self._sessions() as session:
            await session.execute(
                update(SyncConfigRow)
                .where(SyncConfigRow.id == config_id)
                .values(last_sync_at=at)
            )
            await session.commit()


class SqlContactDirectory:
    """Case-insensitive lookup of prospects by email address."""

    def __init__(self, sessions: async_sessionmaker[AsyncSession]) -> None:
        self._sessions = sessions

    async def find_contact_by_email(self, address: str) -> str | None:
        async with self._sessions() as session:
            return await session.scalar(
                select(ProspectRow.id)
                .where(func.lower(ProspectRow.email) == address.lower())
                .limit(1)
            )


class SqlActivityStore:
    """Writes ``bdr_activities`` rows, idempotent on (message_id, direction)."""

    def __init__(self, sessions: async_sessionmaker[AsyncSession]) -> None:
        self._sessions = sessions

    async def upsert_activity(
        self,
        contact_id: str,
        direction: Direction,
        message: EmailMessage,
        *,
        team_id: str | None = None,
    ) -> None:
        async with self._sessions() as session:
            dialect = session.get_bind().dialect.name
            insert = pg_insert if dialect == "postgresql" else sqlite_insert
            stmt = insert(ActivityRow.__table__).values(
                prospect_id=contact_id,
                team_id=team_id,
                activity_type=_ACTIVITY_TYPES[direction],
                channel="email",
                direction=direction.value,
                message_id=message.message_id,
                thread_id=message.thread_id,
                subject=message.subject,
                message_preview=message.body_text[:_PREVIEW_CHARS],
                full_content=message.body_text or message.body_html,
                metadata={
                    "from": message.sender.model_dump(),
                    "to": [a.model_dump() for a in message.to],
                    "cc": [a.model_dump() for a in message.cc],
                    "in_reply_to": message.in_reply_to,
                    "references": message.references,
                    "attachments": [a.model_dump() for a in message.attachments],
                },
                occurred_at=message.date,
            )
            stmt = stmt.on_conflict_do_nothing(
                index_elements=["message_id", "direction"],
            )
            result = await session.execute(stmt)
            await session.commit()
        if result.rowcount == 0:
            logger.debug(
                "activity_already_recorded",
                message_id=message.message_id,
                direction=direction.value,
            )
