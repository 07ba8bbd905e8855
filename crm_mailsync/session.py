"""Mail session manager: one read and one send session per run."""

from __future__ import annotations

from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager

import structlog

from .config import SyncSettings, resolve_imap, resolve_smtp
from .errors import MailConnectionError
from .imap_client import AsyncImapSession
from .interface import ReadSession, SendSession
from .models import SyncConfig
from .smtp_client import AsyncSmtpSession

logger = structlog.get_logger()

ReadSessionFactory = Callable[[SyncConfig, SyncSettings], ReadSession]
SendSessionFactory = Callable[[SyncConfig, SyncSettings], SendSession]


def imap_session_factory(config: SyncConfig, settings: SyncSettings) -> ReadSession:
    return AsyncImapSession(
        config,
        resolve_imap(config),
        timeout=settings.connect_timeout_seconds,
    )


def smtp_session_factory(config: SyncConfig, settings: SyncSettings) -> SendSession:
    return AsyncSmtpSession(
        config,
        resolve_smtp(config),
        timeout=settings.connect_timeout_seconds,
    )


class SessionManager:
    """Owns the sessions of a single run against a single mailbox.

    Not shared between runs: each :meth:`MailSyncEngine.sync` call builds
    its own manager.  No reconnect or retry logic lives here; a failed
    handshake surfaces as :class:`MailConnectionError` and the scheduler
    tries again on the next interval.
    """

    def __init__(
        self,
        settings: SyncSettings,
        *,
        read_factory: ReadSessionFactory = imap_session_factory,
        send_factory: SendSessionFactory = smtp_session_factory,
    ) -> None:
        self._settings = settings
        self._read_factory = read_factory
        self._send_factory = send_factory
        self.read: ReadSession | None = None
        self.send: SendSession | None = None

    async def initialize(self, config: SyncConfig) -> None:
        """Open the read session and, independently, the send session."""
        await self.open_read(config)
        await self.open_send(config)

    async def open_read(self, config: SyncConfig) -> ReadSession:
        if self.read is None:
            _check_credentials(config)
            session = self._read_factory(config, self._settings)
            await session.open()
            self.read = session
        return self.read

    async def open_send(self, config: SyncConfig) -> SendSession:
        if self.send is None or not self.send.is_open:
            _check_credentials(config)
            session = self.send or self._send_factory(config, self._settings)
            await session.open()
            self.send = session
        return self.send

    async def disconnect(self) -> None:
        """Close both sessions; close failures are logged, never raised."""
        read, self.read = self.read, None
        send, self.send = self.send, None
        for kind, session in (("read", read), ("send", send)):
            if session is None:
                continue
            try:
                await session.close()
            except Exception as exc:
                logger.warning("session_close_failed", session=kind, error=str(exc))

    @asynccontextmanager
    async def connected(self, config: SyncConfig) -> AsyncIterator[SessionManager]:
        """``initialize`` on entry, ``disconnect`` on every exit path."""
        try:
            await self.initialize(config)
            yield self
        finally:
            await self.disconnect()


def _check_credentials(config: SyncConfig) -> None:
    if config.uses_oauth and config.token_expired():
        raise MailConnectionError("OAuth access token expired")
