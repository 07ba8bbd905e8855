"""MailSyncEngine: one sync run per mailbox, and the send path."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from datetime import UTC, datetime
from email.message import EmailMessage as MimeMessage
from email.utils import format_datetime, make_msgid

import structlog

from .config import SyncSettings
from .correlation import ActivityCorrelator
from .errors import MailConnectionError, PersistenceError, SendError
from .interface import ActivityStore, ConfigRepository, ContactDirectory, CursorStore
from .models import Address, ComposeRequest, SyncConfig, SyncResult
from .pipeline import FolderPipeline, InboundPipeline, OutboundPipeline, StopCondition, SyncState
from .retry import storage_call
from .session import SessionManager

logger = structlog.get_logger()


class MailSyncEngine:
    """Runs inbound and outbound sync for one mailbox at a time.

    The engine itself holds no per-run state: every :meth:`sync` call
    builds its own :class:`SessionManager`, so concurrent runs for
    different mailboxes never share a connection.
    """

    def __init__(
        self,
        settings: SyncSettings,
        *,
        configs: ConfigRepository,
        cursors: CursorStore,
        contacts: ContactDirectory,
        activities: ActivityStore,
        session_factory: Callable[[], SessionManager] | None = None,
    ) -> None:
        self.settings = settings
        self._configs = configs
        self._cursors = cursors
        self._correlator = ActivityCorrelator(contacts, activities, settings.retry)
        self._session_factory = session_factory or (lambda: SessionManager(settings))

    # ------------------------------------------------------------------
    # Sync
    # ------------------------------------------------------------------

    async def sync(
        self,
        config: SyncConfig,
        cancel: asyncio.Event | None = None,
    ) -> SyncResult:
        """Run both pipelines for *config* and report what happened.

        Per-message failures land in ``errors`` and do not fail the run.
        Connection and persistence failures end the run with
        ``success=False``; the next scheduled run picks up from the
        stored cursors.
        """
        result = SyncResult(config_id=config.id)
        stop = StopCondition.after(self.settings.run_budget_seconds, cancel)
        state = SyncState.CONNECTING

        structlog.contextvars.bind_contextvars(
            config_id=config.id,
            provider=config.provider.value,
        )
        logger.info("sync_started")
        try:
            sessions = self._session_factory()
            async with sessions.connected(config):
                if config.sync_inbound:
                    inbound = await self._pipeline(InboundPipeline, config, sessions).run(stop)
                    result.inbound_synced = inbound.synced
                    result.errors.extend(inbound.errors)

                if config.sync_outbound and stop.reason is None:
                    outbound = await self._pipeline(OutboundPipeline, config, sessions).run(stop)
                    result.outbound_synced = outbound.synced
                    result.errors.extend(outbound.errors)

            await storage_call(
                self.settings.retry,
                "mark_synced",
                lambda: self._configs.mark_synced(config.id, datetime.now(UTC)),
            )
            result.success = True
            state = SyncState.IDLE
        except MailConnectionError as exc:
            state = SyncState.FAILED
            result.errors.append(f"connection: {exc}")
            logger.error("sync_connection_failed", error=str(exc))
        except PersistenceError as exc:
            state = SyncState.FAILED
            result.errors.append(f"persistence: {exc}")
            logger.error("sync_persistence_failed", error=str(exc))
        finally:
            result.finished_at = datetime.now(UTC)
            logger.info(
                "sync_finished",
                state=state.value,
                success=result.success,
                inbound_synced=result.inbound_synced,
                outbound_synced=result.outbound_synced,
                errors=len(result.errors),
            )
            structlog.contextvars.unbind_contextvars("config_id", "provider")

        return result

    def _pipeline(
        self,
        kind: type[FolderPipeline],
        config: SyncConfig,
        sessions: SessionManager,
    ) -> FolderPipeline:
        assert sessions.read is not None
        return kind(
            config,
            sessions.read,
            self._cursors,
            self._correlator,
            batch_size=self.settings.batch_size,
            retry=self.settings.retry,
        )

    # ------------------------------------------------------------------
    # Send path
    # ------------------------------------------------------------------

    async def send_email(self, config: SyncConfig, request: ComposeRequest) -> str:
        """Submit *request* through the mailbox's SMTP server.

        Returns the message identifier.  Raises :class:`SendError` on any
        failure, including an unreachable server; never retries.
        """
        message = compose_message(config, request)
        sessions = self._session_factory()
        try:
            send = await sessions.open_send(config)
            return await send.send(message)
        except MailConnectionError as exc:
            raise SendError(str(exc)) from exc
        finally:
            await sessions.disconnect()


def compose_message(config: SyncConfig, request: ComposeRequest) -> MimeMessage:
    """Render a compose request as a MIME message ready for submission."""
    sender = request.sender or Address(address=config.email_address)
    domain = sender.address.rpartition("@")[2] or None

    msg = MimeMessage()
    msg["From"] = str(sender)
    msg["To"] = ", ".join(str(a) for a in request.to)
    if request.cc:
        msg["Cc"] = ", ".join(str(a) for a in request.cc)
    if request.bcc:
        msg["Bcc"] = ", ".join(str(a) for a in request.bcc)
    msg["Subject"] = request.subject
    msg["Date"] = format_datetime(datetime.now(UTC))
    msg["Message-ID"] = make_msgid(domain=domain)

    references = list(request.references)
    if request.in_reply_to:
        msg["In-Reply-To"] = request.in_reply_to
        if request.in_reply_to not in references:
            references.append(request.in_reply_to)
    if references:
        msg["References"] = " ".join(references)

    if request.body_text or not request.body_html:
        msg.set_content(request.body_text)
        if request.body_html:
            msg.add_alternative(request.body_html, subtype="html")
    else:
        msg.set_content(request.body_html, subtype="html")

    return msg
