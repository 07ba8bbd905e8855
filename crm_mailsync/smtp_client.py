"""Async SMTP send session on top of aiosmtplib."""

from __future__ import annotations

import base64
from email.message import EmailMessage as MimeMessage

import aiosmtplib
import structlog

from .config import Endpoint
from .errors import MailConnectionError, SendError
from .imap_client import xoauth2_string
from .interface import SendSession
from .models import SyncConfig

logger = structlog.get_logger()

_AUTH_SUCCESS = 235


class AsyncSmtpSession(SendSession):
    """SMTP submission session.

    Implicit TLS when the endpoint is secure, otherwise STARTTLS is
    negotiated whenever the server offers it.  Authenticates with
    LOGIN/PLAIN or SASL XOAUTH2 for OAuth providers.
    """

    def __init__(self, config: SyncConfig, endpoint: Endpoint, *, timeout: float) -> None:
        self._config = config
        self._endpoint = endpoint
        self._timeout = timeout
        self._smtp: aiosmtplib.SMTP | None = None

    @property
    def is_open(self) -> bool:
        return self._smtp is not None and self._smtp.is_connected

    async def open(self) -> None:
        if self.is_open:
            return
        if not self._config.uses_oauth and self._config.password is None:
            raise MailConnectionError("SMTP password not configured")

        smtp = aiosmtplib.SMTP(
            hostname=self._endpoint.host,
            port=self._endpoint.port,
            use_tls=self._endpoint.secure,
            timeout=self._timeout,
        )
        try:
            await smtp.connect()
            await self._authenticate(smtp)
        except (aiosmtplib.SMTPException, OSError) as exc:
            if smtp.is_connected:
                smtp.close()
            raise MailConnectionError(
                f"SMTP connect to {self._endpoint.host}:{self._endpoint.port} failed: {exc}"
            ) from exc
        self._smtp = smtp
        logger.info(
            "smtp_connected",
            host=self._endpoint.host,
            oauth=self._config.uses_oauth,
        )

    async def _authenticate(self, smtp: aiosmtplib.SMTP) -> None:
        if not self._config.uses_oauth:
            assert self._config.password is not None
            await smtp.login(self._config.login, self._config.password.get_secret_value())
            return

        await smtp.ehlo()
        initial = base64.b64encode(xoauth2_string(self._config).encode()).decode("ascii")
        response = await smtp.execute_command(b"AUTH", b"XOAUTH2", initial.encode("ascii"))
        if response.code != _AUTH_SUCCESS:
            raise aiosmtplib.SMTPAuthenticationError(response.code, response.message)

    async def send(self, message: MimeMessage) -> str:
        if self._smtp is None:
            raise SendError("SMTP session is not open")
        message_id = message["Message-ID"]
        try:
            await self._smtp.send_message(message)
        except aiosmtplib.SMTPRecipientsRefused as exc:
            refused = ", ".join(r.recipient for r in exc.recipients)
            raise SendError(f"recipients refused: {refused}") from exc
        except aiosmtplib.SMTPResponseException as exc:
            raise SendError(exc.message, code=exc.code) from exc
        except (aiosmtplib.SMTPException, OSError) as exc:
            raise SendError(str(exc)) from exc
        logger.info("smtp_message_sent", message_id=message_id)
        return message_id

    async def close(self) -> None:
        if self._smtp is None:
            return
        smtp, self._smtp = self._smtp, None
        try:
            if smtp.is_connected:
                await smtp.quit()
        finally:
            if smtp.is_connected:
                smtp.close()
        logger.info("smtp_disconnected", host=self._endpoint.host)
