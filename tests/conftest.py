"""Shared test fixtures for the crm_mailsync test suite."""

from __future__ import annotations

from datetime import UTC, datetime
from email import encoders
from email.message import EmailMessage as MimeMessage
from email.mime.base import MIMEBase
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

import pytest

from crm_mailsync.config import RetryConfig, SyncSettings
from crm_mailsync.errors import MailConnectionError, SendError
from crm_mailsync.interface import FetchBatch, FetchedMessage, FolderInfo, ReadSession, SendSession
from crm_mailsync.models import CursorFolder, Direction, EmailMessage, ProviderKind, SyncConfig
from crm_mailsync.session import SessionManager

# ------------------------------------------------------------------
# Sample EML builders
# ------------------------------------------------------------------


def _build_plain_email(
    *,
    subject: str = "Test Subject",
    from_addr: str = "sender@example.com",
    to_addr: str = "recipient@example.com",
    body: str = "Hello, World!",
    message_id: str | None = "<test-001@example.com>",
    in_reply_to: str | None = None,
    references: str | None = None,
    cc: str | None = None,
    bcc: str | None = None,
) -> bytes:
    """Build a simple plain-text email as raw bytes."""
    msg = MIMEText(body, "plain")
    msg["Subject"] = subject
    msg["From"] = from_addr
    msg["To"] = to_addr
    if message_id:
        msg["Message-ID"] = message_id
    msg["Date"] = "Mon, 01 Jun 2025 12:00:00 +0000"
    if in_reply_to:
        msg["In-Reply-To"] = in_reply_to
    if references:
        msg["References"] = references
    if cc:
        msg["Cc"] = cc
    if bcc:
        msg["Bcc"] = bcc
    return msg.as_bytes()


def _build_html_email(*, body_html: str = "<p>Hello</p>") -> bytes:
    msg = MIMEText(body_html, "html")
    msg["Subject"] = "HTML Email"
    msg["From"] = "sender@example.com"
    msg["To"] = "recipient@example.com"
    msg["Message-ID"] = "<html-001@example.com>"
    msg["Date"] = "Mon, 01 Jun 2025 12:00:00 +0000"
    return msg.as_bytes()


def _build_multipart_email(
    *,
    body_text: str = "Plain body",
    body_html: str = "<p>HTML body</p>",
    attachments: list[tuple[str, str, bytes]] | None = None,
) -> bytes:
    """Build a multipart email with text, HTML, and optional attachments."""
    msg = MIMEMultipart("mixed")
    msg["Subject"] = "Multipart Email"
    msg["From"] = "Sender Name <sender@example.com>"
    msg["To"] = "recipient@example.com"
    msg["Message-ID"] = "<multi-001@example.com>"
    msg["Date"] = "Mon, 01 Jun 2025 12:00:00 +0000"

    alt = MIMEMultipart("alternative")
    alt.attach(MIMEText(body_text, "plain"))
    alt.attach(MIMEText(body_html, "html"))
    msg.attach(alt)

    for filename, content_type, payload in attachments or []:
        maintype, subtype = content_type.split("/", 1)
        part = MIMEBase(maintype, subtype)
        part.set_payload(payload)
        encoders.encode_base64(part)
        part.add_header("Content-Disposition", "attachment", filename=filename)
        msg.attach(part)

    return msg.as_bytes()


def make_message(
    *,
    message_id: str = "<m-1@example.com>",
    sender: str = "alice@client.com",
    to: list[str] | None = None,
    uid: int = 1,
) -> EmailMessage:
    """Build an already normalized message."""
    return EmailMessage(
        message_id=message_id,
        thread_id=message_id,
        sender={"address": sender},
        to=[{"address": a} for a in (["me@example.com"] if to is None else to)],
        date=datetime(2025, 6, 1, 12, 0, tzinfo=UTC),
        uid=uid,
    )


@pytest.fixture
def plain_eml_bytes() -> bytes:
    return _build_plain_email()


@pytest.fixture
def multipart_eml_bytes() -> bytes:
    return _build_multipart_email(
        attachments=[
            ("report.pdf", "application/pdf", b"%PDF-1.4 fake pdf content"),
            ("data.csv", "text/csv", b"col1,col2\na,b\n"),
        ],
    )


# ------------------------------------------------------------------
# Configs and settings
# ------------------------------------------------------------------


@pytest.fixture
def settings() -> SyncSettings:
    return SyncSettings(
        batch_size=2,
        run_budget_seconds=60,
        connect_timeout_seconds=5,
        database_url="sqlite+aiosqlite://",
        retry=RetryConfig(max_attempts=2, initial_wait_seconds=0, max_wait_seconds=0),
    )


@pytest.fixture
def imap_config() -> SyncConfig:
    return SyncConfig(
        id="cfg-1",
        user_id="user-1",
        provider=ProviderKind.IMAP_SMTP,
        imap_host="imap.test.com",
        imap_port=993,
        smtp_host="smtp.test.com",
        smtp_port=587,
        username="testuser",
        password="testpass",
        email_address="me@example.com",
    )


@pytest.fixture
def gmail_config() -> SyncConfig:
    return SyncConfig(
        id="cfg-gmail",
        provider=ProviderKind.GMAIL,
        access_token="ya29.token",
        email_address="me@gmail.com",
    )


# ------------------------------------------------------------------
# In-memory collaborators
# ------------------------------------------------------------------


class FakeCursorStore:
    def __init__(self) -> None:
        self.cursors: dict[tuple[str, CursorFolder], int] = {}
        self.history: list[tuple[str, CursorFolder, int]] = []
        self.fail_advance = False

    async def get_cursor(self, config_id: str, folder: CursorFolder) -> int:
        return self.cursors.get((config_id, folder), 0)

    async def advance_cursor(self, config_id: str, folder: CursorFolder, uid: int) -> None:
        if self.fail_advance:
            raise RuntimeError("cursor table unavailable")
        key = (config_id, folder)
        self.cursors[key] = max(self.cursors.get(key, 0), uid)
        self.history.append((config_id, folder, self.cursors[key]))


class FakeConfigRepository:
    def __init__(self, *configs: SyncConfig) -> None:
        self.configs = {c.id: c for c in configs}
        self.synced: dict[str, datetime] = {}

    async def get(self, config_id: str) -> SyncConfig | None:
        return self.configs.get(config_id)

    async def list_enabled(self) -> list[SyncConfig]:
        return [c for c in self.configs.values() if c.sync_enabled]

    async def mark_synced(self, config_id: str, at: datetime) -> None:
        self.synced[config_id] = at
        self.configs[config_id] = self.configs[config_id].model_copy(update={"last_sync_at": at})


class FakeContactDirectory:
    def __init__(self, contacts: dict[str, str] | None = None) -> None:
        self.contacts = {k.lower(): v for k, v in (contacts or {}).items()}

    async def find_contact_by_email(self, address: str) -> str | None:
        return self.contacts.get(address.lower())


class FakeActivityStore:
    def __init__(self) -> None:
        self.activities: dict[tuple[str, Direction], tuple[str, EmailMessage]] = {}
        self.teams: dict[tuple[str, Direction], str | None] = {}
        self.calls = 0
        self.failures_remaining = 0

    async def upsert_activity(
        self,
        contact_id: str,
        direction: Direction,
        message: EmailMessage,
        *,
        team_id: str | None = None,
    ) -> None:
        self.calls += 1
        if self.failures_remaining:
            self.failures_remaining -= 1
            raise RuntimeError("activity table unavailable")
        self.activities.setdefault((message.message_id, direction), (contact_id, message))
        self.teams.setdefault((message.message_id, direction), team_id)


class FakeReadSession(ReadSession):
    """Mailbox held in memory: folder name -> {uid: raw bytes}."""

    def __init__(
        self,
        folders: dict[str, dict[int, bytes]] | None = None,
        *,
        folder_flags: dict[str, set[str]] | None = None,
        fetch_failures: dict[str, dict[int, str]] | None = None,
        fail_open: bool = False,
    ) -> None:
        self.folders = folders if folders is not None else {"INBOX": {}}
        self.folder_flags = folder_flags or {}
        self.fetch_failures = fetch_failures or {}
        self.fail_open = fail_open
        self.opened = False
        self.closed = 0
        self.fetch_calls: list[tuple[str, int, int]] = []

    async def open(self) -> None:
        if self.fail_open:
            raise MailConnectionError("IMAP connect to imap.test.com:993 failed: timed out")
        self.opened = True

    async def list_folders(self) -> list[FolderInfo]:
        return [
            FolderInfo(name=name, flags=frozenset(self.folder_flags.get(name, set())), delimiter="/")
            for name in self.folders
        ]

    async def fetch_since(self, folder: str, cursor: int, limit: int) -> FetchBatch:
        self.fetch_calls.append((folder, cursor, limit))
        failures = self.fetch_failures.get(folder, {})
        uids = sorted(u for u in self.folders.get(folder, {}) if u > cursor)[:limit]
        batch = FetchBatch()
        for uid in uids:
            if uid in failures:
                batch.failures[uid] = failures[uid]
            else:
                batch.messages.append(FetchedMessage(uid=uid, raw_bytes=self.folders[folder][uid]))
        return batch

    async def close(self) -> None:
        self.closed += 1
        self.opened = False


class FakeSendSession(SendSession):
    def __init__(self, *, reject: SendError | None = None, fail_open: bool = False) -> None:
        self.reject = reject
        self.fail_open = fail_open
        self.sent: list[MimeMessage] = []
        self._open = False
        self.closed = 0

    @property
    def is_open(self) -> bool:
        return self._open

    async def open(self) -> None:
        if self.fail_open:
            raise MailConnectionError("SMTP connect to smtp.test.com:587 failed: refused")
        self._open = True

    async def send(self, message: MimeMessage) -> str:
        if self.reject is not None:
            raise self.reject
        self.sent.append(message)
        return message["Message-ID"]

    async def close(self) -> None:
        self.closed += 1
        self._open = False


def make_session_manager(
    settings: SyncSettings,
    read: ReadSession,
    send: SendSession | None = None,
) -> SessionManager:
    """A SessionManager wired to the given fake sessions."""
    send = send or FakeSendSession()
    return SessionManager(
        settings,
        read_factory=lambda _config, _settings: read,
        send_factory=lambda _config, _settings: send,
    )


@pytest.fixture
def cursors() -> FakeCursorStore:
    return FakeCursorStore()


@pytest.fixture
def activities() -> FakeActivityStore:
    return FakeActivityStore()


@pytest.fixture
def contacts() -> FakeContactDirectory:
    return FakeContactDirectory({"alice@client.com": "contact-alice", "bob@client.com": "contact-bob"})
