"""Data models for the mail sync engine."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from enum import Enum

from pydantic import BaseModel, Field, SecretStr


class ProviderKind(str, Enum):
    """Mailbox provider behind a sync integration."""

    GMAIL = "gmail"
    OUTLOOK = "outlook"
    OFFICE365 = "office365"
    IMAP_SMTP = "imap_smtp"
    EXCHANGE = "exchange"


OAUTH_PROVIDERS = frozenset({ProviderKind.GMAIL, ProviderKind.OUTLOOK, ProviderKind.OFFICE365})


class Direction(str, Enum):
    """Direction of a synced message relative to the mailbox owner."""

    INBOUND = "inbound"
    OUTBOUND = "outbound"


class CursorFolder(str, Enum):
    """Logical folder key a cursor is tracked under.

    Independent of the server-side folder name (``INBOX``, ``Sent Items``...).
    """

    INBOX = "inbox"
    SENT = "sent"


class SyncConfig(BaseModel):
    """One mailbox integration, owned by the integration-settings collaborator.

    The engine only reads it, apart from stamping ``last_sync_at``.
    """

    id: str = Field(description="Integration identifier")
    user_id: str | None = Field(default=None, description="Owning user")
    team_id: str | None = Field(default=None, description="Owning team")
    provider: ProviderKind = Field(description="Provider kind")

    access_token: SecretStr | None = Field(default=None, description="OAuth bearer token")
    refresh_token: SecretStr | None = Field(default=None, description="OAuth refresh token")
    token_expires_at: datetime | None = Field(default=None, description="Access token expiry (UTC)")

    imap_host: str | None = Field(default=None, description="IMAP host, overrides provider default")
    imap_port: int | None = Field(default=None, description="IMAP port")
    imap_secure: bool = Field(default=True, description="Implicit TLS for IMAP")
    smtp_host: str | None = Field(default=None, description="SMTP host, overrides provider default")
    smtp_port: int | None = Field(default=None, description="SMTP port")
    smtp_secure: bool = Field(
        default=False,
        description="Implicit TLS for SMTP (False means STARTTLS when offered)",
    )
    username: str | None = Field(default=None, description="Login name, defaults to email_address")
    password: SecretStr | None = Field(default=None, description="Password or app password")

    email_address: str = Field(description="Mailbox address")

    sync_enabled: bool = Field(default=True, description="Integration is active")
    sync_inbound: bool = Field(default=True, description="Sync the inbox folder")
    sync_outbound: bool = Field(default=True, description="Sync the sent folder")
    sync_interval: int = Field(default=15, ge=1, description="Minutes between scheduled runs")
    last_sync_at: datetime | None = Field(default=None, description="Last successful run (UTC)")

    @property
    def login(self) -> str:
        return self.username or self.email_address

    @property
    def uses_oauth(self) -> bool:
        return self.provider in OAUTH_PROVIDERS and self.access_token is not None

    def token_expired(self, now: datetime | None = None) -> bool:
        if self.token_expires_at is None:
            return False
        return self.token_expires_at <= (now or datetime.now(UTC))

    def is_due(self, now: datetime | None = None) -> bool:
        """True when the configured interval has elapsed since the last run."""
        if self.last_sync_at is None:
            return True
        now = now or datetime.now(UTC)
        return now - self.last_sync_at >= timedelta(minutes=self.sync_interval)


class SyncCursor(BaseModel):
    """Watermark of the last processed message ordinal in one folder."""

    config_id: str
    folder: CursorFolder
    last_uid: int = Field(default=0, ge=0)
    last_synced_at: datetime | None = None


class Address(BaseModel):
    """A mailbox address with optional display name."""

    address: str
    name: str | None = None

    def __str__(self) -> str:
        return f"{self.name} <{self.address}>" if self.name else self.address


class AttachmentInfo(BaseModel):
    """Attachment metadata; the content itself is fetched lazily with
    ``UID FETCH <uid> BODY.PEEK[<part_id>]``.
    """

    filename: str
    content_type: str
    size: int = Field(ge=0, description="Decoded size in bytes")
    part_id: str = Field(description='IMAP body section of the part, e.g. "2" or "2.1"')


class EmailMessage(BaseModel):
    """Canonical shape of one normalized message.

    Transient: produced by the normalizer, consumed by the pipeline, and
    never persisted as-is.
    """

    message_id: str = Field(description="Stable message identifier")
    thread_id: str = Field(description="Identifier of the first message in the thread")
    sender: Address
    to: list[Address] = Field(default_factory=list)
    cc: list[Address] = Field(default_factory=list)
    bcc: list[Address] = Field(default_factory=list)
    subject: str = ""
    body_text: str = ""
    body_html: str = ""
    attachments: list[AttachmentInfo] = Field(default_factory=list)
    date: datetime
    in_reply_to: str | None = None
    references: list[str] = Field(default_factory=list)
    headers: dict[str, str] = Field(default_factory=dict)
    uid: int = Field(default=0, description="Ordinal in the folder it was fetched from")

    @property
    def primary_recipient(self) -> Address | None:
        return self.to[0] if self.to else None


class ComposeRequest(BaseModel):
    """An outgoing message as submitted by a compose surface."""

    to: list[Address] = Field(min_length=1)
    cc: list[Address] = Field(default_factory=list)
    bcc: list[Address] = Field(default_factory=list)
    subject: str = ""
    body_text: str = ""
    body_html: str = ""
    sender: Address | None = Field(default=None, description="Defaults to the mailbox address")
    in_reply_to: str | None = None
    references: list[str] = Field(default_factory=list)


class SyncResult(BaseModel):
    """Outcome of one ``sync(config)`` run."""

    config_id: str
    success: bool = False
    inbound_synced: int = 0
    outbound_synced: int = 0
    errors: list[str] = Field(default_factory=list)
    started_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    finished_at: datetime | None = None


class SchedulerStatus(str, Enum):
    """Runtime status of the sync scheduler."""

    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"


class HealthStatus(BaseModel):
    """Response model for the /health endpoint."""

    status: SchedulerStatus = Field(description="Current scheduler status")
    uptime_seconds: float = Field(description="Seconds since the scheduler started")
    active_runs: list[str] = Field(
        default_factory=list,
        description="Config ids with a sync run in flight",
    )
    last_results: dict[str, SyncResult] = Field(
        default_factory=dict,
        description="Most recent run outcome per config id",
    )
