"""Engine settings loaded from environment variables, and per-mailbox
endpoint resolution.

Uses pydantic-settings so every field can be overridden via env vars.
Per-mailbox :class:`~crm_mailsync.models.SyncConfig` objects are not
env-driven; they come from the config collaborator.
"""

from __future__ import annotations

from dataclasses import dataclass

from pydantic import Field
from pydantic_settings import BaseSettings

from .errors import MailConnectionError
from .models import ProviderKind, SyncConfig

DEFAULT_IMAP_PORT = 993
DEFAULT_SMTP_PORT = 587


class RetryConfig(BaseSettings):
    """Retry / backoff settings for storage writes, driven by Tenacity."""

    model_config = {"env_prefix": "RETRY_"}

    max_attempts: int = Field(default=3, description="Maximum attempts per storage write")
    initial_wait_seconds: float = Field(
        default=0.5,
        description="Initial backoff wait in seconds",
    )
    max_wait_seconds: float = Field(
        default=10.0,
        description="Maximum backoff wait in seconds",
    )
    multiplier: float = Field(default=2.0, description="Exponential backoff multiplier")


class SyncSettings(BaseSettings):
    """Root configuration for the sync service process."""

    model_config = {"env_prefix": "MAILSYNC_"}

    batch_size: int = Field(
        default=50,
        ge=1,
        description="Maximum messages fetched per round trip",
    )
    run_budget_seconds: float = Field(
        default=300.0,
        description="Stop starting new batches once a run has used this much time",
    )
    connect_timeout_seconds: float = Field(
        default=30.0,
        description="Socket timeout for every IMAP/SMTP network call",
    )
    database_url: str = Field(
        default="postgresql+asyncpg://localhost/crm",
        description="Async SQLAlchemy URL for configs, cursors, contacts and activities",
    )
    scheduler_tick_seconds: float = Field(
        default=30.0,
        description="Seconds between scheduler scans for due integrations",
    )
    health_port: int = Field(default=8080, description="Port for the HTTP surface")
    log_json: bool = Field(default=True, description="JSON log output (False for dev)")
    log_level: str = Field(default="INFO", description="Root log level")

    retry: RetryConfig = Field(default_factory=RetryConfig)


@dataclass(frozen=True)
class Endpoint:
    """Resolved network target for one protocol."""

    host: str
    port: int
    secure: bool


@dataclass(frozen=True)
class ProviderDefaults:
    imap_host: str
    smtp_host: str
    imap_port: int = DEFAULT_IMAP_PORT
    imap_secure: bool = True
    smtp_port: int = DEFAULT_SMTP_PORT
    smtp_secure: bool = False


PROVIDER_DEFAULTS: dict[ProviderKind, ProviderDefaults] = {
    ProviderKind.GMAIL: ProviderDefaults("imap.gmail.com", "smtp.gmail.com"),
    ProviderKind.OUTLOOK: ProviderDefaults("outlook.office365.com", "smtp.office365.com"),
    ProviderKind.OFFICE365: ProviderDefaults("outlook.office365.com", "smtp.office365.com"),
    ProviderKind.IMAP_SMTP: ProviderDefaults("", ""),
    ProviderKind.EXCHANGE: ProviderDefaults("", ""),
}


def resolve_imap(config: SyncConfig) -> Endpoint:
    """IMAP target: explicit config values win over the provider default."""
    defaults = PROVIDER_DEFAULTS[config.provider]
    host = config.imap_host or defaults.imap_host
    if not host:
        raise MailConnectionError(f"IMAP host not configured for {config.provider.value}")
    return Endpoint(
        host=host,
        port=config.imap_port or defaults.imap_port,
        secure=config.imap_secure if config.imap_host else defaults.imap_secure,
    )


def resolve_smtp(config: SyncConfig) -> Endpoint:
    """SMTP target: explicit config values win over the provider default."""
    defaults = PROVIDER_DEFAULTS[config.provider]
    host = config.smtp_host or defaults.smtp_host
    if not host:
        raise MailConnectionError(f"SMTP host not configured for {config.provider.value}")
    return Endpoint(
        host=host,
        port=config.smtp_port or defaults.smtp_port,
        secure=config.smtp_secure if config.smtp_host else defaults.smtp_secure,
    )
