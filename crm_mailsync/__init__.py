"""CRM mailbox sync engine.

Public API re-exported here for convenience::

    from crm_mailsync import MailSyncEngine, SyncConfig, SyncSettings
"""

from .api import create_app
from .config import RetryConfig, SyncSettings, resolve_imap, resolve_smtp
from .cursor_store import SqlCursorStore
from .engine import MailSyncEngine, compose_message
from .errors import (
    CorrelationMiss,
    FetchError,
    MailConnectionError,
    MailSyncError,
    ParseError,
    PersistenceError,
    RunInProgressError,
    SendError,
    UnknownConfigError,
)
from .interface import FetchBatch, FetchedMessage, FolderInfo, ReadSession, SendSession
from .logging import setup_logging
from .models import (
    Address,
    AttachmentInfo,
    ComposeRequest,
    CursorFolder,
    Direction,
    EmailMessage,
    ProviderKind,
    SyncConfig,
    SyncCursor,
    SyncResult,
)
from .normalizer import MessageNormalizer
from .retry import with_retry
from .scheduler import SyncScheduler
from .session import SessionManager

__all__ = [
    "Address",
    "AttachmentInfo",
    "ComposeRequest",
    "CorrelationMiss",
    "CursorFolder",
    "Direction",
    "EmailMessage",
    "FetchBatch",
    "FetchError",
    "FetchedMessage",
    "FolderInfo",
    "MailConnectionError",
    "MailSyncEngine",
    "MailSyncError",
    "MessageNormalizer",
    "ParseError",
    "PersistenceError",
    "ProviderKind",
    "ReadSession",
    "RetryConfig",
    "RunInProgressError",
    "SendError",
    "SendSession",
    "SessionManager",
    "SqlCursorStore",
    "SyncConfig",
    "SyncCursor",
    "SyncResult",
    "SyncScheduler",
    "SyncSettings",
    "UnknownConfigError",
    "compose_message",
    "create_app",
    "resolve_imap",
    "resolve_smtp",
    "setup_logging",
    "with_retry",
]
