"""Session interfaces every mail provider implementation must satisfy."""

from __future__ import annotations

import abc
from dataclasses import dataclass, field
from datetime import datetime
from email.message import EmailMessage as MimeMessage
from typing import Protocol

from .models import CursorFolder, Direction, EmailMessage, SyncConfig


@dataclass
class FetchedMessage:
    """Raw message data fetched from a folder."""

    uid: int
    raw_bytes: bytes


@dataclass
class FetchBatch:
    """One bounded page of a folder, in ascending UID order.

    ``failures`` maps a UID to the reason the server did not return its
    body.  ``highest_uid`` covers both fetched and failed UIDs so that a
    caller can page past the batch.
    """

    messages: list[FetchedMessage] = field(default_factory=list)
    failures: dict[int, str] = field(default_factory=dict)

    @property
    def uids(self) -> list[int]:
        return sorted([m.uid for m in self.messages] + list(self.failures))

    @property
    def highest_uid(self) -> int:
        return max(self.uids, default=0)

    def __bool__(self) -> bool:
        return bool(self.messages or self.failures)


@dataclass(frozen=True)
class FolderInfo:
    """A server-side folder as returned by LIST."""

    name: str
    flags: frozenset[str] = frozenset()
    delimiter: str | None = None


class ReadSession(abc.ABC):
    """Read side of a mailbox: folder listing and incremental fetch."""

    @abc.abstractmethod
    async def open(self) -> None:
        """Connect and authenticate.  Raises ``MailConnectionError``."""

    @abc.abstractmethod
    async def list_folders(self) -> list[FolderInfo]:
        """Return every folder visible to the authenticated user."""

    @abc.abstractmethod
    async def fetch_since(self, folder: str, cursor: int, limit: int) -> FetchBatch:
        """Return up to *limit* messages of *folder* with UID strictly
        greater than *cursor*, lowest UIDs first.
        """

    @abc.abstractmethod
    async def close(self) -> None:
        """Release the connection.  Must be safe to call when not open."""


class SendSession(abc.ABC):
    """Submission side of a mailbox."""

    @abc.abstractmethod
    async def open(self) -> None:
        """Connect and authenticate.  Raises ``MailConnectionError``."""

    @property
    @abc.abstractmethod
    def is_open(self) -> bool: ...

    @abc.abstractmethod
    async def send(self, message: MimeMessage) -> str:
        """Submit *message* and return its provider message identifier.

        Raises ``SendError`` on rejection.  Never retries.
        """

    @abc.abstractmethod
    async def close(self) -> None:
        """Release the connection.  Must be safe to call when not open."""


# ----------------------------------------------------------------------
# Collaborators owned by the surrounding CRM data layer
# ----------------------------------------------------------------------


class CursorStore(Protocol):
    """Durable per-(config, folder) watermark."""

    async def get_cursor(self, config_id: str, folder: CursorFolder) -> int:
        """Return the stored ordinal, or 0 when no cursor exists yet."""
        ...

    async def advance_cursor(self, config_id: str, folder: CursorFolder, uid: int) -> None:
        """Move the cursor forward to *uid*.  Never moves it backwards."""
        ...


class ConfigRepository(Protocol):
    """Read access to mailbox integrations, keyed by identifier."""

    async def get(self, config_id: str) -> SyncConfig | None: ...

    async def list_enabled(self) -> list[SyncConfig]: ...

    async def mark_synced(self, config_id: str, at: datetime) -> None: ...


class ContactDirectory(Protocol):
    async def find_contact_by_email(self, address: str) -> str | None: ...


class ActivityStore(Protocol):
    async def upsert_activity(
        self,
        contact_id: str,
        direction: Direction,
        message: EmailMessage,
        *,
        team_id: str | None = None,
    ) -> None:
        """Write a timeline entry scoped to *team_id*; idempotent on
        ``message.message_id``.
        """
        ...
