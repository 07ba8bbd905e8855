"""Error taxonomy for the mail sync engine.

Only :class:`MailConnectionError` and :class:`PersistenceError` abort a
sync run.  :class:`FetchError` and :class:`ParseError` are per-message and
end up in ``SyncResult.errors``.  :class:`CorrelationMiss` is not an error
at all from the caller's point of view, the pipeline skips the message.
"""

from __future__ import annotations


class MailSyncError(Exception):
    """Base class for every error raised by the engine."""


class MailConnectionError(MailSyncError, ConnectionError):
    """Handshake, authentication or timeout failure on a mail session."""


class MessageError(MailSyncError):
    """A single message in a folder could not be handled."""

    def __init__(self, folder: str, uid: int, reason: str) -> None:
        super().__init__(f"{folder} uid={uid}: {reason}")
        self.folder = folder
        self.uid = uid
        self.reason = reason


class FetchError(MessageError):
    """The server did not return the body of a single message."""


class ParseError(MessageError):
    """The raw message could not be normalized."""


class CorrelationMiss(MailSyncError):
    """No known contact matches the message address."""

    def __init__(self, address: str) -> None:
        super().__init__(f"no contact for {address!r}")
        self.address = address


class PersistenceError(MailSyncError):
    """A storage write failed; the batch must not advance the cursor."""


class SendError(MailSyncError):
    """The provider rejected an outgoing message."""

    def __init__(self, reason: str, *, code: int | None = None) -> None:
        super().__init__(reason if code is None else f"{code} {reason}")
        self.reason = reason
        self.code = code


class UnknownConfigError(MailSyncError):
    """No mailbox integration exists with the requested identifier."""

    def __init__(self, config_id: str) -> None:
        super().__init__(f"unknown sync config {config_id!r}")
        self.config_id = config_id


class RunInProgressError(MailSyncError):
    """A sync run for this integration is already executing."""

    def __init__(self, config_id: str) -> None:
        super().__init__(f"sync already running for {config_id!r}")
        self.config_id = config_id
