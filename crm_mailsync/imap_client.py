"""Async IMAP read session wrapping stdlib imaplib with asyncio.to_thread."""

from __future__ import annotations

import asyncio
import imaplib
import re
from collections.abc import Iterator
from contextlib import contextmanager

import structlog

from .config import Endpoint
from .errors import MailConnectionError
from .interface import FetchBatch, FetchedMessage, FolderInfo, ReadSession
from .models import SyncConfig

logger = structlog.get_logger()

_LIST_RE = re.compile(
    r'^\((?P<flags>[^)]*)\) (?P<delimiter>"(?:[^"\\]|\\.)*"|NIL) (?P<name>.+)$'
)


def xoauth2_string(config: SyncConfig) -> str:
    """SASL XOAUTH2 initial client response (before base64)."""
    assert config.access_token is not None
    token = config.access_token.get_secret_value()
    return f"user={config.login}\x01auth=Bearer {token}\x01\x01"


class AsyncImapSession(ReadSession):
    """Async-friendly IMAP read session.

    All blocking ``imaplib`` operations are wrapped with
    ``asyncio.to_thread()`` to avoid blocking the event loop.  Every
    socket operation is bounded by *timeout*.  Folders are selected
    read-only and bodies fetched with ``BODY.PEEK[]`` so a sync never
    changes ``\\Seen`` flags.
    """

    def __init__(self, config: SyncConfig, endpoint: Endpoint, *, timeout: float) -> None:
        self._config = config
        self._endpoint = endpoint
        self._timeout = timeout
        self._conn: imaplib.IMAP4_SSL | imaplib.IMAP4 | None = None
        self._selected: str | None = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def open(self) -> None:
        """Connect and authenticate (password or XOAUTH2)."""
        if not self._config.uses_oauth and self._config.password is None:
            raise MailConnectionError("IMAP password not configured")
        try:
            await asyncio.to_thread(self._connect_sync)
        except (imaplib.IMAP4.error, OSError) as exc:
            raise MailConnectionError(
                f"IMAP connect to {self._endpoint.host}:{self._endpoint.port} failed: {exc}"
            ) from exc
        logger.info(
            "imap_connected",
            host=self._endpoint.host,
            oauth=self._config.uses_oauth,
        )

    def _connect_sync(self) -> None:
        if self._endpoint.secure:
            conn = imaplib.IMAP4_SSL(self._endpoint.host, self._endpoint.port, timeout=self._timeout)
        else:
            conn = imaplib.IMAP4(self._endpoint.host, self._endpoint.port, timeout=self._timeout)
        try:
            if self._config.uses_oauth:
                auth = xoauth2_string(self._config).encode()
                conn.authenticate("XOAUTH2", lambda _: auth)
            else:
                assert self._config.password is not None
                conn.login(self._config.login, self._config.password.get_secret_value())
        except Exception:
            conn.shutdown()
            raise
        self._conn = conn
        self._selected = None

    async def close(self) -> None:
        """Close the selected folder and logout."""
        if self._conn is not None:
            try:
                await asyncio.to_thread(self._disconnect_sync)
            finally:
                self._conn = None
                self._selected = None
            logger.info("imap_disconnected", host=self._endpoint.host)

    def _disconnect_sync(self) -> None:
        assert self._conn is not None
        if self._selected is not None:
            try:
                self._conn.close()
            except imaplib.IMAP4.error:
                pass
        self._conn.logout()

    # ------------------------------------------------------------------
    # Folder listing
    # ------------------------------------------------------------------

    async def list_folders(self) -> list[FolderInfo]:
        return await asyncio.to_thread(self._list_sync)

    def _list_sync(self) -> list[FolderInfo]:
        conn = self._require()
        with _connection_errors("LIST"):
            status, data = conn.list()
        if status != "OK":
            raise MailConnectionError(f"IMAP LIST failed: {status}")
        folders: list[FolderInfo] = []
        for entry in data:
            folder = _parse_list_entry(entry)
            if folder is not None:
                folders.append(folder)
        return folders

    # ------------------------------------------------------------------
    # Message retrieval
    # ------------------------------------------------------------------

    async def fetch_since(self, folder: str, cursor: int, limit: int) -> FetchBatch:
        return await asyncio.to_thread(self._fetch_since_sync, folder, cursor, limit)

    def _fetch_since_sync(self, folder: str, cursor: int, limit: int) -> FetchBatch:
        conn = self._require()
        self._select(folder)

        with _connection_errors("UID SEARCH"):
            status, data = conn.uid("SEARCH", None, f"UID {cursor + 1}:*")
        if status != "OK":
            raise MailConnectionError(f"IMAP UID SEARCH failed in {folder}: {status}")

        # "n:*" always matches the highest UID, even when it is <= cursor
        uids = sorted(int(u) for u in (data[0] or b"").split() if int(u) > cursor)[:limit]

        batch = FetchBatch()
        for uid in uids:
            try:
                with _connection_errors("UID FETCH", per_message=True):
                    status, msg_data = conn.uid("FETCH", str(uid), "(BODY.PEEK[])")
            except imaplib.IMAP4.error as exc:
                batch.failures[uid] = str(exc)
                continue
            raw_bytes = _extract_body(msg_data) if status == "OK" else None
            if raw_bytes is None:
                batch.failures[uid] = f"FETCH returned {status} without a body"
                continue
            batch.messages.append(FetchedMessage(uid=uid, raw_bytes=raw_bytes))

        logger.debug(
            "imap_fetch_complete",
            folder=folder,
            cursor=cursor,
            fetched=len(batch.messages),
            failed=len(batch.failures),
        )
        return batch

    # ------------------------------------------------------------------
    # Synchronous helpers (run in thread)
    # ------------------------------------------------------------------

    def _require(self) -> imaplib.IMAP4:
        if self._conn is None:
            raise MailConnectionError("IMAP session is not open")
        return self._conn

    def _select(self, folder: str) -> None:
        if self._selected == folder:
            return
        conn = self._require()
        with _connection_errors("SELECT"):
            status, data = conn.select(_quote(folder), readonly=True)
        if status != "OK":
            raise MailConnectionError(f"IMAP SELECT {folder!r} failed: {data!r}")
        self._selected = folder


@contextmanager
def _connection_errors(command: str, *, per_message: bool = False) -> Iterator[None]:
    """Translate dropped connections and socket timeouts into
    ``MailConnectionError``.

    A protocol-level ``IMAP4.error`` (a ``NO``/``BAD`` reply) on a folder
    command also becomes ``MailConnectionError``. With ``per_message`` it
    passes through so the caller can record it against a single UID.
    """
    try:
        yield
    except imaplib.IMAP4.abort as exc:
        raise MailConnectionError(f"IMAP connection lost during {command}: {exc}") from exc
    except imaplib.IMAP4.error as exc:
        if per_message:
            raise
        raise MailConnectionError(f"IMAP {command} rejected: {exc}") from exc
    except MailConnectionError:
        raise
    except OSError as exc:
        raise MailConnectionError(f"IMAP {command} failed: {exc}") from exc


def _quote(name: str) -> str:
    escaped = name.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def _unquote(value: str) -> str:
    if len(value) >= 2 and value[0] == value[-1] == '"':
        return value[1:-1].replace('\\"', '"').replace("\\\\", "\\")
    return value


def _parse_list_entry(entry: bytes | tuple | None) -> FolderInfo | None:
    """Parse one LIST response line, e.g. ``(\\HasNoChildren \\Sent) "/" "Sent"``."""
    if not entry:
        return None
    if isinstance(entry, tuple):
        # Folder name sent as a literal: (b'(\\Flags) "/" {10}', b'Sent Items')
        prefix, literal = entry[0], entry[1]
        line = prefix.rsplit(b" ", 1)[0].decode("utf-8", "replace")
        name = literal.decode("utf-8", "replace")
        match = _LIST_RE.match(f'{line} "{name}"')
    else:
        match = _LIST_RE.match(entry.decode("utf-8", "replace"))
    if match is None:
        return None
    delimiter = match.group("delimiter")
    return FolderInfo(
        name=_unquote(match.group("name").strip()),
        flags=frozenset(match.group("flags").split()),
        delimiter=None if delimiter == "NIL" else _unquote(delimiter),
    )


def _extract_body(msg_data: list) -> bytes | None:
    for item in msg_data or []:
        if isinstance(item, tuple) and len(item) >= 2 and isinstance(item[1], bytes):
            return item[1]
    return None
