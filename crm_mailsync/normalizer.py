"""Message normalizer: raw RFC 822 bytes -> canonical ``EmailMessage``.

Pure transformation, no I/O.  Walks the MIME tree once for bodies and
once for attachment metadata; attachment bytes are measured but not kept.
"""

from __future__ import annotations

import email
import email.errors
import email.policy
import email.utils
import hashlib
import re
from collections.abc import Iterator
from datetime import UTC, datetime

import structlog

from .errors import ParseError
from .interface import FetchedMessage
from .models import Address, AttachmentInfo, EmailMessage

logger = structlog.get_logger()

_MSG_ID_RE = re.compile(r"<[^<>\s]+>")

_PARSE_FAILURES = (
    email.errors.MessageError,
    LookupError,
    UnicodeError,
    ValueError,
    TypeError,
    AttributeError,
    IndexError,
)


class MessageNormalizer:
    """Stateless normalizer for fetched messages of one folder."""

    def __init__(self, folder: str) -> None:
        self._folder = folder

    @property
    def folder(self) -> str:
        return self._folder

    def normalize(self, fetched: FetchedMessage) -> EmailMessage:
        """Raises :class:`ParseError` when the message cannot be normalized."""
        if not fetched.raw_bytes.strip():
            raise ParseError(self._folder, fetched.uid, "empty message")
        try:
            return self._normalize(fetched)
        except ParseError:
            raise
        except _PARSE_FAILURES as exc:
            raise ParseError(self._folder, fetched.uid, f"{type(exc).__name__}: {exc}") from exc

    def _normalize(self, fetched: FetchedMessage) -> EmailMessage:
        msg = email.message_from_bytes(fetched.raw_bytes, policy=email.policy.default)

        senders = _parse_addresses(msg.get("From"))
        if not senders:
            raise ParseError(self._folder, fetched.uid, "missing From address")

        message_id = _first_msg_id(msg.get("Message-ID")) or _synthetic_id(fetched.raw_bytes)
        in_reply_to = _first_msg_id(msg.get("In-Reply-To"))
        references = _MSG_ID_RE.findall(str(msg.get("References", "")))
        body_text, body_html = self._extract_bodies(msg)

        return EmailMessage(
            message_id=message_id,
            thread_id=thread_id_for(message_id, in_reply_to, references),
            sender=senders[0],
            to=_parse_addresses(msg.get("To")),
            cc=_parse_addresses(msg.get("Cc")),
            bcc=_parse_addresses(msg.get("Bcc")),
            subject=str(msg.get("Subject", "")),
            body_text=body_text,
            body_html=body_html,
            attachments=self._extract_attachments(msg),
            date=_parse_date(msg.get("Date")),
            in_reply_to=in_reply_to,
            references=references,
            headers={k: str(v) for k, v in msg.items()},
            uid=fetched.uid,
        )

    def _extract_bodies(self, msg: email.message.Message) -> tuple[str, str]:
        """Walk MIME parts and return (plain_text, html_text); missing ones stay empty."""
        body_text: str | None = None
        body_html: str | None = None

        for part in msg.walk():
            if part.get_content_maintype() == "multipart":
                continue
            if "attachment" in str(part.get("Content-Disposition", "")):
                continue

            content_type = part.get_content_type()
            if content_type == "text/plain" and body_text is None:
                payload = part.get_content()
                if isinstance(payload, str):
                    body_text = payload
            elif content_type == "text/html" and body_html is None:
                payload = part.get_content()
                if isinstance(payload, str):
                    body_html = payload

        return body_text or "", body_html or ""

    def _extract_attachments(self, msg: email.message.Message) -> list[AttachmentInfo]:
        attachments: list[AttachmentInfo] = []

        for section, part in _body_sections(msg):
            disposition = str(part.get("Content-Disposition", ""))
            filename = part.get_filename()

            # Content-Disposition: attachment, or any named leaf part
            if "attachment" not in disposition and not filename:
                continue

            payload = part.get_payload(decode=True) or b""
            attachments.append(
                AttachmentInfo(
                    filename=filename or "unnamed",
                    content_type=part.get_content_type(),
                    size=len(payload),
                    part_id=section,
                )
            )

        return attachments


def thread_id_for(message_id: str, in_reply_to: str | None, references: list[str]) -> str:
    """Thread identifier: the message replied to, else the root of a bare
    ``References`` chain, else the message itself.
    """
    if in_reply_to:
        return in_reply_to
    if references:
        return references[0]
    return message_id


def _parse_addresses(header_value: object | None) -> list[Address]:
    if not header_value:
        return []
    return [
        Address(address=addr, name=name or None)
        for name, addr in email.utils.getaddresses([str(header_value)])
        if addr
    ]


def _first_msg_id(header_value: object | None) -> str | None:
    if not header_value:
        return None
    text = str(header_value).strip()
    match = _MSG_ID_RE.search(text)
    if match:
        return match.group(0)
    return text or None


def _synthetic_id(raw_bytes: bytes) -> str:
    """Stable identifier for messages without a Message-ID header."""
    digest = hashlib.sha256(raw_bytes).hexdigest()[:32]
    return f"<{digest}@crm-mailsync.invalid>"


def _parse_date(header_value: object | None) -> datetime:
    if header_value:
        try:
            dt = email.utils.parsedate_to_datetime(str(header_value))
        except (TypeError, ValueError):
            dt = None
        if dt is not None:
            if dt.tzinfo is None:
                dt = dt.replace(tzinfo=UTC)
            return dt.astimezone(UTC)
    return datetime.now(UTC)


def _body_sections(
    part: email.message.Message, prefix: str = ""
) -> Iterator[tuple[str, email.message.Message]]:
    """Yield every leaf part with its IMAP body section (``1``, ``2.1``...).

    Numbering follows RFC 3501 section 6.4.5: children of a multipart are
    numbered from 1, and a non-multipart message has the single section
    ``1``. An encapsulated ``message/rfc822`` is a leaf.
    """
    if part.get_content_maintype() != "multipart" or not part.is_multipart():
        yield prefix or "1", part
        return
    for index, child in enumerate(part.get_payload(), 1):
        yield from _body_sections(child, f"{prefix}.{index}" if prefix else str(index))
