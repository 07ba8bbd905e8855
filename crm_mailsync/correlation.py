"""Correlate normalized messages to contacts and record them as activities."""

from __future__ import annotations

import structlog

from .config import RetryConfig
from .errors import CorrelationMiss
from .interface import ActivityStore, ContactDirectory
from .models import Address, Direction, EmailMessage
from .retry import storage_call

logger = structlog.get_logger()


class ActivityCorrelator:
    """Thin seam over the contact and activity collaborators.

    Inbound messages correlate on the sender, outbound messages on the
    primary recipient.  Storage calls are retried with backoff and
    surface as ``PersistenceError`` once retries run out.
    """

    def __init__(
        self,
        contacts: ContactDirectory,
        activities: ActivityStore,
        retry: RetryConfig,
    ) -> None:
        self._contacts = contacts
        self._activities = activities
        self._retry = retry

    async def correlate(self, message: EmailMessage, direction: Direction) -> str:
        """Return the contact id for *message*; raises :class:`CorrelationMiss`."""
        address = _correlation_address(message, direction)
        if address is None:
            raise CorrelationMiss("")
        contact_id = await storage_call(
            self._retry,
            "find_contact_by_email",
            lambda: self._contacts.find_contact_by_email(address.address.lower()),
        )
        if contact_id is None:
            raise CorrelationMiss(address.address)
        return contact_id

    async def record(
        self,
        contact_id: str,
        direction: Direction,
        message: EmailMessage,
        *,
        team_id: str | None = None,
    ) -> None:
        await storage_call(
            self._retry,
            "upsert_activity",
            lambda: self._activities.upsert_activity(
                contact_id, direction, message, team_id=team_id
            ),
        )
        logger.debug(
            "activity_recorded",
            contact_id=contact_id,
            direction=direction.value,
            message_id=message.message_id,
        )


def _correlation_address(message: EmailMessage, direction: Direction) -> Address | None:
    if direction is Direction.INBOUND:
        return message.sender
    return message.primary_recipient
