"""Build the outbound clone used to resubmit a dead-lettered message."""
from __future__ import annotations

from datetime import datetime, timedelta, timezone

from inspector.app.constants import PROPERTIES
from inspector.app.domain.models import MessageDescriptor, OutboundMessage


def remaining_time_to_live(message: MessageDescriptor, now: datetime) -> timedelta | None:
    """Time left before the original message would have expired, if it can be computed.

    Returns None when neither an expiry nor an enqueue time + TTL is known, or when
    the original has already expired (the entity default then applies).
    """
    expires_at = message.expires_at
    if expires_at is None and message.enqueued_time is not None and message.time_to_live is not None:
        expires_at = message.enqueued_time + message.time_to_live
    if expires_at is None:
        return None
    if expires_at.tzinfo is None:
        expires_at = expires_at.replace(tzinfo=timezone.utc)
    remaining = expires_at - now
    if remaining <= timedelta(0):
        return None
    return remaining


def build_resubmit_message(message: MessageDescriptor, *, now: datetime | None = None) -> OutboundMessage:
    now = now or datetime.now(timezone.utc)
    properties = {
        key: value
        for key, value in message.application_properties.items()
        if key not in PROPERTIES.INJECTED
    }
    properties[PROPERTIES.ORIGINAL_SEQUENCE_NUMBER] = message.sequence_number
    return OutboundMessage(
        body=bytes(message.body),
        content_type=message.content_type,
        correlation_id=message.correlation_id,
        session_id=message.session_id,
        reply_to=message.reply_to,
        reply_to_session_id=message.reply_to_session_id,
        partition_key=message.partition_key,
        subject=message.subject,
        time_to_live=remaining_time_to_live(message, now),
        application_properties=properties,
    )
