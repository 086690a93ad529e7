"""Plain-text rendering of a message for viewing outside the inspector."""
from __future__ import annotations

import json

from inspector.app.domain.models import EntityRef, MessageDescriptor


def format_body(body: bytes, content_type: str | None) -> str:
    text = body.decode("utf-8", errors="replace")
    looks_json = (content_type or "").lower().find("json") >= 0 or text.lstrip().startswith(("{", "["))
    if looks_json:
        try:
            return json.dumps(json.loads(text), indent=2, ensure_ascii=False)
        except ValueError:
            return text
    return text


def preview(body: bytes, width: int = 60) -> str:
    try:
        text = body.decode("utf-8")
    except UnicodeDecodeError:
        return body[:32].hex()[:40]
    text = text.replace("\r", " ").replace("\n", " ")
    return text if len(text) <= width else text[: max(0, width - 1)] + "…"


def render_message(message: MessageDescriptor, entity: EntityRef) -> str:
    lines = [
        f"# Azure Service Bus - {entity.display_name}",
        f"# Namespace: {entity.namespace}",
        "#",
        f"MessageId: {message.message_id or ''}",
        f"Subject: {message.subject or ''}",
        f"SequenceNumber: {message.sequence_number}",
    ]
    if message.session_id:
        lines.append(f"SessionId: {message.session_id}")
    if message.enqueued_time is not None:
        lines.append(f"Enqueued: {message.enqueued_time.isoformat()}")
    lines.append(f"ContentType: {message.content_type or ''}")
    if message.dead_letter_reason:
        lines.append(f"DeadLetterReason: {message.dead_letter_reason}")
    if message.application_properties:
        lines.append("ApplicationProperties:")
        for key in sorted(message.application_properties, key=str.lower):
            lines.append(f"  {key}: {message.application_properties[key]}")
    lines.append("---")
    lines.append(format_body(message.body, message.content_type))
    return "\n".join(lines) + "\n"
