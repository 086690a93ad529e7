"""Credit-bounded browse over one entity address, matching a target sequence."""
from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Callable, Mapping

from loguru import logger

from inspector.app.constants import AMQP
from inspector.app.core import SERVICE_NAME
from inspector.app.core.deadline import Deadline
from inspector.app.ports.amqp import AmqpConnection, AmqpMessage


def _log(event: str, **kwargs: Any) -> None:
    logger.bind(service_name=SERVICE_NAME, event=event, **kwargs).info("")


@dataclass(frozen=True)
class BrowseResult:
    found: bool
    inspected: int
    elapsed: float


def read_sequence_number(annotations: Mapping[Any, Any] | None) -> int | None:
    """Sequence number from the message annotations; tolerant of its encoding."""
    if not annotations:
        return None
    raw = None
    for key, value in annotations.items():
        if str(key) == AMQP.SEQUENCE_NUMBER_ANNOTATION:
            raw = value
            break
    if raw is None or isinstance(raw, bool):
        return None
    if isinstance(raw, int):
        return raw
    if isinstance(raw, Decimal):
        return int(raw) if raw == raw.to_integral_value() else None
    if isinstance(raw, float):
        return int(raw) if raw.is_integer() else None
    if isinstance(raw, (str, bytes)):
        text = raw.decode() if isinstance(raw, bytes) else raw
        try:
            return int(text.strip())
        except ValueError:
            return None
    return None


class MessageBrowser:
    """
    Opens one receive link per call, with a single up-front credit grant and no
    server-side session filter. Deliveries that do not match are released; the
    first match is accepted. The link is closed however the call ends. Escalation
    across (credit, window) pairs is the caller's job.
    """

    def __init__(self, *, poll_interval: float = 1.0, clock: Callable[[], float] = time.monotonic) -> None:
        self._poll_interval = min(1.0, float(poll_interval))
        self._clock = clock

    async def browse(
        self,
        connection: AmqpConnection,
        address: str,
        *,
        target_sequence: int,
        target_session_id: str | None = None,
        credit: int,
        window_seconds: float,
        cancel: asyncio.Event | None = None,
    ) -> BrowseResult:
        deadline = Deadline(window_seconds, clock=self._clock)
        inspected = 0
        link = await connection.open_receiver(address, credit=max(1, int(credit)))
        try:
            while not deadline.expired:
                if cancel is not None and cancel.is_set():
                    _log("browse_cancelled", address=address, inspected=inspected)
                    break
                message = await link.receive(timeout=deadline.cap(self._poll_interval))
                if message is None:
                    continue
                inspected += 1
                if self._matches(message, target_sequence, target_session_id):
                    await link.accept(message)
                    _log(
                        "browse_target_accepted",
                        address=address,
                        sequence_number=target_sequence,
                        inspected=inspected,
                    )
                    return BrowseResult(found=True, inspected=inspected, elapsed=deadline.elapsed())
                await link.release(message)
        finally:
            link.close()
        return BrowseResult(found=False, inspected=inspected, elapsed=deadline.elapsed())

    def _matches(self, message: AmqpMessage, target_sequence: int, target_session_id: str | None) -> bool:
        if target_session_id and (message.group_id or "") != target_session_id:
            return False
        return read_sequence_number(message.annotations) == target_sequence
