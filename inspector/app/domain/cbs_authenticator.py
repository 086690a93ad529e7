"""Claims-based security: put a bearer token on the reserved $cbs node.

One sender/receiver pair is opened on `$cbs` per call and closed on every exit.
Each candidate token type gets its own request (a fresh message-id) and its own
response wait. A response counts only when its correlation-id equals that
message-id and its status-code is 200 or 202; anything else is left unaccepted
and the wait goes on until the response timeout.
"""
from __future__ import annotations

import asyncio
import time
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Sequence

from loguru import logger

from inspector.app.constants import CBS
from inspector.app.core import SERVICE_NAME
from inspector.app.core.deadline import Deadline
from inspector.app.ports.amqp import AmqpConnection, AmqpMessage, AmqpReceiverLink, AmqpSenderLink


def _log(event: str, **kwargs: Any) -> None:
    logger.bind(service_name=SERVICE_NAME, event=event, **kwargs).info("")


@dataclass(frozen=True)
class CbsOutcome:
    ok: bool
    token_type: str | None = None
    tried: tuple[str, ...] = ()
    error: str | None = None


def response_status(properties: Mapping[str, Any] | None) -> int | None:
    if not properties:
        return None
    raw = properties.get(CBS.STATUS_CODE)
    if raw is None:
        return None
    try:
        return int(raw)
    except (TypeError, ValueError):
        return None


def _same_id(left: Any, right: Any) -> bool:
    if left is None or right is None:
        return False
    if isinstance(left, bytes):
        left = left.decode("utf-8", errors="replace")
    if isinstance(right, bytes):
        right = right.decode("utf-8", errors="replace")
    return str(left) == str(right)


class CbsAuthenticator:
    def __init__(
        self,
        *,
        response_timeout: float = 5.0,
        token_lifetime_seconds: int = 3600,
        poll_interval: float = 0.5,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._response_timeout = float(response_timeout)
        self._token_lifetime_seconds = int(token_lifetime_seconds)
        self._poll_interval = float(poll_interval)
        self._clock = clock

    async def put_token(
        self,
        connection: AmqpConnection,
        audience: str,
        token: str,
        token_types: Sequence[str],
        *,
        expires_on: int | None = None,
        cancel: asyncio.Event | None = None,
    ) -> CbsOutcome:
        if not token_types:
            raise ValueError("at least one token type is required")
        expiration = int(expires_on) if expires_on else int(time.time()) + self._token_lifetime_seconds
        reply_address = f"cbs-{uuid.uuid4()}"

        sender: AmqpSenderLink | None = None
        receiver: AmqpReceiverLink | None = None
        tried: list[str] = []
        try:
            sender = await connection.open_sender(CBS.ADDRESS)
            receiver = await connection.open_receiver(
                CBS.ADDRESS,
                credit=CBS.RECEIVE_CREDIT,
                name=reply_address,
                target_address=reply_address,
            )
            for token_type in token_types:
                if cancel is not None and cancel.is_set():
                    return CbsOutcome(ok=False, tried=tuple(tried), error="cancelled")
                tried.append(token_type)
                if await self._try_type(sender, receiver, audience, token, token_type, expiration, reply_address, cancel):
                    _log("cbs_token_accepted", audience=audience, token_type=token_type)
                    return CbsOutcome(ok=True, token_type=token_type, tried=tuple(tried))
                _log("cbs_token_type_failed", audience=audience, token_type=token_type)
            return CbsOutcome(ok=False, tried=tuple(tried), error="no token type was accepted")
        finally:
            if receiver is not None:
                receiver.close()
            if sender is not None:
                sender.close()

    async def _try_type(
        self,
        sender: AmqpSenderLink,
        receiver: AmqpReceiverLink,
        audience: str,
        token: str,
        token_type: str,
        expiration: int,
        reply_address: str,
        cancel: asyncio.Event | None,
    ) -> bool:
        deadline = Deadline(self._response_timeout, clock=self._clock)
        message_id = str(uuid.uuid4())
        properties = {
            "operation": CBS.OPERATION_PUT_TOKEN,
            "type": token_type,
            "name": audience,
            "expiration": expiration,
        }
        try:
            await sender.send(
                token,
                message_id=message_id,
                properties=properties,
                reply_to=reply_address,
                timeout=deadline.remaining(),
            )
        except Exception as exc:
            logger.warning("cbs put-token send failed for type {}: {}", token_type, exc)
            return False

        while not deadline.expired:
            if cancel is not None and cancel.is_set():
                return False
            response = await receiver.receive(timeout=deadline.cap(self._poll_interval))
            if response is None:
                continue
            if self._is_success(response, message_id):
                await receiver.accept(response)
                return True
            logger.debug(
                "ignoring cbs response correlation_id={} status={}",
                response.correlation_id,
                response_status(response.properties),
            )
        return False

    def _is_success(self, response: AmqpMessage, message_id: str) -> bool:
        if not _same_id(response.correlation_id, message_id):
            return False
        return response_status(response.properties) in CBS.SUCCESS_CODES
