"""Open an AMQP connection within an overall deadline, retrying short attempts."""
from __future__ import annotations

import asyncio
from typing import Any

from loguru import logger

from inspector.app.core import SERVICE_NAME
from inspector.app.core.deadline import Deadline, bounded_attempts
from inspector.app.domain.errors import AuthenticationFailedError, ConnectTimeoutError
from inspector.app.ports.amqp import AmqpConnection, AmqpConnector, AmqpEndpoint
from inspector.app.ports.broker import is_unauthorized


def _log(event: str, **kwargs: Any) -> None:
    logger.bind(service_name=SERVICE_NAME, event=event, **kwargs).info("")


class ConnectionManager:
    """
    Each attempt gets min(attempt_timeout, remaining) seconds; between attempts we pause
    for retry_pause. An authorization failure ends the loop at once. When the deadline
    passes (or cancel is set) ConnectTimeoutError carries the last failure seen.
    """

    def __init__(
        self,
        connector: AmqpConnector,
        *,
        attempt_timeout: float = 2.0,
        retry_pause: float = 0.5,
    ) -> None:
        self._connector = connector
        self._attempt_timeout = float(attempt_timeout)
        self._retry_pause = float(retry_pause)

    async def connect(
        self,
        endpoint: AmqpEndpoint,
        deadline: Deadline,
        cancel: asyncio.Event | None = None,
    ) -> AmqpConnection:
        last_error: BaseException | None = None
        attempt = 0
        async for timeout in bounded_attempts(deadline, self._attempt_timeout, self._retry_pause, cancel):
            attempt += 1
            _log("amqp_connect_attempt", host=endpoint.host, attempt=attempt, timeout=round(timeout, 3))
            try:
                connection = await asyncio.wait_for(
                    self._connector.open(endpoint, timeout=timeout),
                    timeout=timeout,
                )
            except asyncio.TimeoutError as exc:
                last_error = exc
                logger.warning("amqp connect attempt {} timed out after {:.2f}s", attempt, timeout)
                continue
            except Exception as exc:
                if is_unauthorized(exc):
                    _log("amqp_connect_unauthorized", host=endpoint.host, mechanism=endpoint.mechanism.value)
                    raise AuthenticationFailedError(f"authentication refused by {endpoint.host}") from exc
                last_error = exc
                logger.warning("amqp connect attempt {} failed: {}", attempt, exc)
                continue
            _log("amqp_connected", host=endpoint.host, attempt=attempt, elapsed=round(deadline.elapsed(), 3))
            return connection

        cancelled = cancel is not None and cancel.is_set()
        reason = "cancelled" if cancelled else "deadline exceeded"
        raise ConnectTimeoutError(
            f"could not connect to {endpoint.host} after {attempt} attempt(s): {reason}",
            last_error,
        )
