"""AMQP port: the raw link-level surface needed for $cbs and sub-queue browsing.

Infrastructure (python-qpid-proton) implements it. Closing is always scheduled and
never blocks the caller; links and connections are released even after errors.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping, Protocol, runtime_checkable

from inspector.app.constants import AMQP, SaslMechanism


@dataclass(frozen=True)
class AmqpEndpoint:
    host: str
    mechanism: SaslMechanism
    port: int = AMQP.TLS_PORT
    user: str | None = None
    password: str | None = None

    def __repr__(self) -> str:
        return f"AmqpEndpoint(host={self.host!r}, port={self.port}, mechanism={self.mechanism.value}, user={self.user!r})"


@runtime_checkable
class AmqpMessage(Protocol):
    """Minimal read-only view of a delivered AMQP message."""

    @property
    def id(self) -> Any: ...

    @property
    def correlation_id(self) -> Any: ...

    @property
    def group_id(self) -> str | None: ...

    @property
    def properties(self) -> Mapping[str, Any] | None: ...

    @property
    def annotations(self) -> Mapping[Any, Any] | None: ...


@runtime_checkable
class AmqpReceiverLink(Protocol):
    async def receive(self, timeout: float) -> AmqpMessage | None:
        """Return the next delivery, or None when nothing arrived within timeout."""
        ...

    async def accept(self, message: AmqpMessage) -> None: ...

    async def release(self, message: AmqpMessage) -> None: ...

    def close(self) -> None: ...


@runtime_checkable
class AmqpSenderLink(Protocol):
    async def send(
        self,
        body: Any,
        *,
        message_id: str,
        properties: dict[str, Any],
        reply_to: str | None = None,
        timeout: float,
    ) -> None: ...

    def close(self) -> None: ...


@runtime_checkable
class AmqpConnection(Protocol):
    async def open_receiver(
        self,
        address: str,
        *,
        credit: int,
        name: str | None = None,
        target_address: str | None = None,
    ) -> AmqpReceiverLink: ...

    async def open_sender(self, address: str) -> AmqpSenderLink: ...

    def close(self) -> None: ...


@runtime_checkable
class AmqpConnector(Protocol):
    async def open(self, endpoint: AmqpEndpoint, *, timeout: float) -> AmqpConnection:
        """Open connection + session; raise BrokerUnauthorizedError when SASL is refused."""
        ...
