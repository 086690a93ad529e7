"""Broker port: entity-level operations (peek, lock-mode receive, send, counters).

Application and domain code depend on this port; infrastructure (azure-servicebus)
implements it. Adapters map SDK exceptions onto the errors defined here.
"""
from __future__ import annotations

from typing import Any, AsyncContextManager, Protocol, Sequence, runtime_checkable

from inspector.app.domain.models import EntityCounters, EntityRef, MessageDescriptor, OutboundMessage


class BrokerError(Exception):
    """Base for broker failures (network, protocol, entity state)."""


class BrokerTimeoutError(BrokerError):
    """Raised when a broker call does not complete in time."""


class BrokerUnauthorizedError(BrokerError):
    """Raised when the broker rejects the caller's rights (401/403)."""


def is_unauthorized(exc: BaseException | None) -> bool:
    """True if exc, or anything in its cause/context chain, is an authorization failure."""
    seen: set[int] = set()
    while exc is not None and id(exc) not in seen:
        seen.add(id(exc))
        if isinstance(exc, (BrokerUnauthorizedError, PermissionError)):
            return True
        status = getattr(exc, "status_code", None) or getattr(exc, "status", None)
        if status in (401, 403):
            return True
        if "unauthorized" in str(exc).lower():
            return True
        exc = exc.__cause__ or exc.__context__
    return False


@runtime_checkable
class LockedMessage(Protocol):
    @property
    def sequence_number(self) -> int | None: ...


@runtime_checkable
class LockReceiver(Protocol):
    """Lock-mode receiver bound to one entity (or sub-queue, or session)."""

    async def receive_messages(self, max_message_count: int, max_wait_time: float) -> Sequence[Any]: ...

    async def complete_message(self, message: Any) -> None: ...

    async def dead_letter_message(self, message: Any, *, reason: str, error_description: str) -> None: ...

    async def abandon_message(self, message: Any) -> None: ...


@runtime_checkable
class EntityClient(Protocol):
    async def peek(
        self,
        entity: EntityRef,
        *,
        from_sequence: int,
        count: int,
        dead_letter: bool = False,
        session_id: str | None = None,
    ) -> list[MessageDescriptor]:
        """Browse without locking; messages with sequence >= from_sequence, in order."""
        ...

    def lock_receiver(
        self,
        entity: EntityRef,
        *,
        dead_letter: bool = False,
        session_id: str | None = None,
    ) -> AsyncContextManager[LockReceiver]: ...

    async def send(self, entity: EntityRef, message: OutboundMessage) -> None: ...

    async def runtime_counters(self, entity: EntityRef) -> EntityCounters: ...

    async def close(self) -> None: ...
