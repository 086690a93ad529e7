"""Domain models."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from inspector.app.constants import AMQP, EntityKind, LockBatchFailure, Strategy


@dataclass(frozen=True)
class EntityRef:
    """A resolved queue or topic subscription (value object).

    `path` is the queue name, or `<topic>/Subscriptions/<subscription>`.
    """

    kind: EntityKind
    path: str
    session_enabled: bool = False
    namespace: str = ""

    def __post_init__(self) -> None:
        if not self.path:
            raise ValueError("entity path must be a non-empty str")
        if self.kind == EntityKind.TOPIC_SUBSCRIPTION and len(self.path.split("/")) != 3:
            raise ValueError("subscription path must look like <topic>/Subscriptions/<subscription>")

    @staticmethod
    def queue(name: str, *, session_enabled: bool = False, namespace: str = "") -> "EntityRef":
        return EntityRef(EntityKind.QUEUE, name, session_enabled, namespace)

    @staticmethod
    def subscription(
        topic: str,
        subscription: str,
        *,
        session_enabled: bool = False,
        namespace: str = "",
    ) -> "EntityRef":
        return EntityRef(
            EntityKind.TOPIC_SUBSCRIPTION,
            f"{topic}/Subscriptions/{subscription}",
            session_enabled,
            namespace,
        )

    @property
    def topic_name(self) -> str:
        if self.kind != EntityKind.TOPIC_SUBSCRIPTION:
            raise ValueError("queues have no topic")
        return self.path.split("/")[0]

    @property
    def subscription_name(self) -> str:
        if self.kind != EntityKind.TOPIC_SUBSCRIPTION:
            raise ValueError("queues have no subscription")
        return self.path.split("/")[2]

    @property
    def display_name(self) -> str:
        if self.kind == EntityKind.QUEUE:
            return f"Queue {self.path}"
        return f"Subscription {self.topic_name}/{self.subscription_name}"

    def address(self, *, dead_letter: bool = False) -> str:
        return f"{self.path}{AMQP.DEAD_LETTER_SUFFIX}" if dead_letter else self.path


@dataclass(frozen=True)
class MessageDescriptor:
    """Read-only snapshot of a peeked or received message."""

    sequence_number: int
    session_id: str | None = None
    message_id: str | None = None
    enqueued_time: datetime | None = None
    content_type: str | None = None
    body: bytes = b""
    application_properties: dict[str, Any] = field(default_factory=dict)
    subject: str | None = None
    correlation_id: str | None = None
    reply_to: str | None = None
    reply_to_session_id: str | None = None
    partition_key: str | None = None
    time_to_live: timedelta | None = None
    expires_at: datetime | None = None
    dead_letter_reason: str | None = None
    dead_letter_error_description: str | None = None


@dataclass(frozen=True)
class OutboundMessage:
    """A new message to send; built from a descriptor, never by mutating one."""

    body: bytes
    content_type: str | None = None
    correlation_id: str | None = None
    session_id: str | None = None
    reply_to: str | None = None
    reply_to_session_id: str | None = None
    partition_key: str | None = None
    subject: str | None = None
    time_to_live: timedelta | None = None
    application_properties: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class TargetSelector:
    sequence_number: int
    session_id: str | None = None


@dataclass(frozen=True)
class DeadLetterDetails:
    reason: str
    description: str


@dataclass(frozen=True)
class DispositionOutcome:
    selector: TargetSelector
    ok: bool
    error: str | None = None
    strategy: Strategy | None = None


@dataclass(frozen=True)
class DispositionSummary:
    outcomes: tuple[DispositionOutcome, ...]

    @property
    def succeeded(self) -> int:
        return sum(1 for o in self.outcomes if o.ok)

    @property
    def failed(self) -> int:
        return sum(1 for o in self.outcomes if not o.ok)


@dataclass(frozen=True)
class MessageSettlement:
    """What happened to one message of a locked batch."""

    sequence_number: int | None
    action: str
    ok: bool
    error: str | None = None


@dataclass(frozen=True)
class LockBatchResult:
    ok: bool
    failure: LockBatchFailure | None = None
    error: str | None = None
    settlements: tuple[MessageSettlement, ...] = ()


@dataclass(frozen=True)
class BrowseAttempt:
    credit: int
    window_seconds: float


@dataclass(frozen=True)
class BrowseTimeouts:
    """Bounds for one raw-browse episode; `None` windows use the escalation plan."""

    connect_seconds: float = 30.0
    cbs_response_seconds: float = 5.0
    first_pass_window_seconds: float | None = None
    second_pass_window_seconds: float | None = None


@dataclass(frozen=True)
class EntityCounters:
    total: int
    active: int
    dead_letter: int
    scheduled: int = 0
