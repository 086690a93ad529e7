"""Entity client implementation using azure-servicebus (async) and its administration client."""
from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Sequence

from azure.core.exceptions import ClientAuthenticationError, HttpResponseError
from azure.servicebus import ServiceBusMessage, ServiceBusReceiveMode, ServiceBusSubQueue
from azure.servicebus.aio import ServiceBusClient, ServiceBusReceiver
from azure.servicebus.aio.management import ServiceBusAdministrationClient
from azure.servicebus.amqp import AmqpMessageBodyType
from azure.servicebus.exceptions import (
    OperationTimeoutError,
    ServiceBusAuthenticationError,
    ServiceBusAuthorizationError,
    ServiceBusError,
)

from inspector.app.constants import EntityKind
from inspector.app.domain.models import EntityCounters, EntityRef, MessageDescriptor, OutboundMessage
from inspector.app.ports.broker import (
    BrokerError,
    BrokerTimeoutError,
    BrokerUnauthorizedError,
    EntityClient,
    LockReceiver,
)


def _map_error(exc: Exception, action: str) -> BrokerError:
    if isinstance(exc, (ServiceBusAuthenticationError, ServiceBusAuthorizationError, ClientAuthenticationError)):
        return BrokerUnauthorizedError(f"{action}: {exc}")
    if isinstance(exc, HttpResponseError) and exc.status_code in (401, 403):
        return BrokerUnauthorizedError(f"{action}: {exc}")
    if isinstance(exc, OperationTimeoutError):
        return BrokerTimeoutError(f"{action} timed out")
    return BrokerError(f"{action} failed: {exc}")


def _text(value: Any) -> Any:
    return value.decode("utf-8", errors="replace") if isinstance(value, bytes) else value


def _body_bytes(message: Any) -> bytes:
    body_type = getattr(message, "body_type", AmqpMessageBodyType.DATA)
    body = message.body
    if body_type == AmqpMessageBodyType.DATA:
        return b"".join(bytes(section) for section in body)
    if isinstance(body, (bytes, bytearray)):
        return bytes(body)
    return str(body).encode("utf-8")


def to_descriptor(message: Any) -> MessageDescriptor:
    """Map a received or peeked ServiceBusReceivedMessage to a descriptor."""
    properties = {
        str(_text(key)): _text(value)
        for key, value in (message.application_properties or {}).items()
    }
    return MessageDescriptor(
        sequence_number=int(message.sequence_number),
        session_id=message.session_id,
        message_id=message.message_id,
        enqueued_time=message.enqueued_time_utc,
        content_type=message.content_type,
        body=_body_bytes(message),
        application_properties=properties,
        subject=message.subject,
        correlation_id=message.correlation_id,
        reply_to=message.reply_to,
        reply_to_session_id=message.reply_to_session_id,
        partition_key=message.partition_key,
        time_to_live=message.time_to_live,
        expires_at=message.expires_at_utc,
        dead_letter_reason=message.dead_letter_reason,
        dead_letter_error_description=message.dead_letter_error_description,
    )


def to_servicebus_message(message: OutboundMessage) -> ServiceBusMessage:
    return ServiceBusMessage(
        body=message.body,
        content_type=message.content_type,
        correlation_id=message.correlation_id,
        session_id=message.session_id,
        reply_to=message.reply_to,
        reply_to_session_id=message.reply_to_session_id,
        partition_key=message.partition_key,
        subject=message.subject,
        time_to_live=message.time_to_live,
        application_properties=dict(message.application_properties),
    )


class _LockReceiverAdapter:
    """Adapts ServiceBusReceiver to the LockReceiver protocol."""

    def __init__(self, receiver: ServiceBusReceiver, entity: EntityRef) -> None:
        self._receiver = receiver
        self._entity = entity

    async def receive_messages(self, max_message_count: int, max_wait_time: float) -> Sequence[Any]:
        try:
            return await self._receiver.receive_messages(
                max_message_count=max_message_count,
                max_wait_time=max_wait_time,
            )
        except ServiceBusError as exc:
            raise _map_error(exc, f"receive from {self._entity.path}") from exc

    async def complete_message(self, message: Any) -> None:
        try:
            await self._receiver.complete_message(message)
        except ServiceBusError as exc:
            raise _map_error(exc, f"complete {message.sequence_number}") from exc

    async def dead_letter_message(self, message: Any, *, reason: str, error_description: str) -> None:
        try:
            await self._receiver.dead_letter_message(message, reason=reason, error_description=error_description)
        except ServiceBusError as exc:
            raise _map_error(exc, f"dead-letter {message.sequence_number}") from exc

    async def abandon_message(self, message: Any) -> None:
        try:
            await self._receiver.abandon_message(message)
        except ServiceBusError as exc:
            raise _map_error(exc, f"abandon {message.sequence_number}") from exc


class AzureServiceBusEntityClient(EntityClient):
    """EntityClient implementation using azure.servicebus.aio."""

    def __init__(self, client: ServiceBusClient, admin: ServiceBusAdministrationClient) -> None:
        self._client = client
        self._admin = admin

    def _receiver(
        self,
        entity: EntityRef,
        *,
        dead_letter: bool,
        session_id: str | None,
        receive_mode: ServiceBusReceiveMode,
    ) -> ServiceBusReceiver:
        kwargs: dict[str, Any] = {"receive_mode": receive_mode}
        if dead_letter:
            kwargs["sub_queue"] = ServiceBusSubQueue.DEAD_LETTER
        elif session_id:
            kwargs["session_id"] = session_id

        if entity.kind == EntityKind.QUEUE:
            return self._client.get_queue_receiver(queue_name=entity.path, **kwargs)
        if entity.kind == EntityKind.TOPIC_SUBSCRIPTION:
            return self._client.get_subscription_receiver(
                topic_name=entity.topic_name,
                subscription_name=entity.subscription_name,
                **kwargs,
            )
        raise ValueError(f"Unsupported entity kind: {entity.kind}")

    async def peek(
        self,
        entity: EntityRef,
        *,
        from_sequence: int,
        count: int,
        dead_letter: bool = False,
        session_id: str | None = None,
    ) -> list[MessageDescriptor]:
        receiver = self._receiver(
            entity,
            dead_letter=dead_letter,
            session_id=session_id,
            receive_mode=ServiceBusReceiveMode.PEEK_LOCK,
        )
        try:
            async with receiver:
                peeked = await receiver.peek_messages(max_message_count=count, sequence_number=from_sequence)
        except ServiceBusError as exc:
            raise _map_error(exc, f"peek {entity.address(dead_letter=dead_letter)}") from exc
        return [to_descriptor(m) for m in peeked]

    @asynccontextmanager
    async def lock_receiver(
        self,
        entity: EntityRef,
        *,
        dead_letter: bool = False,
        session_id: str | None = None,
    ) -> AsyncIterator[LockReceiver]:
        receiver = self._receiver(
            entity,
            dead_letter=dead_letter,
            session_id=session_id,
            receive_mode=ServiceBusReceiveMode.PEEK_LOCK,
        )
        try:
            await receiver.__aenter__()
        except ServiceBusError as exc:
            raise _map_error(exc, f"open receiver on {entity.address(dead_letter=dead_letter)}") from exc
        try:
            yield _LockReceiverAdapter(receiver, entity)
        finally:
            await receiver.close()

    async def send(self, entity: EntityRef, message: OutboundMessage) -> None:
        if entity.kind == EntityKind.QUEUE:
            sender = self._client.get_queue_sender(queue_name=entity.path)
        elif entity.kind == EntityKind.TOPIC_SUBSCRIPTION:
            sender = self._client.get_topic_sender(topic_name=entity.topic_name)
        else:
            raise ValueError(f"Unsupported entity kind: {entity.kind}")
        try:
            async with sender:
                await sender.send_messages(to_servicebus_message(message))
        except ServiceBusError as exc:
            raise _map_error(exc, f"send to {entity.path}") from exc

    async def runtime_counters(self, entity: EntityRef) -> EntityCounters:
        try:
            if entity.kind == EntityKind.QUEUE:
                props = await self._admin.get_queue_runtime_properties(entity.path)
            else:
                props = await self._admin.get_subscription_runtime_properties(
                    entity.topic_name,
                    entity.subscription_name,
                )
        except (HttpResponseError, ClientAuthenticationError) as exc:
            raise _map_error(exc, f"runtime properties of {entity.path}") from exc
        return counters_from(
            props.total_message_count,
            props.active_message_count,
            props.dead_letter_message_count,
            getattr(props, "scheduled_message_count", None),
        )

    async def close(self) -> None:
        await self._client.close()
        await self._admin.close()


def counters_from(total: Any, active: Any, dead_letter: Any, scheduled: Any) -> EntityCounters:
    total_n = int(total or 0)
    active_n = int(active or 0)
    scheduled_n = int(scheduled or 0)
    if dead_letter is None:
        dead_letter_n = max(0, total_n - active_n - scheduled_n)
    else:
        dead_letter_n = int(dead_letter)
    return EntityCounters(total=total_n, active=active_n, dead_letter=dead_letter_n, scheduled=scheduled_n)
