"""Unit tests for the azure-servicebus and proton adapters, with the SDKs replaced by fakes."""
from __future__ import annotations

import asyncio
from collections import deque
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from typing import Any

import pytest
from azure.servicebus import ServiceBusSubQueue
from azure.servicebus.amqp import AmqpMessageBodyType
from azure.servicebus.exceptions import OperationTimeoutError, ServiceBusAuthorizationError
from proton import ConnectionException, Timeout

from inspector.app.constants import SaslMechanism
from inspector.app.core.deadline import Deadline
from inspector.app.domain.connection_manager import ConnectionManager
from inspector.app.domain.models import EntityRef, OutboundMessage
from inspector.app.infrastructure.amqp import proton_connector
from inspector.app.infrastructure.amqp.proton_connector import ProtonConnector
from inspector.app.infrastructure.servicebus.servicebus_client import (
    AzureServiceBusEntityClient,
    counters_from,
    to_descriptor,
)
from inspector.app.ports.amqp import AmqpEndpoint
from inspector.app.ports.broker import BrokerError, BrokerTimeoutError, BrokerUnauthorizedError, is_unauthorized
from tests.fakes import FakeConnection, FakeConnector

ENQUEUED = datetime(2024, 5, 1, tzinfo=timezone.utc)


def _sb_message(sequence: int, **overrides: Any) -> SimpleNamespace:
    fields = dict(
        sequence_number=sequence,
        session_id=None,
        message_id=f"m-{sequence}",
        enqueued_time_utc=ENQUEUED,
        content_type="text/plain",
        body_type=AmqpMessageBodyType.DATA,
        body=iter([b"hel", b"lo"]),
        application_properties={b"tenant": b"t1", "retries": 2},
        subject=None,
        correlation_id=None,
        reply_to=None,
        reply_to_session_id=None,
        partition_key=None,
        time_to_live=timedelta(hours=1),
        expires_at_utc=ENQUEUED + timedelta(hours=1),
        dead_letter_reason="RejectedByOperator",
        dead_letter_error_description=None,
    )
    fields.update(overrides)
    return SimpleNamespace(**fields)


class _FakeReceiver:
    def __init__(self, messages: list[Any], raises: Exception | None = None) -> None:
        self._messages = messages
        self._raises = raises
        self.closed = False

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        self.closed = True

    async def peek_messages(self, max_message_count: int, sequence_number: int):
        if self._raises is not None:
            raise self._raises
        return [m for m in self._messages if m.sequence_number >= sequence_number][:max_message_count]

    async def close(self):
        self.closed = True


class _FakeSender:
    def __init__(self) -> None:
        self.sent: list[Any] = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return None

    async def send_messages(self, message):
        self.sent.append(message)


class _FakeServiceBusClient:
    def __init__(self, receiver: _FakeReceiver) -> None:
        self.receiver = receiver
        self.sender = _FakeSender()
        self.receiver_calls: list[dict[str, Any]] = []
        self.sender_calls: list[dict[str, Any]] = []

    def get_queue_receiver(self, **kwargs):
        self.receiver_calls.append(kwargs)
        return self.receiver

    def get_subscription_receiver(self, **kwargs):
        self.receiver_calls.append(kwargs)
        return self.receiver

    def get_queue_sender(self, **kwargs):
        self.sender_calls.append(kwargs)
        return self.sender

    def get_topic_sender(self, **kwargs):
        self.sender_calls.append(kwargs)
        return self.sender

    async def close(self):
        return None


class _FakeAdmin:
    async def get_queue_runtime_properties(self, name):
        return SimpleNamespace(
            total_message_count=10,
            active_message_count=6,
            dead_letter_message_count=None,
            scheduled_message_count=1,
        )

    async def close(self):
        return None


def test_to_descriptor_maps_data_body_and_properties():
    result = to_descriptor(_sb_message(9))
    assert result.sequence_number == 9
    assert result.body == b"hello"
    assert result.application_properties == {"tenant": "t1", "retries": 2}
    assert result.dead_letter_reason == "RejectedByOperator"
    assert result.expires_at == ENQUEUED + timedelta(hours=1)


def test_to_descriptor_encodes_value_body():
    result = to_descriptor(_sb_message(9, body_type=AmqpMessageBodyType.VALUE, body={"a": 1}))
    assert result.body == b"{'a': 1}"


def test_counters_fall_back_for_missing_dead_letter_count():
    assert counters_from(10, 6, None, 1).dead_letter == 3
    assert counters_from(10, 6, 4, None).dead_letter == 4


def test_peek_dead_letter_subscription_uses_sub_queue():
    client = _FakeServiceBusClient(_FakeReceiver([_sb_message(1), _sb_message(2), _sb_message(3)]))
    adapter = AzureServiceBusEntityClient(client, _FakeAdmin())

    page = asyncio.run(adapter.peek(EntityRef.subscription("billing", "audit"), from_sequence=2, count=5, dead_letter=True))

    assert [m.sequence_number for m in page] == [2, 3]
    call = client.receiver_calls[0]
    assert call["topic_name"] == "billing"
    assert call["subscription_name"] == "audit"
    assert call["sub_queue"] == ServiceBusSubQueue.DEAD_LETTER
    assert client.receiver.closed


def test_peek_maps_authorization_errors():
    client = _FakeServiceBusClient(_FakeReceiver([], raises=ServiceBusAuthorizationError(message="denied")))
    adapter = AzureServiceBusEntityClient(client, _FakeAdmin())

    with pytest.raises(BrokerUnauthorizedError):
        asyncio.run(adapter.peek(EntityRef.queue("orders"), from_sequence=1, count=5))


def test_peek_maps_timeouts():
    client = _FakeServiceBusClient(_FakeReceiver([], raises=OperationTimeoutError(message="slow")))
    adapter = AzureServiceBusEntityClient(client, _FakeAdmin())

    with pytest.raises(BrokerTimeoutError):
        asyncio.run(adapter.peek(EntityRef.queue("orders"), from_sequence=1, count=5))


def test_send_for_subscription_goes_to_topic():
    client = _FakeServiceBusClient(_FakeReceiver([]))
    adapter = AzureServiceBusEntityClient(client, _FakeAdmin())

    asyncio.run(
        adapter.send(
            EntityRef.subscription("billing", "audit"),
            OutboundMessage(body=b"x", session_id="abc", application_properties={"OriginalSequenceNumber": 4}),
        )
    )

    assert client.sender_calls == [{"topic_name": "billing"}]
    sent = client.sender.sent[0]
    assert sent.session_id == "abc"
    assert sent.application_properties["OriginalSequenceNumber"] == 4


def test_runtime_counters_for_queue():
    adapter = AzureServiceBusEntityClient(_FakeServiceBusClient(_FakeReceiver([])), _FakeAdmin())
    counters = asyncio.run(adapter.runtime_counters(EntityRef.queue("orders")))
    assert (counters.total, counters.active, counters.dead_letter, counters.scheduled) == (10, 6, 3, 1)


class _FakeSSLDomain:
    MODE_CLIENT = "client"

    def __init__(self, mode):
        self.mode = mode


class _FakeLink:
    def __init__(self, calls: list[tuple]) -> None:
        self._calls = calls

    def flow(self, credit):
        self._calls.append(("flow", credit))


class _FakeFetcher:
    def __init__(self, messages: list[Any]) -> None:
        self.incoming = deque(messages)

    @property
    def has_message(self):
        return len(self.incoming)

    def pop(self):
        return self.incoming.popleft()


class _FakeBlockingReceiver:
    def __init__(self, connection: "_FakeBlockingConnection", messages: list[Any]) -> None:
        self.connection = connection
        self.link = _FakeLink(connection.calls)
        self.fetcher = _FakeFetcher(messages)

    def receive(self, timeout=False):
        raise AssertionError("receive() grants extra credit")

    def accept(self):
        self.connection.calls.append(("accept",))

    def release(self, delivered=True):
        self.connection.calls.append(("release", delivered))

    def close(self):
        self.connection.calls.append(("close",))


class _FakeBlockingConnection:
    instances: list["_FakeBlockingConnection"] = []
    messages: list[Any] = []

    def __init__(self, url, **kwargs):
        self.url = url
        self.kwargs = kwargs
        self.closed = False
        self.calls: list[tuple] = []
        self.receiver_args: dict[str, Any] = {}
        _FakeBlockingConnection.instances.append(self)

    def create_receiver(self, address, **kwargs):
        self.receiver_args = {"address": address, **kwargs}
        return _FakeBlockingReceiver(self, list(self.messages))

    def wait(self, condition, timeout=False, msg=None):
        if not condition():
            raise Timeout(msg)

    def close(self):
        self.closed = True


@pytest.fixture
def proton(monkeypatch):
    monkeypatch.setattr(proton_connector, "BlockingConnection", _FakeBlockingConnection)
    monkeypatch.setattr(proton_connector, "SSLDomain", _FakeSSLDomain)
    monkeypatch.setattr(_FakeBlockingConnection, "messages", [])
    return _FakeBlockingConnection


def _settlements(blocking: _FakeBlockingConnection) -> list[tuple]:
    return [call for call in list(blocking.calls) if call[0] != "close"]


def test_proton_connector_plain_endpoint_and_empty_receive(proton):
    endpoint = AmqpEndpoint(
        host="contoso.servicebus.windows.net",
        mechanism=SaslMechanism.PLAIN,
        user="listen",
        password="secret",
    )

    async def scenario():
        connection = await ProtonConnector().open(endpoint, timeout=2.0)
        link = await connection.open_receiver("orders/$DeadLetterQueue", credit=100)
        received = await link.receive(0.01)
        link.close()
        connection.close()
        return received

    assert asyncio.run(scenario()) is None
    blocking = proton.instances[-1]
    assert blocking.url == "amqps://contoso.servicebus.windows.net:5671"
    assert blocking.kwargs["allowed_mechs"] == "PLAIN"
    assert (blocking.kwargs["user"], blocking.kwargs["password"]) == ("listen", "secret")
    assert blocking.receiver_args["credit"] is None
    assert _settlements(blocking) == [("flow", 100)]
    assert "secret" not in repr(endpoint)


def test_proton_receiver_grants_credit_once_and_releases_unmodified(proton, monkeypatch):
    monkeypatch.setattr(proton, "messages", ["skip", "target"])
    endpoint = AmqpEndpoint(host="contoso.servicebus.windows.net", mechanism=SaslMechanism.ANONYMOUS)

    async def scenario():
        connection = await ProtonConnector().open(endpoint, timeout=2.0)
        link = await connection.open_receiver("orders/$DeadLetterQueue", credit=200)
        first = await link.receive(0.01)
        await link.release(first)
        second = await link.receive(0.01)
        await link.accept(second)
        drained = await link.receive(0.01)
        link.close()
        connection.close()
        return first, second, drained

    assert asyncio.run(scenario()) == ("skip", "target", None)
    assert _settlements(proton.instances[-1]) == [("flow", 200), ("release", False), ("accept",)]


def test_proton_errors_map_unauthorized():
    error = proton_connector._map_error(
        RuntimeError("Condition('amqp:unauthorized-access', 'InvalidSignature')"),
        "connect",
    )
    assert isinstance(error, BrokerUnauthorizedError)
    sasl_outcome = proton_connector._map_error(
        ConnectionException("Condition('amqp:unauthorized-access', 'Authentication failed [mech=PLAIN]')"),
        "connect",
    )
    assert isinstance(sasl_outcome, BrokerUnauthorizedError)
    assert isinstance(proton_connector._map_error(Timeout("slow"), "send"), BrokerTimeoutError)


FRAMING_ERROR = ConnectionException(
    "Connection amqps://contoso.servicebus.windows.net:5671 disconnected: "
    "Condition('amqp:connection:framing-error', 'SASL header mismatch: Insufficient data to determine protocol')"
)


def test_proton_transport_framing_error_is_not_unauthorized():
    error = proton_connector._map_error(FRAMING_ERROR, "connect to contoso")

    assert type(error) is BrokerError
    assert not is_unauthorized(error)


def test_transport_framing_errors_are_retried_until_connected():
    connection = FakeConnection()
    framing = proton_connector._map_error(FRAMING_ERROR, "connect to contoso")
    connector = FakeConnector(framing, framing, connection)
    manager = ConnectionManager(connector, attempt_timeout=0.5, retry_pause=0.01)
    endpoint = AmqpEndpoint(host="contoso.servicebus.windows.net", mechanism=SaslMechanism.PLAIN)

    result = asyncio.run(manager.connect(endpoint, Deadline(5)))

    assert result is connection
    assert len(connector.endpoints) == 3
