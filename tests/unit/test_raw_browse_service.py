"""Unit tests for the raw-browse strategy: escalation, authentication routes and cleanup."""
from __future__ import annotations

import asyncio
import time

import pytest

from inspector.app.application.raw_browse_service import BrokerCredentials, RawBrowseService
from inspector.app.constants import CBS, SaslMechanism
from inspector.app.domain.connection_manager import ConnectionManager
from inspector.app.domain.errors import AuthenticationFailedError
from inspector.app.domain.escalation import EscalationTuning
from inspector.app.domain.message_browser import MessageBrowser
from inspector.app.domain.models import BrowseTimeouts, EntityRef
from inspector.app.ports.broker import BrokerUnauthorizedError
from tests.fakes import FakeConnection, FakeConnector, FakeCredential, browse_message, cbs_ok

CONNECTION_STRING = (
    "Endpoint=sb://contoso.servicebus.windows.net/;SharedAccessKeyName=listen;SharedAccessKey=c2VjcmV0"
)
DLQ = "orders/$DeadLetterQueue"
FAST = BrowseTimeouts(
    connect_seconds=2.0,
    cbs_response_seconds=0.1,
    first_pass_window_seconds=0.2,
    second_pass_window_seconds=0.3,
)


def _service(connector: FakeConnector, **kwargs) -> RawBrowseService:
    return RawBrowseService(
        ConnectionManager(connector, attempt_timeout=0.5, retry_pause=0.01),
        MessageBrowser(poll_interval=0.02),
        EscalationTuning(),
        **kwargs,
    )


@pytest.fixture
def entity() -> EntityRef:
    return EntityRef.queue("orders", session_enabled=True, namespace="contoso.servicebus.windows.net")


def test_session_dead_letter_message_is_completed_once(entity):
    connection = FakeConnection({DLQ: [browse_message(77, "abc")]})
    service = _service(FakeConnector(connection))
    credentials = BrokerCredentials(connection_string=CONNECTION_STRING)

    found = asyncio.run(service.browse_and_complete(entity, "abc", 77, 1, credentials, FAST))

    assert found is True
    assert connection.entity_messages[DLQ] == []
    assert connection.closed
    assert all(link.closed for link in connection.receivers)

    again = FakeConnection({DLQ: connection.entity_messages[DLQ]})
    assert asyncio.run(_service(FakeConnector(again)).browse_and_complete(entity, "abc", 77, 1, credentials, FAST)) is False


def test_second_pass_finds_target_beyond_first_credit(entity):
    others = [browse_message(seq, "other") for seq in range(1, 151)]
    connection = FakeConnection({DLQ: others + [browse_message(500, "abc")]})
    service = _service(FakeConnector(connection))

    found = asyncio.run(
        service.browse_and_complete(entity, "abc", 500, 1, BrokerCredentials(connection_string=CONNECTION_STRING), FAST)
    )

    assert found is True
    assert [link.credit for link in connection.receivers] == [100, 200]
    assert len(connection.receivers[0].released) == 100
    assert len(connection.entity_messages[DLQ]) == 150


def test_absent_target_exhausts_both_passes_without_hanging(entity):
    connection = FakeConnection({DLQ: [browse_message(1, "abc")]})
    service = _service(FakeConnector(connection))

    started = time.monotonic()
    found = asyncio.run(
        service.browse_and_complete(entity, "abc", 77, 1, BrokerCredentials(connection_string=CONNECTION_STRING), FAST)
    )

    assert found is False
    assert len(connection.receivers) == 2
    assert time.monotonic() - started < 2.0
    assert connection.closed


def test_shared_key_uses_sasl_plain(entity):
    connector = FakeConnector(FakeConnection({DLQ: [browse_message(77, "abc")]}))
    asyncio.run(
        _service(connector).browse_and_complete(
            entity, "abc", 77, 1, BrokerCredentials(connection_string=CONNECTION_STRING), FAST
        )
    )
    endpoint = connector.endpoints[0]
    assert endpoint.mechanism == SaslMechanism.PLAIN
    assert (endpoint.user, endpoint.password) == ("listen", "c2VjcmV0")
    assert endpoint.host == "contoso.servicebus.windows.net"
    assert endpoint.port == 5671


def test_federated_identity_uses_anonymous_and_cbs(entity):
    connection = FakeConnection({DLQ: [browse_message(77, "abc")]}, cbs_responder=lambda r: [cbs_ok(r)])
    connector = FakeConnector(connection)
    credential = FakeCredential("aad-token")

    found = asyncio.run(
        _service(connector, cbs_audience_scheme="amqp").browse_and_complete(
            entity, "abc", 77, 1, BrokerCredentials(namespace="contoso", token_credential=credential), FAST
        )
    )

    assert found is True
    assert connector.endpoints[0].mechanism == SaslMechanism.ANONYMOUS
    request = connection.senders[0].sent[0]
    assert request["body"] == "aad-token"
    assert request["properties"]["type"] == CBS.JWT
    assert request["properties"]["name"] == "amqp://contoso.servicebus.windows.net/orders"
    assert request["properties"]["expiration"] == 4_102_444_800


def test_refused_federated_identity_falls_back_to_shared_key(entity):
    federated = FakeConnection(cbs_responder=lambda r: [])
    shared = FakeConnection({DLQ: [browse_message(77, "abc")]})
    connector = FakeConnector(federated, shared)
    credentials = BrokerCredentials(
        namespace="contoso",
        token_credential=FakeCredential(),
        connection_string=CONNECTION_STRING,
    )

    found = asyncio.run(_service(connector).browse_and_complete(entity, "abc", 77, 1, credentials, FAST))

    assert found is True
    assert federated.closed
    assert [e.mechanism for e in connector.endpoints] == [SaslMechanism.ANONYMOUS, SaslMechanism.PLAIN]


def test_fails_when_nothing_authenticates(entity):
    federated = FakeConnection(cbs_responder=lambda r: [])
    credentials = BrokerCredentials(namespace="contoso", token_credential=FakeCredential())

    with pytest.raises(AuthenticationFailedError):
        asyncio.run(_service(FakeConnector(federated)).browse_and_complete(entity, "abc", 77, 1, credentials, FAST))

    assert federated.closed
    assert federated.receivers[-1].address == CBS.ADDRESS


def test_unauthorized_shared_key_is_not_retried(entity):
    connector = FakeConnector(BrokerUnauthorizedError("amqp:unauthorized-access"))

    with pytest.raises(AuthenticationFailedError):
        asyncio.run(
            _service(connector).browse_and_complete(
                entity, "abc", 77, 1, BrokerCredentials(connection_string=CONNECTION_STRING), FAST
            )
        )

    assert len(connector.endpoints) == 1


def test_no_credentials_configured(entity):
    with pytest.raises(AuthenticationFailedError):
        asyncio.run(
            _service(FakeConnector(FakeConnection())).browse_and_complete(entity, "abc", 77, 1, BrokerCredentials(), FAST)
        )


def test_shared_key_over_cbs_puts_sas_token(entity):
    connection = FakeConnection({DLQ: [browse_message(77, "abc")]}, cbs_responder=lambda r: [cbs_ok(r)])
    connector = FakeConnector(connection)

    found = asyncio.run(
        _service(connector, shared_key_auth="cbs").browse_and_complete(
            entity, "abc", 77, 1, BrokerCredentials(connection_string=CONNECTION_STRING), FAST
        )
    )

    assert found is True
    assert connector.endpoints[0].mechanism == SaslMechanism.ANONYMOUS
    request = connection.senders[0].sent[0]
    assert request["properties"]["type"] == CBS.SAS_TOKEN
    assert request["body"].startswith("SharedAccessSignature sr=")


def test_unknown_shared_key_auth_is_rejected():
    with pytest.raises(ValueError):
        _service(FakeConnector(FakeConnection()), shared_key_auth="kerberos")


def test_verify_shared_key_connection():
    connection = FakeConnection()
    result = asyncio.run(_service(FakeConnector(connection)).verify_shared_key_connection(CONNECTION_STRING, 1.0))
    assert result.ok
    assert (result.host, result.policy) == ("contoso.servicebus.windows.net", "listen")
    assert connection.closed


def test_verify_shared_key_connection_reports_bad_input_and_refusal():
    service = _service(FakeConnector(BrokerUnauthorizedError("amqp:unauthorized-access")))
    assert not asyncio.run(service.verify_shared_key_connection("Endpoint=sb://x/", 1.0)).ok
    refused = asyncio.run(service.verify_shared_key_connection(CONNECTION_STRING, 1.0))
    assert not refused.ok
    assert "authentication failed" in refused.message
