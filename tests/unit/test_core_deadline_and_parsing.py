"""Unit tests for deadlines, sequence expressions and connection-string helpers."""
from __future__ import annotations

import asyncio
import base64
import hashlib
import hmac
from urllib.parse import quote_plus, unquote_plus

import pytest

from inspector.app.core.connection_string import (
    audience,
    build_sas_token,
    namespace_host,
    normalize_host,
    parse_connection_string,
)
from inspector.app.core.deadline import Deadline, bounded_attempts
from inspector.app.domain.sequence_expression import MAX_RANGE_SIZE, parse_sequence_expression


class ManualClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def test_deadline_remaining_never_negative():
    clock = ManualClock()
    deadline = Deadline(3, clock=clock)
    clock.now = 1.0
    assert deadline.remaining() == pytest.approx(2.0)
    assert deadline.cap(5) == pytest.approx(2.0)
    clock.now = 10.0
    assert deadline.remaining() == 0.0
    assert deadline.expired
    assert deadline.elapsed() == pytest.approx(10.0)


def test_bounded_attempts_caps_each_attempt_by_what_is_left():
    clock = ManualClock()
    deadline = Deadline(5, clock=clock)

    async def collect() -> list[float]:
        seen = []
        async for timeout in bounded_attempts(deadline, attempt_cap=2.0, pause=0.001):
            seen.append(timeout)
            clock.now += timeout
        return seen

    assert asyncio.run(collect()) == [2.0, 2.0, 1.0]


def test_bounded_attempts_stops_when_cancelled():
    async def collect() -> int:
        cancel = asyncio.Event()
        count = 0
        async for _ in bounded_attempts(Deadline(60), attempt_cap=2.0, pause=0.001, cancel=cancel):
            count += 1
            if count == 2:
                cancel.set()
        return count

    assert asyncio.run(collect()) == 2


def test_bounded_attempts_yields_nothing_for_spent_deadline():
    async def collect() -> list[float]:
        return [t async for t in bounded_attempts(Deadline(0), 2.0, 0.5)]

    assert asyncio.run(collect()) == []


@pytest.mark.parametrize(
    "expr, expected",
    [
        ("514-517,595, 597", [514, 515, 516, 517, 595, 597]),
        (" 10 - 8 ", [8, 9, 10]),
        ("abc,5,x-7,,", [5]),
        ("", []),
        (None, []),
    ],
)
def test_parse_sequence_expression(expr, expected):
    assert parse_sequence_expression(expr) == expected


def test_parse_sequence_expression_skips_oversized_ranges():
    assert parse_sequence_expression(f"1-{MAX_RANGE_SIZE + 1},42") == [42]


def test_parse_connection_string_is_case_insensitive():
    shared = parse_connection_string(
        "endpoint=sb://Contoso.servicebus.windows.net/;sharedaccesskeyname=listen;SHAREDACCESSKEY=abc=;EntityPath=orders"
    )
    assert shared.key_name == "listen"
    assert shared.key == "abc="
    assert shared.entity_path == "orders"
    assert shared.host == "contoso.servicebus.windows.net"


def test_parse_connection_string_requires_key():
    with pytest.raises(ValueError):
        parse_connection_string("Endpoint=sb://contoso.servicebus.windows.net/;SharedAccessKeyName=listen")


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("sb://Contoso.servicebus.windows.net:5671/orders/", "contoso.servicebus.windows.net"),
        ("https://contoso.servicebus.windows.net/", "contoso.servicebus.windows.net"),
        ("contoso.servicebus.windows.net", "contoso.servicebus.windows.net"),
    ],
)
def test_normalize_host(raw, expected):
    assert normalize_host(raw) == expected


def test_namespace_host_expands_bare_name():
    assert namespace_host("contoso") == "contoso.servicebus.windows.net"
    assert namespace_host("sb://contoso.servicebus.windows.net/") == "contoso.servicebus.windows.net"


def test_audience_joins_scheme_host_and_path():
    assert audience("amqp", "sb://contoso.servicebus.windows.net/", "/orders") == "amqp://contoso.servicebus.windows.net/orders"


def test_build_sas_token_signature():
    uri = "sb://contoso.servicebus.windows.net/orders"
    token = build_sas_token(uri, "listen", "secret", 3600, now=1_000)

    fields = dict(part.split("=", 1) for part in token[len("SharedAccessSignature "):].split("&"))
    assert fields["sr"] == quote_plus(uri)
    assert fields["se"] == "4600"
    assert fields["skn"] == "listen"
    expected = base64.b64encode(
        hmac.new(b"secret", f"{quote_plus(uri)}\n4600".encode(), hashlib.sha256).digest()
    ).decode()
    assert unquote_plus(fields["sig"]) == expected
