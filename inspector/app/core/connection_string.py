"""Shared-access connection strings, namespace host normalization and SAS tokens."""
from __future__ import annotations

import base64
import hashlib
import hmac
import time
from dataclasses import dataclass
from urllib.parse import quote_plus


@dataclass(frozen=True)
class SharedKey:
    endpoint: str
    key_name: str
    key: str
    entity_path: str | None = None

    @property
    def host(self) -> str:
        return normalize_host(self.endpoint)


def parse_connection_string(value: str) -> SharedKey:
    """Parse `Endpoint=...;SharedAccessKeyName=...;SharedAccessKey=...`.

    Keys are matched case-insensitively; unknown parts are ignored.
    Raises ValueError when endpoint, key name or key is missing.
    """
    parts: dict[str, str] = {}
    for chunk in (value or "").split(";"):
        idx = chunk.find("=")
        if idx <= 0:
            continue
        parts[chunk[:idx].strip().lower()] = chunk[idx + 1:].strip()

    endpoint = parts.get("endpoint", "")
    key_name = parts.get("sharedaccesskeyname", "")
    key = parts.get("sharedaccesskey", "")
    if not endpoint or not key_name or not key:
        raise ValueError("invalid connection string (missing Endpoint/SharedAccessKeyName/SharedAccessKey)")
    return SharedKey(
        endpoint=endpoint,
        key_name=key_name,
        key=key,
        entity_path=parts.get("entitypath") or None,
    )


def normalize_host(value: str) -> str:
    """Reduce `sb://ns.servicebus.windows.net:5671/queue/` to `ns.servicebus.windows.net`."""
    host = (value or "").strip()
    for scheme in ("https://", "http://", "sb://", "amqps://", "amqp://"):
        if host.lower().startswith(scheme):
            host = host[len(scheme):]
            break
    host = host.rstrip("/")
    host = host.split("/", 1)[0]
    host = host.split(":", 1)[0]
    return host.lower()


def audience(scheme: str, host: str, address: str) -> str:
    return f"{scheme}://{normalize_host(host)}/{address.lstrip('/')}"


def build_sas_token(audience_uri: str, key_name: str, key: str, ttl_seconds: int, *, now: float | None = None) -> str:
    expiry = int((time.time() if now is None else now) + ttl_seconds)
    encoded_audience = quote_plus(audience_uri)
    to_sign = f"{encoded_audience}\n{expiry}".encode("utf-8")
    signature = base64.b64encode(hmac.new(key.encode("utf-8"), to_sign, hashlib.sha256).digest()).decode("ascii")
    return (
        f"SharedAccessSignature sr={encoded_audience}&sig={quote_plus(signature)}"
        f"&se={expiry}&skn={quote_plus(key_name)}"
    )


def namespace_host(value: str, *, suffix: str = "servicebus.windows.net") -> str:
    """Fully-qualified host for a namespace given as a bare name, host or URL."""
    host = normalize_host(value)
    if host and "." not in host:
        host = f"{host}.{suffix}"
    return host
