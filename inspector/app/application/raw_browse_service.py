from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from loguru import logger

from inspector.app.constants import CBS, SaslMechanism
from inspector.app.core import SERVICE_NAME
from inspector.app.core.connection_string import (
    audience,
    build_sas_token,
    namespace_host,
    parse_connection_string,
)
from inspector.app.core.deadline import Deadline
from inspector.app.domain.cbs_authenticator import CbsAuthenticator
from inspector.app.domain.connection_manager import ConnectionManager
from inspector.app.domain.errors import AuthenticationFailedError, ConnectTimeoutError
from inspector.app.domain.escalation import EscalationTuning, plan_browse_attempts
from inspector.app.domain.message_browser import MessageBrowser
from inspector.app.domain.models import BrowseTimeouts, EntityRef
from inspector.app.ports.amqp import AmqpConnection, AmqpEndpoint
from inspector.app.ports.credential import TokenCredential


def _log(event: str, **kwargs: Any) -> None:
    logger.bind(service_name=SERVICE_NAME, event=event, **kwargs).info("")


SHARED_KEY_PLAIN = "plain"
SHARED_KEY_CBS = "cbs"


@dataclass(frozen=True)
class BrokerCredentials:
    """What the raw path may authenticate with; federated identity is tried first."""

    namespace: str = ""
    token_credential: TokenCredential | None = None
    connection_string: str | None = None


@dataclass(frozen=True)
class VerifyResult:
    ok: bool
    message: str
    host: str = ""
    policy: str = ""


class RawBrowseService:
    """
    Browse-and-accept for session-enabled dead-letter sub-queues.

    One authenticated connection per call, closed on every exit. Browse passes follow
    the escalation plan, each on a fresh link. Federated identity connects with SASL
    ANONYMOUS and puts a token on $cbs; when that is refused the shared key (if any)
    is tried. If nothing authenticates the call fails with AuthenticationFailedError.
    """

    def __init__(
        self,
        connection_manager: ConnectionManager,
        browser: MessageBrowser,
        tuning: EscalationTuning,
        *,
        port: int = 5671,
        connect_deadline_seconds: float = 30.0,
        cbs_response_seconds: float = 5.0,
        cbs_token_types: tuple[str, ...] = (CBS.JWT, CBS.SAS_TOKEN),
        cbs_audience_scheme: str = "sb",
        sas_audience_scheme: str = "sb",
        token_scope: str = "https://servicebus.azure.net/.default",
        token_lifetime_seconds: int = 3600,
        shared_key_auth: str = SHARED_KEY_PLAIN,
    ) -> None:
        if shared_key_auth not in (SHARED_KEY_PLAIN, SHARED_KEY_CBS):
            raise ValueError(f"Unsupported shared key auth: {shared_key_auth}")
        self._connection_manager = connection_manager
        self._browser = browser
        self._tuning = tuning
        self._port = int(port)
        self._connect_deadline_seconds = float(connect_deadline_seconds)
        self._cbs_response_seconds = float(cbs_response_seconds)
        self._cbs_token_types = tuple(cbs_token_types)
        self._cbs_audience_scheme = cbs_audience_scheme
        self._sas_audience_scheme = sas_audience_scheme
        self._token_scope = token_scope
        self._token_lifetime_seconds = int(token_lifetime_seconds)
        self._shared_key_auth = shared_key_auth

    async def browse_and_complete(
        self,
        entity: EntityRef,
        session_id: str | None,
        sequence: int,
        max_hint: int,
        credentials: BrokerCredentials,
        timeouts: BrowseTimeouts | None = None,
        cancel: asyncio.Event | None = None,
    ) -> bool:
        """Accept (remove) the dead-lettered message with this sequence; False when not found."""
        timeouts = timeouts or BrowseTimeouts(
            connect_seconds=self._connect_deadline_seconds,
            cbs_response_seconds=self._cbs_response_seconds,
        )
        address = entity.address(dead_letter=True)
        attempts = plan_browse_attempts(max_hint, self._tuning, timeouts)

        connection = await self._open_authenticated(entity, credentials, timeouts, cancel)
        history: list[dict[str, Any]] = []
        try:
            for number, attempt in enumerate(attempts, start=1):
                if cancel is not None and cancel.is_set():
                    break
                result = await self._browser.browse(
                    connection,
                    address,
                    target_sequence=sequence,
                    target_session_id=session_id,
                    credit=attempt.credit,
                    window_seconds=attempt.window_seconds,
                    cancel=cancel,
                )
                history.append(
                    {
                        "pass": number,
                        "credit": attempt.credit,
                        "window": attempt.window_seconds,
                        "inspected": result.inspected,
                        "elapsed": round(result.elapsed, 3),
                    }
                )
                if result.found:
                    _log("raw_browse_completed", entity=entity.path, sequence_number=sequence, attempts=history)
                    return True
        finally:
            connection.close()

        _log(
            "raw_browse_exhausted",
            entity=entity.path,
            session_id=session_id,
            sequence_number=sequence,
            max_hint=max_hint,
            attempts=history,
        )
        return False

    async def verify_shared_key_connection(self, connection_string: str, timeout: float) -> VerifyResult:
        """Open and close one SASL PLAIN connection; never raises."""
        try:
            shared_key = parse_connection_string(connection_string)
        except ValueError as exc:
            return VerifyResult(ok=False, message=str(exc))
        host = shared_key.host
        endpoint = AmqpEndpoint(
            host=host,
            mechanism=SaslMechanism.PLAIN,
            port=self._port,
            user=shared_key.key_name,
            password=shared_key.key,
        )
        try:
            connection = await self._connection_manager.connect(endpoint, Deadline(timeout))
        except AuthenticationFailedError as exc:
            return VerifyResult(ok=False, message=f"authentication failed: {exc}", host=host, policy=shared_key.key_name)
        except ConnectTimeoutError as exc:
            detail = f" ({exc.last_error})" if exc.last_error else ""
            return VerifyResult(ok=False, message=f"{exc}{detail}", host=host, policy=shared_key.key_name)
        connection.close()
        return VerifyResult(ok=True, message="connected", host=host, policy=shared_key.key_name)

    async def _open_authenticated(
        self,
        entity: EntityRef,
        credentials: BrokerCredentials,
        timeouts: BrowseTimeouts,
        cancel: asyncio.Event | None,
    ) -> AmqpConnection:
        routes: list[tuple[str, Callable[[], Awaitable[AmqpConnection]]]] = []
        if credentials.token_credential is not None:
            routes.append(("federated", lambda: self._open_federated(entity, credentials, timeouts, cancel)))
        if credentials.connection_string:
            routes.append(("shared_key", lambda: self._open_shared_key(entity, credentials, timeouts, cancel)))
        if not routes:
            raise AuthenticationFailedError("no credential or connection string configured")

        last_error: AuthenticationFailedError | None = None
        for name, open_route in routes:
            try:
                connection = await open_route()
            except AuthenticationFailedError as exc:
                last_error = exc
                logger.warning("raw browse auth route {} failed: {}", name, exc)
                continue
            _log("raw_browse_authenticated", entity=entity.path, route=name)
            return connection
        raise AuthenticationFailedError(f"no credential authenticated for {entity.path}: {last_error}") from last_error

    async def _open_federated(
        self,
        entity: EntityRef,
        credentials: BrokerCredentials,
        timeouts: BrowseTimeouts,
        cancel: asyncio.Event | None,
    ) -> AmqpConnection:
        host = namespace_host(credentials.namespace)
        if not host:
            raise AuthenticationFailedError("namespace is required for federated authentication")
        try:
            access_token = await credentials.token_credential.get_token(self._token_scope)
        except Exception as exc:
            raise AuthenticationFailedError(f"token acquisition failed: {exc}") from exc

        endpoint = AmqpEndpoint(host=host, mechanism=SaslMechanism.ANONYMOUS, port=self._port)
        connection = await self._connection_manager.connect(endpoint, Deadline(timeouts.connect_seconds), cancel)
        return await self._put_token(
            connection,
            audience(self._cbs_audience_scheme, host, entity.path),
            access_token.token,
            self._cbs_token_types,
            timeouts,
            cancel,
            expires_on=access_token.expires_on,
        )

    async def _open_shared_key(
        self,
        entity: EntityRef,
        credentials: BrokerCredentials,
        timeouts: BrowseTimeouts,
        cancel: asyncio.Event | None,
    ) -> AmqpConnection:
        try:
            shared_key = parse_connection_string(credentials.connection_string or "")
        except ValueError as exc:
            raise AuthenticationFailedError(str(exc)) from exc
        host = shared_key.host
        deadline = Deadline(timeouts.connect_seconds)

        if self._shared_key_auth == SHARED_KEY_PLAIN:
            endpoint = AmqpEndpoint(
                host=host,
                mechanism=SaslMechanism.PLAIN,
                port=self._port,
                user=shared_key.key_name,
                password=shared_key.key,
            )
            return await self._connection_manager.connect(endpoint, deadline, cancel)

        endpoint = AmqpEndpoint(host=host, mechanism=SaslMechanism.ANONYMOUS, port=self._port)
        connection = await self._connection_manager.connect(endpoint, deadline, cancel)
        sas_audience = audience(self._sas_audience_scheme, host, entity.path)
        token = build_sas_token(sas_audience, shared_key.key_name, shared_key.key, self._token_lifetime_seconds)
        return await self._put_token(connection, sas_audience, token, (CBS.SAS_TOKEN,), timeouts, cancel)

    async def _put_token(
        self,
        connection: AmqpConnection,
        audience_uri: str,
        token: str,
        token_types: tuple[str, ...],
        timeouts: BrowseTimeouts,
        cancel: asyncio.Event | None,
        *,
        expires_on: int | None = None,
    ) -> AmqpConnection:
        authenticator = CbsAuthenticator(
            response_timeout=timeouts.cbs_response_seconds,
            token_lifetime_seconds=self._token_lifetime_seconds,
        )
        try:
            outcome = await authenticator.put_token(
                connection,
                audience_uri,
                token,
                token_types,
                expires_on=expires_on,
                cancel=cancel,
            )
        except BaseException:
            connection.close()
            raise
        if not outcome.ok:
            connection.close()
            raise AuthenticationFailedError(
                f"cbs put-token refused for {audience_uri} (tried {', '.join(outcome.tried)}): {outcome.error}"
            )
        return connection
