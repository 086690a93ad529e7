"""AMQP port implementation on python-qpid-proton's blocking API.

Each connection owns a single-thread executor: every blocking proton call for that
connection (and its links) runs there, in order. close() only schedules the close
on that executor and returns immediately.
"""
from __future__ import annotations

import asyncio
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Callable, TypeVar

from loguru import logger
from proton import ConnectionException, Message, SSLDomain, Timeout
from proton.reactor import LinkOption
from proton.utils import BlockingConnection, LinkDetached, SendException

from inspector.app.constants import SaslMechanism
from inspector.app.ports.amqp import AmqpEndpoint
from inspector.app.ports.broker import BrokerError, BrokerTimeoutError, BrokerUnauthorizedError

T = TypeVar("T")

# SASL outcome failures surface as amqp:unauthorized-access; framing errors do not.
UNAUTHORIZED_CONDITIONS = ("amqp:unauthorized-access", "authentication failed")


def _map_error(exc: Exception, action: str) -> BrokerError:
    text = str(exc)
    if any(marker in text.lower() for marker in UNAUTHORIZED_CONDITIONS):
        return BrokerUnauthorizedError(f"{action}: {text}")
    if isinstance(exc, Timeout):
        return BrokerTimeoutError(f"{action} timed out")
    return BrokerError(f"{action} failed: {text}")


class _ReplyTarget(LinkOption):
    """Sets the receiver link's target address (the reply-to of $cbs requests)."""

    def __init__(self, address: str) -> None:
        self._address = address

    def apply(self, link: Any) -> None:
        link.target.address = self._address


class _Worker:
    def __init__(self, executor: ThreadPoolExecutor) -> None:
        self._executor = executor

    async def call(self, fn: Callable[..., T], *args: Any) -> T:
        return await asyncio.get_running_loop().run_in_executor(self._executor, fn, *args)

    def schedule(self, fn: Callable[[], Any], what: str) -> None:
        def run() -> None:
            try:
                fn()
            except Exception as exc:
                logger.warning("{} close failed: {}", what, exc)

        try:
            self._executor.submit(run)
        except RuntimeError as exc:
            logger.debug("{} close skipped: {}", what, exc)


class ProtonReceiverLink:
    def __init__(self, worker: _Worker, receiver: Any, address: str) -> None:
        self._worker = worker
        self._receiver = receiver
        self._address = address

    def _fetch(self, timeout: float) -> Message:
        # BlockingReceiver.receive would top credit up with flow(1); wait on the fetcher instead.
        fetcher = self._receiver.fetcher
        self._receiver.connection.wait(
            lambda: fetcher.has_message,
            msg=f"receiving on {self._address}",
            timeout=timeout,
        )
        return fetcher.pop()

    async def receive(self, timeout: float) -> Message | None:
        try:
            return await self._worker.call(self._fetch, max(0.0, timeout))
        except Timeout:
            return None
        except (ConnectionException, LinkDetached) as exc:
            raise _map_error(exc, f"receive on {self._address}") from exc

    async def accept(self, message: Message) -> None:
        # proton settles the most recently fetched delivery
        try:
            await self._worker.call(self._receiver.accept)
        except (ConnectionException, LinkDetached) as exc:
            raise _map_error(exc, f"accept on {self._address}") from exc

    async def release(self, message: Message) -> None:
        try:
            await self._worker.call(self._receiver.release, False)
        except (ConnectionException, LinkDetached) as exc:
            raise _map_error(exc, f"release on {self._address}") from exc

    def close(self) -> None:
        self._worker.schedule(self._receiver.close, f"receiver {self._address}")


class ProtonSenderLink:
    def __init__(self, worker: _Worker, sender: Any, address: str) -> None:
        self._worker = worker
        self._sender = sender
        self._address = address

    async def send(
        self,
        body: Any,
        *,
        message_id: str,
        properties: dict[str, Any],
        reply_to: str | None = None,
        timeout: float,
    ) -> None:
        message = Message(body=body, id=message_id, reply_to=reply_to, properties=properties)
        try:
            await self._worker.call(self._sender.send, message, max(0.001, timeout))
        except (ConnectionException, LinkDetached, SendException, Timeout) as exc:
            raise _map_error(exc, f"send to {self._address}") from exc

    def close(self) -> None:
        self._worker.schedule(self._sender.close, f"sender {self._address}")


class ProtonConnection:
    def __init__(self, connection: BlockingConnection, executor: ThreadPoolExecutor, host: str) -> None:
        self._connection = connection
        self._executor = executor
        self._worker = _Worker(executor)
        self._host = host

    async def open_receiver(
        self,
        address: str,
        *,
        credit: int,
        name: str | None = None,
        target_address: str | None = None,
    ) -> ProtonReceiverLink:
        options = _ReplyTarget(target_address) if target_address else None

        def create() -> Any:
            # credit=None: no prefetch FlowController, so the window is granted exactly once
            receiver = self._connection.create_receiver(address, credit=None, name=name, options=options)
            receiver.link.flow(max(1, credit))
            return receiver

        try:
            receiver = await self._worker.call(create)
        except (ConnectionException, LinkDetached, Timeout) as exc:
            raise _map_error(exc, f"attach receiver {address}") from exc
        return ProtonReceiverLink(self._worker, receiver, address)

    async def open_sender(self, address: str) -> ProtonSenderLink:
        try:
            sender = await self._worker.call(self._connection.create_sender, address)
        except (ConnectionException, LinkDetached, Timeout) as exc:
            raise _map_error(exc, f"attach sender {address}") from exc
        return ProtonSenderLink(self._worker, sender, address)

    def close(self) -> None:
        self._worker.schedule(self._connection.close, f"connection {self._host}")
        self._executor.shutdown(wait=False)


class ProtonConnector:
    """Opens TLS connections with SASL PLAIN (shared key) or ANONYMOUS (token via $cbs)."""

    def _connect_blocking(self, endpoint: AmqpEndpoint, timeout: float) -> BlockingConnection:
        url = f"amqps://{endpoint.host}:{endpoint.port}"
        kwargs: dict[str, Any] = {
            "timeout": max(0.001, timeout),
            "ssl_domain": SSLDomain(SSLDomain.MODE_CLIENT),
            "sasl_enabled": True,
            "allowed_mechs": endpoint.mechanism.value,
            "virtual_host": endpoint.host,
        }
        if endpoint.mechanism == SaslMechanism.PLAIN:
            kwargs["user"] = endpoint.user
            kwargs["password"] = endpoint.password
        return BlockingConnection(url, **kwargs)

    async def open(self, endpoint: AmqpEndpoint, *, timeout: float) -> ProtonConnection:
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="amqp")
        future = asyncio.get_running_loop().run_in_executor(executor, self._connect_blocking, endpoint, timeout)
        try:
            connection = await asyncio.shield(future)
        except asyncio.CancelledError:
            future.add_done_callback(_close_late_connection)
            executor.shutdown(wait=False)
            raise
        except (ConnectionException, Timeout) as exc:
            executor.shutdown(wait=False)
            raise _map_error(exc, f"connect to {endpoint.host}") from exc
        except Exception:
            executor.shutdown(wait=False)
            raise
        return ProtonConnection(connection, executor, endpoint.host)


def _close_late_connection(future: "asyncio.Future[BlockingConnection] | Future[BlockingConnection]") -> None:
    if future.cancelled() or future.exception() is not None:
        return
    try:
        future.result().close()
    except Exception as exc:
        logger.warning("late amqp connection close failed: {}", exc)
