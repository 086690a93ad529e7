"""Inspector composition root: build and lifecycle-manage concrete dependencies.

Composition may: import concrete classes, call factories, store interface types,
manage high-level lifecycle.
"""
from __future__ import annotations

from typing import Any

from loguru import logger

from inspector.app.application.disposition_coordinator import DispositionCoordinator
from inspector.app.application.raw_browse_service import BrokerCredentials, RawBrowseService
from inspector.app.application.sequence_pager import SequencePager
from inspector.app.config.settings import Settings
from inspector.app.core import SERVICE_NAME
from inspector.app.domain.connection_manager import ConnectionManager
from inspector.app.domain.escalation import EscalationTuning
from inspector.app.domain.lock_batch import LockBatchDisposer
from inspector.app.domain.message_browser import MessageBrowser
from inspector.app.domain.models import EntityRef
from inspector.app.infrastructure.amqp.factory import create_amqp_connector
from inspector.app.infrastructure.identity.credential_factory import create_credential
from inspector.app.infrastructure.servicebus.factory import create_entity_client
from inspector.app.ports.broker import EntityClient
from inspector.app.ports.credential import TokenCredential


def _log(event: str, **kwargs: Any) -> None:
    logger.bind(service_name=SERVICE_NAME, event=event, **kwargs).info("")


def escalation_tuning(settings: Settings) -> EscalationTuning:
    return EscalationTuning(
        credit_multiplier=settings.browse_credit_multiplier,
        first_credit_floor=settings.first_pass_credit_floor,
        first_credit_ceiling=settings.first_pass_credit_ceiling,
        second_credit_floor=settings.second_pass_credit_floor,
        second_credit_ceiling=settings.second_pass_credit_ceiling,
        first_window_floor=settings.first_pass_window_floor_seconds,
        first_window_ceiling=settings.first_pass_window_ceiling_seconds,
        second_extension=settings.second_pass_extension_seconds,
        second_extension_cap=settings.second_pass_extension_cap_seconds,
        window_per_hint=settings.window_seconds_per_hint,
    )


class InspectorDependencies:
    """Holds wired inspector dependencies and their lifecycle."""

    def __init__(self, *, settings: Settings) -> None:
        self._settings = settings
        self._credential: TokenCredential | None = None
        self._entity_client: EntityClient | None = None
        self._raw_browse: RawBrowseService | None = None
        self._coordinator: DispositionCoordinator | None = None
        self._connected = False

    @property
    def settings(self) -> Settings:
        return self._settings

    @property
    def entity_client(self) -> EntityClient:
        if self._entity_client is None:
            raise RuntimeError("entity_client is not initialized")
        return self._entity_client

    @property
    def raw_browse(self) -> RawBrowseService:
        if self._raw_browse is None:
            raise RuntimeError("raw_browse is not initialized")
        return self._raw_browse

    @property
    def coordinator(self) -> DispositionCoordinator:
        if self._coordinator is None:
            raise RuntimeError("coordinator is not initialized")
        return self._coordinator

    def pager(
        self,
        entity: EntityRef,
        *,
        dead_letter: bool = False,
        session_prefix: str | None = None,
    ) -> SequencePager:
        return SequencePager(
            self.entity_client,
            entity,
            dead_letter=dead_letter,
            page_size=self._settings.page_size,
            session_prefix=session_prefix,
            max_filter_scan_batches=self._settings.max_filter_scan_batches,
        )

    async def connect(self) -> None:
        settings = self._settings
        self._credential = create_credential(settings)
        self._entity_client = create_entity_client(settings, self._credential)

        connection_manager = ConnectionManager(
            create_amqp_connector(settings),
            attempt_timeout=settings.connect_attempt_timeout_seconds,
            retry_pause=settings.connect_retry_pause_seconds,
        )
        self._raw_browse = RawBrowseService(
            connection_manager,
            MessageBrowser(poll_interval=settings.browse_poll_seconds),
            escalation_tuning(settings),
            port=settings.amqp_port,
            connect_deadline_seconds=settings.connect_deadline_seconds,
            cbs_response_seconds=settings.cbs_response_timeout_seconds,
            cbs_token_types=tuple(settings.cbs_token_type_list),
            cbs_audience_scheme=settings.cbs_audience_scheme,
            sas_audience_scheme=settings.sas_audience_scheme,
            token_scope=settings.token_scope,
            token_lifetime_seconds=settings.token_lifetime_minutes * 60,
            shared_key_auth=settings.shared_key_auth.strip().lower(),
        )
        credentials = BrokerCredentials(
            namespace=settings.namespace,
            token_credential=self._credential,
            connection_string=settings.connection_string or None,
        )
        self._coordinator = DispositionCoordinator(
            self.entity_client,
            self.raw_browse,
            LockBatchDisposer(lock_wait_seconds=settings.lock_wait_seconds),
            credentials,
            max_rederived_batch=settings.max_rederived_batch,
            token_scope=settings.token_scope,
        )
        self._connected = True
        _log("inspector_connected", namespace=settings.namespace, credential=type(self._credential).__name__)

    async def close(self) -> None:
        if self._entity_client is not None:
            try:
                await self._entity_client.close()
            except Exception as exc:
                logger.warning("entity client close failed: {}", exc)
            self._entity_client = None

        if self._credential is not None:
            try:
                await self._credential.close()
            except Exception as exc:
                logger.warning("credential close failed: {}", exc)
            self._credential = None

        self._raw_browse = None
        self._coordinator = None
        self._connected = False


def create_inspector_dependencies(settings: Settings | None = None) -> InspectorDependencies:
    return InspectorDependencies(settings=settings or Settings())
