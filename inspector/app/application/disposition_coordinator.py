from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Iterable, Sequence

from loguru import logger

from inspector.app.application.raw_browse_service import BrokerCredentials, RawBrowseService
from inspector.app.constants import (
    REJECT_REASON,
    UNAUTHORIZED_MESSAGE,
    Disposition,
    DispositionMode,
    EntityKind,
    LockBatchFailure,
    Strategy,
)
from inspector.app.core import SERVICE_NAME
from inspector.app.core.connection_string import parse_connection_string
from inspector.app.domain.errors import (
    AuthenticationFailedError,
    NoMessagesAvailableError,
    ResubmitSendError,
    TargetNotInPageError,
)
from inspector.app.domain.identity import display_name_from_token
from inspector.app.domain.lock_batch import LockBatchDisposer
from inspector.app.domain.models import (
    BrowseTimeouts,
    DeadLetterDetails,
    DispositionOutcome,
    DispositionSummary,
    EntityRef,
    LockBatchResult,
    MessageDescriptor,
    TargetSelector,
)
from inspector.app.domain.resubmit import build_resubmit_message
from inspector.app.ports.broker import BrokerError, EntityClient, is_unauthorized

UNKNOWN_ACTOR = "unknown"


def _log(event: str, **kwargs: Any) -> None:
    logger.bind(service_name=SERVICE_NAME, event=event, **kwargs).info("")


def select_strategy(entity: EntityRef, mode: DispositionMode) -> Strategy:
    """Which strategy can reach the target for this (entity kind, sub-queue, sessions)."""
    if entity.kind not in (EntityKind.QUEUE, EntityKind.TOPIC_SUBSCRIPTION):
        raise ValueError(f"Unsupported entity kind: {entity.kind}")

    # reject acts on the live entity; resubmit and delete act on its dead-letter sub-queue
    if mode == DispositionMode.REJECT:
        dead_letter = False
    elif mode in (DispositionMode.RESUBMIT, DispositionMode.DELETE):
        dead_letter = True
    else:
        raise ValueError(f"Unsupported disposition mode: {mode}")

    if dead_letter and entity.session_enabled:
        return Strategy.RAW_BROWSE
    return Strategy.LOCK_BATCH


def batch_size_for(target_sequence: int, page: Iterable[MessageDescriptor]) -> int:
    """How many browsed messages sit at or before the target (at least 1)."""
    return max(1, sum(1 for m in page if m.sequence_number <= target_sequence))


class DispositionCoordinator:
    """
    Routes reject/resubmit/delete for one target sequence to the lock-batch or the
    raw-browse strategy and reports exactly one outcome per selector.

    Resubmit sends the clone first and disposes the dead-letter copy only after the
    send succeeded. The operator's display name is resolved lazily, once.
    """

    def __init__(
        self,
        client: EntityClient,
        raw_browse: RawBrowseService,
        disposer: LockBatchDisposer,
        credentials: BrokerCredentials,
        *,
        max_rederived_batch: int = 500,
        token_scope: str = "https://servicebus.azure.net/.default",
        timeouts: BrowseTimeouts | None = None,
    ) -> None:
        self._client = client
        self._raw_browse = raw_browse
        self._disposer = disposer
        self._credentials = credentials
        self._max_rederived_batch = int(max_rederived_batch)
        self._token_scope = token_scope
        self._timeouts = timeouts
        self._actor: str | None = None

    async def actor(self) -> str:
        if self._actor is None:
            self._actor = await self._resolve_actor()
        return self._actor

    async def dispose_many(
        self,
        entity: EntityRef,
        selectors: Sequence[TargetSelector],
        mode: DispositionMode,
        *,
        page: Sequence[MessageDescriptor] = (),
    ) -> DispositionSummary:
        actor = await self.actor() if mode == DispositionMode.REJECT else None
        outcomes = []
        for selector in selectors:
            outcomes.append(await self.dispose_by_sequence(entity, selector, mode, actor=actor, page=page))
        summary = DispositionSummary(tuple(outcomes))
        _log(
            "disposition_summary",
            entity=entity.path,
            mode=mode.value,
            succeeded=summary.succeeded,
            failed=summary.failed,
        )
        return summary

    async def dispose_by_sequence(
        self,
        entity: EntityRef,
        selector: TargetSelector,
        mode: DispositionMode,
        *,
        actor: str | None = None,
        page: Sequence[MessageDescriptor] = (),
    ) -> DispositionOutcome:
        strategy = select_strategy(entity, mode)
        try:
            if mode == DispositionMode.REJECT:
                await self._reject(entity, selector, actor or await self.actor(), page)
            elif mode == DispositionMode.RESUBMIT:
                await self._resubmit(entity, selector, strategy, page)
            else:
                await self._remove_dead_letter(entity, selector, strategy, page)
        except Exception as exc:
            error = UNAUTHORIZED_MESSAGE if is_unauthorized(exc) or isinstance(exc, AuthenticationFailedError) else str(exc)
            logger.warning("{} of sequence {} failed: {}", mode.value, selector.sequence_number, exc)
            return DispositionOutcome(selector, ok=False, error=error, strategy=strategy)

        _log(
            "disposition_succeeded",
            entity=entity.path,
            mode=mode.value,
            strategy=strategy.value,
            sequence_number=selector.sequence_number,
            session_id=selector.session_id,
        )
        return DispositionOutcome(selector, ok=True, strategy=strategy)

    async def _reject(
        self,
        entity: EntityRef,
        selector: TargetSelector,
        actor: str,
        page: Sequence[MessageDescriptor],
    ) -> None:
        if entity.session_enabled and not selector.session_id:
            raise ValueError(f"session id required to reject sequence {selector.sequence_number}")
        stamp = datetime.now(timezone.utc).isoformat(timespec="seconds")
        details = DeadLetterDetails(
            reason=REJECT_REASON,
            description=f"Rejected by {actor} at {stamp}",
        )
        await self._lock_batch(
            entity,
            selector,
            Disposition.DEAD_LETTER,
            page,
            dead_letter=False,
            details=details,
        )

    async def _resubmit(
        self,
        entity: EntityRef,
        selector: TargetSelector,
        strategy: Strategy,
        page: Sequence[MessageDescriptor],
    ) -> None:
        original = await self._dead_letter_descriptor(entity, selector, page)
        clone = build_resubmit_message(original)
        try:
            await self._client.send(entity, clone)
        except BrokerError as exc:
            raise ResubmitSendError(f"resubmit of sequence {selector.sequence_number} not sent: {exc}") from exc
        _log("resubmit_sent", entity=entity.path, sequence_number=selector.sequence_number)

        session_id = selector.session_id or original.session_id
        await self._remove_dead_letter(entity, TargetSelector(selector.sequence_number, session_id), strategy, page)

    async def _remove_dead_letter(
        self,
        entity: EntityRef,
        selector: TargetSelector,
        strategy: Strategy,
        page: Sequence[MessageDescriptor],
    ) -> None:
        if strategy == Strategy.RAW_BROWSE:
            found = await self._raw_browse.browse_and_complete(
                entity,
                selector.session_id,
                selector.sequence_number,
                batch_size_for(selector.sequence_number, page),
                self._credentials,
                self._timeouts,
            )
            if not found:
                raise TargetNotInPageError(
                    f"sequence {selector.sequence_number} not found in dead-letter sub-queue of {entity.path}"
                )
            return
        await self._lock_batch(entity, selector, Disposition.COMPLETE, page, dead_letter=True)

    async def _lock_batch(
        self,
        entity: EntityRef,
        selector: TargetSelector,
        disposition: Disposition,
        page: Sequence[MessageDescriptor],
        *,
        dead_letter: bool,
        details: DeadLetterDetails | None = None,
    ) -> None:
        session_id = selector.session_id if entity.session_enabled and not dead_letter else None
        batch_size = batch_size_for(selector.sequence_number, page)
        result = await self._run_lock_batch(entity, selector, disposition, batch_size, dead_letter, session_id, details)

        if result.failure == LockBatchFailure.NOT_IN_PAGE:
            rederived = await self._rederive_batch_size(entity, selector, dead_letter, session_id)
            _log(
                "lock_batch_rederived",
                entity=entity.path,
                sequence_number=selector.sequence_number,
                batch_size=batch_size,
                rederived=rederived,
            )
            if rederived > batch_size:
                result = await self._run_lock_batch(
                    entity, selector, disposition, rederived, dead_letter, session_id, details
                )

        if result.ok:
            return
        if result.failure == LockBatchFailure.NO_MESSAGES:
            raise NoMessagesAvailableError(result.error or "no messages available")
        if result.failure == LockBatchFailure.NOT_IN_PAGE:
            raise TargetNotInPageError(result.error or f"sequence {selector.sequence_number} not in current page")
        raise BrokerError(result.error or "disposition failed")

    async def _run_lock_batch(
        self,
        entity: EntityRef,
        selector: TargetSelector,
        disposition: Disposition,
        batch_size: int,
        dead_letter: bool,
        session_id: str | None,
        details: DeadLetterDetails | None,
    ) -> LockBatchResult:
        async with self._client.lock_receiver(entity, dead_letter=dead_letter, session_id=session_id) as receiver:
            return await self._disposer.dispose_by_sequence(
                receiver,
                selector.sequence_number,
                batch_size,
                disposition,
                details,
            )

    async def _rederive_batch_size(
        self,
        entity: EntityRef,
        selector: TargetSelector,
        dead_letter: bool,
        session_id: str | None,
    ) -> int:
        head = await self._client.peek(
            entity,
            from_sequence=1,
            count=self._max_rederived_batch,
            dead_letter=dead_letter,
            session_id=session_id,
        )
        if not any(m.sequence_number == selector.sequence_number for m in head):
            return 0
        return batch_size_for(selector.sequence_number, head)

    async def _dead_letter_descriptor(
        self,
        entity: EntityRef,
        selector: TargetSelector,
        page: Sequence[MessageDescriptor],
    ) -> MessageDescriptor:
        for message in page:
            if message.sequence_number == selector.sequence_number:
                return message
        peeked = await self._client.peek(
            entity,
            from_sequence=selector.sequence_number,
            count=1,
            dead_letter=True,
            session_id=None,
        )
        if peeked and peeked[0].sequence_number == selector.sequence_number:
            return peeked[0]
        raise TargetNotInPageError(f"sequence {selector.sequence_number} not found in dead-letter sub-queue")

    async def _resolve_actor(self) -> str:
        credential = self._credentials.token_credential
        if credential is not None:
            try:
                access_token = await credential.get_token(self._token_scope)
            except Exception as exc:
                logger.warning("could not read operator identity from token: {}", exc)
            else:
                name = display_name_from_token(access_token.token)
                if name:
                    return name
        if self._credentials.connection_string:
            try:
                return f"sas:{parse_connection_string(self._credentials.connection_string).key_name}"
            except ValueError as exc:
                logger.warning("could not read key name from connection string: {}", exc)
        return UNKNOWN_ACTOR
