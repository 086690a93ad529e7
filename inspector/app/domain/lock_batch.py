"""Lock-mode receive of a small batch, disposing only the target sequence."""
from __future__ import annotations

from typing import Any

from loguru import logger

from inspector.app.constants import Disposition, LockBatchFailure
from inspector.app.core import SERVICE_NAME
from inspector.app.domain.models import DeadLetterDetails, LockBatchResult, MessageSettlement
from inspector.app.ports.broker import LockReceiver


def _log(event: str, **kwargs: Any) -> None:
    logger.bind(service_name=SERVICE_NAME, event=event, **kwargs).info("")


def _sequence_of(message: Any) -> int | None:
    value = getattr(message, "sequence_number", None)
    return int(value) if value is not None else None


class LockBatchDisposer:
    """
    Receives up to batch_size messages and disposes the one whose sequence number is
    the target. Every other received message is abandoned afterwards, whether the
    disposition succeeded or raised. Abandon failures are logged and ignored: the
    lock expires on its own.
    """

    def __init__(self, *, lock_wait_seconds: float = 5.0) -> None:
        self._lock_wait_seconds = float(lock_wait_seconds)

    async def dispose_by_sequence(
        self,
        receiver: LockReceiver,
        target_sequence: int,
        batch_size: int,
        disposition: Disposition,
        details: DeadLetterDetails | None = None,
    ) -> LockBatchResult:
        if disposition == Disposition.DEAD_LETTER and details is None:
            raise ValueError("dead-lettering requires reason and description")

        batch = list(
            await receiver.receive_messages(
                max_message_count=max(1, int(batch_size)),
                max_wait_time=self._lock_wait_seconds,
            )
        )
        if not batch:
            _log("lock_batch_empty", sequence_number=target_sequence, batch_size=batch_size)
            return LockBatchResult(ok=False, failure=LockBatchFailure.NO_MESSAGES, error="no messages available")

        target = next((m for m in batch if _sequence_of(m) == target_sequence), None)
        others = [m for m in batch if m is not target]
        settlements: list[MessageSettlement] = []
        result: LockBatchResult
        try:
            if target is None:
                result = LockBatchResult(
                    ok=False,
                    failure=LockBatchFailure.NOT_IN_PAGE,
                    error=f"sequence {target_sequence} not in current page",
                )
            else:
                result = await self._dispose(receiver, target, target_sequence, disposition, details, settlements)
        finally:
            for message in others:
                settlements.append(await self._abandon(receiver, message))

        _log(
            "lock_batch_done",
            sequence_number=target_sequence,
            received=len(batch),
            ok=result.ok,
            failure=result.failure.value if result.failure else None,
        )
        return LockBatchResult(ok=result.ok, failure=result.failure, error=result.error, settlements=tuple(settlements))

    async def _dispose(
        self,
        receiver: LockReceiver,
        target: Any,
        target_sequence: int,
        disposition: Disposition,
        details: DeadLetterDetails | None,
        settlements: list[MessageSettlement],
    ) -> LockBatchResult:
        try:
            if disposition == Disposition.DEAD_LETTER:
                await receiver.dead_letter_message(
                    target,
                    reason=details.reason,
                    error_description=details.description,
                )
            else:
                await receiver.complete_message(target)
        except Exception as exc:
            logger.warning("disposition {} failed for sequence {}: {}", disposition.value, target_sequence, exc)
            settlements.append(MessageSettlement(target_sequence, disposition.value, False, str(exc)))
            return LockBatchResult(ok=False, failure=LockBatchFailure.DISPOSITION_FAILED, error=str(exc))
        settlements.append(MessageSettlement(target_sequence, disposition.value, True))
        return LockBatchResult(ok=True)

    async def _abandon(self, receiver: LockReceiver, message: Any) -> MessageSettlement:
        sequence = _sequence_of(message)
        try:
            await receiver.abandon_message(message)
        except Exception as exc:
            logger.warning("abandon failed for sequence {}: {}", sequence, exc)
            return MessageSettlement(sequence, "ABANDON", False, str(exc))
        return MessageSettlement(sequence, "ABANDON", True)
