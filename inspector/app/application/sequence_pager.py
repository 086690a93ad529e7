"""Sequence-number cursor over an entity (or its dead-letter sub-queue).

Pages are read with peek (never locking). `next_from_sequence` is the next unseen
sequence number. Moving forward pushes the start of the page being left, so moving
backward returns to it. A session-id prefix filter skips non-matching messages while
still advancing the cursor past them.
"""
from __future__ import annotations

from typing import Any, Awaitable, Callable, Sequence

from loguru import logger

from inspector.app.core import SERVICE_NAME
from inspector.app.domain.models import EntityRef, MessageDescriptor
from inspector.app.ports.broker import EntityClient

FetchPage = Callable[[int, int], Awaitable[Sequence[MessageDescriptor]]]
PeekSingle = Callable[[int], Awaitable[MessageDescriptor | None]]


def _log(event: str, **kwargs: Any) -> None:
    logger.bind(service_name=SERVICE_NAME, event=event, **kwargs).info("")


def jump_window_start(sequence: int, page_size: int) -> int:
    return max(1, sequence - page_size + 1)


async def find_by_sequence(
    sequence: int,
    page_size: int,
    fetch_page: FetchPage,
    peek_single: PeekSingle,
) -> MessageDescriptor | None:
    """Look for `sequence` near the end of an estimated page, then by a single peek.

    Returns None rather than a neighbouring message when the sequence is gone.
    """
    page = await fetch_page(jump_window_start(sequence, page_size), page_size)
    for message in page:
        if message.sequence_number == sequence:
            return message
    single = await peek_single(sequence)
    if single is not None and single.sequence_number == sequence:
        return single
    return None


class SequencePager:
    def __init__(
        self,
        client: EntityClient,
        entity: EntityRef,
        *,
        dead_letter: bool = False,
        page_size: int = 20,
        session_prefix: str | None = None,
        session_id: str | None = None,
        max_filter_scan_batches: int = 10,
    ) -> None:
        if page_size < 1:
            raise ValueError("page_size must be >= 1")
        self._client = client
        self._entity = entity
        self._dead_letter = dead_letter
        self._page_size = int(page_size)
        self._session_prefix = session_prefix or None
        self._session_id = session_id
        self._max_filter_scan_batches = max(1, int(max_filter_scan_batches))
        self._cursor = 1
        self._shown_from: int | None = None
        self._first_visible: int | None = None
        self._history: list[int] = []

    @property
    def next_from_sequence(self) -> int:
        return self._cursor

    @property
    def shown_from(self) -> int | None:
        return self._shown_from

    @property
    def history(self) -> tuple[int, ...]:
        return tuple(self._history)

    @property
    def page_size(self) -> int:
        return self._page_size

    async def fetch_page(self, from_sequence: int, count: int) -> list[MessageDescriptor]:
        """At most `count` messages, strictly increasing, all >= from_sequence."""
        from_sequence = max(1, int(from_sequence))
        if count < 1:
            return []
        peeked = await self._client.peek(
            self._entity,
            from_sequence=from_sequence,
            count=count,
            dead_letter=self._dead_letter,
            session_id=self._session_id,
        )
        page: list[MessageDescriptor] = []
        last = from_sequence - 1
        for message in peeked:
            if message.sequence_number <= last:
                continue
            page.append(message)
            last = message.sequence_number
            if len(page) == count:
                break
        return page

    async def peek_single(self, sequence: int) -> MessageDescriptor | None:
        page = await self.fetch_page(sequence, 1)
        if page and page[0].sequence_number == sequence:
            return page[0]
        return None

    async def page_forward(self) -> list[MessageDescriptor]:
        return await self.page_from(self._cursor)

    async def page_from(self, start: int) -> list[MessageDescriptor]:
        """Show the page starting at `start`, with the session prefix filter applied."""
        if self._shown_from is not None:
            self._history.append(self._shown_from)
        return await self._show(max(1, int(start)))

    async def page_backward(self) -> list[MessageDescriptor]:
        if self._history:
            start = self._history.pop()
        else:
            start = max(1, (self._first_visible or 1) - self._page_size)
        return await self._show(start)

    async def jump_to(self, sequence: int) -> MessageDescriptor | None:
        if sequence < 1:
            raise ValueError("sequence numbers start at 1")
        found = await find_by_sequence(sequence, self._page_size, self.fetch_page, self.peek_single)
        _log(
            "pager_jump",
            entity=self._entity.path,
            dead_letter=self._dead_letter,
            sequence_number=sequence,
            found=found is not None,
        )
        if found is not None:
            if self._shown_from is not None:
                self._history.append(self._shown_from)
            self._shown_from = jump_window_start(sequence, self._page_size)
            self._first_visible = self._shown_from
            self._cursor = sequence + 1
        return found

    def reset(self) -> None:
        self._cursor = 1
        self._shown_from = None
        self._first_visible = None
        self._history.clear()

    async def _show(self, start: int) -> list[MessageDescriptor]:
        page, next_cursor = await self._read_page(start)
        self._shown_from = start
        self._cursor = next_cursor
        if page:
            self._first_visible = page[0].sequence_number
        return page

    async def _read_page(self, start: int) -> tuple[list[MessageDescriptor], int]:
        if self._session_prefix is None:
            page = await self.fetch_page(start, self._page_size)
            return page, (page[-1].sequence_number + 1 if page else start)

        kept: list[MessageDescriptor] = []
        cursor = start
        for _ in range(self._max_filter_scan_batches):
            batch = await self.fetch_page(cursor, self._page_size)
            if not batch:
                break
            for message in batch:
                cursor = message.sequence_number + 1
                if (message.session_id or "").startswith(self._session_prefix):
                    kept.append(message)
                    if len(kept) == self._page_size:
                        return kept, cursor
        if not kept:
            logger.debug("no session matching prefix {} from sequence {} to {}", self._session_prefix, start, cursor)
        return kept, cursor
