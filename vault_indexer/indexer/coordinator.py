"""
Poll coordinator: one page per event type per call.

For each type: read its cursor, fetch the next ascending page after it,
decode and apply the events of that type in order, then persist the cursor
at the last event the page is finished with.

An event is finished with when it was applied, when it belongs to another
type (the module filter interleaves kinds; their own cursors cover them), or
when its failure was recorded as a dead letter. If even the dead-letter write
fails, the page stops there so the cursor never passes an event that is
neither applied nor recorded.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Iterable

from ..core.errors import CursorPersistError, DecodeError, UnknownRequestError
from ..core.logging import LogContext, Timer
from .cursor_store import CursorStoreProtocol
from .decoder import decode_event
from .events import POLL_ORDER, EventKind, event_type_key, kind_for_type_tag
from .models import Position, RawEvent, WithdrawalReview
from .source import DEFAULT_PAGE_SIZE, EventSource, module_filter
from .store import MaterializationStoreProtocol

logger = logging.getLogger(__name__)


@dataclass
class PollResult:
    """Outcome of one page for one event type."""

    event_type: str
    applied: int = 0
    has_more: bool = False
    foreign: int = 0
    dead_lettered: int = 0
    stopped_at: Position | None = None
    cursor: Position | None = None


@dataclass
class CycleResult:
    """Outcome of one pass over every event type."""

    applied: int = 0
    has_more: bool = False
    replayed: int = 0
    results: list[PollResult] = field(default_factory=list)


class PollCoordinator:
    def __init__(
        self,
        source: EventSource,
        cursors: CursorStoreProtocol,
        store: MaterializationStoreProtocol,
        package_id: str,
        module_name: str,
        page_size: int = DEFAULT_PAGE_SIZE,
        kinds: Iterable[EventKind] = POLL_ORDER,
    ):
        self.source = source
        self.cursors = cursors
        self.store = store
        self.package_id = package_id
        self.module_name = module_name
        self.page_size = page_size
        self.kinds = tuple(kinds)
        self._filter = module_filter(package_id, module_name)
        self._appliers: dict[EventKind, Callable[[Any], Awaitable[Any]]] = {
            EventKind.VAULT_CREATED: store.create_vault,
            EventKind.DEPOSIT_MADE: store.record_deposit,
            EventKind.WITHDRAWAL_REQUESTED: store.create_withdrawal_request,
            EventKind.WITHDRAWAL_APPROVED: self._apply_review,
            EventKind.WITHDRAWAL_REJECTED: self._apply_review,
            EventKind.WITHDRAWAL_CANCELLED: self._apply_review,
            EventKind.WITHDRAWED: store.record_withdrawal,
        }

    def type_key(self, kind: EventKind) -> str:
        return event_type_key(self.package_id, self.module_name, kind)

    # =========================================================================
    # Apply
    # =========================================================================

    async def _apply_review(self, record: WithdrawalReview) -> None:
        found = await self.store.transition_withdrawal_request(
            record.request_id, record.status, record.auditor, record.audit_at_ms
        )
        if not found:
            raise UnknownRequestError(record.request_id)

    async def apply_event(self, kind: EventKind, event: RawEvent) -> None:
        """Decode and apply one event. Raises on any failure."""
        record = decode_event(kind, event)
        await self._appliers[kind](record)

    # =========================================================================
    # Polling
    # =========================================================================

    async def poll_event_type(self, kind: EventKind) -> PollResult:
        """
        Process the next page for one event type.

        Raises:
            SourceError: the page could not be fetched
            CursorPersistError: the page was processed but the cursor upsert failed
        """
        key = self.type_key(kind)
        result = PollResult(event_type=key)

        with LogContext(event_type=key, event_kind=kind.value), Timer() as timer:
            after = await self.cursors.get(key)
            if after is None:
                logger.info("No cursor found, starting from the beginning")
            page = await self.source.query_events(
                self._filter, after, ascending=True, limit=self.page_size
            )

            latest: Position | None = None
            for event in page.events:
                if kind_for_type_tag(event.type_tag) is not kind:
                    result.foreign += 1
                    latest = event.position
                    continue

                try:
                    await self.apply_event(kind, event)
                except Exception as e:
                    stage = "decode" if isinstance(e, DecodeError) else "apply"
                    if not await self._dead_letter(key, event, stage, e):
                        result.stopped_at = event.position
                        break
                    result.dead_lettered += 1
                else:
                    result.applied += 1
                    logger.debug(f"Applied event {event.position}")
                latest = event.position

            if latest is not None and latest != after:
                try:
                    result.cursor = await self.cursors.upsert(key, latest)
                except Exception as e:
                    raise CursorPersistError(key, e) from e
                logger.info(
                    f"Cursor advanced to {latest} after applying {result.applied} events",
                    extra={"applied": result.applied},
                )

            result.has_more = (
                page.has_next_page and bool(page.events) and result.stopped_at is None
            )

        logger.info(
            f"Polled {kind.value}: {len(page.events)} events, applied={result.applied}, "
            f"dead_lettered={result.dead_lettered}, has_more={result.has_more}",
            extra={
                "event_type": key,
                "applied": result.applied,
                "has_more": result.has_more,
                "duration_ms": timer.elapsed_ms,
            },
        )
        return result

    async def _dead_letter(
        self, key: str, event: RawEvent, stage: str, error: BaseException
    ) -> bool:
        """Record a failed event. Returns False when it could not be recorded."""
        logger.error(
            f"Failed to {stage} event {event.position}: {error}",
            extra={
                "stage": stage,
                "tx_digest": event.position.tx_digest,
                "event_seq": event.position.event_seq,
                "error_type": type(error).__name__,
            },
            exc_info=not isinstance(error, (DecodeError, UnknownRequestError)),
        )
        try:
            await self.store.record_dead_letter(key, event, stage, error)
        except Exception:
            logger.exception(
                f"Could not dead-letter event {event.position}; "
                "stopping page so it is re-read next cycle"
            )
            return False
        logger.warning(f"Event {event.position} dead-lettered ({stage})", extra={"stage": stage})
        return True

    async def poll_all(self) -> CycleResult:
        """Run every event type once, sequentially, in poll order."""
        cycle = CycleResult()
        for kind in self.kinds:
            result = await self.poll_event_type(kind)
            cycle.results.append(result)
            cycle.applied += result.applied
            cycle.has_more = cycle.has_more or result.has_more
        return cycle

    # =========================================================================
    # Dead-letter replay
    # =========================================================================

    async def replay_dead_letters(self, limit: int = 100, max_attempts: int | None = None) -> int:
        """
        Retry unresolved dead letters oldest first. Returns how many now applied.

        Storage failures while bookkeeping propagate to the caller.
        """
        letters = await self.store.list_dead_letters(limit=limit, max_attempts=max_attempts)
        replayed = 0
        for letter in letters:
            kind = kind_for_type_tag(letter.event.type_tag)
            try:
                if kind is None:
                    raise DecodeError(letter.event.type_tag, "type", "is not a known event kind")
                await self.apply_event(kind, letter.event)
            except Exception as e:
                logger.info(
                    f"Dead letter {letter.id} ({letter.event.position}) still failing: {e}",
                    extra={"error_type": type(e).__name__},
                )
                await self.store.record_dead_letter_attempt(letter.id, e)
                continue
            await self.store.resolve_dead_letter(letter.id)
            replayed += 1
            logger.info(f"Dead letter {letter.id} ({letter.event.position}) applied on replay")

        if letters:
            logger.info(
                f"Dead-letter replay: {replayed}/{len(letters)} resolved",
                extra={"count": replayed},
            )
        return replayed
