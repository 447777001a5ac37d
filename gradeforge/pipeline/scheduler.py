"""
Stage scheduler.

Scans the collection for cards in auto-dispatch statuses and runs their
stage handlers, at most `concurrency_limit` at a time.

INVARIANTS:
- len(in_flight) <= concurrency_limit at all times
- A card id is in flight at most once; it is added before its task exists
  and removed only after the result has been applied
- Results are applied to the *current* card; if the card was deleted or
  its status changed meanwhile, the result is discarded
- Stage failures never escape: they become StageFailed events
- In-flight stage calls are never cancelled
"""

import asyncio
import logging
from collections.abc import Callable, Iterator
from dataclasses import dataclass
from functools import partial

from gradeforge.config import settings
from gradeforge.models.card import Card, CardStatus
from gradeforge.models.collection import CardCollection, CollectionState
from gradeforge.pipeline.stages import STAGE_HANDLERS, StageChanges, StageHandler
from gradeforge.pipeline.state_machine import (
    CardEvent,
    StageFailed,
    StageSucceeded,
    apply_event,
)
from gradeforge.services.analysis_service import (
    AnalysisService,
    classify_analysis_error,
    describe_stage_failure,
)
from gradeforge.services.retry import RetryExecutor, RetryPolicy

logger = logging.getLogger(__name__)


class InFlightSet:
    """Ids of cards whose stage call is currently running."""

    def __init__(self) -> None:
        self._ids: set[str] = set()

    def __contains__(self, card_id: object) -> bool:
        return card_id in self._ids

    def __len__(self) -> int:
        return len(self._ids)

    def __iter__(self) -> Iterator[str]:
        return iter(sorted(self._ids))

    def add(self, card_id: str) -> None:
        if card_id in self._ids:
            raise RuntimeError(f"Card '{card_id}' is already in flight")
        self._ids.add(card_id)

    def discard(self, card_id: str) -> None:
        self._ids.discard(card_id)

    def snapshot(self) -> frozenset[str]:
        return frozenset(self._ids)


@dataclass(frozen=True, slots=True)
class RetryNotice:
    """Latest retry announcement for a card, shown while it waits."""

    attempt: int
    delay: float

    @property
    def message(self) -> str:
        return (
            f"Analysis is taking longer than expected (attempt {self.attempt} failed). "
            f"Retrying in {self.delay:.0f}s..."
        )


class Scheduler:
    """
    Drives cards through their pipeline stages.

    Call `start()` from inside the event loop. After that the scheduler ticks
    on every collection change, after every completion, and (optionally) on
    a fixed timer.
    """

    def __init__(
        self,
        state: CollectionState,
        service: AnalysisService,
        executor: RetryExecutor | None = None,
        handlers: dict[CardStatus, StageHandler] | None = None,
        concurrency_limit: int | None = None,
        in_flight: InFlightSet | None = None,
        poll_interval: float | None = None,
    ):
        limit = concurrency_limit if concurrency_limit is not None else settings.concurrency_limit
        if limit < 1:
            raise ValueError("concurrency_limit must be at least 1")

        self._state = state
        self._service = service
        self._executor = executor or RetryExecutor(
            classify_analysis_error, RetryPolicy.from_settings()
        )
        self._handlers = handlers if handlers is not None else STAGE_HANDLERS
        self.concurrency_limit = limit
        self.in_flight = in_flight if in_flight is not None else InFlightSet()
        self._poll_interval = (
            poll_interval if poll_interval is not None else settings.scheduler_poll_interval
        )

        self._tasks: set[asyncio.Task[None]] = set()
        self._progress: dict[str, RetryNotice] = {}
        self._paused = False
        self._pause_reason: str | None = None
        self._started = False
        self._stopped = False
        self._unsubscribe: Callable[[], None] | None = None
        self._timer: asyncio.Task[None] | None = None

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def start(self) -> None:
        if self._started:
            return
        self._started = True
        self._unsubscribe = self._state.subscribe(self._on_collection_changed)
        if self._poll_interval and self._poll_interval > 0:
            self._timer = asyncio.get_running_loop().create_task(
                self._poll(self._poll_interval), name="scheduler-poll"
            )
        self.tick()

    def stop(self) -> None:
        """Stop dispatching new work. Running stage calls finish normally."""
        self._stopped = True
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    async def wait_idle(self) -> None:
        """Wait until no stage call is running, including ones started meanwhile."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _poll(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            self.tick()

    def _on_collection_changed(self, _collection: CardCollection) -> None:
        self.tick()

    # -------------------------------------------------------------------------
    # Pause / resume
    # -------------------------------------------------------------------------

    @property
    def paused(self) -> bool:
        return self._paused

    @property
    def pause_reason(self) -> str | None:
        return self._pause_reason

    def pause(self, reason: str) -> None:
        if not self._paused:
            logger.warning("SCHEDULER_PAUSED", extra={"reason": reason})
        self._paused = True
        self._pause_reason = reason

    def resume(self) -> None:
        if self._paused:
            logger.info("SCHEDULER_RESUMED")
        self._paused = False
        self._pause_reason = None
        self.tick()

    # -------------------------------------------------------------------------
    # Progress
    # -------------------------------------------------------------------------

    def progress_for(self, card_id: str) -> RetryNotice | None:
        return self._progress.get(card_id)

    def progress(self) -> dict[str, RetryNotice]:
        return dict(self._progress)

    def _record_retry(self, card_id: str, attempt: int, delay: float) -> None:
        self._progress[card_id] = RetryNotice(attempt=attempt, delay=delay)

    # -------------------------------------------------------------------------
    # Dispatch
    # -------------------------------------------------------------------------

    def tick(self) -> list[str]:
        """
        Dispatch eligible cards up to the free capacity.

        Oldest submissions go first. Returns the ids dispatched by this call.
        """
        if self._paused or self._stopped or not self._started:
            return []

        capacity = self.concurrency_limit - len(self.in_flight)
        if capacity <= 0:
            return []

        dispatched: list[str] = []
        for card in reversed(self._state.collection.in_flight_candidates()):
            if len(dispatched) >= capacity:
                break
            if card.id in self.in_flight:
                continue
            self._dispatch(card)
            dispatched.append(card.id)
        return dispatched

    def _dispatch(self, card: Card) -> None:
        self.in_flight.add(card.id)
        logger.info(
            "STAGE_DISPATCHED",
            extra={"card_id": card.id, "status": card.status.value},
        )
        task = asyncio.get_running_loop().create_task(
            self._run(card), name=f"stage-{card.status.value}-{card.id}"
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run(self, card: Card) -> None:
        try:
            event = await self._execute_stage(card)
            self._complete(card, event)
        finally:
            self._progress.pop(card.id, None)
            self.in_flight.discard(card.id)
            self.tick()

    async def _execute_stage(self, card: Card) -> CardEvent:
        handler = self._handlers[card.status]
        try:
            changes: StageChanges = await self._executor.execute(
                partial(handler, card, self._service),
                on_retry=partial(self._record_retry, card.id),
                context=f"{card.status.value} {card.id}",
            )
        except Exception as e:
            failure = describe_stage_failure(e)
            logger.warning(
                "STAGE_FAILED",
                extra={
                    "card_id": card.id,
                    "status": card.status.value,
                    "kind": failure.kind.value,
                    "error": failure.message,
                },
            )
            if failure.needs_credentials:
                self.pause(failure.message)
            return StageFailed(kind=failure.kind, message=failure.message)

        logger.info(
            "STAGE_COMPLETED",
            extra={"card_id": card.id, "status": card.status.value},
        )
        return StageSucceeded(changes)

    def _complete(self, dispatched: Card, event: CardEvent) -> None:
        def apply(collection: CardCollection) -> CardCollection:
            current = collection.get(dispatched.id)
            if current is None:
                logger.info(
                    "STAGE_RESULT_DISCARDED",
                    extra={"card_id": dispatched.id, "reason": "deleted"},
                )
                return collection
            if current.status is not dispatched.status:
                logger.info(
                    "STAGE_RESULT_DISCARDED",
                    extra={
                        "card_id": dispatched.id,
                        "reason": "status changed",
                        "status": current.status.value,
                    },
                )
                return collection
            return collection.with_card(apply_event(current, event))

        self._state.apply(apply)
