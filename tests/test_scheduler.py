"""Tests for the stage scheduler."""

import asyncio
from collections.abc import Callable

import httpx
import pytest

from gradeforge.models.card import CardStatus
from gradeforge.models.collection import CardCollection, CollectionState
from gradeforge.models.failure import FailureKind
from gradeforge.pipeline.scheduler import InFlightSet, RetryNotice, Scheduler
from gradeforge.services.analysis_service import CredentialError, classify_analysis_error
from gradeforge.services.retry import RetryExecutor, RetryPolicy


async def settle(rounds: int = 5) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)


async def until(condition: Callable[[], bool]) -> None:
    while not condition():
        await asyncio.sleep(0)


def build(state, service, executor, **kwargs) -> Scheduler:
    kwargs.setdefault("concurrency_limit", 2)
    kwargs.setdefault("poll_interval", 0)
    return Scheduler(state, service, executor=executor, **kwargs)


class TestInFlightSet:
    def test_add_and_discard(self) -> None:
        in_flight = InFlightSet()

        in_flight.add("a")
        in_flight.add("b")
        in_flight.discard("a")

        assert "b" in in_flight
        assert "a" not in in_flight
        assert len(in_flight) == 1

    def test_double_add_rejected(self) -> None:
        """A card can be in flight only once."""
        in_flight = InFlightSet()
        in_flight.add("a")

        with pytest.raises(RuntimeError):
            in_flight.add("a")


class TestDispatch:
    async def test_happy_path(self, make_card, fake_service, fast_executor) -> None:
        """A submitted card is graded and waits for review."""
        card = make_card()
        state = CollectionState(CardCollection([card]))
        scheduler = build(state, fake_service, fast_executor)

        scheduler.start()
        await scheduler.wait_idle()

        result = state.collection[card.id]
        assert result.status is CardStatus.NEEDS_REVIEW
        assert result.name == "Ken Griffey Jr."
        assert result.overall_grade == 8
        assert result.is_dirty is True
        assert len(scheduler.in_flight) == 0

    async def test_not_started_does_nothing(self, make_card, fake_service, fast_executor) -> None:
        state = CollectionState(CardCollection([make_card()]))
        scheduler = build(state, fake_service, fast_executor)

        assert scheduler.tick() == []
        assert fake_service.calls == []

    async def test_invalid_concurrency_limit(self, fake_service, fast_executor) -> None:
        with pytest.raises(ValueError):
            build(CollectionState(), fake_service, fast_executor, concurrency_limit=0)

    async def test_new_cards_dispatch_on_mutation(
        self, make_card, fake_service, fast_executor
    ) -> None:
        """Adding a card to the collection triggers a tick."""
        state = CollectionState()
        scheduler = build(state, fake_service, fast_executor)
        scheduler.start()

        card = make_card()
        state.apply(lambda c: c.with_card(card))
        await scheduler.wait_idle()

        assert state.collection[card.id].status is CardStatus.NEEDS_REVIEW

    async def test_resting_cards_not_dispatched(
        self, make_card, fake_service, fast_executor, graded_fields
    ) -> None:
        cards = [
            make_card(status=CardStatus.NEEDS_REVIEW, **graded_fields),
            make_card(status=CardStatus.REVIEWED, **graded_fields),
            make_card(status=CardStatus.GRADING_FAILED, error_message="Failed"),
        ]
        state = CollectionState(CardCollection(cards))
        scheduler = build(state, fake_service, fast_executor)

        scheduler.start()
        await scheduler.wait_idle()

        assert fake_service.calls == []

    async def test_accepted_card_runs_to_reviewed(
        self, make_card, fake_service, fast_executor, graded_fields
    ) -> None:
        """Summary then valuation run back to back without user action."""
        card = make_card(status=CardStatus.GENERATING_SUMMARY, **graded_fields)
        state = CollectionState(CardCollection([card]))
        scheduler = build(state, fake_service, fast_executor)

        scheduler.start()
        await scheduler.wait_idle()

        result = state.collection[card.id]
        assert result.status is CardStatus.REVIEWED
        assert result.summary == fake_service.summary
        assert result.market_value is not None
        assert [op for op, _ in fake_service.calls] == ["summarize", "market_value"]


class TestConcurrency:
    async def test_ceiling_holds(self, make_card, fake_service, fast_executor) -> None:
        """Three eligible cards with a limit of two: the third starts when one finishes."""
        first, second, third = cards = [make_card() for _ in range(3)]
        state = CollectionState(CardCollection(cards))
        fake_service.card_gates = {c.id: asyncio.Event() for c in cards}
        scheduler = build(state, fake_service, fast_executor)

        scheduler.start()
        await settle()

        assert scheduler.in_flight.snapshot() == {first.id, second.id}
        assert fake_service.active == 2
        assert scheduler.tick() == []
        assert third.id not in {card_id for _, card_id in fake_service.calls}

        fake_service.card_gates[first.id].set()
        await asyncio.wait_for(until(lambda: fake_service.count_for(third.id) > 0), timeout=1)

        assert state.collection[first.id].status is CardStatus.NEEDS_REVIEW
        assert scheduler.in_flight.snapshot() == {second.id, third.id}
        finished_first = max(
            i for i, (_, card_id) in enumerate(fake_service.calls) if card_id == first.id
        )
        started_third = min(
            i for i, (_, card_id) in enumerate(fake_service.calls) if card_id == third.id
        )
        assert started_third > finished_first

        for gate in fake_service.card_gates.values():
            gate.set()
        await scheduler.wait_idle()

        assert fake_service.max_active == 2
        assert all(c.status is CardStatus.NEEDS_REVIEW for c in state.collection.cards())

    async def test_no_double_dispatch(self, make_card, fake_service, fast_executor) -> None:
        """Repeated ticks never start a second call for the same card."""
        card = make_card()
        state = CollectionState(CardCollection([card]))
        fake_service.gate = asyncio.Event()
        scheduler = build(state, fake_service, fast_executor, concurrency_limit=4)

        scheduler.start()
        for _ in range(5):
            assert scheduler.tick() == []
        await settle()
        fake_service.gate.set()
        await scheduler.wait_idle()

        assert fake_service.count("identify") == 1
        assert fake_service.count("grade") == 1

    async def test_shared_in_flight_set(self, make_card, fake_service, fast_executor) -> None:
        """An injected in-flight set is the one the scheduler fills."""
        in_flight = InFlightSet()
        state = CollectionState(CardCollection([make_card()]))
        fake_service.gate = asyncio.Event()
        scheduler = build(state, fake_service, fast_executor, in_flight=in_flight)

        scheduler.start()

        assert len(in_flight) == 1
        fake_service.gate.set()
        await scheduler.wait_idle()
        assert len(in_flight) == 0


class TestStaleResults:
    async def test_result_discarded_after_delete(
        self, make_card, fake_service, fast_executor
    ) -> None:
        """A card deleted while its stage runs stays deleted."""
        card = make_card()
        state = CollectionState(CardCollection([card]))
        fake_service.gate = asyncio.Event()
        scheduler = build(state, fake_service, fast_executor)

        scheduler.start()
        await settle()
        state.apply(lambda c: c.without(card.id))
        fake_service.gate.set()
        await scheduler.wait_idle()

        assert card.id not in state.collection
        assert len(scheduler.in_flight) == 0

    async def test_result_discarded_after_status_change(
        self, make_card, fake_service, fast_executor, graded_fields
    ) -> None:
        """A result for an old status is not applied to a card that moved on."""
        card = make_card()
        state = CollectionState(CardCollection([card]))
        fake_service.gate = asyncio.Event()
        scheduler = build(state, fake_service, fast_executor)

        scheduler.start()
        await settle()
        moved = card.with_updates(status=CardStatus.REVIEWED, **graded_fields)
        state.apply(lambda c: c.with_card(moved))
        fake_service.gate.set()
        await scheduler.wait_idle()

        assert state.collection[card.id] == moved


class TestFailures:
    async def test_transient_recovery(self, make_card, fake_service, fast_executor) -> None:
        """Two overload errors then success: the card still reaches NeedsReview."""
        card = make_card()
        state = CollectionState(CardCollection([card]))
        fake_service.fail(
            "identify",
            httpx.ConnectError("overloaded"),
            httpx.ConnectError("overloaded"),
        )
        scheduler = build(state, fake_service, fast_executor)

        scheduler.start()
        await scheduler.wait_idle()

        assert state.collection[card.id].status is CardStatus.NEEDS_REVIEW
        assert fake_service.count("identify") == 3

    async def test_exhaustion_fails_card(self, make_card, fake_service, fast_executor) -> None:
        """A card whose service never recovers lands in GradingFailed."""
        card = make_card()
        state = CollectionState(CardCollection([card]))
        fake_service.fail(
            "identify",
            *[httpx.ConnectError("upstream says: model is overloaded") for _ in range(5)],
        )
        scheduler = build(state, fake_service, fast_executor)

        scheduler.start()
        await scheduler.wait_idle()

        result = state.collection[card.id]
        assert result.status is CardStatus.GRADING_FAILED
        assert result.error_kind is FailureKind.SERVICE_UNAVAILABLE
        assert "3 attempts" in result.error_message
        assert "upstream says: model is overloaded" in result.error_message
        assert fake_service.count("identify") == 3

    async def test_valuation_failure_absorbed(
        self, make_card, fake_service, fast_executor, graded_fields
    ) -> None:
        card = make_card(status=CardStatus.FETCHING_VALUE, **graded_fields)
        state = CollectionState(CardCollection([card]))
        fake_service.fail("market_value", ValueError("no sales"))
        scheduler = build(state, fake_service, fast_executor)

        scheduler.start()
        await scheduler.wait_idle()

        result = state.collection[card.id]
        assert result.status is CardStatus.REVIEWED
        assert "no sales" in result.valuation_error
        assert result.error_message is None

    async def test_credential_failure_pauses(self, make_card, fake_service, fast_executor) -> None:
        """A missing key fails the card and stops further dispatch until resumed."""
        first = make_card()
        state = CollectionState(CardCollection([first]))
        fake_service.fail("identify", CredentialError())
        scheduler = build(state, fake_service, fast_executor, concurrency_limit=1)

        scheduler.start()
        await scheduler.wait_idle()

        assert state.collection[first.id].status is CardStatus.GRADING_FAILED
        assert state.collection[first.id].error_kind is FailureKind.CREDENTIAL_REQUIRED
        assert scheduler.paused is True
        assert scheduler.pause_reason

        second = make_card()
        state.apply(lambda c: c.with_card(second))
        await settle()
        assert state.collection[second.id].status is CardStatus.GRADING
        assert fake_service.count("identify") == 1

        scheduler.resume()
        await scheduler.wait_idle()

        assert scheduler.paused is False
        assert state.collection[second.id].status is CardStatus.NEEDS_REVIEW


class TestProgress:
    async def test_retry_notice_visible_while_waiting(self, make_card, fake_service) -> None:
        """Progress shows the latest retry notice and is cleared on completion."""
        seen: list[RetryNotice | None] = []
        card = make_card()
        state = CollectionState(CardCollection([card]))
        scheduler: Scheduler | None = None

        async def observing_sleep(_delay: float) -> None:
            seen.append(scheduler.progress_for(card.id) if scheduler else None)

        executor = RetryExecutor(
            classify_analysis_error,
            RetryPolicy(max_attempts=3, base_delay=4.0, max_delay=4.0, jitter=0.0),
            sleep=observing_sleep,
        )
        fake_service.fail("identify", httpx.ConnectError("overloaded"))
        scheduler = build(state, fake_service, executor)

        scheduler.start()
        await scheduler.wait_idle()

        assert seen == [RetryNotice(attempt=1, delay=4.0)]
        assert "Retrying in 4s" in seen[0].message
        assert scheduler.progress_for(card.id) is None


class TestLifecycle:
    async def test_stop_prevents_new_dispatch(
        self, make_card, fake_service, fast_executor
    ) -> None:
        state = CollectionState()
        scheduler = build(state, fake_service, fast_executor)
        scheduler.start()
        scheduler.stop()

        state.apply(lambda c: c.with_card(make_card()))
        await settle()

        assert fake_service.calls == []

    async def test_poll_timer_ticks(self, make_card, fake_service, fast_executor) -> None:
        """The periodic timer picks up work when capacity frees without a tick."""
        card = make_card()
        state = CollectionState(CardCollection([card]))
        in_flight = InFlightSet()
        in_flight.add("elsewhere")
        scheduler = build(
            state,
            fake_service,
            fast_executor,
            concurrency_limit=1,
            in_flight=in_flight,
            poll_interval=0.01,
        )
        scheduler.start()
        assert fake_service.calls == []

        in_flight.discard("elsewhere")
        await asyncio.sleep(0.05)
        await scheduler.wait_idle()
        scheduler.stop()

        assert state.collection[card.id].status is CardStatus.NEEDS_REVIEW
