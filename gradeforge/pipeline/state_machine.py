"""
Card lifecycle state machine.

`apply_event` is a pure function from (card, event) to the next card. It
holds every status rule in one place; the scheduler and the orchestrator
only decide *when* an event happens.

Pipeline transitions:

    Grading             -> NeedsReview          | GradingFailed
    Challenging         -> NeedsReview          | GradingFailed
    GeneratingSummary   -> FetchingValue        | GradingFailed
    RegeneratingSummary -> FetchingValue        | GradingFailed
    FetchingValue       -> Reviewed             | Reviewed (valuation_error set)

User transitions are only legal from NeedsReview / GradingFailed, except
Retry (GradingFailed only) and RequestValuation (Reviewed only).
"""

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from gradeforge.config import GRADE_NAMES, MAX_GRADE, MIN_GRADE
from gradeforge.models.card import (
    AUTO_DISPATCH_STATES,
    FAILURE_STATES,
    REVIEWABLE_STATES,
    Card,
    CardStatus,
    ChallengeDirection,
)
from gradeforge.models.failure import FailureKind, KnownError

logger = logging.getLogger(__name__)


class InvalidTransitionError(KnownError):
    """Raised when an event is not legal from the card's current status."""

    def __init__(self, card_id: str, status: CardStatus, action: str, reason: str | None = None):
        self.card_id = card_id
        self.status = status
        self.action = action
        super().__init__(
            kind=FailureKind.INVALID_TRANSITION,
            message=f"Cannot {action} card '{card_id}' while it is {status.value}.",
            detail=reason,
            suggestion="Refresh the card and try an action valid for its current status.",
            status_code=409,
        )


# =============================================================================
# EVENTS
# =============================================================================


@dataclass(frozen=True, slots=True)
class StageSucceeded:
    """The stage for the card's current status returned a result."""

    changes: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class StageFailed:
    """The stage for the card's current status failed terminally."""

    kind: FailureKind
    message: str


@dataclass(frozen=True, slots=True)
class Accept:
    pass


@dataclass(frozen=True, slots=True)
class Challenge:
    direction: ChallengeDirection


@dataclass(frozen=True, slots=True)
class ManualOverride:
    grade: int
    grade_name: str | None = None


@dataclass(frozen=True, slots=True)
class Retry:
    pass


@dataclass(frozen=True, slots=True)
class RequestValuation:
    pass


StageEvent = StageSucceeded | StageFailed
UserEvent = Accept | Challenge | ManualOverride | Retry | RequestValuation
CardEvent = StageEvent | UserEvent


# =============================================================================
# TRANSITION TABLES
# =============================================================================

SUCCESS_TRANSITIONS: dict[CardStatus, CardStatus] = {
    CardStatus.GRADING: CardStatus.NEEDS_REVIEW,
    CardStatus.CHALLENGING: CardStatus.NEEDS_REVIEW,
    CardStatus.GENERATING_SUMMARY: CardStatus.FETCHING_VALUE,
    CardStatus.REGENERATING_SUMMARY: CardStatus.FETCHING_VALUE,
    CardStatus.FETCHING_VALUE: CardStatus.REVIEWED,
}

FAILURE_TRANSITIONS: dict[CardStatus, CardStatus] = {
    CardStatus.GRADING: CardStatus.GRADING_FAILED,
    CardStatus.CHALLENGING: CardStatus.GRADING_FAILED,
    CardStatus.GENERATING_SUMMARY: CardStatus.GRADING_FAILED,
    CardStatus.REGENERATING_SUMMARY: CardStatus.GRADING_FAILED,
    # Valuation failure does not undo an accepted grade
    CardStatus.FETCHING_VALUE: CardStatus.REVIEWED,
}

# Statuses that wait for the user
RESTING_STATES: frozenset[CardStatus] = frozenset(
    {CardStatus.NEEDS_REVIEW, CardStatus.GRADING_FAILED, CardStatus.REVIEWED}
)


def _check_tables() -> None:
    for name, table in (("success", SUCCESS_TRANSITIONS), ("failure", FAILURE_TRANSITIONS)):
        if set(table) != AUTO_DISPATCH_STATES:
            missing = sorted(s.value for s in AUTO_DISPATCH_STATES - set(table))
            raise RuntimeError(f"{name} transition table is missing statuses: {missing}")
    uncovered = set(CardStatus) - AUTO_DISPATCH_STATES - RESTING_STATES
    if uncovered:
        raise RuntimeError(f"Statuses with no transition rules: {sorted(s.value for s in uncovered)}")


_check_tables()


# =============================================================================
# APPLY
# =============================================================================


def resolve_grade_name(grade: int, grade_name: str | None = None) -> str:
    return grade_name or GRADE_NAMES[grade]


def apply_event(card: Card, event: CardEvent) -> Card:
    """
    Return the card after `event`.

    Raises:
        InvalidTransitionError: If the event is not legal from card.status
        KnownError: If a manual grade is outside 1-10
    """
    if isinstance(event, StageSucceeded):
        return _stage_succeeded(card, event)
    if isinstance(event, StageFailed):
        return _stage_failed(card, event)

    if isinstance(event, Accept):
        _require(card, REVIEWABLE_STATES, "accept")
        _require_grade(card, "accept")
        return _user_move(card, CardStatus.GENERATING_SUMMARY)

    if isinstance(event, Challenge):
        _require(card, REVIEWABLE_STATES, "challenge")
        _require_grade(card, "challenge")
        return _user_move(card, CardStatus.CHALLENGING, pending_direction=event.direction)

    if isinstance(event, ManualOverride):
        if not MIN_GRADE <= event.grade <= MAX_GRADE:
            raise KnownError(
                kind=FailureKind.INVALID_INPUT,
                message=f"Grade must be between {MIN_GRADE} and {MAX_GRADE}, got {event.grade}.",
            )
        _require(card, REVIEWABLE_STATES, "override the grade of")
        return _user_move(
            card,
            CardStatus.REGENERATING_SUMMARY,
            overall_grade=event.grade,
            grade_name=resolve_grade_name(event.grade, event.grade_name),
        )

    if isinstance(event, Retry):
        _require(card, FAILURE_STATES, "retry")
        return _user_move(card, CardStatus.GRADING)

    if isinstance(event, RequestValuation):
        _require(card, frozenset({CardStatus.REVIEWED}), "request a valuation for")
        _require_grade(card, "request a valuation for")
        return _user_move(card, CardStatus.FETCHING_VALUE)

    raise TypeError(f"Unknown card event: {event!r}")


def _require(card: Card, allowed: frozenset[CardStatus], action: str) -> None:
    if card.status not in allowed:
        raise InvalidTransitionError(card.id, card.status, action)


def _require_grade(card: Card, action: str) -> None:
    if card.overall_grade is None:
        raise InvalidTransitionError(
            card.id, card.status, action, reason="The card has no grade yet."
        )


def _user_move(card: Card, status: CardStatus, **changes: Any) -> Card:
    updates: dict[str, Any] = {
        "status": status,
        "error_message": None,
        "error_kind": None,
        "pending_direction": None,
        "is_dirty": True,
    }
    updates.update(changes)
    return card.with_updates(**updates)


def _stage_succeeded(card: Card, event: StageSucceeded) -> Card:
    if card.status not in SUCCESS_TRANSITIONS:
        raise InvalidTransitionError(card.id, card.status, "complete a stage for")

    changes = dict(event.changes)
    changes.update(
        status=SUCCESS_TRANSITIONS[card.status],
        error_message=None,
        error_kind=None,
        pending_direction=None,
        is_dirty=True,
    )
    if card.status is CardStatus.FETCHING_VALUE:
        changes["valuation_error"] = None
    return card.with_updates(**changes)


def _stage_failed(card: Card, event: StageFailed) -> Card:
    if card.status not in FAILURE_TRANSITIONS:
        raise InvalidTransitionError(card.id, card.status, "fail a stage for")

    target = FAILURE_TRANSITIONS[card.status]
    if card.status is CardStatus.FETCHING_VALUE:
        logger.info(
            "VALUATION_FAILURE_ABSORBED",
            extra={"card_id": card.id, "kind": event.kind.value},
        )
        return card.with_updates(
            status=target,
            valuation_error=event.message,
            error_message=None,
            error_kind=None,
            is_dirty=True,
        )

    return card.with_updates(
        status=target,
        error_message=event.message,
        error_kind=event.kind,
        pending_direction=None,
        is_dirty=True,
    )
