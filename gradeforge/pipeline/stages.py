"""
Stage handlers.

One async function per auto-dispatch status. Each calls the analysis service
and returns the field changes to apply on success; it never touches status
or error fields, which belong to the state machine.
"""

from collections.abc import Awaitable, Callable
from typing import Any

from gradeforge.models.card import AUTO_DISPATCH_STATES, Card, CardStatus
from gradeforge.models.failure import FailureKind, KnownError
from gradeforge.services.analysis_service import AnalysisService

StageChanges = dict[str, Any]
StageHandler = Callable[[Card, AnalysisService], Awaitable[StageChanges]]


def _missing(card: Card, what: str) -> KnownError:
    return KnownError(
        kind=FailureKind.INVALID_INPUT,
        message=f"Card '{card.id}' has no {what}.",
    )


async def grade_stage(card: Card, service: AnalysisService) -> StageChanges:
    """Identify and grade from scratch. Later-stage results are reset."""
    identification = await service.identify(card)
    result = await service.grade(card)
    return {
        "name": identification.name or None,
        "team": identification.team or None,
        "set_name": identification.set_name or None,
        "edition": identification.edition or None,
        "card_number": identification.card_number or None,
        "company": identification.company or None,
        "year": identification.year or None,
        "overall_grade": result.overall_grade,
        "grade_name": result.grade_name,
        "details": result.details,
        "summary": None,
        "market_value": None,
        "valuation_error": None,
    }


async def challenge_stage(card: Card, service: AnalysisService) -> StageChanges:
    if card.pending_direction is None:
        raise _missing(card, "challenge direction")
    result = await service.challenge(card, card.pending_direction)
    return {
        "overall_grade": result.overall_grade,
        "grade_name": result.grade_name,
        "details": result.details,
        "summary": result.summary,
    }


async def summary_stage(card: Card, service: AnalysisService) -> StageChanges:
    return {"summary": await service.summarize(card)}


async def justify_stage(card: Card, service: AnalysisService) -> StageChanges:
    """Explain a manually assigned grade; the grade itself is left alone."""
    if card.overall_grade is None or not card.grade_name:
        raise _missing(card, "grade to justify")
    result = await service.justify_grade(card, card.overall_grade, card.grade_name)
    return {"details": result.details, "summary": result.summary}


async def valuation_stage(card: Card, service: AnalysisService) -> StageChanges:
    return {"market_value": await service.market_value(card)}


STAGE_HANDLERS: dict[CardStatus, StageHandler] = {
    CardStatus.GRADING: grade_stage,
    CardStatus.CHALLENGING: challenge_stage,
    CardStatus.GENERATING_SUMMARY: summary_stage,
    CardStatus.REGENERATING_SUMMARY: justify_stage,
    CardStatus.FETCHING_VALUE: valuation_stage,
}

if set(STAGE_HANDLERS) != AUTO_DISPATCH_STATES:
    raise RuntimeError(
        "Every auto-dispatch status needs exactly one stage handler: "
        f"{sorted(s.value for s in AUTO_DISPATCH_STATES ^ set(STAGE_HANDLERS))}"
    )
