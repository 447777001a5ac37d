"""
Card API endpoints.

Intake, observation and the user transitions. Illegal transitions and unknown
ids raise KnownError subclasses, rendered by the application's error handler.
"""

from typing import Annotated

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, Field

from gradeforge.api.dependencies import get_orchestrator
from gradeforge.config import MAX_GRADE, MIN_GRADE
from gradeforge.models.card import Card, CardStatus, ChallengeDirection
from gradeforge.services.orchestrator import CardOrchestrator

router = APIRouter(prefix="/cards", tags=["cards"])

Orchestrator = Annotated[CardOrchestrator, Depends(get_orchestrator)]


class SubmitCardRequest(BaseModel):
    """Request model for submitting a card photographed front and back."""

    front_image: str = Field(
        ...,
        min_length=1,
        description="Front photo as a data URL or raw base64 JPEG",
    )
    back_image: str = Field(
        ...,
        min_length=1,
        description="Back photo as a data URL or raw base64 JPEG",
    )
    scanned_by: str | None = Field(default=None, description="Optional submitter label")


class ChallengeRequest(BaseModel):
    """Request model for challenging a grade."""

    direction: ChallengeDirection = Field(
        ...,
        description="Whether the grade should be higher or lower",
    )


class OverrideRequest(BaseModel):
    """Request model for setting a grade manually."""

    grade: int = Field(..., ge=MIN_GRADE, le=MAX_GRADE, description="Whole-number grade")
    grade_name: str | None = Field(
        default=None,
        description="Grade label; defaults to the standard name for the grade",
        examples=["NM-MT"],
    )


class CardListResponse(BaseModel):
    """Response model for the collection."""

    cards: list[Card] = Field(default_factory=list)
    total: int = 0
    by_status: dict[str, int] = Field(default_factory=dict)


class DeleteResponse(BaseModel):
    """Response model for delete operations."""

    card_id: str
    deleted: bool


@router.get("", response_model=CardListResponse)
async def list_cards(
    orchestrator: Orchestrator,
    card_status: Annotated[CardStatus | None, Query(alias="status")] = None,
) -> CardListResponse:
    """
    List cards, newest first.

    Optionally filtered by status.
    """
    cards = orchestrator.cards()
    by_status: dict[str, int] = {}
    for card in cards:
        by_status[card.status.value] = by_status.get(card.status.value, 0) + 1
    if card_status is not None:
        cards = [c for c in cards if c.status is card_status]
    return CardListResponse(cards=cards, total=len(cards), by_status=by_status)


@router.post("", response_model=Card, status_code=status.HTTP_201_CREATED)
async def submit_card(request: SubmitCardRequest, orchestrator: Orchestrator) -> Card:
    """Submit a card for grading. Processing starts in the background."""
    return orchestrator.submit(request.front_image, request.back_image, request.scanned_by)


@router.get("/{card_id}", response_model=Card)
async def get_card(card_id: str, orchestrator: Orchestrator) -> Card:
    return orchestrator.get(card_id)


@router.post("/{card_id}/accept", response_model=Card)
async def accept_card(card_id: str, orchestrator: Orchestrator) -> Card:
    """Accept the grade; the summary and valuation follow automatically."""
    return orchestrator.accept(card_id)


@router.post("/{card_id}/challenge", response_model=Card)
async def challenge_card(
    card_id: str, request: ChallengeRequest, orchestrator: Orchestrator
) -> Card:
    """Ask for a re-grade biased in the given direction."""
    return orchestrator.challenge(card_id, request.direction)


@router.post("/{card_id}/override", response_model=Card)
async def override_card(card_id: str, request: OverrideRequest, orchestrator: Orchestrator) -> Card:
    """Set the grade manually; a justification report is generated for it."""
    return orchestrator.manual_override(card_id, request.grade, request.grade_name)


@router.post("/{card_id}/retry", response_model=Card)
async def retry_card(card_id: str, orchestrator: Orchestrator) -> Card:
    """Grade a failed card again from scratch."""
    return orchestrator.retry(card_id)


@router.post("/{card_id}/valuation", response_model=Card)
async def request_valuation(card_id: str, orchestrator: Orchestrator) -> Card:
    """Fetch the market value of a reviewed card again."""
    return orchestrator.request_valuation(card_id)


@router.delete("/{card_id}", response_model=DeleteResponse)
async def delete_card(card_id: str, orchestrator: Orchestrator) -> DeleteResponse:
    orchestrator.delete(card_id)
    return DeleteResponse(card_id=card_id, deleted=True)
