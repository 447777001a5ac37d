"""
Card Models.

A Card is the unit of work for the grading pipeline and the unit of
persistence for every store (local snapshot, remote blob, spreadsheet).

INVARIANTS:
- Cards are frozen; every change produces a new Card (copy-on-write)
- status is always a CardStatus member
- error_message is present if and only if status is a failure status
- JSON form is camelCase so existing collection blobs load unchanged
"""

import logging
import time
import uuid
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from gradeforge.config import GRADING_SYSTEM
from gradeforge.models.failure import FailureKind

logger = logging.getLogger(__name__)


class CardStatus(str, Enum):
    """Lifecycle status of a card."""

    GRADING = "grading"
    NEEDS_REVIEW = "needs_review"
    GRADING_FAILED = "grading_failed"
    GENERATING_SUMMARY = "generating_summary"
    FETCHING_VALUE = "fetching_value"
    CHALLENGING = "challenging"
    REGENERATING_SUMMARY = "regenerating_summary"
    REVIEWED = "reviewed"


# Statuses the scheduler picks up without user action
AUTO_DISPATCH_STATES: frozenset[CardStatus] = frozenset(
    {
        CardStatus.GRADING,
        CardStatus.CHALLENGING,
        CardStatus.GENERATING_SUMMARY,
        CardStatus.REGENERATING_SUMMARY,
        CardStatus.FETCHING_VALUE,
    }
)

FAILURE_STATES: frozenset[CardStatus] = frozenset({CardStatus.GRADING_FAILED})

# Statuses from which the user may accept, challenge or override a grade
REVIEWABLE_STATES: frozenset[CardStatus] = frozenset(
    {CardStatus.NEEDS_REVIEW, CardStatus.GRADING_FAILED}
)


class ChallengeDirection(str, Enum):
    """Which way the user believes the grade should move."""

    HIGHER = "higher"
    LOWER = "lower"


class CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
        coerce_numbers_to_str=True,
    )


class SubGrade(CamelModel):
    """One graded category: whole-number grade plus grader notes."""

    grade: int
    notes: str = ""


class EvaluationDetails(CamelModel):
    """The five graded categories."""

    centering: SubGrade
    corners: SubGrade
    edges: SubGrade
    surface: SubGrade
    print_quality: SubGrade


class SourceLink(CamelModel):
    """A web page cited by a market valuation."""

    title: str
    uri: str


class MarketValue(CamelModel):
    """Estimated market value from recent sales."""

    average_price: float = 0.0
    min_price: float = 0.0
    max_price: float = 0.0
    currency: str = "USD"
    last_sold_date: str | None = None
    notes: str | None = None
    source_urls: tuple[SourceLink, ...] = ()


class Card(CamelModel):
    """
    A submitted card and everything the pipeline has learned about it.

    Attributes:
        id: Stable identifier, never reassigned
        status: Lifecycle status
        created_at: Epoch milliseconds at intake (serialised as "timestamp")
        is_dirty: True until the current version is confirmed in the remote store
        error_message: Failure explanation, only while in a failure status
        error_kind: Classification of error_message
        pending_direction: Challenge direction, only while challenging
        sheet_synced: Row already appended to the spreadsheet
    """

    id: str
    status: CardStatus
    created_at: int = Field(alias="timestamp")

    front_image: str = ""
    back_image: str = ""

    # Identification
    name: str | None = None
    team: str | None = None
    set_name: str | None = Field(default=None, alias="set")
    edition: str | None = None
    card_number: str | None = None
    company: str | None = None
    year: str | None = None

    # Grading
    overall_grade: int | None = None
    grade_name: str | None = None
    details: EvaluationDetails | None = None

    summary: str | None = None

    market_value: MarketValue | None = None
    valuation_error: str | None = None

    error_message: str | None = None
    error_kind: FailureKind | None = None
    pending_direction: ChallengeDirection | None = Field(default=None, alias="challengeDirection")

    is_dirty: bool = False
    sheet_synced: bool = Field(default=False, alias="isSynced")
    scanned_by: str | None = None
    grading_system: str = GRADING_SYSTEM

    @property
    def is_failed(self) -> bool:
        return self.status in FAILURE_STATES

    @property
    def is_auto_dispatch(self) -> bool:
        return self.status in AUTO_DISPATCH_STATES

    @property
    def has_images(self) -> bool:
        return bool(self.front_image and self.back_image)

    def with_updates(self, **changes: Any) -> "Card":
        """Return a copy with the given fields replaced."""
        return self.model_copy(update=changes)

    def to_record(self) -> dict[str, Any]:
        """Serialise to the camelCase JSON record used by every store."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)

    def display_title(self) -> str:
        """Human-readable one-line description, e.g. '1990 Topps Ken Griffey Jr. #336'."""
        parts = [self.year, self.company, self.name]
        title = " ".join(p for p in parts if p)
        if self.card_number:
            title = f"{title} #{self.card_number}"
        return title or self.id


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


def generate_card_id() -> str:
    return uuid.uuid4().hex


def new_card(
    front_image: str,
    back_image: str,
    scanned_by: str | None = None,
    created_at: int | None = None,
) -> Card:
    """Create a freshly submitted card in the first pipeline status."""
    return Card(
        id=generate_card_id(),
        status=CardStatus.GRADING,
        created_at=created_at if created_at is not None else now_ms(),
        front_image=front_image,
        back_image=back_image,
        scanned_by=scanned_by,
        is_dirty=True,
    )


GENERIC_FAILURE_MESSAGE = "Grading failed for an unknown reason. Retry or set the grade manually."


def normalize_card_record(raw: Any, default_timestamp: int | None = None) -> Card | None:
    """
    Build a Card from a stored record, filling gaps left by older data.

    - missing id: a new one is generated
    - missing status: reviewed if graded, otherwise needs_review
    - missing timestamp: default_timestamp (or now)
    - missing isSynced: treated as already synced
    - error fields are forced to agree with the status

    Returns None (with a warning) for records that cannot be parsed.
    """
    if not isinstance(raw, dict):
        logger.warning("CARD_RECORD_SKIPPED", extra={"reason": "not an object"})
        return None

    record = dict(raw)
    if not record.get("id"):
        record["id"] = generate_card_id()
    if not record.get("status"):
        graded = record.get("overallGrade") is not None
        record["status"] = (CardStatus.REVIEWED if graded else CardStatus.NEEDS_REVIEW).value
    if not record.get("timestamp"):
        record["timestamp"] = default_timestamp if default_timestamp is not None else now_ms()
    if not isinstance(record.get("isSynced"), bool):
        record["isSynced"] = True
    record["frontImage"] = record.get("frontImage") or ""
    record["backImage"] = record.get("backImage") or ""

    try:
        card = Card.model_validate(record)
    except ValidationError as e:
        logger.warning(
            "CARD_RECORD_SKIPPED",
            extra={"card_id": record.get("id"), "reason": str(e)},
        )
        return None

    return _enforce_error_invariant(card)


def _enforce_error_invariant(card: Card) -> Card:
    if card.is_failed:
        if card.error_message:
            return card
        return card.with_updates(
            error_message=GENERIC_FAILURE_MESSAGE,
            error_kind=card.error_kind or FailureKind.UNKNOWN,
        )

    if card.error_message is None and card.error_kind is None:
        return card

    # Older records kept a note on reviewed cards whose valuation failed
    changes: dict[str, Any] = {"error_message": None, "error_kind": None}
    if card.status == CardStatus.REVIEWED and card.error_message and not card.valuation_error:
        changes["valuation_error"] = card.error_message
    return card.with_updates(**changes)
