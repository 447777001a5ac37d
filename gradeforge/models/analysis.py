"""
Analysis service response models.

Parsed from the JSON objects the analysis model returns. Field names follow
the camelCase keys the prompts ask for.
"""

from typing import Any

from pydantic import Field, model_validator

from gradeforge.config import GRADE_NAMES, MAX_GRADE, MIN_GRADE
from gradeforge.models.card import CamelModel, EvaluationDetails


class CardIdentification(CamelModel):
    """What the card is. Unreadable fields come back empty."""

    name: str = ""
    team: str = ""
    set_name: str = Field(default="", alias="set")
    edition: str = ""
    card_number: str = ""
    company: str = ""
    year: str = ""


class _GradedResult(CamelModel):
    overall_grade: int = Field(ge=MIN_GRADE, le=MAX_GRADE)
    grade_name: str = ""

    @model_validator(mode="before")
    @classmethod
    def _default_grade_name(cls, data: Any) -> Any:
        if not isinstance(data, dict) or data.get("gradeName") or data.get("grade_name"):
            return data
        grade = data.get("overallGrade", data.get("overall_grade"))
        if isinstance(grade, int) and grade in GRADE_NAMES:
            return {**data, "gradeName": GRADE_NAMES[grade]}
        return data


class GradingResult(_GradedResult):
    """Subgrades plus the overall grade, without narrative."""

    details: EvaluationDetails


class ChallengeResult(_GradedResult):
    """Re-grade after a challenge, with the grader's reply as summary."""

    details: EvaluationDetails
    summary: str


class JustificationResult(CamelModel):
    """Report supporting a manually assigned grade."""

    details: EvaluationDetails
    summary: str


class SummaryResult(CamelModel):
    summary: str


class ValuationPayload(CamelModel):
    """Price fields as written by the model, before sources are attached."""

    average_price: float = 0.0
    min_price: float = 0.0
    max_price: float = 0.0
    currency: str = "USD"
    last_sold_date: str | None = None
    notes: str | None = None
