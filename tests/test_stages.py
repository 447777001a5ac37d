"""Tests for the stage handlers."""

import pytest

from gradeforge.models.analysis import CardIdentification
from gradeforge.models.card import AUTO_DISPATCH_STATES, CardStatus, ChallengeDirection
from gradeforge.models.failure import KnownError
from gradeforge.pipeline.stages import (
    STAGE_HANDLERS,
    challenge_stage,
    grade_stage,
    justify_stage,
    summary_stage,
    valuation_stage,
)


class TestStageTable:
    def test_one_handler_per_auto_status(self) -> None:
        assert set(STAGE_HANDLERS) == AUTO_DISPATCH_STATES


class TestGradeStage:
    async def test_identifies_and_grades(self, make_card, fake_service) -> None:
        """Grading fills identification and grade fields."""
        card = make_card()

        changes = await grade_stage(card, fake_service)

        assert changes["name"] == "Ken Griffey Jr."
        assert changes["set_name"] == "Upper Deck"
        assert changes["overall_grade"] == 8
        assert changes["grade_name"] == "NM-MT"
        assert changes["details"].centering.grade == 8
        assert [op for op, _ in fake_service.calls] == ["identify", "grade"]

    async def test_resets_later_stage_fields(self, make_card, fake_service) -> None:
        """A full re-grade drops the summary and valuation of the previous grade."""
        card = make_card(summary="Old summary", valuation_error="Old note")

        changes = await grade_stage(card, fake_service)

        assert changes["summary"] is None
        assert changes["market_value"] is None
        assert changes["valuation_error"] is None

    async def test_unreadable_fields_become_none(self, make_card, fake_service) -> None:
        fake_service.identification = CardIdentification(name="Unknown Rookie")

        changes = await grade_stage(make_card(), fake_service)

        assert changes["name"] == "Unknown Rookie"
        assert changes["team"] is None
        assert changes["year"] is None


class TestChallengeStage:
    async def test_uses_pending_direction(self, make_card, fake_service, graded_fields) -> None:
        card = make_card(
            status=CardStatus.CHALLENGING,
            pending_direction=ChallengeDirection.HIGHER,
            **graded_fields,
        )

        changes = await challenge_stage(card, fake_service)

        assert changes["overall_grade"] == 9
        assert changes["grade_name"] == "MINT"
        assert "higher" in changes["summary"]

    async def test_missing_direction_fails(self, make_card, fake_service) -> None:
        card = make_card(status=CardStatus.CHALLENGING)

        with pytest.raises(KnownError):
            await challenge_stage(card, fake_service)

        assert fake_service.calls == []


class TestSummaryStages:
    async def test_summary(self, make_card, fake_service, graded_fields) -> None:
        card = make_card(status=CardStatus.GENERATING_SUMMARY, **graded_fields)

        changes = await summary_stage(card, fake_service)

        assert changes == {"summary": fake_service.summary}

    async def test_justify_keeps_manual_grade(self, make_card, fake_service) -> None:
        """Justification returns details and summary but never a grade."""
        card = make_card(
            status=CardStatus.REGENERATING_SUMMARY, overall_grade=6, grade_name="EX-MT"
        )

        changes = await justify_stage(card, fake_service)

        assert set(changes) == {"details", "summary"}
        assert changes["details"].corners.grade == 6
        assert "EX-MT" in changes["summary"]

    async def test_justify_without_grade_fails(self, make_card, fake_service) -> None:
        card = make_card(status=CardStatus.REGENERATING_SUMMARY)

        with pytest.raises(KnownError):
            await justify_stage(card, fake_service)


class TestValuationStage:
    async def test_returns_market_value(self, make_card, fake_service, graded_fields) -> None:
        card = make_card(status=CardStatus.FETCHING_VALUE, **graded_fields)

        changes = await valuation_stage(card, fake_service)

        assert changes["market_value"].average_price == 120.0
