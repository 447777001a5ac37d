"""Tests for the collection sync job."""

from collections.abc import Sequence
from unittest.mock import patch

import pytest

from gradeforge.config import settings
from gradeforge.db.operations import load_cards, upsert_cards
from gradeforge.jobs.sync_collection import run_sync
from gradeforge.models.card import Card, CardStatus
from gradeforge.stores.base import RemoteStoreError

JOB = "gradeforge.jobs.sync_collection"


class FakeDrive:
    """Stands in for DriveCollectionStore; shared across instances."""

    cards: list[Card] = []
    saves: list[list[Card]] = []
    load_error: Exception | None = None

    def __init__(self, token_provider) -> None:
        self.token_provider = token_provider

    async def load(self) -> tuple[str | None, list[Card]]:
        if FakeDrive.load_error is not None:
            raise FakeDrive.load_error
        return "remote-file", list(FakeDrive.cards)

    async def save(self, handle: str | None, cards: Sequence[Card]) -> str:
        FakeDrive.saves.append(list(cards))
        return handle or "remote-file"


@pytest.fixture
def fake_drive():
    FakeDrive.cards = []
    FakeDrive.saves = []
    FakeDrive.load_error = None
    return FakeDrive


@pytest.fixture
def job_env(snapshot_sessions, fake_drive):
    """Point the job at the test database and the fake remote store."""
    with (
        patch(f"{JOB}.init_db"),
        patch(f"{JOB}.session_factory", snapshot_sessions),
        patch(f"{JOB}.DriveCollectionStore", fake_drive),
        patch.object(settings, "google_access_token", "token"),
        patch.object(settings, "sheet_url", ""),
    ):
        yield snapshot_sessions


def stored(sessions) -> list[Card]:
    with sessions() as session:
        return load_cards(session)


class TestRunSync:
    async def test_merges_remote_into_local(
        self, job_env, fake_drive, make_card, graded_fields
    ) -> None:
        """Local and remote cards end up in both places."""
        local = make_card(status=CardStatus.REVIEWED, **graded_fields)
        remote = make_card(status=CardStatus.NEEDS_REVIEW, name="Barry Bonds")
        with job_env() as session:
            upsert_cards(session, [local])
            session.commit()
        fake_drive.cards = [remote]

        results = await run_sync()

        assert results["local"] == 1
        assert results["remote"] == 1
        assert results["written"] == 2
        assert {c.id for c in stored(job_env)} == {local.id, remote.id}
        assert len(fake_drive.saves) == 1
        assert len(fake_drive.saves[0]) == 2

    async def test_recovers_interrupted_cards(self, job_env, make_card, graded_fields) -> None:
        stuck = make_card(status=CardStatus.GENERATING_SUMMARY, **graded_fields)
        with job_env() as session:
            upsert_cards(session, [stuck])
            session.commit()

        results = await run_sync()

        assert results["recovered"] == 1
        assert stored(job_env)[0].status is CardStatus.GRADING_FAILED

    async def test_no_push(self, job_env, fake_drive, make_card) -> None:
        fake_drive.cards = [make_card(status=CardStatus.REVIEWED, name="X")]

        await run_sync(push_remote=False)

        assert fake_drive.saves == []
        assert len(stored(job_env)) == 1

    async def test_remote_failure_keeps_local(self, job_env, fake_drive, make_card) -> None:
        """A failed remote load still writes the local snapshot, but never pushes."""
        card = make_card(status=CardStatus.REVIEWED, name="X")
        with job_env() as session:
            upsert_cards(session, [card])
            session.commit()
        fake_drive.load_error = RemoteStoreError("load the collection", "Invalid Credentials", 401)

        results = await run_sync()

        assert results["remote"] == 0
        assert results["written"] == 1
        assert fake_drive.saves == []

    async def test_without_token(self, job_env, fake_drive) -> None:
        with patch.object(settings, "google_access_token", ""):
            results = await run_sync(import_sheet=True)

        assert results["remote"] == 0
        assert results["sheet"] == 0
        assert fake_drive.saves == []
