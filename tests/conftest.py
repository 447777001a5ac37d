import asyncio
from collections.abc import AsyncGenerator, Callable, Generator
from typing import Any

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from gradeforge.api.dependencies import get_orchestrator
from gradeforge.db.database import drop_db, get_session, init_db
from gradeforge.main import app
from gradeforge.models.analysis import (
    CardIdentification,
    ChallengeResult,
    GradingResult,
    JustificationResult,
)
from gradeforge.models.card import (
    Card,
    CardStatus,
    ChallengeDirection,
    EvaluationDetails,
    MarketValue,
    SubGrade,
)
from gradeforge.services.analysis_service import classify_analysis_error
from gradeforge.services.orchestrator import CardOrchestrator
from gradeforge.services.persistence import LocalSnapshot
from gradeforge.services.retry import RetryExecutor, RetryPolicy

# base64 of "front" / "back"
FRONT_IMAGE = "data:image/jpeg;base64,ZnJvbnQ="
BACK_IMAGE = "data:image/jpeg;base64,YmFjaw=="


def make_details(grade: int = 8) -> EvaluationDetails:
    sub = SubGrade(grade=grade, notes="Clean")
    return EvaluationDetails(
        centering=sub, corners=sub, edges=sub, surface=sub, print_quality=sub
    )


class FakeAnalysisService:
    """
    In-memory AnalysisService.

    Queue exceptions per operation with `fail()`; set `gate` to hold every
    call until the event is set, or put an event in `card_gates` to hold only
    that card's calls.
    """

    def __init__(self) -> None:
        self.calls: list[tuple[str, str]] = []
        self.failures: dict[str, list[BaseException]] = {}
        self.gate: asyncio.Event | None = None
        self.card_gates: dict[str, asyncio.Event] = {}
        self.active = 0
        self.max_active = 0

        self.identification = CardIdentification(
            name="Ken Griffey Jr.",
            team="Seattle Mariners",
            set_name="Upper Deck",
            card_number="1",
            company="Upper Deck",
            year="1989",
        )
        self.grading = GradingResult(overall_grade=8, grade_name="NM-MT", details=make_details(8))
        self.summary = "A sharp example with clean edges."
        self.value = MarketValue(average_price=120.0, min_price=95.0, max_price=150.0)

    def fail(self, operation: str, *errors: BaseException) -> None:
        self.failures.setdefault(operation, []).extend(errors)

    def count(self, operation: str) -> int:
        return sum(1 for name, _ in self.calls if name == operation)

    def count_for(self, card_id: str) -> int:
        return sum(1 for _, called_id in self.calls if called_id == card_id)

    async def _call(self, operation: str, card: Card) -> None:
        self.calls.append((operation, card.id))
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.gate is not None:
                await self.gate.wait()
            card_gate = self.card_gates.get(card.id)
            if card_gate is not None:
                await card_gate.wait()
            pending = self.failures.get(operation)
            if pending:
                raise pending.pop(0)
        finally:
            self.active -= 1

    async def identify(self, card: Card) -> CardIdentification:
        await self._call("identify", card)
        return self.identification

    async def grade(self, card: Card) -> GradingResult:
        await self._call("grade", card)
        return self.grading

    async def summarize(self, card: Card) -> str:
        await self._call("summarize", card)
        return self.summary

    async def challenge(self, card: Card, direction: ChallengeDirection) -> ChallengeResult:
        await self._call("challenge", card)
        grade = 9 if direction is ChallengeDirection.HIGHER else 7
        return ChallengeResult(
            overall_grade=grade,
            details=make_details(grade),
            summary=f"Re-examined after a request for a {direction.value} grade.",
        )

    async def justify_grade(self, card: Card, grade: int, grade_name: str) -> JustificationResult:
        await self._call("justify_grade", card)
        return JustificationResult(
            details=make_details(grade),
            summary=f"The card supports a {grade_name} grade.",
        )

    async def market_value(self, card: Card) -> MarketValue:
        await self._call("market_value", card)
        return self.value


class RecordingSleep:
    """Stand-in for asyncio.sleep that records delays and yields once."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        await asyncio.sleep(0)


@pytest.fixture
def make_card() -> Callable[..., Card]:
    """Factory for cards; keyword arguments override any field."""
    counter = iter(range(1, 10_000))

    def factory(**overrides: Any) -> Card:
        n = next(counter)
        fields: dict[str, Any] = {
            "id": f"card-{n}",
            "status": CardStatus.GRADING,
            "created_at": 1_700_000_000_000 + n,
            "front_image": FRONT_IMAGE,
            "back_image": BACK_IMAGE,
        }
        fields.update(overrides)
        return Card(**fields)

    return factory


@pytest.fixture
def graded_fields() -> dict[str, Any]:
    """Fields of a card that has been identified and graded."""
    return {
        "name": "Ken Griffey Jr.",
        "year": "1989",
        "company": "Upper Deck",
        "card_number": "1",
        "overall_grade": 8,
        "grade_name": "NM-MT",
        "details": make_details(8),
    }


@pytest.fixture
def snapshot_engine() -> Generator[Engine, None, None]:
    """Create an in-memory SQLite engine shared across sessions."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(engine)
    yield engine
    drop_db(engine)
    engine.dispose()


@pytest.fixture
def snapshot_sessions(snapshot_engine: Engine) -> sessionmaker[Session]:
    return sessionmaker(snapshot_engine, class_=Session, expire_on_commit=False)


@pytest.fixture
def fake_service() -> FakeAnalysisService:
    return FakeAnalysisService()


@pytest.fixture
def fake_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def fast_executor(fake_sleep: RecordingSleep) -> RetryExecutor:
    """Executor with three attempts and no real delay."""
    policy = RetryPolicy(max_attempts=3, base_delay=0.0, max_delay=0.0, jitter=0.0)
    return RetryExecutor(classify_analysis_error, policy, sleep=fake_sleep)


@pytest.fixture
async def api_orchestrator(
    fake_service: FakeAnalysisService,
    fast_executor: RetryExecutor,
    snapshot_sessions: sessionmaker[Session],
) -> AsyncGenerator[CardOrchestrator, None]:
    """A started orchestrator on the in-memory snapshot database."""
    orchestrator = CardOrchestrator(
        fake_service,
        local=LocalSnapshot(snapshot_sessions),
        executor=fast_executor,
        concurrency_limit=2,
        poll_interval=0,
        save_delay=60.0,
    )
    await orchestrator.start()
    yield orchestrator
    await orchestrator.wait_idle()
    await orchestrator.stop()


@pytest.fixture
async def client(
    api_orchestrator: CardOrchestrator,
    snapshot_sessions: sessionmaker[Session],
) -> AsyncGenerator[AsyncClient, None]:
    """Provide an async test client with overridden dependencies."""

    def override_get_session() -> Generator[Session, None, None]:
        with snapshot_sessions() as session:
            yield session

    app.dependency_overrides[get_orchestrator] = lambda: api_orchestrator
    app.dependency_overrides[get_session] = override_get_session

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()
