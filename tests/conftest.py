"""Shared pytest fixtures for fantasy-sync tests."""
import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

os.environ.setdefault("ENVIRONMENT", "test")

# Add project root to Python path
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from fantasy_sync.models import Base
from fantasy_sync.services.sync.conditions import FixtureInfo, RoundInfo
from fantasy_sync.services.sync.handlers import HandlerRegistry
from fantasy_sync.services.sync.task_queue import TaskQueue
from fantasy_sync.services.sync.task_types import Outcome, TaskInvocation, TaskType

UTC = timezone.utc

# Saturday of round 15, 2025-26 season
MATCHDAY = datetime(2025, 11, 29, tzinfo=UTC)


class FakeClock:
    """Mutable clock injected into the queue so retries and delays are deterministic."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeRoundReader:
    """In-memory RoundReader."""

    def __init__(
        self,
        current_round: Optional[RoundInfo] = None,
        fixtures: Optional[List[FixtureInfo]] = None,
        error: Optional[Exception] = None,
    ):
        self.current_round = current_round
        self.fixtures = list(fixtures or [])
        self.error = error
        self.round_calls = 0
        self.fixture_calls = 0

    async def get_current_round(self) -> Optional[RoundInfo]:
        self.round_calls += 1
        if self.error:
            raise self.error
        return self.current_round

    async def get_fixtures_for_round(self, round_id: int) -> List[FixtureInfo]:
        self.fixture_calls += 1
        return list(self.fixtures)


class RecordingHandlers:
    """Builds a complete registry whose handlers record every invocation."""

    def __init__(self):
        self.calls: List[TaskInvocation] = []

    def handler(self, outcome_for: Optional[Callable[[TaskInvocation], Any]] = None):
        async def handle(invocation: TaskInvocation):
            self.calls.append(invocation)
            if outcome_for is not None:
                return outcome_for(invocation)
            return None
        return handle

    def registry(self, overrides: Optional[Dict[TaskType, Any]] = None) -> HandlerRegistry:
        overrides = overrides or {}
        return HandlerRegistry({
            task_type: overrides.get(task_type) or self.handler()
            for task_type in TaskType
        })

    def calls_for(self, task_type: TaskType) -> List[TaskInvocation]:
        return [c for c in self.calls if c.task_type is task_type]


def round_15_fixtures(finished: Iterable[bool] = (True, True, False)) -> List[FixtureInfo]:
    """Three Saturday kickoffs: 12:30, 15:00, 17:30 UTC."""
    kickoffs = [
        MATCHDAY.replace(hour=12, minute=30),
        MATCHDAY.replace(hour=15, minute=0),
        MATCHDAY.replace(hour=17, minute=30),
    ]
    return [FixtureInfo(kickoff=k, finished=f) for k, f in zip(kickoffs, finished)]


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(MATCHDAY.replace(hour=9))


@pytest.fixture(scope="function")
def session_factory():
    """Session factory over a fresh in-memory database shared by all sessions."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine, checkfirst=True)

    yield sessionmaker(bind=engine, autoflush=False)

    engine.dispose()


@pytest.fixture
def queue(session_factory, clock) -> TaskQueue:
    return TaskQueue(
        session_factory,
        default_attempts=3,
        backoff_base_seconds=60,
        default_priority=5,
        clock=clock,
    )


@pytest.fixture
def round_reader() -> FakeRoundReader:
    return FakeRoundReader(
        current_round=RoundInfo(id=15, deadline=MATCHDAY.replace(hour=11)),
        fixtures=round_15_fixtures(),
    )


@pytest.fixture
def handlers() -> RecordingHandlers:
    return RecordingHandlers()


def failing(error: str = "provider unavailable") -> Callable[[TaskInvocation], Outcome]:
    return lambda invocation: Outcome.failure(error)
