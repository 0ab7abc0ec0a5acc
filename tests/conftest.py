"""Pytest configuration and fixtures."""

from datetime import datetime, timedelta

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import background_runs.models  # noqa: F401
from background_runs.database import Base
from background_runs.executors.base import ExecutorRegistry
from background_runs.models.run import BackgroundRun
from background_runs.services.telemetry import RecordingTelemetrySink, TelemetryEmitter

T0 = datetime(2025, 1, 1, 12, 0, 0)


class FakeClock:
    """Manually advanced clock returning naive UTC datetimes."""

    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


class CallableExecutor:
    """Executor backed by a plain function; counts calls."""

    def __init__(self, fn):
        self.fn = fn
        self.calls = 0

    def execute(self, context):
        self.calls += 1
        return self.fn(context)


@pytest.fixture(scope="function")
def session_factory():
    """Session factory bound to a fresh in-memory database."""
    # One shared connection so every session (and TestClient threads) sees the same data
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)

    yield sessionmaker(autocommit=False, autoflush=False, bind=engine)

    engine.dispose()


@pytest.fixture(scope="function")
def test_db(session_factory):
    """Create a test database session for each test."""
    db = session_factory()

    yield db

    db.close()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def telemetry_sink():
    return RecordingTelemetrySink()


@pytest.fixture
def telemetry(telemetry_sink):
    """Synchronous emitter so tests can assert on recorded events directly."""
    return TelemetryEmitter(telemetry_sink, background=False)


@pytest.fixture
def registry():
    return ExecutorRegistry()


@pytest.fixture
def make_run(test_db, clock):
    """Factory inserting a run with sensible defaults."""

    def _make_run(**overrides) -> BackgroundRun:
        values = {
            "project_id": "project-1",
            "user_id": "user-1",
            "run_type": "test",
            "status": "queued",
            "input": {},
            "run_metadata": {},
            "retryable": True,
            "attempt_count": 0,
            "max_attempts": 3,
            "cancel_requested": False,
            "progress": 0,
            "created_at": clock(),
            "updated_at": clock(),
        }
        values.update(overrides)
        run = BackgroundRun(**values)
        test_db.add(run)
        test_db.commit()
        test_db.refresh(run)
        return run

    return _make_run
