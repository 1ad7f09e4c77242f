"""Test configuration."""
import os
import tempfile
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest
from dotenv import load_dotenv
from faker import Faker

# Set test environment before any imports
os.environ["ENV"] = "test"
_test_data_dir = tempfile.mkdtemp(prefix="tipsync-test-")
os.environ.setdefault("DATA_DIR", _test_data_dir)
os.environ.setdefault("DATABASE_URL", f"sqlite:///{Path(_test_data_dir) / 'tipsync.db'}")

# Load test environment variables
test_env_path = Path(__file__).parent.parent.parent.parent / ".env.test"
load_dotenv(test_env_path)

# Import after environment setup
from tipsync.config import ensure_directories  # noqa: E402
from tipsync.gateway.memory import InMemoryGateway  # noqa: E402
from tipsync.models.base import init_db, make_session_factory  # noqa: E402
from tipsync.models.domain import Category, Cycle, Item, new_id  # noqa: E402
from tipsync.services.local_store import LocalStore, TimerStateStore  # noqa: E402
from tipsync.services.reconciliation_service import ReconciliationEngine  # noqa: E402
from tipsync.services.room_service import RoomService  # noqa: E402
from tipsync.services.timer_service import DebouncedStateWriter, TimerStateMachine  # noqa: E402

fake = Faker()

NOW = datetime(2024, 3, 15, 9, 30, tzinfo=UTC)


class FakeMonotonic:
    """Monotonic clock advanced by hand."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeWallClock:
    """Wall clock advanced by hand."""

    def __init__(self, start: datetime = NOW):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture(autouse=True)
def setup_test_environment():
    """Set up test environment before each test."""
    ensure_directories()
    yield


@pytest.fixture
def session_factory(tmp_path):
    """Session factory bound to a fresh SQLite database."""
    factory = make_session_factory(f"sqlite:///{tmp_path / 'cache.db'}")
    init_db(bind=factory.kw["bind"])
    return factory


@pytest.fixture
def local_store(session_factory) -> LocalStore:
    return LocalStore(session_factory)


@pytest.fixture
def timer_store(tmp_path) -> TimerStateStore:
    return TimerStateStore(tmp_path / "timer_state.json")


@pytest.fixture
def monotonic() -> FakeMonotonic:
    return FakeMonotonic()


@pytest.fixture
def wall_clock() -> FakeWallClock:
    return FakeWallClock()


@pytest.fixture
def timer_writer(timer_store, monotonic) -> DebouncedStateWriter:
    return DebouncedStateWriter(timer_store, min_interval=0.5, clock=monotonic)


@pytest.fixture
def timer(timer_writer) -> TimerStateMachine:
    return TimerStateMachine(timer_writer)


@pytest.fixture
def engine(local_store, timer, wall_clock) -> ReconciliationEngine:
    """Engine with no remote store attached."""
    return ReconciliationEngine(local_store, timer, actor_id="device-a", tz=UTC, clock=wall_clock)


@pytest.fixture
def gateway() -> InMemoryGateway:
    return InMemoryGateway()


@pytest.fixture
def room(engine, gateway) -> RoomService:
    """Room service over an engine attached to an in-memory store."""
    engine.attach(gateway)
    return RoomService(engine, timer_enabled=True, timer_duration=900, snooze_duration=300)


@pytest.fixture
def make_cycle():
    """Factory for cycles."""
    def _make(number: int = 1, start: datetime = datetime(2024, 1, 1, tzinfo=UTC), **kwargs) -> Cycle:
        return Cycle(
            id=kwargs.pop("id", new_id()),
            number=number,
            patient_name=kwargs.pop("patient_name", fake.first_name()),
            start_date=start,
            challenge_date=kwargs.pop("challenge_date", start + timedelta(days=84)),
        )
    return _make


@pytest.fixture
def make_item():
    """Factory for items."""
    def _make(category: Category = Category.MEDICINE, **kwargs) -> Item:
        return Item(
            id=kwargs.pop("id", new_id()),
            name=kwargs.pop("name", fake.word()),
            category=category,
            **kwargs,
        )
    return _make
