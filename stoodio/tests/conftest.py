import os

os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")

from datetime import date, datetime, time, timedelta  # noqa: E402
from decimal import Decimal  # noqa: E402
from unittest.mock import Mock  # noqa: E402

import fakeredis  # noqa: E402
import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from sqlalchemy import Engine, StaticPool, create_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402
from sqlalchemy.orm.session import Session  # noqa: E402

from stoodio.database.db import Base, get_db  # noqa: E402
from stoodio.main import app  # noqa: E402
from stoodio.models.bookings import Booking, BookingStatus  # noqa: E402
from stoodio.models.users import RankingTier, User, UserRole  # noqa: E402

# Use an in-memory SQLite database for testing
SQLALCHEMY_DATABASE_URL = "sqlite:///:memory:"
engine: Engine = create_engine(
    SQLALCHEMY_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# A fixed clock for service tests: all sessions below are scheduled after it
NOW = datetime(2030, 6, 1, 9, 0, 0)
SESSION_DAY = date(2030, 6, 10)
SESSION_START = time(14, 0)


@pytest.fixture(autouse=True)
def setup_database():
    """Fresh schema for every test."""
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def db_session() -> Session:
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def fake_redis():
    return fakeredis.FakeRedis(decode_responses=True)


@pytest.fixture(autouse=True)
def redis_client(fake_redis, monkeypatch: pytest.MonkeyPatch):
    """Point every service at the fake Redis server."""
    for module in ("bookings", "wallet", "sessions"):
        monkeypatch.setattr(f"stoodio.services.{module}.get_redis_client", lambda: fake_redis)
    return fake_redis


def override_get_db():
    db: Session = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def celery_delay(monkeypatch: pytest.MonkeyPatch) -> Mock:
    delay = Mock()
    monkeypatch.setattr("stoodio.routes.bookings.dispatch_outbox_task.delay", delay)
    return delay


@pytest.fixture
def client(celery_delay):
    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def make_user(db_session: Session):
    """Factory for users of any role, committed and refreshed."""

    def _make_user(role: UserRole, name: str = None, **fields) -> User:
        user = User(name=name or f"{role.value.lower()}", role=role.value, **fields)
        db_session.add(user)
        db_session.commit()
        db_session.refresh(user)
        return user

    return _make_user


@pytest.fixture
def artist(make_user) -> User:
    return make_user(UserRole.ARTIST, "Ari Artist")


@pytest.fixture
def engineer(make_user) -> User:
    return make_user(UserRole.ENGINEER, "Eli Engineer", ranking_tier=RankingTier.GOLD.value)


@pytest.fixture
def stoodio(make_user) -> User:
    return make_user(UserRole.STOODIO, "Sunset Stoodio")


@pytest.fixture
def producer(make_user) -> User:
    return make_user(UserRole.PRODUCER, "Pia Producer")


@pytest.fixture
def label(make_user) -> User:
    return make_user(UserRole.LABEL, "Loud Label")


@pytest.fixture
def make_booking(db_session: Session):
    """Insert a booking row directly, bypassing the service checks."""

    def _make_booking(**fields) -> Booking:
        values = dict(
            status=BookingStatus.CONFIRMED.value,
            posted_by=UserRole.ARTIST.value,
            request_type="SPECIFIC_ENGINEER",
            date=SESSION_DAY,
            start_time=SESSION_START,
            duration=Decimal("3"),
            engineer_pay_rate=Decimal("50"),
            total_cost=Decimal("150"),
            created_at=NOW,
        )
        values.update(fields)
        booking = Booking(**values)
        db_session.add(booking)
        db_session.commit()
        db_session.refresh(booking)
        return booking

    return _make_booking


def session_time(hours: float = 0) -> datetime:
    """Moment relative to the scheduled session start."""
    return datetime.combine(SESSION_DAY, SESSION_START) + timedelta(hours=hours)
