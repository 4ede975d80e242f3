import os
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

os.environ.setdefault("DATABASE_URL", "sqlite://")

import gradeportal.models  # noqa: F401
from gradeportal.core.clock import ManualClock
from gradeportal.core.config import settings
from gradeportal.core.deps import LoginGuard, get_login_guard
from gradeportal.db.base import Base
from gradeportal.main import app
from gradeportal.services import lockout_store
from gradeportal.services.admin_control import AdminControl
from gradeportal.services.rate_limiter import LoginGuardConfig, RateLimiter
from gradeportal.services.suspicious_activity import SuspiciousActivityDetector

ADMIN_TOKEN = "test-admin-token"
START = datetime(2026, 3, 2, 8, 0, tzinfo=timezone.utc)


class RecordingSleeper:
    def __init__(self):
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


def build_guard(session_factory, clock, sleeper, config: LoginGuardConfig | None = None) -> LoginGuard:
    rate_limiter = RateLimiter(
        session_factory,
        config=config or LoginGuardConfig(),
        clock=clock,
        sleeper=sleeper,
    )
    detector = SuspiciousActivityDetector(
        session_factory,
        threshold=10,
        window=timedelta(minutes=5),
        clock=clock,
    )
    admin = AdminControl(session_factory, rate_limiter, clock=clock)
    return LoginGuard(rate_limiter=rate_limiter, detector=detector, admin=admin)


def read_state(session_factory, identity: str):
    with session_factory() as db:
        return lockout_store.get_lockout_state(db, identity)


@pytest.fixture()
def session_factory():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield sessionmaker(autocommit=False, autoflush=False, bind=engine, expire_on_commit=False)
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture()
def clock():
    return ManualClock(START)


@pytest.fixture()
def sleeper():
    return RecordingSleeper()


@pytest.fixture()
def guard(session_factory, clock, sleeper):
    return build_guard(session_factory, clock, sleeper)


@pytest.fixture()
def broken_session_factory(tmp_path):
    # Points at a directory that does not exist, so every connection attempt fails.
    engine = create_engine(f"sqlite:///{tmp_path / 'missing' / 'guard.db'}")
    yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    engine.dispose()


@pytest.fixture()
def test_context(guard):
    original_token = settings.admin_api_token
    settings.admin_api_token = ADMIN_TOKEN

    app.dependency_overrides[get_login_guard] = lambda: guard

    with TestClient(app) as client:
        yield client, guard

    app.dependency_overrides.clear()
    settings.admin_api_token = original_token
