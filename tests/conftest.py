"""Shared pytest fixtures for backend tests."""

from __future__ import annotations

import os
import sys
from pathlib import Path
from typing import Any, Callable, Iterator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

os.environ.setdefault("DATABASE_DSN", "sqlite+pysqlite:///:memory:")
os.environ.setdefault("SCHEDULER_ENABLED", "false")
os.environ.setdefault("RATE_LIMIT_ENABLED", "false")
os.environ.setdefault("PRESENCE_GRACE_SECONDS", "0")
os.environ.setdefault("JWT_SECRET_KEY", "test-secret-key-with-at-least-32-bytes")

from app.core.security import create_access_token
from app.database import get_db
from app.main import app
from app.models import Base, Gender, UserRef
from app.services.store import MatchmakingStore
from bella.realtime import get_conversation_bus, get_presence_registry


@pytest.fixture()
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture()
def test_engine() -> Iterator[Engine]:
    """Provide an in-memory SQLite engine for isolated tests."""

    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    Base.metadata.create_all(engine)
    try:
        yield engine
    finally:
        Base.metadata.drop_all(engine)
        engine.dispose()


@pytest.fixture()
def session_factory(test_engine) -> sessionmaker[Session]:
    """Return a session factory bound to the test engine."""

    return sessionmaker(bind=test_engine, autoflush=False, future=True)


@pytest.fixture(autouse=True)
def bind_session_local(monkeypatch, session_factory) -> None:
    """Point the short-lived sessions used by websockets and listeners at the test engine."""

    monkeypatch.setattr("app.database.SessionLocal", session_factory)


@pytest.fixture(autouse=True)
def reset_realtime_state() -> Iterator[None]:
    yield
    registry = get_presence_registry()
    registry._connections.clear()
    registry._hidden.clear()
    for task in registry._offline_timers.values():
        task.cancel()
    registry._offline_timers.clear()
    bus = get_conversation_bus()
    bus._members.clear()
    bus._room_locks.clear()


@pytest.fixture()
def db_session(session_factory) -> Iterator[Session]:
    """Yield a SQLAlchemy session for unit tests."""

    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def store(db_session) -> MatchmakingStore:
    return MatchmakingStore(db_session)


@pytest.fixture()
def make_user(session_factory) -> Callable[..., str]:
    """Insert a user reference and return its id."""

    def factory(
        user_id: str,
        *,
        age: int | None = 27,
        gender: Gender | None = Gender.MAN,
        interests: list[str] | None = None,
        verified: bool = True,
        location: str | None = None,
        display_name: str | None = None,
        show_online_status: bool = True,
    ) -> str:
        with session_factory() as session:
            session.add(
                UserRef(
                    id=user_id,
                    display_name=display_name or user_id.title(),
                    age=age,
                    gender=gender,
                    interests=list(interests or []),
                    is_photo_verified=verified,
                    location=location,
                    show_online_status=show_online_status,
                )
            )
            session.commit()
        return user_id

    return factory


@pytest.fixture()
def auth_headers() -> Callable[[str], dict[str, str]]:
    def build(user_id: str) -> dict[str, str]:
        return {"Authorization": f"Bearer {create_access_token({'sub': user_id})}"}

    return build


@pytest.fixture()
def preferences() -> dict[str, Any]:
    return {
        "ageRange": {"min": 25, "max": 35},
        "genderPreference": "ANY",
        "maxDistanceKm": 100,
        "interests": ["travel"],
    }


@pytest.fixture()
def client(session_factory) -> Iterator[TestClient]:
    """Yield a FastAPI TestClient with the database dependency overridden."""

    def override_get_db() -> Iterator[Session]:
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()
