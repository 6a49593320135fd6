from contextlib import contextmanager
from typing import Any, Iterator

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from app.config import get_settings

settings = get_settings()

engine_options: dict[str, Any] = {"echo": settings.debug, "future": True, "pool_pre_ping": True}
if settings.database_url.startswith("sqlite"):
    engine_options["connect_args"] = {"check_same_thread": False}
else:
    # pool_size: connections kept open; max_overflow: burst capacity on top of it
    engine_options.update(pool_size=10, max_overflow=20)

engine = create_engine(settings.database_url, **engine_options)
SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False, future=True)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def get_db_session() -> Iterator[Session]:
    """Context manager for short-lived database sessions.

    Used by the signaling websocket and the background scheduler instead of
    Depends(get_db) so no connection is held for the lifetime of a socket.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
