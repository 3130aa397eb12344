"""Engine and session factory for the application database.

The engine is created lazily from :func:`get_database_settings` so tests can
swap in their own engine with :func:`configure_engine` before any request is
served.
"""

from __future__ import annotations

from contextlib import contextmanager
from typing import Generator, Iterator, Optional

import structlog
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from .config import get_database_settings
from .models import Base


logger = structlog.get_logger(__name__)

_engine: Optional[Engine] = None
_sessionmaker: Optional[sessionmaker] = None


def _create_engine() -> Engine:
    settings = get_database_settings()
    logger.info("database_engine_created", sqlite=settings.is_sqlite)
    return create_engine(settings.url, **settings.engine_options())


def get_engine() -> Engine:
    """Return the process-wide engine, creating it on first use."""

    global _engine
    if _engine is None:
        _engine = _create_engine()
    return _engine


def configure_engine(engine: Engine) -> None:
    """Force the process-wide engine to *engine* (used in tests)."""

    global _engine
    global _sessionmaker
    _engine = engine
    _sessionmaker = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)


def _session_factory() -> sessionmaker:
    global _sessionmaker
    if _sessionmaker is None:
        _sessionmaker = sessionmaker(bind=get_engine(), autoflush=False, autocommit=False, future=True)
    return _sessionmaker


def init_schema(engine: Optional[Engine] = None) -> None:
    """Create all tables that do not exist yet."""

    Base.metadata.create_all(engine or get_engine())


def get_db() -> Generator[Session, None, None]:
    """FastAPI dependency that yields a SQLAlchemy session."""

    session: Session = _session_factory()()
    try:
        yield session
    finally:
        session.close()


@contextmanager
def session_scope() -> Iterator[Session]:
    """Provide a transactional scope around a series of operations."""

    session: Session = _session_factory()()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
