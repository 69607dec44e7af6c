"""Database engine, session management and initialization for the grid tracker (SQLAlchemy)."""

import logging
import os
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Generator, Optional

from sqlalchemy import create_engine, event
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker
from sqlalchemy.pool import StaticPool

logger = logging.getLogger(__name__)

DEFAULT_DATABASE_URL = "sqlite:///data/local_grid.db"


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy ORM models."""
    pass


_engine = None
_SessionFactory: sessionmaker | None = None


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(moment: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes; SQLite hands timestamps back without tzinfo."""
    if moment is None or moment.tzinfo is not None:
        return moment
    return moment.replace(tzinfo=timezone.utc)


def _is_memory_url(database_url: str) -> bool:
    return database_url in ("sqlite://", "sqlite:///:memory:")


def _sqlite_pragmas(dbapi_conn, connection_record):
    """WAL journal plus foreign keys so scans cannot outlive their campaign."""
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL;")
    cursor.execute("PRAGMA synchronous=NORMAL;")
    cursor.execute("PRAGMA foreign_keys=ON;")
    cursor.execute("PRAGMA busy_timeout=5000;")
    cursor.close()


def get_engine(database_url: str | None = None, echo: bool = False):
    """Return (and cache) the global SQLAlchemy engine.

    Args:
        database_url: Connection string.  Falls back to the ``DATABASE_URL``
                      env-var, then to a SQLite file under ``data/``.
        echo: Whether to log every SQL statement.
    """
    global _engine
    if _engine is not None:
        return _engine

    if database_url is None:
        database_url = os.getenv("DATABASE_URL", DEFAULT_DATABASE_URL)

    kwargs: dict = {"echo": echo, "pool_pre_ping": True}
    if database_url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
        if _is_memory_url(database_url):
            # One shared connection, otherwise every checkout sees an empty database.
            kwargs["poolclass"] = StaticPool
        else:
            db_path = database_url.replace("sqlite:///", "")
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)

    _engine = create_engine(database_url, **kwargs)

    if database_url.startswith("sqlite"):
        event.listen(_engine, "connect", _sqlite_pragmas)
    logger.info("Database engine created: %s", database_url)
    return _engine


def get_session_factory(engine=None) -> sessionmaker:
    """Return (and cache) the global session factory."""
    global _SessionFactory
    if _SessionFactory is not None:
        return _SessionFactory
    if engine is None:
        engine = get_engine()
    _SessionFactory = sessionmaker(bind=engine, expire_on_commit=False)
    return _SessionFactory


@contextmanager
def get_session() -> Generator[Session, None, None]:
    """Provide a transactional session; commits on success, rolls back on error.

    Usage::

        with get_session() as session:
            session.add(campaign)
    """
    factory = get_session_factory()
    session = factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def init_db(database_url: str | None = None, echo: bool = False) -> None:
    """Create all grid tracker tables that do not yet exist."""
    engine = get_engine(database_url=database_url, echo=echo)
    # Side-effect import: registers all models with Base.metadata
    import src.models  # noqa: F401
    Base.metadata.create_all(bind=engine)
    logger.info("Grid tracker tables created / verified.")


def reset_db(database_url: str | None = None) -> None:
    """Drop and recreate every table.  **Destructive**, use only in tests."""
    engine = get_engine(database_url=database_url)
    import src.models  # noqa: F401
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    logger.warning("Database has been reset (all tables dropped and recreated).")


def reset_engine() -> None:
    """Dispose of the cached engine and session factory (useful for tests)."""
    global _engine, _SessionFactory
    if _engine is not None:
        _engine.dispose()
    _engine = None
    _SessionFactory = None
