"""
Database configuration
"""
import threading
from contextlib import nullcontext

from sqlalchemy.engine import Engine
from sqlmodel import SQLModel, create_engine
from sqlmodel.pool import StaticPool
from core.config import get_settings

# Create engine lazily to allow test configuration to be applied
_engine = None

# Engines on a StaticPool hand every session the same connection
_shared_connection_locks: dict[Engine, threading.RLock] = {}
_locks_guard = threading.Lock()


def build_engine(uri: str) -> Engine:
    """
    Create an engine for the given URI.
    SQLite connections may be used from worker threads, and an in-memory
    database has to be shared by every session to be visible at all.
    """
    if not uri.startswith("sqlite"):
        return create_engine(uri, echo=False, pool_pre_ping=True)

    kwargs = {"connect_args": {"check_same_thread": False}}
    if uri in ("sqlite://", "sqlite:///:memory:"):
        kwargs["poolclass"] = StaticPool
    return create_engine(uri, echo=False, **kwargs)


def session_lock(engine: Engine):
    """
    Context manager that serializes sessions on an engine whose pool
    shares a single connection between threads.
    Engines with a real connection pool get a no-op context.
    """
    if not isinstance(engine.pool, StaticPool):
        return nullcontext()
    with _locks_guard:
        return _shared_connection_locks.setdefault(engine, threading.RLock())


def get_engine() -> Engine:
    """
    Get or create the database engine.
    This lazy initialization allows test settings to be applied properly.
    """
    global _engine
    if _engine is None:
        _engine = build_engine(str(get_settings().SQLALCHEMY_DATABASE_URI))
    return _engine


def reset_engine():
    """
    Dispose and forget the engine.
    Used at shutdown and by tests that switch between settings.
    """
    global _engine
    if _engine is not None:
        _engine.dispose()
        _shared_connection_locks.pop(_engine, None)
    _engine = None


def create_db_and_tables(engine: Engine) -> None:
    # Importing the models registers their tables on SQLModel.metadata
    import api.files.models  # noqa: F401

    SQLModel.metadata.create_all(engine)
