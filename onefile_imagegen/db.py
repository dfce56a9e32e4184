"""Checkpoint database plumbing.

The only durable state the orchestrator owns is the checkpoint log, kept in
a small SQLite database under the configured state directory. Connections
run with full synchronous writes so a recorded checkpoint survives a crash
of the build host.
"""

from collections.abc import Generator
from contextlib import contextmanager
from typing import Any

from sqlalchemy import Engine, create_engine, event
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

# Milliseconds a writer waits for another connection's lock
SQLITE_BUSY_TIMEOUT_MS = 5000


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def _configure_sqlite(dbapi_connection: Any, connection_record: Any) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA synchronous=FULL")
    cursor.execute(f"PRAGMA busy_timeout={SQLITE_BUSY_TIMEOUT_MS}")
    cursor.close()


def get_engine(db_url: str) -> Engine:
    """Create an engine for the checkpoint database.

    Args:
        db_url: Database URL, usually ``Settings.db_url``.

    Returns:
        SQLAlchemy Engine instance.
    """
    if not db_url.startswith("sqlite"):
        return create_engine(db_url, echo=False)

    engine = create_engine(
        db_url, connect_args={"check_same_thread": False}, echo=False
    )
    event.listen(engine, "connect", _configure_sqlite)
    return engine


def get_session_factory(engine: Engine) -> sessionmaker[Session]:
    """Session factory whose objects stay usable after commit."""
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@contextmanager
def session_scope(
    session_factory: sessionmaker[Session],
) -> Generator[Session, None, None]:
    """Run a block in one transaction, committed only if the block succeeds.

    Yields:
        SQLAlchemy Session instance.
    """
    session = session_factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def create_all_tables(engine: Engine) -> None:
    """Create the checkpoint tables if they do not exist yet."""
    # Register models with the mapper before creating tables
    from onefile_imagegen.pipeline import models as pipeline_models  # noqa: F401

    Base.metadata.create_all(bind=engine)


__all__ = [
    "Base",
    "create_all_tables",
    "get_engine",
    "get_session_factory",
    "session_scope",
]
