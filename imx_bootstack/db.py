"""Database engine and session management for imx_bootstack.

The run history (stage and flash records) lives in a small SQLite database
inside the working directory. This module provides engine creation, the
session factory and the declarative base for the ORM models.
"""

from collections.abc import Generator
from contextlib import contextmanager
from typing import Any

from sqlalchemy import create_engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def get_engine(db_url: str) -> Any:
    """Create and return a SQLAlchemy engine.

    Args:
        db_url: Database URL.

    Returns:
        SQLAlchemy Engine instance.
    """
    connect_args: dict[str, Any] = {}
    if db_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False

    return create_engine(db_url, connect_args=connect_args, echo=False)


def get_session_factory(engine: Any) -> sessionmaker[Session]:
    """Create and return a session factory bound to ``engine``."""
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@contextmanager
def get_session(
    session_factory: sessionmaker[Session],
) -> Generator[Session, None, None]:
    """Provide a transactional scope around a series of operations.

    Args:
        session_factory: Session factory to open the session from.

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


def create_all_tables(engine: Any) -> None:
    """Create all tables defined by ORM models.

    Args:
        engine: SQLAlchemy engine.
    """
    # Register every model with the mapper before creating tables.
    from imx_bootstack.builds import models as builds_models  # noqa: F401
    from imx_bootstack.flash import models as flash_models  # noqa: F401

    Base.metadata.create_all(bind=engine)


def open_history(db_url: str) -> sessionmaker[Session]:
    """Open (creating if needed) the run history database.

    Args:
        db_url: Database URL.

    Returns:
        Session factory for the history database.
    """
    engine = get_engine(db_url)
    create_all_tables(engine)
    return get_session_factory(engine)


__all__ = [
    "Base",
    "create_all_tables",
    "get_engine",
    "get_session",
    "get_session_factory",
    "open_history",
]
