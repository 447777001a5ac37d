"""
Database engine and session management.

The local snapshot is written synchronously on every collection change, so
it uses a plain (blocking) SQLAlchemy engine on SQLite.
"""

from collections.abc import Generator

from sqlalchemy import Engine, create_engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from gradeforge.config import settings
from gradeforge.models.db import Base


def create_snapshot_engine(url: str | None = None) -> Engine:
    return create_engine(
        url or settings.snapshot_database_url,
        echo=settings.debug,
        pool_pre_ping=True,
    )


engine = create_snapshot_engine()

# Session factory
session_factory = sessionmaker(engine, class_=Session, expire_on_commit=False)


def get_session() -> Generator[Session, None, None]:
    """
    Provide a session that commits on success and rolls back on error.

    Usage:
        with contextlib.contextmanager(get_session)() as session:
            ...
    """
    with session_factory() as session:
        try:
            yield session
            session.commit()
        except SQLAlchemyError:
            session.rollback()
            raise


def init_db(bind: Engine | None = None) -> None:
    """
    Initialize database tables.

    Creates all tables defined in the ORM models.
    Should be called once at application startup.
    """
    Base.metadata.create_all(bind or engine)


def drop_db(bind: Engine | None = None) -> None:
    """Drop all tables. Used by tests."""
    Base.metadata.drop_all(bind or engine)
