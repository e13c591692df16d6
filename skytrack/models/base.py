"""
SQLAlchemy base configuration and session management.

Uses SQLAlchemy 2.0 style with type hints and declarative base.
Designed to be portable between SQLite (dev) and PostgreSQL (prod).
"""

from typing import Optional

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, sessionmaker

from skytrack.config import config


class Base(DeclarativeBase):
    """Base class for all models."""
    pass


def build_engine(url: str, echo: bool = False) -> Engine:
    """
    Create an engine configured for the database type.

    SQLite engines get WAL journaling so the polling thread can write
    while request threads read.
    """
    engine_kwargs = {'echo': echo}
    is_sqlite = url.startswith('sqlite')

    if is_sqlite:
        # Polling thread, sweeper and request threads share the engine
        engine_kwargs['connect_args'] = {'check_same_thread': False}

    new_engine = create_engine(url, **engine_kwargs)

    if is_sqlite:
        @event.listens_for(new_engine, 'connect')
        def set_sqlite_pragma(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute('PRAGMA journal_mode=WAL')
            cursor.execute('PRAGMA synchronous=NORMAL')
            cursor.execute('PRAGMA foreign_keys=ON')
            cursor.close()

    return new_engine


def build_session_factory(bind: Engine) -> sessionmaker:
    return sessionmaker(
        bind=bind,
        autocommit=False,
        autoflush=False,
        expire_on_commit=False,  # Records are handed to other threads after commit
    )


engine = build_engine(config.database.url, echo=config.debug)

# Session factory
SessionLocal = build_session_factory(engine)


def init_db(bind: Optional[Engine] = None) -> None:
    """
    Initialize database schema.

    Creates all tables if they don't exist.
    """
    Base.metadata.create_all(bind=bind or engine)
