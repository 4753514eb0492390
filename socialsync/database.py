"""Database layer utilities for the SQLAlchemy-backed reference gateway."""
from __future__ import annotations

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from .config import get_settings

Base = declarative_base()


def build_engine(database_url: str | None = None) -> Engine:
    """Return an engine for the supplied URL (defaults to ``DATABASE_URL``)."""

    url = database_url or get_settings().database_url
    if url.startswith("sqlite") and ":memory:" in url:
        # A single shared connection keeps the in-memory database alive across sessions.
        return create_engine(
            url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
            future=True,
        )
    return create_engine(url, pool_pre_ping=True, future=True)


def build_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(
        bind=engine,
        autoflush=False,
        autocommit=False,
        future=True,
        expire_on_commit=False,
    )


def init_db(engine: Engine) -> None:
    """Initialise database schema by creating tables when missing."""
    # Import models to ensure they are registered on the metadata before create_all runs.
    from . import models  # noqa: F401

    Base.metadata.create_all(bind=engine)


__all__ = [
    "Base",
    "build_engine",
    "build_session_factory",
    "init_db",
]
