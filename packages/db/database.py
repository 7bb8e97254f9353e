"""
SQLAlchemy engine and session factory for the document store.
"""
from __future__ import annotations

import os
import logging
from contextlib import contextmanager
from typing import Generator

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

logger = logging.getLogger("dentledger.db")


def normalize_database_url(url: str) -> str:
    # Hosted Postgres providers hand out postgres://, which SQLAlchemy 2 no longer accepts.
    if url.startswith("postgres://"):
        return url.replace("postgres://", "postgresql://", 1)
    return url


def build_engine(url: str) -> Engine:
    url = normalize_database_url(url)
    connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
    return create_engine(url, echo=False, connect_args=connect_args, pool_pre_ping=True)


def build_session_factory(bind: Engine, create_tables: bool = False) -> sessionmaker:
    if create_tables:
        from packages.db.models import Base  # noqa: F811
        Base.metadata.create_all(bind=bind)
    return sessionmaker(bind=bind, autoflush=False, autocommit=False)


DATABASE_URL = normalize_database_url(os.environ.get("DATABASE_URL", "sqlite:///dentledger.db"))
engine = build_engine(DATABASE_URL)
SessionLocal = build_session_factory(engine)


def init_db() -> None:
    """Create the documents table (idempotent)."""
    build_session_factory(engine, create_tables=True)
    logger.info("Document table ready on %s", engine.url.render_as_string(hide_password=True))


@contextmanager
def get_session(factory: sessionmaker | None = None) -> Generator[Session, None, None]:
    """Yield a session from ``factory``; commit on success, roll back on error."""
    session = (factory or SessionLocal)()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
