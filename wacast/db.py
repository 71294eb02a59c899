"""
wacast.db

Connectivity for the campaign history / snapshot database.

Contracts:
- get_engine() -> shared SQLAlchemy Engine (created lazily from DATABASE_URL)
- get_sessionmaker() -> sessionmaker bound to that engine
- get_session() context manager (commit on success, rollback + re-raise on error)

Recipient shards are NOT opened here; see wacast.shards.store.
"""

from __future__ import annotations

import os
import threading
from contextlib import contextmanager
from typing import Iterator, Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from .errors import ConfigError


def normalize_database_url(raw: str) -> str:
    """
    Normalize DATABASE_URL variants to something SQLAlchemy can reliably use.

    - postgres://  -> postgresql://
    - postgresql+psycopg:// -> postgresql+psycopg2://
    """
    url = (raw or "").strip()

    if url.startswith("postgres://"):
        url = "postgresql://" + url[len("postgres://") :]

    # If someone set psycopg3 dialect, normalize to psycopg2 dialect.
    if url.startswith("postgresql+psycopg://"):
        url = "postgresql+psycopg2://" + url[len("postgresql+psycopg://") :]

    return url


_lock = threading.Lock()
_engine: Optional[Engine] = None
_SessionLocal: Optional[sessionmaker] = None


def get_engine() -> Engine:
    """Return the shared engine, creating it on first use."""
    global _engine, _SessionLocal
    if _engine is not None:
        return _engine
    with _lock:
        if _engine is None:
            raw = os.environ.get("DATABASE_URL", "")
            if not raw:
                raise ConfigError(
                    "DATABASE_URL is not set in environment. "
                    "Load your .env (or equivalent) before running flows."
                )
            _engine = create_engine(normalize_database_url(raw), future=True, pool_pre_ping=True)
            _SessionLocal = sessionmaker(bind=_engine, autoflush=False, autocommit=False, future=True)
    return _engine


def get_sessionmaker(engine: Optional[Engine] = None) -> sessionmaker:
    if engine is not None:
        return sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)
    get_engine()
    assert _SessionLocal is not None
    return _SessionLocal


@contextmanager
def session_scope(factory: sessionmaker) -> Iterator[Session]:
    session: Session = factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


@contextmanager
def get_session() -> Iterator[Session]:
    """
    Context-managed DB session on the shared engine.

    Usage:
        from wacast.db import get_session
        with get_session() as s:
            ...
    """
    with session_scope(get_sessionmaker()) as s:
        yield s
