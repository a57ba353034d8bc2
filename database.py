"""
Database Configuration and Session Management
============================================

Builds the SQLAlchemy engine and session factory used by the SQL-backed deposit
store. The engine is only created when a DATABASE_URL is configured; without one
the deposit engine runs on the volatile in-memory store.
"""

import logging
from contextlib import contextmanager
from typing import Iterator, Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool

from config import Config
from models import Base

logger = logging.getLogger(__name__)


def build_engine(database_url: Optional[str] = None, echo: bool = False) -> Engine:
    """Create an engine for ``database_url`` (defaults to Config.DATABASE_URL)"""
    url = database_url or Config.DATABASE_URL
    if not url:
        raise ValueError("DATABASE_URL is required to build a database engine")

    if url.startswith("sqlite"):
        # In-memory SQLite must share one connection across sessions
        kwargs = {"connect_args": {"check_same_thread": False}}
        if ":memory:" in url or url in ("sqlite://", "sqlite:///"):
            kwargs["poolclass"] = StaticPool
        engine = create_engine(url, echo=echo, **kwargs)
    else:
        engine = create_engine(
            url,
            pool_size=5,
            max_overflow=10,
            pool_pre_ping=True,    # Validate connections before use
            pool_recycle=3600,     # Recycle connections every hour
            pool_timeout=30,
            echo=echo,
        )

    logger.info(f"✅ DATABASE_ENGINE: created for {url.split('://')[0]}")
    return engine


def build_session_factory(engine: Engine) -> sessionmaker:
    # Deposits leave the session detached, so attribute expiry must stay off
    return sessionmaker(bind=engine, expire_on_commit=False)


def create_tables(engine: Engine) -> None:
    """Create all tables declared on models.Base"""
    Base.metadata.create_all(bind=engine)
    logger.info("✅ DATABASE_TABLES: ensured")


@contextmanager
def managed_session(session_factory: sessionmaker) -> Iterator[Session]:
    """Session scope that commits on success and rolls back on error"""
    session = session_factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
