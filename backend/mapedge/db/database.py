"""Database engine & session utilities.

The checkpoint table is tiny and touched once per export step, so the helper
is deliberately minimal: sync engine + classic session maker.
"""

import logging

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from mapedge.config import settings
from mapedge.db.base import Base

logger = logging.getLogger(__name__)


def make_engine(url: str, echo: bool = False):
    """Create an engine; in-memory SQLite shares one connection across sessions."""
    kwargs = {"echo": echo, "future": True}
    if url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
        if ":memory:" in url or url in ("sqlite://", "sqlite:///"):
            kwargs["poolclass"] = StaticPool
    return create_engine(url, **kwargs)


# ---------------------------------------------------------------------------
# Engine & session factory
# ---------------------------------------------------------------------------

logger.info("Creating database engine for %s", settings.DATABASE_URL.split('@')[-1])
engine = make_engine(settings.DATABASE_URL, echo=settings.DB_ECHO)

SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    expire_on_commit=False,
    bind=engine,
)


def create_tables(bind=None) -> None:
    """Create all tables if they do not yet exist. Harmless when they do."""
    # Import side-effect registers every model with Base.
    from mapedge.models import job  # noqa: F401

    Base.metadata.create_all(bind=bind or engine)
    logger.info("Database tables ensured")


def get_session_factory():
    """FastAPI dependency returning the session factory; overridden in tests."""
    return SessionLocal
