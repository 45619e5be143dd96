"""Database engine factory and shared metadata."""

from __future__ import annotations

from functools import lru_cache

from sqlalchemy import MetaData, create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool

from backend.core.config import settings

metadata = MetaData()


def create_db_engine(url: str | None = None) -> Engine:
    """Create an engine for ``url`` (defaults to ``DATABASE_URL``).

    In-memory SQLite shares one connection so every session sees the same
    database.
    """
    url = url or settings.database_url
    if url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if ":memory:" in url or url in ("sqlite://", "sqlite+pysqlite://"):
            kwargs["poolclass"] = StaticPool
        return create_engine(url, future=True, **kwargs)
    return create_engine(url, future=True, pool_pre_ping=True)


@lru_cache(maxsize=1)
def get_engine() -> Engine:
    """Process-wide engine for the configured database."""
    return create_db_engine()


def check_connection(engine: Engine) -> bool:
    """Run a light query; False when the database is unreachable."""
    try:
        with engine.connect() as conn:
            return conn.execute(text("SELECT 1")).scalar() == 1
    except Exception:
        return False
