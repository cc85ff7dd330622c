"""Async SQLAlchemy engine for the state database."""

from pathlib import Path

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from studio.core.config import settings


def create_state_engine(url: str | None = None) -> AsyncEngine:
    """Create the engine, making sure a SQLite file's directory exists."""
    database_url = url or settings.database_url
    parsed = make_url(database_url)
    if parsed.get_backend_name() == "sqlite" and parsed.database and parsed.database != ":memory:":
        Path(parsed.database).parent.mkdir(parents=True, exist_ok=True)
    return create_async_engine(database_url, echo=False, pool_pre_ping=True)
