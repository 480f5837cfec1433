"""SQLAlchemy engine configuration."""

from typing import Any

from sqlalchemy import create_engine

from xpend_api.core.config import settings


def _engine_options(database_url: str) -> dict[str, Any]:
    """Pool options for the configured backend (SQLite uses a single-file pool)."""
    if database_url.startswith("sqlite"):
        return {"connect_args": {"check_same_thread": False}}
    return {"pool_pre_ping": True, "pool_size": 5, "max_overflow": 10}


engine = create_engine(
    settings.database_url,
    echo=settings.debug,
    **_engine_options(settings.database_url),
)
