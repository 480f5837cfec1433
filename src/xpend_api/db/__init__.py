"""Database module for the Xpend ingestion API."""

from xpend_api.db.base import Base
from xpend_api.db.engine import engine
from xpend_api.db.session import DbSession, SessionLocal, get_db

__all__ = ["Base", "DbSession", "engine", "SessionLocal", "get_db"]
