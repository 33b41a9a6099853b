"""Database helpers and SQLAlchemy session factories."""

from .engine import DEFAULT_DATABASE_URL, create_sync_engine, get_sqlalchemy_url
from .session import create_schema, get_sessionmaker, session_scope

__all__ = [
    "DEFAULT_DATABASE_URL",
    "create_schema",
    "create_sync_engine",
    "get_sessionmaker",
    "get_sqlalchemy_url",
    "session_scope",
]
