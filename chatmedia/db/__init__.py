"""Database package for chatmedia."""

from chatmedia.db.base import Base
from chatmedia.db.session import create_engine, create_session_maker, init_db

__all__ = [
    "Base",
    "create_engine",
    "create_session_maker",
    "init_db",
]
