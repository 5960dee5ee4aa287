"""
Database layer - SQLAlchemy async engine, sessions and snapshot table
"""
from .connection import Base, get_engine, get_session_factory, session_scope, init_db, dispose_engine
from .models import SnapshotRecord

__all__ = [
    "Base",
    "get_engine",
    "get_session_factory",
    "session_scope",
    "init_db",
    "dispose_engine",
    "SnapshotRecord",
]
