"""Database utilities exposed for external runtimes."""

from .repo import SqlProgressionStore, close_db, get_session, init_db

__all__ = ["SqlProgressionStore", "close_db", "get_session", "init_db"]
