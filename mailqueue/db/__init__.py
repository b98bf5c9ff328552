"""
Database module.
Contains database connection, models, and repository implementations.
"""

from mailqueue.db.connection import (
    close_db,
    create_session_factory,
    create_tables,
    get_async_session,
    get_engine,
    get_session_context,
    get_session_factory,
    init_db,
)
from mailqueue.db.models import Base, EmailLog, EmailQueueEntry

__all__ = [
    "get_async_session",
    "get_session_context",
    "get_session_factory",
    "create_session_factory",
    "create_tables",
    "get_engine",
    "init_db",
    "close_db",
    "EmailQueueEntry",
    "EmailLog",
    "Base",
]
