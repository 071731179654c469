"""
Database module.
Contains workspace connection routing, models, and the queue repository.
"""

from mailqueue.db.connection import (
    ConnectionResolver,
    StaticConnectionResolver,
    WorkspaceConnectionManager,
    close_connections,
    create_queue_engine,
    create_session_factory,
    get_connection_manager,
    workspace_session,
)
from mailqueue.db.models import Base, EmailQueueEntry
from mailqueue.db.repository import EmailQueueRepository

__all__ = [
    "ConnectionResolver",
    "StaticConnectionResolver",
    "WorkspaceConnectionManager",
    "get_connection_manager",
    "close_connections",
    "create_queue_engine",
    "create_session_factory",
    "workspace_session",
    "EmailQueueEntry",
    "EmailQueueRepository",
    "Base",
]
