"""Database models package."""
from models.database import Base, get_session, init_db, close_db, get_pool_status, get_engine
from models.workspace import Workspace
from models.task import Task
from models.sync_history import TaskSyncHistory
from models.api_request_log import ApiRequestLog

__all__ = [
    "Base",
    "get_session",
    "init_db",
    "close_db",
    "get_pool_status",
    "get_engine",
    "Workspace",
    "Task",
    "TaskSyncHistory",
    "ApiRequestLog",
]
