"""Services package."""
from services.task_store import TaskStore

__all__ = ["TaskStore"]
