"""Repository modules - Data access layer"""
from .mongo_client import get_database, get_collection
from .workflow_repo import WorkflowRepository
from .active_pointer_repo import ActivePointerRepository
from .application_state_repo import ApplicationStateRepository
from .history_repo import HistoryRepository
from .lock_repo import ApplicationLockRepository
from .action_repo import ActionRepository

__all__ = [
    "get_database",
    "get_collection",
    "WorkflowRepository",
    "ActivePointerRepository",
    "ApplicationStateRepository",
    "HistoryRepository",
    "ApplicationLockRepository",
    "ActionRepository",
]
