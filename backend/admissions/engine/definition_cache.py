"""Definition Cache - In-process cache of published workflow versions

Published versions are immutable, so their bodies are cached by version ID
forever. The category -> active version pointer is read from the database on
every call unless cache_active_pointer is enabled, in which case publish,
activate and deactivate must call invalidate().
"""
import threading
from typing import Dict, Optional

from ..config.settings import settings
from ..domain.models import ActiveDefinitionPointer, WorkflowVersion
from ..domain.errors import ActiveWorkflowNotFoundError, WorkflowNotFoundError
from ..repositories.workflow_repo import WorkflowRepository
from ..repositories.active_pointer_repo import ActivePointerRepository
from ..utils.logger import get_logger

logger = get_logger(__name__)


class DefinitionCache:
    """Thread-safe cache of version bodies and (optionally) active pointers"""

    def __init__(self, cache_active_pointer: Optional[bool] = None):
        self._lock = threading.RLock()
        self._versions: Dict[str, WorkflowVersion] = {}
        self._pointers: Dict[str, ActiveDefinitionPointer] = {}
        self.cache_active_pointer = (
            settings.cache_active_pointer if cache_active_pointer is None else cache_active_pointer
        )

    def get_version(self, workflow_version_id: str) -> WorkflowVersion:
        """
        Get a published version body by ID

        Raises:
            WorkflowNotFoundError: If the version does not exist
        """
        with self._lock:
            cached = self._versions.get(workflow_version_id)
        if cached is not None:
            return cached

        version = WorkflowRepository().get_version(workflow_version_id)
        if version is None:
            raise WorkflowNotFoundError(
                f"Workflow version {workflow_version_id} not found",
                details={"workflow_version_id": workflow_version_id}
            )

        with self._lock:
            # Another thread may have loaded it meanwhile; either copy is identical
            self._versions.setdefault(workflow_version_id, version)
            return self._versions[workflow_version_id]

    def get_active_pointer(self, applicant_category: str) -> Optional[ActiveDefinitionPointer]:
        """Active pointer for a category, or None"""
        if self.cache_active_pointer:
            with self._lock:
                cached = self._pointers.get(applicant_category)
            if cached is not None:
                return cached

        pointer = ActivePointerRepository().get_pointer(applicant_category)
        if pointer is not None and self.cache_active_pointer:
            with self._lock:
                self._pointers[applicant_category] = pointer
        return pointer

    def get_active_version(self, applicant_category: str) -> WorkflowVersion:
        """
        Version new applications of this category bind to

        Raises:
            ActiveWorkflowNotFoundError: If nothing is active for the category
        """
        pointer = self.get_active_pointer(applicant_category)
        if pointer is None:
            raise ActiveWorkflowNotFoundError(
                f"No active workflow for applicant category '{applicant_category}'",
                details={"applicant_category": applicant_category}
            )
        return self.get_version(pointer.workflow_version_id)

    def invalidate(self, applicant_category: str) -> None:
        """Drop the cached pointer of a category"""
        with self._lock:
            self._pointers.pop(applicant_category, None)
        logger.debug(
            f"Invalidated active pointer cache for {applicant_category}",
            extra={"applicant_category": applicant_category}
        )

    def clear(self) -> None:
        with self._lock:
            self._versions.clear()
            self._pointers.clear()


_cache = DefinitionCache()


def get_definition_cache() -> DefinitionCache:
    """Process-wide definition cache"""
    return _cache
