"""Definition Store - workflow drafts and their immutable published versions

Drafts live in one document per workflow and change freely; each publish
inserts a new version document that is never updated afterwards.
"""
from typing import Any, Dict, List, Optional
from pymongo import DESCENDING, ReturnDocument
from pymongo.collection import Collection
from pymongo.errors import DuplicateKeyError
from pydantic import ValidationError

from .mongo_client import WORKFLOWS, WORKFLOW_VERSIONS, get_collection
from ..domain.models import WorkflowTemplate, WorkflowVersion
from ..domain.enums import WorkflowStatus
from ..domain.errors import AlreadyExistsError, ConcurrencyError, WorkflowNotFoundError
from ..utils.logger import get_logger
from ..utils.time import utc_now

logger = get_logger(__name__)


def _strip_id(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if doc is not None:
        doc.pop("_id", None)
    return doc


class WorkflowRepository:
    """Drafts (WorkflowTemplate) and published versions (WorkflowVersion)"""

    def __init__(self):
        self._drafts: Collection = get_collection(WORKFLOWS)
        self._versions: Collection = get_collection(WORKFLOW_VERSIONS)

    # =========================================================================
    # Drafts
    # =========================================================================

    def create_workflow(self, workflow: WorkflowTemplate) -> WorkflowTemplate:
        try:
            self._drafts.insert_one({"_id": workflow.workflow_id, **workflow.model_dump()})
        except DuplicateKeyError:
            raise AlreadyExistsError(
                f"Workflow {workflow.workflow_id} already exists",
                details={"workflow_id": workflow.workflow_id}
            )
        logger.info(
            f"Workflow draft created for category {workflow.applicant_category}",
            extra={"workflow_id": workflow.workflow_id, "applicant_category": workflow.applicant_category}
        )
        return workflow

    def get_workflow(self, workflow_id: str) -> Optional[WorkflowTemplate]:
        doc = _strip_id(self._drafts.find_one({"_id": workflow_id}))
        return WorkflowTemplate.model_validate(doc) if doc else None

    def get_workflow_or_raise(self, workflow_id: str) -> WorkflowTemplate:
        workflow = self.get_workflow(workflow_id)
        if workflow is None:
            raise WorkflowNotFoundError(
                f"Workflow {workflow_id} not found",
                details={"workflow_id": workflow_id}
            )
        return workflow

    def update_workflow(
        self,
        workflow_id: str,
        updates: Dict[str, Any],
        expected_version: Optional[int] = None
    ) -> WorkflowTemplate:
        """
        Apply updates to a draft.

        With expected_version the write only lands if nobody saved in
        between; the draft's version then moves to expected_version + 1.

        Raises:
            WorkflowNotFoundError: No such workflow
            ConcurrencyError: The draft was saved by someone else first
        """
        changes = dict(updates, updated_at=utc_now())
        selector: Dict[str, Any] = {"_id": workflow_id}
        if expected_version is not None:
            selector["version"] = expected_version
            changes["version"] = expected_version + 1

        doc = _strip_id(self._drafts.find_one_and_update(
            selector, {"$set": changes}, return_document=ReturnDocument.AFTER
        ))
        if doc is None:
            current = self.get_workflow_or_raise(workflow_id)
            raise ConcurrencyError(
                f"Workflow {workflow_id} was saved by someone else. Reload it and retry.",
                details={"expected_version": expected_version, "current_version": current.version}
            )

        logger.debug(f"Workflow draft updated: {sorted(updates)}", extra={"workflow_id": workflow_id})
        return WorkflowTemplate.model_validate(doc)

    def list_workflows(
        self,
        status: Optional[WorkflowStatus] = None,
        applicant_category: Optional[str] = None,
        skip: int = 0,
        limit: int = 50
    ) -> List[WorkflowTemplate]:
        """Most recently updated first; unreadable documents are logged and left out"""
        cursor = (
            self._drafts.find(self._filters(status, applicant_category))
            .sort("updated_at", DESCENDING)
            .skip(skip)
            .limit(limit)
        )
        workflows = []
        for doc in map(_strip_id, cursor):
            try:
                workflows.append(WorkflowTemplate.model_validate(doc))
            except ValidationError as e:
                logger.warning(
                    f"Unreadable workflow document left out of listing ({e.error_count()} errors)",
                    extra={"workflow_id": doc.get("workflow_id")}
                )
        return workflows

    def count_workflows(
        self,
        status: Optional[WorkflowStatus] = None,
        applicant_category: Optional[str] = None
    ) -> int:
        return self._drafts.count_documents(self._filters(status, applicant_category))

    @staticmethod
    def _filters(status: Optional[WorkflowStatus], applicant_category: Optional[str]) -> Dict[str, Any]:
        filters: Dict[str, Any] = {}
        if status:
            filters["status"] = WorkflowStatus(status).value
        if applicant_category:
            filters["applicant_category"] = applicant_category
        return filters

    # =========================================================================
    # Published versions
    # =========================================================================

    def create_version(self, version: WorkflowVersion) -> WorkflowVersion:
        """
        Insert an immutable version.

        The (workflow_id, version_number) unique index turns two concurrent
        publishes of the same workflow into one winner and one ConcurrencyError.
        """
        try:
            self._versions.insert_one({"_id": version.workflow_version_id, **version.model_dump()})
        except DuplicateKeyError:
            raise ConcurrencyError(
                f"Version {version.version_number} of workflow {version.workflow_id} was published concurrently",
                details={"workflow_id": version.workflow_id, "version_number": version.version_number}
            )

        logger.info(
            f"Published version {version.version_number}",
            extra={"workflow_id": version.workflow_id, "workflow_version_id": version.workflow_version_id}
        )
        return version

    def _find_version(self, selector: Dict[str, Any], **kwargs) -> Optional[WorkflowVersion]:
        doc = _strip_id(self._versions.find_one(selector, **kwargs))
        return WorkflowVersion.model_validate(doc) if doc else None

    def get_version(self, workflow_version_id: str) -> Optional[WorkflowVersion]:
        return self._find_version({"_id": workflow_version_id})

    def get_version_by_number(self, workflow_id: str, version_number: int) -> Optional[WorkflowVersion]:
        return self._find_version({"workflow_id": workflow_id, "version_number": version_number})

    def get_latest_version(self, workflow_id: str) -> Optional[WorkflowVersion]:
        return self._find_version({"workflow_id": workflow_id}, sort=[("version_number", DESCENDING)])

    def get_next_version_number(self, workflow_id: str) -> int:
        latest = self.get_latest_version(workflow_id)
        return latest.version_number + 1 if latest else 1

    def list_versions(self, workflow_id: str, skip: int = 0, limit: int = 50) -> List[WorkflowVersion]:
        """Newest first"""
        cursor = (
            self._versions.find({"workflow_id": workflow_id})
            .sort("version_number", DESCENDING)
            .skip(skip)
            .limit(limit)
        )
        return [WorkflowVersion.model_validate(doc) for doc in map(_strip_id, cursor)]
