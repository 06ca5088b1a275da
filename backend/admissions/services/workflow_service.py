"""Workflow Service - drafts, published versions and the active version per applicant category"""
from typing import Any, Dict, List, Optional, Tuple

from pydantic import ValidationError as PydanticValidationError

from ..domain.models import (
    ActiveDefinitionPointer, ActorContext, WorkflowDefinition, WorkflowTemplate, WorkflowVersion
)
from ..domain.enums import WorkflowStatus
from ..domain.errors import InvalidStateError, WorkflowNotFoundError, WorkflowValidationError
from ..engine.definition_cache import DefinitionCache, get_definition_cache
from ..engine.graph_validator import GraphValidator
from ..repositories.workflow_repo import WorkflowRepository
from ..repositories.active_pointer_repo import ActivePointerRepository
from ..utils.idgen import generate_workflow_id, generate_workflow_version_id
from ..utils.time import utc_now
from ..utils.logger import get_logger

logger = get_logger(__name__)


class WorkflowService:
    """Designer-side operations: drafts, publishing and which version is active"""

    def __init__(self, cache: Optional[DefinitionCache] = None):
        self.repo = WorkflowRepository()
        self.pointer_repo = ActivePointerRepository()
        self.validator = GraphValidator()
        self.cache = cache or get_definition_cache()

    # =========================================================================
    # Drafts
    # =========================================================================

    def create_workflow(
        self,
        name: str,
        description: Optional[str],
        applicant_category: str,
        actor: ActorContext,
        definition: Optional[Dict[str, Any]] = None
    ) -> WorkflowTemplate:
        """New draft; an initial definition is stored as-is and validated on save or publish"""
        now = utc_now()

        workflow = WorkflowTemplate(
            workflow_id=generate_workflow_id(),
            name=name,
            description=description,
            applicant_category=applicant_category,
            status=WorkflowStatus.DRAFT,
            definition=definition,
            created_by=actor.actor_id,
            created_at=now,
            updated_at=now,
            version=1
        )

        return self.repo.create_workflow(workflow)

    def get_workflow(self, workflow_id: str) -> WorkflowTemplate:
                return self.repo.get_workflow_or_raise(workflow_id)

    def list_workflows(
        self,
        status: Optional[WorkflowStatus] = None,
        applicant_category: Optional[str] = None,
        skip: int = 0,
        limit: int = 50
    ) -> List[WorkflowTemplate]:
        """List workflows"""
        return self.repo.list_workflows(
            status=status, applicant_category=applicant_category, skip=skip, limit=limit
        )

    def count_workflows(
        self,
        status: Optional[WorkflowStatus] = None,
        applicant_category: Optional[str] = None
    ) -> int:
                return self.repo.count_workflows(status=status, applicant_category=applicant_category)

    def save_draft(
        self,
        workflow_id: str,
        definition: Dict[str, Any],
        actor: ActorContext,
        expected_version: Optional[int] = None
    ) -> Tuple[WorkflowTemplate, Dict[str, Any]]:
        """
        Save workflow draft definition

        Drafts are free-form: an invalid draft is stored as-is and the
        validation result tells the editor what to fix before publishing.

        Returns:
            Tuple of (updated workflow, validation result)
        """
        workflow = self.repo.get_workflow_or_raise(workflow_id)
        validation = self.validator.validate(definition)

        try:
            stored = WorkflowDefinition.model_validate(definition).model_dump(mode="json")
        except PydanticValidationError:
            stored = definition

        updated_workflow = self.repo.update_workflow(
            workflow_id=workflow_id,
            updates={"definition": stored},
            expected_version=expected_version if expected_version is not None else workflow.version
        )

        logger.info(
            f"Saved draft of workflow {workflow_id} ({len(validation['errors'])} errors)",
            extra={"workflow_id": workflow_id, "actor_id": actor.actor_id}
        )
        return updated_workflow, validation

    def validate_workflow(self, workflow_id: str) -> Dict[str, Any]:
        """Validate the stored draft"""
        workflow = self.repo.get_workflow_or_raise(workflow_id)
        return self.validator.validate(workflow.definition)

    def duplicate_workflow(
        self,
        workflow_id: str,
        name: str,
        actor: ActorContext,
        applicant_category: Optional[str] = None
    ) -> WorkflowTemplate:
        """
        Copy a workflow into a new draft.

        The copy takes the source's draft, or its latest published definition
        when the source has no draft.
        """
        source = self.repo.get_workflow_or_raise(workflow_id)

        definition = source.definition
        if definition is None:
            latest = self.repo.get_latest_version(workflow_id)
            if latest:
                definition = latest.definition.model_dump(mode="json")

        duplicate = self.create_workflow(
            name=name,
            description=source.description,
            applicant_category=applicant_category or source.applicant_category,
            actor=actor,
            definition=definition
        )

        logger.info(
            f"Duplicated workflow {workflow_id} as {duplicate.workflow_id}",
            extra={"workflow_id": duplicate.workflow_id, "actor_id": actor.actor_id}
        )
        return duplicate

    # =========================================================================
    # Publishing & Activation
    # =========================================================================

    def publish_workflow(
        self,
        workflow_id: str,
        actor: ActorContext,
        change_summary: Optional[str] = None,
        activate: bool = True
    ) -> WorkflowVersion:
        """
        Publish the draft as an immutable version and, by default, make it
        the active version of the workflow's applicant category.

        Raises:
            WorkflowValidationError: Carrying every validation error
            ConcurrencyError: The draft changed or another publish won
        """
        workflow = self.repo.get_workflow_or_raise(workflow_id)

        validation = self.validator.validate(workflow.definition)
        if not validation["is_valid"]:
            raise WorkflowValidationError(
                f"Workflow validation failed with {len(validation['errors'])} error(s)",
                details={"errors": validation["errors"], "warnings": validation["warnings"]}
            )

        version_number = self.repo.get_next_version_number(workflow_id)

        now = utc_now()
        version = WorkflowVersion(
            workflow_version_id=generate_workflow_version_id(),
            workflow_id=workflow_id,
            version_number=version_number,
            name=workflow.name,
            description=workflow.description,
            applicant_category=workflow.applicant_category,
            definition=WorkflowDefinition.model_validate(workflow.definition),
            published_by=actor.actor_id,
            published_at=now,
            change_summary=change_summary
        )

        self.repo.create_version(version)

        self.repo.update_workflow(
            workflow_id=workflow_id,
            updates={
                "status": WorkflowStatus.PUBLISHED.value,
                "current_version": version_number
            },
            expected_version=workflow.version
        )

        logger.info(
            f"Published workflow version: {version.workflow_version_id}",
            extra={"workflow_id": workflow_id, "workflow_version_id": version.workflow_version_id}
        )

        if activate:
            self._activate(version, actor)

        return version

    def activate_version(self, workflow_id: str, version_number: int, actor: ActorContext) -> ActiveDefinitionPointer:
        """
        Point the category at an already published version (also used for rollback).

        Applications already bound to another version keep it.
        """
        version = self.get_version(workflow_id, version_number)
        return self._activate(version, actor)

    def deactivate_workflow(self, workflow_id: str, actor: ActorContext) -> None:
        """
        Stop binding new applications to this workflow.

        Raises:
            InvalidStateError: The workflow is not the active one of its category
        """
        workflow = self.repo.get_workflow_or_raise(workflow_id)

        cleared = self.pointer_repo.clear_pointer(workflow.applicant_category, workflow_id=workflow_id)
        self.cache.invalidate(workflow.applicant_category)
        if not cleared:
            raise InvalidStateError(
                f"Workflow {workflow_id} is not active for category '{workflow.applicant_category}'",
                details={"workflow_id": workflow_id, "applicant_category": workflow.applicant_category}
            )

        logger.info(
            f"Deactivated workflow {workflow_id}",
            extra={"workflow_id": workflow_id, "actor_id": actor.actor_id}
        )

    def _activate(self, version: WorkflowVersion, actor: ActorContext) -> ActiveDefinitionPointer:
        pointer = ActiveDefinitionPointer(
            applicant_category=version.applicant_category,
            workflow_id=version.workflow_id,
            workflow_version_id=version.workflow_version_id,
            version_number=version.version_number,
            activated_by=actor.actor_id,
            activated_at=utc_now()
        )
        self.pointer_repo.set_pointer(pointer)
        self.cache.invalidate(version.applicant_category)
        return pointer

    # =========================================================================
    # Versions
    # =========================================================================

    def list_versions(
        self,
        workflow_id: str,
        skip: int = 0,
        limit: int = 50
    ) -> List[WorkflowVersion]:
        """Published versions, newest first"""
        self.repo.get_workflow_or_raise(workflow_id)
        return self.repo.list_versions(workflow_id, skip=skip, limit=limit)

    def get_version(self, workflow_id: str, version_number: int) -> WorkflowVersion:
        """One published version by number"""
        version = self.repo.get_version_by_number(workflow_id, version_number)
        if not version:
            raise WorkflowNotFoundError(
                f"Workflow version {version_number} not found",
                details={"workflow_id": workflow_id, "version": version_number}
            )
        return version

    def get_active_pointer(self, applicant_category: str) -> Optional[ActiveDefinitionPointer]:
        return self.cache.get_active_pointer(applicant_category)

    def get_active_version(self, applicant_category: str) -> WorkflowVersion:
        """
        Raises:
            ActiveWorkflowNotFoundError: Nothing is active for the category
        """
        return self.cache.get_active_version(applicant_category)
