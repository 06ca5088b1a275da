"""Workflow Definition API Routes - Designer and activation endpoints"""
from typing import Any, Dict, List, Optional
from fastapi import APIRouter, Depends, status, Query
from pydantic import BaseModel, Field

from ..deps import get_actor_dep, get_correlation_id_dep, require_permission
from ...domain.models import ActorContext
from ...domain.enums import WorkflowPermission, WorkflowStatus
from ...services.workflow_service import WorkflowService
from ...utils.logger import get_logger

logger = get_logger(__name__)
router = APIRouter()


# ============================================================================
# Bodies
# ============================================================================

class NewWorkflowBody(BaseModel):
    """A draft for one applicant category, optionally with a starting definition"""
    name: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = Field(None, max_length=2000)
    applicant_category: str = Field(..., min_length=1, max_length=100)
    definition: Optional[Dict[str, Any]] = None


class WorkflowCreated(BaseModel):
    workflow_id: str


class DraftBody(BaseModel):
    """Full replacement of the draft definition"""
    definition: Dict[str, Any]
    expected_version: Optional[int] = Field(None, description="Optimistic concurrency check")


class DraftSaved(BaseModel):
    """The stored draft is returned with its validation, valid or not"""
    workflow_id: str
    version: int
    validation: Dict[str, Any]
    draft_updated_at: str


class PublishBody(BaseModel):
    change_summary: Optional[str] = Field(None, max_length=2000)
    activate: bool = True


class VersionPublished(BaseModel):
    workflow_version_id: str
    version: int
    activated: bool


class DuplicateBody(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    applicant_category: Optional[str] = Field(None, max_length=100)


class WorkflowPage(BaseModel):
    items: List[Dict[str, Any]]
    page: int
    page_size: int
    total: int


class ValidationReport(BaseModel):
    """Every structural error and warning of a definition"""
    is_valid: bool
    errors: List[Dict[str, Any]] = Field(default_factory=list)
    warnings: List[Dict[str, Any]] = Field(default_factory=list)


# ============================================================================
# Routes
# ============================================================================

@router.post("", response_model=WorkflowCreated, status_code=status.HTTP_201_CREATED)
async def create_workflow(
    request: NewWorkflowBody,
    actor: ActorContext = Depends(require_permission(WorkflowPermission.EDIT_WORKFLOW)),
    correlation_id: str = Depends(get_correlation_id_dep)
):
    """Create a new workflow draft for an applicant category"""
    service = WorkflowService()
    workflow = service.create_workflow(
        name=request.name,
        description=request.description,
        applicant_category=request.applicant_category,
        actor=actor,
        definition=request.definition
    )

    logger.info(
        f"Created workflow: {workflow.workflow_id}",
        extra={"workflow_id": workflow.workflow_id, "actor_id": actor.actor_id}
    )
    return WorkflowCreated(workflow_id=workflow.workflow_id)


@router.get("", response_model=WorkflowPage)
async def list_workflows(
    status: Optional[WorkflowStatus] = Query(None),
    applicant_category: Optional[str] = Query(None),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    actor: ActorContext = Depends(get_actor_dep),
    correlation_id: str = Depends(get_correlation_id_dep)
):
    """List workflows, most recently updated first"""
    service = WorkflowService()
    skip = (page - 1) * page_size

    workflows = service.list_workflows(
        status=status,
        applicant_category=applicant_category,
        skip=skip,
        limit=page_size
    )
    total = service.count_workflows(status=status, applicant_category=applicant_category)

    return WorkflowPage(
        items=[w.model_dump(mode="json") for w in workflows],
        page=page,
        page_size=page_size,
        total=total
    )


@router.get("/active/{applicant_category}")
async def get_active_workflow(
    applicant_category: str,
    actor: ActorContext = Depends(get_actor_dep),
    correlation_id: str = Depends(get_correlation_id_dep)
):
    """Version new applications of this category bind to"""
    service = WorkflowService()
    version = service.get_active_version(applicant_category)
    pointer = service.get_active_pointer(applicant_category)
    return {
        "pointer": pointer.model_dump(mode="json") if pointer else None,
        "version": version.model_dump(mode="json")
    }


@router.get("/{workflow_id}")
async def get_workflow(
    workflow_id: str,
    actor: ActorContext = Depends(get_actor_dep),
    correlation_id: str = Depends(get_correlation_id_dep)
):
    """Get workflow with its draft definition"""
    service = WorkflowService()
    workflow = service.get_workflow(workflow_id)
    return workflow.model_dump(mode="json")


@router.put("/{workflow_id}/draft", response_model=DraftSaved)
async def save_draft(
    workflow_id: str,
    request: DraftBody,
    actor: ActorContext = Depends(require_permission(WorkflowPermission.EDIT_WORKFLOW)),
    correlation_id: str = Depends(get_correlation_id_dep)
):
    """
    Save workflow draft

    The draft is stored even when invalid; the response carries the
    validation result.
    """
    service = WorkflowService()
    workflow, validation = service.save_draft(
        workflow_id=workflow_id,
        definition=request.definition,
        actor=actor,
        expected_version=request.expected_version
    )

    return DraftSaved(
        workflow_id=workflow.workflow_id,
        version=workflow.version,
        validation=validation,
        draft_updated_at=workflow.updated_at.isoformat()
    )


@router.post("/{workflow_id}/validate", response_model=ValidationReport)
async def validate_workflow(
    workflow_id: str,
    actor: ActorContext = Depends(get_actor_dep),
    correlation_id: str = Depends(get_correlation_id_dep)
):
    """Validate the stored draft and return every error at once"""
    service = WorkflowService()
    return ValidationReport(**service.validate_workflow(workflow_id))


@router.post("/{workflow_id}/publish", response_model=VersionPublished)
async def publish_workflow(
    workflow_id: str,
    request: Optional[PublishBody] = None,
    actor: ActorContext = Depends(require_permission(WorkflowPermission.ACTIVATE_WORKFLOW)),
    correlation_id: str = Depends(get_correlation_id_dep)
):
    """
    Publish the draft as a new immutable version

    Returns 400 with the full error list when the draft is invalid.
    """
    request = request or PublishBody()
    service = WorkflowService()
    version = service.publish_workflow(
        workflow_id,
        actor,
        change_summary=request.change_summary,
        activate=request.activate
    )

    return VersionPublished(
        workflow_version_id=version.workflow_version_id,
        version=version.version_number,
        activated=request.activate
    )


@router.post("/{workflow_id}/duplicate", response_model=WorkflowCreated, status_code=status.HTTP_201_CREATED)
async def duplicate_workflow(
    workflow_id: str,
    request: DuplicateBody,
    actor: ActorContext = Depends(require_permission(WorkflowPermission.EDIT_WORKFLOW)),
    correlation_id: str = Depends(get_correlation_id_dep)
):
    """Copy a workflow into a new draft"""
    service = WorkflowService()
    duplicate = service.duplicate_workflow(
        workflow_id,
        name=request.name,
        actor=actor,
        applicant_category=request.applicant_category
    )
    return WorkflowCreated(workflow_id=duplicate.workflow_id)


@router.post("/{workflow_id}/deactivate", status_code=status.HTTP_204_NO_CONTENT)
async def deactivate_workflow(
    workflow_id: str,
    actor: ActorContext = Depends(require_permission(WorkflowPermission.ACTIVATE_WORKFLOW)),
    correlation_id: str = Depends(get_correlation_id_dep)
):
    """Stop binding new applications to this workflow"""
    service = WorkflowService()
    service.deactivate_workflow(workflow_id, actor)


@router.get("/{workflow_id}/versions")
async def list_versions(
    workflow_id: str,
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    actor: ActorContext = Depends(get_actor_dep),
    correlation_id: str = Depends(get_correlation_id_dep)
):
    """List published versions, newest first"""
    service = WorkflowService()
    skip = (page - 1) * page_size
    versions = service.list_versions(workflow_id, skip=skip, limit=page_size)

    return {
        "items": [
            {
                "workflow_version_id": v.workflow_version_id,
                "version_number": v.version_number,
                "name": v.name,
                "applicant_category": v.applicant_category,
                "published_by": v.published_by,
                "published_at": v.published_at.isoformat(),
                "change_summary": v.change_summary
            }
            for v in versions
        ],
        "page": page,
        "page_size": page_size
    }


@router.get("/{workflow_id}/versions/{version_number}")
async def get_version(
    workflow_id: str,
    version_number: int,
    actor: ActorContext = Depends(get_actor_dep),
    correlation_id: str = Depends(get_correlation_id_dep)
):
    """Get a published version with its definition"""
    service = WorkflowService()
    version = service.get_version(workflow_id, version_number)
    return version.model_dump(mode="json")


@router.post("/{workflow_id}/versions/{version_number}/activate")
async def activate_version(
    workflow_id: str,
    version_number: int,
    actor: ActorContext = Depends(require_permission(WorkflowPermission.ACTIVATE_WORKFLOW)),
    correlation_id: str = Depends(get_correlation_id_dep)
):
    """
    Make a published version the active one (rollback included)

    Applications already bound to another version keep it.
    """
    service = WorkflowService()
    pointer = service.activate_version(workflow_id, version_number, actor)
    return pointer.model_dump(mode="json")
