"""Application Workflow API Routes - Start, transition and inspect applications

Handlers are plain functions: the engine waits on the per-application lock
and calls the fact services synchronously, so FastAPI runs them in its
threadpool.
"""
from typing import Any, Dict, List, Optional
from fastapi import APIRouter, Depends, status, Query
from pydantic import BaseModel, Field

from ..deps import get_actor_dep, get_correlation_id_dep, get_engine
from ...domain.models import ActorContext, CommittedTransition
from ...engine.engine import WorkflowEngine
from ...utils.logger import get_logger

logger = get_logger(__name__)
router = APIRouter()


# ============================================================================
# Request/Response Models
# ============================================================================

class StartWorkflowRequest(BaseModel):
    """Request to put an application into its category's workflow"""
    applicant_category: str = Field(..., min_length=1, max_length=100)


class TransitionResponse(BaseModel):
    """Response after a committed transition"""
    application_id: str
    history_entry: Dict[str, Any]
    state: Dict[str, Any]


class AutomaticSweepResponse(BaseModel):
    """Response of an automatic sweep"""
    application_id: str
    fired: bool
    history_entry: Optional[Dict[str, Any]] = None
    state: Optional[Dict[str, Any]] = None


def _transition_response(application_id: str, committed: CommittedTransition) -> TransitionResponse:
    return TransitionResponse(
        application_id=application_id,
        history_entry=committed.entry.model_dump(mode="json"),
        state=committed.state.model_dump(mode="json")
    )


# ============================================================================
# Routes
# ============================================================================

@router.post("/{application_id}/workflow", status_code=status.HTTP_201_CREATED)
def start_workflow(
    application_id: str,
    request: StartWorkflowRequest,
    actor: ActorContext = Depends(get_actor_dep),
    correlation_id: str = Depends(get_correlation_id_dep),
    engine: WorkflowEngine = Depends(get_engine)
):
    """Bind the application to the active version of its category at the start stage"""
    state = engine.start_application(
        application_id,
        request.applicant_category,
        actor,
        correlation_id=correlation_id
    )
    return state.model_dump(mode="json")


@router.get("/{application_id}/workflow")
def get_workflow_state(
    application_id: str,
    include_requirements: bool = Query(True),
    actor: ActorContext = Depends(get_actor_dep),
    correlation_id: str = Depends(get_correlation_id_dep),
    engine: WorkflowEngine = Depends(get_engine)
):
    """Current stage of the application, with its outstanding requirements"""
    state = engine.get_state(application_id)
    version = engine.get_bound_version(application_id)
    stage = version.definition.get_stage(state.current_stage_id)

    result: Dict[str, Any] = {
        "state": state.model_dump(mode="json"),
        "current_stage": stage.model_dump(mode="json") if stage else None,
        "workflow_name": version.name,
    }
    if include_requirements:
        result["requirements"] = engine.stage_requirements(application_id).model_dump(mode="json")
    return result


@router.get("/{application_id}/transitions")
def list_available_transitions(
    application_id: str,
    actor: ActorContext = Depends(get_actor_dep),
    correlation_id: str = Depends(get_correlation_id_dep),
    engine: WorkflowEngine = Depends(get_engine)
) -> List[Dict[str, Any]]:
    """Outgoing transitions of the current stage and whether this actor can take them"""
    return [t.model_dump(mode="json") for t in engine.available_transitions(application_id, actor)]


@router.post("/{application_id}/transitions/{transition_id}", response_model=TransitionResponse)
def trigger_transition(
    application_id: str,
    transition_id: str,
    actor: ActorContext = Depends(get_actor_dep),
    correlation_id: str = Depends(get_correlation_id_dep),
    engine: WorkflowEngine = Depends(get_engine)
):
    """
    Perform a manual transition

    403 without permission, 409 from another stage, 422 when its condition
    is not met, 423 while another update of the application is running.
    """
    committed = engine.attempt_transition(
        application_id,
        transition_id,
        actor,
        correlation_id=correlation_id
    )
    return _transition_response(application_id, committed)


@router.post("/{application_id}/evaluate-automatic", response_model=AutomaticSweepResponse)
def evaluate_automatic(
    application_id: str,
    actor: ActorContext = Depends(get_actor_dep),
    correlation_id: str = Depends(get_correlation_id_dep),
    engine: WorkflowEngine = Depends(get_engine)
):
    """Fire at most one automatic transition whose condition now holds"""
    committed = engine.evaluate_automatic(application_id, correlation_id=correlation_id)
    if committed is None:
        return AutomaticSweepResponse(application_id=application_id, fired=False)

    logger.info(
        f"Automatic sweep requested by {actor.actor_id} fired {committed.entry.transition_id}",
        extra={"application_id": application_id, "actor_id": actor.actor_id}
    )
    return AutomaticSweepResponse(
        application_id=application_id,
        fired=True,
        history_entry=committed.entry.model_dump(mode="json"),
        state=committed.state.model_dump(mode="json")
    )


@router.get("/{application_id}/timeline")
def get_timeline(
    application_id: str,
    actor: ActorContext = Depends(get_actor_dep),
    correlation_id: str = Depends(get_correlation_id_dep),
    engine: WorkflowEngine = Depends(get_engine)
):
    """Stage changes of the application, oldest first"""
    entries = engine.timeline(application_id)
    return {
        "application_id": application_id,
        "items": [e.model_dump(mode="json") for e in entries],
        "total": len(entries)
    }
