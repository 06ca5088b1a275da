"""Action Outbox API Routes - Inspect and retry stage-entry side effects"""
from typing import Any, Dict, List, Optional
from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from ..deps import get_actor_dep, get_action_dispatcher, get_correlation_id_dep, require_permission
from ...domain.models import ActorContext
from ...domain.enums import ActionStatus, WorkflowPermission
from ...engine.action_dispatcher import ActionDispatcher
from ...utils.logger import get_logger

logger = get_logger(__name__)
router = APIRouter()


class ActionListResponse(BaseModel):
    """Response for action list"""
    items: List[Dict[str, Any]]
    page: int
    page_size: int
    total: int


def _list(
    dispatcher: ActionDispatcher,
    status: Optional[ActionStatus],
    application_id: Optional[str],
    page: int,
    page_size: int
) -> ActionListResponse:
    skip = (page - 1) * page_size
    actions = dispatcher.list_actions(status=status, application_id=application_id, skip=skip, limit=page_size)
    return ActionListResponse(
        items=[a.model_dump(mode="json") for a in actions],
        page=page,
        page_size=page_size,
        total=dispatcher.count_actions(status=status, application_id=application_id)
    )


@router.get("", response_model=ActionListResponse)
async def list_actions(
    status: Optional[ActionStatus] = Query(None),
    application_id: Optional[str] = Query(None),
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=200),
    actor: ActorContext = Depends(get_actor_dep),
    correlation_id: str = Depends(get_correlation_id_dep),
    dispatcher: ActionDispatcher = Depends(get_action_dispatcher)
):
    """List outbox actions, newest first"""
    return _list(dispatcher, status, application_id, page, page_size)


@router.get("/dead-letter", response_model=ActionListResponse)
async def list_dead_letter(
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=200),
    actor: ActorContext = Depends(get_actor_dep),
    correlation_id: str = Depends(get_correlation_id_dep),
    dispatcher: ActionDispatcher = Depends(get_action_dispatcher)
):
    """Actions that ran out of delivery attempts"""
    return _list(dispatcher, ActionStatus.DEAD_LETTER, None, page, page_size)


@router.post("/{action_id}/retry")
async def retry_action(
    action_id: str,
    actor: ActorContext = Depends(require_permission(WorkflowPermission.MANAGE_ACTIONS)),
    correlation_id: str = Depends(get_correlation_id_dep),
    dispatcher: ActionDispatcher = Depends(get_action_dispatcher)
):
    """Re-queue a dead-lettered action with a fresh retry budget"""
    action = dispatcher.retry_dead_letter(action_id)
    logger.info(
        f"Dead-lettered action requeued by {actor.actor_id}",
        extra={"action_id": action_id, "actor_id": actor.actor_id}
    )
    return action.model_dump(mode="json")
