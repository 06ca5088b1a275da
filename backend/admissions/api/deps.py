"""API Dependencies - Common dependencies for routes"""
from typing import Callable, Optional
from fastapi import Depends, Header

from ..domain.models import ActorContext
from ..domain.enums import WorkflowPermission
from ..domain.errors import AuthenticationError
from ..engine.engine import WorkflowEngine
from ..engine.action_dispatcher import ActionDispatcher
from ..engine.permission_guard import PermissionGuard
from ..services.identity_service import IdentityService
from ..utils.logger import set_correlation_id
from ..utils.idgen import generate_correlation_id


async def get_correlation_id_dep(
    x_correlation_id: Optional[str] = Header(None, alias="X-Correlation-Id")
) -> str:
    """
    Get or generate correlation ID for request tracing

    If client provides X-Correlation-Id, use it.
    Otherwise generate a new one.
    """
    correlation_id = x_correlation_id or generate_correlation_id()
    set_correlation_id(correlation_id)
    return correlation_id


def get_identity_service() -> IdentityService:
    return IdentityService()


def get_engine() -> WorkflowEngine:
    return WorkflowEngine()


def get_action_dispatcher() -> ActionDispatcher:
    return ActionDispatcher()


def get_actor_dep(
    x_actor_id: Optional[str] = Header(None, alias="X-Actor-Id"),
    identity: IdentityService = Depends(get_identity_service)
) -> ActorContext:
    """
    Resolve the calling actor.

    Authentication happens upstream; the gateway forwards the actor ID and the
    identity service supplies its permission tags.

    Raises:
        AuthenticationError: 401 if the header is missing or the actor is unknown
    """
    if not x_actor_id:
        raise AuthenticationError("X-Actor-Id header is missing")
    return identity.resolve_actor(x_actor_id)


def require_permission(permission: WorkflowPermission) -> Callable[..., ActorContext]:
    """Dependency factory: the actor must hold one administrative permission"""

    def checker(actor: ActorContext = Depends(get_actor_dep)) -> ActorContext:
        PermissionGuard().require_permission(actor, permission.value)
        return actor

    return checker
