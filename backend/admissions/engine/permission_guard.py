"""Permission Guard - Role-based gating of transitions"""
from typing import Iterable, List

from ..domain.models import ActorContext, Transition
from ..domain.errors import PermissionDeniedError
from ..utils.logger import get_logger

logger = get_logger(__name__)


class PermissionGuard:
    """
    Decide whether an actor may invoke a transition.

    Pure function of the actor's already-resolved permission set and the
    transition's required set: the actor must hold every listed tag.
    """

    def authorize(self, actor: ActorContext, transition: Transition) -> bool:
        """True if the actor holds every permission the transition requires"""
        return not self.missing_permissions(actor, transition.required_permissions)

    def missing_permissions(self, actor: ActorContext, required: Iterable[str]) -> List[str]:
        """Required tags the actor lacks, in the order they are listed"""
        held = set(actor.permissions)
        return [tag for tag in required if tag not in held]

    def require_transition(self, actor: ActorContext, transition: Transition) -> None:
        """
        Raises:
            PermissionDeniedError: Naming the missing tags
        """
        missing = self.missing_permissions(actor, transition.required_permissions)
        if missing:
            logger.info(
                f"Actor {actor.actor_id} denied transition {transition.transition_id}",
                extra={"actor_id": actor.actor_id, "transition_id": transition.transition_id}
            )
            raise PermissionDeniedError(
                f"You need permission {', '.join(missing)} to perform '{transition.name}'",
                details={"transition_id": transition.transition_id, "missing_permissions": missing}
            )

    def require_permission(self, actor: ActorContext, permission: str) -> None:
        """Check a single administrative permission"""
        if permission not in actor.permissions:
            raise PermissionDeniedError(
                f"You need permission {permission} for this operation",
                details={"missing_permissions": [permission]}
            )
