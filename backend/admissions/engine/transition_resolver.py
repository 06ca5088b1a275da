"""Transition Resolver - Pick the transition to fire from the current stage"""
from typing import Any, Dict, List, Optional

from ..domain.models import ActorContext, AvailableTransition, Transition, WorkflowDefinition
from ..domain.enums import PaymentStatus, UnavailableReason
from ..domain.errors import (
    ConditionError,
    ConditionNotMetError,
    NotFromCurrentStageError,
    TransitionNotFoundError,
)
from .condition_evaluator import ConditionEvaluator
from .permission_guard import PermissionGuard
from ..utils.logger import get_logger

logger = get_logger(__name__)


class TransitionResolver:
    """
    Resolve transitions for the current stage of an application

    Manual trigger:
    1. The transition must exist in the bound definition
    2. It must leave the current stage
    3. The actor must hold every required permission
    4. Its guard (if any) must evaluate true

    Automatic sweep:
    1. Candidates are the automatic transitions leaving the current stage
    2. Order by priority (desc); equal priorities keep authoring order
    3. The first guard that evaluates true wins; evaluation errors count as false
    """

    def __init__(self):
        self.condition_evaluator = ConditionEvaluator()
        self.permission_guard = PermissionGuard()

    def automatic_candidates(self, definition: WorkflowDefinition, stage_id: str) -> List[Transition]:
        """Automatic transitions in evaluation order"""
        candidates = [t for t in definition.outgoing(stage_id) if t.is_automatic]
        # sorted() is stable, so ties stay in authoring order
        return sorted(candidates, key=lambda t: -t.priority)

    def select_automatic(
        self,
        definition: WorkflowDefinition,
        stage_id: str,
        context: Dict[str, Any]
    ) -> Optional[Transition]:
        """
        Return the first automatic transition whose guard holds, or None
        """
        for transition in self.automatic_candidates(definition, stage_id):
            if not transition.condition or not transition.condition.strip():
                return transition
            try:
                if self.condition_evaluator.evaluate(transition.condition, context):
                    return transition
            except ConditionError as e:
                logger.warning(
                    f"Guard of automatic transition {transition.transition_id} could not be evaluated: {e.message}",
                    extra={
                        "application_id": context.get("application_id"),
                        "transition_id": transition.transition_id,
                        "stage_id": stage_id
                    }
                )
        return None

    def resolve_manual(
        self,
        definition: WorkflowDefinition,
        current_stage_id: str,
        transition_id: str,
        actor: ActorContext
    ) -> Transition:
        """
        Find a manually requested transition and check it may be taken by actor.

        The guard is checked separately by check_guard once facts are fetched.

        Raises:
            TransitionNotFoundError: Unknown transition ID
            NotFromCurrentStageError: Transition leaves another stage
            PermissionDeniedError: Actor lacks a required permission
        """
        transition = definition.get_transition(transition_id)
        if transition is None:
            raise TransitionNotFoundError(
                f"Transition {transition_id} does not exist in this workflow",
                details={"transition_id": transition_id}
            )

        if transition.source_stage_id != current_stage_id:
            stage = definition.get_stage(current_stage_id)
            raise NotFromCurrentStageError(
                f"'{transition.name}' cannot be performed from stage "
                f"'{stage.name if stage else current_stage_id}'",
                details={
                    "transition_id": transition_id,
                    "current_stage_id": current_stage_id,
                    "source_stage_id": transition.source_stage_id
                }
            )

        if not actor.is_system:
            self.permission_guard.require_transition(actor, transition)
        return transition

    def check_guard(self, transition: Transition, context: Dict[str, Any]) -> Optional[bool]:
        """
        Evaluate a transition's guard.

        Returns:
            True when the guard holds, None when the transition is unguarded

        Raises:
            ConditionNotMetError: Guard is false or could not be evaluated
        """
        if not transition.condition or not transition.condition.strip():
            return None

        try:
            result = self.condition_evaluator.evaluate(transition.condition, context)
        except ConditionError as e:
            logger.warning(
                f"Guard of transition {transition.transition_id} could not be evaluated: {e.message}",
                extra={"application_id": context.get("application_id"), "transition_id": transition.transition_id}
            )
            raise ConditionNotMetError(
                f"Cannot perform '{transition.name}': {e.message}",
                details={"transition_id": transition.transition_id, "condition": transition.condition}
            )

        if not result:
            reasons = self.explain_unmet(transition, context)
            message = f"Cannot perform '{transition.name}'"
            message += f": {'; '.join(reasons)}" if reasons else ": requirements not met"
            raise ConditionNotMetError(
                message,
                details={
                    "transition_id": transition.transition_id,
                    "condition": transition.condition,
                    "reasons": reasons,
                    "missing_documents": list(context.get("missing_documents") or [])
                }
            )
        return True

    def explain_unmet(self, transition: Transition, context: Dict[str, Any]) -> List[str]:
        """Human-readable reasons a guard over well-known facts is false"""
        try:
            facts = self.condition_evaluator.referenced_facts(transition.condition)
        except ConditionError:
            return []

        reasons = []
        if facts & {"documents", "verified_documents", "missing_documents", "all_required_documents_verified"}:
            missing = context.get("missing_documents") or []
            if missing:
                reasons.append(f"documents not yet verified: {', '.join(missing)}")

        if facts & {"payments", "payment_status"}:
            unpaid = [
                fee for fee, status in (context.get("payments") or {}).items()
                if status != PaymentStatus.PAID.value
            ]
            if unpaid:
                reasons.append(f"payment not received: {', '.join(unpaid)}")

        if facts & {"required_actions", "completed_actions"}:
            completed = set(context.get("completed_actions") or [])
            pending = [a for a in context.get("required_actions") or [] if a not in completed]
            if pending:
                reasons.append(f"actions not completed: {', '.join(pending)}")

        return reasons

    def describe_available(
        self,
        definition: WorkflowDefinition,
        current_stage_id: str,
        actor: ActorContext,
        context: Optional[Dict[str, Any]]
    ) -> List[AvailableTransition]:
        """
        Outgoing transitions of the current stage as seen by actor

        Guards are evaluated only when a context is given.
        """
        described = []
        for transition in definition.outgoing(current_stage_id):
            target = definition.get_stage(transition.target_stage_id)
            item = AvailableTransition(
                transition_id=transition.transition_id,
                name=transition.name,
                target_stage_id=transition.target_stage_id,
                target_stage_name=target.name if target else None,
                is_automatic=transition.is_automatic,
                available=True
            )

            missing = self.permission_guard.missing_permissions(actor, transition.required_permissions)
            if transition.is_automatic:
                item.available = False
                item.reason_code = UnavailableReason.AUTOMATIC_ONLY.value
                item.reason = "Performed automatically when its condition is met"
            elif missing:
                item.available = False
                item.reason_code = UnavailableReason.PERMISSION_DENIED.value
                item.reason = f"Requires permission {', '.join(missing)}"
                item.missing_permissions = missing
            elif context is not None:
                try:
                    self.check_guard(transition, context)
                except ConditionNotMetError as e:
                    item.available = False
                    item.reason_code = UnavailableReason.CONDITION_NOT_MET.value
                    item.reason = e.message

            described.append(item)
        return described
