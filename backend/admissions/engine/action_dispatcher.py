"""Action Dispatcher - Outbox of side effects triggered by stage changes

Actions are written to the outbox with a unique idempotency key and
delivered later by the scheduler. Delivery failures are retried with
exponential backoff and end in DEAD_LETTER; they never touch workflow state.
"""
from typing import Any, Dict, List, Optional

from ..config.settings import settings
from ..domain.models import ActionRecord, Stage, StageChanged
from ..domain.enums import ActionKind, ActionStatus
from ..domain.errors import DispatchFailureError
from ..repositories.action_repo import ActionRepository
from ..services.delivery_service import DeliveryService
from ..utils.idgen import generate_action_id, generate_id
from ..utils.logger import get_logger
from ..utils.time import utc_now

logger = get_logger(__name__)

CHECKLIST_TAG = "checklist"


def action_key(prefix: str, kind: ActionKind, tag: str) -> str:
    """Idempotency key of one stage-entry action"""
    return f"{prefix}:{kind.value}:{tag}"


class ActionDispatcher:
    """Enqueue and deliver outbox actions"""

    def __init__(
        self,
        repo: Optional[ActionRepository] = None,
        delivery: Optional[DeliveryService] = None
    ):
        self.repo = repo or ActionRepository()
        self.delivery = delivery or DeliveryService()

    # =========================================================================
    # Producing
    # =========================================================================

    def dispatch(
        self,
        kind: ActionKind,
        tag: str,
        context: Dict[str, Any],
        idempotency_key: str,
        application_id: Optional[str] = None,
        history_id: Optional[str] = None
    ) -> Optional[ActionRecord]:
        """
        Enqueue an action. A key that was already enqueued is a no-op.

        Returns:
            The new record, or None for a duplicate key
        """
        action = ActionRecord(
            action_id=generate_action_id(),
            idempotency_key=idempotency_key,
            kind=kind,
            tag=tag,
            application_id=application_id,
            history_id=history_id,
            payload=dict(context),
            created_at=utc_now()
        )
        return self.repo.create_action(action)

    def enqueue_stage_actions(
        self,
        stage: Stage,
        application_id: str,
        key_prefix: str,
        payload: Dict[str, Any],
        history_id: Optional[str] = None
    ) -> List[ActionRecord]:
        """
        Enqueue everything a stage triggers on entry:
        one NOTIFY per notification trigger, one INTEGRATE per integration
        trigger, and a checklist recompute when the stage has requirements.
        """
        planned = [(ActionKind.NOTIFY, tag) for tag in stage.notification_triggers]
        planned += [(ActionKind.INTEGRATE, tag) for tag in stage.integration_triggers]
        if stage.required_documents or stage.required_actions:
            planned.append((ActionKind.RECOMPUTE_CHECKLIST, CHECKLIST_TAG))

        created = []
        for kind, tag in planned:
            action = self.dispatch(
                kind,
                tag,
                payload,
                idempotency_key=action_key(key_prefix, kind, tag),
                application_id=application_id,
                history_id=history_id
            )
            if action:
                created.append(action)
        return created

    def on_stage_changed(self, event: StageChanged, stage: Stage, correlation_id: Optional[str] = None) -> List[ActionRecord]:
        """Enqueue the target stage's actions, keyed by the history entry"""
        payload = {
            "application_id": event.application_id,
            "from_stage_id": event.from_stage_id,
            "to_stage_id": event.to_stage_id,
            "stage_name": stage.name,
            "transition_id": event.transition_id,
            "history_id": event.history_id,
            "workflow_version_id": event.workflow_version_id,
            "occurred_at": event.occurred_at.isoformat(),
            "correlation_id": correlation_id,
        }
        return self.enqueue_stage_actions(
            stage,
            event.application_id,
            key_prefix=event.history_id,
            payload=payload,
            history_id=event.history_id
        )

    # =========================================================================
    # Delivering
    # =========================================================================

    async def process_pending(self, worker_id: str, limit: Optional[int] = None) -> Dict[str, int]:
        """
        Deliver a batch of due actions.

        Each action is leased before delivery so only one worker sends it.

        Returns:
            {"delivered", "failed", "skipped"} counts
        """
        summary = {"delivered": 0, "failed": 0, "skipped": 0}
        actions = self.repo.get_pending_actions(limit=limit or settings.dispatch_batch_size)

        for action in actions:
            lock_id = f"{worker_id}-{generate_id()[:8]}"
            result = await self.deliver_one(action, lock_id)
            summary[result] += 1

        if actions:
            logger.info(
                f"Outbox cycle: {summary['delivered']} delivered, {summary['failed']} failed, "
                f"{summary['skipped']} skipped",
                extra={"server_id": worker_id}
            )
        return summary

    async def deliver_one(self, action: ActionRecord, lock_id: str) -> str:
        """
        Lease, deliver and record one action.

        Returns:
            "delivered", "failed" or "skipped" (leased elsewhere)
        """
        if not self.repo.acquire_lock(
            action.action_id,
            lock_id,
            lock_duration_seconds=settings.dispatch_lock_duration_seconds
        ):
            logger.debug(
                f"Action {action.action_id} locked by another process",
                extra={"action_id": action.action_id}
            )
            return "skipped"

        try:
            await self.delivery.deliver(action)
        except DispatchFailureError as e:
            self.repo.mark_failed(
                action.action_id,
                e.message,
                max_retries=settings.dispatch_max_retries,
                backoff_base_seconds=settings.dispatch_backoff_base_seconds,
                backoff_max_seconds=settings.dispatch_backoff_max_seconds
            )
            return "failed"
        except Exception as e:
            logger.error(
                f"Unexpected error delivering action {action.action_id}: {e}",
                extra={"action_id": action.action_id},
                exc_info=True
            )
            self.repo.mark_failed(
                action.action_id,
                f"{type(e).__name__}: {e}",
                max_retries=settings.dispatch_max_retries,
                backoff_base_seconds=settings.dispatch_backoff_base_seconds,
                backoff_max_seconds=settings.dispatch_backoff_max_seconds
            )
            return "failed"

        self.repo.mark_delivered(action.action_id)
        return "delivered"

    # =========================================================================
    # Administration
    # =========================================================================

    def retry_dead_letter(self, action_id: str) -> ActionRecord:
        """Re-queue a dead-lettered action"""
        return self.repo.requeue_dead_letter(action_id)

    def list_actions(
        self,
        status: Optional[ActionStatus] = None,
        application_id: Optional[str] = None,
        skip: int = 0,
        limit: int = 50
    ) -> List[ActionRecord]:
        return self.repo.list_actions(status=status, application_id=application_id, skip=skip, limit=limit)

    def count_actions(
        self,
        status: Optional[ActionStatus] = None,
        application_id: Optional[str] = None
    ) -> int:
        return self.repo.count_actions(status=status, application_id=application_id)
