"""Action Repository - Data access for the action outbox

Provides distributed locking for multi-server deployments using MongoDB
atomic operations, so an outbox record is delivered by one worker at a time.
"""
from typing import Any, Dict, List, Optional
from datetime import timedelta
from pymongo.collection import Collection
from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

from .mongo_client import ACTION_OUTBOX, get_collection
from ..domain.models import ActionRecord
from ..domain.enums import ActionStatus
from ..domain.errors import ActionNotFoundError, InvalidStateError
from ..utils.logger import get_logger
from ..utils.time import utc_now

logger = get_logger(__name__)


class ActionRepository:
    """Repository for action outbox operations"""

    def __init__(self):
        self._outbox: Collection = get_collection(ACTION_OUTBOX)

    def create_action(self, action: ActionRecord) -> Optional[ActionRecord]:
        """
        Insert an action.

        Returns:
            The action, or None when its idempotency key was already enqueued
        """
        doc = action.model_dump()
        doc["_id"] = action.action_id

        try:
            self._outbox.insert_one(doc)
        except DuplicateKeyError:
            logger.info(
                f"Action {action.idempotency_key} already enqueued",
                extra={"application_id": action.application_id, "history_id": action.history_id}
            )
            return None

        logger.info(
            f"Enqueued action: {action.kind} {action.tag}",
            extra={"action_id": action.action_id, "application_id": action.application_id}
        )
        return action

    def get_action(self, action_id: str) -> Optional[ActionRecord]:
        """Get action by ID"""
        doc = self._outbox.find_one({"action_id": action_id})
        if doc:
            doc.pop("_id", None)
            return ActionRecord.model_validate(doc)
        return None

    def get_action_or_raise(self, action_id: str) -> ActionRecord:
        """Get action or raise error"""
        action = self.get_action(action_id)
        if not action:
            raise ActionNotFoundError(f"Action {action_id} not found")
        return action

    def get_pending_actions(self, limit: int = 100) -> List[ActionRecord]:
        """
        Get pending actions ready for delivery.

        Only returns actions that:
        - Have PENDING status
        - Are not locked (or lock expired)
        - Are ready for retry (or first attempt)
        """
        now = utc_now()

        try:
            cursor = self._outbox.find({
                "status": ActionStatus.PENDING.value,
                "$and": [
                    {"$or": [
                        {"next_retry_at": {"$lte": now}},
                        {"next_retry_at": None}
                    ]},
                    {"$or": [
                        {"locked_until": {"$lte": now}},
                        {"locked_until": None}
                    ]}
                ]
            }).sort("created_at", ASCENDING).limit(limit)

            actions = []
            for doc in cursor:
                doc.pop("_id", None)
                actions.append(ActionRecord.model_validate(doc))
            return actions

        except PyMongoError as e:
            logger.error(f"Database error fetching pending actions: {e}")
            return []

    def acquire_lock(
        self,
        action_id: str,
        lock_by: str,
        lock_duration_seconds: int = 60
    ) -> bool:
        """
        Try to acquire distributed lock on an action using atomic find-and-modify.

        Args:
            action_id: The action to lock
            lock_by: Unique identifier for this locker (e.g., "server1-pid123-uuid")
            lock_duration_seconds: How long to hold the lock

        Returns:
            True if lock acquired, False otherwise
        """
        now = utc_now()
        lock_until = now + timedelta(seconds=lock_duration_seconds)

        try:
            result = self._outbox.find_one_and_update(
                {
                    "action_id": action_id,
                    "status": ActionStatus.PENDING.value,
                    "$or": [
                        {"locked_until": {"$lte": now}},
                        {"locked_until": None}
                    ]
                },
                {
                    "$set": {
                        "locked_until": lock_until,
                        "locked_by": lock_by,
                        "lock_acquired_at": now
                    }
                },
                return_document=ReturnDocument.BEFORE
            )
            return result is not None

        except PyMongoError as e:
            logger.error(
                f"Database error acquiring lock on action {action_id}: {e}",
                extra={"action_id": action_id}
            )
            return False

    def cleanup_stale_locks(self, max_lock_age_minutes: int = 10) -> int:
        """
        Clean up stale locks from crashed processes.

        Returns:
            Number of stale locks cleaned up
        """
        cutoff = utc_now() - timedelta(minutes=max_lock_age_minutes)

        result = self._outbox.update_many(
            {
                "locked_until": {"$lte": cutoff},
                "locked_by": {"$ne": None}
            },
            {
                "$set": {"locked_until": None, "locked_by": None},
                "$unset": {"lock_acquired_at": ""}
            }
        )

        if result.modified_count > 0:
            logger.warning(f"Cleaned up {result.modified_count} stale action locks")
        return result.modified_count

    def mark_delivered(self, action_id: str) -> ActionRecord:
        """Mark action as delivered"""
        now = utc_now()
        result = self._outbox.find_one_and_update(
            {"action_id": action_id},
            {
                "$set": {
                    "status": ActionStatus.DELIVERED.value,
                    "delivered_at": now,
                    "last_error": None,
                    "next_retry_at": None,
                    "locked_until": None,
                    "locked_by": None
                }
            },
            return_document=ReturnDocument.AFTER
        )

        if result is None:
            raise ActionNotFoundError(f"Action {action_id} not found")

        result.pop("_id", None)
        logger.info(f"Action delivered: {action_id}", extra={"action_id": action_id})
        return ActionRecord.model_validate(result)

    def mark_failed(
        self,
        action_id: str,
        error: str,
        max_retries: int,
        backoff_base_seconds: int,
        backoff_max_seconds: int
    ) -> ActionRecord:
        """
        Record a failed delivery.

        Schedules a retry with exponential backoff (base, 2*base, 4*base ...
        capped at backoff_max_seconds) or moves the action to DEAD_LETTER once
        max_retries deliveries have failed.
        """
        action = self.get_action_or_raise(action_id)
        new_retry_count = action.retry_count + 1
        now = utc_now()

        updates: Dict[str, Any] = {
            "retry_count": new_retry_count,
            "last_error": error,
            "locked_until": None,
            "locked_by": None
        }

        if new_retry_count >= max_retries:
            updates["status"] = ActionStatus.DEAD_LETTER.value
            updates["next_retry_at"] = None
            updates["dead_lettered_at"] = now
        else:
            backoff = min(backoff_base_seconds * (2 ** action.retry_count), backoff_max_seconds)
            updates["status"] = ActionStatus.PENDING.value
            updates["next_retry_at"] = now + timedelta(seconds=backoff)

        result = self._outbox.find_one_and_update(
            {"action_id": action_id},
            {"$set": updates},
            return_document=ReturnDocument.AFTER
        )

        result.pop("_id", None)
        updated = ActionRecord.model_validate(result)
        log = logger.error if updated.status == ActionStatus.DEAD_LETTER.value else logger.warning
        log(
            f"Action delivery failed ({new_retry_count}/{max_retries}): {action_id}",
            extra={"action_id": action_id, "status": updated.status}
        )
        return updated

    def requeue_dead_letter(self, action_id: str) -> ActionRecord:
        """Move a dead-lettered action back to PENDING with a fresh retry budget"""
        result = self._outbox.find_one_and_update(
            {"action_id": action_id, "status": ActionStatus.DEAD_LETTER.value},
            {
                "$set": {
                    "status": ActionStatus.PENDING.value,
                    "retry_count": 0,
                    "next_retry_at": None,
                    "dead_lettered_at": None,
                    "locked_until": None,
                    "locked_by": None
                }
            },
            return_document=ReturnDocument.AFTER
        )

        if result is None:
            action = self.get_action_or_raise(action_id)
            raise InvalidStateError(
                f"Action {action_id} is {action.status}, only DEAD_LETTER actions can be retried",
                details={"action_id": action_id, "status": action.status}
            )

        result.pop("_id", None)
        logger.info(f"Dead-lettered action requeued: {action_id}", extra={"action_id": action_id})
        return ActionRecord.model_validate(result)

    def list_actions(
        self,
        status: Optional[ActionStatus] = None,
        application_id: Optional[str] = None,
        skip: int = 0,
        limit: int = 50
    ) -> List[ActionRecord]:
        """List actions, newest first"""
        query: Dict[str, Any] = {}
        if status:
            query["status"] = ActionStatus(status).value
        if application_id:
            query["application_id"] = application_id

        cursor = self._outbox.find(query).sort("created_at", DESCENDING).skip(skip).limit(limit)

        actions = []
        for doc in cursor:
            doc.pop("_id", None)
            actions.append(ActionRecord.model_validate(doc))
        return actions

    def count_actions(
        self,
        status: Optional[ActionStatus] = None,
        application_id: Optional[str] = None
    ) -> int:
        """Count actions"""
        query: Dict[str, Any] = {}
        if status:
            query["status"] = ActionStatus(status).value
        if application_id:
            query["application_id"] = application_id
        return self._outbox.count_documents(query)
