"""Lock Repository - Per-application lease locks

Leases are taken with an atomic find-and-modify, so only one worker across
all servers may run a transition attempt for an application at a time. A
crashed holder's lease simply expires.
"""
import time
from datetime import timedelta
from pymongo.collection import Collection
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

from .mongo_client import APPLICATION_LOCKS, get_collection
from ..utils.logger import get_logger
from ..utils.time import utc_now

logger = get_logger(__name__)


class ApplicationLockRepository:
    """Lease locks keyed by application ID"""

    def __init__(self):
        self._locks: Collection = get_collection(APPLICATION_LOCKS)

    def _ensure_lock_document(self, application_id: str) -> None:
        try:
            self._locks.update_one(
                {"application_id": application_id},
                {"$setOnInsert": {
                    "_id": application_id,
                    "application_id": application_id,
                    "locked_by": None,
                    "locked_until": None
                }},
                upsert=True
            )
        except DuplicateKeyError:
            # Another worker created it between our find and insert
            pass

    def try_acquire(self, application_id: str, lock_by: str, lease_seconds: int) -> bool:
        """
        Single attempt to take the lease.

        Returns:
            True if this caller now holds the lock
        """
        self._ensure_lock_document(application_id)

        now = utc_now()
        result = self._locks.find_one_and_update(
            {
                "application_id": application_id,
                "$or": [
                    {"locked_until": {"$lte": now}},
                    {"locked_until": None}
                ]
            },
            {
                "$set": {
                    "locked_by": lock_by,
                    "locked_until": now + timedelta(seconds=lease_seconds),
                    "lock_acquired_at": now
                }
            },
            return_document=ReturnDocument.AFTER
        )
        return result is not None and result.get("locked_by") == lock_by

    def acquire(
        self,
        application_id: str,
        lock_by: str,
        lease_seconds: int,
        wait_seconds: float,
        poll_interval_seconds: float
    ) -> bool:
        """
        Take the lease, polling until wait_seconds elapse.

        Returns:
            True if acquired, False on timeout
        """
        deadline = time.monotonic() + max(wait_seconds, 0)
        while True:
            if self.try_acquire(application_id, lock_by, lease_seconds):
                logger.debug(
                    f"Lock acquired on application {application_id}",
                    extra={"application_id": application_id, "server_id": lock_by}
                )
                return True
            if time.monotonic() >= deadline:
                logger.info(
                    f"Timed out waiting for lock on application {application_id}",
                    extra={"application_id": application_id, "server_id": lock_by}
                )
                return False
            time.sleep(poll_interval_seconds)

    def release(self, application_id: str, lock_by: str) -> bool:
        """Release the lease if this caller still holds it"""
        try:
            result = self._locks.update_one(
                {"application_id": application_id, "locked_by": lock_by},
                {"$set": {"locked_by": None, "locked_until": None}}
            )
            return result.modified_count > 0
        except PyMongoError as e:
            # The lease expires on its own
            logger.error(
                f"Database error releasing lock on application {application_id}: {e}",
                extra={"application_id": application_id}
            )
            return False

    def cleanup_stale_locks(self, max_lock_age_minutes: int = 10) -> int:
        """
        Clear leases that expired more than max_lock_age_minutes ago.

        Returns:
            Number of stale locks cleaned up
        """
        cutoff = utc_now() - timedelta(minutes=max_lock_age_minutes)
        result = self._locks.update_many(
            {"locked_until": {"$lte": cutoff}, "locked_by": {"$ne": None}},
            {"$set": {"locked_by": None, "locked_until": None}}
        )
        if result.modified_count > 0:
            logger.warning(
                f"Cleaned up {result.modified_count} stale application locks",
                extra={"stale_count": result.modified_count}
            )
        return result.modified_count
