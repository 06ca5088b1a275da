"""History Repository - Data access for the append-only stage-change ledger"""
from typing import List, Optional
from pymongo.collection import Collection
from pymongo import ASCENDING, DESCENDING
from pymongo.errors import DuplicateKeyError

from .mongo_client import HISTORY, get_collection
from ..domain.models import HistoryEntry
from ..domain.errors import ConcurrencyError
from ..utils.logger import get_logger

logger = get_logger(__name__)


class HistoryRepository:
    """Repository for history entries (append-only, no update or delete paths)"""

    def __init__(self):
        self._history: Collection = get_collection(HISTORY)

    def append(self, entry: HistoryEntry) -> HistoryEntry:
        """
        Insert an entry.

        Raises:
            ConcurrencyError: If the (application_id, sequence) slot is already taken
        """
        doc = entry.model_dump()
        doc["_id"] = entry.history_id

        try:
            self._history.insert_one(doc)
        except DuplicateKeyError:
            raise ConcurrencyError(
                f"History sequence {entry.sequence} already recorded for {entry.application_id}",
                details={"application_id": entry.application_id, "sequence": entry.sequence}
            )

        logger.info(
            f"Recorded stage change {entry.from_stage_id} -> {entry.to_stage_id}",
            extra={
                "application_id": entry.application_id,
                "history_id": entry.history_id,
                "transition_id": entry.transition_id,
                "actor_id": entry.actor_id
            }
        )
        return entry

    def list_for_application(self, application_id: str) -> List[HistoryEntry]:
        """All entries for an application ordered by sequence"""
        cursor = self._history.find({"application_id": application_id}).sort("sequence", ASCENDING)

        entries = []
        for doc in cursor:
            doc.pop("_id", None)
            entries.append(HistoryEntry.model_validate(doc))
        return entries

    def get_latest(self, application_id: str) -> Optional[HistoryEntry]:
        """Entry with the highest sequence"""
        doc = self._history.find_one(
            {"application_id": application_id},
            sort=[("sequence", DESCENDING)]
        )
        if doc:
            doc.pop("_id", None)
            return HistoryEntry.model_validate(doc)
        return None

    def get_by_sequence(self, application_id: str, sequence: int) -> Optional[HistoryEntry]:
        """Entry occupying one sequence slot"""
        doc = self._history.find_one({"application_id": application_id, "sequence": sequence})
        if doc:
            doc.pop("_id", None)
            return HistoryEntry.model_validate(doc)
        return None
