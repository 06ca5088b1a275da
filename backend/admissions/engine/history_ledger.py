"""History Ledger - Append-only record of stage changes"""
from typing import List, Optional

from ..domain.models import HistoryEntry
from ..repositories.history_repo import HistoryRepository
from ..utils.logger import get_logger

logger = get_logger(__name__)


class HistoryLedger:
    """
    Write and read history entries (append-only)

    Only the engine's commit step appends. There is no update or delete path.
    """

    def __init__(self, repo: Optional[HistoryRepository] = None):
        self.repo = repo or HistoryRepository()

    def append(self, entry: HistoryEntry) -> HistoryEntry:
        """
        Append an entry.

        Raises:
            ConcurrencyError: If the sequence slot is already taken
        """
        return self.repo.append(entry)

    def timeline(self, application_id: str) -> List[HistoryEntry]:
        """All stage changes of an application, oldest first"""
        return self.repo.list_for_application(application_id)

    def latest(self, application_id: str) -> Optional[HistoryEntry]:
        """Most recent stage change"""
        return self.repo.get_latest(application_id)

    def at_sequence(self, application_id: str, sequence: int) -> Optional[HistoryEntry]:
        return self.repo.get_by_sequence(application_id, sequence)
