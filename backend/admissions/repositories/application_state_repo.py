"""Application State Repository - current stage and logical clock per application"""
from typing import Any, Dict, List, Optional
from pymongo.collection import Collection
from pymongo import ASCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError

from .mongo_client import APPLICATION_STATES, get_collection
from ..domain.models import ApplicationWorkflowState, HistoryEntry
from ..domain.errors import AlreadyExistsError, ApplicationNotFoundError, ConcurrencyError
from ..utils.logger import get_logger
from ..utils.time import utc_now

logger = get_logger(__name__)


class ApplicationStateRepository:
    """Repository for ApplicationWorkflowState documents"""

    def __init__(self):
        self._states: Collection = get_collection(APPLICATION_STATES)

    def create_state(self, state: ApplicationWorkflowState) -> ApplicationWorkflowState:
        """Create state for an application entering the workflow"""
        doc = state.model_dump()
        doc["_id"] = state.application_id

        try:
            self._states.insert_one(doc)
        except DuplicateKeyError:
            raise AlreadyExistsError(
                f"Application {state.application_id} is already in a workflow",
                details={"application_id": state.application_id}
            )

        logger.info(
            f"Application entered workflow at stage {state.current_stage_id}",
            extra={
                "application_id": state.application_id,
                "workflow_version_id": state.workflow_version_id,
                "stage_id": state.current_stage_id
            }
        )
        return state

    def get_state(self, application_id: str) -> Optional[ApplicationWorkflowState]:
        """Get state by application ID"""
        doc = self._states.find_one({"application_id": application_id})
        if doc:
            doc.pop("_id", None)
            return ApplicationWorkflowState.model_validate(doc)
        return None

    def get_state_or_raise(self, application_id: str) -> ApplicationWorkflowState:
        """Get state or raise error"""
        state = self.get_state(application_id)
        if not state:
            raise ApplicationNotFoundError(
                f"Application {application_id} has not entered a workflow",
                details={"application_id": application_id}
            )
        return state

    def advance(
        self,
        application_id: str,
        expected_clock: int,
        entry: HistoryEntry,
        in_terminal_stage: bool
    ) -> ApplicationWorkflowState:
        """
        Move the application to entry.to_stage_id if its clock is still expected_clock.

        Raises:
            ConcurrencyError: If another writer moved the clock first
        """
        result = self._states.find_one_and_update(
            {"application_id": application_id, "clock": expected_clock},
            {
                "$set": {
                    "current_stage_id": entry.to_stage_id,
                    "clock": entry.sequence,
                    "entered_stage_at": entry.timestamp,
                    "last_history_id": entry.history_id,
                    "last_transition_at": entry.timestamp,
                    "in_terminal_stage": in_terminal_stage,
                    "updated_at": utc_now()
                }
            },
            return_document=ReturnDocument.AFTER
        )

        if result is None:
            if self._states.find_one({"application_id": application_id}) is None:
                raise ApplicationNotFoundError(f"Application {application_id} has not entered a workflow")
            raise ConcurrencyError(
                f"Application {application_id} changed stage concurrently",
                details={"application_id": application_id, "expected_clock": expected_clock}
            )

        result.pop("_id", None)
        return ApplicationWorkflowState.model_validate(result)

    def list_in_flight(
        self,
        after_application_id: Optional[str] = None,
        limit: int = 200
    ) -> List[ApplicationWorkflowState]:
        """
        Applications not yet in a terminal stage, ordered by application ID.

        Pages by key rather than offset: pass the last ID of the previous page
        as after_application_id. Advancing an application does not reorder it.
        """
        query: Dict[str, Any] = {"in_terminal_stage": False}
        if after_application_id is not None:
            query["application_id"] = {"$gt": after_application_id}
        cursor = self._states.find(query).sort("application_id", ASCENDING).limit(limit)

        states = []
        for doc in cursor:
            doc.pop("_id", None)
            states.append(ApplicationWorkflowState.model_validate(doc))
        return states

