"""Active Pointer Repository - category -> active workflow version"""
from typing import List, Optional
from pymongo.collection import Collection
from pymongo import ASCENDING

from .mongo_client import ACTIVE_POINTERS, get_collection
from ..domain.models import ActiveDefinitionPointer
from ..utils.logger import get_logger

logger = get_logger(__name__)


class ActivePointerRepository:
    """Repository for the single active-definition record per applicant category"""

    def __init__(self):
        self._pointers: Collection = get_collection(ACTIVE_POINTERS)

    def get_pointer(self, applicant_category: str) -> Optional[ActiveDefinitionPointer]:
        """Read the canonical pointer (never cached here)"""
        doc = self._pointers.find_one({"applicant_category": applicant_category})
        if doc:
            doc.pop("_id", None)
            return ActiveDefinitionPointer.model_validate(doc)
        return None

    def set_pointer(self, pointer: ActiveDefinitionPointer) -> ActiveDefinitionPointer:
        """Point a category at a version, replacing whatever was active"""
        doc = pointer.model_dump()
        doc["_id"] = pointer.applicant_category

        self._pointers.replace_one(
            {"applicant_category": pointer.applicant_category},
            doc,
            upsert=True
        )
        logger.info(
            f"Activated {pointer.workflow_version_id} for category {pointer.applicant_category}",
            extra={
                "applicant_category": pointer.applicant_category,
                "workflow_id": pointer.workflow_id,
                "workflow_version_id": pointer.workflow_version_id
            }
        )
        return pointer

    def clear_pointer(self, applicant_category: str, workflow_id: Optional[str] = None) -> bool:
        """Remove the pointer; when workflow_id is given only if it still points at that workflow"""
        query = {"applicant_category": applicant_category}
        if workflow_id:
            query["workflow_id"] = workflow_id

        result = self._pointers.delete_one(query)
        if result.deleted_count > 0:
            logger.info(
                f"Deactivated workflow for category {applicant_category}",
                extra={"applicant_category": applicant_category, "workflow_id": workflow_id}
            )
            return True
        return False

    def list_pointers(self) -> List[ActiveDefinitionPointer]:
        """List every active pointer"""
        pointers = []
        for doc in self._pointers.find({}).sort("applicant_category", ASCENDING):
            doc.pop("_id", None)
            pointers.append(ActiveDefinitionPointer.model_validate(doc))
        return pointers
