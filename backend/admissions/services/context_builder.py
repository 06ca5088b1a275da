"""Context Builder - Assemble the fact snapshot guards are evaluated against"""
from datetime import datetime
from typing import Any, Dict, List, Optional

from ..config.settings import settings
from ..domain.models import ApplicationWorkflowState, Stage, WorkflowDefinition
from ..domain.enums import DocumentStatus, PaymentStatus
from .fact_sources import ApplicationRecordsClient, DocumentServiceClient, PaymentServiceClient
from ..utils.logger import get_logger
from ..utils.time import coerce_datetime, days_between, utc_now

logger = get_logger(__name__)

# Engine facts win over application record fields of the same name
RESERVED_FACTS = {
    "application_id",
    "applicant_category",
    "current_stage",
    "current_stage_name",
    "documents",
    "verified_documents",
    "missing_documents",
    "required_documents",
    "required_actions",
    "all_required_documents_verified",
    "payments",
    "payment_status",
    "entered_stage_at",
    "days_in_stage",
    "now",
}


class ContextBuilder:
    """
    Fetch facts from the collaborating services, once per transition attempt.

    The result is a plain dict, so guard evaluation never performs I/O.
    """

    def __init__(
        self,
        documents: Optional[DocumentServiceClient] = None,
        payments: Optional[PaymentServiceClient] = None,
        records: Optional[ApplicationRecordsClient] = None
    ):
        self.documents = documents or DocumentServiceClient()
        self.payments = payments or PaymentServiceClient()
        self.records = records or ApplicationRecordsClient()

    def build(
        self,
        state: ApplicationWorkflowState,
        definition: WorkflowDefinition,
        now: Optional[datetime] = None
    ) -> Dict[str, Any]:
        """
        Build the guard context for an application at its current stage

        Raises:
            FactSourceError: A collaborating service failed
        """
        now = now or utc_now()
        stage = definition.get_stage(state.current_stage_id)
        application_id = state.application_id

        record = self._application_facts(application_id)
        documents = self.documents.document_status(application_id)
        required_documents = self._required_documents(stage, documents)
        verified_documents = [
            tag for tag, status in documents.items() if status == DocumentStatus.VERIFIED.value
        ]
        missing_documents = [
            tag for tag in required_documents if documents.get(tag) != DocumentStatus.VERIFIED.value
        ]

        payments = {
            fee_type: self.payments.payment_status(application_id, fee_type)
            for fee_type in settings.payment_fee_types_list
        }

        context: Dict[str, Any] = {
            key: value for key, value in record.items() if key not in RESERVED_FACTS
        }
        context.setdefault("completed_actions", [])
        context.update({
            "application": record,
            "application_id": application_id,
            "applicant_category": state.applicant_category,
            "current_stage": state.current_stage_id,
            "current_stage_name": stage.name if stage else None,
            "documents": documents,
            "verified_documents": verified_documents,
            "missing_documents": missing_documents,
            "required_documents": required_documents,
            "required_actions": list(stage.required_actions) if stage else [],
            "all_required_documents_verified": not missing_documents,
            "payments": payments,
            "payment_status": payments.get(settings.default_fee_type, PaymentStatus.UNPAID.value),
            "entered_stage_at": state.entered_stage_at,
            "days_in_stage": days_between(state.entered_stage_at, now),
            "now": now,
        })

        logger.debug(
            f"Built guard context with {len(context)} facts",
            extra={"application_id": application_id, "stage_id": state.current_stage_id}
        )
        return context

    def _application_facts(self, application_id: str) -> Dict[str, Any]:
        """Application record with *_at fields parsed to datetimes"""
        record = dict(self.records.get_application(application_id))
        for key, value in record.items():
            if key.endswith("_at") and isinstance(value, str):
                try:
                    record[key] = coerce_datetime(value)
                except (TypeError, ValueError):
                    logger.warning(
                        f"Application fact {key} is not a date: {value!r}",
                        extra={"application_id": application_id}
                    )
        return record

    @staticmethod
    def _required_documents(stage: Optional[Stage], documents: Dict[str, str]) -> List[str]:
        """Stage requirements first, then every other tag the document service tracks"""
        required = list(stage.required_documents) if stage else []
        for tag in documents:
            if tag not in required:
                required.append(tag)
        return required
