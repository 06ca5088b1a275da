"""Service modules - Business logic layer"""
from .workflow_service import WorkflowService
from .identity_service import IdentityService
from .context_builder import ContextBuilder
from .delivery_service import DeliveryService
from .fact_sources import ApplicationRecordsClient, DocumentServiceClient, PaymentServiceClient

__all__ = [
    "WorkflowService",
    "IdentityService",
    "ContextBuilder",
    "DeliveryService",
    "ApplicationRecordsClient",
    "DocumentServiceClient",
    "PaymentServiceClient",
]
