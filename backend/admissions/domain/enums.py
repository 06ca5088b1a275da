"""Domain Enumerations - All status and type definitions"""
from enum import Enum


class WorkflowStatus(str, Enum):
    """Workflow template lifecycle"""
    DRAFT = "DRAFT"  # Never published
    PUBLISHED = "PUBLISHED"  # At least one immutable version exists


class ActionKind(str, Enum):
    """Side effects the dispatcher knows how to deliver"""
    NOTIFY = "NOTIFY"
    INTEGRATE = "INTEGRATE"
    RECOMPUTE_CHECKLIST = "RECOMPUTE_CHECKLIST"


class ActionStatus(str, Enum):
    """Outbox record status"""
    PENDING = "PENDING"
    DELIVERED = "DELIVERED"
    DEAD_LETTER = "DEAD_LETTER"


class DocumentStatus(str, Enum):
    """Status reported by the document service per required tag"""
    VERIFIED = "verified"
    PENDING = "pending"
    MISSING = "missing"


class PaymentStatus(str, Enum):
    """Status reported by the payment service per fee type"""
    PAID = "paid"
    UNPAID = "unpaid"


class UnavailableReason(str, Enum):
    """Why a transition cannot be taken right now"""
    NOT_FROM_CURRENT_STAGE = "NOT_FROM_CURRENT_STAGE"
    PERMISSION_DENIED = "PERMISSION_DENIED"
    CONDITION_NOT_MET = "CONDITION_NOT_MET"
    AUTOMATIC_ONLY = "AUTOMATIC_ONLY"


class WorkflowPermission(str, Enum):
    """Permission tags checked by the administrative endpoints"""
    EDIT_WORKFLOW = "edit_workflow"
    ACTIVATE_WORKFLOW = "activate_workflow"
    MANAGE_ACTIONS = "manage_workflow_actions"
