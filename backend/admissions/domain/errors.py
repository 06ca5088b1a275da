"""Domain Errors

Every failure the engine reports is a DomainError; the API turns error_code
and http_status into the response, so handlers never map exceptions by hand.
"""
from typing import Any, Dict, Optional


class DomainError(Exception):
    """Carries a stable error_code, an HTTP status and structured details"""

    error_code: str = "DOMAIN_ERROR"
    http_status: int = 400

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        error_code: Optional[str] = None
    ):
        super().__init__(message)
        self.message = message
        self.details = details or {}
        if error_code:
            self.error_code = error_code

    def to_dict(self) -> Dict[str, Any]:
        """Error envelope returned by the API"""
        return {
            "error": {
                "code": self.error_code,
                "message": self.message,
                "details": self.details
            }
        }


# Authentication & Authorization Errors
class AuthenticationError(DomainError):
    """Actor header missing or actor unknown to the identity service"""
    error_code = "AUTHENTICATION_ERROR"
    http_status = 401


class AuthorizationError(DomainError):
    """Actor lacks permission for action"""
    error_code = "AUTHORIZATION_ERROR"
    http_status = 403


class PermissionDeniedError(AuthorizationError):
    """Actor does not hold every permission tag the operation requires"""
    error_code = "PERMISSION_DENIED"


# Validation Errors
class ValidationError(DomainError):
    """Input validation failed"""
    error_code = "VALIDATION_ERROR"
    http_status = 400


class WorkflowValidationError(ValidationError):
    """Workflow definition is structurally unsound; details carry every error"""
    error_code = "WORKFLOW_VALIDATION_ERROR"


# Not Found Errors
class NotFoundError(DomainError):
    """Resource not found"""
    error_code = "NOT_FOUND"
    http_status = 404


class WorkflowNotFoundError(NotFoundError):
    """Workflow or workflow version not found"""
    error_code = "WORKFLOW_NOT_FOUND"


class ActiveWorkflowNotFoundError(NotFoundError):
    """No active workflow for the applicant category"""
    error_code = "ACTIVE_WORKFLOW_NOT_FOUND"


class ApplicationNotFoundError(NotFoundError):
    """Application has no workflow state"""
    error_code = "APPLICATION_NOT_FOUND"


class TransitionNotFoundError(NotFoundError):
    """Transition id does not exist in the bound definition"""
    error_code = "TRANSITION_NOT_FOUND"


class ActionNotFoundError(NotFoundError):
    """Outbox action not found"""
    error_code = "ACTION_NOT_FOUND"


# Transition Rejections
class TransitionRejectedError(DomainError):
    """A manual transition attempt was refused"""
    error_code = "TRANSITION_REJECTED"
    http_status = 409


class NotFromCurrentStageError(TransitionRejectedError):
    """Requested transition does not leave the application's current stage"""
    error_code = "NOT_FROM_CURRENT_STAGE"


class ConditionNotMetError(TransitionRejectedError):
    """Transition guard evaluated false or could not be evaluated"""
    error_code = "CONDITION_NOT_MET"
    http_status = 422


# Conflict Errors
class ConflictError(DomainError):
    """Resource conflict (e.g., concurrent modification)"""
    error_code = "CONFLICT"
    http_status = 409


class ConcurrencyError(ConflictError):
    """Optimistic concurrency conflict"""
    error_code = "CONCURRENCY_CONFLICT"


class InvalidStateError(ConflictError):
    """Action not valid for current state"""
    error_code = "INVALID_STATE"


class AlreadyExistsError(ConflictError):
    """Resource already exists"""
    error_code = "ALREADY_EXISTS"


class BusyError(DomainError):
    """Per-application lock could not be acquired in time"""
    error_code = "BUSY"
    http_status = 423


# Condition Language Errors
class ConditionError(DomainError):
    """Base for guard expression failures"""
    error_code = "CONDITION_ERROR"
    http_status = 400


class ConditionSyntaxError(ConditionError):
    """Expression does not parse under the guard grammar"""
    error_code = "CONDITION_SYNTAX_ERROR"


class ConditionEvaluationError(ConditionError):
    """Expression parsed but could not be evaluated (type mismatch, bad argument)"""
    error_code = "CONDITION_EVALUATION_ERROR"


class UnknownFactError(ConditionEvaluationError):
    """Expression references a fact missing from the context"""
    error_code = "UNKNOWN_FACT"


# External Service Errors
class ExternalServiceError(DomainError):
    """External service failure"""
    error_code = "EXTERNAL_SERVICE_ERROR"
    http_status = 502


class FactSourceError(ExternalServiceError):
    """Document, payment or records service failed while building a guard context"""
    error_code = "FACT_SOURCE_ERROR"


class IdentityServiceError(ExternalServiceError):
    """Identity service failed while resolving an actor"""
    error_code = "IDENTITY_SERVICE_ERROR"


class DispatchFailureError(ExternalServiceError):
    """Action delivery failed; handled by the outbox retry pipeline"""
    error_code = "DISPATCH_FAILURE"
