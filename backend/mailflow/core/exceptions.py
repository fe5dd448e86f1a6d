"""
Custom Exception Hierarchy for Mailflow

Provides domain-specific exceptions for the email scheduling engine
with error codes, HTTP status mapping, and context support.
"""

from typing import Optional, Dict, Any
from enum import Enum


class ErrorCode(str, Enum):
    """Standardized error codes for API responses."""

    # General errors (1xxx)
    UNKNOWN_ERROR = "ERR_1000"
    INTERNAL_ERROR = "ERR_1001"
    CONFIGURATION_ERROR = "ERR_1002"
    VALIDATION_ERROR = "ERR_1003"
    NOT_FOUND = "ERR_1004"
    CONFLICT = "ERR_1005"
    INVALID_STATE = "ERR_1006"

    # Templates (2xxx)
    TEMPLATE_NOT_FOUND = "ERR_2000"
    TEMPLATE_RENDER_FAILED = "ERR_2001"

    # Ledger (3xxx)
    SCHEDULED_EMAIL_NOT_FOUND = "ERR_3000"
    ILLEGAL_TRANSITION = "ERR_3001"
    DUPLICATE_IDEMPOTENCY_KEY = "ERR_3002"

    # Flows (4xxx)
    FLOW_NOT_FOUND = "ERR_4000"
    FLOW_STEP_INVALID = "ERR_4001"

    # Delivery (5xxx)
    PROVIDER_ERROR = "ERR_5000"
    PROVIDER_UNAVAILABLE = "ERR_5001"
    RECIPIENT_SUPPRESSED = "ERR_5002"
    WEBHOOK_SIGNATURE_INVALID = "ERR_5003"
    UNSUBSCRIBE_TOKEN_INVALID = "ERR_5004"


class MailflowError(Exception):
    """
    Base exception for all Mailflow errors.

    Provides:
    - Error code for categorization
    - HTTP status code mapping
    - Context dictionary for additional details
    """

    error_code: ErrorCode = ErrorCode.UNKNOWN_ERROR
    http_status: int = 500

    def __init__(
        self,
        message: str,
        *,
        error_code: Optional[ErrorCode] = None,
        http_status: Optional[int] = None,
        context: Optional[Dict[str, Any]] = None,
        cause: Optional[Exception] = None,
        details: Optional[Any] = None,
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code or self.__class__.error_code
        self.http_status = http_status or self.__class__.http_status
        self.context = context or {}
        self.cause = cause
        self.details = details

        # Chain exceptions
        if cause:
            self.__cause__ = cause

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for API responses."""
        result = {
            "error": self.message,
            "error_code": self.error_code.value,
        }
        if self.details is not None:
            result["details"] = self.details
        if self.context:
            result["context"] = self.context
        return result

    def __str__(self) -> str:
        parts = [f"[{self.error_code.value}] {self.message}"]
        if self.context:
            parts.append(f"Context: {self.context}")
        if self.cause:
            parts.append(f"Caused by: {type(self.cause).__name__}: {self.cause}")
        return " | ".join(parts)


class ConfigurationError(MailflowError):
    """Raised when configuration is missing or invalid."""
    error_code = ErrorCode.CONFIGURATION_ERROR
    http_status = 500


class ValidationError(MailflowError):
    """Raised when input validation fails."""
    error_code = ErrorCode.VALIDATION_ERROR
    http_status = 400


class NotFoundError(MailflowError):
    """Raised when a requested resource is not found."""
    error_code = ErrorCode.NOT_FOUND
    http_status = 404


class ConflictError(MailflowError):
    """Raised when there's a conflict with existing data."""
    error_code = ErrorCode.CONFLICT
    http_status = 409


class StateError(MailflowError):
    """Raised when an operation is illegal for the row's current status."""
    error_code = ErrorCode.INVALID_STATE
    http_status = 409


# =============================================================================
# Template Errors
# =============================================================================

class TemplateNotFoundError(NotFoundError):
    """Raised when a template id, name, or version does not resolve."""
    error_code = ErrorCode.TEMPLATE_NOT_FOUND


class EmailTemplateError(MailflowError):
    """Raised when email template rendering fails."""
    error_code = ErrorCode.TEMPLATE_RENDER_FAILED
    http_status = 400


# =============================================================================
# Ledger Errors
# =============================================================================

class ScheduledEmailNotFoundError(NotFoundError):
    """Raised when a scheduled email id does not exist."""
    error_code = ErrorCode.SCHEDULED_EMAIL_NOT_FOUND


class IllegalTransitionError(StateError):
    """Raised when a status change is not an edge of the ledger state machine."""
    error_code = ErrorCode.ILLEGAL_TRANSITION

    def __init__(self, message: str, *, current: Optional[str] = None, target: Optional[str] = None, **kwargs):
        context = kwargs.pop("context", {})
        context.update({"current_status": current, "target_status": target})
        super().__init__(message, context=context, **kwargs)
        self.current = current
        self.target = target


class DuplicateIdempotencyKeyError(ConflictError):
    """Raised when strict uniqueness is requested and the key already exists."""
    error_code = ErrorCode.DUPLICATE_IDEMPOTENCY_KEY


# =============================================================================
# Flow Errors
# =============================================================================

class FlowNotFoundError(NotFoundError):
    """Raised when a flow does not exist or is inactive."""
    error_code = ErrorCode.FLOW_NOT_FOUND


class FlowStepError(ValidationError):
    """Raised when a flow step references a template that does not resolve."""
    error_code = ErrorCode.FLOW_STEP_INVALID


# =============================================================================
# Delivery Errors
# =============================================================================

class ProviderError(MailflowError):
    """Raised when the outbound email provider rejects or fails a request."""
    error_code = ErrorCode.PROVIDER_ERROR
    http_status = 502
    delivery_unknown = False

    def __init__(
        self,
        message: str,
        *,
        provider: str = "unknown",
        status_code: Optional[int] = None,
        **kwargs
    ):
        context = kwargs.pop("context", {})
        context.update({
            "provider": provider,
            "provider_status_code": status_code,
        })
        super().__init__(message, context=context, **kwargs)
        self.provider = provider
        self.provider_status_code = status_code


class ProviderUnavailableError(ProviderError):
    """Raised when no provider is configured or reachable."""
    error_code = ErrorCode.PROVIDER_UNAVAILABLE
    http_status = 503


class ProviderTimeoutError(ProviderError):
    """Raised when a request was sent but no answer came back.

    The provider may or may not have accepted the message, so another
    provider must not be tried for it.
    """
    delivery_unknown = True


class SuppressionError(MailflowError):
    """Internal signal that a recipient must not be contacted."""
    error_code = ErrorCode.RECIPIENT_SUPPRESSED
    http_status = 409

    def __init__(self, message: str, *, reason: str, **kwargs):
        super().__init__(message, **kwargs)
        self.reason = reason
        self.context["suppression_reason"] = reason


class WebhookSignatureError(MailflowError):
    """Raised when a provider webhook fails signature verification."""
    error_code = ErrorCode.WEBHOOK_SIGNATURE_INVALID
    http_status = 400


class UnsubscribeTokenError(MailflowError):
    """Raised when an unsubscribe token is malformed, forged, or expired."""
    error_code = ErrorCode.UNSUBSCRIBE_TOKEN_INVALID
    http_status = 400
