# Core utilities module
from .logging import get_logger, configure_logging, LogContext
from .config import Settings, get_settings
from .exceptions import (
    MailflowError,
    ConfigurationError,
    ValidationError,
    NotFoundError,
    ConflictError,
    StateError,
    TemplateNotFoundError,
    EmailTemplateError,
    ScheduledEmailNotFoundError,
    IllegalTransitionError,
    DuplicateIdempotencyKeyError,
    FlowNotFoundError,
    FlowStepError,
    ProviderError,
    ProviderUnavailableError,
    ProviderTimeoutError,
    SuppressionError,
    WebhookSignatureError,
    UnsubscribeTokenError,
)

__all__ = [
    # Logging
    "get_logger",
    "configure_logging",
    "LogContext",
    # Config
    "Settings",
    "get_settings",
    # Exceptions
    "MailflowError",
    "ConfigurationError",
    "ValidationError",
    "NotFoundError",
    "ConflictError",
    "StateError",
    "TemplateNotFoundError",
    "EmailTemplateError",
    "ScheduledEmailNotFoundError",
    "IllegalTransitionError",
    "DuplicateIdempotencyKeyError",
    "FlowNotFoundError",
    "FlowStepError",
    "ProviderError",
    "ProviderUnavailableError",
    "ProviderTimeoutError",
    "SuppressionError",
    "WebhookSignatureError",
    "UnsubscribeTokenError",
]
