"""Database models package."""
from mailflow.db.models.template import EmailTemplate
from mailflow.db.models.scheduled_email import (
    ScheduledEmail,
    EmailStatus,
    SuppressionReason,
    EmailType,
    OPEN_STATUSES,
    TERMINAL_STATUSES,
)
from mailflow.db.models.flow import EmailFlow, EmailFlowStep
from mailflow.db.models.suppression import EmailSuppression
from mailflow.db.models.event import EmailEvent
from mailflow.db.models.preferences import UserEmailPreferences

__all__ = [
    "EmailTemplate",
    "ScheduledEmail",
    "EmailStatus",
    "SuppressionReason",
    "EmailType",
    "OPEN_STATUSES",
    "TERMINAL_STATUSES",
    "EmailFlow",
    "EmailFlowStep",
    "EmailSuppression",
    "EmailEvent",
    "UserEmailPreferences",
]
