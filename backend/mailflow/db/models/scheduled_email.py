"""Scheduled email ledger model and its status vocabulary."""
from enum import Enum as PyEnum
from sqlalchemy import Column, Integer, String, DateTime, Text, Boolean, JSON, Index
from mailflow.db.base import Base, new_id, utcnow


class EmailStatus(str, PyEnum):
    """Lifecycle status of a ledger row."""
    PENDING = "pending"
    SCHEDULED = "scheduled"
    SENDING = "sending"  # claimed by a dispatch worker
    SENT = "sent"
    CANCELLED = "cancelled"
    FAILED = "failed"
    SUPPRESSED = "suppressed"


class SuppressionReason(str, PyEnum):
    """Why a recipient must not be contacted."""
    BOUNCED = "bounced"
    COMPLAINED = "complained"
    UNSUBSCRIBED = "unsubscribed"


class EmailType(str, PyEnum):
    """Transactional mail ignores marketing opt-outs; marketing mail does not."""
    TRANSACTIONAL = "transactional"
    MARKETING = "marketing"


OPEN_STATUSES = (EmailStatus.PENDING.value, EmailStatus.SCHEDULED.value)
TERMINAL_STATUSES = (EmailStatus.SENT.value, EmailStatus.CANCELLED.value, EmailStatus.SUPPRESSED.value)


class ScheduledEmail(Base):
    """One individual send. Rows are never deleted."""

    __tablename__ = "scheduled_emails"

    id = Column(String(36), primary_key=True, default=new_id)
    idempotency_key = Column(String(255), unique=True, nullable=True)

    # Addressing
    user_id = Column(String(255), nullable=True)
    email_address = Column(String(320), nullable=False)

    # Template binding
    template_id = Column(String(36), nullable=False)
    template_version = Column(Integer, nullable=False)
    template_snapshot = Column(JSON, nullable=False)
    variables = Column(JSON, nullable=False, default=dict)

    # Flow linkage
    flow_id = Column(String(36), nullable=True)
    flow_step_id = Column(String(36), nullable=True)
    flow_trigger_id = Column(String(255), nullable=True)
    triggered_at = Column(DateTime, nullable=True)

    status = Column(String(20), nullable=False, default=EmailStatus.PENDING.value)

    # Timing
    scheduled_at = Column(DateTime, nullable=False, default=utcnow)
    sent_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    claimed_at = Column(DateTime, nullable=True)

    # Retry bookkeeping; retry_count counts failed provider attempts
    retry_count = Column(Integer, nullable=False, default=0)
    last_retry_at = Column(DateTime, nullable=True)
    last_error = Column(Text, nullable=True)

    suppression_reason = Column(String(20), nullable=True)

    # Provenance
    is_test = Column(Boolean, nullable=False, default=False)
    meta = Column("metadata", JSON, nullable=False, default=dict)

    # Provider correlation
    resend_email_id = Column(String(255), nullable=True, index=True)
    resend_scheduled_id = Column(String(255), nullable=True, index=True)
    provider_cancelled_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("idx_scheduled_emails_due", "status", "scheduled_at"),
        Index("idx_scheduled_emails_trigger", "flow_trigger_id"),
        Index("idx_scheduled_emails_user_flow", "user_id", "flow_id"),
        Index("idx_scheduled_emails_address", "email_address"),
    )

    @property
    def email_type(self) -> str:
        return (self.meta or {}).get("email_type", EmailType.MARKETING.value)

    def __repr__(self) -> str:
        return f"<ScheduledEmail(id={self.id}, status='{self.status}', scheduled_at={self.scheduled_at})>"
