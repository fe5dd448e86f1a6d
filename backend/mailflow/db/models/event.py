"""Provider delivery event log."""
from sqlalchemy import Column, Integer, String, DateTime, JSON, UniqueConstraint
from mailflow.db.base import Base


class EmailEvent(Base):
    """One webhook event. The unique key makes redelivered webhooks no-ops."""

    __tablename__ = "email_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    scheduled_email_id = Column(String(36), nullable=True, index=True)
    resend_email_id = Column(String(255), nullable=False)
    event_type = Column(String(50), nullable=False)
    event_data = Column(JSON, nullable=False, default=dict)
    occurred_at = Column(DateTime, nullable=False)

    __table_args__ = (
        UniqueConstraint("resend_email_id", "event_type", "occurred_at", name="uq_email_events_delivery"),
    )

    def __repr__(self) -> str:
        return f"<EmailEvent(resend_email_id='{self.resend_email_id}', event_type='{self.event_type}')>"
