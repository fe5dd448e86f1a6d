"""Per-user email preference model."""
from sqlalchemy import Column, Integer, String, DateTime, Boolean, Text, JSON, UniqueConstraint
from mailflow.db.base import Base


class UserEmailPreferences(Base):
    """Marketing opt-in state for one user/address pair."""

    __tablename__ = "user_email_preferences"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(255), nullable=False, index=True)
    email_address = Column(String(320), nullable=False)
    marketing_emails_enabled = Column(Boolean, nullable=False, default=True)
    unsubscribed_at = Column(DateTime, nullable=True)
    unsubscribe_reason = Column(Text, nullable=True)
    email_topics = Column(JSON, nullable=False, default=list)

    __table_args__ = (
        UniqueConstraint("user_id", "email_address", name="uq_user_email_preferences"),
    )

    def __repr__(self) -> str:
        return f"<UserEmailPreferences(user_id='{self.user_id}', marketing={self.marketing_emails_enabled})>"
