"""Suppression list model for do-not-contact addresses."""
from sqlalchemy import Column, Integer, String
from mailflow.db.base import Base


class EmailSuppression(Base):
    """Suppression list entry. Blocks every email type for the address."""

    __tablename__ = "email_suppressions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    email_address = Column(String(320), unique=True, nullable=False, index=True)
    reason = Column(String(20), nullable=False)  # bounced, complained, unsubscribed
    source = Column(String(50), nullable=True)  # webhook, unsubscribe, admin

    def __repr__(self) -> str:
        return f"<EmailSuppression(email_address='{self.email_address}', reason='{self.reason}')>"
