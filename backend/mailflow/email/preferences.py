"""
Recipient preferences and the suppression list.

A suppression-list entry blocks every email type for an address.
Marketing mail is additionally blocked when the user has opted out.
"""

from datetime import datetime
from typing import Optional, Tuple, List, Dict, Any

from sqlalchemy import select, delete
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..core.logging import get_logger
from ..core.exceptions import ValidationError
from ..db.base import utcnow
from ..db.models import (
    EmailSuppression,
    UserEmailPreferences,
    ScheduledEmail,
    SuppressionReason,
    EmailType,
    OPEN_STATUSES,
)
from .orchestrator import FlowOrchestrator
from .store import EmailLedger
from .unsubscribe import normalize_email

logger = get_logger(__name__)

UNSUBSCRIBED_EVENT = "unsubscribed"

_UNSET = object()


class PreferenceService:
    """Suppression checks and opt-out bookkeeping."""

    def __init__(self, db: Session):
        self.db = db

    # =========================================================================
    # Suppression list
    # =========================================================================

    def get_suppression(self, email_address: str) -> Optional[EmailSuppression]:
        stmt = select(EmailSuppression).where(EmailSuppression.email_address == normalize_email(email_address))
        return self.db.execute(stmt).scalar_one_or_none()

    def add_suppression(self, email_address: str, reason: str, source: Optional[str] = None) -> EmailSuppression:
        """Idempotent: an existing entry keeps its original reason."""
        address = normalize_email(email_address)
        if not address:
            raise ValidationError("An email address is required for suppression")
        reason = SuppressionReason(reason).value

        existing = self.get_suppression(address)
        if existing is not None:
            return existing

        entry = EmailSuppression(email_address=address, reason=reason, source=source)
        self.db.add(entry)
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            return self.get_suppression(address)
        self.db.refresh(entry)
        logger.info(f"Suppressed {address} ({reason})", extra={"reason": reason, "source": source})
        return entry

    def remove_suppression(self, email_address: str) -> bool:
        result = self.db.execute(
            delete(EmailSuppression).where(EmailSuppression.email_address == normalize_email(email_address))
        )
        self.db.commit()
        return result.rowcount > 0

    # =========================================================================
    # Preferences
    # =========================================================================

    def _find_preferences(self, user_id: str, email_address: str) -> Optional[UserEmailPreferences]:
        stmt = select(UserEmailPreferences).where(
            UserEmailPreferences.user_id == user_id,
            UserEmailPreferences.email_address == normalize_email(email_address),
        )
        return self.db.execute(stmt).scalar_one_or_none()

    def get_preferences(self, user_id: str, email_address: str) -> UserEmailPreferences:
        """Stored preferences, or an unsaved default (marketing enabled)."""
        prefs = self._find_preferences(user_id, email_address)
        if prefs is None:
            prefs = UserEmailPreferences(
                user_id=user_id,
                email_address=normalize_email(email_address),
                marketing_emails_enabled=True,
                email_topics=[],
            )
        return prefs

    def marketing_disabled(self, user_id: str) -> bool:
        stmt = select(UserEmailPreferences.id).where(
            UserEmailPreferences.user_id == user_id,
            UserEmailPreferences.marketing_emails_enabled.is_(False),
        )
        return self.db.execute(stmt).first() is not None

    def check_can_send(
        self,
        email_address: str,
        user_id: Optional[str] = None,
        email_type: str = EmailType.MARKETING.value,
    ) -> Optional[str]:
        """Return the suppression reason that blocks this send, or None."""
        suppression = self.get_suppression(email_address)
        if suppression is not None:
            return suppression.reason
        if email_type == EmailType.MARKETING.value and user_id and self.marketing_disabled(user_id):
            return SuppressionReason.UNSUBSCRIBED.value
        return None

    def _upsert(self, user_id: str, email_address: str, **values) -> UserEmailPreferences:
        prefs = self._find_preferences(user_id, email_address)
        if prefs is None:
            prefs = UserEmailPreferences(
                user_id=user_id,
                email_address=normalize_email(email_address),
                email_topics=[],
            )
            self.db.add(prefs)
        for key, value in values.items():
            setattr(prefs, key, value)
        return prefs

    def unsubscribe_user(
        self,
        user_id: str,
        email_address: str,
        reason: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Tuple[UserEmailPreferences, int]:
        """
        Opt the user out of marketing mail.

        Open marketing rows for the user are cancelled with
        ``suppression_reason=unsubscribed`` and flows listening for the
        ``unsubscribed`` event are cancelled for the user. Returns the
        preferences and the number of rows cancelled.
        """
        now = now or utcnow()
        prefs = self._upsert(
            user_id,
            email_address,
            marketing_emails_enabled=False,
            unsubscribed_at=now,
            unsubscribe_reason=reason,
        )
        self.db.commit()
        self.db.refresh(prefs)

        cancelled = self._cancel_marketing(user_id, now)
        logger.info(
            f"User {user_id} unsubscribed from marketing email",
            extra={"user_id": user_id, "cancelled": cancelled},
        )
        return prefs, cancelled

    def _cancel_marketing(self, user_id: str, now: datetime) -> int:
        open_rows = self.db.execute(
            select(ScheduledEmail.id, ScheduledEmail.meta).where(
                ScheduledEmail.user_id == user_id,
                ScheduledEmail.status.in_(OPEN_STATUSES),
            )
        ).all()
        marketing_ids = [
            row_id for row_id, meta in open_rows
            if (meta or {}).get("email_type", EmailType.MARKETING.value) == EmailType.MARKETING.value
        ]
        cancelled = 0
        if marketing_ids:
            cancelled = EmailLedger(self.db).cancel_where(
                ScheduledEmail.id.in_(marketing_ids),
                now=now,
                suppression_reason=SuppressionReason.UNSUBSCRIBED.value,
            )

        cancelled += FlowOrchestrator(self.db).cancel_for_event(UNSUBSCRIBED_EVENT, user_id, now=now)
        return cancelled

    def update_preferences(
        self,
        user_id: str,
        email_address: str,
        marketing_emails_enabled: Optional[bool] = None,
        email_topics: Optional[List[str]] = None,
        unsubscribe_reason: Any = _UNSET,
        now: Optional[datetime] = None,
    ) -> Tuple[UserEmailPreferences, int]:
        """
        Partial update; arguments left out keep their stored value.

        Turning marketing off while it was on cancels open marketing rows
        the same way an unsubscribe link does. Turning it on clears the
        opt-out timestamp and reason.
        """
        now = now or utcnow()
        was_enabled = self.get_preferences(user_id, email_address).marketing_emails_enabled

        values: Dict[str, Any] = {}
        if email_topics is not None:
            values["email_topics"] = list(email_topics)
        if unsubscribe_reason is not _UNSET:
            values["unsubscribe_reason"] = unsubscribe_reason
        if marketing_emails_enabled is False:
            values.update(marketing_emails_enabled=False, unsubscribed_at=now)
        elif marketing_emails_enabled is True:
            values.update(marketing_emails_enabled=True, unsubscribed_at=None, unsubscribe_reason=None)

        prefs = self._upsert(user_id, email_address, **values)
        self.db.commit()
        self.db.refresh(prefs)

        cancelled = 0
        if marketing_emails_enabled is False and was_enabled:
            cancelled = self._cancel_marketing(user_id, now)
        logger.info(
            f"Updated email preferences for user {user_id}",
            extra={"user_id": user_id, "fields": sorted(values), "cancelled": cancelled},
        )
        return prefs, cancelled
