"""
Resend webhook intake.

Resend signs webhooks with Svix: the signed payload is
``{svix-id}.{svix-timestamp}.{raw body}`` under HMAC-SHA256 with the
base64-decoded ``whsec_`` secret. Events are logged once per
(provider id, event type, occurred_at); redelivered events are
acknowledged without reprocessing.
"""

import base64
import binascii
import hashlib
import hmac
import json
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Dict, Any, Mapping

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..core.logging import get_logger, LogContext
from ..core.exceptions import WebhookSignatureError, ValidationError
from ..db.base import utcnow, as_utc
from ..db.models import EmailEvent, ScheduledEmail, EmailStatus, SuppressionReason
from .preferences import PreferenceService
from .store import EmailLedger

logger = get_logger(__name__)

TOLERANCE_SECONDS = 300

SENT = "email.sent"
DELIVERED = "email.delivered"
OPENED = "email.opened"
CLICKED = "email.clicked"
BOUNCED = "email.bounced"
COMPLAINED = "email.complained"
SCHEDULED = "email.scheduled"

KNOWN_EVENTS = {SENT, DELIVERED, OPENED, CLICKED, BOUNCED, COMPLAINED, SCHEDULED}

SUPPRESSING_EVENTS = {
    BOUNCED: SuppressionReason.BOUNCED.value,
    COMPLAINED: SuppressionReason.COMPLAINED.value,
}


def _pad_b64(value: str) -> str:
    return value + "=" * (-len(value) % 4)


def _secret_bytes(secret: str) -> bytes:
    if not secret.startswith("whsec_"):
        return secret.encode("utf-8")
    encoded = _pad_b64(secret[len("whsec_"):])
    # urlsafe first: standard b64decode silently drops '-' and '_'
    for decoder in (base64.urlsafe_b64decode, base64.b64decode):
        try:
            decoded = decoder(encoded)
        except (binascii.Error, ValueError):
            continue
        if decoded:
            return decoded
    raise WebhookSignatureError("Webhook signing secret is malformed")


def sign_payload(body: bytes, secret: str, msg_id: str, timestamp: str) -> str:
    """Compute the ``v1,<base64>`` signature Svix sends for a payload."""
    signed = f"{msg_id}.{timestamp}.{body.decode('utf-8')}".encode("utf-8")
    digest = hmac.new(_secret_bytes(secret), signed, hashlib.sha256).digest()
    return "v1," + base64.b64encode(digest).decode("utf-8")


def verify_signature(body: bytes, headers: Mapping[str, str], secret: str, now: Optional[int] = None) -> None:
    """Raise WebhookSignatureError unless the Svix headers sign ``body``."""
    if not secret:
        raise WebhookSignatureError("Webhook secret is not configured")

    msg_id = headers.get("svix-id", "")
    timestamp = headers.get("svix-timestamp", "")
    signatures = headers.get("svix-signature", "")
    if not msg_id or not timestamp or not signatures:
        raise WebhookSignatureError("Missing webhook signature headers")

    try:
        sent_at = int(timestamp)
    except (TypeError, ValueError):
        raise WebhookSignatureError("Malformed webhook timestamp")
    current = int(now if now is not None else time.time())
    if abs(current - sent_at) > TOLERANCE_SECONDS:
        raise WebhookSignatureError("Webhook timestamp outside tolerance window")

    try:
        expected = sign_payload(body, secret, msg_id, timestamp).split(",", 1)[1]
    except UnicodeDecodeError:
        raise WebhookSignatureError("Webhook body is not valid UTF-8")

    # Header format: "v1,<sig> v1,<sig2>" during secret rotation
    for entry in signatures.split(" "):
        version, _, sig = entry.partition(",")
        if version == "v1" and hmac.compare_digest(sig, expected):
            return
    raise WebhookSignatureError("Invalid webhook signature")


def parse_event(body: bytes) -> Dict[str, Any]:
    try:
        event = json.loads(body)
    except (ValueError, UnicodeDecodeError) as e:
        raise ValidationError("Webhook body is not valid JSON", cause=e)
    if not isinstance(event, dict) or not event.get("type"):
        raise ValidationError("Webhook event has no type")
    data = event.get("data")
    if not isinstance(data, dict) or not data.get("email_id"):
        raise ValidationError("Webhook event has no data.email_id")
    return event


def _parse_timestamp(value: Optional[str]) -> datetime:
    if not value:
        return utcnow()
    try:
        return as_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))
    except ValueError as e:
        raise ValidationError(f"Invalid event timestamp: {value}", cause=e)


@dataclass
class WebhookOutcome:
    event_type: str
    message: str
    duplicate: bool = False
    scheduled_email_id: Optional[str] = None


class WebhookProcessor:
    """Applies verified provider events to the ledger and suppression list."""

    def __init__(self, db: Session):
        self.db = db
        self.ledger = EmailLedger(db)
        self.preferences = PreferenceService(db)

    def _already_logged(self, provider_id: str, event_name: str, occurred_at: datetime) -> bool:
        stmt = select(EmailEvent.id).where(
            EmailEvent.resend_email_id == provider_id,
            EmailEvent.event_type == event_name,
            EmailEvent.occurred_at == occurred_at,
        )
        return self.db.execute(stmt).first() is not None

    def handle(self, event: Dict[str, Any]) -> WebhookOutcome:
        event_type = event["type"]
        data = event["data"]
        provider_id = data["email_id"]
        event_name = event_type.replace("email.", "", 1)
        occurred_at = _parse_timestamp(event.get("created_at"))

        with LogContext(event_type=event_type, resend_email_id=provider_id):
            if event_type not in KNOWN_EVENTS:
                logger.info(f"Ignoring unhandled webhook event {event_type}")
                return WebhookOutcome(event_type, "Event type ignored")

            if self._already_logged(provider_id, event_name, occurred_at):
                logger.info("Webhook event already processed")
                return WebhookOutcome(event_type, "Event already processed", duplicate=True)

            row = self.ledger.find_by_provider_id(provider_id)
            message = self._apply(event_type, row, data, provider_id, occurred_at)

            self.db.add(EmailEvent(
                scheduled_email_id=row.id if row else None,
                resend_email_id=provider_id,
                event_type=event_name,
                event_data=data,
                occurred_at=occurred_at,
            ))
            try:
                self.db.commit()
            except IntegrityError:
                # Concurrent delivery of the same event; its effects are idempotent
                self.db.rollback()
                return WebhookOutcome(event_type, "Event already processed", duplicate=True)

            return WebhookOutcome(event_type, message, scheduled_email_id=row.id if row else None)

    def _apply(
        self,
        event_type: str,
        row: Optional[ScheduledEmail],
        data: Dict[str, Any],
        provider_id: str,
        occurred_at: datetime,
    ) -> str:
        if event_type == SENT:
            if row is None:
                return "Email not tracked"
            moved = self.ledger.transition(
                row.id,
                EmailStatus.SENT,
                expected=(EmailStatus.SCHEDULED,),
                values={"sent_at": occurred_at, "resend_email_id": provider_id},
            )
            if moved:
                logger.info(f"Provider confirmed send of {row.id}")
                return "Email marked as sent"
            return f"Email status {row.status} left unchanged"

        if event_type in SUPPRESSING_EVENTS:
            reason = SUPPRESSING_EVENTS[event_type]
            recipients = data.get("to") or []
            if isinstance(recipients, str):
                recipients = [recipients]
            address = row.email_address if row else (recipients[0] if recipients else None)
            if address:
                self.preferences.add_suppression(address, reason, source="webhook")
                logger.warning(f"Suppressed {address} after {event_type}")
            if row is not None and self.ledger.mark_suppressed(
                row.id,
                reason,
                expected=(EmailStatus.PENDING, EmailStatus.SCHEDULED, EmailStatus.SENDING),
            ):
                return f"Email suppressed ({reason})"
            return f"Recipient suppressed ({reason})"

        return "Event logged"
