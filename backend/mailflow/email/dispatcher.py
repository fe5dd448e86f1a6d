"""
Dispatch worker.

Claims due ledger rows (``pending/scheduled -> sending``) before any
external side effect, checks suppression, renders from the frozen
snapshot, sends, and records the outcome. Each row is isolated: one
row's failure never stops the batch.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.orm import Session

from ..core.config import get_settings
from ..core.logging import get_logger, LogContext
from ..core.exceptions import ProviderError, EmailTemplateError, SuppressionError
from ..db.base import utcnow
from ..db.models import ScheduledEmail, EmailStatus
from .preferences import PreferenceService
from .service import EmailService, OutboundEmail, get_email_service
from .store import EmailLedger
from .templates import render_template

logger = get_logger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    """Capped exponential backoff for ``failed -> scheduled``."""
    max_retries: int = 3
    base_delay_seconds: int = 60
    max_delay_seconds: int = 3600

    @classmethod
    def from_settings(cls) -> "RetryPolicy":
        settings = get_settings()
        return cls(
            max_retries=settings.max_retries,
            base_delay_seconds=settings.retry_base_delay_seconds,
            max_delay_seconds=settings.retry_max_delay_seconds,
        )

    def should_retry(self, retry_count: int) -> bool:
        return retry_count < self.max_retries

    def delay(self, retry_count: int) -> timedelta:
        seconds = self.base_delay_seconds * (2 ** max(retry_count, 0))
        return timedelta(seconds=min(seconds, self.max_delay_seconds))


@dataclass
class DispatchReport:
    selected: int = 0
    sent: int = 0
    suppressed: int = 0
    failed: int = 0
    retried: int = 0
    skipped: int = 0
    errors: int = 0

    def as_dict(self):
        return dict(self.__dict__)


SENT = "sent"
SUPPRESSED = "suppressed"
FAILED = "failed"
RETRIED = "retried"
SKIPPED = "skipped"
HANDED_OFF = "handed_off"


def build_message(row: ScheduledEmail) -> OutboundEmail:
    """Render a ledger row into a provider message."""
    variables = dict(row.variables or {})
    rendered = render_template(row.template_snapshot, variables, unsubscribe_url=variables.get("unsubscribe_url"))
    headers = {}
    if variables.get("unsubscribe_url"):
        headers["List-Unsubscribe"] = f"<{variables['unsubscribe_url']}>"
    return OutboundEmail(
        to=row.email_address,
        subject=rendered.subject,
        html=rendered.html,
        text=rendered.text,
        idempotency_key=row.id,
        headers=headers,
        tags={"scheduled_email_id": row.id, "email_type": row.email_type},
    )


class DispatchWorker:
    """One polling pass over the ledger per ``run_once`` call."""

    def __init__(
        self,
        db: Session,
        email_service: Optional[EmailService] = None,
        retry_policy: Optional[RetryPolicy] = None,
        batch_size: Optional[int] = None,
    ):
        settings = get_settings()
        self.db = db
        self.ledger = EmailLedger(db)
        self.preferences = PreferenceService(db)
        self.email_service = email_service or get_email_service()
        self.retry_policy = retry_policy or RetryPolicy.from_settings()
        self.batch_size = batch_size or settings.dispatch_batch_size
        self.settings = settings

    async def run_once(self, now: Optional[datetime] = None) -> DispatchReport:
        """Dispatch every row due at ``now``, earliest first."""
        now = now or utcnow()
        report = DispatchReport()
        due_ids = [row.id for row in self.ledger.due_rows(now, self.batch_size)]
        report.selected = len(due_ids)

        for email_id in due_ids:
            try:
                outcome = await self.dispatch_one(email_id, now)
            except Exception:
                self.db.rollback()
                report.errors += 1
                logger.exception(f"Unexpected error dispatching email {email_id}")
                continue
            setattr(report, outcome, getattr(report, outcome) + 1)

        if due_ids:
            logger.info("Dispatch pass complete", extra=report.as_dict())
        return report

    async def dispatch_one(self, email_id: str, now: datetime) -> str:
        if not self.ledger.claim(email_id, now):
            logger.debug(f"Email {email_id} claimed elsewhere or no longer open")
            return SKIPPED

        row = self.ledger.get(email_id)
        with LogContext(scheduled_email_id=email_id):
            reason = self.preferences.check_can_send(row.email_address, row.user_id, row.email_type)
            if reason:
                self.ledger.mark_suppressed(email_id, reason)
                signal = SuppressionError(f"Recipient suppressed ({reason})", reason=reason)
                logger.info(signal.message, extra={"flow_trigger_id": row.flow_trigger_id})
                return SUPPRESSED

            try:
                message = build_message(row)
            except EmailTemplateError as e:
                # Rendering a frozen snapshot fails the same way every time
                self.ledger.mark_failed(email_id, e.message)
                logger.error(f"Email {email_id} cannot be rendered: {e.message}")
                return FAILED

            retry_count = row.retry_count
            try:
                result = await self.email_service.send(message)
            except ProviderError as e:
                if self.retry_policy.should_retry(retry_count):
                    self.ledger.mark_failed(email_id, e.message)
                    next_at = now + self.retry_policy.delay(retry_count)
                    self.ledger.schedule_retry(email_id, now, next_at)
                    logger.warning(
                        f"Email {email_id} send failed, retry {retry_count + 1} at {next_at.isoformat()}",
                        extra={"error": e.message, "retry_count": retry_count + 1},
                    )
                    return RETRIED
                self.ledger.mark_failed(email_id, e.message, count_attempt=True)
                logger.error(
                    f"Email {email_id} failed permanently after {retry_count} retries",
                    extra={"error": e.message},
                )
                return FAILED

            if not self.ledger.mark_sent(email_id, now, result.message_id):
                logger.warning(
                    f"Email {email_id} was sent but its claim had been released",
                    extra={"message_id": result.message_id},
                )
            else:
                logger.info(
                    f"Email {email_id} sent",
                    extra={"provider": result.provider, "message_id": result.message_id},
                )
            return SENT

    # =========================================================================
    # Provider-side scheduling
    # =========================================================================

    async def handoff_upcoming(self, now: Optional[datetime] = None) -> int:
        """
        Hand pending rows due within the horizon to the provider's scheduler.

        On success the row becomes ``scheduled`` with ``resend_scheduled_id``
        and the local dispatcher leaves it alone. On failure it becomes
        ``scheduled`` without a provider id and is dispatched locally.
        """
        if not (self.settings.provider_scheduling_enabled and self.email_service.can_schedule):
            return 0
        now = now or utcnow()
        horizon = now + timedelta(hours=self.settings.provider_scheduling_horizon_hours)

        handed_off = 0
        for row in self.ledger.upcoming_pending(now, horizon, self.batch_size):
            email_id = row.id
            try:
                if await self._handoff_one(email_id, now) == HANDED_OFF:
                    handed_off += 1
            except Exception:
                self.db.rollback()
                logger.exception(f"Unexpected error handing off email {email_id}")
        return handed_off

    async def _handoff_one(self, email_id: str, now: datetime) -> str:
        if not self.ledger.claim(email_id, now):
            return SKIPPED
        row = self.ledger.get(email_id)

        reason = self.preferences.check_can_send(row.email_address, row.user_id, row.email_type)
        if reason:
            self.ledger.mark_suppressed(email_id, reason)
            return SUPPRESSED

        try:
            result = await self.email_service.schedule(build_message(row), row.scheduled_at)
        except (ProviderError, EmailTemplateError) as e:
            self.ledger.transition(
                email_id,
                EmailStatus.SCHEDULED,
                expected=(EmailStatus.SENDING,),
                values={"claimed_at": None, "last_error": e.message},
            )
            logger.warning(f"Provider hand-off failed for {email_id}, keeping local dispatch: {e.message}")
            return SKIPPED

        self.ledger.mark_handed_off(email_id, result.message_id)
        logger.info(f"Handed off email {email_id} to provider", extra={"resend_scheduled_id": result.message_id})
        return HANDED_OFF

    async def reconcile_provider_cancellations(self, now: Optional[datetime] = None) -> int:
        """Cancel at the provider any locally cancelled row the provider still holds."""
        now = now or utcnow()
        cancelled = 0
        for row in self.ledger.pending_provider_cancellations(self.batch_size):
            try:
                await self.email_service.cancel(row.resend_scheduled_id)
            except ProviderError as e:
                self.ledger.record_metadata(row, resend_cancel_error=e.message)
                logger.warning(f"Provider cancel failed for {row.id}: {e.message}")
                continue
            self.ledger.mark_provider_cancelled(row.id, now)
            cancelled += 1
        return cancelled

    def recover_stale_claims(self, now: Optional[datetime] = None) -> int:
        now = now or utcnow()
        cutoff = now - timedelta(minutes=self.settings.claim_timeout_minutes)
        recovered = self.ledger.recover_stale_claims(now, cutoff)
        if recovered:
            logger.warning(f"Failed {recovered} emails stuck in sending since before {cutoff.isoformat()}")
        return recovered
