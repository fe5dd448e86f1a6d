"""
Scheduled-email ledger.

Every status change is a conditional ``UPDATE ... WHERE status IN (...)``.
The affected row count decides who won, so concurrent API requests and
dispatch workers never need to coordinate outside the database.
"""

from datetime import datetime
from typing import Optional, Dict, Any, List, Tuple, Iterable, FrozenSet

from sqlalchemy import select, update, or_, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..core.config import get_settings
from ..core.logging import get_logger
from ..core.exceptions import (
    ValidationError,
    StateError,
    IllegalTransitionError,
    ScheduledEmailNotFoundError,
    DuplicateIdempotencyKeyError,
    ConfigurationError,
)
from ..db.base import utcnow, as_utc
from ..db.models import ScheduledEmail, EmailStatus, EmailType, OPEN_STATUSES
from .templates import TemplateStore, snapshot_template
from .unsubscribe import build_unsubscribe_url, normalize_email

logger = get_logger(__name__)

S = EmailStatus

ALLOWED_TRANSITIONS: Dict[EmailStatus, FrozenSet[EmailStatus]] = {
    S.PENDING: frozenset({S.SCHEDULED, S.SENDING, S.CANCELLED, S.SUPPRESSED}),
    S.SCHEDULED: frozenset({S.SENDING, S.SENT, S.FAILED, S.CANCELLED, S.SUPPRESSED}),
    S.SENDING: frozenset({S.SENT, S.FAILED, S.SUPPRESSED, S.SCHEDULED}),
    S.FAILED: frozenset({S.SCHEDULED}),
    S.SENT: frozenset(),
    S.CANCELLED: frozenset(),
    S.SUPPRESSED: frozenset(),
}


def can_transition(current: EmailStatus, target: EmailStatus) -> bool:
    return EmailStatus(target) in ALLOWED_TRANSITIONS[EmailStatus(current)]


def sources_for(target: EmailStatus) -> Tuple[str, ...]:
    """Every status that has a legal edge into ``target``."""
    return tuple(s.value for s, targets in ALLOWED_TRANSITIONS.items() if EmailStatus(target) in targets)


def validate_email_address(email_address: Optional[str]) -> str:
    address = (email_address or "").strip()
    local, _, domain = address.partition("@")
    if not local or not domain:
        raise ValidationError(
            "A valid email address is required",
            details={"emailAddress": email_address},
        )
    return address


class EmailLedger:
    """
    Ledger operations over one SQLAlchemy session.

    Methods commit by default. Pass ``commit=False`` to compose several
    operations into the caller's transaction.
    """

    def __init__(self, db: Session):
        self.db = db
        self.settings = get_settings()

    # =========================================================================
    # Reads
    # =========================================================================

    def get(self, email_id: str) -> ScheduledEmail:
        row = self.db.get(ScheduledEmail, email_id)
        if row is None:
            raise ScheduledEmailNotFoundError(
                f"Scheduled email {email_id} not found", context={"scheduled_email_id": email_id}
            )
        return row

    def find_by_key(self, idempotency_key: str) -> Optional[ScheduledEmail]:
        stmt = select(ScheduledEmail).where(ScheduledEmail.idempotency_key == idempotency_key)
        return self.db.execute(stmt).scalar_one_or_none()

    def find_by_provider_id(self, provider_email_id: str) -> Optional[ScheduledEmail]:
        stmt = select(ScheduledEmail).where(
            or_(
                ScheduledEmail.resend_email_id == provider_email_id,
                ScheduledEmail.resend_scheduled_id == provider_email_id,
            )
        )
        return self.db.execute(stmt).scalars().first()

    def list_emails(
        self,
        status: Optional[EmailStatus] = None,
        is_test: Optional[bool] = None,
        user_id: Optional[str] = None,
        flow_id: Optional[str] = None,
        flow_trigger_id: Optional[str] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[ScheduledEmail]:
        """Newest ``scheduled_at`` first. ``limit`` is clamped to the configured maximum."""
        stmt = select(ScheduledEmail)
        if status is not None:
            stmt = stmt.where(ScheduledEmail.status == EmailStatus(status).value)
        if is_test is not None:
            stmt = stmt.where(ScheduledEmail.is_test == is_test)
        if user_id is not None:
            stmt = stmt.where(ScheduledEmail.user_id == user_id)
        if flow_id is not None:
            stmt = stmt.where(ScheduledEmail.flow_id == flow_id)
        if flow_trigger_id is not None:
            stmt = stmt.where(ScheduledEmail.flow_trigger_id == flow_trigger_id)

        stmt = (
            stmt.order_by(ScheduledEmail.scheduled_at.desc(), ScheduledEmail.id)
            .limit(self.page_size(limit))
            .offset(max(offset, 0))
        )
        return list(self.db.execute(stmt).scalars())

    def page_size(self, limit: Optional[int]) -> int:
        if limit is None or limit < 1:
            return self.settings.default_page_size
        return min(limit, self.settings.max_page_size)

    def instance_rows(self, flow_trigger_id: str) -> List[ScheduledEmail]:
        stmt = select(ScheduledEmail).where(ScheduledEmail.flow_trigger_id == flow_trigger_id)
        rows = list(self.db.execute(stmt).scalars())
        return sorted(rows, key=lambda r: ((r.meta or {}).get("step_order", 0), r.scheduled_at))

    def due_rows(self, now: datetime, limit: int) -> List[ScheduledEmail]:
        """Open rows due at ``now`` that the provider does not already own, earliest first."""
        stmt = (
            select(ScheduledEmail)
            .where(
                ScheduledEmail.status.in_(OPEN_STATUSES),
                ScheduledEmail.scheduled_at <= now,
                ScheduledEmail.resend_scheduled_id.is_(None),
            )
            .order_by(ScheduledEmail.scheduled_at.asc(), ScheduledEmail.id)
            .limit(limit)
        )
        return list(self.db.execute(stmt).scalars())

    def upcoming_pending(self, now: datetime, horizon: datetime, limit: int) -> List[ScheduledEmail]:
        stmt = (
            select(ScheduledEmail)
            .where(
                ScheduledEmail.status == S.PENDING.value,
                ScheduledEmail.scheduled_at > now,
                ScheduledEmail.scheduled_at <= horizon,
            )
            .order_by(ScheduledEmail.scheduled_at.asc())
            .limit(limit)
        )
        return list(self.db.execute(stmt).scalars())

    def pending_provider_cancellations(self, limit: int = 100) -> List[ScheduledEmail]:
        stmt = (
            select(ScheduledEmail)
            .where(
                ScheduledEmail.status == S.CANCELLED.value,
                ScheduledEmail.resend_scheduled_id.is_not(None),
                ScheduledEmail.provider_cancelled_at.is_(None),
            )
            .limit(limit)
        )
        return list(self.db.execute(stmt).scalars())

    # =========================================================================
    # Create
    # =========================================================================

    def schedule(
        self,
        *,
        email_address: str,
        template_id: Optional[str] = None,
        template_name: Optional[str] = None,
        template_version: Optional[int] = None,
        scheduled_at: Optional[datetime] = None,
        user_id: Optional[str] = None,
        variables: Optional[Dict[str, Any]] = None,
        is_test: bool = False,
        idempotency_key: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        flow_id: Optional[str] = None,
        flow_step_id: Optional[str] = None,
        flow_trigger_id: Optional[str] = None,
        triggered_at: Optional[datetime] = None,
        subject_override: Optional[str] = None,
        email_type: Optional[str] = None,
        strict: bool = False,
        commit: bool = True,
    ) -> Tuple[ScheduledEmail, bool]:
        """
        Insert a ``pending`` row bound to a frozen template snapshot.

        Returns ``(row, created)``. A repeated ``idempotency_key`` returns the
        existing row with ``created=False`` unless ``strict`` is set, in which
        case DuplicateIdempotencyKeyError is raised.
        """
        address = validate_email_address(email_address)

        if idempotency_key:
            existing = self.find_by_key(idempotency_key)
            if existing is not None:
                if strict:
                    raise DuplicateIdempotencyKeyError(
                        "Idempotency key already used",
                        context={"idempotency_key": idempotency_key, "scheduled_email_id": existing.id},
                    )
                logger.info(
                    f"Idempotent schedule hit for key {idempotency_key}",
                    extra={"scheduled_email_id": existing.id},
                )
                return existing, False

        template = TemplateStore(self.db).resolve(
            template_id=template_id, version=template_version, name=template_name
        )
        email_type = email_type or template.email_type

        render_vars = dict(variables or {})
        if email_type == EmailType.MARKETING.value and user_id:
            try:
                url = build_unsubscribe_url(user_id, address)
            except ConfigurationError as e:
                logger.warning(f"Scheduling marketing email without unsubscribe link: {e.message}")
            else:
                render_vars.setdefault("unsubscribe_url", url)
                render_vars.setdefault("unsubscribeUrl", url)

        meta = dict(metadata or {})
        meta["email_type"] = email_type

        row = ScheduledEmail(
            idempotency_key=idempotency_key,
            user_id=user_id,
            email_address=address,
            template_id=template.id,
            template_version=template.version,
            template_snapshot=snapshot_template(template, subject_override),
            variables=render_vars,
            flow_id=flow_id,
            flow_step_id=flow_step_id,
            flow_trigger_id=flow_trigger_id,
            triggered_at=as_utc(triggered_at),
            status=S.PENDING.value,
            scheduled_at=as_utc(scheduled_at) or utcnow(),
            retry_count=0,
            is_test=is_test,
            meta=meta,
        )
        try:
            # Savepoint so a duplicate only undoes this insert
            with self.db.begin_nested():
                self.db.add(row)
                self.db.flush()
        except IntegrityError as e:
            # Lost an insert race on the idempotency key
            existing = self.find_by_key(idempotency_key) if idempotency_key else None
            if existing is None:
                raise
            if strict or not commit:
                raise DuplicateIdempotencyKeyError(
                    "Idempotency key already used",
                    context={"idempotency_key": idempotency_key, "scheduled_email_id": existing.id},
                    cause=e,
                )
            return existing, False

        if commit:
            self.db.commit()
            self.db.refresh(row)

        logger.info(
            f"Scheduled email {row.id} for {address}",
            extra={
                "scheduled_email_id": row.id,
                "template": template.name,
                "template_version": template.version,
                "scheduled_at": row.scheduled_at.isoformat(),
                "flow_trigger_id": flow_trigger_id,
                "is_test": is_test,
            },
        )
        return row, True

    # =========================================================================
    # Transitions
    # =========================================================================

    def transition(
        self,
        email_id: str,
        target: EmailStatus,
        *,
        expected: Optional[Iterable[EmailStatus]] = None,
        values: Optional[Dict[str, Any]] = None,
        conditions: Iterable[Any] = (),
        commit: bool = True,
    ) -> bool:
        """
        Move one row to ``target`` if its current status is in ``expected``.

        ``expected`` defaults to every status with a legal edge into ``target``.
        Returns False when the row was not in an expected status (another
        actor won the race); raises IllegalTransitionError for edges the
        state machine does not have.
        """
        target = EmailStatus(target)
        if expected is None:
            sources = sources_for(target)
        else:
            sources = tuple(EmailStatus(s).value for s in expected)
            for source in sources:
                if not can_transition(source, target):
                    raise IllegalTransitionError(
                        f"Illegal transition {source} -> {target.value}",
                        current=source,
                        target=target.value,
                        context={"scheduled_email_id": email_id},
                    )

        stmt = (
            update(ScheduledEmail)
            .where(ScheduledEmail.id == email_id, ScheduledEmail.status.in_(sources), *conditions)
            .values(status=target.value, **(values or {}))
            .execution_options(synchronize_session=False)
        )
        result = self.db.execute(stmt)
        if commit:
            self.db.commit()
        changed = result.rowcount == 1
        logger.debug(
            f"Transition {email_id} -> {target.value}: {'applied' if changed else 'skipped'}",
            extra={"scheduled_email_id": email_id, "sources": sources},
        )
        return changed

    def cancel(self, email_id: str, now: Optional[datetime] = None) -> ScheduledEmail:
        """Cancel one open row. Terminal or claimed rows raise StateError."""
        row = self.get(email_id)
        if row.status not in OPEN_STATUSES:
            raise StateError(
                f"Cannot cancel email with status {row.status}",
                context={"scheduled_email_id": email_id, "status": row.status},
            )

        changed = self.transition(
            email_id,
            S.CANCELLED,
            expected=(S.PENDING, S.SCHEDULED),
            values={"cancelled_at": now or utcnow()},
        )
        self.db.refresh(row)
        if not changed:
            raise StateError(
                f"Cannot cancel email with status {row.status}",
                context={"scheduled_email_id": email_id, "status": row.status},
            )

        logger.info(
            f"Cancelled scheduled email {email_id}",
            extra={"scheduled_email_id": email_id, "provider_scheduled": bool(row.resend_scheduled_id)},
        )
        return row

    def cancel_where(
        self,
        *conditions: Any,
        now: Optional[datetime] = None,
        suppression_reason: Optional[str] = None,
        commit: bool = True,
    ) -> int:
        """Cancel every open row matching ``conditions`` with one conditional update."""
        values: Dict[str, Any] = {"status": S.CANCELLED.value, "cancelled_at": now or utcnow()}
        if suppression_reason:
            values["suppression_reason"] = suppression_reason
        stmt = (
            update(ScheduledEmail)
            .where(ScheduledEmail.status.in_(OPEN_STATUSES), *conditions)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = self.db.execute(stmt)
        if commit:
            self.db.commit()
        return result.rowcount

    def cancel_for_user(self, user_id: str, now: Optional[datetime] = None) -> int:
        """Cancel every open row for ``user_id`` whatever its flow, template or type."""
        count = self.cancel_where(ScheduledEmail.user_id == user_id, now=now)
        logger.info(f"Cancelled {count} scheduled emails for user {user_id}", extra={"user_id": user_id})
        return count

    # =========================================================================
    # Dispatch-facing transitions
    # =========================================================================

    def claim(self, email_id: str, now: datetime) -> bool:
        """Exclusive claim before any external side effect."""
        return self.transition(
            email_id,
            S.SENDING,
            expected=(S.PENDING, S.SCHEDULED),
            values={"claimed_at": now},
            conditions=(ScheduledEmail.resend_scheduled_id.is_(None),),
        )

    def mark_sent(self, email_id: str, now: datetime, resend_email_id: Optional[str] = None) -> bool:
        return self.transition(
            email_id,
            S.SENT,
            expected=(S.SENDING,),
            values={"sent_at": now, "resend_email_id": resend_email_id, "last_error": None},
        )

    def mark_failed(self, email_id: str, error: str, count_attempt: bool = False) -> bool:
        """``sending -> failed``.

        ``count_attempt`` bumps ``retry_count`` for a provider attempt that
        will not be followed by ``schedule_retry``.
        """
        values = {"last_error": error[:2000]}
        if count_attempt:
            values["retry_count"] = ScheduledEmail.retry_count + 1
        return self.transition(email_id, S.FAILED, expected=(S.SENDING,), values=values)

    def schedule_retry(self, email_id: str, now: datetime, next_attempt_at: datetime) -> bool:
        """``failed -> scheduled`` with retry bookkeeping."""
        return self.transition(
            email_id,
            S.SCHEDULED,
            expected=(S.FAILED,),
            values={
                "retry_count": ScheduledEmail.retry_count + 1,
                "last_retry_at": now,
                "scheduled_at": next_attempt_at,
                "claimed_at": None,
            },
        )

    def mark_suppressed(
        self,
        email_id: str,
        reason: str,
        expected: Iterable[EmailStatus] = (S.SENDING,),
    ) -> bool:
        return self.transition(
            email_id,
            S.SUPPRESSED,
            expected=expected,
            values={"suppression_reason": reason},
        )

    def mark_handed_off(self, email_id: str, resend_scheduled_id: str) -> bool:
        """``sending -> scheduled`` once the provider has accepted a scheduled send."""
        return self.transition(
            email_id,
            S.SCHEDULED,
            expected=(S.SENDING,),
            values={"resend_scheduled_id": resend_scheduled_id, "claimed_at": None},
        )

    def recover_stale_claims(self, now: datetime, older_than: datetime) -> int:
        """
        Fail rows whose worker died mid-send.

        The provider may or may not have accepted the message, so these rows
        are not retried.
        """
        stmt = (
            update(ScheduledEmail)
            .where(
                ScheduledEmail.status == S.SENDING.value,
                ScheduledEmail.claimed_at < older_than,
            )
            .values(
                status=S.FAILED.value,
                last_error=f"Dispatch claim expired at {now.isoformat()}",
            )
            .execution_options(synchronize_session=False)
        )
        result = self.db.execute(stmt)
        self.db.commit()
        return result.rowcount

    # =========================================================================
    # Provider bookkeeping
    # =========================================================================

    def mark_provider_cancelled(self, email_id: str, now: datetime) -> None:
        self.db.execute(
            update(ScheduledEmail)
            .where(ScheduledEmail.id == email_id)
            .values(provider_cancelled_at=now)
            .execution_options(synchronize_session=False)
        )
        self.db.commit()

    def record_metadata(self, row: ScheduledEmail, **entries: Any) -> None:
        meta = dict(row.meta or {})
        meta.update(entries)
        row.meta = meta
        self.db.commit()


def same_recipient(email_address: str):
    """Case-insensitive address match condition."""
    return func.lower(ScheduledEmail.email_address) == normalize_email(email_address)
