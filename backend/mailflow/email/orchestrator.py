"""
Flow orchestrator.

Expands one trigger into one ledger row per step, all sharing a
``flow_trigger_id`` (the flow instance), and cancels instances in bulk.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional, Dict, Any, List, Iterable

from sqlalchemy import select, func
from sqlalchemy.orm import Session

from ..core.logging import get_logger, LogContext
from ..core.exceptions import FlowNotFoundError, ValidationError, DuplicateIdempotencyKeyError
from ..db.base import utcnow, as_utc
from ..db.models import ScheduledEmail, EmailStatus, OPEN_STATUSES
from .flows import FlowStore
from .models import FlowStats
from .store import EmailLedger, validate_email_address

logger = get_logger(__name__)


@dataclass
class TriggerResult:
    flow_id: str
    flow_trigger_id: str
    rows: List[ScheduledEmail]
    created: bool

    @property
    def count(self) -> int:
        return len(self.rows)


@dataclass
class EventResult:
    cancelled_count: int = 0
    triggered: List[TriggerResult] = field(default_factory=list)


def generate_flow_trigger_id(flow_id: str, user_id: Optional[str] = None, trigger_event_id: Optional[str] = None) -> str:
    """Deterministic when the trigger carries an event id, otherwise a fresh instance id."""
    if trigger_event_id:
        return f"{user_id or 'anonymous'}_{flow_id}_{trigger_event_id}"
    return str(uuid.uuid4())


def step_idempotency_key(flow_trigger_id: str, step_order: int) -> str:
    return f"flow:{flow_trigger_id}:step:{step_order}"


class FlowOrchestrator:
    """Trigger, cancel and aggregate flow instances."""

    def __init__(self, db: Session):
        self.db = db
        self.flows = FlowStore(db)
        self.ledger = EmailLedger(db)

    # =========================================================================
    # Trigger
    # =========================================================================

    def trigger(
        self,
        flow_id: str,
        email_address: str,
        user_id: Optional[str] = None,
        variables: Optional[Dict[str, Any]] = None,
        is_test: bool = False,
        trigger_event_id: Optional[str] = None,
        triggered_at: Optional[datetime] = None,
        commit: bool = True,
    ) -> TriggerResult:
        """
        Create every step of one flow instance, or none of them.

        Re-triggering an instance id that already has rows returns those
        rows unchanged. With ``commit=False`` the rows are only flushed and
        any error is left for the caller to roll back.
        """
        flow, steps = self._load_triggerable(flow_id)
        address = validate_email_address(email_address)

        triggered_at = as_utc(triggered_at) or utcnow()
        flow_trigger_id = generate_flow_trigger_id(flow.id, user_id, trigger_event_id)

        existing = self.ledger.instance_rows(flow_trigger_id)
        if existing:
            logger.info(f"Flow instance {flow_trigger_id} already exists", extra={"flow_id": flow.id})
            return TriggerResult(flow.id, flow_trigger_id, existing, created=False)

        with LogContext(flow_trigger_id=flow_trigger_id):
            rows = []
            try:
                for step in steps:
                    step_vars = dict(variables or {})
                    step_vars.update({"stepOrder": step.step_order, "flowName": flow.name})
                    metadata = dict(step.meta or {})
                    metadata.update({
                        "step_order": step.step_order,
                        "time_offset_minutes": step.time_offset_minutes,
                        "flow_name": flow.name,
                    })
                    row, _ = self.ledger.schedule(
                        email_address=address,
                        template_id=step.template_id,
                        template_version=step.template_version,
                        scheduled_at=triggered_at + timedelta(minutes=step.time_offset_minutes),
                        user_id=user_id,
                        variables=step_vars,
                        is_test=is_test,
                        idempotency_key=step_idempotency_key(flow_trigger_id, step.step_order),
                        metadata=metadata,
                        flow_id=flow.id,
                        flow_step_id=step.id,
                        flow_trigger_id=flow_trigger_id,
                        triggered_at=triggered_at,
                        subject_override=step.subject_override,
                        email_type=step.email_type,
                        commit=False,
                    )
                    rows.append(row)
                if commit:
                    self.db.commit()
            except DuplicateIdempotencyKeyError:
                if not commit:
                    raise
                # A concurrent trigger created the same instance first
                self.db.rollback()
                existing = self.ledger.instance_rows(flow_trigger_id)
                if existing:
                    return TriggerResult(flow.id, flow_trigger_id, existing, created=False)
                raise
            except Exception:
                if not commit:
                    raise
                self.db.rollback()
                logger.exception(
                    f"Flow {flow.name} trigger rolled back",
                    extra={"flow_id": flow.id, "steps": len(steps)},
                )
                raise

            if commit:
                for row in rows:
                    self.db.refresh(row)
            logger.info(
                f"Triggered flow {flow.name} with {len(rows)} emails",
                extra={"flow_id": flow.id, "user_id": user_id, "is_test": is_test},
            )
        return TriggerResult(flow.id, flow_trigger_id, rows, created=True)

    def _load_triggerable(self, flow_id: str):
        flow, steps = self.flows.get_flow_with_steps(flow_id)
        if not flow.is_active:
            raise FlowNotFoundError(f"Flow {flow_id} is not active", context={"flow_id": flow_id})
        if not steps:
            raise ValidationError(f"Flow {flow.name} has no steps", context={"flow_id": flow_id})
        return flow, steps

    # =========================================================================
    # Cancel
    # =========================================================================

    def cancel_instance(self, flow_trigger_id: str, now: Optional[datetime] = None) -> int:
        """Cancel the open rows of one instance. Returns how many actually moved."""
        count = self.ledger.cancel_where(ScheduledEmail.flow_trigger_id == flow_trigger_id, now=now)
        logger.info(f"Cancelled {count} emails of flow instance {flow_trigger_id}")
        return count

    def cancel_for_user_and_flow(
        self, user_id: str, flow_id: str, now: Optional[datetime] = None, commit: bool = True
    ) -> int:
        """Cancel the open rows of every instance of ``flow_id`` for ``user_id``."""
        count = self.ledger.cancel_where(
            ScheduledEmail.user_id == user_id,
            ScheduledEmail.flow_id == flow_id,
            now=now,
            commit=commit,
        )
        logger.info(
            f"Cancelled {count} emails of flow {flow_id} for user {user_id}",
            extra={"flow_id": flow_id, "user_id": user_id},
        )
        return count

    def cancel_for_event(
        self, event: str, user_id: str, now: Optional[datetime] = None, commit: bool = True
    ) -> int:
        total = 0
        for flow in self.flows.get_flows_cancelled_by(event):
            total += self.cancel_for_user_and_flow(user_id, flow.id, now=now, commit=False)
        if commit:
            self.db.commit()
        return total

    def handle_event(
        self,
        event: str,
        user_id: str,
        email_address: Optional[str] = None,
        variables: Optional[Dict[str, Any]] = None,
        is_test: bool = False,
        event_id: Optional[str] = None,
        occurred_at: Optional[datetime] = None,
    ) -> EventResult:
        """
        Route an application event.

        Flows listing the event in ``cancel_events`` are cancelled for the
        user first; active flows whose ``trigger_event`` matches are then
        started when an address is known. The cancellations and every new
        instance commit together or not at all.
        """
        result = EventResult()
        with LogContext(event=event):
            flow_ids = []
            if email_address:
                validate_email_address(email_address)
                for flow in self.flows.get_flows_by_trigger(event):
                    self._load_triggerable(flow.id)
                    flow_ids.append(flow.id)

            try:
                result.cancelled_count = self.cancel_for_event(event, user_id, now=occurred_at, commit=False)
                for flow_id in flow_ids:
                    result.triggered.append(
                        self.trigger(
                            flow_id,
                            email_address,
                            user_id=user_id,
                            variables=variables,
                            is_test=is_test,
                            trigger_event_id=event_id,
                            triggered_at=occurred_at,
                            commit=False,
                        )
                    )
                self.db.commit()
            except Exception:
                self.db.rollback()
                logger.exception(f"Event {event} rolled back", extra={"user_id": user_id})
                raise

            for triggered in result.triggered:
                for row in triggered.rows:
                    self.db.refresh(row)
            logger.info(
                f"Handled event {event}",
                extra={"cancelled": result.cancelled_count, "triggered": len(result.triggered)},
            )
        return result

    # =========================================================================
    # Stats
    # =========================================================================

    def flow_stats(self, flow_id: str) -> FlowStats:
        self.flows.get_flow(flow_id)
        return self._aggregate([flow_id])[flow_id]

    def all_flow_stats(self) -> Dict[str, FlowStats]:
        flow_ids = [flow.id for flow in self.flows.list_flows()]
        return self._aggregate(flow_ids)

    def _aggregate(self, flow_ids: Iterable[str]) -> Dict[str, FlowStats]:
        """Computed from the ledger on every read."""
        flow_ids = list(flow_ids)
        stats = {flow_id: FlowStats(flow_id=flow_id) for flow_id in flow_ids}
        if not flow_ids:
            return stats
        in_flows = ScheduledEmail.flow_id.in_(flow_ids)

        by_status = self.db.execute(
            select(ScheduledEmail.flow_id, ScheduledEmail.status, func.count())
            .where(in_flows)
            .group_by(ScheduledEmail.flow_id, ScheduledEmail.status)
        ).all()
        status_fields = {s.value for s in EmailStatus}
        for flow_id, status, count in by_status:
            entry = stats[flow_id]
            entry.total_emails += count
            if status in status_fields:
                setattr(entry, status, getattr(entry, status) + count)

        by_test = self.db.execute(
            select(ScheduledEmail.flow_id, ScheduledEmail.is_test, func.count())
            .where(in_flows)
            .group_by(ScheduledEmail.flow_id, ScheduledEmail.is_test)
        ).all()
        for flow_id, is_test, count in by_test:
            if is_test:
                stats[flow_id].test_emails += count
            else:
                stats[flow_id].production_emails += count

        users = self.db.execute(
            select(
                ScheduledEmail.flow_id,
                func.count(func.distinct(func.coalesce(ScheduledEmail.user_id, ScheduledEmail.email_address))),
            )
            .where(in_flows)
            .group_by(ScheduledEmail.flow_id)
        ).all()
        for flow_id, count in users:
            stats[flow_id].unique_users = count

        active = self.db.execute(
            select(ScheduledEmail.flow_id, func.count(func.distinct(ScheduledEmail.flow_trigger_id)))
            .where(in_flows, ScheduledEmail.status.in_(OPEN_STATUSES))
            .group_by(ScheduledEmail.flow_id)
        ).all()
        for flow_id, count in active:
            stats[flow_id].active_instances = count

        return stats
