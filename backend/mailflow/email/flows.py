"""
Flow definition store.

Steps are validated against the template store when they are written, so
a flow can never reference a template version that does not exist.
"""

from typing import Optional, Dict, Any, List, Tuple

from sqlalchemy import select, func
from sqlalchemy.orm import Session, selectinload

from ..core.logging import get_logger
from ..core.exceptions import FlowNotFoundError, FlowStepError, NotFoundError, TemplateNotFoundError, ValidationError
from ..db.models import EmailFlow, EmailFlowStep, EmailType
from .templates import TemplateStore

logger = get_logger(__name__)


def _clean_events(events: Optional[List[str]]) -> List[str]:
    seen = []
    for event in events or []:
        event = (event or "").strip()
        if event and event not in seen:
            seen.append(event)
    return seen


class FlowStore:
    """CRUD over flows and their ordered steps."""

    def __init__(self, db: Session):
        self.db = db

    # =========================================================================
    # Flows
    # =========================================================================

    def list_flows(self, active_only: bool = False) -> List[EmailFlow]:
        stmt = select(EmailFlow).order_by(EmailFlow.created_at, EmailFlow.name)
        if active_only:
            stmt = stmt.where(EmailFlow.is_active.is_(True))
        return list(self.db.execute(stmt).scalars())

    def get_flow(self, flow_id: str) -> EmailFlow:
        flow = self.db.get(EmailFlow, flow_id)
        if flow is None:
            raise FlowNotFoundError(f"Flow {flow_id} not found", context={"flow_id": flow_id})
        return flow

    def get_flow_with_steps(self, flow_id: str) -> Tuple[EmailFlow, List[EmailFlowStep]]:
        stmt = select(EmailFlow).where(EmailFlow.id == flow_id).options(selectinload(EmailFlow.steps))
        flow = self.db.execute(stmt).scalar_one_or_none()
        if flow is None:
            raise FlowNotFoundError(f"Flow {flow_id} not found", context={"flow_id": flow_id})
        steps = sorted(flow.steps, key=lambda s: (s.step_order, s.time_offset_minutes))
        return flow, steps

    def get_flows_by_trigger(self, event: str) -> List[EmailFlow]:
        stmt = select(EmailFlow).where(EmailFlow.trigger_event == event, EmailFlow.is_active.is_(True))
        return list(self.db.execute(stmt).scalars())

    def get_flows_cancelled_by(self, event: str) -> List[EmailFlow]:
        # cancel_events is a JSON list; filtering in Python keeps this portable across dialects
        return [flow for flow in self.list_flows() if event in (flow.cancel_events or [])]

    def create_flow(
        self,
        name: str,
        trigger_event: str,
        description: Optional[str] = None,
        cancel_events: Optional[List[str]] = None,
        is_active: bool = True,
    ) -> EmailFlow:
        if not name or not trigger_event:
            raise ValidationError("Flow name and trigger event are required")
        flow = EmailFlow(
            name=name,
            description=description,
            trigger_event=trigger_event.strip(),
            cancel_events=_clean_events(cancel_events),
            is_active=is_active,
        )
        self.db.add(flow)
        self.db.commit()
        self.db.refresh(flow)
        logger.info(f"Created flow {flow.name}", extra={"flow_id": flow.id, "trigger_event": flow.trigger_event})
        return flow

    def update_flow(self, flow_id: str, **changes: Any) -> EmailFlow:
        flow = self.get_flow(flow_id)
        allowed = {"name", "description", "trigger_event", "cancel_events", "is_active"}
        unknown = set(changes) - allowed
        if unknown:
            raise ValidationError(f"Unknown flow fields: {sorted(unknown)}")
        if "cancel_events" in changes:
            changes["cancel_events"] = _clean_events(changes["cancel_events"])
        for key, value in changes.items():
            if value is not None:
                setattr(flow, key, value)
        self.db.commit()
        self.db.refresh(flow)
        return flow

    # =========================================================================
    # Steps
    # =========================================================================

    def add_step(
        self,
        flow_id: str,
        template_id: str,
        template_version: Optional[int] = None,
        time_offset_minutes: int = 0,
        subject_override: Optional[str] = None,
        email_type: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> EmailFlowStep:
        """Append a step at ``max(step_order) + 1``."""
        flow = self.get_flow(flow_id)

        if time_offset_minutes is None or time_offset_minutes < 0:
            raise FlowStepError(
                "time_offset_minutes must be zero or positive",
                context={"time_offset_minutes": time_offset_minutes},
            )
        if email_type is not None and email_type not in {t.value for t in EmailType}:
            raise FlowStepError(f"Unknown email_type '{email_type}'")

        try:
            template = TemplateStore(self.db).resolve(template_id=template_id, version=template_version)
        except TemplateNotFoundError as e:
            raise FlowStepError(
                f"Step template {template_id} v{template_version or '?'} does not exist",
                context={"template_id": template_id, "template_version": template_version},
                cause=e,
            )

        current = self.db.execute(
            select(func.max(EmailFlowStep.step_order)).where(EmailFlowStep.flow_id == flow.id)
        ).scalar()
        step = EmailFlowStep(
            flow_id=flow.id,
            step_order=(current or 0) + 1,
            time_offset_minutes=time_offset_minutes,
            template_id=template.id,
            template_version=template.version,
            subject_override=subject_override,
            email_type=email_type,
            meta=dict(metadata or {}),
        )
        self.db.add(step)
        self.db.commit()
        self.db.refresh(step)
        logger.info(
            f"Added step {step.step_order} to flow {flow.name}",
            extra={"flow_id": flow.id, "template": template.name, "template_version": template.version},
        )
        return step

    def remove_step(self, step_id: str) -> None:
        """Delete a step and renumber the rest so orders stay contiguous from 1."""
        step = self.db.get(EmailFlowStep, step_id)
        if step is None:
            raise NotFoundError(f"Flow step {step_id} not found", context={"step_id": step_id})
        flow_id = step.flow_id
        self.db.delete(step)
        self.db.flush()

        remaining = list(
            self.db.execute(
                select(EmailFlowStep)
                .where(EmailFlowStep.flow_id == flow_id)
                .order_by(EmailFlowStep.step_order)
            ).scalars()
        )
        # Two passes so the (flow_id, step_order) unique constraint holds at every flush
        for index, s in enumerate(remaining, start=1):
            s.step_order = -index
        self.db.flush()
        for index, s in enumerate(remaining, start=1):
            s.step_order = index
        self.db.commit()
