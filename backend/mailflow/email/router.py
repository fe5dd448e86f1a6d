"""
Email scheduling API router.

Provides REST endpoints for templates, the scheduled-email ledger, flows,
application events, provider webhooks and unsubscribe links. Every
handler mutates ledger state and returns; delivery happens in the
dispatch worker.
"""

from fastapi import APIRouter, Query, Depends, Request
from typing import Optional
from sqlalchemy.orm import Session

from ..core.config import get_settings
from ..core.logging import get_logger
from ..core.exceptions import ConfigurationError
from ..db.base import get_db
from ..db.models import EmailStatus
from .flows import FlowStore
from .models import (
    EmailTemplateOut,
    ScheduledEmailOut,
    EmailFlowOut,
    EmailFlowStepOut,
    EmailPreferencesOut,
    CreateTemplateRequest,
    ActivateTemplateRequest,
    PreviewTemplateRequest,
    ScheduleEmailRequest,
    CancelEmailRequest,
    CreateFlowRequest,
    AddFlowStepRequest,
    TriggerFlowRequest,
    CancelFlowRequest,
    FlowEventRequest,
    UnsubscribeRequest,
    UpdatePreferencesRequest,
    CancelUserEmailsRequest,
    TemplateListResponse,
    TemplateResponse,
    PreviewTemplateResponse,
    ScheduledEmailResponse,
    ScheduledEmailListResponse,
    CancelEmailResponse,
    FlowListResponse,
    FlowResponse,
    FlowDetailResponse,
    FlowStepResponse,
    FlowStatsResponse,
    TriggerFlowResponse,
    CancelFlowResponse,
    TriggeredFlow,
    FlowEventResponse,
    WebhookResponse,
    PreferencesResponse,
)
from .orchestrator import FlowOrchestrator
from .preferences import PreferenceService
from .store import EmailLedger
from .templates import TemplateStore
from .unsubscribe import parse_unsubscribe_token
from .webhooks import WebhookProcessor, verify_signature, parse_event

logger = get_logger(__name__)

router = APIRouter(prefix="/api/email", tags=["email"])


# ============================================================================
# Template Endpoints
# ============================================================================

@router.get("/templates", response_model=TemplateListResponse)
async def list_templates(db: Session = Depends(get_db)):
    """List every version of every template."""
    templates = TemplateStore(db).list_templates()
    return TemplateListResponse(templates=[EmailTemplateOut.model_validate(t) for t in templates])


@router.post("/templates", response_model=TemplateResponse)
async def create_template(request: CreateTemplateRequest, db: Session = Depends(get_db)):
    """Create the next version of a template, optionally activating it."""
    template = TemplateStore(db).create_version(
        name=request.name,
        subject=request.subject,
        html_content=request.html_content,
        text_content=request.text_content,
        metadata=request.metadata,
        activate=request.activate,
    )
    return TemplateResponse(template=EmailTemplateOut.model_validate(template))


@router.post("/templates/activate", response_model=TemplateResponse)
async def activate_template(request: ActivateTemplateRequest, db: Session = Depends(get_db)):
    template = TemplateStore(db).activate(request.name, request.version)
    return TemplateResponse(template=EmailTemplateOut.model_validate(template))


@router.post("/templates/preview", response_model=PreviewTemplateResponse)
async def preview_template(request: PreviewTemplateRequest, db: Session = Depends(get_db)):
    """Render a template version with sample variables."""
    rendered = TemplateStore(db).preview(request.template_id, request.variables)
    return PreviewTemplateResponse(html=rendered.html, subject=rendered.subject, text=rendered.text)


# ============================================================================
# Scheduled Email Endpoints
# ============================================================================

@router.post("/schedule", response_model=ScheduledEmailResponse)
async def schedule_email(request: ScheduleEmailRequest, db: Session = Depends(get_db)):
    """
    Schedule one ad-hoc or test email.

    Repeating an ``idempotencyKey`` returns the row created the first time.
    """
    row, created = EmailLedger(db).schedule(
        email_address=request.email_address,
        template_id=request.template_id,
        template_name=request.template_name,
        template_version=request.template_version,
        scheduled_at=request.scheduled_at,
        user_id=request.user_id,
        variables=request.variables,
        is_test=request.is_test,
        idempotency_key=request.idempotency_key,
        metadata=request.metadata,
    )
    if not created:
        logger.info(f"Returning existing scheduled email {row.id} for repeated idempotency key")
    return ScheduledEmailResponse(scheduled_email=ScheduledEmailOut.model_validate(row))


@router.get("/scheduled", response_model=ScheduledEmailListResponse)
async def list_scheduled_emails(
    status: Optional[EmailStatus] = Query(None, description="Filter by status"),
    is_test: Optional[bool] = Query(None, alias="isTest"),
    user_id: Optional[str] = Query(None, alias="userId"),
    flow_id: Optional[str] = Query(None, alias="flowId"),
    flow_trigger_id: Optional[str] = Query(None, alias="flowTriggerId"),
    limit: Optional[int] = Query(None, ge=1),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
):
    """List ledger rows, newest scheduled time first."""
    ledger = EmailLedger(db)
    rows = ledger.list_emails(
        status=status,
        is_test=is_test,
        user_id=user_id,
        flow_id=flow_id,
        flow_trigger_id=flow_trigger_id,
        limit=limit,
        offset=offset,
    )
    return ScheduledEmailListResponse(
        scheduled_emails=[ScheduledEmailOut.model_validate(r) for r in rows],
        count=len(rows),
        limit=ledger.page_size(limit),
        offset=offset,
    )


@router.post("/cancel", response_model=CancelEmailResponse)
async def cancel_email(request: CancelEmailRequest, db: Session = Depends(get_db)):
    """Cancel one pending or scheduled email. Terminal rows are rejected."""
    row = EmailLedger(db).cancel(request.scheduled_email_id)
    return CancelEmailResponse(scheduled_email=ScheduledEmailOut.model_validate(row))


@router.post("/cancel/user", response_model=CancelFlowResponse)
async def cancel_user_emails(request: CancelUserEmailsRequest, db: Session = Depends(get_db)):
    """Cancel every open email for a user, e.g. when the account is deleted."""
    count = EmailLedger(db).cancel_for_user(request.user_id)
    return CancelFlowResponse(cancelled_count=count)


# ============================================================================
# Flow Endpoints
# ============================================================================

@router.get("/flows", response_model=FlowListResponse)
async def list_flows(db: Session = Depends(get_db)):
    flows = FlowStore(db).list_flows()
    return FlowListResponse(flows=[EmailFlowOut.model_validate(f) for f in flows])


@router.post("/flows", response_model=FlowResponse)
async def create_flow(request: CreateFlowRequest, db: Session = Depends(get_db)):
    flow = FlowStore(db).create_flow(
        name=request.name,
        trigger_event=request.trigger_event,
        description=request.description,
        cancel_events=request.cancel_events,
        is_active=request.is_active,
    )
    return FlowResponse(flow=EmailFlowOut.model_validate(flow))


@router.get("/flows/stats", response_model=FlowStatsResponse)
async def get_flow_stats(db: Session = Depends(get_db)):
    """Per-flow counts computed from the ledger."""
    return FlowStatsResponse(flow_stats=FlowOrchestrator(db).all_flow_stats())


@router.post("/flows/trigger", response_model=TriggerFlowResponse)
async def trigger_flow(request: TriggerFlowRequest, db: Session = Depends(get_db)):
    """Start one flow instance for a recipient."""
    result = FlowOrchestrator(db).trigger(
        request.flow_id,
        request.email_address,
        user_id=request.user_id,
        variables=request.variables,
        is_test=request.is_test,
        trigger_event_id=request.trigger_event_id,
        triggered_at=request.triggered_at,
    )
    return TriggerFlowResponse(
        flow_trigger_id=result.flow_trigger_id,
        scheduled_emails=[ScheduledEmailOut.model_validate(r) for r in result.rows],
        count=result.count,
    )


@router.post("/flows/cancel", response_model=CancelFlowResponse)
async def cancel_flow(request: CancelFlowRequest, db: Session = Depends(get_db)):
    """Cancel one instance, or every open instance of a flow for a user."""
    orchestrator = FlowOrchestrator(db)
    if request.flow_trigger_id:
        count = orchestrator.cancel_instance(request.flow_trigger_id)
    else:
        count = orchestrator.cancel_for_user_and_flow(request.user_id, request.flow_id)
    return CancelFlowResponse(cancelled_count=count)


@router.get("/flows/{flow_id}", response_model=FlowDetailResponse)
async def get_flow(flow_id: str, db: Session = Depends(get_db)):
    flow, steps = FlowStore(db).get_flow_with_steps(flow_id)
    return FlowDetailResponse(
        flow=EmailFlowOut.model_validate(flow),
        steps=[EmailFlowStepOut.model_validate(s) for s in steps],
    )


@router.post("/flows/{flow_id}/steps", response_model=FlowStepResponse)
async def add_flow_step(flow_id: str, request: AddFlowStepRequest, db: Session = Depends(get_db)):
    step = FlowStore(db).add_step(
        flow_id,
        template_id=request.template_id,
        template_version=request.template_version,
        time_offset_minutes=request.time_offset_minutes,
        subject_override=request.subject_override,
        email_type=request.email_type.value if request.email_type else None,
        metadata=request.metadata,
    )
    return FlowStepResponse(step=EmailFlowStepOut.model_validate(step))


# ============================================================================
# Events, Webhooks and Unsubscribe
# ============================================================================

@router.post("/events", response_model=FlowEventResponse)
async def handle_event(request: FlowEventRequest, db: Session = Depends(get_db)):
    """Route an application event to the flows that start or stop on it."""
    result = FlowOrchestrator(db).handle_event(
        request.event,
        request.user_id,
        email_address=request.email_address,
        variables=request.variables,
        is_test=request.is_test,
        event_id=request.event_id,
    )
    return FlowEventResponse(
        cancelled_count=result.cancelled_count,
        triggered=[
            TriggeredFlow(flow_id=t.flow_id, flow_trigger_id=t.flow_trigger_id, count=t.count)
            for t in result.triggered
        ],
    )


@router.post("/webhook", response_model=WebhookResponse)
async def provider_webhook(request: Request, db: Session = Depends(get_db)):
    """
    Resend delivery events.

    The signature covers the raw body, so it is read before any parsing.
    """
    secret = get_settings().resend_webhook_secret
    if not secret:
        raise ConfigurationError("RESEND_WEBHOOK_SECRET is not configured")

    body = await request.body()
    verify_signature(body, request.headers, secret)
    outcome = WebhookProcessor(db).handle(parse_event(body))
    return WebhookResponse(event_type=outcome.event_type, message=outcome.message)


def _unsubscribe(token: str, reason: Optional[str], db: Session) -> PreferencesResponse:
    claims = parse_unsubscribe_token(token)
    prefs, cancelled = PreferenceService(db).unsubscribe_user(claims.user_id, claims.email_address, reason=reason)
    return PreferencesResponse(
        message=f"Unsubscribed from marketing email; {cancelled} scheduled emails cancelled",
        preferences=EmailPreferencesOut.model_validate(prefs),
    )


@router.get("/unsubscribe/{token}", response_model=PreferencesResponse)
async def unsubscribe_link(token: str, db: Session = Depends(get_db)):
    """One-click unsubscribe from an email link."""
    return _unsubscribe(token, None, db)


@router.post("/unsubscribe/{token}", response_model=PreferencesResponse)
async def unsubscribe(token: str, request: Optional[UnsubscribeRequest] = None, db: Session = Depends(get_db)):
    return _unsubscribe(token, request.reason if request else None, db)


@router.get("/preferences", response_model=PreferencesResponse)
async def get_preferences(
    user_id: str = Query(..., alias="userId"),
    email_address: str = Query(..., alias="emailAddress"),
    db: Session = Depends(get_db),
):
    prefs = PreferenceService(db).get_preferences(user_id, email_address)
    return PreferencesResponse(preferences=EmailPreferencesOut.model_validate(prefs))


@router.patch("/preferences", response_model=PreferencesResponse)
async def update_preferences(request: UpdatePreferencesRequest, db: Session = Depends(get_db)):
    updates = {}
    if "unsubscribe_reason" in request.model_fields_set:
        updates["unsubscribe_reason"] = request.unsubscribe_reason
    prefs, cancelled = PreferenceService(db).update_preferences(
        request.user_id,
        request.email_address,
        marketing_emails_enabled=request.marketing_emails_enabled,
        email_topics=request.email_topics,
        **updates,
    )
    message = f"{cancelled} scheduled emails cancelled" if cancelled else None
    return PreferencesResponse(message=message, preferences=EmailPreferencesOut.model_validate(prefs))
