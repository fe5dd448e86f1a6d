"""
Email scheduling API models.

Request bodies and response envelopes use camelCase keys on the wire.
Ledger, template and flow rows are serialized with their stored
snake_case field names.
"""

from pydantic import BaseModel, ConfigDict, Field, AliasChoices, PlainSerializer, StrictBool, model_validator
from pydantic.alias_generators import to_camel
from typing import Optional, List, Dict, Any, Annotated
from datetime import datetime, timezone

from ..db.models import EmailStatus, EmailType, SuppressionReason  # noqa: F401


def _iso_utc(value: datetime) -> str:
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value.isoformat() + "Z"


UTCDateTime = Annotated[datetime, PlainSerializer(_iso_utc, return_type=str, when_used="json")]


class CamelModel(BaseModel):
    """Accepts both camelCase and snake_case input, emits camelCase."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class RowModel(BaseModel):
    """Serialized view of an ORM row."""
    model_config = ConfigDict(from_attributes=True)


def _meta_field():
    return Field(default_factory=dict, validation_alias=AliasChoices("meta", "metadata"))


# ============================================================================
# Rows
# ============================================================================

class EmailTemplateOut(RowModel):
    id: str
    name: str
    version: int
    subject: str
    html_content: str
    text_content: Optional[str] = None
    is_active: bool
    metadata: Dict[str, Any] = _meta_field()
    created_at: Optional[UTCDateTime] = None


class ScheduledEmailOut(RowModel):
    id: str
    idempotency_key: Optional[str] = None
    user_id: Optional[str] = None
    email_address: str
    template_id: str
    template_version: int
    template_snapshot: Dict[str, Any]
    variables: Dict[str, Any] = Field(default_factory=dict)
    flow_id: Optional[str] = None
    flow_step_id: Optional[str] = None
    flow_trigger_id: Optional[str] = None
    triggered_at: Optional[UTCDateTime] = None
    status: EmailStatus
    scheduled_at: UTCDateTime
    sent_at: Optional[UTCDateTime] = None
    cancelled_at: Optional[UTCDateTime] = None
    retry_count: int = 0
    last_retry_at: Optional[UTCDateTime] = None
    last_error: Optional[str] = None
    suppression_reason: Optional[SuppressionReason] = None
    is_test: bool = False
    metadata: Dict[str, Any] = _meta_field()
    resend_email_id: Optional[str] = None
    resend_scheduled_id: Optional[str] = None
    created_at: Optional[UTCDateTime] = None
    updated_at: Optional[UTCDateTime] = None


class EmailFlowOut(RowModel):
    id: str
    name: str
    description: Optional[str] = None
    trigger_event: str
    cancel_events: List[str] = Field(default_factory=list)
    is_active: bool
    created_at: Optional[UTCDateTime] = None


class EmailFlowStepOut(RowModel):
    id: str
    flow_id: str
    step_order: int
    time_offset_minutes: int
    template_id: str
    template_version: int
    subject_override: Optional[str] = None
    email_type: Optional[EmailType] = None
    metadata: Dict[str, Any] = _meta_field()


class EmailPreferencesOut(RowModel):
    user_id: str
    email_address: str
    marketing_emails_enabled: bool
    unsubscribed_at: Optional[UTCDateTime] = None
    unsubscribe_reason: Optional[str] = None
    email_topics: List[str] = Field(default_factory=list)


class FlowStats(CamelModel):
    """Read-side aggregate computed from the ledger."""
    flow_id: str
    total_emails: int = 0
    pending: int = 0
    scheduled: int = 0
    sending: int = 0
    sent: int = 0
    cancelled: int = 0
    failed: int = 0
    suppressed: int = 0
    active_instances: int = 0
    unique_users: int = 0
    test_emails: int = 0
    production_emails: int = 0


# ============================================================================
# Requests
# ============================================================================

class CreateTemplateRequest(CamelModel):
    name: str = Field(..., min_length=1, max_length=255)
    subject: str = Field(..., min_length=1)
    html_content: str
    text_content: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    activate: bool = False


class ActivateTemplateRequest(CamelModel):
    name: str
    version: int = Field(..., ge=1)


class PreviewTemplateRequest(CamelModel):
    template_id: str
    variables: Dict[str, Any] = Field(default_factory=dict)


class ScheduleEmailRequest(CamelModel):
    user_id: Optional[str] = None
    email_address: str
    template_id: Optional[str] = None
    template_name: Optional[str] = None
    template_version: Optional[int] = None
    scheduled_at: Optional[datetime] = None  # defaults to now
    is_test: bool = False
    variables: Dict[str, Any] = Field(default_factory=dict)
    idempotency_key: Optional[str] = Field(None, max_length=255)
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _template_reference(self):
        if not self.template_id and not self.template_name:
            raise ValueError("templateId or templateName is required")
        return self


class CancelEmailRequest(CamelModel):
    scheduled_email_id: str


class CreateFlowRequest(CamelModel):
    name: str = Field(..., min_length=1, max_length=255)
    trigger_event: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    cancel_events: List[str] = Field(default_factory=list)
    is_active: bool = True


class AddFlowStepRequest(CamelModel):
    template_id: str
    template_version: Optional[int] = None
    time_offset_minutes: int = Field(0, ge=0)
    subject_override: Optional[str] = None
    email_type: Optional[EmailType] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class TriggerFlowRequest(CamelModel):
    flow_id: str
    user_id: Optional[str] = None
    email_address: str
    is_test: bool = False
    variables: Dict[str, Any] = Field(default_factory=dict)
    trigger_event_id: Optional[str] = None
    triggered_at: Optional[datetime] = None


class CancelFlowRequest(CamelModel):
    flow_trigger_id: Optional[str] = None
    user_id: Optional[str] = None
    flow_id: Optional[str] = None

    @model_validator(mode="after")
    def _selector(self):
        if not self.flow_trigger_id and not (self.user_id and self.flow_id):
            raise ValueError("Either flowTriggerId or both userId and flowId are required")
        return self


class FlowEventRequest(CamelModel):
    event: str = Field(..., min_length=1)
    user_id: str
    email_address: Optional[str] = None
    variables: Dict[str, Any] = Field(default_factory=dict)
    is_test: bool = False
    event_id: Optional[str] = None


class UnsubscribeRequest(CamelModel):
    reason: Optional[str] = None


class UpdatePreferencesRequest(CamelModel):
    """Only the fields present in the body are changed."""
    user_id: str = Field(..., min_length=1)
    email_address: str = Field(..., min_length=1)
    marketing_emails_enabled: Optional[StrictBool] = None
    email_topics: Optional[List[str]] = None
    unsubscribe_reason: Optional[str] = None


class CancelUserEmailsRequest(CamelModel):
    user_id: str = Field(..., min_length=1)


# ============================================================================
# Response envelopes
# ============================================================================

class TemplateListResponse(CamelModel):
    templates: List[EmailTemplateOut]


class TemplateResponse(CamelModel):
    template: EmailTemplateOut


class PreviewTemplateResponse(CamelModel):
    html: str
    subject: str
    text: Optional[str] = None


class ScheduledEmailResponse(CamelModel):
    scheduled_email: ScheduledEmailOut


class ScheduledEmailListResponse(CamelModel):
    scheduled_emails: List[ScheduledEmailOut]
    count: int
    limit: int
    offset: int


class CancelEmailResponse(CamelModel):
    success: bool = True
    scheduled_email: ScheduledEmailOut


class FlowListResponse(CamelModel):
    flows: List[EmailFlowOut]


class FlowResponse(CamelModel):
    flow: EmailFlowOut


class FlowDetailResponse(CamelModel):
    flow: EmailFlowOut
    steps: List[EmailFlowStepOut]


class FlowStepResponse(CamelModel):
    step: EmailFlowStepOut


class FlowStatsResponse(CamelModel):
    flow_stats: Dict[str, FlowStats]


class TriggerFlowResponse(CamelModel):
    flow_trigger_id: str
    scheduled_emails: List[ScheduledEmailOut]
    count: int


class CancelFlowResponse(CamelModel):
    cancelled_count: int


class TriggeredFlow(CamelModel):
    flow_id: str
    flow_trigger_id: str
    count: int


class FlowEventResponse(CamelModel):
    cancelled_count: int
    triggered: List[TriggeredFlow]


class WebhookResponse(CamelModel):
    received: bool = True
    event_type: Optional[str] = None
    message: Optional[str] = None


class PreferencesResponse(CamelModel):
    success: bool = True
    message: Optional[str] = None
    preferences: EmailPreferencesOut
