from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, Field, field_validator, model_validator


def utc_now() -> datetime:
    return datetime.utcnow()


def as_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Timestamps are stored as naive UTC; offset-aware input is converted."""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


class AssignmentPriority(str, Enum):
    low = "low"
    medium = "medium"
    high = "high"
    urgent = "urgent"


class AssignmentMethod(str, Enum):
    rule = "rule"
    round_robin = "round_robin"
    manual = "manual"
    reassignment = "reassignment"
    undo = "undo"


class MatchType(str, Enum):
    direct = "direct"
    round_robin = "round_robin"
    pool = "pool"


class CampaignChannel(str, Enum):
    email = "email"
    sms = "sms"
    whatsapp = "whatsapp"
    multi_channel = "multi-channel"


class CampaignStatus(str, Enum):
    draft = "draft"
    scheduled = "scheduled"
    active = "active"
    paused = "paused"
    completed = "completed"
    failed = "failed"


class DeliveryStatus(str, Enum):
    pending = "pending"
    queued = "queued"
    sending = "sending"
    sent = "sent"
    delivered = "delivered"
    read = "read"
    failed = "failed"
    bounced = "bounced"
    skipped = "skipped"


class WebhookEventStatus(str, Enum):
    received = "received"
    processed = "processed"
    unmatched = "unmatched"
    permanently_unmatched = "permanently_unmatched"


class IngestResult(str, Enum):
    ok = "ok"
    duplicate = "duplicate"
    unmatched = "unmatched"


# Routing conditions. A closed set of variants, told apart by ``kind``.


class FieldEquals(BaseModel):
    kind: Literal["equals"] = "equals"
    field: str = Field(min_length=1, max_length=80)
    value: Any


class FieldIn(BaseModel):
    kind: Literal["in"] = "in"
    field: str = Field(min_length=1, max_length=80)
    values: list[Any] = Field(default_factory=list)


class FieldContains(BaseModel):
    kind: Literal["contains"] = "contains"
    field: str = Field(min_length=1, max_length=80)
    value: Any


class FieldCompare(BaseModel):
    kind: Literal["compare"] = "compare"
    field: str = Field(min_length=1, max_length=80)
    op: Literal["gt", "gte", "lt", "lte"]
    value: float


class Composite(BaseModel):
    kind: Literal["composite"] = "composite"
    op: Literal["and", "or"] = "and"
    conditions: list["Condition"] = Field(default_factory=list)


Condition = Annotated[
    Union[FieldEquals, FieldIn, FieldContains, FieldCompare, Composite],
    Field(discriminator="kind"),
]

Composite.model_rebuild()


class LeadRecord(BaseModel):
    id: str
    company_id: str
    name: str
    phone: Optional[str] = None
    email: Optional[str] = None
    source: Optional[str] = None
    stage: str = "New"
    budget: Optional[float] = None
    location: Optional[str] = None
    property_type: Optional[str] = None
    attributes: dict[str, Any] = Field(default_factory=dict)
    assigned_agent_id: Optional[str] = None
    previous_agent_id: Optional[str] = None
    assigned_at_utc: Optional[datetime] = None
    assignment_priority: AssignmentPriority = AssignmentPriority.medium
    reassignment_due_utc: Optional[datetime] = None
    last_contacted_at_utc: Optional[datetime] = None
    created_at_utc: datetime
    updated_at_utc: datetime


class AgentRecord(BaseModel):
    id: str
    company_id: str
    name: str
    is_available: bool = True
    max_leads_capacity: int = 50
    current_leads_count: int = 0
    pending_followups_count: int = 0
    total_assignments_today: int = 0
    total_assignments_week: int = 0
    counters_date: Optional[str] = None
    conversion_rate: float = 0.0
    average_response_time_hours: Optional[float] = None
    last_assignment_at_utc: Optional[datetime] = None
    created_at_utc: datetime
    updated_at_utc: datetime


class AgentLoad(BaseModel):
    agent_id: str
    current_count: int
    capacity: int
    is_available: bool


class AgentPoolRecord(BaseModel):
    id: str
    company_id: str
    name: str
    member_agent_ids: list[str] = Field(default_factory=list)
    round_robin_index: int = 0
    is_active: bool = True
    created_at_utc: datetime
    updated_at_utc: datetime


class AssignmentRuleRecord(BaseModel):
    id: str
    company_id: str
    name: str
    priority: int = 100
    rule_order: int = 0
    is_active: bool = True
    match_all_conditions: bool = True
    conditions: list[Condition] = Field(default_factory=list)
    rule_type: MatchType = MatchType.round_robin
    assigned_agents: list[str] = Field(default_factory=list)
    pool_id: Optional[str] = None
    round_robin_index: int = 0
    version: int = 1
    created_at_utc: datetime
    updated_at_utc: datetime


class AssignmentConfigRecord(BaseModel):
    company_id: str
    default_agent_id: Optional[str] = None
    default_pool_id: Optional[str] = None
    fallback_agent_ids: list[str] = Field(default_factory=list)
    round_robin_index: int = 0
    updated_at_utc: datetime


class AssignmentLogEntry(BaseModel):
    id: str
    sequence: int
    lead_id: str
    company_id: str
    from_agent_id: Optional[str]
    to_agent_id: Optional[str]
    method: AssignmentMethod
    rule_id: Optional[str] = None
    reason: Optional[str] = None
    assigned_by: Optional[str] = None
    can_undo: bool = True
    undone_at_utc: Optional[datetime] = None
    undone_by: Optional[str] = None
    created_at_utc: datetime


class AssignmentNotificationRecord(BaseModel):
    id: str
    agent_id: str
    lead_id: str
    title: str
    message: Optional[str] = None
    is_read: bool = False
    created_at_utc: datetime
    read_at_utc: Optional[datetime] = None


class AutoReassignmentRuleRecord(BaseModel):
    id: str
    company_id: str
    name: str
    days_without_contact: int = 3
    apply_to_stages: list[str] = Field(default_factory=lambda: ["New", "Contacted"])
    use_round_robin: bool = True
    reassign_to_agent_id: Optional[str] = None
    reassign_to_pool_id: Optional[str] = None
    is_active: bool = True
    created_at_utc: datetime
    updated_at_utc: datetime


class RoutingDecision(BaseModel):
    agent_id: str
    method: AssignmentMethod
    rule_id: Optional[str] = None
    pool_id: Optional[str] = None


class TemplatePayload(BaseModel):
    subject: Optional[str] = Field(default=None, max_length=200)
    body: str = Field(default="", max_length=10000)
    whatsapp_template_name: Optional[str] = Field(default=None, max_length=120)
    language: str = Field(default="en", max_length=10)


class RecipientInput(BaseModel):
    name: Optional[str] = Field(default=None, max_length=120)
    phone_number: Optional[str] = Field(default=None, max_length=30)
    email: Optional[str] = Field(default=None, max_length=200)
    lead_id: Optional[str] = None
    template_variables: dict[str, Any] = Field(default_factory=dict)
    consent_checked: bool = True

    @model_validator(mode="after")
    def validate_address(self) -> "RecipientInput":
        if not (self.phone_number or self.email):
            raise ValueError("recipient needs a phone_number or an email")
        return self


class AudienceFilter(BaseModel):
    lead_ids: list[str] = Field(default_factory=list)
    stages: list[str] = Field(default_factory=list)
    sources: list[str] = Field(default_factory=list)


class CampaignRecord(BaseModel):
    id: str
    company_id: str
    name: str
    channel: CampaignChannel
    channel_priority: list[CampaignChannel] = Field(default_factory=list)
    status: CampaignStatus = CampaignStatus.draft
    template: TemplatePayload
    audience: list[RecipientInput] = Field(default_factory=list)
    audience_filter: Optional[AudienceFilter] = None
    audience_materialized: bool = False
    consent_required: bool = False
    rate_limit_per_second: int = 10
    max_retries: int = 3
    total_recipients: int = 0
    counters: dict[str, int] = Field(default_factory=dict)
    error_summary: dict[str, int] = Field(default_factory=dict)
    failure_reason: Optional[str] = None
    scheduled_at_utc: Optional[datetime] = None
    started_at_utc: Optional[datetime] = None
    completed_at_utc: Optional[datetime] = None
    created_at_utc: datetime
    updated_at_utc: datetime


class CampaignRecipientRecord(BaseModel):
    id: str
    campaign_id: str
    sequence: int
    lead_id: Optional[str] = None
    name: Optional[str] = None
    phone_number: Optional[str] = None
    email: Optional[str] = None
    channel: Optional[CampaignChannel] = None
    template_variables: dict[str, Any] = Field(default_factory=dict)
    delivery_status: DeliveryStatus = DeliveryStatus.pending
    queued_at_utc: Optional[datetime] = None
    sent_at_utc: Optional[datetime] = None
    delivered_at_utc: Optional[datetime] = None
    read_at_utc: Optional[datetime] = None
    failed_at_utc: Optional[datetime] = None
    retry_count: int = 0
    next_retry_at_utc: Optional[datetime] = None
    retryable: bool = False
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    is_duplicate: bool = False
    consent_checked: bool = True
    skip_reason: Optional[str] = None
    provider_message_id: Optional[str] = None
    created_at_utc: datetime
    updated_at_utc: datetime


class CampaignLogRecord(BaseModel):
    id: str
    campaign_id: str
    recipient_id: Optional[str] = None
    action: str
    details: dict[str, Any] = Field(default_factory=dict)
    created_at_utc: datetime


class WebhookEventRecord(BaseModel):
    id: str
    key: str
    provider: str
    event_id: str
    event_type: DeliveryStatus
    provider_message_id: str
    occurred_at_utc: datetime
    payload: dict[str, Any] = Field(default_factory=dict)
    processed: bool = False
    status: WebhookEventStatus = WebhookEventStatus.received
    outcome: Optional[IngestResult] = None
    retry_count: int = 0
    next_retry_utc: Optional[datetime] = None
    recipient_id: Optional[str] = None
    created_at_utc: datetime
    updated_at_utc: datetime


class CampaignAnalytics(BaseModel):
    campaign_id: str
    status: CampaignStatus
    total_recipients: int
    counts: dict[str, int]
    exhausted_failures: int
    retry_pending: int
    delivery_rate: float
    read_rate: float
    failure_rate: float
    average_delivery_time_seconds: Optional[float]
    error_summary: dict[str, int]


class DispatchSummary(BaseModel):
    campaign_id: str
    dispatched: int = 0
    sent: int = 0
    failed: int = 0
    stopped_reason: Optional[str] = None


# HTTP request / response payloads.


class AgentCreateRequest(BaseModel):
    company_id: str = Field(min_length=1, max_length=120)
    name: str = Field(min_length=2, max_length=120)
    agent_id: Optional[str] = Field(default=None, max_length=120)
    is_available: bool = True
    max_leads_capacity: Optional[int] = Field(default=None, ge=1, le=10000)


class AgentAvailabilityRequest(BaseModel):
    is_available: bool


class AgentPoolCreateRequest(BaseModel):
    company_id: str = Field(min_length=1, max_length=120)
    name: str = Field(min_length=2, max_length=120)
    member_agent_ids: list[str] = Field(default_factory=list)


class AssignmentRuleCreateRequest(BaseModel):
    company_id: str = Field(min_length=1, max_length=120)
    name: str = Field(min_length=2, max_length=120)
    priority: int = Field(default=100, ge=0)
    rule_order: int = Field(default=0, ge=0)
    match_all_conditions: bool = True
    conditions: list[Condition] = Field(default_factory=list)
    rule_type: MatchType = MatchType.round_robin
    assigned_agents: list[str] = Field(default_factory=list)
    pool_id: Optional[str] = None

    @model_validator(mode="after")
    def validate_targets(self) -> "AssignmentRuleCreateRequest":
        if self.rule_type == MatchType.pool and not self.pool_id:
            raise ValueError("pool rules need a pool_id")
        if self.rule_type != MatchType.pool and not self.assigned_agents:
            raise ValueError("direct and round_robin rules need assigned_agents")
        return self


class AssignmentConfigRequest(BaseModel):
    default_agent_id: Optional[str] = None
    default_pool_id: Optional[str] = None
    fallback_agent_ids: list[str] = Field(default_factory=list)


class LeadCreateRequest(BaseModel):
    company_id: str = Field(min_length=1, max_length=120)
    name: str = Field(min_length=2, max_length=120)
    phone: Optional[str] = Field(default=None, max_length=30)
    email: Optional[str] = Field(default=None, max_length=200)
    source: Optional[str] = Field(default=None, max_length=120)
    stage: str = Field(default="New", max_length=60)
    budget: Optional[float] = Field(default=None, ge=0)
    location: Optional[str] = Field(default=None, max_length=120)
    property_type: Optional[str] = Field(default=None, max_length=60)
    attributes: dict[str, Any] = Field(default_factory=dict)
    assignment_priority: AssignmentPriority = AssignmentPriority.medium
    auto_assign: bool = True


class LeadResponse(BaseModel):
    lead_id: str
    assigned_agent_id: Optional[str]
    previous_agent_id: Optional[str]
    log_entry_id: Optional[str] = None
    detail: Optional[str] = None


class AssignRequest(BaseModel):
    agent_id: str = Field(min_length=1)
    method: AssignmentMethod = AssignmentMethod.manual
    reason: Optional[str] = Field(default=None, max_length=200)
    assigned_by: Optional[str] = Field(default=None, max_length=120)


class BulkAssignRequest(BaseModel):
    lead_ids: list[str] = Field(min_length=1, max_length=1000)
    agent_id: str = Field(min_length=1)


class BulkAssignResponse(BaseModel):
    requested: int
    assigned: int


class UndoResponse(BaseModel):
    lead_id: str
    undone: bool
    assigned_agent_id: Optional[str]
    detail: str


class LeadPriorityRequest(BaseModel):
    assignment_priority: AssignmentPriority


class AutoReassignmentRuleCreateRequest(BaseModel):
    company_id: str = Field(min_length=1, max_length=120)
    name: str = Field(min_length=2, max_length=120)
    days_without_contact: int = Field(default=3, ge=1, le=365)
    apply_to_stages: list[str] = Field(default_factory=lambda: ["New", "Contacted"])
    use_round_robin: bool = True
    reassign_to_agent_id: Optional[str] = None
    reassign_to_pool_id: Optional[str] = None


class SweepResponse(BaseModel):
    company_id: str
    reassigned_lead_ids: list[str]


class CampaignCreateRequest(BaseModel):
    company_id: str = Field(min_length=1, max_length=120)
    name: str = Field(min_length=2, max_length=120)
    channel: CampaignChannel
    channel_priority: list[CampaignChannel] = Field(default_factory=list)
    template: TemplatePayload
    audience: list[RecipientInput] = Field(default_factory=list)
    audience_filter: Optional[AudienceFilter] = None
    consent_required: bool = False
    rate_limit_per_second: Optional[int] = Field(default=None, ge=1, le=1000)
    max_retries: Optional[int] = Field(default=None, ge=0, le=20)
    scheduled_at_utc: Optional[datetime] = None

    @field_validator("scheduled_at_utc")
    @classmethod
    def normalize_scheduled_at(cls, value: Optional[datetime]) -> Optional[datetime]:
        return as_naive_utc(value)

    @model_validator(mode="after")
    def validate_channel_priority(self) -> "CampaignCreateRequest":
        if CampaignChannel.multi_channel in self.channel_priority:
            raise ValueError("channel_priority lists concrete channels only")
        return self


class CampaignScheduleRequest(BaseModel):
    scheduled_at_utc: datetime

    @field_validator("scheduled_at_utc")
    @classmethod
    def normalize_scheduled_at(cls, value: datetime) -> datetime:
        return as_naive_utc(value)


class CampaignResponse(BaseModel):
    campaign_id: str
    status: CampaignStatus
    total_recipients: int
    counters: dict[str, int]
    started_at_utc: Optional[datetime]
    completed_at_utc: Optional[datetime]
    failure_reason: Optional[str]


class RetryPassResponse(BaseModel):
    campaign_id: str
    requeued: int


class DeliveryEventRequest(BaseModel):
    event_id: str = Field(min_length=4, max_length=120)
    event_type: DeliveryStatus
    provider_message_id: str = Field(min_length=1, max_length=255)
    occurred_at_utc: Optional[datetime] = None
    payload: dict[str, Any] = Field(default_factory=dict)

    @field_validator("occurred_at_utc")
    @classmethod
    def normalize_occurred_at(cls, value: Optional[datetime]) -> Optional[datetime]:
        return as_naive_utc(value)

    @model_validator(mode="after")
    def validate_event_type(self) -> "DeliveryEventRequest":
        allowed = {
            DeliveryStatus.sent,
            DeliveryStatus.delivered,
            DeliveryStatus.read,
            DeliveryStatus.failed,
            DeliveryStatus.bounced,
        }
        if self.event_type not in allowed:
            raise ValueError(f"unsupported delivery event type: {self.event_type.value}")
        return self


class DeliveryEventResponse(BaseModel):
    status: IngestResult
    recipient_id: Optional[str] = None
    attempts: Optional[int] = None
