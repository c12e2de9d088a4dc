from __future__ import annotations

from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

EPOCH_MILLIS_THRESHOLD = 1_000_000_000_000
_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_MIN_MILLIS = (datetime.min.replace(tzinfo=timezone.utc) - _EPOCH) // timedelta(milliseconds=1)
_MAX_MILLIS = (datetime.max.replace(tzinfo=timezone.utc) - _EPOCH) // timedelta(milliseconds=1)


def utc_now() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def resolve_timestamp(value: Any) -> Optional[int]:
    """
    Normalize epoch seconds, epoch millis or ISO-8601 input to epoch millis.
    Values that fall outside the `datetime` range resolve to None.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return (value - _EPOCH) // timedelta(milliseconds=1)
    if isinstance(value, (int, float)):
        if value != value or value in (float("inf"), float("-inf")):
            return None
        if value > EPOCH_MILLIS_THRESHOLD:
            millis = int(value)
        elif value * 1000 < _MIN_MILLIS:
            return None
        else:
            millis = int(round(value * 1000))
        return millis if _MIN_MILLIS <= millis <= _MAX_MILLIS else None
    if isinstance(value, str):
        trimmed = value.strip()
        if not trimmed:
            return None
        try:
            numeric = float(trimmed)
        except ValueError:
            numeric = None
        if numeric is not None:
            return resolve_timestamp(numeric)
        if trimmed.endswith("Z") or trimmed.endswith("z"):
            trimmed = trimmed[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(trimmed)
        except ValueError:
            return None
        return resolve_timestamp(parsed)
    return None


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid4().hex[:12]}"


def from_epoch_ms(value: int) -> datetime:
    return (_EPOCH + timedelta(milliseconds=value)).replace(tzinfo=None)


def coerce_datetime(value: Any) -> Optional[datetime]:
    millis = resolve_timestamp(value)
    if millis is None:
        return None
    return from_epoch_ms(millis)


class TicketStatus(str, Enum):
    OPEN = "OPEN"
    PENDING = "PENDING"
    ASSIGNED = "ASSIGNED"
    CLOSED = "CLOSED"


OPEN_TICKET_STATUSES = (TicketStatus.OPEN, TicketStatus.PENDING, TicketStatus.ASSIGNED)


class MessageDirection(str, Enum):
    INBOUND = "INBOUND"
    OUTBOUND = "OUTBOUND"


class MessageType(str, Enum):
    TEXT = "TEXT"
    IMAGE = "IMAGE"
    VIDEO = "VIDEO"
    AUDIO = "AUDIO"
    DOCUMENT = "DOCUMENT"


class MessageStatus(str, Enum):
    PENDING = "PENDING"
    SENT = "SENT"
    DELIVERED = "DELIVERED"
    READ = "READ"
    FAILED = "FAILED"


class PayloadKind(str, Enum):
    text = "text"
    media = "media"
    unknown = "unknown"


class InboundMediaJobStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class LeadAllocationStatus(str, Enum):
    allocated = "allocated"
    contacted = "contacted"
    won = "won"
    lost = "lost"


class CampaignStatus(str, Enum):
    DRAFT = "DRAFT"
    ACTIVE = "ACTIVE"
    PAUSED = "PAUSED"
    ENDED = "ENDED"


class MediaDescriptor(BaseModel):
    model_config = ConfigDict(extra="allow")

    media_type: Optional[str] = None
    url: Optional[str] = None
    mime_type: Optional[str] = None
    file_name: Optional[str] = None
    size: Optional[int] = Field(default=None, ge=0)
    caption: Optional[str] = None


class InboundMessagePayload(BaseModel):
    model_config = ConfigDict(extra="allow")

    text: Optional[str] = None
    media: Optional[MediaDescriptor] = None
    timestamp: Optional[Any] = None
    status: Optional[MessageStatus] = None
    idempotency_key: Optional[str] = Field(default=None, max_length=255)
    metadata: dict[str, Any] = Field(default_factory=dict)


class NormalizedMessage(BaseModel):
    kind: PayloadKind
    type: MessageType
    text: Optional[str] = None
    caption: Optional[str] = None
    media: Optional[MediaDescriptor] = None


class MessageMetadata(BaseModel):
    """Message metadata with the known keys typed and everything else kept as-is."""

    model_config = ConfigDict(extra="allow")

    chat_id: Optional[str] = None
    direction: Optional[MessageDirection] = None
    source_instance: Optional[str] = None
    normalized: Optional[NormalizedMessage] = None


class TicketTimeline(BaseModel):
    first_inbound_at: Optional[datetime] = None
    last_inbound_at: Optional[datetime] = None
    first_outbound_at: Optional[datetime] = None
    last_outbound_at: Optional[datetime] = None

    @field_validator("*", mode="before")
    @classmethod
    def _normalize_instant(cls, value: Any) -> Optional[datetime]:
        return coerce_datetime(value)


class TicketMetadata(BaseModel):
    model_config = ConfigDict(extra="allow")

    chat_id: Optional[str] = None
    instance_id: Optional[str] = None
    timeline: TicketTimeline = Field(default_factory=TicketTimeline)


class ContactRecord(BaseModel):
    id: str
    tenant_id: str
    full_name: str
    display_name: str
    primary_phone: Optional[str]
    primary_email: Optional[str]
    document: Optional[str]
    custom_fields: dict[str, Any] = Field(default_factory=dict)
    metadata: dict[str, Any] = Field(default_factory=dict)
    last_interaction_at: Optional[datetime]
    last_activity_at: Optional[datetime]
    created_at_utc: datetime
    updated_at_utc: datetime


class ContactPhoneRecord(BaseModel):
    id: str
    tenant_id: str
    contact_id: str
    phone_number: str
    phone_type: str
    is_primary: bool


class ContactEmailRecord(BaseModel):
    id: str
    tenant_id: str
    contact_id: str
    email: str
    email_type: str
    is_primary: bool


class QueueRecord(BaseModel):
    id: str
    tenant_id: str
    name: str
    channel: str
    is_active: bool
    created_at_utc: datetime


class TicketRecord(BaseModel):
    id: str
    tenant_id: str
    contact_id: str
    queue_id: str
    status: TicketStatus
    channel: str
    subject: Optional[str]
    tags: list[str] = Field(default_factory=list)
    metadata: TicketMetadata = Field(default_factory=TicketMetadata)
    last_message_at: Optional[datetime]
    last_message_preview: Optional[str]
    closed_at: Optional[datetime]
    created_at_utc: datetime
    updated_at_utc: datetime


class MessageRecord(BaseModel):
    id: str
    tenant_id: str
    ticket_id: str
    contact_id: str
    instance_id: Optional[str]
    direction: MessageDirection
    type: MessageType
    content: str
    caption: Optional[str]
    media_url: Optional[str]
    media_mime_type: Optional[str]
    media_file_name: Optional[str]
    media_size: Optional[int]
    status: MessageStatus
    external_id: Optional[str]
    idempotency_key: Optional[str]
    metadata: MessageMetadata = Field(default_factory=MessageMetadata)
    created_at_utc: datetime
    updated_at_utc: datetime


class MediaJobHints(BaseModel):
    model_config = ConfigDict(extra="allow")

    message_external_id: Optional[str] = None
    instance_id: Optional[str] = None
    media_type: Optional[str] = None
    media_key: Optional[str] = None
    direct_path: Optional[str] = None
    metadata: Optional[dict[str, Any]] = None


class InboundMediaJobRecord(BaseModel):
    id: str
    tenant_id: str
    message_id: str
    message_external_id: Optional[str]
    instance_id: Optional[str]
    media_type: Optional[str]
    media_key: Optional[str]
    direct_path: Optional[str]
    status: InboundMediaJobStatus
    attempts: int
    next_retry_at: Optional[datetime]
    last_error: Optional[str]
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at_utc: datetime
    updated_at_utc: datetime


class CampaignRecord(BaseModel):
    id: str
    tenant_id: str
    name: str
    agreement_id: Optional[str]
    instance_id: Optional[str]
    status: CampaignStatus
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at_utc: datetime
    updated_at_utc: datetime


class BrokerLeadInput(BaseModel):
    model_config = ConfigDict(extra="ignore")

    full_name: str = Field(min_length=1, max_length=200)
    document: Optional[str] = None
    registrations: list[str] = Field(default_factory=list)
    agreement_id: Optional[str] = None
    phone: Optional[str] = None
    margin: Optional[float] = None
    net_margin: Optional[float] = None
    score: Optional[float] = None
    tags: list[str] = Field(default_factory=list)
    raw: Optional[dict[str, Any]] = None


class BrokerLeadRecord(BaseModel):
    id: str
    tenant_id: str
    document: str
    full_name: str
    agreement_id: Optional[str]
    matricula: Optional[str]
    phone: Optional[str]
    registrations: list[str]
    tags: list[str]
    margin: Optional[float]
    net_margin: Optional[float]
    score: Optional[float]
    raw: Optional[dict[str, Any]]
    created_at_utc: datetime
    updated_at_utc: datetime


class LeadAllocationRecord(BaseModel):
    id: str
    tenant_id: str
    lead_id: str
    campaign_id: str
    status: LeadAllocationStatus
    notes: Optional[str]
    payload: Optional[dict[str, Any]]
    received_at: datetime
    updated_at: datetime


class LeadAllocationView(BaseModel):
    allocation_id: str
    lead_id: str
    tenant_id: str
    campaign_id: str
    campaign_name: str
    agreement_id: Optional[str] = None
    instance_id: Optional[str] = None
    status: LeadAllocationStatus
    received_at: datetime
    updated_at: datetime
    notes: Optional[str] = None
    full_name: str
    document: str
    matricula: Optional[str] = None
    registrations: list[str] = Field(default_factory=list)
    phone: Optional[str] = None
    margin: Optional[float] = None
    net_margin: Optional[float] = None
    score: Optional[float] = None
    tags: list[str] = Field(default_factory=list)
    payload: Optional[dict[str, Any]] = None


class AllocationSummary(BaseModel):
    total: int = 0
    contacted: int = 0
    won: int = 0
    lost: int = 0


class CampaignMetrics(BaseModel):
    total: int = 0
    allocated: int = 0
    contacted: int = 0
    won: int = 0
    lost: int = 0
    average_response_seconds: Optional[int] = None


class AllocationResult(BaseModel):
    campaign_id: str
    newly_allocated: list[LeadAllocationView]
    summary: AllocationSummary


class InboundEventRequest(BaseModel):
    chat_handle: str = Field(min_length=1, max_length=255)
    external_id: str = Field(default="", max_length=255)
    direction: MessageDirection = MessageDirection.INBOUND
    channel: Optional[str] = Field(default=None, max_length=50)
    instance_id: Optional[str] = Field(default=None, max_length=120)
    display_name: Optional[str] = Field(default=None, max_length=200)
    phone: Optional[str] = Field(default=None, max_length=40)
    email: Optional[str] = Field(default=None, max_length=255)
    message: InboundMessagePayload = Field(default_factory=InboundMessagePayload)
    media_hints: Optional[MediaJobHints] = None


class InboundEventResponse(BaseModel):
    contact_id: str
    ticket_id: str
    ticket_created: bool
    message_id: str
    message_created: bool
    message_type: MessageType
    media_job_id: Optional[str] = None


class MessageAckRequest(BaseModel):
    status: Optional[MessageStatus] = None
    metadata: Optional[dict[str, Any]] = None
    instance_id: Optional[str] = Field(default=None, max_length=120)


class TicketStatusRequest(BaseModel):
    status: TicketStatus


class TicketDetailResponse(BaseModel):
    ticket: TicketRecord
    messages: list[MessageRecord]


class BrokerLeadBatchRequest(BaseModel):
    campaign_id: Optional[str] = None
    instance_id: Optional[str] = Field(default=None, max_length=120)
    leads: list[dict[str, Any]] = Field(default_factory=list)


class AllocationUpdateRequest(BaseModel):
    status: Optional[LeadAllocationStatus] = None
    notes: Optional[str] = Field(default=None, max_length=2000)


class MediaJobClaimRequest(BaseModel):
    limit: Optional[int] = Field(default=None, ge=1, le=100)
    tenant_id: Optional[str] = None


class MediaJobRescheduleRequest(BaseModel):
    next_retry_at: datetime
    error: Optional[str] = None


class MediaJobFailRequest(BaseModel):
    error: Optional[str] = None
