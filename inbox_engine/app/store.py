from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Iterable, Mapping, Optional

from inbox_engine.app.errors import (
    AllocationTargetError,
    MissingTicketError,
    StoreConflictError,
    StoreNotFoundError,
)
from inbox_engine.app.models import (
    AllocationResult,
    CampaignMetrics,
    CampaignRecord,
    ContactRecord,
    InboundEventRequest,
    InboundEventResponse,
    InboundMediaJobRecord,
    LeadAllocationStatus,
    LeadAllocationView,
    MessageRecord,
    MessageStatus,
    TicketRecord,
    TicketStatus,
    new_id,
)
from inbox_engine.app.observability import Diagnostics
from inbox_engine.app.persistence import SqlPersistence
from inbox_engine.app.services import allocations, campaign_metrics, media_jobs, messages, tickets
from inbox_engine.app.services.channel_events import process_inbound_event
from inbox_engine.app.services.contacts import get_contact
from inbox_engine.app.settings import Settings, load_settings

__all__ = [
    "AllocationTargetError",
    "MissingTicketError",
    "ReconciliationStore",
    "StoreConflictError",
    "StoreNotFoundError",
    "new_id",
]


class ReconciliationStore:
    """Binds one persistence handle, settings and diagnostics to the engine operations."""

    def __init__(
        self,
        persistence: SqlPersistence,
        *,
        settings: Optional[Settings] = None,
        diagnostics: Optional[Diagnostics] = None,
    ) -> None:
        self.persistence = persistence
        self.settings = settings or load_settings()
        self.diagnostics = diagnostics or Diagnostics()

    @property
    def dedupe_window(self) -> timedelta:
        return timedelta(hours=self.settings.lead_dedupe_window_hours)

    def ping(self) -> bool:
        return self.persistence.ping()

    def ingest_event(
        self, tenant_id: str, event: InboundEventRequest, *, now: Optional[datetime] = None
    ) -> InboundEventResponse:
        return process_inbound_event(
            self.persistence,
            tenant_id,
            event,
            default_channel=self.settings.default_channel,
            now=now,
            diagnostics=self.diagnostics,
        )

    def get_contact(self, tenant_id: str, contact_id: str) -> ContactRecord:
        contact = get_contact(self.persistence, tenant_id, contact_id)
        if not contact:
            raise StoreNotFoundError(f"contact not found: {contact_id}")
        return contact

    def get_ticket(self, tenant_id: str, ticket_id: str) -> TicketRecord:
        ticket = tickets.get_ticket(self.persistence, tenant_id, ticket_id)
        if not ticket:
            raise StoreNotFoundError(f"ticket not found: {ticket_id}")
        return ticket

    def list_ticket_messages(self, tenant_id: str, ticket_id: str) -> list[MessageRecord]:
        return messages.list_ticket_messages(self.persistence, tenant_id, ticket_id)

    def transition_ticket(
        self, tenant_id: str, ticket_id: str, status: TicketStatus
    ) -> TicketRecord:
        ticket = tickets.transition_ticket(self.persistence, tenant_id, ticket_id, status)
        if not ticket:
            raise StoreNotFoundError(f"ticket not found: {ticket_id}")
        return ticket

    def acknowledge_message(
        self,
        tenant_id: str,
        message_id: str,
        *,
        status: Optional[MessageStatus] = None,
        metadata: Optional[Mapping[str, Any]] = None,
        instance_id: Optional[str] = None,
    ) -> MessageRecord:
        message = messages.apply_message_ack(
            self.persistence,
            tenant_id,
            message_id,
            status=status,
            metadata=metadata,
            instance_id=instance_id,
        )
        if not message:
            raise StoreNotFoundError(f"message not found: {message_id}")
        return message

    def allocate_broker_leads(
        self,
        tenant_id: str,
        leads: Iterable[Mapping[str, Any]],
        *,
        campaign_id: Optional[str] = None,
        instance_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> AllocationResult:
        return allocations.allocate_broker_leads(
            self.persistence,
            tenant_id,
            leads,
            campaign_id=campaign_id,
            instance_id=instance_id,
            now=now,
            window=self.dedupe_window,
            diagnostics=self.diagnostics,
        )

    def list_allocations(
        self,
        tenant_id: str,
        *,
        campaign_id: Optional[str] = None,
        instance_id: Optional[str] = None,
        agreement_id: Optional[str] = None,
        statuses: Optional[Iterable[LeadAllocationStatus]] = None,
    ) -> list[LeadAllocationView]:
        return allocations.list_allocations(
            self.persistence,
            tenant_id,
            campaign_id=campaign_id,
            instance_id=instance_id,
            agreement_id=agreement_id,
            statuses=statuses,
        )

    def update_allocation(
        self,
        tenant_id: str,
        allocation_id: str,
        *,
        status: Optional[LeadAllocationStatus] = None,
        notes: Any = allocations.UNSET,
    ) -> LeadAllocationView:
        view = allocations.update_allocation(
            self.persistence, tenant_id, allocation_id, status=status, notes=notes
        )
        if not view:
            raise StoreNotFoundError(f"allocation not found: {allocation_id}")
        return view

    def create_campaign(self, tenant_id: str, name: str, **kwargs: Any) -> CampaignRecord:
        return allocations.create_campaign(self.persistence, tenant_id, name, **kwargs)

    def get_campaign_metrics(self, tenant_id: str, campaign_id: str) -> CampaignMetrics:
        metrics = campaign_metrics.get_campaign_metrics(self.persistence, tenant_id, campaign_id)
        if metrics is None:
            raise StoreNotFoundError(f"campaign not found: {campaign_id}")
        return metrics

    def claim_media_jobs(
        self, *, limit: Optional[int] = None, tenant_id: Optional[str] = None
    ) -> list[InboundMediaJobRecord]:
        return media_jobs.claim_media_jobs(
            self.persistence,
            limit=limit or self.settings.media_claim_batch_size,
            tenant_id=tenant_id,
            diagnostics=self.diagnostics,
        )

    def complete_media_job(self, job_id: str) -> InboundMediaJobRecord:
        return self._require_job(media_jobs.complete_media_job(self.persistence, job_id), job_id)

    def reschedule_media_job(
        self, job_id: str, next_retry_at: datetime, error: Optional[str] = None
    ) -> InboundMediaJobRecord:
        job = media_jobs.reschedule_media_job(self.persistence, job_id, next_retry_at, error)
        return self._require_job(job, job_id)

    def fail_media_job(self, job_id: str, error: Optional[str] = None) -> InboundMediaJobRecord:
        job = media_jobs.fail_media_job(
            self.persistence, job_id, error, diagnostics=self.diagnostics
        )
        return self._require_job(job, job_id)

    def retry_or_fail_media_job(
        self, job_id: str, error: Optional[str] = None
    ) -> InboundMediaJobRecord:
        job = media_jobs.retry_or_fail(
            self.persistence,
            job_id,
            error,
            max_attempts=self.settings.media_job_max_attempts,
            base_seconds=self.settings.media_retry_base_seconds,
            max_seconds=self.settings.media_retry_max_seconds,
            diagnostics=self.diagnostics,
        )
        return self._require_job(job, job_id)

    @staticmethod
    def _require_job(
        job: Optional[InboundMediaJobRecord], job_id: str
    ) -> InboundMediaJobRecord:
        if not job:
            raise StoreNotFoundError(f"media job not found: {job_id}")
        return job
