from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Iterable, Mapping, Optional, Union

from pydantic import ValidationError
from sqlalchemy import select
from sqlalchemy.engine import Connection
from sqlalchemy.exc import IntegrityError

from inbox_engine.app.errors import (
    AllocationTargetError,
    StoreConflictError,
    StoreNotFoundError,
)
from inbox_engine.app.models import (
    AllocationResult,
    BrokerLeadInput,
    BrokerLeadRecord,
    CampaignRecord,
    CampaignStatus,
    LeadAllocationRecord,
    LeadAllocationStatus,
    LeadAllocationView,
    new_id,
    utc_now,
)
from inbox_engine.app.observability import Diagnostics, ensure_diagnostics
from inbox_engine.app.persistence import SqlPersistence, find_or_create
from inbox_engine.app.services.campaign_metrics import summarize_allocations
from inbox_engine.app.services.normalize import (
    dedupe_strings,
    digits_only,
    optional_text,
    sanitize_phone,
)
from inbox_engine.app.services.workflow import ALLOCATION_TRANSITIONS

DEDUPE_WINDOW = timedelta(hours=24)
FALLBACK_AGREEMENT_PREFIX = "fallback:"
FALLBACK_CAMPAIGN_NAME = "WhatsApp Inbound"

UNSET: Any = object()

LeadInput = Union[BrokerLeadInput, Mapping[str, Any]]


def fallback_agreement_id(instance_id: str) -> str:
    return f"{FALLBACK_AGREEMENT_PREFIX}{instance_id}"


def _campaign_from_row(row) -> CampaignRecord:
    return CampaignRecord.model_validate(dict(row._mapping))


def _load_campaign(
    conn: Connection, db: SqlPersistence, tenant_id: str, campaign_id: str
) -> Optional[CampaignRecord]:
    row = conn.execute(
        select(db.campaigns).where(
            db.campaigns.c.tenant_id == tenant_id,
            db.campaigns.c.id == campaign_id,
        )
    ).first()
    return _campaign_from_row(row) if row else None


def get_campaign(db: SqlPersistence, tenant_id: str, campaign_id: str) -> Optional[CampaignRecord]:
    with db.transaction() as conn:
        return _load_campaign(conn, db, tenant_id, campaign_id)


def create_campaign(
    db: SqlPersistence,
    tenant_id: str,
    name: str,
    *,
    agreement_id: Optional[str] = None,
    instance_id: Optional[str] = None,
    status: CampaignStatus = CampaignStatus.ACTIVE,
    metadata: Optional[dict[str, Any]] = None,
    now: Optional[datetime] = None,
) -> CampaignRecord:
    moment = now or utc_now()
    values = {
        "id": new_id("cmp"),
        "tenant_id": tenant_id,
        "name": name.strip(),
        "agreement_id": optional_text(agreement_id),
        "instance_id": optional_text(instance_id),
        "status": CampaignStatus(status).value,
        "metadata": metadata or {},
        "created_at_utc": moment,
        "updated_at_utc": moment,
    }
    with db.transaction() as conn:
        conn.execute(db.campaigns.insert().values(**values))
    return CampaignRecord.model_validate(values)


def _ensure_fallback_campaign(
    conn: Connection,
    db: SqlPersistence,
    tenant_id: str,
    instance_id: str,
    now: datetime,
) -> tuple[CampaignRecord, bool]:
    table = db.campaigns
    agreement_id = fallback_agreement_id(instance_id)

    def find() -> Optional[CampaignRecord]:
        row = conn.execute(
            select(table).where(
                table.c.tenant_id == tenant_id,
                table.c.agreement_id == agreement_id,
                table.c.instance_id == instance_id,
            )
        ).first()
        return _campaign_from_row(row) if row else None

    def create() -> CampaignRecord:
        values = {
            "id": new_id("cmp"),
            "tenant_id": tenant_id,
            "name": FALLBACK_CAMPAIGN_NAME,
            "agreement_id": agreement_id,
            "instance_id": instance_id,
            "status": CampaignStatus.ACTIVE.value,
            "metadata": {"fallback": True, "source": "whatsapp-inbound"},
            "created_at_utc": now,
            "updated_at_utc": now,
        }
        conn.execute(table.insert().values(**values))
        return CampaignRecord.model_validate(values)

    return find_or_create(conn, find, create)


def ensure_fallback_campaign(
    db: SqlPersistence,
    tenant_id: str,
    instance_id: str,
    *,
    now: Optional[datetime] = None,
    diagnostics: Optional[Diagnostics] = None,
) -> CampaignRecord:
    instance = optional_text(instance_id)
    if instance is None:
        raise AllocationTargetError("instance id is required for a fallback campaign")
    with db.transaction() as conn:
        campaign, created = _ensure_fallback_campaign(
            conn, db, tenant_id, instance, now or utc_now()
        )
    if created:
        ensure_diagnostics(diagnostics).emit(
            "fallback_campaign_ready",
            tenant_id=tenant_id,
            campaign_id=campaign.id,
            instance_id=instance,
        )
    return campaign


def _upsert_broker_lead(
    conn: Connection,
    db: SqlPersistence,
    tenant_id: str,
    lead: BrokerLeadInput,
    document: str,
    phone: Optional[str],
    now: datetime,
) -> BrokerLeadRecord:
    table = db.broker_leads
    registrations = dedupe_strings(lead.registrations)
    refreshed = {
        "full_name": lead.full_name.strip(),
        "agreement_id": optional_text(lead.agreement_id),
        "matricula": registrations[0] if registrations else None,
        "phone": phone,
        "registrations": registrations,
        "tags": dedupe_strings(lead.tags),
        "margin": lead.margin,
        "net_margin": lead.net_margin,
        "score": lead.score,
        "raw": lead.raw,
        "updated_at_utc": now,
    }

    def find() -> Optional[BrokerLeadRecord]:
        row = conn.execute(
            select(table).where(table.c.tenant_id == tenant_id, table.c.document == document)
        ).first()
        return BrokerLeadRecord.model_validate(dict(row._mapping)) if row else None

    def create() -> BrokerLeadRecord:
        values = {
            "id": new_id("lead"),
            "tenant_id": tenant_id,
            "document": document,
            "created_at_utc": now,
            **refreshed,
        }
        conn.execute(table.insert().values(**values))
        return BrokerLeadRecord.model_validate(values)

    record, created = find_or_create(conn, find, create)
    if created:
        return record
    conn.execute(table.update().where(table.c.id == record.id).values(**refreshed))
    return BrokerLeadRecord.model_validate({**record.model_dump(), **refreshed})


def _view(
    allocation: LeadAllocationRecord, lead: BrokerLeadRecord, campaign: CampaignRecord
) -> LeadAllocationView:
    return LeadAllocationView(
        allocation_id=allocation.id,
        lead_id=lead.id,
        tenant_id=allocation.tenant_id,
        campaign_id=campaign.id,
        campaign_name=campaign.name,
        agreement_id=campaign.agreement_id or lead.agreement_id,
        instance_id=campaign.instance_id,
        status=allocation.status,
        received_at=allocation.received_at,
        updated_at=allocation.updated_at,
        notes=allocation.notes,
        full_name=lead.full_name,
        document=lead.document,
        matricula=lead.matricula,
        registrations=lead.registrations,
        phone=lead.phone,
        margin=lead.margin,
        net_margin=lead.net_margin,
        score=lead.score,
        tags=lead.tags,
        payload=allocation.payload,
    )


def _allocate_one(
    conn: Connection,
    db: SqlPersistence,
    tenant_id: str,
    campaign: CampaignRecord,
    raw_lead: LeadInput,
    *,
    now: datetime,
    window: timedelta,
    diagnostics: Diagnostics,
) -> Optional[LeadAllocationView]:
    lead_input = (
        raw_lead
        if isinstance(raw_lead, BrokerLeadInput)
        else BrokerLeadInput.model_validate(dict(raw_lead))
    )
    phone = sanitize_phone(lead_input.phone)
    document = digits_only(lead_input.document) or digits_only(phone)
    if not document:
        raise ValueError("lead has no usable document or phone")

    lead = _upsert_broker_lead(conn, db, tenant_id, lead_input, document, phone, now)
    payload = lead_input.model_dump(mode="json")
    table = db.lead_allocations

    def find() -> Optional[LeadAllocationRecord]:
        row = conn.execute(
            select(table).where(
                table.c.tenant_id == tenant_id,
                table.c.lead_id == lead.id,
                table.c.campaign_id == campaign.id,
            )
        ).first()
        return LeadAllocationRecord.model_validate(dict(row._mapping)) if row else None

    def create() -> LeadAllocationRecord:
        values = {
            "id": new_id("alloc"),
            "tenant_id": tenant_id,
            "lead_id": lead.id,
            "campaign_id": campaign.id,
            "status": LeadAllocationStatus.allocated.value,
            "notes": None,
            "payload": payload,
            "received_at": now,
            "updated_at": now,
        }
        conn.execute(table.insert().values(**values))
        return LeadAllocationRecord.model_validate(values)

    allocation, created = find_or_create(conn, find, create)
    if not created:
        if allocation.received_at >= now - window:
            diagnostics.emit(
                "lead_skipped_duplicate_window",
                tenant_id=tenant_id,
                campaign_id=campaign.id,
                document=document,
            )
            return None
        rearmed = {
            "status": LeadAllocationStatus.allocated.value,
            "notes": None,
            "payload": payload,
            "received_at": now,
            "updated_at": now,
        }
        conn.execute(table.update().where(table.c.id == allocation.id).values(**rearmed))
        allocation = LeadAllocationRecord.model_validate({**allocation.model_dump(), **rearmed})

    diagnostics.emit(
        "lead_allocated",
        tenant_id=tenant_id,
        campaign_id=campaign.id,
        allocation_id=allocation.id,
        rearmed=not created,
    )
    return _view(allocation, lead, campaign)


def allocate_broker_leads(
    db: SqlPersistence,
    tenant_id: str,
    leads: Iterable[LeadInput],
    *,
    campaign_id: Optional[str] = None,
    instance_id: Optional[str] = None,
    now: Optional[datetime] = None,
    window: timedelta = DEDUPE_WINDOW,
    diagnostics: Optional[Diagnostics] = None,
) -> AllocationResult:
    """
    Allocate a broker batch to a campaign, skipping leads already allocated to
    it within `window`.

    Without `campaign_id` the per-instance fallback campaign is the target.
    Each lead runs in its own SAVEPOINT: a malformed lead is logged and skipped
    without aborting the rest of the batch.
    """
    diagnostics = ensure_diagnostics(diagnostics)
    target_campaign_id = optional_text(campaign_id)
    instance = optional_text(instance_id)
    if target_campaign_id is None and instance is None:
        raise AllocationTargetError("campaign_id or instance_id is required")
    moment = now or utc_now()

    newly_allocated: list[LeadAllocationView] = []
    with db.transaction() as conn:
        if target_campaign_id is not None:
            campaign = _load_campaign(conn, db, tenant_id, target_campaign_id)
            if campaign is None:
                raise StoreNotFoundError(f"campaign not found: {target_campaign_id}")
        else:
            campaign, created = _ensure_fallback_campaign(conn, db, tenant_id, instance, moment)
            if created:
                diagnostics.emit(
                    "fallback_campaign_ready",
                    tenant_id=tenant_id,
                    campaign_id=campaign.id,
                    instance_id=instance,
                )

        for index, raw_lead in enumerate(leads):
            try:
                with conn.begin_nested():
                    view = _allocate_one(
                        conn,
                        db,
                        tenant_id,
                        campaign,
                        raw_lead,
                        now=moment,
                        window=window,
                        diagnostics=diagnostics,
                    )
            except (ValidationError, ValueError, TypeError, IntegrityError) as exc:
                diagnostics.emit(
                    "lead_skipped_invalid",
                    logging.WARNING,
                    tenant_id=tenant_id,
                    campaign_id=campaign.id,
                    index=index,
                    error=type(exc).__name__,
                )
                continue
            if view is not None:
                newly_allocated.append(view)

        rows = conn.execute(
            select(
                db.lead_allocations.c.status,
                db.lead_allocations.c.received_at,
                db.lead_allocations.c.updated_at,
            ).where(
                db.lead_allocations.c.tenant_id == tenant_id,
                db.lead_allocations.c.campaign_id == campaign.id,
            )
        ).all()
        summary, _ = summarize_allocations(
            (row.status, row.received_at, row.updated_at) for row in rows
        )

    return AllocationResult(
        campaign_id=campaign.id,
        newly_allocated=newly_allocated,
        summary=summary,
    )


def _view_query(db: SqlPersistence):
    allocations, leads, campaigns = db.lead_allocations, db.broker_leads, db.campaigns
    return (
        select(
            allocations.c.id.label("allocation_id"),
            allocations.c.tenant_id,
            allocations.c.status,
            allocations.c.notes,
            allocations.c.payload,
            allocations.c.received_at,
            allocations.c.updated_at,
            leads.c.id.label("lead_id"),
            leads.c.full_name,
            leads.c.document,
            leads.c.matricula,
            leads.c.registrations,
            leads.c.phone,
            leads.c.margin,
            leads.c.net_margin,
            leads.c.score,
            leads.c.tags,
            leads.c.agreement_id.label("lead_agreement_id"),
            campaigns.c.id.label("campaign_id"),
            campaigns.c.name.label("campaign_name"),
            campaigns.c.agreement_id,
            campaigns.c.instance_id,
        )
        .join(leads, leads.c.id == allocations.c.lead_id)
        .join(campaigns, campaigns.c.id == allocations.c.campaign_id)
    )


def _view_from_row(row) -> LeadAllocationView:
    data = dict(row._mapping)
    lead_agreement_id = data.pop("lead_agreement_id")
    data["agreement_id"] = data["agreement_id"] or lead_agreement_id
    return LeadAllocationView.model_validate(data)


def list_allocations(
    db: SqlPersistence,
    tenant_id: str,
    *,
    campaign_id: Optional[str] = None,
    instance_id: Optional[str] = None,
    agreement_id: Optional[str] = None,
    statuses: Optional[Iterable[LeadAllocationStatus]] = None,
) -> list[LeadAllocationView]:
    allocations, campaigns = db.lead_allocations, db.campaigns
    query = _view_query(db).where(allocations.c.tenant_id == tenant_id)
    if campaign_id:
        query = query.where(allocations.c.campaign_id == campaign_id)
    if instance_id:
        query = query.where(campaigns.c.instance_id == instance_id)
    if agreement_id:
        query = query.where(campaigns.c.agreement_id == agreement_id)
    status_values = [LeadAllocationStatus(status).value for status in statuses or []]
    if status_values:
        query = query.where(allocations.c.status.in_(status_values))
    query = query.order_by(allocations.c.received_at.desc(), allocations.c.id.asc())

    with db.transaction() as conn:
        rows = conn.execute(query).all()
    return [_view_from_row(row) for row in rows]


def update_allocation(
    db: SqlPersistence,
    tenant_id: str,
    allocation_id: str,
    *,
    status: Optional[LeadAllocationStatus] = None,
    notes: Any = UNSET,
    now: Optional[datetime] = None,
) -> Optional[LeadAllocationView]:
    moment = now or utc_now()
    allocations = db.lead_allocations
    with db.transaction() as conn:
        current = conn.execute(
            select(allocations.c.status).where(
                allocations.c.tenant_id == tenant_id,
                allocations.c.id == allocation_id,
            )
        ).first()
        if current is None:
            return None

        values: dict[str, Any] = {"updated_at": moment}
        if status is not None:
            target = LeadAllocationStatus(status)
            existing_status = LeadAllocationStatus(current.status)
            if target != existing_status:
                if target not in ALLOCATION_TRANSITIONS[existing_status]:
                    raise StoreConflictError(
                        "invalid allocation transition: "
                        f"{existing_status.value} -> {target.value}"
                    )
                values["status"] = target.value
        if notes is not UNSET:
            values["notes"] = optional_text(notes)

        conn.execute(allocations.update().where(allocations.c.id == allocation_id).values(**values))
        row = conn.execute(_view_query(db).where(allocations.c.id == allocation_id)).first()
    return _view_from_row(row)
