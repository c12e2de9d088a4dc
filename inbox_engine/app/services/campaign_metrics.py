from __future__ import annotations

import math
from datetime import datetime, timedelta
from typing import Iterable, Optional

from sqlalchemy import select
from sqlalchemy.engine import Connection

from inbox_engine.app.models import (
    AllocationSummary,
    CampaignMetrics,
    LeadAllocationStatus,
)
from inbox_engine.app.persistence import SqlPersistence


def summarize_allocations(
    rows: Iterable[tuple[LeadAllocationStatus, datetime, datetime]],
) -> tuple[AllocationSummary, CampaignMetrics]:
    """
    Fold `(status, received_at, updated_at)` rows into the batch summary and
    the dashboard metrics. Records still `allocated` count toward `allocated`
    only; negative deltas from clock skew are left out of the average.
    """
    summary = AllocationSummary()
    metrics = CampaignMetrics()
    delta_total_ms = 0.0
    delta_count = 0

    for status, received_at, updated_at in rows:
        status = LeadAllocationStatus(status)
        summary.total += 1
        metrics.total += 1
        if status == LeadAllocationStatus.allocated:
            metrics.allocated += 1
            continue
        if status == LeadAllocationStatus.contacted:
            summary.contacted += 1
            metrics.contacted += 1
        elif status == LeadAllocationStatus.won:
            summary.won += 1
            metrics.won += 1
        elif status == LeadAllocationStatus.lost:
            summary.lost += 1
            metrics.lost += 1

        delta_ms = (updated_at - received_at) / timedelta(milliseconds=1)
        if delta_ms >= 0:
            delta_total_ms += delta_ms
            delta_count += 1

    if delta_count:
        average_seconds = delta_total_ms / delta_count / 1000
        metrics.average_response_seconds = int(math.floor(average_seconds + 0.5))
    return summary, metrics


def _allocation_rows(
    conn: Connection, db: SqlPersistence, tenant_id: str, campaign_id: Optional[str]
) -> list[tuple[LeadAllocationStatus, datetime, datetime]]:
    table = db.lead_allocations
    query = select(table.c.status, table.c.received_at, table.c.updated_at).where(
        table.c.tenant_id == tenant_id
    )
    if campaign_id:
        query = query.where(table.c.campaign_id == campaign_id)
    return [
        (LeadAllocationStatus(row.status), row.received_at, row.updated_at)
        for row in conn.execute(query).all()
    ]


def compute_allocation_summary(
    db: SqlPersistence, tenant_id: str, campaign_id: Optional[str] = None
) -> tuple[AllocationSummary, CampaignMetrics]:
    with db.transaction() as conn:
        return summarize_allocations(_allocation_rows(conn, db, tenant_id, campaign_id))


def get_campaign_metrics(
    db: SqlPersistence, tenant_id: str, campaign_id: str
) -> Optional[CampaignMetrics]:
    with db.transaction() as conn:
        exists = conn.execute(
            select(db.campaigns.c.id).where(
                db.campaigns.c.tenant_id == tenant_id,
                db.campaigns.c.id == campaign_id,
            )
        ).first()
        if exists is None:
            return None
        _, metrics = summarize_allocations(_allocation_rows(conn, db, tenant_id, campaign_id))
    return metrics
