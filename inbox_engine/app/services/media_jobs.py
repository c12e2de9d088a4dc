from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Mapping, Optional, Union

from sqlalchemy import or_, select
from sqlalchemy.engine import Connection

from inbox_engine.app.errors import StoreConflictError
from inbox_engine.app.models import (
    InboundMediaJobRecord,
    InboundMediaJobStatus,
    MediaJobHints,
    MessageRecord,
    MessageType,
    new_id,
    utc_now,
)
from inbox_engine.app.observability import Diagnostics, ensure_diagnostics
from inbox_engine.app.persistence import SqlPersistence, find_or_create
from inbox_engine.app.services.normalize import optional_text, truncate_error

MAX_ATTEMPTS = 5
RETRY_BASE_SECONDS = 60
RETRY_MAX_SECONDS = 30 * 60
CLAIM_BATCH_SIZE = 10

MEDIA_MESSAGE_TYPES = {
    MessageType.IMAGE,
    MessageType.VIDEO,
    MessageType.AUDIO,
    MessageType.DOCUMENT,
}


def _job_from_row(row) -> InboundMediaJobRecord:
    return InboundMediaJobRecord.model_validate(dict(row._mapping))


def _load_job(
    conn: Connection, db: SqlPersistence, job_id: str
) -> Optional[InboundMediaJobRecord]:
    row = conn.execute(
        select(db.inbound_media_jobs).where(db.inbound_media_jobs.c.id == job_id)
    ).first()
    return _job_from_row(row) if row else None


def _coerce_hints(hints: Union[MediaJobHints, Mapping[str, Any], None]) -> MediaJobHints:
    if isinstance(hints, MediaJobHints):
        return hints
    return MediaJobHints.model_validate(dict(hints or {}))


def needs_media_fetch(
    message: MessageRecord, hints: Union[MediaJobHints, Mapping[str, Any], None] = None
) -> bool:
    if message.type not in MEDIA_MESSAGE_TYPES:
        return False
    parsed = _coerce_hints(hints)
    if not message.media_url:
        return True
    return bool(optional_text(parsed.media_key) or optional_text(parsed.direct_path))


def get_media_job(db: SqlPersistence, job_id: str) -> Optional[InboundMediaJobRecord]:
    with db.transaction() as conn:
        return _load_job(conn, db, job_id)


def enqueue_media_job(
    db: SqlPersistence,
    tenant_id: str,
    message_id: str,
    hints: Union[MediaJobHints, Mapping[str, Any], None] = None,
    *,
    next_retry_at: Optional[datetime] = None,
    now: Optional[datetime] = None,
    diagnostics: Optional[Diagnostics] = None,
) -> Optional[InboundMediaJobRecord]:
    """
    Upsert the fetch job for a message; at most one job exists per message.
    Re-enqueueing resets the job to PENDING and clears its last error.
    """
    diagnostics = ensure_diagnostics(diagnostics)
    parsed = _coerce_hints(hints)
    moment = now or utc_now()
    retry_at = next_retry_at or moment
    table = db.inbound_media_jobs
    hint_values = {
        "message_external_id": optional_text(parsed.message_external_id),
        "instance_id": optional_text(parsed.instance_id),
        "media_type": optional_text(parsed.media_type),
        "media_key": optional_text(parsed.media_key),
        "direct_path": optional_text(parsed.direct_path),
    }

    with db.transaction() as conn:
        message_exists = conn.execute(
            select(db.messages.c.id).where(
                db.messages.c.tenant_id == tenant_id,
                db.messages.c.id == message_id,
            )
        ).first()
        if message_exists is None:
            return None

        def find() -> Optional[InboundMediaJobRecord]:
            row = conn.execute(select(table).where(table.c.message_id == message_id)).first()
            return _job_from_row(row) if row else None

        def create() -> InboundMediaJobRecord:
            values = {
                "id": new_id("mjob"),
                "tenant_id": tenant_id,
                "message_id": message_id,
                "status": InboundMediaJobStatus.PENDING.value,
                "attempts": 0,
                "next_retry_at": retry_at,
                "last_error": None,
                "metadata": parsed.metadata or {},
                "created_at_utc": moment,
                "updated_at_utc": moment,
                **hint_values,
            }
            conn.execute(table.insert().values(**values))
            return InboundMediaJobRecord.model_validate(values)

        job, created = find_or_create(conn, find, create)
        if not created:
            refreshed = {key: value for key, value in hint_values.items() if value is not None}
            if parsed.metadata is not None:
                refreshed["metadata"] = parsed.metadata
            refreshed.update(
                status=InboundMediaJobStatus.PENDING.value,
                next_retry_at=retry_at,
                last_error=None,
                updated_at_utc=moment,
            )
            conn.execute(table.update().where(table.c.id == job.id).values(**refreshed))
            job = InboundMediaJobRecord.model_validate({**job.model_dump(), **refreshed})

        diagnostics.emit(
            "media_job_enqueued",
            tenant_id=tenant_id,
            job_id=job.id,
            message_id=message_id,
            requeued=not created,
        )
        return job


def claim_media_jobs(
    db: SqlPersistence,
    *,
    limit: int = CLAIM_BATCH_SIZE,
    now: Optional[datetime] = None,
    tenant_id: Optional[str] = None,
    diagnostics: Optional[Diagnostics] = None,
) -> list[InboundMediaJobRecord]:
    """
    Claim due PENDING jobs for a worker, oldest retry first.

    Each claim is a compare-and-swap on status, so a job another worker took
    in between is skipped rather than claimed twice.
    """
    diagnostics = ensure_diagnostics(diagnostics)
    moment = now or utc_now()
    table = db.inbound_media_jobs
    pending = InboundMediaJobStatus.PENDING.value

    query = (
        select(table.c.id)
        .where(
            table.c.status == pending,
            or_(table.c.next_retry_at.is_(None), table.c.next_retry_at <= moment),
        )
        .order_by(table.c.next_retry_at.asc().nulls_first(), table.c.created_at_utc.asc())
        .limit(max(limit, 1))
    )
    if tenant_id:
        query = query.where(table.c.tenant_id == tenant_id)

    claimed: list[InboundMediaJobRecord] = []
    with db.transaction() as conn:
        candidate_ids = conn.execute(query).scalars().all()
        for job_id in candidate_ids:
            result = conn.execute(
                table.update()
                .where(table.c.id == job_id, table.c.status == pending)
                .values(
                    status=InboundMediaJobStatus.PROCESSING.value,
                    attempts=table.c.attempts + 1,
                    last_error=None,
                    updated_at_utc=moment,
                )
            )
            if result.rowcount != 1:
                continue
            job = _load_job(conn, db, job_id)
            if job is not None:
                claimed.append(job)
                diagnostics.emit(
                    "media_job_claimed",
                    logging.DEBUG,
                    job_id=job.id,
                    attempts=job.attempts,
                )
    return claimed


def complete_media_job(
    db: SqlPersistence, job_id: str, *, now: Optional[datetime] = None
) -> Optional[InboundMediaJobRecord]:
    moment = now or utc_now()
    values = {
        "status": InboundMediaJobStatus.COMPLETED.value,
        "next_retry_at": None,
        "last_error": None,
        "updated_at_utc": moment,
    }
    return _update_job(db, job_id, values)


def reschedule_media_job(
    db: SqlPersistence,
    job_id: str,
    next_retry_at: datetime,
    error: Optional[str] = None,
    *,
    now: Optional[datetime] = None,
) -> Optional[InboundMediaJobRecord]:
    moment = now or utc_now()
    values = {
        "status": InboundMediaJobStatus.PENDING.value,
        "next_retry_at": next_retry_at,
        "last_error": truncate_error(error),
        "updated_at_utc": moment,
    }
    return _update_job(db, job_id, values)


def fail_media_job(
    db: SqlPersistence,
    job_id: str,
    error: Optional[str] = None,
    *,
    now: Optional[datetime] = None,
    diagnostics: Optional[Diagnostics] = None,
) -> Optional[InboundMediaJobRecord]:
    moment = now or utc_now()
    values = {
        "status": InboundMediaJobStatus.FAILED.value,
        "next_retry_at": None,
        "last_error": truncate_error(error),
        "updated_at_utc": moment,
    }
    job = _update_job(db, job_id, values)
    if job is not None:
        ensure_diagnostics(diagnostics).emit(
            "media_job_failed",
            logging.WARNING,
            job_id=job.id,
            attempts=job.attempts,
            error=job.last_error,
        )
    return job


def _update_job(
    db: SqlPersistence, job_id: str, values: dict[str, Any]
) -> Optional[InboundMediaJobRecord]:
    table = db.inbound_media_jobs
    with db.transaction() as conn:
        job = _load_job(conn, db, job_id)
        if job is None:
            return None
        conn.execute(table.update().where(table.c.id == job_id).values(**values))
        return InboundMediaJobRecord.model_validate({**job.model_dump(), **values})


def compute_backoff_delay(
    attempts: int,
    base_seconds: int = RETRY_BASE_SECONDS,
    max_seconds: int = RETRY_MAX_SECONDS,
) -> timedelta:
    exponent = max(attempts - 1, 0)
    return timedelta(seconds=min(base_seconds * (2**exponent), max_seconds))


def retry_or_fail(
    db: SqlPersistence,
    job_id: str,
    error: Optional[str],
    *,
    max_attempts: int = MAX_ATTEMPTS,
    base_seconds: int = RETRY_BASE_SECONDS,
    max_seconds: int = RETRY_MAX_SECONDS,
    now: Optional[datetime] = None,
    diagnostics: Optional[Diagnostics] = None,
) -> Optional[InboundMediaJobRecord]:
    moment = now or utc_now()
    with db.transaction():
        job = get_media_job(db, job_id)
        if job is None:
            return None
        if job.status != InboundMediaJobStatus.PROCESSING:
            raise StoreConflictError(
                f"media job is not processing: {job_id} ({job.status.value})"
            )
        if job.attempts >= max_attempts:
            return fail_media_job(db, job_id, error, now=moment, diagnostics=diagnostics)
        delay = compute_backoff_delay(job.attempts, base_seconds, max_seconds)
        return reschedule_media_job(db, job_id, moment + delay, error, now=moment)
