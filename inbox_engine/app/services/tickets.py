from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import select
from sqlalchemy.engine import Connection

from inbox_engine.app.errors import StoreConflictError
from inbox_engine.app.models import (
    OPEN_TICKET_STATUSES,
    ContactRecord,
    QueueRecord,
    TicketMetadata,
    TicketRecord,
    TicketStatus,
    new_id,
    utc_now,
)
from inbox_engine.app.observability import Diagnostics, ensure_diagnostics
from inbox_engine.app.persistence import SqlPersistence, find_or_create
from inbox_engine.app.services.normalize import optional_text
from inbox_engine.app.services.workflow import TICKET_TRANSITIONS

DEFAULT_CHANNEL = "whatsapp"


def inbound_queue_name(channel: str) -> str:
    return f"{channel} inbound"


def _ticket_from_row(row) -> TicketRecord:
    return TicketRecord.model_validate(dict(row._mapping))


def find_open_ticket(
    conn: Connection, db: SqlPersistence, tenant_id: str, contact_id: str
) -> Optional[TicketRecord]:
    table = db.tickets
    row = conn.execute(
        select(table)
        .where(
            table.c.tenant_id == tenant_id,
            table.c.contact_id == contact_id,
            table.c.status.in_([status.value for status in OPEN_TICKET_STATUSES]),
        )
        .order_by(table.c.updated_at_utc.desc(), table.c.created_at_utc.desc())
        .limit(1)
    ).first()
    return _ticket_from_row(row) if row else None


def load_ticket(
    conn: Connection, db: SqlPersistence, tenant_id: str, ticket_id: str
) -> Optional[TicketRecord]:
    row = conn.execute(
        select(db.tickets).where(db.tickets.c.tenant_id == tenant_id, db.tickets.c.id == ticket_id)
    ).first()
    return _ticket_from_row(row) if row else None


def get_ticket(db: SqlPersistence, tenant_id: str, ticket_id: str) -> Optional[TicketRecord]:
    with db.transaction() as conn:
        return load_ticket(conn, db, tenant_id, ticket_id)


def ensure_inbound_queue(
    conn: Connection, db: SqlPersistence, tenant_id: str, channel: str, now: datetime
) -> QueueRecord:
    table = db.queues
    name = inbound_queue_name(channel)

    def find() -> Optional[QueueRecord]:
        row = conn.execute(
            select(table).where(table.c.tenant_id == tenant_id, table.c.name == name)
        ).first()
        return QueueRecord.model_validate(dict(row._mapping)) if row else None

    def create() -> QueueRecord:
        values = {
            "id": new_id("que"),
            "tenant_id": tenant_id,
            "name": name,
            "channel": channel,
            "is_active": True,
            "created_at_utc": now,
        }
        conn.execute(table.insert().values(**values))
        return QueueRecord(**values)

    queue, _ = find_or_create(conn, find, create)
    return queue


def _patch_ticket_metadata(
    conn: Connection,
    db: SqlPersistence,
    ticket: TicketRecord,
    *,
    chat_id: Optional[str],
    instance_id: Optional[str],
    now: datetime,
) -> TicketRecord:
    metadata = ticket.metadata
    changes: dict = {}
    if chat_id and not metadata.chat_id:
        changes["chat_id"] = chat_id
    if instance_id and metadata.instance_id != instance_id:
        changes["instance_id"] = instance_id
    if not changes:
        return ticket

    patched = metadata.model_copy(update=changes)
    conn.execute(
        db.tickets.update()
        .where(db.tickets.c.id == ticket.id)
        .values(metadata=patched.model_dump(mode="json"), updated_at_utc=now)
    )
    return ticket.model_copy(update={"metadata": patched, "updated_at_utc": now})


def resolve_open_ticket(
    db: SqlPersistence,
    tenant_id: str,
    contact: ContactRecord,
    channel_hint: Optional[str],
    instance_hint: Optional[str] = None,
    *,
    chat_id: Optional[str] = None,
    now: Optional[datetime] = None,
    diagnostics: Optional[Diagnostics] = None,
) -> tuple[TicketRecord, bool]:
    """
    Reuse the contact's open-family ticket or open a new one.

    Runs as one transaction; the partial unique index on open tickets settles
    concurrent first contacts, and the loser re-reads the winner.
    """
    diagnostics = ensure_diagnostics(diagnostics)
    channel = (optional_text(channel_hint) or DEFAULT_CHANNEL).lower()
    chat = optional_text(chat_id) or contact.primary_phone
    instance = optional_text(instance_hint)
    moment = now or utc_now()

    with db.transaction() as conn:

        def find() -> Optional[TicketRecord]:
            return find_open_ticket(conn, db, tenant_id, contact.id)

        def create() -> TicketRecord:
            queue = ensure_inbound_queue(conn, db, tenant_id, channel, moment)
            metadata = TicketMetadata(chat_id=chat, instance_id=instance)
            values = {
                "id": new_id("tkt"),
                "tenant_id": tenant_id,
                "contact_id": contact.id,
                "queue_id": queue.id,
                "status": TicketStatus.OPEN.value,
                "channel": channel,
                "subject": contact.display_name,
                "tags": [],
                "last_message_at": None,
                "last_message_preview": None,
                "closed_at": None,
                "created_at_utc": moment,
                "updated_at_utc": moment,
            }
            conn.execute(
                db.tickets.insert().values(metadata=metadata.model_dump(mode="json"), **values)
            )
            return TicketRecord(metadata=metadata, **values)

        def on_conflict(exc) -> None:
            diagnostics.emit(
                "ticket_create_conflict",
                logging.WARNING,
                tenant_id=tenant_id,
                contact_id=contact.id,
            )

        ticket, created = find_or_create(conn, find, create, on_conflict)
        if created:
            diagnostics.emit(
                "ticket_created",
                tenant_id=tenant_id,
                ticket_id=ticket.id,
                contact_id=contact.id,
                channel=channel,
            )
            return ticket, True
        return (
            _patch_ticket_metadata(
                conn, db, ticket, chat_id=chat, instance_id=instance, now=moment
            ),
            False,
        )


def transition_ticket(
    db: SqlPersistence,
    tenant_id: str,
    ticket_id: str,
    to_status: TicketStatus,
    *,
    now: Optional[datetime] = None,
) -> Optional[TicketRecord]:
    moment = now or utc_now()
    with db.transaction() as conn:
        ticket = load_ticket(conn, db, tenant_id, ticket_id)
        if ticket is None:
            return None
        if ticket.status == to_status:
            return ticket
        if to_status not in TICKET_TRANSITIONS[ticket.status]:
            raise StoreConflictError(
                f"invalid ticket transition: {ticket.status.value} -> {to_status.value}"
            )
        if ticket.status == TicketStatus.CLOSED:
            other = find_open_ticket(conn, db, tenant_id, ticket.contact_id)
            if other is not None:
                raise StoreConflictError(
                    f"contact already has an open ticket: {other.id}"
                )

        closed_at = moment if to_status == TicketStatus.CLOSED else None
        conn.execute(
            db.tickets.update()
            .where(db.tickets.c.id == ticket.id)
            .values(status=to_status.value, closed_at=closed_at, updated_at_utc=moment)
        )
        return ticket.model_copy(
            update={"status": to_status, "closed_at": closed_at, "updated_at_utc": moment}
        )
