from __future__ import annotations

from datetime import datetime
from typing import Optional

from inbox_engine.app.models import (
    InboundEventRequest,
    InboundEventResponse,
    MediaJobHints,
    utc_now,
)
from inbox_engine.app.observability import Diagnostics, ensure_diagnostics
from inbox_engine.app.persistence import SqlPersistence
from inbox_engine.app.services.classification import media_kind_of
from inbox_engine.app.services.contacts import resolve_contact
from inbox_engine.app.services.media_jobs import enqueue_media_job, needs_media_fetch
from inbox_engine.app.services.messages import upsert_inbound_message
from inbox_engine.app.services.normalize import optional_text
from inbox_engine.app.services.tickets import resolve_open_ticket


def _media_hints(event: InboundEventRequest, external_id: Optional[str]) -> MediaJobHints:
    hints = event.media_hints or MediaJobHints()
    updates = {}
    if hints.message_external_id is None and external_id:
        updates["message_external_id"] = external_id
    if hints.instance_id is None and event.instance_id:
        updates["instance_id"] = event.instance_id
    if hints.media_type is None:
        updates["media_type"] = media_kind_of(event.message.media)
    return hints.model_copy(update=updates)


def process_inbound_event(
    db: SqlPersistence,
    tenant_id: str,
    event: InboundEventRequest,
    *,
    default_channel: str = "whatsapp",
    now: Optional[datetime] = None,
    diagnostics: Optional[Diagnostics] = None,
) -> InboundEventResponse:
    """
    Contact -> ticket -> message -> optional media job, as one transaction.
    A failure at any step leaves nothing behind.
    """
    diagnostics = ensure_diagnostics(diagnostics)
    moment = now or utc_now()
    channel = (optional_text(event.channel) or default_channel).lower()
    external_id = optional_text(event.external_id)

    with db.transaction():
        contact = resolve_contact(
            db,
            tenant_id,
            event.chat_handle,
            event.display_name,
            event.phone,
            email_hint=event.email,
            channel=channel,
            now=moment,
            diagnostics=diagnostics,
        )
        ticket, ticket_created = resolve_open_ticket(
            db,
            tenant_id,
            contact,
            channel,
            event.instance_id,
            now=moment,
            diagnostics=diagnostics,
        )
        message, message_created = upsert_inbound_message(
            db,
            tenant_id,
            ticket.id,
            ticket.metadata.chat_id or contact.primary_phone,
            event.direction,
            external_id,
            event.message,
            instance_id=event.instance_id,
            now=moment,
            diagnostics=diagnostics,
        )

        media_job_id = None
        hints = _media_hints(event, external_id)
        if message_created and needs_media_fetch(message, hints):
            job = enqueue_media_job(
                db,
                tenant_id,
                message.id,
                hints,
                now=moment,
                diagnostics=diagnostics,
            )
            media_job_id = job.id if job else None

    return InboundEventResponse(
        contact_id=contact.id,
        ticket_id=ticket.id,
        ticket_created=ticket_created,
        message_id=message.id,
        message_created=message_created,
        message_type=message.type,
        media_job_id=media_job_id,
    )
