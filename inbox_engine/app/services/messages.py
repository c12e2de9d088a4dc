from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Mapping, Optional, Union

from sqlalchemy import select
from sqlalchemy.engine import Connection

from inbox_engine.app.errors import MissingTicketError
from inbox_engine.app.models import (
    InboundMessagePayload,
    MessageDirection,
    MessageRecord,
    MessageStatus,
    PayloadKind,
    TicketRecord,
    from_epoch_ms,
    new_id,
    resolve_timestamp,
    utc_now,
)
from inbox_engine.app.observability import Diagnostics, ensure_diagnostics
from inbox_engine.app.persistence import SqlPersistence, find_or_create
from inbox_engine.app.services.classification import PayloadClassification, classify_payload
from inbox_engine.app.services.normalize import (
    normalize_external_id,
    optional_text,
    preview_text,
)
from inbox_engine.app.services.tickets import load_ticket

TIMESTAMP_METADATA_KEYS = ("normalized_timestamp", "broker_message_timestamp", "received_at")


def _message_from_row(row) -> MessageRecord:
    return MessageRecord.model_validate(dict(row._mapping))


def merge_metadata(base: Mapping[str, Any], updates: Mapping[str, Any]) -> dict[str, Any]:
    """Shallow merge; keys absent from `updates` survive untouched."""
    merged = dict(base)
    merged.update(updates)
    return merged


def resolve_event_timestamp(payload: InboundMessagePayload) -> Optional[int]:
    candidates = [payload.timestamp]
    candidates.extend(payload.metadata.get(key) for key in TIMESTAMP_METADATA_KEYS)
    for candidate in candidates:
        millis = resolve_timestamp(candidate)
        if millis is not None:
            return millis
    return None


def _coerce_payload(
    raw_payload: Union[InboundMessagePayload, Mapping[str, Any], None],
) -> InboundMessagePayload:
    if isinstance(raw_payload, InboundMessagePayload):
        return raw_payload
    return InboundMessagePayload.model_validate(dict(raw_payload or {}))


def _find_by_external_id(
    conn: Connection, db: SqlPersistence, tenant_id: str, external_id: str
) -> Optional[MessageRecord]:
    row = conn.execute(
        select(db.messages).where(
            db.messages.c.tenant_id == tenant_id,
            db.messages.c.external_id == external_id,
        )
    ).first()
    return _message_from_row(row) if row else None


def _load_message(
    conn: Connection, db: SqlPersistence, tenant_id: str, message_id: str
) -> Optional[MessageRecord]:
    row = conn.execute(
        select(db.messages).where(
            db.messages.c.tenant_id == tenant_id,
            db.messages.c.id == message_id,
        )
    ).first()
    return _message_from_row(row) if row else None


def find_message_by_external_id(
    db: SqlPersistence, tenant_id: str, external_id: Optional[str]
) -> Optional[MessageRecord]:
    key = normalize_external_id(external_id)
    if key is None:
        return None
    with db.transaction() as conn:
        return _find_by_external_id(conn, db, tenant_id, key)


def get_message(db: SqlPersistence, tenant_id: str, message_id: str) -> Optional[MessageRecord]:
    with db.transaction() as conn:
        return _load_message(conn, db, tenant_id, message_id)


def list_ticket_messages(
    db: SqlPersistence, tenant_id: str, ticket_id: str
) -> list[MessageRecord]:
    table = db.messages
    with db.transaction() as conn:
        rows = conn.execute(
            select(table)
            .where(table.c.tenant_id == tenant_id, table.c.ticket_id == ticket_id)
            .order_by(table.c.created_at_utc.asc(), table.c.id.asc())
        ).all()
    return [_message_from_row(row) for row in rows]


def _metadata_updates(
    payload: InboundMessagePayload,
    classification: PayloadClassification,
    *,
    chat_id: Optional[str],
    direction: MessageDirection,
    instance_id: Optional[str],
) -> dict[str, Any]:
    updates = dict(payload.metadata)
    for key in ("chat_id", "source_instance"):
        if key in updates and not isinstance(updates[key], str):
            updates.pop(key)
    updates["direction"] = direction.value
    updates["normalized"] = classification.to_normalized(payload.media).model_dump(
        mode="json", exclude_none=True
    )
    if chat_id:
        updates["chat_id"] = chat_id
    if instance_id:
        updates["source_instance"] = instance_id
    return updates


def _content_columns(
    payload: InboundMessagePayload, classification: PayloadClassification
) -> dict[str, Any]:
    media = payload.media if classification.kind == PayloadKind.media else None
    return {
        "type": classification.message_type.value,
        "content": classification.content,
        "caption": classification.caption,
        "media_url": optional_text(media.url) if media else None,
        "media_mime_type": optional_text(media.mime_type) if media else None,
        "media_file_name": optional_text(media.file_name) if media else None,
        "media_size": media.size if media else None,
    }


def _touch_ticket(
    conn: Connection,
    db: SqlPersistence,
    ticket: TicketRecord,
    message: MessageRecord,
    *,
    now: datetime,
) -> None:
    event_at = message.created_at_utc
    timeline = ticket.metadata.timeline
    if message.direction == MessageDirection.INBOUND:
        first_key, last_key = "first_inbound_at", "last_inbound_at"
    else:
        first_key, last_key = "first_outbound_at", "last_outbound_at"

    changes: dict[str, datetime] = {}
    first = getattr(timeline, first_key)
    last = getattr(timeline, last_key)
    if first is None or event_at < first:
        changes[first_key] = event_at
    if last is None or event_at >= last:
        changes[last_key] = event_at
    metadata = ticket.metadata.model_copy(update={"timeline": timeline.model_copy(update=changes)})

    values: dict[str, Any] = {
        "metadata": metadata.model_dump(mode="json"),
        "updated_at_utc": now,
    }
    if ticket.last_message_at is None or event_at >= ticket.last_message_at:
        values["last_message_at"] = event_at
        values["last_message_preview"] = preview_text(message.content or message.caption)
    conn.execute(db.tickets.update().where(db.tickets.c.id == ticket.id).values(**values))


def _apply_redelivery(
    conn: Connection,
    db: SqlPersistence,
    existing: MessageRecord,
    *,
    payload: InboundMessagePayload,
    classification: PayloadClassification,
    direction: MessageDirection,
    metadata_updates: dict[str, Any],
    instance_id: Optional[str],
    event_at: datetime,
) -> MessageRecord:
    merged = merge_metadata(
        existing.metadata.model_dump(mode="json", exclude_none=True), metadata_updates
    )
    values: dict[str, Any] = {
        "direction": direction.value,
        "metadata": merged,
        "instance_id": instance_id or existing.instance_id,
        "updated_at_utc": event_at,
        **_content_columns(payload, classification),
    }
    if payload.status is not None:
        values["status"] = payload.status.value
    if payload.idempotency_key:
        values["idempotency_key"] = payload.idempotency_key
    conn.execute(db.messages.update().where(db.messages.c.id == existing.id).values(**values))
    return MessageRecord.model_validate({**existing.model_dump(), **values})


def upsert_inbound_message(
    db: SqlPersistence,
    tenant_id: str,
    ticket_id: str,
    chat_id: Optional[str],
    direction: Union[MessageDirection, str],
    external_id: Optional[str],
    raw_payload: Union[InboundMessagePayload, Mapping[str, Any], None],
    *,
    instance_id: Optional[str] = None,
    now: Optional[datetime] = None,
    diagnostics: Optional[Diagnostics] = None,
) -> tuple[MessageRecord, bool]:
    """
    Record a provider message idempotently by `(tenant_id, external_id)`.

    A redelivery updates the stored row in place and merges metadata. A new
    message also moves the owning ticket's preview and timeline bounds in the
    same transaction. Returns the message and whether it was created.
    """
    diagnostics = ensure_diagnostics(diagnostics)
    payload = _coerce_payload(raw_payload)
    direction = MessageDirection(direction)
    classification = classify_payload(payload)
    key = normalize_external_id(external_id)
    instance = optional_text(instance_id)
    chat = optional_text(chat_id)
    moment = now or utc_now()
    millis = resolve_event_timestamp(payload)
    event_at = from_epoch_ms(millis) if millis is not None else moment
    metadata_updates = _metadata_updates(
        payload, classification, chat_id=chat, direction=direction, instance_id=instance
    )

    with db.transaction() as conn:
        existing = _find_by_external_id(conn, db, tenant_id, key) if key else None
        if existing is None:
            ticket = load_ticket(conn, db, tenant_id, ticket_id)
            if ticket is None:
                raise MissingTicketError(tenant_id, ticket_id)

            def create() -> MessageRecord:
                values = {
                    "id": new_id("msg"),
                    "tenant_id": tenant_id,
                    "ticket_id": ticket.id,
                    "contact_id": ticket.contact_id,
                    "instance_id": instance,
                    "direction": direction.value,
                    "status": (payload.status or MessageStatus.SENT).value,
                    "external_id": key,
                    "idempotency_key": payload.idempotency_key,
                    "metadata": metadata_updates,
                    "created_at_utc": event_at,
                    "updated_at_utc": event_at,
                    **_content_columns(payload, classification),
                }
                conn.execute(db.messages.insert().values(**values))
                return MessageRecord.model_validate(values)

            def on_conflict(exc) -> None:
                diagnostics.emit(
                    "message_create_conflict",
                    logging.WARNING,
                    tenant_id=tenant_id,
                    external_id=key,
                )

            if key is None:
                message, created = create(), True
            else:
                message, created = find_or_create(
                    conn,
                    lambda: _find_by_external_id(conn, db, tenant_id, key),
                    create,
                    on_conflict,
                )
            if created:
                _touch_ticket(conn, db, ticket, message, now=moment)
                diagnostics.emit(
                    "message_created",
                    tenant_id=tenant_id,
                    message_id=message.id,
                    ticket_id=ticket.id,
                    type=message.type.value,
                    direction=direction.value,
                )
                return message, True
            existing = message

        diagnostics.emit(
            "message_duplicate_delivery",
            logging.DEBUG,
            tenant_id=tenant_id,
            message_id=existing.id,
            external_id=key,
        )
        updated = _apply_redelivery(
            conn,
            db,
            existing,
            payload=payload,
            classification=classification,
            direction=direction,
            metadata_updates=metadata_updates,
            instance_id=instance,
            event_at=event_at,
        )
        return updated, False


def apply_message_ack(
    db: SqlPersistence,
    tenant_id: str,
    message_id: str,
    *,
    status: Optional[MessageStatus] = None,
    metadata: Optional[Mapping[str, Any]] = None,
    instance_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Optional[MessageRecord]:
    moment = now or utc_now()
    with db.transaction() as conn:
        message = _load_message(conn, db, tenant_id, message_id)
        if message is None:
            return None
        merged = merge_metadata(
            message.metadata.model_dump(mode="json", exclude_none=True), metadata or {}
        )
        values: dict[str, Any] = {
            "metadata": merged,
            "instance_id": optional_text(instance_id) or message.instance_id,
            "updated_at_utc": moment,
        }
        if status is not None:
            values["status"] = MessageStatus(status).value
        conn.execute(db.messages.update().where(db.messages.c.id == message.id).values(**values))
        return MessageRecord.model_validate({**message.model_dump(), **values})
