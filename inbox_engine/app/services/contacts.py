from __future__ import annotations

from datetime import datetime
from typing import Iterable, Optional

from sqlalchemy import select
from sqlalchemy.engine import Connection

from inbox_engine.app.models import (
    ContactEmailRecord,
    ContactPhoneRecord,
    ContactRecord,
    new_id,
    utc_now,
)
from inbox_engine.app.observability import Diagnostics, ensure_diagnostics
from inbox_engine.app.persistence import SqlPersistence, find_or_create
from inbox_engine.app.services.normalize import (
    chat_handle_key,
    dedupe_strings,
    optional_text,
    sanitize_phone,
)

INBOUND_TAG = "inbound"


def _find_contact_by_phone(
    conn: Connection, db: SqlPersistence, tenant_id: str, phone: str
) -> Optional[ContactRecord]:
    row = conn.execute(
        select(db.contacts).where(
            db.contacts.c.tenant_id == tenant_id,
            db.contacts.c.primary_phone == phone,
        )
    ).first()
    return ContactRecord.model_validate(dict(row._mapping)) if row else None


def get_contact(db: SqlPersistence, tenant_id: str, contact_id: str) -> Optional[ContactRecord]:
    with db.transaction() as conn:
        row = conn.execute(
            select(db.contacts).where(
                db.contacts.c.tenant_id == tenant_id,
                db.contacts.c.id == contact_id,
            )
        ).first()
    return ContactRecord.model_validate(dict(row._mapping)) if row else None


def upsert_primary_phone(
    conn: Connection,
    db: SqlPersistence,
    tenant_id: str,
    contact_id: str,
    phone: str,
    *,
    phone_type: str = "MOBILE",
) -> Optional[ContactPhoneRecord]:
    table = db.contact_phones

    def find() -> Optional[ContactPhoneRecord]:
        row = conn.execute(
            select(table).where(table.c.tenant_id == tenant_id, table.c.phone_number == phone)
        ).first()
        return ContactPhoneRecord.model_validate(dict(row._mapping)) if row else None

    def create() -> ContactPhoneRecord:
        values = {
            "id": new_id("cph"),
            "tenant_id": tenant_id,
            "contact_id": contact_id,
            "phone_number": phone,
            "phone_type": phone_type,
            "is_primary": True,
        }
        conn.execute(table.insert().values(**values))
        return ContactPhoneRecord(**values)

    record, _ = find_or_create(conn, find, create)
    if record.contact_id != contact_id:
        # The number belongs to another contact of this tenant; leave it there.
        return None

    conn.execute(
        table.update()
        .where(table.c.contact_id == contact_id, table.c.id != record.id)
        .values(is_primary=False)
    )
    if not record.is_primary:
        conn.execute(table.update().where(table.c.id == record.id).values(is_primary=True))
        record = record.model_copy(update={"is_primary": True})
    return record


def upsert_primary_email(
    conn: Connection,
    db: SqlPersistence,
    tenant_id: str,
    contact_id: str,
    email: str,
    *,
    email_type: str = "PERSONAL",
) -> Optional[ContactEmailRecord]:
    table = db.contact_emails

    def find() -> Optional[ContactEmailRecord]:
        row = conn.execute(
            select(table).where(table.c.tenant_id == tenant_id, table.c.email == email)
        ).first()
        return ContactEmailRecord.model_validate(dict(row._mapping)) if row else None

    def create() -> ContactEmailRecord:
        values = {
            "id": new_id("cem"),
            "tenant_id": tenant_id,
            "contact_id": contact_id,
            "email": email,
            "email_type": email_type,
            "is_primary": True,
        }
        conn.execute(table.insert().values(**values))
        return ContactEmailRecord(**values)

    record, _ = find_or_create(conn, find, create)
    if record.contact_id != contact_id:
        return None

    conn.execute(
        table.update()
        .where(table.c.contact_id == contact_id, table.c.id != record.id)
        .values(is_primary=False)
    )
    if not record.is_primary:
        conn.execute(table.update().where(table.c.id == record.id).values(is_primary=True))
        record = record.model_copy(update={"is_primary": True})
    return record


def ensure_tags_exist(
    conn: Connection, db: SqlPersistence, tenant_id: str, names: Iterable[str]
) -> dict[str, str]:
    table = db.tags
    tag_ids: dict[str, str] = {}
    for name in dedupe_strings(names):

        def find(name: str = name) -> Optional[str]:
            return conn.execute(
                select(table.c.id).where(table.c.tenant_id == tenant_id, table.c.name == name)
            ).scalar_one_or_none()

        def create(name: str = name) -> str:
            tag_id = new_id("tag")
            conn.execute(table.insert().values(id=tag_id, tenant_id=tenant_id, name=name))
            return tag_id

        tag_ids[name], _ = find_or_create(conn, find, create)
    return tag_ids


def sync_contact_tags(
    conn: Connection,
    db: SqlPersistence,
    tenant_id: str,
    contact_id: str,
    names: Iterable[str],
) -> list[str]:
    table = db.contact_tags
    tag_ids = ensure_tags_exist(conn, db, tenant_id, names)
    for tag_id in tag_ids.values():

        def find(tag_id: str = tag_id) -> Optional[str]:
            return conn.execute(
                select(table.c.id).where(table.c.contact_id == contact_id, table.c.tag_id == tag_id)
            ).scalar_one_or_none()

        def create(tag_id: str = tag_id) -> str:
            link_id = new_id("ctag")
            conn.execute(table.insert().values(id=link_id, contact_id=contact_id, tag_id=tag_id))
            return link_id

        find_or_create(conn, find, create)
    return list(tag_ids)


def list_contact_phones(
    db: SqlPersistence, tenant_id: str, contact_id: str
) -> list[ContactPhoneRecord]:
    table = db.contact_phones
    with db.transaction() as conn:
        rows = conn.execute(
            select(table)
            .where(table.c.tenant_id == tenant_id, table.c.contact_id == contact_id)
            .order_by(table.c.is_primary.desc(), table.c.phone_number)
        ).all()
    return [ContactPhoneRecord.model_validate(dict(row._mapping)) for row in rows]


def list_contact_tags(db: SqlPersistence, tenant_id: str, contact_id: str) -> list[str]:
    with db.transaction() as conn:
        rows = conn.execute(
            select(db.tags.c.name)
            .join(db.contact_tags, db.contact_tags.c.tag_id == db.tags.c.id)
            .where(
                db.tags.c.tenant_id == tenant_id,
                db.contact_tags.c.contact_id == contact_id,
            )
            .order_by(db.tags.c.name)
        ).all()
    return [row.name for row in rows]


def _normalize_email(value: Optional[str]) -> Optional[str]:
    trimmed = optional_text(value)
    if not trimmed or "@" not in trimmed:
        return None
    return trimmed.lower()


def resolve_contact(
    db: SqlPersistence,
    tenant_id: str,
    chat_handle: str,
    display_name_hint: Optional[str] = None,
    phone_hint: Optional[str] = None,
    *,
    email_hint: Optional[str] = None,
    channel: str = "whatsapp",
    now: Optional[datetime] = None,
    diagnostics: Optional[Diagnostics] = None,
) -> ContactRecord:
    """
    Find or create the tenant's contact for an external chat identity.

    The handle is keyed by its normalized phone when it has one. Every call
    touches `last_interaction_at`/`last_activity_at`, new or not.
    """
    diagnostics = ensure_diagnostics(diagnostics)
    handle = (chat_handle or "").strip()
    phone_key = sanitize_phone(phone_hint)
    if phone_key is None and handle:
        phone_key = chat_handle_key(handle)
    if not phone_key:
        raise ValueError("chat handle or phone is required to resolve a contact")

    moment = now or utc_now()
    name_hint = optional_text(display_name_hint)
    email = _normalize_email(email_hint)

    with db.transaction() as conn:

        def find() -> Optional[ContactRecord]:
            return _find_contact_by_phone(conn, db, tenant_id, phone_key)

        def create() -> ContactRecord:
            name = name_hint or handle or phone_key
            values = {
                "id": new_id("cont"),
                "tenant_id": tenant_id,
                "full_name": name,
                "display_name": name,
                "primary_phone": phone_key,
                "primary_email": None,
                "document": None,
                "custom_fields": {"source": channel},
                "metadata": {"chat_handle": handle} if handle else {},
                "last_interaction_at": moment,
                "last_activity_at": moment,
                "created_at_utc": moment,
                "updated_at_utc": moment,
            }
            conn.execute(db.contacts.insert().values(**values))
            return ContactRecord(**values)

        contact, created = find_or_create(conn, find, create)
        if created:
            if sanitize_phone(phone_key):
                upsert_primary_phone(conn, db, tenant_id, contact.id, phone_key)
            sync_contact_tags(conn, db, tenant_id, contact.id, [channel, INBOUND_TAG])
            diagnostics.emit(
                "contact_created", tenant_id=tenant_id, contact_id=contact.id, channel=channel
            )

        updates: dict = {
            "last_interaction_at": moment,
            "last_activity_at": moment,
            "updated_at_utc": moment,
        }
        if name_hint and not created and name_hint != contact.display_name:
            updates["display_name"] = name_hint
            updates["full_name"] = name_hint
        if email and upsert_primary_email(conn, db, tenant_id, contact.id, email) is not None:
            updates["primary_email"] = email

        conn.execute(db.contacts.update().where(db.contacts.c.id == contact.id).values(**updates))
        return contact.model_copy(update=updates)
