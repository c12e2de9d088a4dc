from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta

import pytest
from sqlalchemy import func, select

from inbox_engine.app.errors import StoreConflictError
from inbox_engine.app.models import TicketStatus
from inbox_engine.app.persistence import SqlPersistence
from inbox_engine.app.services.contacts import resolve_contact
from inbox_engine.app.services.tickets import (
    get_ticket,
    inbound_queue_name,
    resolve_open_ticket,
    transition_ticket,
)

BASE_TIME = datetime(2024, 3, 1, 12, 0, 0)


def _open_ticket_count(db: SqlPersistence, contact_id: str) -> int:
    with db.transaction() as conn:
        return conn.execute(
            select(func.count())
            .select_from(db.tickets)
            .where(
                db.tickets.c.contact_id == contact_id,
                db.tickets.c.status.in_(["OPEN", "PENDING", "ASSIGNED"]),
            )
        ).scalar_one()


def test_creates_open_ticket_then_reuses_it(db) -> None:
    contact = resolve_contact(db, "tenant-a", "5511999999999", "Maria", now=BASE_TIME)

    ticket, created = resolve_open_ticket(db, "tenant-a", contact, "whatsapp", now=BASE_TIME)
    assert created is True
    assert ticket.status == TicketStatus.OPEN
    assert ticket.subject == "Maria"
    assert ticket.metadata.chat_id == "+5511999999999"

    again, created_again = resolve_open_ticket(db, "tenant-a", contact, "whatsapp")
    assert created_again is False
    assert again.id == ticket.id


def test_default_queue_is_provisioned_once_per_channel(db) -> None:
    first = resolve_contact(db, "tenant-a", "5511999999999", now=BASE_TIME)
    second = resolve_contact(db, "tenant-a", "5511888888888", now=BASE_TIME)
    ticket_a, _ = resolve_open_ticket(db, "tenant-a", first, "whatsapp", now=BASE_TIME)
    ticket_b, _ = resolve_open_ticket(db, "tenant-a", second, "whatsapp", now=BASE_TIME)

    assert ticket_a.queue_id == ticket_b.queue_id
    with db.transaction() as conn:
        names = conn.execute(select(db.queues.c.name)).scalars().all()
    assert names == [inbound_queue_name("whatsapp")]


def test_reuse_patches_instance_without_overwriting_chat_id(db) -> None:
    contact = resolve_contact(db, "tenant-a", "5511999999999", now=BASE_TIME)
    ticket, _ = resolve_open_ticket(
        db, "tenant-a", contact, "whatsapp", chat_id="chat-original", now=BASE_TIME
    )

    reused, created = resolve_open_ticket(
        db, "tenant-a", contact, "whatsapp", "instance-7", chat_id="chat-other", now=BASE_TIME
    )

    assert created is False
    assert reused.metadata.chat_id == "chat-original"
    assert reused.metadata.instance_id == "instance-7"
    stored = get_ticket(db, "tenant-a", ticket.id)
    assert stored.metadata.chat_id == "chat-original"
    assert stored.metadata.instance_id == "instance-7"


def test_concurrent_first_contacts_share_one_open_ticket(tmp_path) -> None:
    db = SqlPersistence(f"sqlite:///{(tmp_path / 'tickets.sqlite3').as_posix()}")
    contact = resolve_contact(db, "tenant-a", "5511999999999", now=BASE_TIME)

    def resolve(_: int):
        return resolve_open_ticket(db, "tenant-a", contact, "whatsapp", now=BASE_TIME)

    with ThreadPoolExecutor(max_workers=4) as executor:
        results = list(executor.map(resolve, range(8)))

    assert len({ticket.id for ticket, _ in results}) == 1
    assert sum(1 for _, created in results if created) == 1
    assert _open_ticket_count(db, contact.id) == 1
    db.dispose()


def test_closed_ticket_is_not_reused(db) -> None:
    contact = resolve_contact(db, "tenant-a", "5511999999999", now=BASE_TIME)
    ticket, _ = resolve_open_ticket(db, "tenant-a", contact, "whatsapp", now=BASE_TIME)

    closed = transition_ticket(db, "tenant-a", ticket.id, TicketStatus.CLOSED, now=BASE_TIME)
    assert closed.status == TicketStatus.CLOSED
    assert closed.closed_at == BASE_TIME

    later = BASE_TIME + timedelta(hours=1)
    fresh, created = resolve_open_ticket(db, "tenant-a", contact, "whatsapp", now=later)
    assert created is True
    assert fresh.id != ticket.id


def test_ticket_transitions_follow_the_lifecycle(db) -> None:
    contact = resolve_contact(db, "tenant-a", "5511999999999", now=BASE_TIME)
    ticket, _ = resolve_open_ticket(db, "tenant-a", contact, "whatsapp", now=BASE_TIME)

    assigned = transition_ticket(db, "tenant-a", ticket.id, TicketStatus.ASSIGNED)
    assert assigned.status == TicketStatus.ASSIGNED
    closed = transition_ticket(db, "tenant-a", ticket.id, TicketStatus.CLOSED)
    assert closed.status == TicketStatus.CLOSED

    with pytest.raises(StoreConflictError):
        transition_ticket(db, "tenant-a", ticket.id, TicketStatus.PENDING)

    reopened = transition_ticket(db, "tenant-a", ticket.id, TicketStatus.OPEN)
    assert reopened.status == TicketStatus.OPEN
    assert reopened.closed_at is None


def test_reopen_is_refused_while_another_ticket_is_open(db) -> None:
    contact = resolve_contact(db, "tenant-a", "5511999999999", now=BASE_TIME)
    old, _ = resolve_open_ticket(db, "tenant-a", contact, "whatsapp", now=BASE_TIME)
    transition_ticket(db, "tenant-a", old.id, TicketStatus.CLOSED)
    resolve_open_ticket(db, "tenant-a", contact, "whatsapp", now=BASE_TIME)

    with pytest.raises(StoreConflictError):
        transition_ticket(db, "tenant-a", old.id, TicketStatus.OPEN)
    assert _open_ticket_count(db, contact.id) == 1


def test_unknown_ticket_returns_none(db) -> None:
    assert transition_ticket(db, "tenant-a", "tkt_missing", TicketStatus.CLOSED) is None
    assert get_ticket(db, "tenant-a", "tkt_missing") is None
