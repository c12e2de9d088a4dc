from __future__ import annotations

from datetime import datetime

import pytest
from sqlalchemy import func, select

from inbox_engine.app.errors import MissingTicketError
from inbox_engine.app.models import (
    MessageDirection,
    MessageStatus,
    MessageType,
    TicketStatus,
    from_epoch_ms,
)
from inbox_engine.app.observability import Diagnostics, MetricsRegistry
from inbox_engine.app.persistence import SqlPersistence
from inbox_engine.app.services import messages as message_service
from inbox_engine.app.services.contacts import resolve_contact
from inbox_engine.app.services.messages import (
    apply_message_ack,
    find_message_by_external_id,
    get_message,
    list_ticket_messages,
    upsert_inbound_message,
)
from inbox_engine.app.services.tickets import get_ticket, resolve_open_ticket

BASE_TIME = datetime(2024, 3, 1, 12, 0, 0)
T1 = 1_709_294_400
T2 = T1 + 60
T3 = T1 + 120


def _message_count(db: SqlPersistence) -> int:
    with db.transaction() as conn:
        return conn.execute(select(func.count()).select_from(db.messages)).scalar_one()


@pytest.fixture()
def ticket(db):
    contact = resolve_contact(db, "tenant-a", "5511999999999", now=BASE_TIME)
    ticket, _ = resolve_open_ticket(db, "tenant-a", contact, "whatsapp", now=BASE_TIME)
    return ticket


def _ingest(db, ticket, external_id, payload, direction=MessageDirection.INBOUND, **kwargs):
    return upsert_inbound_message(
        db,
        "tenant-a",
        ticket.id,
        ticket.metadata.chat_id,
        direction,
        external_id,
        payload,
        now=BASE_TIME,
        **kwargs,
    )


def test_new_chat_handle_scenario(db) -> None:
    contact = resolve_contact(db, "tenant-a", "5511999999999", now=BASE_TIME)
    ticket, ticket_created = resolve_open_ticket(db, "tenant-a", contact, "whatsapp")
    message, created = _ingest(db, ticket, "ext-1", {"text": "Hello"})

    assert contact.primary_phone == "+5511999999999"
    assert ticket_created is True
    assert ticket.status == TicketStatus.OPEN
    assert created is True
    assert message.type == MessageType.TEXT
    assert message.content == "Hello"
    preview_before = get_ticket(db, "tenant-a", ticket.id).last_message_preview
    assert preview_before == "Hello"

    again, created_again = _ingest(db, ticket, "ext-1", {"text": "Hello"})
    assert created_again is False
    assert again.id == message.id
    assert _message_count(db) == 1
    assert get_ticket(db, "tenant-a", ticket.id).last_message_preview == preview_before


def test_same_external_id_is_idempotent_across_whitespace(db, ticket) -> None:
    first, created = _ingest(db, ticket, "ext-9", {"text": "one"})
    second, created_again = _ingest(db, ticket, "  ext-9 ", {"text": "one"})

    assert created is True
    assert created_again is False
    assert second.id == first.id
    assert find_message_by_external_id(db, "tenant-a", "ext-9").id == first.id


def test_timeline_bounds_are_monotone_regardless_of_arrival_order(db, ticket) -> None:
    for index, stamp in enumerate([T3, T1, T2]):
        _ingest(db, ticket, f"ext-{index}", {"text": f"m{index}", "timestamp": stamp})

    timeline = get_ticket(db, "tenant-a", ticket.id).metadata.timeline
    assert timeline.first_inbound_at == from_epoch_ms(T1 * 1000)
    assert timeline.last_inbound_at == from_epoch_ms(T3 * 1000)
    assert timeline.first_outbound_at is None


def test_outbound_messages_move_outbound_bounds_only(db, ticket) -> None:
    _ingest(db, ticket, "out-1", {"text": "hi", "timestamp": T2}, MessageDirection.OUTBOUND)

    timeline = get_ticket(db, "tenant-a", ticket.id).metadata.timeline
    assert timeline.first_outbound_at == from_epoch_ms(T2 * 1000)
    assert timeline.last_outbound_at == from_epoch_ms(T2 * 1000)
    assert timeline.first_inbound_at is None


def test_last_message_preview_tracks_the_latest_message(db, ticket) -> None:
    _ingest(db, ticket, "ext-late", {"text": "late", "timestamp": T3})
    _ingest(db, ticket, "ext-early", {"text": "early", "timestamp": T1})

    stored = get_ticket(db, "tenant-a", ticket.id)
    assert stored.last_message_preview == "late"
    assert stored.last_message_at == from_epoch_ms(T3 * 1000)


def test_preview_is_truncated(db, ticket) -> None:
    _ingest(db, ticket, "ext-long", {"text": "x" * 400})
    assert len(get_ticket(db, "tenant-a", ticket.id).last_message_preview) == 280


def test_timestamp_falls_back_to_metadata_then_ingestion_time(db, ticket) -> None:
    from_metadata, _ = _ingest(
        db,
        ticket,
        "ext-meta",
        {"text": "a", "metadata": {"broker_message_timestamp": "2024-03-01T10:00:00Z"}},
    )
    assert from_metadata.created_at_utc == datetime(2024, 3, 1, 10, 0, 0)

    fallback, _ = _ingest(db, ticket, "ext-none", {"text": "b", "timestamp": "garbage"})
    assert fallback.created_at_utc == BASE_TIME
    assert fallback.updated_at_utc == BASE_TIME


def test_blank_external_id_always_creates(db, ticket) -> None:
    first, created = _ingest(db, ticket, "  ", {"text": "a"})
    second, created_again = _ingest(db, ticket, None, {"text": "a"})

    assert created is True
    assert created_again is True
    assert first.id != second.id
    assert first.external_id is None
    assert _message_count(db) == 2


def test_missing_ticket_is_fatal_and_writes_nothing(db) -> None:
    with pytest.raises(MissingTicketError):
        upsert_inbound_message(
            db, "tenant-a", "tkt_missing", "chat", "INBOUND", "ext-1", {"text": "hi"}
        )
    assert _message_count(db) == 0


def test_message_contact_matches_ticket_contact(db, ticket) -> None:
    message, _ = _ingest(db, ticket, "ext-1", {"text": "hi"})
    assert message.contact_id == ticket.contact_id


def test_redelivery_merges_metadata_and_keeps_instance(db, ticket) -> None:
    first, _ = _ingest(
        db,
        ticket,
        "ext-1",
        {"text": "hi", "metadata": {"broker": "zapi", "attempt": 1}},
        instance_id="instance-1",
    )
    assert first.metadata.source_instance == "instance-1"

    second, created = _ingest(
        db,
        ticket,
        "ext-1",
        {"media": {"media_type": "image", "url": "https://cdn/x.jpg"}, "metadata": {"attempt": 2}},
    )

    assert created is False
    assert second.instance_id == "instance-1"
    assert second.type == MessageType.IMAGE
    assert second.media_url == "https://cdn/x.jpg"
    extra = second.metadata.model_extra
    assert extra["broker"] == "zapi"
    assert extra["attempt"] == 2
    assert second.metadata.source_instance == "instance-1"
    assert second.metadata.normalized.type == MessageType.IMAGE


def test_status_defaults_to_sent(db, ticket) -> None:
    message, _ = _ingest(db, ticket, "ext-1", {"text": "hi"})
    assert message.status == MessageStatus.SENT


def test_ack_updates_status_and_preserves_metadata(db, ticket) -> None:
    message, _ = _ingest(db, ticket, "ext-1", {"text": "hi", "metadata": {"broker": "zapi"}})

    acked = apply_message_ack(
        db,
        "tenant-a",
        message.id,
        status=MessageStatus.READ,
        metadata={"read_by": "agent-3"},
        now=BASE_TIME,
    )

    assert acked.status == MessageStatus.READ
    assert acked.metadata.model_extra == {"broker": "zapi", "read_by": "agent-3"}
    stored = list_ticket_messages(db, "tenant-a", ticket.id)[0]
    assert stored.status == MessageStatus.READ
    assert stored.metadata.chat_id == ticket.metadata.chat_id


def test_ack_for_unknown_message_returns_none(db, ticket) -> None:
    assert apply_message_ack(db, "tenant-a", "msg_missing", status=MessageStatus.READ) is None

    message, _ = _ingest(db, ticket, "ext-1", {"text": "hi"})
    assert get_message(db, "tenant-a", message.id).id == message.id
    assert get_message(db, "tenant-b", message.id) is None


def test_epoch_millis_timestamp_is_used_as_is(db, ticket) -> None:
    message, _ = _ingest(db, ticket, "ext-millis", {"text": "a", "timestamp": T2 * 1000})
    assert message.created_at_utc == from_epoch_ms(T2 * 1000)
    assert message.created_at_utc == datetime(2024, 3, 1, 12, 1, 0)


def test_out_of_range_timestamp_falls_back_to_ingestion_time(db, ticket) -> None:
    message, created = _ingest(
        db, ticket, "ext-far", {"text": "hi", "timestamp": 1_709_294_400_000_000}
    )
    assert created is True
    assert message.created_at_utc == BASE_TIME
    assert get_ticket(db, "tenant-a", ticket.id).last_message_at == BASE_TIME


def test_lost_create_race_returns_the_stored_message(db, ticket, monkeypatch) -> None:
    original, _ = _ingest(db, ticket, "ext-1", {"text": "first"})
    real_find = message_service._find_by_external_id
    calls = {"count": 0}

    def stale_find(*args):
        calls["count"] += 1
        if calls["count"] <= 2:
            return None
        return real_find(*args)

    monkeypatch.setattr(message_service, "_find_by_external_id", stale_find)
    registry = MetricsRegistry()

    message, created = _ingest(
        db, ticket, "ext-1", {"text": "second"}, diagnostics=Diagnostics(metrics=registry)
    )

    assert created is False
    assert message.id == original.id
    assert _message_count(db) == 1
    assert registry.event_count("message_create_conflict") == 1
    assert registry.event_count("message_created") == 0


def test_caller_metadata_with_non_string_typed_keys_is_dropped(db, ticket) -> None:
    message, created = upsert_inbound_message(
        db,
        "tenant-a",
        ticket.id,
        None,
        "INBOUND",
        "ext-typed",
        {"text": "hi", "metadata": {"chat_id": 123, "source_instance": ["x"], "broker": "zapi"}},
        now=BASE_TIME,
    )

    assert created is True
    assert message.metadata.chat_id is None
    assert message.metadata.source_instance is None
    assert message.metadata.model_extra == {"broker": "zapi"}
    assert get_message(db, "tenant-a", message.id).metadata.chat_id is None
