from __future__ import annotations

from datetime import datetime, timedelta

import pytest

from inbox_engine.app.models import InboundEventRequest, InboundMediaJobStatus, MessageType
from inbox_engine.app.settings import load_settings
from inbox_engine.app.store import ReconciliationStore, StoreNotFoundError

BASE_TIME = datetime(2024, 3, 1, 12, 0, 0)


@pytest.fixture()
def store(db, monkeypatch: pytest.MonkeyPatch) -> ReconciliationStore:
    monkeypatch.setenv("LEAD_DEDUPE_WINDOW_HOURS", "2")
    monkeypatch.setenv("MEDIA_JOB_MAX_ATTEMPTS", "1")
    monkeypatch.setenv("DEFAULT_CHANNEL", "Instagram")
    return ReconciliationStore(db, settings=load_settings())


def test_settings_fall_back_on_invalid_values(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("LEAD_DEDUPE_WINDOW_HOURS", "soon")
    monkeypatch.setenv("MEDIA_CLAIM_BATCH_SIZE", "5000")
    monkeypatch.setenv("PERSISTENCE_ENABLED", "no")
    monkeypatch.delenv("DATABASE_URL", raising=False)

    settings = load_settings()

    assert settings.lead_dedupe_window_hours == 24
    assert settings.media_claim_batch_size == 100
    assert settings.effective_database_url == "sqlite:///:memory:"
    assert settings.database_url.startswith("sqlite:///")


def test_ingest_event_uses_default_channel_and_enqueues_media(store: ReconciliationStore) -> None:
    event = InboundEventRequest.model_validate(
        {
            "chat_handle": "maria.insta",
            "external_id": "ig-1",
            "message": {"media": {"media_type": "video", "url": "https://cdn/v.mp4"}},
            "media_hints": {"media_key": "key-1"},
        }
    )

    result = store.ingest_event("tenant-a", event, now=BASE_TIME)

    assert result.message_type == MessageType.VIDEO
    contact = store.get_contact("tenant-a", result.contact_id)
    assert contact.custom_fields == {"source": "instagram"}
    assert contact.primary_phone == "maria.insta"
    jobs = store.claim_media_jobs(tenant_id="tenant-a")
    assert [job.id for job in jobs] == [result.media_job_id]
    assert jobs[0].media_key == "key-1"
    assert jobs[0].message_external_id == "ig-1"

    failed = store.retry_or_fail_media_job(result.media_job_id, "expired media key")
    assert failed.status == InboundMediaJobStatus.FAILED


def test_allocation_window_comes_from_settings(store: ReconciliationStore) -> None:
    campaign = store.create_campaign("tenant-a", "  Payroll  ", now=BASE_TIME)
    assert campaign.name == "Payroll"
    lead = {"full_name": "Ana", "document": "42"}

    store.allocate_broker_leads("tenant-a", [lead], campaign_id=campaign.id, now=BASE_TIME)
    again = store.allocate_broker_leads(
        "tenant-a", [lead], campaign_id=campaign.id, now=BASE_TIME + timedelta(hours=3)
    )

    assert len(again.newly_allocated) == 1
    assert store.get_campaign_metrics("tenant-a", campaign.id).total == 1


def test_missing_records_raise_not_found(store: ReconciliationStore) -> None:
    with pytest.raises(StoreNotFoundError):
        store.get_contact("tenant-a", "cont_missing")
    with pytest.raises(StoreNotFoundError):
        store.get_ticket("tenant-a", "tkt_missing")
    with pytest.raises(StoreNotFoundError):
        store.update_allocation("tenant-a", "alloc_missing", notes="x")
    with pytest.raises(StoreNotFoundError):
        store.reschedule_media_job("mjob_missing", BASE_TIME)
    assert store.ping() is True
