from __future__ import annotations

from pathlib import Path

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from inbox_engine.app.main import create_app
from inbox_engine.app.persistence import SqlPersistence, find_or_create


def _new_client(monkeypatch, db_path: Path) -> TestClient:
    monkeypatch.setenv("PERSISTENCE_ENABLED", "true")
    monkeypatch.setenv("PERSISTENCE_DB_PATH", str(db_path))
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{str(db_path).replace(chr(92), '/')}")
    return TestClient(create_app())


def _tag_count(db: SqlPersistence) -> int:
    with db.transaction() as conn:
        return conn.execute(select(func.count()).select_from(db.tags)).scalar_one()


def test_find_or_create_returns_winner_after_lost_race(db) -> None:
    with db.transaction() as conn:
        conn.execute(db.tags.insert().values(id="tag_winner", tenant_id="t1", name="vip"))
        lookups: list[int] = []

        def find():
            lookups.append(1)
            if len(lookups) == 1:
                # The first read runs before the competing insert became visible.
                return None
            return conn.execute(
                select(db.tags.c.id).where(db.tags.c.tenant_id == "t1", db.tags.c.name == "vip")
            ).scalar_one_or_none()

        def create():
            conn.execute(db.tags.insert().values(id="tag_loser", tenant_id="t1", name="vip"))
            return "tag_loser"

        conflicts: list[IntegrityError] = []
        tag_id, created = find_or_create(conn, find, create, conflicts.append)

    assert tag_id == "tag_winner"
    assert created is False
    assert len(conflicts) == 1
    assert _tag_count(db) == 1


def test_find_or_create_reraises_when_nothing_to_reread(db) -> None:
    with pytest.raises(IntegrityError):
        with db.transaction() as conn:
            conn.execute(db.tags.insert().values(id="tag_a", tenant_id="t1", name="vip"))

            def create():
                conn.execute(db.tags.insert().values(id="tag_b", tenant_id="t1", name="vip"))
                return "tag_b"

            find_or_create(conn, lambda: None, create)
    assert _tag_count(db) == 0


def test_nested_transactions_join_the_outer_one(db) -> None:
    with pytest.raises(RuntimeError):
        with db.transaction() as outer:
            outer.execute(db.tags.insert().values(id="tag_1", tenant_id="t1", name="a"))
            with db.transaction() as inner:
                assert inner is outer
                inner.execute(db.tags.insert().values(id="tag_2", tenant_id="t1", name="b"))
            raise RuntimeError("abort")
    assert _tag_count(db) == 0


def test_sqlite_url_creates_missing_parent_directories(tmp_path) -> None:
    db_path = tmp_path / "nested" / "inbox_engine.sqlite3"
    persistence = SqlPersistence(f"sqlite:///{db_path.as_posix()}")
    assert db_path.parent.exists()
    assert persistence.ping()
    persistence.dispose()


def test_plain_path_is_treated_as_sqlite_file(tmp_path) -> None:
    db_path = tmp_path / "plain" / "engine.sqlite3"
    persistence = SqlPersistence(str(db_path))
    assert persistence.database_url.startswith("sqlite:///")
    assert persistence.ping()
    persistence.dispose()


def test_ingested_conversation_survives_restart(monkeypatch, tmp_path) -> None:
    db_path = tmp_path / "inbox_engine.sqlite3"
    event = {
        "chat_handle": "5511999999999@s.whatsapp.net",
        "external_id": "ext-persist-1",
        "message": {"text": "Oi", "timestamp": 1_709_294_400},
    }

    first_client = _new_client(monkeypatch, db_path)
    first = first_client.post("/tenants/tenant-a/inbound/messages", json=event)
    assert first.status_code == 200
    assert first.json()["message_created"] is True

    restarted_client = _new_client(monkeypatch, db_path)
    second = restarted_client.post("/tenants/tenant-a/inbound/messages", json=event)
    assert second.status_code == 200
    assert second.json()["message_created"] is False
    assert second.json()["ticket_id"] == first.json()["ticket_id"]
    assert second.json()["message_id"] == first.json()["message_id"]
