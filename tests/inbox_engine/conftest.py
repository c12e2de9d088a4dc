from __future__ import annotations

from typing import Iterator

import pytest
from fastapi.testclient import TestClient

from inbox_engine.app.main import create_app
from inbox_engine.app.persistence import SqlPersistence


@pytest.fixture()
def db() -> Iterator[SqlPersistence]:
    persistence = SqlPersistence("sqlite:///:memory:")
    yield persistence
    persistence.dispose()


@pytest.fixture()
def client(monkeypatch: pytest.MonkeyPatch) -> TestClient:
    monkeypatch.setenv("PERSISTENCE_ENABLED", "false")
    app = create_app()
    return TestClient(app)
