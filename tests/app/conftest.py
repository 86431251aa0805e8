"""Test fixtures for the web layer."""

import pytest
from fastapi.testclient import TestClient

from app.main import app
from execution import session_store
from execution.session_store import PersistenceQueue


@pytest.fixture
def persistence(monkeypatch):
    """A fresh background writer per test, flushed and stopped afterwards."""
    import app.dependencies as deps

    monkeypatch.setattr(session_store, "PERSIST_BACKOFF_MAX_SECONDS", 0)
    queue = PersistenceQueue(max_workers=2)
    monkeypatch.setattr(deps, "_persistence", queue)
    yield queue
    queue.flush(timeout=5)
    queue.shutdown()


@pytest.fixture
def client(tmp_sessions_dir, persistence):
    """Create a TestClient with snapshots directed to a temp directory."""
    import app.dependencies as deps

    deps.clear_registry()
    yield TestClient(app)
    deps.clear_registry()


@pytest.fixture
def created_session(client):
    """Create a session and return its id."""
    response = client.post("/sessions")
    return response.json()["session_id"]
