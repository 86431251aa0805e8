"""Shared test fixtures for the Blueprint Coach test suite."""

import pytest

from execution import data_capture
from execution.data_capture import METHOD_SELECTED, METHOD_TYPED


@pytest.fixture(autouse=True)
def set_test_environment(monkeypatch):
    """Ensure all tests run with ENVIRONMENT=test and no live LLM."""
    monkeypatch.setenv("ENVIRONMENT", "test")
    monkeypatch.setattr("execution.llm_client.OPENAI_API_KEY", "")


@pytest.fixture
def tmp_sessions_dir(monkeypatch, tmp_path):
    """Redirect SESSIONS_DIR to a temporary directory for test isolation."""
    import config.settings as settings
    import execution.session_store as store

    sessions_dir = tmp_path / "sessions"
    monkeypatch.setattr(settings, "SESSIONS_DIR", sessions_dir)
    monkeypatch.setattr(store, "SESSIONS_DIR", sessions_dir)
    return sessions_dir


@pytest.fixture
def llm_enabled(monkeypatch):
    """Pretend an API key is configured so compose() takes the LLM path."""
    monkeypatch.setattr("execution.llm_client.OPENAI_API_KEY", "sk-test")
    monkeypatch.setattr("execution.response_composer.LLM_ENABLED", True)


@pytest.fixture
def sample_phases():
    return [
        {"name": "Investigate the Context", "details": ["Interview residents"], "extensions": {}},
        {"name": "Prototype & Test", "details": ["Build a first version"], "extensions": {}},
        {"name": "Launch & Reflect", "details": [], "extensions": {}},
    ]


@pytest.fixture
def foundation_record():
    """A captured record with the whole Foundation stage confirmed."""
    record = {}
    record = data_capture.capture(record, "foundation.big_idea", "How communities adapt to change", METHOD_TYPED)
    record = data_capture.capture(
        record, "foundation.essential_question",
        "How might our community adapt to rising water levels?", METHOD_TYPED,
    )
    record = data_capture.capture(
        record, "foundation.challenge",
        "Design a flood-readiness exhibition for local families", METHOD_TYPED,
    )
    return record


@pytest.fixture
def plan_record(foundation_record, sample_phases):
    """Foundation plus a confirmed Plan stage."""
    record = data_capture.capture(foundation_record, "plan.phases", sample_phases, METHOD_SELECTED)
    record = data_capture.capture(
        record, "plan.activities",
        "Interview local experts\nCollect water data\nPrototype flood maps", METHOD_TYPED,
    )
    record = data_capture.skip(record, "plan.resources")
    return record
