"""Shared pytest fixtures and configuration."""

import os
import pytest
import pytest_asyncio
from unittest.mock import AsyncMock
from freezegun import freeze_time

from taskboard.services.engine import TaskEngine
from taskboard.services.memory_store import InMemoryRecordStore
from taskboard.utils.settings import EngineSettings
from tests.utils.factories import create_worker_data, fake

# Set test environment variables
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("SUPABASE_URL", "https://test.supabase.co")
os.environ.setdefault("SUPABASE_SERVICE_ROLE_KEY", "test-key")
os.environ.setdefault("LLM_PROVIDER", "anthropic")
os.environ.setdefault("LLM_MODEL", "claude-sonnet-4-20250514")
os.environ.setdefault("LOG_FORMAT", "text")


@pytest.fixture
def test_settings():
    """Engine settings with a short debounce window."""
    return EngineSettings(
        supabase_url="https://test.supabase.co",
        supabase_key="test-key",
        sync_debounce_ms=20,
    )


@pytest.fixture
def store():
    """Empty in-memory record store."""
    return InMemoryRecordStore()


@pytest.fixture
def engine(store, test_settings):
    """Engine over the in-memory store."""
    return TaskEngine.in_memory(store, settings=test_settings)


@pytest.fixture
def admin_id():
    return fake.uuid4()


@pytest.fixture
def alice(store):
    return store.add_worker(**create_worker_data(
        full_name="Alice Moreau", skills=["Python", "Backend Development"], performance_score=0.9,
    ))


@pytest.fixture
def bob(store):
    return store.add_worker(**create_worker_data(
        full_name="Bob Okafor", skills=["Graphic Design"], performance_score=0.6,
    ))


@pytest_asyncio.fixture
async def pending_task(engine, admin_id):
    """A freshly created, unassigned task."""
    outcome = await engine.lifecycle.create_task(
        title="Build reporting API",
        description="Expose weekly numbers over a backend API",
        priority="high",
        required_skills=["Python"],
        creator=admin_id,
    )
    return outcome.task


@pytest.fixture
def mock_langchain_agent():
    """Mock LangChain agent for testing."""
    agent = AsyncMock()
    agent.ainvoke = AsyncMock()
    return agent


@pytest.fixture
def freeze_time_fixture():
    """Fixture for freezing time in tests."""
    with freeze_time("2026-03-09 12:00:00") as frozen_time:
        yield frozen_time


@pytest.fixture(scope="function")
def reset_environment(monkeypatch):
    """Reset environment variables for each test."""
    original_env = os.environ.copy()
    yield
    os.environ.clear()
    os.environ.update(original_env)
