"""Pytest configuration and fixtures."""

import pytest
from unittest.mock import AsyncMock, MagicMock

from fakes import InMemoryCacheStore
from plugins.registry import reset_registry


@pytest.fixture(autouse=True)
def fresh_registry():
    """Ensure every test starts without a global backend registry."""
    reset_registry()
    yield
    reset_registry()


@pytest.fixture
def mock_pool():
    """Create a mock asyncpg pool."""
    pool = AsyncMock()
    pool.acquire = MagicMock()
    return pool


@pytest.fixture
def mock_connection():
    """Create a mock asyncpg connection."""
    conn = AsyncMock()
    return conn


@pytest.fixture
def store():
    """Empty in-memory cache store."""
    return InMemoryCacheStore()


@pytest.fixture
def sample_item_row():
    """Sample calendar_resources row for testing."""
    return {
        "id": 6,
        "backend_id": "backend3",
        "resource_id": "res6",
        "displayname": "Pointer",
        "email": "res6@foo.bar",
        "group_restrictions": '["foo", "bar"]',
    }
