"""Shared fixtures for the overview worker tests."""

from __future__ import annotations

from datetime import UTC, datetime
from unittest.mock import AsyncMock, MagicMock

import pytest

from flow_overview.config import get_settings

USER_ID = "6f1c2d3e-4a5b-4c6d-8e9f-0a1b2c3d4e5f"


@pytest.fixture(autouse=True)
def _clear_settings_cache():
    """Settings are cached process-wide; start every test from a clean cache."""
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def mock_pool():
    """Create a mock asyncpg pool that yields an async connection context."""
    pool = MagicMock()
    conn = AsyncMock()
    ctx = AsyncMock()
    ctx.__aenter__ = AsyncMock(return_value=conn)
    ctx.__aexit__ = AsyncMock(return_value=False)
    pool.acquire.return_value = ctx

    tx = MagicMock()
    tx.__aenter__ = AsyncMock(return_value=None)
    tx.__aexit__ = AsyncMock(return_value=False)
    conn.transaction = MagicMock(return_value=tx)
    return pool, conn


@pytest.fixture
def now():
    """A deterministic UTC timestamp for tests."""
    return datetime(2026, 3, 2, 9, 30, 0, tzinfo=UTC)


@pytest.fixture
def user_id():
    return USER_ID
