"""
Pytest configuration and shared fixtures.

Provides reusable fixtures for testing:
- in-memory quota store and the reservation service over it
- history and Telegram delivery fakes
- fallback executor factory
- mock asyncpg database/connection for QuotaStore
"""

from datetime import date, timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from fakes import FakeDelivery, FakeHistory, MemoryQuotaStore
from limits import SlotReservationService
from providers import FallbackExecutor

# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def today() -> date:
    return date.today()


@pytest.fixture
def yesterday(today: date) -> date:
    return today - timedelta(days=1)


@pytest.fixture
def quota_store() -> MemoryQuotaStore:
    return MemoryQuotaStore()


@pytest.fixture
def slots(quota_store: MemoryQuotaStore) -> SlotReservationService:
    return SlotReservationService(quota_store, admin_ids=["ADMIN1"], limit_private=3, limit_group=30)


@pytest.fixture
def history() -> FakeHistory:
    return FakeHistory()


@pytest.fixture
def delivery() -> FakeDelivery:
    return FakeDelivery()


@pytest.fixture
def executor_factory():
    def _create(*providers, timeout: float = 1.0) -> FallbackExecutor:
        return FallbackExecutor(list(providers), attempt_timeout=timeout, max_source_images=4)

    return _create


@pytest.fixture
def db_conn() -> MagicMock:
    """Mock asyncpg connection with a working transaction() context manager."""
    conn = MagicMock()
    conn.execute = AsyncMock(return_value="INSERT 0 1")
    conn.fetchrow = AsyncMock(return_value=None)
    conn.fetchval = AsyncMock(return_value=None)
    conn.fetch = AsyncMock(return_value=[])

    transaction = MagicMock()
    transaction.__aenter__ = AsyncMock(return_value=None)
    transaction.__aexit__ = AsyncMock(return_value=False)
    conn.transaction = MagicMock(return_value=transaction)
    return conn


@pytest.fixture
def mock_db(db_conn: MagicMock) -> MagicMock:
    """Mock Database whose acquire() yields db_conn."""
    acquired = MagicMock()
    acquired.__aenter__ = AsyncMock(return_value=db_conn)
    acquired.__aexit__ = AsyncMock(return_value=False)

    db = MagicMock()
    db.acquire = MagicMock(return_value=acquired)
    return db
