# === MODULE PURPOSE ===
# Pytest configuration and shared fixtures for tests.

from datetime import datetime, timezone

import pytest

from src.ledger import MemoryPositionStore, OpenPositionRequest, PositionService


@pytest.fixture
def anyio_backend():
    """Use asyncio as the async backend for pytest-asyncio."""
    return "asyncio"


@pytest.fixture
def store() -> MemoryPositionStore:
    """Fresh in-memory position store."""
    return MemoryPositionStore()


@pytest.fixture
def service(store: MemoryPositionStore) -> PositionService:
    """Position service over the in-memory store."""
    return PositionService(store)


@pytest.fixture
def t0() -> datetime:
    """Fixed reference timestamp."""
    return datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def long_request(t0: datetime) -> OpenPositionRequest:
    """Long BTC at 100 with $1000 margin and 5x leverage (50 coin)."""
    return OpenPositionRequest(
        coin="btc",
        side="long",
        entry_price=100.0,
        amount_invested_usd=1000.0,
        leverage=5.0,
        entry_date=t0,
    )
