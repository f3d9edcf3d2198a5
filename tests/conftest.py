"""Shared test fixtures."""

from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from app.models.trade import TradeRecord
from app.services.execution.alpaca_gateway import AlpacaGateway, BrokerOrder, BrokerPosition
from app.services.exit_guard import ExitGuard
from app.services.risk_policy import RiskPolicySettings, RiskPolicyStore


def make_position(**kwargs) -> BrokerPosition:
    """Helper to create broker positions with sensible defaults."""
    defaults = {
        "symbol": "AAPL",
        "quantity": 10.0,
        "avg_entry_price": 100.0,
        "current_price": 109.0,
        "unrealized_pl": 90.0,
        "unrealized_plpc": 0.09,
    }
    defaults.update(kwargs)
    return BrokerPosition(**defaults)


def make_order(**kwargs) -> BrokerOrder:
    """Helper to create broker orders with sensible defaults."""
    defaults = {
        "id": "order-1",
        "symbol": "AAPL",
        "side": "buy",
        "order_type": "market",
        "quantity": 10.0,
        "status": "accepted",
    }
    defaults.update(kwargs)
    return BrokerOrder(**defaults)


def make_session_factory(session):
    """Session factory yielding a prepared mock session."""

    @asynccontextmanager
    async def factory():
        yield session

    return factory


class FakeRedis:
    """Dict-backed stand-in for the few redis.asyncio calls the app makes."""

    def __init__(self) -> None:
        self.data: dict[str, str] = {}
        self.ttls: dict[str, int] = {}

    async def set(self, key, value, nx=False, xx=False, ex=None):
        if nx and key in self.data:
            return None
        if xx and key not in self.data:
            return None
        self.data[key] = value
        if ex is not None:
            self.ttls[key] = ex
        return True

    async def get(self, key):
        return self.data.get(key)

    async def delete(self, *keys):
        removed = 0
        for key in keys:
            if self.data.pop(key, None) is not None:
                removed += 1
            self.ttls.pop(key, None)
        return removed

    async def aclose(self):
        return None


class InMemoryLedger:
    """Ledger double with the same forward-only status rule as TradeLedger."""

    def __init__(self) -> None:
        self.records: list[TradeRecord] = []
        self._clock = datetime(2026, 1, 5, 14, 30, tzinfo=timezone.utc)

    async def insert(self, record: TradeRecord) -> TradeRecord:
        self._clock += timedelta(seconds=1)
        record.id = record.id or f"trade-{len(self.records) + 1}"
        record.status = record.status or "pending"
        record.created_at = self._clock
        record.updated_at = self._clock
        self.records.append(record)
        return record

    async def update_where(self, patch: dict, **filters) -> int:
        changed = 0
        for record in self.records:
            if any(getattr(record, k) != v for k, v in filters.items()):
                continue
            if "status" in patch and record.status != "pending":
                continue
            for k, v in patch.items():
                setattr(record, k, v)
            changed += 1
        return changed

    async def list_recent(self, user_id: str, limit: int = 10) -> list[TradeRecord]:
        rows = [r for r in self.records if r.user_id == user_id]
        return sorted(rows, key=lambda r: r.created_at, reverse=True)[:limit]

    async def list_pending(self, user_id: str, side: str | None = None) -> list[TradeRecord]:
        return [
            r for r in self.records
            if r.user_id == user_id
            and r.status == "pending"
            and r.broker_order_id is not None
            and (side is None or r.side == side)
        ]

    def for_symbol(self, symbol: str) -> list[TradeRecord]:
        return [r for r in self.records if r.symbol == symbol]


@pytest.fixture
def gateway() -> AsyncMock:
    """Broker gateway mock with empty defaults."""
    gw = AsyncMock(spec=AlpacaGateway)
    gw.list_open_orders.return_value = []
    gw.list_positions.return_value = []
    return gw


@pytest.fixture
def ledger() -> InMemoryLedger:
    return InMemoryLedger()


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def exit_guard(fake_redis) -> ExitGuard:
    return ExitGuard(redis_client=fake_redis, ttl_seconds=300)


@pytest.fixture
def exit_policy() -> RiskPolicySettings:
    """Policy used across exit scenarios: 8% target, 3% stop, automation on."""
    return RiskPolicySettings(
        risk_tier="moderate",
        profit_target_pct=8,
        stop_loss_pct=3,
        stop_loss_enabled=True,
        automated_trading_enabled=True,
    )


@pytest.fixture
def policies(exit_policy) -> AsyncMock:
    store = AsyncMock(spec=RiskPolicyStore)
    store.get.return_value = exit_policy
    return store


@pytest.fixture
def mock_session() -> MagicMock:
    session = MagicMock()
    session.execute = AsyncMock()
    session.commit = AsyncMock()
    session.refresh = AsyncMock()
    session.get = AsyncMock()
    return session
