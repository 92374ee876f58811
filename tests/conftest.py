"""
Pytest configuration and fixtures for ARENA tests.
"""

from datetime import UTC, datetime, timedelta
from typing import AsyncGenerator
from unittest.mock import AsyncMock, MagicMock
from uuid import uuid4

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from arena.core.circuit_breaker import AsyncCircuitBreaker
from arena.core.config import Settings
from arena.db.models import AgentDB, Base, TradeDB, UserDB
from arena.models.strategy import StrategyRules
from arena.services.locks import AgentLockManager
from arena.traders.base import OHLCV, OrderResult


# One shared in-memory SQLite connection: services open their own sessions
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


@pytest.fixture(autouse=True)
def _reset_circuit_breakers():
    """Breakers are process-wide; a tripped one must not leak between tests."""
    AsyncCircuitBreaker.reset_all()
    yield
    AsyncCircuitBreaker.reset_all()


@pytest.fixture
def settings() -> Settings:
    return Settings(
        environment="development",
        cron_secret="test-cron-secret",
        monitor_concurrency=1,
    )


@pytest_asyncio.fixture(scope="function")
async def db_engine():
    """Create a test database engine."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        echo=False,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(db_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        db_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@pytest_asyncio.fixture(scope="function")
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create a test database session."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def locks() -> AgentLockManager:
    return AgentLockManager()


@pytest_asyncio.fixture
async def test_user(db_session: AsyncSession) -> UserDB:
    """A wallet user with free balance."""
    user = UserDB(
        id=uuid4(),
        wallet_address="0x" + "a1" * 20,
        referral_code="TESTREF1",
        balance_usdt=1000.0,
        created_at=datetime.now(UTC),
    )
    db_session.add(user)
    await db_session.commit()
    await db_session.refresh(user)
    return user


@pytest.fixture
def make_agent(db_session: AsyncSession, test_user: UserDB):
    """Factory for agents owned by test_user."""

    async def _make(**overrides) -> AgentDB:
        fields = {
            "id": uuid4(),
            "user_id": test_user.id,
            "name": "Test Agent",
            "prompt": "Trade BTC momentum",
            "strategy_rules": StrategyRules().to_stored(),
            "tier": "sniper",
            "status": "active",
            "allocated_funds": 1250.0,
            "capital_balance": 1000.0,
            "energy_balance": 500.0,
            "burn_rate_per_hour": 20.0,
        }
        fields.update(overrides)
        agent = AgentDB(**fields)
        db_session.add(agent)
        await db_session.commit()
        await db_session.refresh(agent)
        return agent

    return _make


@pytest_asyncio.fixture
async def test_agent(make_agent) -> AgentDB:
    return await make_agent()


@pytest.fixture
def make_trade(db_session: AsyncSession):
    async def _make(agent: AgentDB, **overrides) -> TradeDB:
        fields = {
            "id": uuid4(),
            "agent_id": agent.id,
            "symbol": "BTC",
            "side": "long",
            "size": 1.0,
            "size_usd": 100.0,
            "leverage": 1,
            "entry_price": 100.0,
            "status": "open",
            "exchange_order_id": "order-1",
        }
        fields.update(overrides)
        trade = TradeDB(**fields)
        db_session.add(trade)
        await db_session.commit()
        await db_session.refresh(trade)
        return trade

    return _make


def make_candles(count: int = 24, start_price: float = 100.0) -> list[OHLCV]:
    start = datetime(2026, 1, 1, tzinfo=UTC)
    candles = []
    for i in range(count):
        price = start_price + i
        candles.append(
            OHLCV(
                timestamp=start + timedelta(hours=i),
                open=price,
                high=price + 2,
                low=price - 2,
                close=price + 1,
                volume=1000.0,
            )
        )
    return candles


@pytest.fixture
def candles() -> list[OHLCV]:
    return make_candles()


@pytest.fixture
def mock_trader() -> MagicMock:
    """Exchange adapter double; every network method is an AsyncMock."""
    trader = MagicMock()
    trader.exchange_name = "hyperliquid"
    trader.get_mark_price = AsyncMock(return_value=100.0)
    trader.get_candles = AsyncMock(return_value=make_candles())
    trader.get_positions = AsyncMock(return_value=[])
    trader.get_user_fills = AsyncMock(return_value=[])
    trader.place_market_order = AsyncMock(
        return_value=OrderResult(success=True, order_id="order-1", filled_size=1.0, filled_price=100.0)
    )
    trader.close_position = AsyncMock(
        return_value=OrderResult(success=True, order_id="close-1", filled_price=100.0)
    )
    trader.withdraw = AsyncMock(return_value={"status": "ok"})
    return trader
