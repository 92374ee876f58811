"""
Tests for the settlement reconciler and fee math.
"""

from datetime import UTC, datetime, timedelta
from unittest.mock import MagicMock
from uuid import uuid4

import pytest
from sqlalchemy import select

from arena.db.models import AgentDB, EnergyLogDB, TradeDB, TransactionDB, UserDB
from arena.services.ledger_service import TxType
from arena.services.settlement_service import ExitPriceSource, SettlementService
from arena.services.trade_service import calculate_fees, gross_pnl, live_pnl_pct
from arena.traders.base import Fill, Position, TradeError


@pytest.fixture
def settlement(session_factory, mock_trader, locks, settings):
    return SettlementService(session_factory, mock_trader, locks, settings=settings)


async def _reload(session_factory, model, id):
    async with session_factory() as session:
        return await session.get(model, id)


@pytest.mark.unit
class TestFees:
    def test_profit_split(self, settings):
        fees = calculate_fees(120.0, has_referrer=False, settings=settings)

        assert fees.performance_fee == pytest.approx(24.0)
        assert fees.creator_fee == pytest.approx(12.0)
        assert fees.platform_fee == pytest.approx(12.0)
        assert fees.referrer_fee == 0.0
        assert fees.net_pnl == pytest.approx(96.0)

    def test_referrer_takes_share_of_platform_half(self, settings):
        fees = calculate_fees(120.0, has_referrer=True, settings=settings)

        assert fees.creator_fee == pytest.approx(12.0)
        assert fees.referrer_fee == pytest.approx(1.2)
        assert fees.platform_fee == pytest.approx(10.8)
        assert fees.net_pnl == pytest.approx(96.0)

    def test_loss_carries_no_fee(self, settings):
        fees = calculate_fees(-50.0, has_referrer=True, settings=settings)

        assert fees.performance_fee == 0.0
        assert fees.creator_fee == 0.0
        assert fees.net_pnl == -50.0

    def test_gross_pnl_by_side(self):
        assert gross_pnl("long", 100.0, 110.0, 2.0) == 20.0
        assert gross_pnl("short", 100.0, 110.0, 2.0) == -20.0

    def test_live_pnl_pct_is_leveraged(self):
        assert live_pnl_pct("long", 100.0, 94.0, 1) == pytest.approx(-6.0)
        assert live_pnl_pct("short", 100.0, 94.0, 3) == pytest.approx(18.0)
        assert live_pnl_pct("long", 0.0, 94.0, 3) == 0.0


@pytest.mark.unit
class TestSettleTrade:
    async def test_profitable_trade_distribution(
        self, settlement, session_factory, test_agent, make_trade
    ):
        trade = await make_trade(test_agent, entry_price=100.0, size=1.0)

        outcome = await settlement.settle_trade(trade.id, 220.0, ExitPriceSource.FILL_ORDER)

        assert outcome.gross_pnl == pytest.approx(120.0)
        assert outcome.fee == pytest.approx(24.0)
        assert outcome.creator_fee == pytest.approx(12.0)
        assert outcome.net_pnl == pytest.approx(96.0)
        # $9.60 of the net profit comes back as 960 fuel units
        assert outcome.fuel_gained == pytest.approx(960.0)

        agent = await _reload(session_factory, AgentDB, test_agent.id)
        assert agent.capital_balance == pytest.approx(1096.0)
        assert agent.creator_earnings == pytest.approx(12.0)
        # 500 - 1 close burn + 960 fed
        assert agent.energy_balance == pytest.approx(1459.0)
        assert agent.total_trades == 1
        assert agent.win_rate == 100.0

        closed = await _reload(session_factory, TradeDB, trade.id)
        assert closed.status == "closed"
        assert closed.exit_price == 220.0
        assert closed.exit_price_source == ExitPriceSource.FILL_ORDER
        assert closed.net_pnl == pytest.approx(96.0)

        async with session_factory() as session:
            types = (await session.execute(select(TransactionDB.type))).scalars().all()
        assert TxType.TRADE_PNL in types
        assert TxType.CREATOR_FEE in types
        assert TxType.PLATFORM_FEE in types
        assert TxType.ENERGY_VAMPIRE in types

    async def test_settlement_is_exactly_once(
        self, settlement, session_factory, test_agent, make_trade
    ):
        trade = await make_trade(test_agent)

        first = await settlement.settle_trade(trade.id, 220.0, ExitPriceSource.MARK)
        second = await settlement.settle_trade(trade.id, 220.0, ExitPriceSource.MARK)

        assert first is not None
        assert second is None
        agent = await _reload(session_factory, AgentDB, test_agent.id)
        assert agent.capital_balance == pytest.approx(1096.0)

        async with session_factory() as session:
            pnl_rows = (
                await session.execute(
                    select(TransactionDB).where(TransactionDB.type == TxType.TRADE_PNL)
                )
            ).scalars().all()
        assert len(pnl_rows) == 1

    async def test_loss_clamps_capital_at_zero(
        self, settlement, session_factory, make_agent, make_trade
    ):
        agent = await make_agent(capital_balance=50.0)
        trade = await make_trade(agent, entry_price=200.0, size=1.0)

        outcome = await settlement.settle_trade(trade.id, 80.0, ExitPriceSource.MARK)

        assert outcome.net_pnl == pytest.approx(-120.0)
        assert outcome.fuel_gained == 0.0
        reloaded = await _reload(session_factory, AgentDB, agent.id)
        assert reloaded.capital_balance == 0.0
        assert reloaded.energy_balance == 499.0
        assert reloaded.win_rate == 0.0

    async def test_close_burns_fuel(self, settlement, session_factory, test_agent, make_trade):
        trade = await make_trade(test_agent, entry_price=100.0, size=1.0)

        await settlement.settle_trade(trade.id, 100.0, ExitPriceSource.MARK)

        async with session_factory() as session:
            logs = (await session.execute(select(EnergyLogDB))).scalars().all()
        assert [(log.reason, log.amount) for log in logs] == [("trade_close", -1.0)]
        assert (await _reload(session_factory, AgentDB, test_agent.id)).energy_balance == 499.0

    async def test_close_burn_can_starve_agent(self, settlement, session_factory, make_agent, make_trade):
        agent = await make_agent(energy_balance=1.5, capital_balance=200.0)
        trade = await make_trade(agent, entry_price=100.0, size=1.0)

        await settlement.settle_trade(trade.id, 90.0, ExitPriceSource.MARK)

        reloaded = await _reload(session_factory, AgentDB, agent.id)
        assert reloaded.status == "dead"
        assert reloaded.energy_balance == 0.0
        assert reloaded.capital_balance == 0.0

    async def test_referred_owner_pays_referrer_and_grants_blood_pack(
        self, session_factory, db_session, mock_trader, locks, settings, test_user, make_agent, make_trade
    ):
        referrer = UserDB(wallet_address="0x" + "b2" * 20, referral_code="REFERRER")
        db_session.add(referrer)
        await db_session.commit()
        test_user.referred_by = referrer.id
        await db_session.commit()

        agent = await make_agent()
        trade = await make_trade(agent)
        side_effects = MagicMock()
        settlement = SettlementService(session_factory, mock_trader, locks, side_effects, settings)

        outcome = await settlement.settle_trade(trade.id, 220.0, ExitPriceSource.MARK)

        assert outcome is not None
        side_effects.referrer_blood_pack.assert_called_once_with(referrer.id, test_user.id, trade.id)
        async with session_factory() as session:
            referral = (
                await session.execute(
                    select(TransactionDB).where(TransactionDB.type == TxType.REFERRAL_FEE)
                )
            ).scalar_one()
        assert referral.user_id == referrer.id
        assert referral.amount == pytest.approx(1.2)

    async def test_missing_trade_raises(self, settlement):
        with pytest.raises(TradeError):
            await settlement.settle_trade(uuid4(), 100.0, ExitPriceSource.MARK)


@pytest.mark.unit
class TestExitPriceCascade:
    def _trade(self, **overrides) -> TradeDB:
        fields = {"symbol": "BTC", "side": "long", "entry_price": 100.0, "exchange_order_id": "order-1"}
        fields.update(overrides)
        return TradeDB(**fields)

    async def test_order_fill_wins(self, settlement):
        fills = [
            Fill(symbol="BTC", side="sell", price=111.0, size=1.0, order_id="other", closed_pnl=5.0),
            Fill(symbol="BTC", side="sell", price=108.0, size=1.0, order_id="order-1"),
        ]

        price, source = await settlement.resolve_exit_price(self._trade(), fills)

        assert (price, source) == (108.0, ExitPriceSource.FILL_ORDER)

    async def test_newest_closing_fill_on_symbol(self, settlement):
        now = datetime.now(UTC)
        fills = [
            Fill(symbol="BTC", side="sell", price=105.0, size=1.0, closed_pnl=5.0, timestamp=now - timedelta(minutes=5)),
            Fill(symbol="BTC", side="sell", price=107.0, size=1.0, closed_pnl=7.0, timestamp=now),
            Fill(symbol="ETH", side="sell", price=3000.0, size=1.0, closed_pnl=1.0, timestamp=now),
        ]

        price, source = await settlement.resolve_exit_price(self._trade(exchange_order_id=None), fills)

        assert (price, source) == (107.0, ExitPriceSource.FILL_SYMBOL)

    async def test_mark_price_fallback(self, settlement, mock_trader):
        mock_trader.get_mark_price.return_value = 99.5

        price, source = await settlement.resolve_exit_price(self._trade(), [])

        assert (price, source) == (99.5, ExitPriceSource.MARK)

    async def test_entry_price_last_resort(self, settlement, mock_trader):
        mock_trader.get_mark_price.side_effect = TradeError("down")

        price, source = await settlement.resolve_exit_price(self._trade(), [])

        assert (price, source) == (100.0, ExitPriceSource.ENTRY_FALLBACK)


@pytest.mark.unit
class TestSettleSweep:
    async def test_settles_trades_missing_on_exchange(
        self, settlement, session_factory, mock_trader, test_agent, make_trade
    ):
        closed_on_exchange = await make_trade(test_agent, symbol="BTC")
        still_live = await make_trade(test_agent, symbol="ETH", exchange_order_id="order-2")
        mock_trader.get_positions.return_value = [
            Position("ETH", "long", 1.0, 3000.0, 3000.0, 3010.0, 1, 10.0),
        ]
        mock_trader.get_user_fills.return_value = [
            Fill(symbol="BTC", side="sell", price=110.0, size=1.0, order_id="order-1"),
        ]

        summary = await settlement.settle_closed_positions()

        assert summary == {"settled": 1, "checked": 1, "errors": []}
        assert (await _reload(session_factory, TradeDB, closed_on_exchange.id)).status == "closed"
        assert (await _reload(session_factory, TradeDB, still_live.id)).status == "open"

    async def test_positions_failure_aborts_sweep(
        self, settlement, session_factory, mock_trader, test_agent, make_trade
    ):
        trade = await make_trade(test_agent)
        mock_trader.get_positions.side_effect = TradeError("exchange unavailable")

        summary = await settlement.settle_closed_positions()

        assert summary["settled"] == 0
        assert summary["errors"]
        assert (await _reload(session_factory, TradeDB, trade.id)).status == "open"
