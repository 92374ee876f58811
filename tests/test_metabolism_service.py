"""
Tests for MetabolismService.

Covers:
- Heartbeat burns and the zero floor
- Death sequence (capital return, trade cancellation, idempotency)
- Profit feed-back (vampire feed)
- Recharge and blood packs
"""

from unittest.mock import MagicMock

import pytest
from sqlalchemy import select

from arena.db.models import EnergyLogDB, TransactionDB
from arena.services.ledger_service import TxType
from arena.services.metabolism_service import EnergyReason, MetabolismService


@pytest.mark.unit
class TestBurn:
    async def test_heartbeat_burn_logs_delta(self, db_session, settings, test_agent):
        service = MetabolismService(db_session, settings)

        result = await service.burn(test_agent.id, EnergyReason.HEARTBEAT, 1.0)
        await db_session.commit()

        assert result.is_dead is False
        assert result.energy_before == 500.0
        assert result.energy_after == 499.0

        logs = (await db_session.execute(select(EnergyLogDB))).scalars().all()
        assert len(logs) == 1
        assert logs[0].amount == -1.0
        assert logs[0].reason == "heartbeat"
        assert logs[0].balance_before == 500.0
        assert logs[0].balance_after == 499.0

    async def test_burn_never_goes_negative(self, db_session, settings, make_agent):
        agent = await make_agent(energy_balance=0.4)
        service = MetabolismService(db_session, settings)

        result = await service.burn(agent.id, EnergyReason.HEARTBEAT, 5.0)
        await db_session.commit()

        assert result.energy_after == 0.0
        log = (await db_session.execute(select(EnergyLogDB))).scalars().first()
        assert log.amount == pytest.approx(-0.4)
        assert log.balance_after == 0.0

    async def test_burn_below_floor_kills_agent(self, db_session, settings, make_agent, test_user):
        agent = await make_agent(energy_balance=1.5, capital_balance=250.0)
        service = MetabolismService(db_session, settings)

        result = await service.burn(agent.id, EnergyReason.HEARTBEAT, 1.0)
        await db_session.commit()

        # 0.5 left is below the 1.0 floor
        assert result.is_dead is True
        assert result.agent.status == "dead"
        assert result.agent.energy_balance == 0.0
        assert result.agent.capital_balance == 0.0
        assert result.agent.died_at is not None
        assert test_user.balance_usdt == 1250.0

    async def test_burn_on_dead_agent_is_noop(self, db_session, settings, make_agent):
        agent = await make_agent(status="dead", energy_balance=0.0)
        service = MetabolismService(db_session, settings)

        result = await service.burn(agent.id)

        assert result.is_dead is True
        assert result.energy_before == result.energy_after == 0.0
        logs = (await db_session.execute(select(EnergyLogDB))).scalars().all()
        assert logs == []

    async def test_clone_burn_pays_parent_creator(self, db_session, settings, make_agent):
        parent = await make_agent(name="Parent")
        clone = await make_agent(name="Clone", clone_parent_id=parent.id)
        side_effects = MagicMock()
        service = MetabolismService(db_session, settings, side_effects)

        await service.burn(clone.id, EnergyReason.HEARTBEAT, 2.0)

        side_effects.burn_referral.assert_called_once_with(parent.id, clone.id, 2.0)


@pytest.mark.unit
class TestDeathSequence:
    async def test_death_returns_capital_and_cancels_trades(
        self, db_session, settings, test_agent, test_user, make_trade
    ):
        trade = await make_trade(test_agent)
        service = MetabolismService(db_session, settings)

        assert await service.death_sequence(test_agent.id) is True
        await db_session.commit()
        await db_session.refresh(trade)

        assert trade.status == "cancelled"
        assert test_user.balance_usdt == 2000.0

        returns = (
            await db_session.execute(
                select(TransactionDB).where(TransactionDB.type == TxType.CAPITAL_RETURN)
            )
        ).scalars().all()
        assert len(returns) == 1
        assert returns[0].amount == 1000.0
        assert returns[0].balance_before == 1000.0
        assert returns[0].balance_after == 2000.0

        drain = (
            await db_session.execute(
                select(EnergyLogDB).where(EnergyLogDB.reason == EnergyReason.DEATH_DRAIN)
            )
        ).scalar_one()
        assert drain.amount == -500.0

    async def test_death_is_idempotent(self, db_session, settings, test_agent, test_user):
        side_effects = MagicMock()
        service = MetabolismService(db_session, settings, side_effects)

        assert await service.death_sequence(test_agent.id) is True
        await db_session.commit()
        assert await service.death_sequence(test_agent.id) is False
        await db_session.commit()

        assert test_user.balance_usdt == 2000.0
        side_effects.emit_event.assert_called_once()
        assert side_effects.emit_event.call_args.args[0] == "agent_died"

    async def test_check_death_ignores_healthy_agent(self, db_session, settings, test_agent):
        service = MetabolismService(db_session, settings)

        assert await service.check_death(test_agent.id) is False
        assert test_agent.status == "active"


@pytest.mark.unit
class TestFeedAndRecharge:
    async def test_feed_from_profit(self, db_session, settings, test_agent):
        service = MetabolismService(db_session, settings)

        fuel = await service.feed_from_profit(test_agent.id, 96.0)
        await db_session.commit()

        # 10% of $96 = $9.60 -> 960 fuel units
        assert fuel == pytest.approx(960.0)
        assert test_agent.energy_balance == pytest.approx(1460.0)

        feed = (
            await db_session.execute(
                select(TransactionDB).where(TransactionDB.type == TxType.ENERGY_VAMPIRE)
            )
        ).scalar_one()
        assert feed.amount == pytest.approx(9.6)

    async def test_feed_ignores_losses(self, db_session, settings, test_agent):
        service = MetabolismService(db_session, settings)

        assert await service.feed_from_profit(test_agent.id, -20.0) == 0.0
        assert await service.feed_from_profit(test_agent.id, 0.0) == 0.0
        assert test_agent.energy_balance == 500.0

    async def test_recharge_dead_agent_rejected(self, db_session, settings, make_agent):
        agent = await make_agent(status="dead", energy_balance=0.0)
        service = MetabolismService(db_session, settings)

        with pytest.raises(ValueError):
            await service.recharge(agent.id, 100.0)

    async def test_blood_pack_goes_to_weakest_agent(self, db_session, settings, test_user, make_agent):
        strong = await make_agent(name="Strong", energy_balance=900.0)
        weak = await make_agent(name="Weak", energy_balance=20.0)
        service = MetabolismService(db_session, settings)

        target = await service.apply_blood_pack(test_user.id, 50.0)
        await db_session.commit()

        assert target.id == weak.id
        assert weak.energy_balance == 70.0
        assert strong.energy_balance == 900.0
