"""
Tests for background side-effect jobs.
"""

from uuid import uuid4

import pytest
from sqlalchemy import select

from arena.db.models import AgentDB, LifecycleEventDB, ReferralEarningDB, TransactionDB, UserDB
from arena.services.background import BackgroundDispatcher
from arena.services.side_effects import SideEffects


@pytest.fixture
def dispatcher():
    return BackgroundDispatcher()


@pytest.fixture
def side_effects(dispatcher, session_factory, locks, settings):
    return SideEffects(dispatcher, session_factory, locks, settings)


@pytest.mark.unit
class TestSideEffects:
    async def test_lifecycle_event_is_recorded(self, side_effects, dispatcher, db_session, test_agent):
        side_effects.emit_event("agent_born", test_agent.id, {"tier": "sniper"})
        await dispatcher.drain()

        events = (await db_session.execute(select(LifecycleEventDB))).scalars().all()
        assert [(e.type, e.agent_id, e.data) for e in events] == [
            ("agent_born", test_agent.id, {"tier": "sniper"})
        ]

    async def test_burn_referral_credits_parent_creator(
        self, side_effects, dispatcher, session_factory, test_agent, test_user
    ):
        # 1000 fuel = $10 burned, 20% goes to the parent's creator
        side_effects.burn_referral(test_agent.id, uuid4(), 1000.0)
        await dispatcher.drain()

        async with session_factory() as session:
            user = await session.get(UserDB, test_user.id)
            tx = (await session.execute(select(TransactionDB))).scalar_one()
        assert user.balance_usdt == pytest.approx(1002.0)
        assert tx.type == "clone_fuel_referral"
        assert tx.amount == pytest.approx(2.0)

    async def test_dust_burn_referral_is_skipped(self, side_effects, dispatcher, test_agent):
        side_effects.burn_referral(test_agent.id, uuid4(), 0.001)

        assert dispatcher.submitted == 0

    async def test_missing_parent_is_ignored(self, side_effects, dispatcher, db_session):
        side_effects.burn_referral(uuid4(), uuid4(), 1000.0)
        await dispatcher.drain()

        assert dispatcher.failed == 0
        assert (await db_session.execute(select(TransactionDB))).first() is None

    async def test_referrer_blood_pack_feeds_weakest_agent(
        self, side_effects, dispatcher, db_session, session_factory, make_agent, test_user, settings
    ):
        strong = await make_agent(energy_balance=900.0)
        weak = await make_agent(energy_balance=40.0)
        referred = UserDB(wallet_address="0x" + "c3" * 20, referral_code="REFERRED")
        db_session.add(referred)
        await db_session.commit()

        side_effects.referrer_blood_pack(test_user.id, referred.id)
        await dispatcher.drain()

        async with session_factory() as session:
            weak_after = await session.get(AgentDB, weak.id)
            strong_after = await session.get(AgentDB, strong.id)
            earning = (await session.execute(select(ReferralEarningDB))).scalar_one()
        assert weak_after.energy_balance == pytest.approx(40.0 + settings.referral_blood_pack)
        assert strong_after.energy_balance == 900.0
        assert earning.agent_id == weak.id
        assert earning.referred_user_id == referred.id

    async def test_referrer_without_active_agent(self, side_effects, dispatcher, db_session, test_user):
        side_effects.referrer_blood_pack(test_user.id, uuid4())
        await dispatcher.drain()

        assert dispatcher.failed == 0
        assert (await db_session.execute(select(ReferralEarningDB))).first() is None
