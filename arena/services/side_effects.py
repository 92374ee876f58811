"""
Side effects dispatched off the critical path.

Each job opens its own session, does its work under the relevant agent
lock, and commits. The primary operation has already committed (or will)
independently; a failing job is logged by the dispatcher and never rolls
the primary operation back.
"""

import logging
import uuid
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..core.config import Settings, get_settings
from ..db.repositories import AgentRepository, LifecycleEventRepository, TransactionRepository
from .background import BackgroundDispatcher
from .ledger_service import LedgerService, TxType
from .locks import AgentLockManager

logger = logging.getLogger(__name__)


class SideEffects:
    """Facade the services use to fire background jobs."""

    def __init__(
        self,
        dispatcher: BackgroundDispatcher,
        session_factory: async_sessionmaker[AsyncSession],
        locks: AgentLockManager,
        settings: Optional[Settings] = None,
    ):
        self.dispatcher = dispatcher
        self.session_factory = session_factory
        self.locks = locks
        self.settings = settings or get_settings()

    def emit_event(self, type: str, agent_id: Optional[uuid.UUID], data: Optional[dict] = None) -> None:
        logger.info(f"Lifecycle event {type} agent={agent_id} data={data or {}}")
        self.dispatcher.submit(
            f"event:{type}",
            record_lifecycle_event,
            self.session_factory,
            type,
            agent_id,
            data,
        )

    def burn_referral(
        self,
        parent_agent_id: uuid.UUID,
        source_agent_id: uuid.UUID,
        fuel_burned: float,
    ) -> None:
        usd = (
            fuel_burned
            / self.settings.fuel_units_per_usd
            * self.settings.burn_referral_pct
            / 100
        )
        if usd < 0.001:
            return
        self.dispatcher.submit(
            "burn_referral",
            pay_burn_referral,
            self.session_factory,
            parent_agent_id,
            source_agent_id,
            usd,
        )

    def referrer_blood_pack(
        self,
        referrer_id: uuid.UUID,
        referred_user_id: uuid.UUID,
        trade_id: Optional[uuid.UUID] = None,
    ) -> None:
        self.dispatcher.submit(
            "referrer_blood_pack",
            grant_referrer_blood_pack,
            self.session_factory,
            self.locks,
            self.settings,
            referrer_id,
            referred_user_id,
            trade_id,
        )


# =============================================================================
# Jobs
# =============================================================================

async def record_lifecycle_event(
    session_factory: async_sessionmaker[AsyncSession],
    type: str,
    agent_id: Optional[uuid.UUID],
    data: Optional[dict],
) -> None:
    async with session_factory() as session:
        await LifecycleEventRepository(session).create(type=type, agent_id=agent_id, data=data)
        await session.commit()


async def pay_burn_referral(
    session_factory: async_sessionmaker[AsyncSession],
    parent_agent_id: uuid.UUID,
    source_agent_id: uuid.UUID,
    amount_usd: float,
) -> None:
    """Credit the clone parent's creator with a share of a burn."""
    async with session_factory() as session:
        parent = await AgentRepository(session).get_by_id(parent_agent_id)
        if parent is None:
            logger.warning(
                f"Burn referral skipped: parent agent {parent_agent_id} "
                f"of {source_agent_id} no longer exists"
            )
            return
        await LedgerService(session).credit(
            parent.user_id,
            amount_usd,
            TxType.CLONE_FUEL_REFERRAL,
            agent_id=source_agent_id,
            description=f"Clone fuel referral from agent {source_agent_id}",
        )
        await session.commit()


async def grant_referrer_blood_pack(
    session_factory: async_sessionmaker[AsyncSession],
    locks: AgentLockManager,
    settings: Settings,
    referrer_id: uuid.UUID,
    referred_user_id: uuid.UUID,
    trade_id: Optional[uuid.UUID],
) -> None:
    """Top up the referrer's weakest active agent after a referred user's trade settles."""
    from .metabolism_service import MetabolismService

    async with session_factory() as session:
        target = await AgentRepository(session).get_weakest_active(referrer_id)
        if target is None:
            logger.info(f"Referrer {referrer_id} has no active agent; blood pack skipped")
            return

        async with locks.hold(target.id):
            units = settings.referral_blood_pack
            await MetabolismService(session, settings).recharge(target.id, units, reason="blood_pack")
            await TransactionRepository(session).create_referral_earning(
                referrer_id=referrer_id,
                referred_user_id=referred_user_id,
                energy_amount=units,
                agent_id=target.id,
                trade_id=trade_id,
            )
            await LedgerService(session).record(
                TxType.ENERGY_REFERRAL,
                units / settings.fuel_units_per_usd,
                user_id=referrer_id,
                agent_id=target.id,
                description=f"Referral blood pack: {units:.0f} fuel",
            )
            await session.commit()
