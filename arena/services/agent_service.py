"""Agent lifecycle: minting, status control, tiers, recharge and creator claims"""

import logging
import uuid
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from ..core.config import Settings, get_settings
from ..core.errors import (
    AgentNotFoundError,
    BelowMinimumSizeError,
    InsufficientBalanceError,
    InvalidStateTransitionError,
)
from ..db.models import AgentDB
from ..db.repositories import AgentRepository, TradeRepository
from ..models.strategy import AgentTier, StrategyRules, get_tier
from .ledger_service import LedgerService, TxType
from .locks import AgentLockManager
from .metabolism_service import EnergyReason, MetabolismService
from .side_effects import SideEffects

logger = logging.getLogger(__name__)


# Allowed source statuses per target status
TRANSITIONS: dict[str, tuple[str, ...]] = {
    "active": ("draft", "paused"),
    "paused": ("active",),
    "dead": ("active", "paused"),
    "closed": ("active", "paused", "dead"),
}


class AgentService:
    """
    Service for agent lifecycle operations.

    Balance-touching methods take the agent lock and commit before
    releasing it.
    """

    MIN_MINT_USD = 10.0

    def __init__(
        self,
        session: AsyncSession,
        locks: AgentLockManager,
        side_effects: Optional[SideEffects] = None,
        settings: Optional[Settings] = None,
    ):
        self.session = session
        self.locks = locks
        self.side_effects = side_effects
        self.settings = settings or get_settings()
        self.agent_repo = AgentRepository(session)
        self.trade_repo = TradeRepository(session)
        self.ledger = LedgerService(session)

    async def get_owned(self, agent_id: uuid.UUID, user_id: uuid.UUID) -> AgentDB:
        agent = await self.agent_repo.get_by_id(agent_id, user_id=user_id)
        if agent is None:
            raise AgentNotFoundError(agent_id)
        return agent

    # =========================================================================
    # Mint
    # =========================================================================

    async def mint_agent(
        self,
        user_id: uuid.UUID,
        name: str,
        prompt: str,
        rules: StrategyRules,
        amount_usd: float,
        tier: AgentTier = AgentTier.SNIPER,
        tx_hash: Optional[str] = None,
        clone_parent_id: Optional[uuid.UUID] = None,
    ) -> AgentDB:
        """
        Create a funded agent.

        The deposit is split into trading capital and fuel. With tx_hash
        the deposit was paid on-chain, otherwise it is debited from the
        free balance.
        """
        if amount_usd < self.MIN_MINT_USD:
            raise BelowMinimumSizeError(amount_usd, self.MIN_MINT_USD)
        if clone_parent_id and await self.agent_repo.get_by_id(clone_parent_id) is None:
            raise AgentNotFoundError(clone_parent_id)

        capital = amount_usd * self.settings.capital_split_pct / 100
        fuel = (amount_usd - capital) * self.settings.fuel_units_per_usd
        tier_config = get_tier(tier.value)

        await self.ledger.ensure_unprocessed(tx_hash)

        agent = await self.agent_repo.create(
            user_id=user_id,
            name=name,
            prompt=prompt,
            strategy_rules=rules.to_stored(),
            tier=tier_config.name,
            status="active",
            allocated_funds=amount_usd,
            capital_balance=capital,
            energy_balance=0.0,
            burn_rate_per_hour=tier_config.burn_rate_per_hour,
            clone_parent_id=clone_parent_id,
        )
        await MetabolismService(self.session, self.settings).recharge(
            agent.id, fuel, reason=EnergyReason.MANUAL_TOPUP
        )

        if tx_hash:
            await self.ledger.record(
                TxType.MINT,
                -amount_usd,
                user_id=user_id,
                agent_id=agent.id,
                tx_hash=tx_hash,
                description=f"Minted agent {name} (on-chain)",
            )
        else:
            await self.ledger.debit(
                user_id,
                amount_usd,
                TxType.MINT,
                agent_id=agent.id,
                description=f"Minted agent {name}",
            )
        await self.session.commit()

        logger.info(
            f"Agent {agent.id} born for user {user_id}: ${capital:.2f} capital, "
            f"{fuel:.0f} fuel, tier {tier_config.name}"
        )
        if self.side_effects:
            self.side_effects.emit_event(
                "agent_born",
                agent.id,
                {"name": name, "tier": tier_config.name, "capital": capital, "fuel": fuel},
            )
        return agent

    # =========================================================================
    # Status control
    # =========================================================================

    async def _transition(self, agent: AgentDB, target: str) -> AgentDB:
        allowed = TRANSITIONS[target]
        if agent.status not in allowed:
            raise InvalidStateTransitionError("agent", agent.status, target)
        if not await self.agent_repo.transition_status(agent.id, allowed, target):
            raise InvalidStateTransitionError("agent", agent.status, target)
        await self.session.commit()
        await self.session.refresh(agent)
        logger.info(f"Agent {agent.id} -> {target}")
        return agent

    async def pause(self, agent_id: uuid.UUID, user_id: uuid.UUID) -> AgentDB:
        return await self._transition(await self.get_owned(agent_id, user_id), "paused")

    async def activate(self, agent_id: uuid.UUID, user_id: uuid.UUID) -> AgentDB:
        agent = await self.get_owned(agent_id, user_id)
        if (agent.energy_balance or 0.0) < self.settings.min_energy_to_live:
            raise InvalidStateTransitionError("agent", f"{agent.status} (out of fuel)", "active")
        return await self._transition(agent, "active")

    async def close(self, agent_id: uuid.UUID, user_id: uuid.UUID) -> AgentDB:
        """
        Retire an agent for good.

        A living agent must be flat; its remaining capital goes back to the
        owner. Dead agents already returned their capital.
        """
        agent = await self.get_owned(agent_id, user_id)
        if agent.status not in TRANSITIONS["closed"]:
            raise InvalidStateTransitionError("agent", agent.status, "closed")

        async with self.locks.hold(agent.id):
            agent = await self.agent_repo.get_for_update(agent.id)
            if await self.trade_repo.get_open(agent.id):
                raise InvalidStateTransitionError("agent", "trading", "closed")

            capital = agent.capital_balance or 0.0
            previous = agent.status
            if not await self.agent_repo.transition_status(
                agent.id,
                TRANSITIONS["closed"],
                "closed",
                capital_balance=0.0,
                energy_balance=0.0,
            ):
                raise InvalidStateTransitionError("agent", agent.status, "closed")
            if capital > 0:
                await self.ledger.credit(
                    agent.user_id,
                    capital,
                    TxType.CAPITAL_RETURN,
                    agent_id=agent.id,
                    description=f"Capital returned on closing agent {agent.name}",
                )
            await self.session.commit()

        logger.info(f"Agent {agent.id} closed from {previous}, returned ${capital:.2f}")
        await self.session.refresh(agent)
        return agent

    async def upgrade_tier(self, agent_id: uuid.UUID, user_id: uuid.UUID, tier: AgentTier) -> AgentDB:
        agent = await self.get_owned(agent_id, user_id)
        if agent.status in ("dead", "closed"):
            raise InvalidStateTransitionError("agent", agent.status, f"tier {tier.value}")
        config = get_tier(tier.value)
        agent.tier = config.name
        agent.burn_rate_per_hour = config.burn_rate_per_hour
        await self.session.commit()
        logger.info(f"Agent {agent.id} tier -> {config.name} (burn {config.burn_rate_per_hour:.2f}/h)")
        return agent

    # =========================================================================
    # Fuel and earnings
    # =========================================================================

    async def recharge(
        self,
        agent_id: uuid.UUID,
        user_id: uuid.UUID,
        amount_usd: float,
        tx_hash: Optional[str] = None,
    ) -> AgentDB:
        """Buy fuel, from the free balance or paid on-chain (tx_hash)."""
        if amount_usd < self.settings.min_recharge_usd:
            raise BelowMinimumSizeError(amount_usd, self.settings.min_recharge_usd)
        agent = await self.get_owned(agent_id, user_id)
        if agent.status in ("dead", "closed"):
            raise InvalidStateTransitionError("agent", agent.status, "recharged")

        fuel = amount_usd * self.settings.fuel_units_per_usd
        async with self.locks.hold(agent.id):
            await self.ledger.ensure_unprocessed(tx_hash)
            agent = await MetabolismService(self.session, self.settings).recharge(
                agent.id, fuel, reason=EnergyReason.MANUAL_TOPUP
            )
            if tx_hash:
                await self.ledger.record(
                    TxType.ENERGY_PURCHASE,
                    -amount_usd,
                    user_id=user_id,
                    agent_id=agent.id,
                    tx_hash=tx_hash,
                    description=f"Fuel purchase: +{fuel:.0f} units (on-chain)",
                )
            else:
                await self.ledger.debit(
                    user_id,
                    amount_usd,
                    TxType.ENERGY_PURCHASE,
                    agent_id=agent.id,
                    description=f"Fuel purchase: +{fuel:.0f} units",
                )
            await self.session.commit()

        logger.info(f"Agent {agent.id} recharged with {fuel:.0f} fuel (${amount_usd:.2f})")
        return agent

    async def claim_creator_earnings(self, agent_id: uuid.UUID, user_id: uuid.UUID) -> float:
        """Move accrued creator earnings to the owner's free balance."""
        agent = await self.get_owned(agent_id, user_id)
        async with self.locks.hold(agent.id):
            agent = await self.agent_repo.get_for_update(agent.id)
            amount = agent.creator_earnings or 0.0
            if amount <= 0:
                return 0.0
            agent.creator_earnings = 0.0
            await self.ledger.credit(
                user_id,
                amount,
                TxType.CREATOR_CLAIM,
                agent_id=agent.id,
                description=f"Creator earnings claimed from {agent.name}",
            )
            await self.session.commit()

        logger.info(f"User {user_id} claimed ${amount:.2f} creator earnings from agent {agent_id}")
        return amount

    async def withdraw_capital(self, agent_id: uuid.UUID, user_id: uuid.UUID, amount: float) -> AgentDB:
        """
        Move part of a living agent's capital to the owner's free balance.

        Margin held by open trades stays in the pool.
        """
        if amount <= 0:
            raise BelowMinimumSizeError(amount, 0.01)
        agent = await self.get_owned(agent_id, user_id)
        if agent.status in ("dead", "closed"):
            raise InvalidStateTransitionError("agent", agent.status, "capital withdrawal")

        async with self.locks.hold(agent.id):
            agent = await self.agent_repo.get_for_update(agent.id)
            margin = sum(
                (t.size_usd or 0.0) / max(t.leverage or 1, 1)
                for t in await self.trade_repo.get_open(agent.id)
            )
            available = max((agent.capital_balance or 0.0) - margin, 0.0)
            if amount > available:
                raise InsufficientBalanceError(amount, available, "withdrawable capital")

            agent.capital_balance = (agent.capital_balance or 0.0) - amount
            await self.ledger.credit(
                user_id,
                amount,
                TxType.CAPITAL_WITHDRAWAL,
                agent_id=agent.id,
                description=f"Creator withdrew ${amount:.2f} capital from {agent.name}",
            )
            await self.session.commit()

        logger.info(
            f"User {user_id} withdrew ${amount:.2f} capital from agent {agent.id} "
            f"(margin held ${margin:.2f}, capital now ${agent.capital_balance:.2f})"
        )
        return agent
