"""
Metabolism engine: fuel accounting, death and profit feed-back.

Fuel (energy) is denominated in units; settings.fuel_units_per_usd converts
USD into units. Every delta writes an EnergyLog with before/after balances
and the balance is floored at zero. An agent whose fuel drops below
settings.min_energy_to_live dies; death is terminal and runs once.

Callers must hold the agent lock (AgentLockManager) and commit afterwards.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from ..core.config import Settings, get_settings
from ..core.errors import AgentNotFoundError
from ..db.models import AgentDB
from ..db.repositories import AgentRepository, EnergyLogRepository, TradeRepository
from ..monitoring import get_metrics_collector
from .ledger_service import LedgerService, TxType
from .side_effects import SideEffects

logger = logging.getLogger(__name__)


class EnergyReason:
    HEARTBEAT = "heartbeat"
    TRADE_OPEN = "trade_open"
    TRADE_CLOSE = "trade_close"
    VAMPIRE_FEED = "vampire_feed"
    BLOOD_PACK = "blood_pack"
    MANUAL_TOPUP = "manual_topup"
    DEATH_DRAIN = "death_drain"


@dataclass
class BurnResult:
    agent: AgentDB
    is_dead: bool
    energy_before: float
    energy_after: float


class MetabolismService:
    """
    Service for agent fuel.

    Usage:
        metabolism = MetabolismService(session, settings, side_effects)
        result = await metabolism.burn(agent.id, EnergyReason.HEARTBEAT)
        if result.is_dead:
            ...
    """

    def __init__(
        self,
        session: AsyncSession,
        settings: Optional[Settings] = None,
        side_effects: Optional[SideEffects] = None,
    ):
        self.session = session
        self.settings = settings or get_settings()
        self.side_effects = side_effects
        self.agent_repo = AgentRepository(session)
        self.energy_repo = EnergyLogRepository(session)
        self.trade_repo = TradeRepository(session)
        self.ledger = LedgerService(session)
        self.metrics = get_metrics_collector()

    async def _load(self, agent_id: uuid.UUID) -> AgentDB:
        agent = await self.agent_repo.get_for_update(agent_id)
        if agent is None:
            raise AgentNotFoundError(agent_id)
        return agent

    async def _log_energy_change(
        self,
        agent: AgentDB,
        amount: float,
        reason: str,
    ) -> tuple[float, float]:
        before = agent.energy_balance or 0.0
        after = max(0.0, before + amount)
        agent.energy_balance = after
        await self.energy_repo.create(
            agent_id=agent.id,
            amount=after - before,
            reason=reason,
            balance_before=before,
            balance_after=after,
        )
        return before, after

    # =========================================================================
    # Burn / feed
    # =========================================================================

    async def burn(
        self,
        agent_id: uuid.UUID,
        reason: str = EnergyReason.HEARTBEAT,
        amount: Optional[float] = None,
    ) -> BurnResult:
        """
        Burn fuel; runs the death sequence if the agent drops below the floor.

        A burn on an agent that is already dead (or closed) is a no-op.
        """
        agent = await self._load(agent_id)
        if agent.status in ("dead", "closed"):
            balance = agent.energy_balance or 0.0
            return BurnResult(agent, agent.status == "dead", balance, balance)

        amount = self.settings.heartbeat_burn if amount is None else amount
        before, after = await self._log_energy_change(agent, -abs(amount), reason)
        self.metrics.energy_burned_total.labels(reason=reason).inc(before - after)

        is_dead = after < self.settings.min_energy_to_live
        if is_dead:
            logger.warning(
                f"Agent {agent.id} starved during {reason} burn "
                f"(energy {before:.2f} -> {after:.2f})"
            )
            await self.death_sequence(agent.id)

        if agent.clone_parent_id and self.side_effects and before > after:
            self.side_effects.burn_referral(agent.clone_parent_id, agent.id, before - after)

        return BurnResult(agent, is_dead, before, after)

    async def feed_from_profit(self, agent_id: uuid.UUID, net_profit_usd: float) -> float:
        """
        Convert a share of positive net profit into fuel.

        Returns fuel units gained (0 for losses or break-even).
        """
        if net_profit_usd <= 0:
            return 0.0

        agent = await self._load(agent_id)
        if agent.status in ("dead", "closed"):
            return 0.0

        feed_usd = net_profit_usd * self.settings.vampire_feed_pct / 100
        fuel = feed_usd * self.settings.fuel_units_per_usd
        await self._log_energy_change(agent, fuel, EnergyReason.VAMPIRE_FEED)
        await self.ledger.record(
            TxType.ENERGY_VAMPIRE,
            feed_usd,
            user_id=agent.user_id,
            agent_id=agent.id,
            description=f"Vampire feed: {fuel:.1f} fuel from ${net_profit_usd:.2f} profit",
        )

        burn_rate = agent.burn_rate_per_hour or 0
        hours = fuel / burn_rate if burn_rate > 0 else 0
        logger.info(f"Agent {agent.id} fed {fuel:.1f} fuel (+{hours:.1f}h of life)")
        return fuel

    async def recharge(
        self,
        agent_id: uuid.UUID,
        fuel_amount: float,
        reason: str = EnergyReason.MANUAL_TOPUP,
    ) -> AgentDB:
        """Add fuel to a living agent."""
        if fuel_amount <= 0:
            raise ValueError("fuel_amount must be positive")
        agent = await self._load(agent_id)
        if agent.status in ("dead", "closed"):
            raise ValueError(f"Cannot recharge a {agent.status} agent")
        await self._log_energy_change(agent, fuel_amount, reason)
        return agent

    async def apply_blood_pack(self, user_id: uuid.UUID, units: float) -> Optional[AgentDB]:
        """Top up the user's active agent with the least fuel."""
        target = await self.agent_repo.get_weakest_active(user_id)
        if target is None:
            return None
        return await self.recharge(target.id, units, reason=EnergyReason.BLOOD_PACK)

    # =========================================================================
    # Death
    # =========================================================================

    async def check_death(self, agent_id: uuid.UUID) -> bool:
        """Kill the agent if it is below the floor; True if it is dead."""
        agent = await self._load(agent_id)
        if agent.status == "dead":
            return True
        if agent.status == "closed":
            return False
        if (agent.energy_balance or 0.0) < self.settings.min_energy_to_live:
            await self.death_sequence(agent.id)
            return True
        return False

    async def death_sequence(self, agent_id: uuid.UUID) -> bool:
        """
        Zero fuel, cancel open trades, return capital and mark the agent dead.

        Idempotent: returns False (and changes nothing) if the agent is
        already dead or the guarded status transition loses a race.
        """
        agent = await self._load(agent_id)
        if agent.status == "dead":
            return False

        energy_before = agent.energy_balance or 0.0
        capital = agent.capital_balance or 0.0

        transitioned = await self.agent_repo.transition_status(
            agent.id,
            from_statuses=("draft", "active", "paused"),
            to_status="dead",
            energy_balance=0.0,
            capital_balance=0.0,
            died_at=datetime.now(UTC),
        )
        if not transitioned:
            logger.info(f"Death sequence for agent {agent.id} skipped (status={agent.status})")
            return False

        if energy_before > 0:
            await self.energy_repo.create(
                agent_id=agent.id,
                amount=-energy_before,
                reason=EnergyReason.DEATH_DRAIN,
                balance_before=energy_before,
                balance_after=0.0,
            )

        cancelled = await self.trade_repo.cancel_open(agent.id)

        if capital > 0:
            await self.ledger.credit(
                agent.user_id,
                capital,
                TxType.CAPITAL_RETURN,
                agent_id=agent.id,
                description=f"Capital returned from dead agent {agent.name}",
            )

        self.metrics.agent_deaths_total.inc()
        logger.warning(
            f"Agent {agent.id} died: returned ${capital:.2f} capital, "
            f"cancelled {cancelled} open trades"
        )
        if self.side_effects:
            self.side_effects.emit_event(
                "agent_died",
                agent.id,
                {"capital_returned": capital, "trades_cancelled": cancelled},
            )
        return True
