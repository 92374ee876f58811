"""
Third-party investments into an agent's capital pool.

share_pct is fixed at entry as amount / pool-after-deposit. Withdrawal
values the stake against the current pool and charges the exit fee.
Both operations mutate agent capital and run under the agent lock,
committing before it is released.
"""

import logging
import uuid
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from ..core.config import Settings, get_settings
from ..core.errors import (
    AgentNotFoundError,
    AppError,
    BelowMinimumSizeError,
    ErrorCode,
    InvalidStateTransitionError,
)
from ..db.models import InvestmentDB
from ..db.repositories import AgentRepository, InvestmentRepository
from .ledger_service import LedgerService, TxType
from .locks import AgentLockManager

logger = logging.getLogger(__name__)


@dataclass
class WithdrawalResult:
    investment_id: uuid.UUID
    gross_value: float
    exit_fee: float
    net_amount: float


class InvestmentService:
    """
    Usage:
        service = InvestmentService(session, locks)
        investment = await service.invest(user.id, agent.id, 100.0)
        result = await service.withdraw(user.id, investment.id)
    """

    MIN_INVESTMENT_USD = 1.0

    def __init__(
        self,
        session: AsyncSession,
        locks: AgentLockManager,
        settings: Optional[Settings] = None,
    ):
        self.session = session
        self.locks = locks
        self.settings = settings or get_settings()
        self.agent_repo = AgentRepository(session)
        self.investment_repo = InvestmentRepository(session)
        self.ledger = LedgerService(session)

    async def invest(
        self,
        user_id: uuid.UUID,
        agent_id: uuid.UUID,
        amount: float,
        tx_hash: Optional[str] = None,
    ) -> InvestmentDB:
        """
        Add to the agent's pool.

        With tx_hash the deposit was paid on-chain and the free balance is
        left alone; the hash is deduplicated through the ledger.
        """
        if amount < self.MIN_INVESTMENT_USD:
            raise BelowMinimumSizeError(amount, self.MIN_INVESTMENT_USD)

        async with self.locks.hold(agent_id):
            agent = await self.agent_repo.get_for_update(agent_id)
            if agent is None:
                raise AgentNotFoundError(agent_id)
            if agent.status not in ("active", "paused"):
                raise InvalidStateTransitionError("agent", agent.status, "invested")

            await self.ledger.ensure_unprocessed(tx_hash)

            pool_before = agent.capital_balance or 0.0
            pool_after = pool_before + amount
            share_pct = amount / pool_after * 100

            if tx_hash:
                await self.ledger.record(
                    TxType.INVESTMENT,
                    -amount,
                    user_id=user_id,
                    agent_id=agent_id,
                    tx_hash=tx_hash,
                    description=f"Invested ${amount:.2f} into agent pool (on-chain)",
                )
            else:
                await self.ledger.debit(
                    user_id,
                    amount,
                    TxType.INVESTMENT,
                    agent_id=agent_id,
                    description=f"Invested ${amount:.2f} into agent pool",
                )

            agent.capital_balance = pool_after
            investment = await self.investment_repo.create(
                user_id=user_id,
                agent_id=agent_id,
                amount=amount,
                share_pct=share_pct,
                tx_hash=tx_hash,
            )
            await self.session.commit()

        logger.info(
            f"User {user_id} invested ${amount:.2f} in agent {agent_id}: "
            f"pool {pool_before:.2f} -> {pool_after:.2f}, share {share_pct:.4f}%"
        )
        return investment

    async def withdraw(self, user_id: uuid.UUID, investment_id: uuid.UUID) -> WithdrawalResult:
        investment = await self.investment_repo.get_by_id(investment_id, user_id=user_id)
        if investment is None:
            raise AppError(
                ErrorCode.AUTHZ_RESOURCE_NOT_FOUND,
                "Investment not found",
                404,
                {"investment_id": str(investment_id)},
            )
        if investment.status != "active":
            raise InvalidStateTransitionError("investment", investment.status, "withdrawn")

        async with self.locks.hold(investment.agent_id):
            agent = await self.agent_repo.get_for_update(investment.agent_id)
            if agent is None:
                raise AgentNotFoundError(investment.agent_id)

            pool = agent.capital_balance or 0.0
            value = investment.share_pct / 100 * pool
            fee = value * self.settings.investment_exit_fee_pct / 100
            net = value - fee

            if not await self.investment_repo.mark_withdrawn(investment.id, net, fee):
                raise InvalidStateTransitionError("investment", "withdrawn", "withdrawn")

            agent.capital_balance = max(0.0, pool - value)
            await self.ledger.credit(
                user_id,
                net,
                TxType.INVESTMENT_WITHDRAWAL,
                agent_id=agent.id,
                description=(
                    f"Withdrew investment: ${net:.2f} "
                    f"({self.settings.investment_exit_fee_pct:g}% fee: ${fee:.2f})"
                ),
            )
            if fee > 0:
                await self.ledger.record(
                    TxType.PLATFORM_FEE,
                    fee,
                    agent_id=agent.id,
                    description=f"Exit fee on investment {investment.id}",
                )
            await self.session.commit()

        logger.info(
            f"Investment {investment.id} withdrawn: value ${value:.2f}, fee ${fee:.2f}, "
            f"agent {agent.id} pool {pool:.2f} -> {agent.capital_balance:.2f}"
        )
        return WithdrawalResult(investment.id, value, fee, net)

    async def list_for_user(self, user_id: uuid.UUID) -> list[InvestmentDB]:
        return await self.investment_repo.get_by_user(user_id)
