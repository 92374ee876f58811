"""Ledger repositories: money transactions, fuel logs and lifecycle events.

All three tables are append-only; nothing here updates or deletes rows.
"""

import uuid
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..models import EnergyLogDB, LifecycleEventDB, ReferralEarningDB, TransactionDB


class TransactionRepository:
    """Repository for ledger transactions"""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(
        self,
        type: str,
        amount: float,
        user_id: Optional[uuid.UUID] = None,
        agent_id: Optional[uuid.UUID] = None,
        tx_hash: Optional[str] = None,
        chain: Optional[str] = None,
        balance_before: Optional[float] = None,
        balance_after: Optional[float] = None,
        description: Optional[str] = None,
        status: str = "confirmed",
        token: str = "USDC",
    ) -> TransactionDB:
        tx = TransactionDB(
            type=type,
            amount=amount,
            user_id=user_id,
            agent_id=agent_id,
            tx_hash=tx_hash,
            chain=chain,
            balance_before=balance_before,
            balance_after=balance_after,
            description=description,
            status=status,
            token=token,
        )
        self.session.add(tx)
        await self.session.flush()
        return tx

    async def get_by_tx_hash(self, tx_hash: str) -> Optional[TransactionDB]:
        result = await self.session.execute(
            select(TransactionDB).where(TransactionDB.tx_hash == tx_hash)
        )
        return result.scalar_one_or_none()

    async def get_by_user(
        self,
        user_id: uuid.UUID,
        limit: int = 50,
        offset: int = 0,
    ) -> list[TransactionDB]:
        result = await self.session.execute(
            select(TransactionDB)
            .where(TransactionDB.user_id == user_id)
            .order_by(TransactionDB.created_at.desc())
            .offset(offset)
            .limit(limit)
        )
        return list(result.scalars().all())

    async def get_by_agent(self, agent_id: uuid.UUID, type: Optional[str] = None) -> list[TransactionDB]:
        query = select(TransactionDB).where(TransactionDB.agent_id == agent_id)
        if type:
            query = query.where(TransactionDB.type == type)
        result = await self.session.execute(query.order_by(TransactionDB.created_at.asc()))
        return list(result.scalars().all())

    async def create_referral_earning(
        self,
        referrer_id: uuid.UUID,
        referred_user_id: uuid.UUID,
        energy_amount: float,
        agent_id: Optional[uuid.UUID] = None,
        trade_id: Optional[uuid.UUID] = None,
    ) -> ReferralEarningDB:
        earning = ReferralEarningDB(
            referrer_id=referrer_id,
            referred_user_id=referred_user_id,
            energy_amount=energy_amount,
            agent_id=agent_id,
            trade_id=trade_id,
        )
        self.session.add(earning)
        await self.session.flush()
        return earning


class EnergyLogRepository:
    """Repository for fuel deltas"""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(
        self,
        agent_id: uuid.UUID,
        amount: float,
        reason: str,
        balance_before: float,
        balance_after: float,
    ) -> EnergyLogDB:
        log = EnergyLogDB(
            agent_id=agent_id,
            amount=amount,
            reason=reason,
            balance_before=balance_before,
            balance_after=balance_after,
        )
        self.session.add(log)
        await self.session.flush()
        return log

    async def get_by_agent(self, agent_id: uuid.UUID, limit: int = 100) -> list[EnergyLogDB]:
        result = await self.session.execute(
            select(EnergyLogDB)
            .where(EnergyLogDB.agent_id == agent_id)
            .order_by(EnergyLogDB.created_at.desc())
            .limit(limit)
        )
        return list(result.scalars().all())


class LifecycleEventRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(
        self,
        type: str,
        agent_id: Optional[uuid.UUID] = None,
        data: Optional[dict] = None,
    ) -> LifecycleEventDB:
        event = LifecycleEventDB(type=type, agent_id=agent_id, data=data)
        self.session.add(event)
        await self.session.flush()
        return event

    async def get_recent(self, limit: int = 50) -> list[LifecycleEventDB]:
        result = await self.session.execute(
            select(LifecycleEventDB).order_by(LifecycleEventDB.created_at.desc()).limit(limit)
        )
        return list(result.scalars().all())
