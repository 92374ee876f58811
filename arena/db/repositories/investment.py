"""Investment repository for database operations"""

import uuid
from datetime import UTC, datetime
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..models import InvestmentDB


class InvestmentRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(
        self,
        user_id: uuid.UUID,
        agent_id: uuid.UUID,
        amount: float,
        share_pct: float,
        tx_hash: Optional[str] = None,
    ) -> InvestmentDB:
        investment = InvestmentDB(
            user_id=user_id,
            agent_id=agent_id,
            amount=amount,
            share_pct=share_pct,
            tx_hash=tx_hash,
            status="active",
        )
        self.session.add(investment)
        await self.session.flush()
        await self.session.refresh(investment)
        return investment

    async def get_by_id(
        self,
        investment_id: uuid.UUID,
        user_id: Optional[uuid.UUID] = None,
    ) -> Optional[InvestmentDB]:
        query = select(InvestmentDB).where(InvestmentDB.id == investment_id)
        if user_id:
            query = query.where(InvestmentDB.user_id == user_id)
        result = await self.session.execute(query)
        return result.scalar_one_or_none()

    async def get_by_user(self, user_id: uuid.UUID) -> list[InvestmentDB]:
        result = await self.session.execute(
            select(InvestmentDB)
            .where(InvestmentDB.user_id == user_id)
            .order_by(InvestmentDB.created_at.desc())
        )
        return list(result.scalars().all())

    async def mark_withdrawn(
        self,
        investment_id: uuid.UUID,
        withdrawn_amount: float,
        exit_fee: float,
    ) -> bool:
        """Guarded active -> withdrawn; False if already withdrawn."""
        result = await self.session.execute(
            update(InvestmentDB)
            .where(InvestmentDB.id == investment_id, InvestmentDB.status == "active")
            .values(
                status="withdrawn",
                withdrawn_amount=withdrawn_amount,
                exit_fee=exit_fee,
                withdrawn_at=datetime.now(UTC),
            )
        )
        await self.session.flush()
        return result.rowcount > 0
