"""Trade repository for database operations"""

import uuid
from datetime import UTC, datetime
from typing import Optional

from sqlalchemy import case, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..models import TradeDB


class TradeRepository:
    """Repository for agent trades"""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(
        self,
        agent_id: uuid.UUID,
        symbol: str,
        side: str,
        size: float,
        size_usd: float,
        leverage: int,
        entry_price: float,
        exchange_order_id: Optional[str] = None,
        trigger_reason: Optional[str] = None,
        trigger_data: Optional[dict] = None,
    ) -> TradeDB:
        trade = TradeDB(
            agent_id=agent_id,
            symbol=symbol,
            side=side,
            size=size,
            size_usd=size_usd,
            leverage=leverage,
            entry_price=entry_price,
            exchange_order_id=exchange_order_id,
            trigger_reason=trigger_reason,
            trigger_data=trigger_data,
            status="open",
        )
        self.session.add(trade)
        await self.session.flush()
        await self.session.refresh(trade)
        return trade

    async def get_by_id(self, trade_id: uuid.UUID) -> Optional[TradeDB]:
        result = await self.session.execute(
            select(TradeDB).where(TradeDB.id == trade_id)
        )
        return result.scalar_one_or_none()

    async def get_open(self, agent_id: Optional[uuid.UUID] = None) -> list[TradeDB]:
        """Open trades, for one agent or across the whole platform."""
        query = select(TradeDB).where(TradeDB.status == "open")
        if agent_id:
            query = query.where(TradeDB.agent_id == agent_id)
        result = await self.session.execute(query.order_by(TradeDB.opened_at.asc()))
        return list(result.scalars().all())

    async def count_opened_since(self, agent_id: uuid.UUID, since: datetime) -> int:
        result = await self.session.execute(
            select(func.count(TradeDB.id)).where(
                TradeDB.agent_id == agent_id,
                TradeDB.opened_at >= since,
            )
        )
        return result.scalar_one()

    async def close(self, trade_id: uuid.UUID, **values) -> bool:
        """
        Guarded open -> closed transition carrying every settlement field.

        Returns False when the trade was already closed or cancelled; this
        is what makes settlement exactly-once per trade id.
        """
        stmt = (
            update(TradeDB)
            .where(TradeDB.id == trade_id, TradeDB.status == "open")
            .values(status="closed", closed_at=datetime.now(UTC), **values)
        )
        result = await self.session.execute(stmt)
        await self.session.flush()
        return result.rowcount > 0

    async def cancel_open(self, agent_id: uuid.UUID) -> int:
        stmt = (
            update(TradeDB)
            .where(TradeDB.agent_id == agent_id, TradeDB.status == "open")
            .values(status="cancelled", closed_at=datetime.now(UTC))
        )
        result = await self.session.execute(stmt)
        await self.session.flush()
        return result.rowcount

    async def get_closed_stats(self, agent_id: uuid.UUID) -> tuple[int, float, int]:
        """(closed trade count, summed net pnl, winning trade count)"""
        result = await self.session.execute(
            select(
                func.count(TradeDB.id),
                func.coalesce(func.sum(TradeDB.net_pnl), 0.0),
                func.coalesce(func.sum(case((TradeDB.net_pnl > 0, 1), else_=0)), 0),
            ).where(TradeDB.agent_id == agent_id, TradeDB.status == "closed")
        )
        count, total_pnl, wins = result.one()
        return int(count), float(total_pnl), int(wins)
