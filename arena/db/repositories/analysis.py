"""Analysis log repository (AI audit trail)"""

import uuid
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..models import AnalysisLogDB


class AnalysisLogRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(
        self,
        agent_id: uuid.UUID,
        symbol: str,
        price: float,
        should_trade: bool = False,
        direction: Optional[str] = None,
        confidence: int = 0,
        reason: str = "",
        technical_summary: Optional[str] = None,
        sources: Optional[list] = None,
        error: Optional[str] = None,
    ) -> AnalysisLogDB:
        log = AnalysisLogDB(
            agent_id=agent_id,
            symbol=symbol,
            price=price,
            should_trade=should_trade,
            direction=direction,
            confidence=confidence,
            reason=reason,
            technical_summary=technical_summary,
            sources=sources,
            error=error,
        )
        self.session.add(log)
        await self.session.flush()
        return log

    async def get_latest(
        self,
        agent_id: uuid.UUID,
        symbol: Optional[str] = None,
    ) -> Optional[AnalysisLogDB]:
        query = select(AnalysisLogDB).where(AnalysisLogDB.agent_id == agent_id)
        if symbol:
            query = query.where(AnalysisLogDB.symbol == symbol)
        result = await self.session.execute(
            query.order_by(AnalysisLogDB.created_at.desc()).limit(1)
        )
        return result.scalar_one_or_none()
