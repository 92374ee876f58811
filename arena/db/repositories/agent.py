"""Agent repository for database operations"""

import uuid
from datetime import UTC, datetime
from typing import Iterable, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..models import AgentDB


class AgentRepository:
    """Repository for Agent CRUD and guarded state changes"""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, **fields) -> AgentDB:
        agent = AgentDB(**fields)
        self.session.add(agent)
        await self.session.flush()
        await self.session.refresh(agent)
        return agent

    async def get_by_id(
        self,
        agent_id: uuid.UUID,
        user_id: Optional[uuid.UUID] = None,
    ) -> Optional[AgentDB]:
        """Get agent by ID, optionally filtered by owner"""
        query = select(AgentDB).where(AgentDB.id == agent_id)
        if user_id:
            query = query.where(AgentDB.user_id == user_id)
        result = await self.session.execute(query)
        return result.scalar_one_or_none()

    async def get_for_update(self, agent_id: uuid.UUID) -> Optional[AgentDB]:
        """
        Load the agent row locked FOR UPDATE.

        populate_existing makes sure balances already sitting in the
        identity map are refreshed from the locked row.
        """
        result = await self.session.execute(
            select(AgentDB)
            .where(AgentDB.id == agent_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_active_ids(self) -> list[uuid.UUID]:
        result = await self.session.execute(
            select(AgentDB.id).where(AgentDB.status == "active")
        )
        return list(result.scalars().all())

    async def get_by_user(
        self,
        user_id: uuid.UUID,
        status: Optional[str] = None,
    ) -> list[AgentDB]:
        query = select(AgentDB).where(AgentDB.user_id == user_id)
        if status:
            query = query.where(AgentDB.status == status)
        result = await self.session.execute(query.order_by(AgentDB.created_at.desc()))
        return list(result.scalars().all())

    async def get_weakest_active(self, user_id: uuid.UUID) -> Optional[AgentDB]:
        """The user's active agent closest to starvation."""
        result = await self.session.execute(
            select(AgentDB)
            .where(AgentDB.user_id == user_id, AgentDB.status == "active")
            .order_by(AgentDB.energy_balance.asc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def transition_status(
        self,
        agent_id: uuid.UUID,
        from_statuses: Iterable[str],
        to_status: str,
        **values,
    ) -> bool:
        """
        Status-guarded transition.

        Returns False when the agent was no longer in one of from_statuses,
        so two racing callers cannot both perform the same transition.
        """
        stmt = (
            update(AgentDB)
            .where(AgentDB.id == agent_id, AgentDB.status.in_(list(from_statuses)))
            .values(status=to_status, updated_at=datetime.now(UTC), **values)
        )
        result = await self.session.execute(stmt)
        await self.session.flush()
        return result.rowcount > 0

    async def update_metrics(
        self,
        agent_id: uuid.UUID,
        total_trades: int,
        total_pnl: float,
        win_rate: float,
    ) -> None:
        await self.session.execute(
            update(AgentDB)
            .where(AgentDB.id == agent_id)
            .values(total_trades=total_trades, total_pnl=total_pnl, win_rate=win_rate)
        )
        await self.session.flush()
