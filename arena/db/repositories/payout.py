"""Payout request repository"""

import uuid
from datetime import UTC, datetime
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..models import PayoutRequestDB


class PayoutRequestRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(
        self,
        request_id: str,
        to_address: str,
        amount: float,
        user_id: Optional[uuid.UUID] = None,
        chain: str = "bsc",
    ) -> PayoutRequestDB:
        request = PayoutRequestDB(
            request_id=request_id,
            to_address=to_address,
            amount=amount,
            user_id=user_id,
            chain=chain,
            status="pending",
        )
        self.session.add(request)
        await self.session.flush()
        await self.session.refresh(request)
        return request

    async def get_by_request_id(
        self,
        request_id: str,
        for_update: bool = False,
    ) -> Optional[PayoutRequestDB]:
        query = select(PayoutRequestDB).where(PayoutRequestDB.request_id == request_id)
        if for_update:
            query = query.with_for_update().execution_options(populate_existing=True)
        result = await self.session.execute(query)
        return result.scalar_one_or_none()

    async def set_status(
        self,
        request: PayoutRequestDB,
        status: str,
        **values,
    ) -> PayoutRequestDB:
        request.status = status
        for key, value in values.items():
            setattr(request, key, value)
        if status in ("sent", "failed"):
            request.completed_at = datetime.now(UTC)
        await self.session.flush()
        return request
