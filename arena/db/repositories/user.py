"""User repository for database operations"""

import secrets
import uuid
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..models import UserDB


class UserRepository:
    """Repository for wallet users and their free balance"""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(
        self,
        wallet_address: str,
        referred_by: Optional[uuid.UUID] = None,
    ) -> UserDB:
        user = UserDB(
            wallet_address=wallet_address.lower(),
            referral_code=secrets.token_hex(4).upper(),
            referred_by=referred_by,
        )
        self.session.add(user)
        await self.session.flush()
        await self.session.refresh(user)
        return user

    async def get_by_id(self, user_id: uuid.UUID) -> Optional[UserDB]:
        result = await self.session.execute(
            select(UserDB).where(UserDB.id == user_id)
        )
        return result.scalar_one_or_none()

    async def get_by_wallet(self, wallet_address: str) -> Optional[UserDB]:
        result = await self.session.execute(
            select(UserDB).where(UserDB.wallet_address == wallet_address.lower())
        )
        return result.scalar_one_or_none()

    async def get_or_create(self, wallet_address: str) -> UserDB:
        user = await self.get_by_wallet(wallet_address)
        if user:
            return user
        return await self.create(wallet_address)

    async def get_for_update(self, user_id: uuid.UUID) -> Optional[UserDB]:
        """Load the user row locked for the rest of the transaction."""
        result = await self.session.execute(
            select(UserDB)
            .where(UserDB.id == user_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def adjust_balance(self, user: UserDB, delta: float) -> tuple[float, float]:
        """
        Apply a signed delta to the free balance.

        The caller must hold the row (get_for_update) and check for
        overdraft first. Returns (balance_before, balance_after).
        """
        before = user.balance_usdt or 0.0
        user.balance_usdt = before + delta
        await self.session.flush()
        return before, user.balance_usdt
