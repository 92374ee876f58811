"""Ledger service: append-only transactions plus the users' free balance"""

import logging
import uuid
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from ..core.errors import (
    AppError,
    DuplicateTransactionError,
    ErrorCode,
    InsufficientBalanceError,
)
from ..db.models import TransactionDB, UserDB
from ..db.repositories import TransactionRepository, UserRepository

logger = logging.getLogger(__name__)


class TxType:
    """Ledger transaction types"""
    MINT = "mint"
    DEPOSIT = "deposit"
    ENERGY_PURCHASE = "energy_purchase"
    INVESTMENT = "investment"
    INVESTMENT_WITHDRAWAL = "investment_withdrawal"
    TRADE_PNL = "trade_pnl"
    CREATOR_FEE = "creator_fee"
    PLATFORM_FEE = "platform_fee"
    REFERRAL_FEE = "referral_fee"
    CREATOR_CLAIM = "creator_claim"
    CAPITAL_RETURN = "capital_return"
    CAPITAL_WITHDRAWAL = "capital_withdrawal"
    ENERGY_VAMPIRE = "energy_vampire"
    ENERGY_REFERRAL = "energy_referral"
    CLONE_FUEL_REFERRAL = "clone_fuel_referral"
    PAYOUT = "payout"
    PAYOUT_REFUND = "payout_refund"


class LedgerService:
    """
    Service for ledger entries and free-balance moves.

    Every balance change on a user goes through credit()/debit(), which lock
    the user row and write a transaction carrying the before/after snapshot.
    """

    def __init__(self, session: AsyncSession):
        self.session = session
        self.tx_repo = TransactionRepository(session)
        self.user_repo = UserRepository(session)

    # =========================================================================
    # Transactions
    # =========================================================================

    async def ensure_unprocessed(self, tx_hash: Optional[str]) -> None:
        """Raise if an external tx hash was already settled."""
        if tx_hash and await self.tx_repo.get_by_tx_hash(tx_hash):
            logger.warning(f"Rejected replay of tx {tx_hash}")
            raise DuplicateTransactionError(tx_hash)

    async def record(
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
    ) -> TransactionDB:
        await self.ensure_unprocessed(tx_hash)
        return await self.tx_repo.create(
            type=type,
            amount=amount,
            user_id=user_id,
            agent_id=agent_id,
            tx_hash=tx_hash,
            chain=chain,
            balance_before=balance_before,
            balance_after=balance_after,
            description=description,
        )

    async def get_user_transactions(
        self,
        user_id: uuid.UUID,
        limit: int = 50,
        offset: int = 0,
    ) -> list[TransactionDB]:
        return await self.tx_repo.get_by_user(user_id, limit=limit, offset=offset)

    # =========================================================================
    # Free balance
    # =========================================================================

    async def _locked_user(self, user_id: uuid.UUID) -> UserDB:
        user = await self.user_repo.get_for_update(user_id)
        if user is None:
            raise AppError(
                ErrorCode.AUTHZ_RESOURCE_NOT_FOUND,
                "User not found",
                404,
                {"user_id": str(user_id)},
            )
        return user

    async def credit(
        self,
        user_id: uuid.UUID,
        amount: float,
        type: str,
        agent_id: Optional[uuid.UUID] = None,
        description: Optional[str] = None,
        tx_hash: Optional[str] = None,
    ) -> TransactionDB:
        user = await self._locked_user(user_id)
        before, after = await self.user_repo.adjust_balance(user, amount)
        return await self.record(
            type=type,
            amount=amount,
            user_id=user_id,
            agent_id=agent_id,
            tx_hash=tx_hash,
            balance_before=before,
            balance_after=after,
            description=description,
        )

    async def debit(
        self,
        user_id: uuid.UUID,
        amount: float,
        type: str,
        agent_id: Optional[uuid.UUID] = None,
        description: Optional[str] = None,
    ) -> TransactionDB:
        """Debit the free balance; never lets it go below zero."""
        user = await self._locked_user(user_id)
        available = user.balance_usdt or 0.0
        if available < amount:
            raise InsufficientBalanceError(amount, available)
        before, after = await self.user_repo.adjust_balance(user, -amount)
        return await self.record(
            type=type,
            amount=-amount,
            user_id=user_id,
            agent_id=agent_id,
            balance_before=before,
            balance_after=after,
            description=description,
        )
