"""
Payout requests: debit the free balance, then deliver USDC on BSC.

A request moves pending -> bridging -> sending -> sent, or ends in failed
with the debited amount refunded. The signed transfer is committed before
it is broadcast, so processing a request again rebroadcasts that same
transaction instead of signing a new one.
"""

import logging
import uuid
from typing import Optional

from eth_utils import is_address
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..chain import BridgeService, ChainError
from ..core.errors import AppError, ErrorCode, PayoutFailedError, PayoutPendingError
from ..db.models import PayoutRequestDB
from ..db.repositories import PayoutRequestRepository
from ..monitoring.metrics import get_metrics_collector
from .ledger_service import LedgerService, TxType

logger = logging.getLogger(__name__)

TERMINAL_STATUSES = ("sent", "failed")
MIN_PAYOUT_USD = 1.0
TRANSFER_CONFIRMATIONS = 3


class PayoutService:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        bridge: BridgeService,
    ):
        self.session_factory = session_factory
        self.bridge = bridge
        self._inflight: set[str] = set()

    # =========================================================================
    # Requests
    # =========================================================================

    async def create_request(
        self,
        user_id: uuid.UUID,
        to_address: str,
        amount: float,
        request_id: Optional[str] = None,
    ) -> PayoutRequestDB:
        """
        Reserve funds for a payout.

        Re-submitting an existing request_id returns the stored request
        without debiting again.
        """
        if not is_address(to_address):
            raise AppError(ErrorCode.VALIDATION_ERROR, "Invalid destination address", 400)
        if amount < MIN_PAYOUT_USD:
            raise AppError(
                ErrorCode.BELOW_MINIMUM_SIZE,
                f"Minimum payout is ${MIN_PAYOUT_USD:.2f}",
                400,
            )

        request_id = request_id or uuid.uuid4().hex
        async with self.session_factory() as session:
            repo = PayoutRequestRepository(session)
            existing = await repo.get_by_request_id(request_id)
            if existing is not None:
                if existing.user_id != user_id:
                    raise AppError(ErrorCode.AUTHZ_FORBIDDEN, "Request id already in use", 409)
                return existing

            await LedgerService(session).debit(
                user_id,
                amount,
                TxType.PAYOUT,
                description=f"Payout {request_id} to {to_address}",
            )
            request = await repo.create(
                request_id=request_id,
                to_address=to_address,
                amount=amount,
                user_id=user_id,
            )
            await session.commit()
            logger.info(f"Payout {request_id} queued: {amount:.2f} USDC to {to_address}")
            return request

    async def get_request(self, request_id: str) -> Optional[PayoutRequestDB]:
        async with self.session_factory() as session:
            return await PayoutRequestRepository(session).get_by_request_id(request_id)

    # =========================================================================
    # Processing
    # =========================================================================

    async def process(self, request_id: str) -> PayoutRequestDB:
        """
        Drive a request as far as it can go.

        Returns the request in its latest state. A pending outcome keeps the
        current status so the next attempt resumes from there.
        """
        if request_id in self._inflight:
            raise AppError(ErrorCode.INVALID_STATE, "Payout is already being processed", 409)
        self._inflight.add(request_id)
        try:
            return await self._process(request_id)
        finally:
            self._inflight.discard(request_id)

    async def _process(self, request_id: str) -> PayoutRequestDB:
        metrics = get_metrics_collector()
        async with self.session_factory() as session:
            repo = PayoutRequestRepository(session)
            request = await repo.get_by_request_id(request_id, for_update=True)
            if request is None:
                raise AppError(
                    ErrorCode.AUTHZ_RESOURCE_NOT_FOUND,
                    "Payout request not found",
                    404,
                    {"request_id": request_id},
                )
            if request.status in TERMINAL_STATUSES:
                return request

            request.attempts = (request.attempts or 0) + 1
            await session.commit()

            try:
                if request.raw_tx:
                    tx_hash = await self._resume_signed(request)
                    bridged = False
                else:
                    await repo.set_status(request, "bridging")
                    await session.commit()
                    bridged = await self.bridge.ensure_bsc_funds(request.amount)

                    await repo.set_status(request, "sending")
                    await session.commit()

                    async def persist_signed(raw_tx: str, signed_hash: str) -> None:
                        await repo.set_status(request, "sending", raw_tx=raw_tx, tx_hash=signed_hash)
                        await session.commit()

                    tx_hash = await self.bridge.transfer(
                        request.to_address, request.amount, on_signed=persist_signed
                    )
            except PayoutPendingError as e:
                logger.warning(f"Payout {request_id} still in flight at {e.stage}: {e.message}")
                await repo.set_status(request, request.status, error=e.message)
                await session.commit()
                metrics.payouts_total.labels(result="pending").inc()
                return request
            except ChainError as e:
                logger.warning(f"Payout {request_id} interrupted by chain error: {e.message}")
                await repo.set_status(request, request.status, error=e.message)
                await session.commit()
                metrics.payouts_total.labels(result="pending").inc()
                return request
            except PayoutFailedError as e:
                logger.error(f"Payout {request_id} failed at {e.stage}: {e.message}")
                await self._fail(session, request, e.message)
                metrics.payouts_total.labels(result="failed").inc()
                return request

            await repo.set_status(request, "sent", tx_hash=tx_hash, error=None)
            await session.commit()
            metrics.payouts_total.labels(result="bridged" if bridged else "direct").inc()
            logger.info(f"Payout {request_id} sent: {tx_hash}")
            return request

    async def _resume_signed(self, request: PayoutRequestDB) -> str:
        """Rebroadcast the stored transfer and wait for its receipt."""
        bsc = self.bridge.bsc
        try:
            outcome = await bsc.send_raw_transaction(request.raw_tx)
        except ChainError as e:
            raise PayoutPendingError("transfer", f"Rebroadcast failed: {e.message}") from e

        try:
            return await self.bridge.confirm(bsc, request.tx_hash, TRANSFER_CONFIRMATIONS, "transfer")
        except PayoutPendingError:
            if outcome == "nonce_used":
                # Nonce consumed by another transaction and ours was never mined
                receipt = await bsc.get_receipt(request.tx_hash)
                if receipt is None:
                    raise PayoutFailedError(
                        "transfer", f"Transaction {request.tx_hash} was superseded"
                    )
            raise

    async def _fail(self, session: AsyncSession, request: PayoutRequestDB, error: str) -> None:
        repo = PayoutRequestRepository(session)
        await repo.set_status(request, "failed", error=error)
        if request.user_id is not None:
            await LedgerService(session).credit(
                request.user_id,
                request.amount,
                TxType.PAYOUT_REFUND,
                description=f"Refund of failed payout {request.request_id}",
            )
        await session.commit()
