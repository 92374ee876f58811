"""
Payout routes.

A payout is accepted immediately and delivered in the background; bridging
can take minutes, so clients poll GET /payouts/{request_id}.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Request, status
from pydantic import BaseModel, Field

from ...core.dependencies import CurrentUserDep, EngineDep
from ...core.errors import AppError, ErrorCode
from ...db.models import PayoutRequestDB
from ...services.payout_service import PayoutService

router = APIRouter(prefix="/payouts", tags=["Payouts"])
logger = logging.getLogger(__name__)


class PayoutCreate(BaseModel):
    to_address: str = Field(..., min_length=42, max_length=42)
    amount_usd: float = Field(..., gt=0)
    request_id: Optional[str] = Field(default=None, max_length=100)


class PayoutResponse(BaseModel):
    request_id: str
    status: str
    amount: float
    to_address: str
    chain: str
    tx_hash: Optional[str] = None
    error: Optional[str] = None
    attempts: int = 0


def payout_response(request: PayoutRequestDB) -> PayoutResponse:
    return PayoutResponse(
        request_id=request.request_id,
        status=request.status,
        amount=request.amount,
        to_address=request.to_address,
        chain=request.chain,
        tx_hash=request.tx_hash,
        error=request.error,
        attempts=request.attempts or 0,
    )


async def schedule_delivery(request: Request, engine, payout: PayoutRequestDB) -> None:
    """Enqueue delivery on ARQ, or run it in-process when no queue is available."""
    if payout.status in ("sent", "failed"):
        return
    task_queue = getattr(request.app.state, "task_queue", None)
    if task_queue is None or not await task_queue.enqueue_payout(payout.request_id):
        engine.dispatcher.submit(
            f"payout:{payout.request_id}", engine.payouts.process, payout.request_id
        )


def _payouts(engine) -> PayoutService:
    if engine.payouts is None:
        raise AppError(ErrorCode.SERVICE_UNAVAILABLE, "Payouts are not configured", 503)
    return engine.payouts


@router.post("", response_model=PayoutResponse, status_code=status.HTTP_202_ACCEPTED)
async def create_payout(
    data: PayoutCreate,
    request: Request,
    user: CurrentUserDep,
    engine: EngineDep,
):
    """Debit the free balance and queue delivery on BSC."""
    payouts = _payouts(engine)
    payout = await payouts.create_request(
        user.id, data.to_address, data.amount_usd, request_id=data.request_id
    )
    await schedule_delivery(request, engine, payout)
    return payout_response(payout)


@router.get("/{request_id}", response_model=PayoutResponse)
async def get_payout(request_id: str, user: CurrentUserDep, engine: EngineDep):
    payout = await _payouts(engine).get_request(request_id)
    if payout is None or payout.user_id != user.id:
        raise AppError(
            ErrorCode.AUTHZ_RESOURCE_NOT_FOUND,
            "Payout request not found",
            404,
            {"request_id": request_id},
        )
    return payout_response(payout)
