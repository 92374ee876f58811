"""Investment routes - listing and withdrawing pool shares."""

import uuid

from fastapi import APIRouter
from pydantic import BaseModel

from ...core.dependencies import CurrentUserDep, DbSessionDep, EngineDep
from ...services.investment_service import InvestmentService
from .agents import InvestmentResponse, investment_response

router = APIRouter(prefix="/investments", tags=["Investments"])


class WithdrawalResponse(BaseModel):
    investment_id: str
    gross_value: float
    exit_fee: float
    net_amount: float


@router.get("", response_model=list[InvestmentResponse])
async def list_investments(user: CurrentUserDep, db: DbSessionDep, engine: EngineDep):
    service = InvestmentService(db, engine.locks, engine.settings)
    return [investment_response(i) for i in await service.list_for_user(user.id)]


@router.post("/{investment_id}/withdraw", response_model=WithdrawalResponse)
async def withdraw_investment(
    investment_id: uuid.UUID,
    user: CurrentUserDep,
    db: DbSessionDep,
    engine: EngineDep,
):
    """Redeem the share at the current pool value, minus the exit fee."""
    service = InvestmentService(db, engine.locks, engine.settings)
    result = await service.withdraw(user.id, investment_id)
    return WithdrawalResponse(
        investment_id=str(result.investment_id),
        gross_value=result.gross_value,
        exit_fee=result.exit_fee,
        net_amount=result.net_amount,
    )
