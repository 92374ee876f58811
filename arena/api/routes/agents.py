"""
Agent routes - minting, status control, on-demand checks and the live feed.
"""

import logging
import uuid
from typing import Any, Optional

from fastapi import APIRouter, Request, status
from pydantic import BaseModel, Field, ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from ...core.circuit_breaker import CircuitBreakerOpen
from ...core.dependencies import CurrentUserDep, DbSessionDep, EngineDep, RateLimitMonitorDep
from ...core.errors import AppError, ErrorCode, InvalidStateTransitionError
from ...db.models import AgentDB, InvestmentDB
from ...db.repositories import AgentRepository, AnalysisLogRepository, TradeRepository
from ...models.strategy import AgentTier, StrategyRules
from ...services.agent_service import AgentService
from ...services.engine import ArenaEngine
from ...services.investment_service import InvestmentService
from ...traders.base import TradeError, display_symbol
from .payouts import payout_response, schedule_delivery

router = APIRouter(prefix="/agents", tags=["Agents"])
logger = logging.getLogger(__name__)

FEED_CACHE_TTL = 10.0
FEED_CANDLES = 6


# ==================== Request / Response Models ====================

class MintRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    prompt: str = Field(default="", max_length=4000)
    rules: dict[str, Any] = Field(default_factory=dict)
    amount_usd: float = Field(..., gt=0)
    tier: AgentTier = AgentTier.SNIPER
    tx_hash: Optional[str] = None
    clone_parent_id: Optional[uuid.UUID] = None


class AmountRequest(BaseModel):
    amount_usd: float = Field(..., gt=0)
    tx_hash: Optional[str] = None


class CapitalWithdrawRequest(BaseModel):
    amount_usd: float = Field(..., gt=0)
    # Deliver to the creator's wallet on BSC; otherwise it stays in the free balance
    payout: bool = True
    request_id: Optional[str] = Field(default=None, max_length=100)


class TierRequest(BaseModel):
    tier: AgentTier


class AgentResponse(BaseModel):
    id: str
    name: str
    status: str
    tier: str
    rules: dict
    allocated_funds: float
    capital_balance: float
    energy_balance: float
    burn_rate_per_hour: float
    creator_earnings: float
    total_trades: int
    total_pnl: float
    win_rate: float
    clone_parent_id: Optional[str] = None
    died_at: Optional[str] = None
    created_at: str


class InvestmentResponse(BaseModel):
    id: str
    agent_id: str
    amount: float
    share_pct: float
    status: str
    created_at: str


def _agent_response(agent: AgentDB) -> AgentResponse:
    return AgentResponse(
        id=str(agent.id),
        name=agent.name,
        status=agent.status,
        tier=agent.tier,
        rules=StrategyRules.from_stored(agent.strategy_rules).to_stored(),
        allocated_funds=agent.allocated_funds or 0.0,
        capital_balance=agent.capital_balance or 0.0,
        energy_balance=agent.energy_balance or 0.0,
        burn_rate_per_hour=agent.burn_rate_per_hour or 0.0,
        creator_earnings=agent.creator_earnings or 0.0,
        total_trades=agent.total_trades or 0,
        total_pnl=agent.total_pnl or 0.0,
        win_rate=agent.win_rate or 0.0,
        clone_parent_id=str(agent.clone_parent_id) if agent.clone_parent_id else None,
        died_at=agent.died_at.isoformat() if agent.died_at else None,
        created_at=agent.created_at.isoformat(),
    )


def investment_response(investment: InvestmentDB) -> InvestmentResponse:
    return InvestmentResponse(
        id=str(investment.id),
        agent_id=str(investment.agent_id),
        amount=investment.amount,
        share_pct=investment.share_pct,
        status=investment.status,
        created_at=investment.created_at.isoformat(),
    )


def _service(db: AsyncSession, engine: ArenaEngine) -> AgentService:
    return AgentService(db, engine.locks, engine.side_effects, engine.settings)


# ==================== Lifecycle ====================

@router.post("", response_model=AgentResponse, status_code=status.HTTP_201_CREATED)
async def mint_agent(
    data: MintRequest,
    user: CurrentUserDep,
    db: DbSessionDep,
    engine: EngineDep,
):
    """Mint a new agent from a deposit (free balance or on-chain tx)."""
    try:
        rules = StrategyRules.from_stored(data.rules)
    except ValidationError as e:
        raise AppError(
            ErrorCode.VALIDATION_ERROR,
            "Invalid strategy rules",
            status.HTTP_422_UNPROCESSABLE_ENTITY,
            {"errors": e.errors(include_url=False, include_context=False)},
        )

    agent = await _service(db, engine).mint_agent(
        user.id,
        data.name,
        data.prompt,
        rules,
        data.amount_usd,
        tier=data.tier,
        tx_hash=data.tx_hash,
        clone_parent_id=data.clone_parent_id,
    )
    return _agent_response(agent)


@router.get("", response_model=list[AgentResponse])
async def list_agents(user: CurrentUserDep, db: DbSessionDep):
    agents = await AgentRepository(db).get_by_user(user.id)
    return [_agent_response(a) for a in agents]


@router.get("/{agent_id}", response_model=AgentResponse)
async def get_agent(agent_id: uuid.UUID, user: CurrentUserDep, db: DbSessionDep, engine: EngineDep):
    return _agent_response(await _service(db, engine).get_owned(agent_id, user.id))


@router.post("/{agent_id}/pause", response_model=AgentResponse)
async def pause_agent(agent_id: uuid.UUID, user: CurrentUserDep, db: DbSessionDep, engine: EngineDep):
    return _agent_response(await _service(db, engine).pause(agent_id, user.id))


@router.post("/{agent_id}/activate", response_model=AgentResponse)
async def activate_agent(agent_id: uuid.UUID, user: CurrentUserDep, db: DbSessionDep, engine: EngineDep):
    return _agent_response(await _service(db, engine).activate(agent_id, user.id))


@router.post("/{agent_id}/close", response_model=AgentResponse)
async def close_agent(agent_id: uuid.UUID, user: CurrentUserDep, db: DbSessionDep, engine: EngineDep):
    return _agent_response(await _service(db, engine).close(agent_id, user.id))


@router.post("/{agent_id}/tier", response_model=AgentResponse)
async def upgrade_tier(
    agent_id: uuid.UUID,
    data: TierRequest,
    user: CurrentUserDep,
    db: DbSessionDep,
    engine: EngineDep,
):
    return _agent_response(await _service(db, engine).upgrade_tier(agent_id, user.id, data.tier))


# ==================== Funds ====================

@router.post("/{agent_id}/recharge", response_model=AgentResponse)
async def recharge_agent(
    agent_id: uuid.UUID,
    data: AmountRequest,
    user: CurrentUserDep,
    db: DbSessionDep,
    engine: EngineDep,
):
    agent = await _service(db, engine).recharge(agent_id, user.id, data.amount_usd, tx_hash=data.tx_hash)
    return _agent_response(agent)


@router.post("/{agent_id}/invest", response_model=InvestmentResponse, status_code=status.HTTP_201_CREATED)
async def invest_in_agent(
    agent_id: uuid.UUID,
    data: AmountRequest,
    user: CurrentUserDep,
    db: DbSessionDep,
    engine: EngineDep,
):
    service = InvestmentService(db, engine.locks, engine.settings)
    investment = await service.invest(user.id, agent_id, data.amount_usd, tx_hash=data.tx_hash)
    return investment_response(investment)


@router.post("/{agent_id}/claim")
async def claim_earnings(agent_id: uuid.UUID, user: CurrentUserDep, db: DbSessionDep, engine: EngineDep):
    amount = await _service(db, engine).claim_creator_earnings(agent_id, user.id)
    return {"agent_id": str(agent_id), "claimed": amount}


@router.post("/{agent_id}/withdraw-capital")
async def withdraw_capital(
    agent_id: uuid.UUID,
    data: CapitalWithdrawRequest,
    request: Request,
    user: CurrentUserDep,
    db: DbSessionDep,
    engine: EngineDep,
):
    """Withdraw part of an agent's capital, paying it out on BSC when payouts are configured."""
    agent = await _service(db, engine).withdraw_capital(agent_id, user.id, data.amount_usd)

    payout = None
    if data.payout and engine.payouts is not None:
        payout = await engine.payouts.create_request(
            user.id,
            user.wallet_address,
            data.amount_usd,
            request_id=data.request_id,
        )
        await schedule_delivery(request, engine, payout)

    return {
        "agent_id": str(agent_id),
        "withdrawn": data.amount_usd,
        "capital_balance": agent.capital_balance,
        "payout": payout_response(payout).model_dump() if payout else None,
    }


# ==================== Monitoring ====================

@router.post("/{agent_id}/monitor")
async def monitor_agent(
    agent_id: uuid.UUID,
    _rate_limit: RateLimitMonitorDep,
    user: CurrentUserDep,
    db: DbSessionDep,
    engine: EngineDep,
):
    """
    Run one monitor check for an agent the caller owns.

    Inside the tier's check interval the response is a skip with the
    remaining wait instead of a second check.
    """
    agent = await _service(db, engine).get_owned(agent_id, user.id)
    if agent.status != "active":
        raise InvalidStateTransitionError("agent", agent.status, "monitored")

    result = await engine.monitor.check_agent(agent_id)
    return result.to_dict()


@router.get("/{agent_id}/feed")
async def agent_feed(agent_id: uuid.UUID, user: CurrentUserDep, db: DbSessionDep, engine: EngineDep):
    """Lightweight snapshot for terminal polling: price, recent candles, latest analysis."""
    agent = await _service(db, engine).get_owned(agent_id, user.id)
    asset = StrategyRules.from_stored(agent.strategy_rules).assets[0]

    async def fetch() -> dict:
        price, candles = await engine.market_data.snapshot(asset, "5m", FEED_CANDLES)
        return {"price": price, "candles": [c.to_dict() for c in candles]}

    try:
        feed = await engine.cache.get_or_fetch(f"feed:{asset}", FEED_CACHE_TTL, fetch)
    except (TradeError, CircuitBreakerOpen) as e:
        logger.warning(f"[FEED] Market data failed for {asset} (agent {agent_id}): {e}")
        raise AppError(ErrorCode.EXCHANGE_ERROR, "Feed fetch failed", status.HTTP_502_BAD_GATEWAY)

    price = feed["price"]
    candles = feed["candles"]
    price_change = 0.0
    if len(candles) >= 2 and candles[0]["open"] > 0:
        price_change = (price - candles[0]["open"]) / candles[0]["open"] * 100

    latest = await AnalysisLogRepository(db).get_latest(agent_id)
    open_trades = await TradeRepository(db).get_open(agent_id)

    return {
        "asset": asset,
        "ticker": display_symbol(asset),
        "price": price,
        "price_change": price_change,
        "range_high": max((c["high"] for c in candles), default=0.0),
        "range_low": min((c["low"] for c in candles), default=0.0),
        "candles": candles,
        "agent": {
            "status": agent.status,
            "energy": agent.energy_balance or 0.0,
            "capital": agent.capital_balance or 0.0,
        },
        "analysis": {
            "symbol": latest.symbol,
            "confidence": latest.confidence,
            "direction": latest.direction,
            "reason": latest.reason,
            "technical_summary": latest.technical_summary,
            "sources": latest.sources or [],
            "should_trade": latest.should_trade,
            "analyzed_at": latest.created_at.isoformat(),
        } if latest else None,
        "open_trades": [
            {
                "id": str(t.id),
                "symbol": t.symbol,
                "side": t.side,
                "size": t.size,
                "size_usd": t.size_usd,
                "leverage": t.leverage,
                "entry_price": t.entry_price,
                "opened_at": t.opened_at.isoformat() if t.opened_at else None,
            }
            for t in open_trades
        ],
    }
