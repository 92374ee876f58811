"""
SQLAlchemy ORM Models

Database schema for the agent arena lifecycle engine.

- Agent: autonomous trader with its own capital pool, fuel and strategy
- Trade: one leveraged position opened by an agent (exactly one settlement)
- EnergyLog / Transaction: append-only fuel and money facts
- Investment: third-party stake in an agent's capital pool
- PayoutRequest: idempotency record for on-chain payouts
"""

import uuid
from datetime import UTC, datetime
from typing import Optional

from sqlalchemy import (
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.dialects.postgresql import JSON, UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def _utcnow() -> datetime:
    return datetime.now(UTC)


class Base(DeclarativeBase):
    """Base class for all ORM models"""
    pass


class UserDB(Base):
    """
    Wallet-identified user.

    balance_usdt is the free (withdrawable) balance: capital returned by
    dead agents, claimed creator earnings and investment withdrawals land here.
    """
    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4
    )
    wallet_address: Mapped[str] = mapped_column(
        String(64),
        unique=True,
        nullable=False,
        index=True
    )
    referral_code: Mapped[Optional[str]] = mapped_column(
        String(32), unique=True, nullable=True
    )
    referred_by: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True
    )
    balance_usdt: Mapped[float] = mapped_column(Float, default=0.0)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, nullable=False
    )

    def __repr__(self) -> str:
        return f"<User {self.wallet_address}>"


class AgentDB(Base):
    """
    Autonomous trading agent.

    Invariants:
    - energy_balance >= 0 and capital_balance >= 0
    - dead is reached exactly once; capital is returned by the death sequence
    """
    __tablename__ = "agents"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    prompt: Mapped[str] = mapped_column(Text, default="")

    # Validated via StrategyRules.from_stored() on read
    strategy_rules: Mapped[dict] = mapped_column(JSON, default=dict)
    tier: Mapped[str] = mapped_column(String(20), default="sniper")  # scout, sniper, predator

    status: Mapped[str] = mapped_column(
        String(20),
        default="draft",
        index=True
    )  # draft, active, paused, dead, closed

    # Balances
    allocated_funds: Mapped[float] = mapped_column(Float, default=0.0)
    capital_balance: Mapped[float] = mapped_column(Float, default=0.0)
    energy_balance: Mapped[float] = mapped_column(Float, default=0.0)
    burn_rate_per_hour: Mapped[float] = mapped_column(Float, default=0.0)
    creator_earnings: Mapped[float] = mapped_column(Float, default=0.0)

    # Creator of the strategy this agent was cloned from (earns burn referral)
    clone_parent_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("agents.id", ondelete="SET NULL"),
        nullable=True
    )

    # Performance metrics
    total_trades: Mapped[int] = mapped_column(Integer, default=0)
    total_pnl: Mapped[float] = mapped_column(Float, default=0.0)
    win_rate: Mapped[float] = mapped_column(Float, default=0.0)

    died_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utcnow,
        onupdate=_utcnow,
        nullable=False
    )

    @property
    def is_dead(self) -> bool:
        return self.status == "dead"

    def __repr__(self) -> str:
        return f"<Agent {self.name} (status={self.status})>"


class TradeDB(Base):
    """
    A leveraged market position opened by an agent.

    status moves open -> closed | cancelled exactly once. All settlement
    fields are written in the same guarded UPDATE that closes the trade.
    """
    __tablename__ = "trades"

    __table_args__ = (
        Index("ix_trades_agent_status", "agent_id", "status"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4
    )
    agent_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("agents.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )

    symbol: Mapped[str] = mapped_column(String(30), nullable=False)
    side: Mapped[str] = mapped_column(String(10), nullable=False)  # "long" | "short"
    size: Mapped[float] = mapped_column(Float, nullable=False)  # base units
    size_usd: Mapped[float] = mapped_column(Float, nullable=False)
    leverage: Mapped[int] = mapped_column(Integer, default=1)
    entry_price: Mapped[float] = mapped_column(Float, nullable=False)
    exit_price: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    # fill_order, fill_symbol, mark, close_order, entry_fallback
    exit_price_source: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)

    status: Mapped[str] = mapped_column(
        String(20),
        default="open",
        index=True
    )  # open, closed, cancelled

    # Settlement (set only at close)
    realized_pnl: Mapped[Optional[float]] = mapped_column(Float, nullable=True)  # gross
    net_pnl: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    fee: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    creator_fee: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    platform_fee: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    referrer_fee: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    exchange_order_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    trigger_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    trigger_data: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)

    opened_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, nullable=False
    )
    closed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    @property
    def is_long(self) -> bool:
        return self.side == "long"

    def __repr__(self) -> str:
        return f"<Trade {self.symbol} {self.side} status={self.status} agent={self.agent_id}>"


class EnergyLogDB(Base):
    """Append-only record of every fuel delta, with before/after snapshot."""
    __tablename__ = "energy_logs"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4
    )
    agent_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("agents.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    amount: Mapped[float] = mapped_column(Float, nullable=False)  # signed
    # heartbeat, trade_open, trade_close, vampire_feed, blood_pack, manual_topup, death_drain
    reason: Mapped[str] = mapped_column(String(30), nullable=False)
    balance_before: Mapped[float] = mapped_column(Float, nullable=False)
    balance_after: Mapped[float] = mapped_column(Float, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, nullable=False
    )


class TransactionDB(Base):
    """
    Append-only ledger entry.

    tx_hash is unique when present: one external transaction settles once.
    """
    __tablename__ = "transactions"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4
    )
    user_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
        index=True
    )
    agent_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("agents.id", ondelete="SET NULL"),
        nullable=True,
        index=True
    )
    type: Mapped[str] = mapped_column(String(40), nullable=False, index=True)
    amount: Mapped[float] = mapped_column(Float, nullable=False)  # signed, USD
    token: Mapped[str] = mapped_column(String(10), default="USDC")
    status: Mapped[str] = mapped_column(String(20), default="confirmed")
    tx_hash: Mapped[Optional[str]] = mapped_column(String(100), unique=True, nullable=True)
    chain: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    balance_before: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    balance_after: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, nullable=False
    )


class InvestmentDB(Base):
    __tablename__ = "investments"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    agent_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("agents.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    amount: Mapped[float] = mapped_column(Float, nullable=False)
    share_pct: Mapped[float] = mapped_column(Float, nullable=False)
    status: Mapped[str] = mapped_column(String(20), default="active")  # active, withdrawn
    tx_hash: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    withdrawn_amount: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    exit_fee: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, nullable=False
    )
    withdrawn_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )


class AnalysisLogDB(Base):
    """Audit log of every signal evaluation, whether it traded or not."""
    __tablename__ = "analysis_logs"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4
    )
    agent_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("agents.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    symbol: Mapped[str] = mapped_column(String(30), nullable=False)
    price: Mapped[float] = mapped_column(Float, nullable=False)
    should_trade: Mapped[bool] = mapped_column(Boolean, default=False)
    direction: Mapped[Optional[str]] = mapped_column(String(10), nullable=True)
    confidence: Mapped[int] = mapped_column(Integer, default=0)
    reason: Mapped[str] = mapped_column(Text, default="")
    technical_summary: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    sources: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, nullable=False, index=True
    )


class ReferralEarningDB(Base):
    __tablename__ = "referral_earnings"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4
    )
    referrer_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    referred_user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False
    )
    agent_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("agents.id", ondelete="SET NULL"),
        nullable=True
    )  # referrer's agent that received the blood pack
    trade_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("trades.id", ondelete="SET NULL"),
        nullable=True
    )
    energy_amount: Mapped[float] = mapped_column(Float, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, nullable=False
    )


class LifecycleEventDB(Base):
    """agent_born, agent_died, trade_opened, trade_closed"""
    __tablename__ = "lifecycle_events"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4
    )
    type: Mapped[str] = mapped_column(String(30), nullable=False, index=True)
    agent_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("agents.id", ondelete="SET NULL"),
        nullable=True
    )
    data: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, nullable=False, index=True
    )


class PayoutRequestDB(Base):
    """
    Idempotency record for an on-chain payout.

    The signed transfer is stored before broadcast so a retried request
    re-sends the same transaction (same nonce) instead of a second one.
    """
    __tablename__ = "payout_requests"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4
    )
    request_id: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    user_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
        index=True
    )
    to_address: Mapped[str] = mapped_column(String(64), nullable=False)
    amount: Mapped[float] = mapped_column(Float, nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), default="pending", index=True
    )  # pending, bridging, sending, sent, failed
    chain: Mapped[str] = mapped_column(String(20), default="bsc")
    tx_hash: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    raw_tx: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
