"""Database layer"""

from .models import (
    AgentDB,
    AnalysisLogDB,
    Base,
    EnergyLogDB,
    InvestmentDB,
    LifecycleEventDB,
    PayoutRequestDB,
    ReferralEarningDB,
    TradeDB,
    TransactionDB,
    UserDB,
)

__all__ = [
    "Base",
    "UserDB",
    "AgentDB",
    "TradeDB",
    "EnergyLogDB",
    "TransactionDB",
    "InvestmentDB",
    "AnalysisLogDB",
    "ReferralEarningDB",
    "LifecycleEventDB",
    "PayoutRequestDB",
]
