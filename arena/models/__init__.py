"""Pydantic domain models"""

from .signal import SignalResult
from .strategy import (
    AgentTier,
    ResearchBudget,
    StrategyRules,
    TierConfig,
    TIERS,
    get_tier,
    migrate_legacy_rules,
    research_budget,
)

__all__ = [
    "AgentTier",
    "ResearchBudget",
    "SignalResult",
    "StrategyRules",
    "TierConfig",
    "TIERS",
    "get_tier",
    "migrate_legacy_rules",
    "research_budget",
]
