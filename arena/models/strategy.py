"""
Strategy rules and agent tiers.

Rules are stored as a JSON blob on the agent. Older blobs used a single
``asset`` string, a ``direction`` key and flat risk fields; they are
migrated once, in ``StrategyRules.from_stored``, and everything downstream
works with the validated model only.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field, field_validator

from ..traders.base import normalize_symbol


RULES_VERSION = 2


# =============================================================================
# Tiers
# =============================================================================

class AgentTier(str, Enum):
    SCOUT = "scout"
    SNIPER = "sniper"
    PREDATOR = "predator"


@dataclass(frozen=True)
class TierConfig:
    """Check frequency and cost class of a tier."""
    name: str
    frequency_per_hour: int
    energy_per_day: float
    ai_model: str

    @property
    def burn_rate_per_hour(self) -> float:
        return self.energy_per_day / 24

    @property
    def min_check_interval(self) -> float:
        """Seconds between two admitted monitor checks."""
        return 3600 / self.frequency_per_hour


TIERS: dict[AgentTier, TierConfig] = {
    AgentTier.SCOUT: TierConfig("scout", 6, 100, "anthropic:claude-haiku-4-5"),
    AgentTier.SNIPER: TierConfig("sniper", 12, 500, "anthropic:claude-haiku-4-5"),
    AgentTier.PREDATOR: TierConfig("predator", 30, 2000, "anthropic:claude-sonnet-4-5"),
}

DEFAULT_TIER = AgentTier.SNIPER


def get_tier(tier: Optional[str]) -> TierConfig:
    """Resolve a tier name, falling back to the default for unknown values."""
    try:
        return TIERS[AgentTier(tier)] if tier else TIERS[DEFAULT_TIER]
    except ValueError:
        return TIERS[DEFAULT_TIER]


# =============================================================================
# Research budget
# =============================================================================

class ResearchBudget(str, Enum):
    NONE = "none"
    LIGHT = "light"
    DEEP = "deep"


# Max web searches unlocked by each data source; the largest one wins
DATA_SOURCE_SEARCHES = {
    "ai_web_search": 2,
    "sec_macro": 3,
    "twitter": 4,
    "pvpai_alpha": 6,
}

DEFAULT_DATA_SOURCES = ["hl_kline", "ai_web_search"]


def research_budget(data_sources: list[str]) -> tuple[ResearchBudget, int]:
    """Map subscribed data sources to a budget class and a search cap."""
    searches = max((DATA_SOURCE_SEARCHES.get(s, 0) for s in data_sources), default=0)
    if searches == 0:
        return ResearchBudget.NONE, 0
    if searches >= DATA_SOURCE_SEARCHES["pvpai_alpha"]:
        return ResearchBudget.DEEP, searches
    return ResearchBudget.LIGHT, searches


# =============================================================================
# Strategy rules
# =============================================================================

class RiskManagement(BaseModel):
    max_position_size_pct: float = Field(default=10, ge=1, le=100)
    stop_loss_pct: float = Field(default=5, ge=0.5, le=50)
    take_profit_pct: float = Field(default=15, ge=0.5, le=100)
    max_leverage: int = Field(default=3, ge=1, le=10)
    max_daily_trades: int = Field(default=5, ge=1, le=20)


class Trigger(BaseModel):
    type: Literal["keyword", "price_level", "time_based", "momentum"]
    condition: str
    parameters: dict[str, Any] = Field(default_factory=dict)


class StrategyRules(BaseModel):
    """Validated, versioned strategy configuration of an agent."""

    version: Literal[2] = RULES_VERSION
    name: str = ""
    description: str = ""
    assets: list[str] = Field(default_factory=lambda: ["BTC"], min_length=1)
    direction_bias: Literal["long", "short", "both"] = "both"
    triggers: list[Trigger] = Field(default_factory=list)
    risk_management: RiskManagement = Field(default_factory=RiskManagement)
    keywords: list[str] = Field(default_factory=list)
    data_sources: list[str] = Field(default_factory=lambda: list(DEFAULT_DATA_SOURCES))

    @field_validator("assets")
    @classmethod
    def normalize_assets(cls, v: list[str]) -> list[str]:
        seen: list[str] = []
        for asset in v:
            symbol = normalize_symbol(asset) if asset.strip() else ""
            if symbol and symbol not in seen:
                seen.append(symbol)
        if not seen:
            raise ValueError("at least one asset is required")
        return seen

    @classmethod
    def from_stored(cls, raw: Optional[dict]) -> "StrategyRules":
        """Validate a stored rules blob, migrating legacy layouts first."""
        return cls.model_validate(migrate_legacy_rules(raw or {}))

    def to_stored(self) -> dict:
        return self.model_dump(mode="json")


_FLAT_RISK_KEYS = (
    "max_position_size_pct",
    "stop_loss_pct",
    "take_profit_pct",
    "max_leverage",
    "max_daily_trades",
)


def migrate_legacy_rules(raw: dict) -> dict:
    """
    Upgrade a rules blob to the current layout.

    - ``asset`` (single string) becomes ``assets``
    - builder-dex prefixes like ``XYZ:nvda`` are normalized to ``xyz:NVDA``
    - ``direction`` becomes ``direction_bias``
    - flat risk fields move under ``risk_management``
    - ``tier`` is dropped (the agent row owns it)
    """
    if raw.get("version") == RULES_VERSION:
        return raw

    data = dict(raw)
    data.pop("tier", None)

    assets = data.pop("assets", None)
    single = data.pop("asset", None)
    if not assets:
        assets = [single] if single else ["BTC"]
    data["assets"] = [normalize_symbol(str(a)) for a in assets]

    if "direction_bias" not in data and "direction" in data:
        data["direction_bias"] = data.pop("direction")
    else:
        data.pop("direction", None)

    risk = dict(data.get("risk_management") or {})
    for key in _FLAT_RISK_KEYS:
        if key in data:
            risk.setdefault(key, data.pop(key))
    data["risk_management"] = risk

    if not data.get("data_sources"):
        data["data_sources"] = list(DEFAULT_DATA_SOURCES)

    data["version"] = RULES_VERSION
    return data
