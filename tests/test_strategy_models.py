"""
Tests for strategy rules, legacy migration and tier lookup.
"""

import pytest
from pydantic import ValidationError

from arena.models.strategy import (
    DEFAULT_DATA_SOURCES,
    ResearchBudget,
    StrategyRules,
    get_tier,
    migrate_legacy_rules,
    research_budget,
)


@pytest.mark.unit
class TestLegacyMigration:
    def test_single_asset_and_flat_risk(self):
        legacy = {
            "asset": "xyz:NVDA",
            "direction": "long",
            "stop_loss_pct": 3,
            "max_leverage": 5,
            "tier": "predator",
        }

        rules = StrategyRules.from_stored(legacy)

        assert rules.assets == ["xyz:NVDA"]
        assert rules.direction_bias == "long"
        assert rules.risk_management.stop_loss_pct == 3
        assert rules.risk_management.max_leverage == 5
        assert rules.risk_management.take_profit_pct == 15
        assert rules.data_sources == DEFAULT_DATA_SOURCES
        assert "tier" not in rules.to_stored()

    def test_nested_risk_wins_over_flat(self):
        migrated = migrate_legacy_rules(
            {"assets": ["BTC"], "risk_management": {"stop_loss_pct": 2}, "stop_loss_pct": 9}
        )

        assert migrated["risk_management"]["stop_loss_pct"] == 2
        assert "stop_loss_pct" not in migrated

    def test_current_blob_is_untouched(self):
        stored = StrategyRules(assets=["eth"]).to_stored()

        assert migrate_legacy_rules(stored) is stored

    def test_empty_blob_gets_defaults(self):
        rules = StrategyRules.from_stored(None)

        assert rules.assets == ["BTC"]
        assert rules.direction_bias == "both"
        assert rules.version == 2


@pytest.mark.unit
class TestStrategyValidation:
    def test_assets_are_normalized_and_deduplicated(self):
        assert StrategyRules(assets=[" btc", "BTC", "eth "]).assets == ["BTC", "ETH"]

    def test_builder_dex_prefix_is_kept(self):
        rules = StrategyRules(assets=["XYZ:nvda", "xyz:NVDA", "btc"])

        assert rules.assets == ["xyz:NVDA", "BTC"]

    def test_blank_assets_rejected(self):
        with pytest.raises(ValidationError):
            StrategyRules(assets=["  "])

    def test_leverage_bounds(self):
        with pytest.raises(ValidationError):
            StrategyRules(risk_management={"max_leverage": 25})


@pytest.mark.unit
class TestTiers:
    def test_known_tier(self):
        tier = get_tier("predator")

        assert tier.frequency_per_hour == 30
        assert tier.min_check_interval == 120

    @pytest.mark.parametrize("name", [None, "", "legendary"])
    def test_unknown_tier_falls_back_to_sniper(self, name):
        assert get_tier(name).name == "sniper"

    def test_research_budget(self):
        assert research_budget(["hl_kline"]) == (ResearchBudget.NONE, 0)
        assert research_budget(["hl_kline", "ai_web_search"]) == (ResearchBudget.LIGHT, 2)
        assert research_budget(["twitter", "sec_macro"]) == (ResearchBudget.LIGHT, 4)
        assert research_budget(["pvpai_alpha"]) == (ResearchBudget.DEEP, 6)
