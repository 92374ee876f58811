"""
Tests for SignalParser.
"""

import pytest

from arena.services.signal_parser import SignalParseError, SignalParser


@pytest.fixture
def parser():
    return SignalParser(confidence_threshold=70)


@pytest.mark.unit
class TestSignalParserExtraction:
    def test_bare_json(self, parser):
        raw = (
            '{"should_trade": true, "direction": "long", "confidence": 82, '
            '"reason": "ETF inflows", "matched_headlines": ["BTC ETF sees record inflow"], '
            '"technical_summary": "Higher lows on 1h"}'
        )

        result = parser.parse(raw, "BTC")

        assert result.symbol == "BTC"
        assert result.should_trade is True
        assert result.direction == "long"
        assert result.confidence == 82
        assert result.matched_headlines == ["BTC ETF sees record inflow"]
        assert result.technical_summary == "Higher lows on 1h"

    def test_fenced_code_block(self, parser):
        raw = """After reviewing the news:

```json
{"should_trade": true, "direction": "short", "confidence": 75, "reason": "Rejected at resistance"}
```
"""
        result = parser.parse(raw, "ETH")

        assert result.direction == "short"
        assert result.confidence == 75

    def test_json_embedded_in_prose(self, parser):
        raw = 'My decision is {"should_trade": false, "direction": "long", "confidence": 40, "reason": "chop"} as above.'

        result = parser.parse(raw, "SOL")

        assert result.should_trade is False
        assert result.reason == "chop"

    def test_smart_quotes_are_normalized(self, parser):
        raw = "{“should_trade”: true, “direction”: “long”, “confidence”: 90, “reason”: “ok”}"

        result = parser.parse(raw, "BTC")

        assert result.confidence == 90

    @pytest.mark.parametrize(
        "raw",
        [
            "",
            "   ",
            "no json here",
            '{"should_trade": true, "direction": "sideways", "confidence": 90}',
            '{"should_trade": true, "direction": "long", "confidence": "very"}',
            "[1, 2, 3]",
        ],
    )
    def test_malformed_replies_raise(self, parser, raw):
        with pytest.raises(SignalParseError):
            parser.parse(raw, "BTC")


@pytest.mark.unit
class TestSignalParserGating:
    def test_below_threshold_does_not_trade(self, parser):
        raw = '{"should_trade": true, "direction": "long", "confidence": 69, "reason": "weak"}'

        result = parser.parse(raw, "BTC")

        assert result.should_trade is False
        assert result.confidence == 69

    def test_threshold_is_inclusive(self, parser):
        raw = '{"should_trade": true, "direction": "long", "confidence": 70, "reason": "ok"}'

        assert parser.parse(raw, "BTC").should_trade is True

    def test_fractional_confidence_is_scaled(self, parser):
        raw = '{"should_trade": true, "direction": "long", "confidence": 0.85, "reason": "ok"}'

        result = parser.parse(raw, "BTC")

        assert result.confidence == 85
        assert result.should_trade is True

    def test_confidence_is_clamped(self, parser):
        raw = '{"should_trade": true, "direction": "long", "confidence": 250, "reason": "ok"}'

        assert parser.parse(raw, "BTC").confidence == 100

    def test_direction_bias_conflict_blocks_trade(self, parser):
        raw = '{"should_trade": true, "direction": "short", "confidence": 95, "reason": "dump"}'

        assert parser.parse(raw, "BTC", direction_bias="long").should_trade is False
        assert parser.parse(raw, "BTC", direction_bias="short").should_trade is True
        assert parser.parse(raw, "BTC", direction_bias="both").should_trade is True

    def test_should_trade_must_be_literal_true(self, parser):
        raw = '{"should_trade": "yes", "direction": "long", "confidence": 95, "reason": "ok"}'

        assert parser.parse(raw, "BTC").should_trade is False
