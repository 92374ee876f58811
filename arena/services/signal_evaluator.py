"""
AI Signal Evaluator.

(strategy rules, price, candles, asset) -> SignalResult | None.

No balance side effects: the monitor persists every returned evaluation to
the analysis log and decides whether to open a position. Every failure
(no candles, AI error or timeout, open breaker, unparsable reply) yields
None, never a guessed trade.
"""

import asyncio
import logging
import time
from typing import Optional

from ..core.circuit_breaker import CircuitBreakerOpen, get_ai_circuit_breaker
from ..core.config import Settings, get_settings
from ..models.signal import SignalResult
from ..models.strategy import ResearchBudget, StrategyRules, research_budget
from ..monitoring import get_metrics_collector
from ..traders.base import OHLCV, display_symbol
from .ai import AIClientError, AIClientFactory
from .signal_parser import SignalParseError, SignalParser

logger = logging.getLogger(__name__)


SYSTEM_PROMPT = """You are an AI trading analyst for an autonomous trading agent platform.

Your job: analyze real-time market conditions and decide whether to open a trade RIGHT NOW based on a specific strategy.

Analysis process:
1. SEARCH the web for the latest news about the asset and keywords (if web search is available)
2. Examine the K-line candle data: trend direction, support/resistance, momentum, volume
3. Cross-reference technical patterns with news sentiment
4. Only recommend trading when BOTH technical and fundamental signals align
5. A confidence score of {threshold}+ means "trade now"
6. Be specific about which news events and candle patterns drove your decision
7. Respect the strategy's direction bias (long/short/both)

After your research, respond with a FINAL message containing ONLY valid JSON:
{{
  "should_trade": boolean,
  "direction": "long" | "short",
  "confidence": number (0-100),
  "reason": string (one sentence),
  "matched_headlines": string[],
  "technical_summary": string
}}"""


_SOURCE_INSTRUCTIONS = {
    "sec_macro": "Search for recent SEC filings, earnings, Fed decisions, CPI/NFP releases and other macro indicators.",
    "twitter": "Also search for recent posts and sentiment from key opinion leaders on X/Twitter about this asset.",
    "pvpai_alpha": (
        "Conduct deep research: whale movements, institutional flows, options data and upcoming catalysts. "
        "Cross-reference multiple sources before recommending a trade."
    ),
}


def build_search_instructions(rules: StrategyRules) -> str:
    budget, _ = research_budget(rules.data_sources)
    if budget == ResearchBudget.NONE:
        return "No web search available. Analyze based on the K-line candle data only."

    lines = [
        "Use the web_search tool to find the LATEST news about the asset and related keywords.",
        "Focus on news from the last 24 hours that could impact price.",
    ]
    for source in rules.data_sources:
        if source in _SOURCE_INSTRUCTIONS:
            lines.append(_SOURCE_INSTRUCTIONS[source])
    return "\n".join(lines)


def format_candle_table(candles: list[OHLCV], rows: int = 12) -> str:
    lines = [
        "| Time | Open | High | Low | Close | Volume |",
        "|------|------|------|-----|-------|--------|",
    ]
    for c in candles[-rows:]:
        lines.append(
            f"| {c.timestamp.strftime('%H:%M')} | {c.open:.2f} | {c.high:.2f} "
            f"| {c.low:.2f} | {c.close:.2f} | {c.volume:.0f} |"
        )
    return "\n".join(lines)


def build_user_prompt(
    rules: StrategyRules,
    price: float,
    candles: list[OHLCV],
    symbol: str,
) -> str:
    ticker = display_symbol(symbol)
    return f"""## Strategy
- Name: {rules.name or 'Agent'}
- Direction Bias: {rules.direction_bias}
- Description: {rules.description}
- Keywords of interest: {', '.join(rules.keywords)}
- All Agent Assets: {', '.join(display_symbol(a) for a in rules.assets)}
- Currently Evaluating: {ticker}

## Current Market
- {ticker} Price: ${price:.2f}

## K-Line Candles (1h, recent)
{format_candle_table(candles)}

## Data Source Instructions
{build_search_instructions(rules)}

Based on this strategy and market data, decide: should we trade {ticker} now?"""


class SignalEvaluator:
    """
    Usage:
        evaluator = SignalEvaluator(ai_factory, settings)
        signal = await evaluator.evaluate(rules, price, candles, "BTC", model="anthropic:claude-haiku-4-5")
    """

    def __init__(
        self,
        ai_factory: AIClientFactory,
        settings: Optional[Settings] = None,
    ):
        self.ai_factory = ai_factory
        self.settings = settings or get_settings()
        self.parser = SignalParser(self.settings.confidence_threshold)
        self.breaker = get_ai_circuit_breaker()
        self.metrics = get_metrics_collector()

    async def evaluate(
        self,
        rules: StrategyRules,
        price: float,
        candles: list[OHLCV],
        symbol: str,
        model: Optional[str] = None,
    ) -> Optional[SignalResult]:
        if not candles or price <= 0:
            self.metrics.ai_evaluations_total.labels(outcome="no_signal").inc()
            return None

        model = model or self.settings.ai_default_model
        _, max_searches = research_budget(rules.data_sources)
        system_prompt = SYSTEM_PROMPT.format(threshold=self.settings.confidence_threshold)
        user_prompt = build_user_prompt(rules, price, candles, symbol)

        start = time.monotonic()
        try:
            client = self.ai_factory.get(model)

            async def generate():
                return await asyncio.wait_for(
                    client.generate(system_prompt, user_prompt, max_searches=max_searches),
                    timeout=self.settings.ai_timeout,
                )

            response = await self.breaker.call(generate)
        except asyncio.TimeoutError:
            logger.warning(f"[AI] {symbol} evaluation timed out after {self.settings.ai_timeout}s")
            self.metrics.ai_evaluations_total.labels(outcome="no_signal").inc()
            return None
        except CircuitBreakerOpen as e:
            logger.warning(f"[AI] {symbol} evaluation skipped: {e}")
            self.metrics.ai_evaluations_total.labels(outcome="no_signal").inc()
            return None
        except AIClientError as e:
            logger.error(f"[AI] {symbol} evaluation failed: {e.message}")
            self.metrics.ai_evaluations_total.labels(outcome="no_signal").inc()
            return None
        finally:
            self.metrics.ai_latency_seconds.labels(model=model).observe(time.monotonic() - start)

        try:
            signal = self.parser.parse(response.content, symbol, rules.direction_bias)
        except SignalParseError as e:
            logger.warning(f"[AI] {symbol} unparsable decision: {e.message}")
            self.metrics.ai_evaluations_total.labels(outcome="no_signal").inc()
            return None

        signal.searches_used = response.searches_used
        signal.model = model
        if response.sources and not signal.matched_headlines:
            signal.matched_headlines = response.sources[:5]

        self.metrics.ai_evaluations_total.labels(
            outcome="trade" if signal.should_trade else "no_trade"
        ).inc()
        logger.info(
            f"[AI] {rules.name or 'agent'} {symbol}: trade={signal.should_trade} "
            f"dir={signal.direction} conf={signal.confidence}% searches={signal.searches_used}"
        )
        return signal
