"""
Signal parser for AI responses.

Extracts the JSON decision from a model reply (bare JSON, a fenced code
block, or a JSON object embedded in prose) and validates it into a
SignalResult. Anything malformed is a SignalParseError; the evaluator
treats that as "no signal".
"""

import json
import logging
import re
from typing import Optional

from pydantic import ValidationError

from ..models.signal import SignalResult

logger = logging.getLogger(__name__)


class SignalParseError(Exception):
    """Error parsing an AI signal response"""

    def __init__(self, message: str, raw_response: str = ""):
        self.message = message
        self.raw_response = raw_response
        super().__init__(message)


class SignalParser:
    """
    Parses AI replies into SignalResult.

    Gating (confidence threshold, direction bias) is applied here so a
    returned result is final.
    """

    JSON_BLOCK_PATTERN = re.compile(r"```(?:json)?\s*\n?([\s\S]*?)\n?```", re.IGNORECASE)

    def __init__(self, confidence_threshold: int = 70):
        self.confidence_threshold = confidence_threshold

    def parse(
        self,
        raw_response: str,
        symbol: str,
        direction_bias: str = "both",
    ) -> SignalResult:
        if not raw_response or not raw_response.strip():
            raise SignalParseError("Empty response", raw_response)

        json_str = self._extract_json(self._fix_quotes(raw_response))
        if not json_str:
            raise SignalParseError("No valid JSON found in response", raw_response)

        try:
            data = json.loads(json_str)
        except json.JSONDecodeError as e:
            raise SignalParseError(f"Invalid JSON: {e}", raw_response)
        if not isinstance(data, dict):
            raise SignalParseError("Decision is not a JSON object", raw_response)

        direction = data.get("direction")
        if direction not in ("long", "short"):
            raise SignalParseError(f"Invalid direction: {direction!r}", raw_response)

        try:
            confidence = self._normalize_confidence(data.get("confidence", 0))
        except (TypeError, ValueError) as e:
            raise SignalParseError(f"Invalid confidence: {e}", raw_response)

        headlines = data.get("matched_headlines")
        should_trade = data.get("should_trade") is True

        try:
            result = SignalResult(
                symbol=symbol,
                should_trade=should_trade,
                direction=direction,
                confidence=confidence,
                reason=str(data.get("reason") or ""),
                matched_headlines=[str(h) for h in headlines] if isinstance(headlines, list) else [],
                technical_summary=str(data.get("technical_summary") or ""),
            )
        except ValidationError as e:
            raise SignalParseError(f"Validation error: {e}", raw_response)

        if result.should_trade and result.confidence < self.confidence_threshold:
            result.should_trade = False
        if result.should_trade and direction_bias in ("long", "short") and direction != direction_bias:
            logger.info(
                f"[SignalParser] {symbol}: {direction} signal conflicts with "
                f"{direction_bias} bias, not trading"
            )
            result.should_trade = False

        return result

    @staticmethod
    def _normalize_confidence(value) -> int:
        """Accept 0-100 or a 0-1 fraction; clamp into 0-100."""
        if isinstance(value, bool):
            raise TypeError("boolean confidence")
        confidence = float(value)
        if confidence != confidence:
            raise ValueError("NaN confidence")
        if 0 < confidence <= 1:
            confidence *= 100
        return int(round(min(100.0, max(0.0, confidence))))

    @staticmethod
    def _fix_quotes(text: str) -> str:
        for old, new in {"“": '"', "”": '"', "‘": "'", "’": "'"}.items():
            text = text.replace(old, new)
        return text

    def _extract_json(self, text: str) -> Optional[str]:
        """
        Try, in order: the whole text, a fenced code block, then the first
        balanced {...} object.
        """
        text = text.strip()
        try:
            json.loads(text)
            return text
        except json.JSONDecodeError:
            pass

        match = self.JSON_BLOCK_PATTERN.search(text)
        if match:
            return match.group(1).strip()

        start = text.find("{")
        while start >= 0:
            depth = 0
            in_string = False
            escaped = False
            for i, c in enumerate(text[start:], start):
                if in_string:
                    if escaped:
                        escaped = False
                    elif c == "\\":
                        escaped = True
                    elif c == '"':
                        in_string = False
                elif c == '"':
                    in_string = True
                elif c == "{":
                    depth += 1
                elif c == "}":
                    depth -= 1
                    if depth == 0:
                        candidate = text[start : i + 1]
                        try:
                            json.loads(candidate)
                            return candidate
                        except json.JSONDecodeError:
                            break
            start = text.find("{", start + 1)

        logger.warning(
            f"[SignalParser] Failed to extract JSON from response. "
            f"Response length={len(text)}, preview: {text[:300]}"
        )
        return None
