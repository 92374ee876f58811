"""Signal evaluator output"""

from typing import Literal, Optional

from pydantic import BaseModel, Field


class SignalResult(BaseModel):
    """
    Validated decision for one asset.

    should_trade is already gated on the confidence threshold and the
    strategy's direction bias by the time a SignalResult is returned.
    """

    symbol: str
    should_trade: bool
    direction: Literal["long", "short"]
    confidence: int = Field(ge=0, le=100)
    reason: str = ""
    matched_headlines: list[str] = Field(default_factory=list)
    technical_summary: str = ""
    searches_used: int = 0
    model: Optional[str] = None
