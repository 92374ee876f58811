"""AI provider clients used by the signal evaluator."""

from .base import (
    AIAuthenticationError,
    AIClientConfig,
    AIClientError,
    AIConnectionError,
    AIProvider,
    AIRateLimitError,
    AIResponse,
    BaseAIClient,
)
from .factory import AIClientFactory, parse_model_id

__all__ = [
    "AIAuthenticationError",
    "AIClientConfig",
    "AIClientError",
    "AIClientFactory",
    "AIConnectionError",
    "AIProvider",
    "AIRateLimitError",
    "AIResponse",
    "BaseAIClient",
    "parse_model_id",
]
