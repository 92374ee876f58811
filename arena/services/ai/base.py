"""
AI client base classes.

The evaluator talks to providers through BaseAIClient only; each adapter
maps its SDK errors onto AIClientError subclasses.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional


class AIProvider(str, Enum):
    """Supported AI providers"""

    ANTHROPIC = "anthropic"
    OPENAI = "openai"


@dataclass
class AIClientConfig:
    """Configuration for an AI client instance"""

    api_key: str
    model: str
    max_tokens: int = 2048
    temperature: float = 0.3
    timeout: int = 120
    extra_params: dict = field(default_factory=dict)


@dataclass
class AIResponse:
    """Standardized response from AI clients"""

    content: str
    model: str
    provider: AIProvider
    input_tokens: int = 0
    output_tokens: int = 0
    searches_used: int = 0
    sources: list[str] = field(default_factory=list)
    stop_reason: str = ""
    latency_ms: int = 0
    raw_response: Optional[Any] = None

    @property
    def tokens_used(self) -> int:
        return self.input_tokens + self.output_tokens


class AIClientError(Exception):
    """Base error for AI client operations"""

    def __init__(self, message: str, provider: Optional[AIProvider] = None):
        self.message = message
        self.provider = provider
        super().__init__(message)


class AIAuthenticationError(AIClientError):
    pass


class AIRateLimitError(AIClientError):
    pass


class AIConnectionError(AIClientError):
    pass


class BaseAIClient(ABC):
    """
    Abstract base class for AI clients.

    Usage:
        client = AnthropicClient(AIClientConfig(api_key="...", model="claude-haiku-4-5"))
        response = await client.generate(system_prompt, user_prompt, max_searches=2)
    """

    def __init__(self, config: AIClientConfig):
        self.config = config
        if not self.config.api_key:
            raise AIClientError(f"API key is required for {self.provider.value}", self.provider)

    @property
    @abstractmethod
    def provider(self) -> AIProvider:
        pass

    @abstractmethod
    async def generate(
        self,
        system_prompt: str,
        user_prompt: str,
        max_searches: int = 0,
    ) -> AIResponse:
        """
        Generate a completion.

        max_searches bounds the provider-side web research tool; 0 disables it.
        Providers without a research tool ignore it.
        """

    async def close(self) -> None:
        """Release the underlying HTTP client."""
