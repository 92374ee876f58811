"""
AI client factory.

Model ids are "provider:model" strings (e.g. "anthropic:claude-haiku-4-5").
Clients are cached per model id so each tier reuses one HTTP pool.
"""

import logging
from typing import Optional

from ...core.config import Settings, get_settings
from .anthropic_client import AnthropicClient
from .base import AIClientConfig, AIClientError, AIProvider, BaseAIClient
from .openai_client import OpenAIClient

logger = logging.getLogger(__name__)

_CLIENT_CLASSES: dict[AIProvider, type[BaseAIClient]] = {
    AIProvider.ANTHROPIC: AnthropicClient,
    AIProvider.OPENAI: OpenAIClient,
}


def parse_model_id(model_full_id: str) -> tuple[AIProvider, str]:
    if ":" not in model_full_id:
        raise AIClientError(
            f"Invalid model ID format: {model_full_id}. Expected 'provider:model_id'"
        )
    provider_str, model_id = model_full_id.split(":", 1)
    try:
        return AIProvider(provider_str), model_id
    except ValueError:
        raise AIClientError(f"Unknown provider: {provider_str}")


class AIClientFactory:
    """
    Creates and caches AI clients.

    Usage:
        factory = AIClientFactory(settings)
        client = factory.get("anthropic:claude-sonnet-4-5")
        ...
        await factory.close()
    """

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self._clients: dict[str, BaseAIClient] = {}

    def _api_key(self, provider: AIProvider) -> str:
        if provider == AIProvider.ANTHROPIC:
            return self.settings.anthropic_api_key
        return self.settings.openai_api_key

    def get(self, model_full_id: Optional[str] = None) -> BaseAIClient:
        model_full_id = model_full_id or self.settings.ai_default_model
        client = self._clients.get(model_full_id)
        if client is None:
            provider, model_id = parse_model_id(model_full_id)
            config = AIClientConfig(
                api_key=self._api_key(provider),
                model=model_id,
                max_tokens=self.settings.ai_max_tokens,
                timeout=self.settings.ai_timeout,
            )
            client = _CLIENT_CLASSES[provider](config)
            self._clients[model_full_id] = client
            logger.info(f"Created AI client for {model_full_id}")
        return client

    async def close(self) -> None:
        for model_id, client in self._clients.items():
            try:
                await client.close()
            except Exception as e:
                logger.warning(f"Error closing AI client {model_id}: {e}")
        self._clients.clear()
