"""
Anthropic Claude client adapter.

Research is done with the server-side web search tool, capped per call
with ``max_uses``; searches performed and cited URLs are reported back on
the AIResponse.
"""

import time

import anthropic

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

WEB_SEARCH_TOOL = "web_search_20250305"


class AnthropicClient(BaseAIClient):
    """Claude client (Haiku for cheap tiers, Sonnet for the top tier)."""

    def __init__(self, config: AIClientConfig):
        super().__init__(config)
        self._client = anthropic.AsyncAnthropic(
            api_key=config.api_key,
            timeout=config.timeout,
        )

    @property
    def provider(self) -> AIProvider:
        return AIProvider.ANTHROPIC

    async def generate(
        self,
        system_prompt: str,
        user_prompt: str,
        max_searches: int = 0,
    ) -> AIResponse:
        start_time = time.time()

        request_kwargs = {
            "model": self.config.model,
            "max_tokens": self.config.max_tokens,
            "temperature": self.config.temperature,
            "system": system_prompt,
            "messages": [{"role": "user", "content": user_prompt}],
        }
        if max_searches > 0:
            request_kwargs["tools"] = [
                {"type": WEB_SEARCH_TOOL, "name": "web_search", "max_uses": max_searches}
            ]

        try:
            message = await self._client.messages.create(**request_kwargs)
        except anthropic.AuthenticationError as e:
            raise AIAuthenticationError(f"Authentication failed: {e}", self.provider)
        except anthropic.RateLimitError as e:
            raise AIRateLimitError(f"Rate limit exceeded: {e}", self.provider)
        except anthropic.APIConnectionError as e:
            raise AIConnectionError(f"Connection failed: {e}", self.provider)
        except anthropic.APIStatusError as e:
            raise AIClientError(f"API error: {e}", self.provider)

        # With tools enabled the final text block carries the decision
        texts = [block.text for block in message.content if block.type == "text"]
        sources = self._extract_sources(message)

        usage = message.usage
        server_tool_use = getattr(usage, "server_tool_use", None)
        searches = getattr(server_tool_use, "web_search_requests", 0) or 0

        return AIResponse(
            content=texts[-1].strip() if texts else "",
            model=message.model,
            provider=self.provider,
            input_tokens=usage.input_tokens if usage else 0,
            output_tokens=usage.output_tokens if usage else 0,
            searches_used=searches,
            sources=sources,
            stop_reason=message.stop_reason or "",
            latency_ms=int((time.time() - start_time) * 1000),
            raw_response=message,
        )

    @staticmethod
    def _extract_sources(message) -> list[str]:
        urls: list[str] = []
        for block in message.content:
            if block.type != "web_search_tool_result":
                continue
            results = block.content if isinstance(block.content, list) else []
            for result in results:
                url = getattr(result, "url", None)
                if url and url not in urls:
                    urls.append(url)
        return urls

    async def close(self) -> None:
        await self._client.close()
