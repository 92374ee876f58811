"""
OpenAI client adapter.

No research tool: max_searches is ignored and searches_used stays 0.
"""

import time

import openai

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


class OpenAIClient(BaseAIClient):
    def __init__(self, config: AIClientConfig):
        super().__init__(config)
        self._client = openai.AsyncOpenAI(
            api_key=config.api_key,
            timeout=config.timeout,
        )

    @property
    def provider(self) -> AIProvider:
        return AIProvider.OPENAI

    async def generate(
        self,
        system_prompt: str,
        user_prompt: str,
        max_searches: int = 0,
    ) -> AIResponse:
        start_time = time.time()

        try:
            response = await self._client.chat.completions.create(
                model=self.config.model,
                messages=[
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": user_prompt},
                ],
                max_tokens=self.config.max_tokens,
                temperature=self.config.temperature,
                response_format={"type": "json_object"},
            )
        except openai.AuthenticationError as e:
            raise AIAuthenticationError(f"Authentication failed: {e}", self.provider)
        except openai.RateLimitError as e:
            raise AIRateLimitError(f"Rate limit exceeded: {e}", self.provider)
        except openai.APIConnectionError as e:
            raise AIConnectionError(f"Connection failed: {e}", self.provider)
        except openai.APIStatusError as e:
            raise AIClientError(f"API error: {e}", self.provider)

        choice = response.choices[0]
        return AIResponse(
            content=choice.message.content or "",
            model=response.model,
            provider=self.provider,
            input_tokens=response.usage.prompt_tokens if response.usage else 0,
            output_tokens=response.usage.completion_tokens if response.usage else 0,
            stop_reason=choice.finish_reason or "",
            latency_ms=int((time.time() - start_time) * 1000),
            raw_response=response,
        )

    async def close(self) -> None:
        await self._client.close()
