"""
Claude API provider implementation.

Cloud provider using Anthropic's Claude API. Only used when the user opts in
and privacy mode is off.
"""

from collections.abc import Sequence

import anthropic
from anthropic import APIConnectionError, APIError, RateLimitError

from superbrain.ai.base import (
    SYSTEM_PROMPT,
    AIProvider,
    AIResponse,
    ProviderType,
    build_prompt,
)
from superbrain.core.errors import ProviderError
from superbrain.core.logging import get_logger
from superbrain.core.types import RecallResult

logger = get_logger("ai.claude")


class ClaudeProvider(AIProvider):
    """Anthropic Claude API provider."""

    provider_type = ProviderType.CLAUDE

    def __init__(
        self,
        api_key: str,
        model: str = "claude-sonnet-4-20250514",
        max_tokens: int = 1024,
        client: anthropic.AsyncAnthropic | None = None,
    ):
        if not api_key and client is None:
            raise ProviderError("Claude provider requires an API key")
        self.api_key = api_key
        self.model = model
        self.max_tokens = max_tokens
        self._client = client

    @property
    def client(self) -> anthropic.AsyncAnthropic:
        if self._client is None:
            self._client = anthropic.AsyncAnthropic(api_key=self.api_key)
        return self._client

    async def complete(self, prompt: str, memories: Sequence[RecallResult]) -> AIResponse:
        """Generate completion using Claude API."""
        logger.debug(f"Claude request: model={self.model}, memories={len(memories)}")

        try:
            response = await self.client.messages.create(
                model=self.model,
                max_tokens=self.max_tokens,
                system=SYSTEM_PROMPT,
                messages=[{"role": "user", "content": build_prompt(prompt, memories)}],
            )
        except RateLimitError as e:
            logger.warning(f"Rate limited: {e}")
            raise ProviderError("Claude rate limit reached") from e
        except APIConnectionError as e:
            logger.error(f"Connection error: {e}")
            raise ProviderError("Cannot reach Claude API") from e
        except APIError as e:
            logger.error(f"API error: {e}")
            raise ProviderError(f"Claude API error: {e}") from e

        content = "".join(
            block.text for block in response.content if getattr(block, "type", "") == "text"
        ).strip()
        if not content:
            raise ProviderError("Claude returned an empty response")

        logger.debug(f"Claude usage: {response.usage.input_tokens} in, {response.usage.output_tokens} out")
        return AIResponse(
            content=content,
            model=self.model,
            provider=self.provider_type,
            input_tokens=response.usage.input_tokens,
            output_tokens=response.usage.output_tokens,
        )

    async def health_check(self) -> bool:
        """Check the API key against the (unbilled) models endpoint."""
        try:
            await self.client.models.list(limit=1)
            return True
        except APIError as e:
            logger.warning(f"Health check failed: {e}")
            return False

    async def close(self) -> None:
        if self._client:
            await self._client.close()
            self._client = None
