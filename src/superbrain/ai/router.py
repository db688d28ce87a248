"""AI provider router - holds the active provider and swaps it on settings changes.

The engine never keeps a provider reference of its own; it asks the router at
call time, so a settings update takes effect on the next thought.
"""

import asyncio
from collections.abc import Sequence

from superbrain.ai.base import AIProvider, AIResponse, ProviderType
from superbrain.core.config import AppSettings, Settings
from superbrain.core.errors import ProviderError
from superbrain.core.logging import get_logger
from superbrain.core.types import RecallResult

logger = get_logger("ai.router")


class ProviderRouter:
    """Routes completions to the currently configured provider."""

    def __init__(self, timeout: float = 10.0, health_timeout: float = 5.0):
        self.timeout = timeout
        self.health_timeout = health_timeout
        self._active: AIProvider | None = None
        self._available: bool | None = None  # None = not checked yet

    @property
    def active(self) -> AIProvider | None:
        return self._active

    @property
    def name(self) -> str:
        return self._active.provider_type.value if self._active else "none"

    @property
    def is_configured(self) -> bool:
        return self._active is not None

    @property
    def available(self) -> bool:
        """Configured and not known to be down."""
        return self._active is not None and self._available is not False

    async def use(self, provider: AIProvider | None) -> None:
        """Swap the active provider, closing the previous one."""
        previous, self._active = self._active, provider
        self._available = None
        if previous is not None and previous is not provider:
            try:
                await previous.close()
            except Exception as e:
                logger.warning(f"Failed to close {previous.provider_type.value} provider: {e}")
        logger.info(f"AI provider: {self.name}")

    async def configure(self, app: AppSettings, settings: Settings) -> None:
        await self.use(build_provider(app, settings))

    async def refresh_availability(self) -> bool:
        provider = self._active
        if provider is None:
            self._available = False
            return False
        try:
            available = await asyncio.wait_for(provider.health_check(), self.health_timeout)
        except (asyncio.TimeoutError, ProviderError) as e:
            logger.debug(f"Health check of {provider.provider_type.value} failed: {e}")
            available = False
        if provider is self._active:
            self._available = available
        return available

    async def complete(self, prompt: str, memories: Sequence[RecallResult]) -> AIResponse:
        """Ask the active provider, bounded by the router timeout.

        Raises:
            ProviderError: nothing configured, timeout or provider failure
        """
        provider = self._active
        if provider is None:
            raise ProviderError("No AI provider configured")

        try:
            response = await asyncio.wait_for(provider.complete(prompt, memories), self.timeout)
        except asyncio.TimeoutError as e:
            self._mark(provider, False)
            raise ProviderError(
                f"{provider.provider_type.value} timed out after {self.timeout:.0f}s"
            ) from e
        except ProviderError:
            self._mark(provider, False)
            raise

        self._mark(provider, True)
        return response

    def _mark(self, provider: AIProvider, available: bool) -> None:
        if provider is self._active:
            self._available = available

    async def close(self) -> None:
        await self.use(None)


def build_provider(app: AppSettings, settings: Settings) -> AIProvider | None:
    """Create the provider selected in runtime settings."""
    from superbrain.ai.claude import ClaudeProvider
    from superbrain.ai.local import LocalProvider

    if app.ai_provider == ProviderType.LOCAL.value:
        return LocalProvider(
            base_url=settings.ollama_url,
            model=app.ollama_model,
            timeout=settings.ai_timeout,
            max_tokens=settings.ai_max_tokens,
        )

    if app.ai_provider == ProviderType.CLAUDE.value:
        if not settings.anthropic_api_key:
            logger.warning("Claude selected but SUPERBRAIN_ANTHROPIC_API_KEY is not set")
            return None
        return ClaudeProvider(
            api_key=settings.anthropic_api_key,
            model=app.claude_model,
            max_tokens=settings.ai_max_tokens,
        )

    return None
