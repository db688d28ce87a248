"""Local AI provider - Ollama HTTP API."""

from collections.abc import Sequence

import httpx

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

logger = get_logger("ai.local")


class LocalProvider(AIProvider):
    """Ollama server on this machine."""

    provider_type = ProviderType.LOCAL

    def __init__(
        self,
        base_url: str = "http://localhost:11434",
        model: str = "llama3.2",
        timeout: float = 120.0,
        max_tokens: int = 1024,
        client: httpx.AsyncClient | None = None,
    ):
        self.base_url = base_url
        self.model = model
        self.timeout = timeout
        self.max_tokens = max_tokens
        self._client = client

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,  # Local models can be slow
            )
        return self._client

    async def complete(self, prompt: str, memories: Sequence[RecallResult]) -> AIResponse:
        """Generate a completion via /api/generate."""
        payload = {
            "model": self.model,
            "system": SYSTEM_PROMPT,
            "prompt": build_prompt(prompt, memories),
            "stream": False,
            "options": {"num_predict": self.max_tokens},
        }
        logger.debug(f"Ollama request: model={self.model}, memories={len(memories)}")

        try:
            response = await self.client.post("/api/generate", json=payload)
            response.raise_for_status()
            data = response.json()
        except httpx.ConnectError as e:
            logger.warning(f"Ollama not reachable at {self.base_url}: {e}")
            raise ProviderError(f"Ollama not reachable at {self.base_url}") from e
        except httpx.HTTPStatusError as e:
            logger.error(f"Ollama error: {e.response.status_code}")
            raise ProviderError(f"Ollama returned HTTP {e.response.status_code}") from e
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"Ollama error: {e}")
            raise ProviderError(f"Ollama request failed: {e}") from e

        content = (data.get("response") or "").strip()
        if not content:
            raise ProviderError("Ollama returned an empty response")

        output_tokens = data.get("eval_count", 0)
        logger.debug(f"Ollama response ({output_tokens} tokens): {content[:200]}")
        return AIResponse(
            content=content,
            model=data.get("model", self.model),
            provider=self.provider_type,
            input_tokens=data.get("prompt_eval_count", 0),
            output_tokens=output_tokens,
        )

    async def health_check(self) -> bool:
        """Check if the Ollama server is running."""
        try:
            response = await self.client.get("/api/tags", timeout=2.0)
            return response.status_code == 200
        except httpx.HTTPError as e:
            logger.debug(f"Ollama health check failed: {e}")
            return False

    async def list_models(self) -> list[str]:
        """List models installed on the Ollama server."""
        try:
            response = await self.client.get("/api/tags", timeout=2.0)
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.debug(f"Cannot list Ollama models: {e}")
            return []
        return [m.get("name", "unknown") for m in data.get("models", [])]

    async def close(self) -> None:
        """Close HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None
