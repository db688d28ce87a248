"""
Text embeddings.

The primary path is a deterministic feature-hashing embedder: same text, same
vector, on every machine and every run. When semantic embeddings are enabled
and Ollama answers the startup check, embed() asks Ollama first and falls back
to the hash path on any failure or timeout. embed() never raises.
"""

import asyncio
import hashlib
import re
from enum import Enum

import httpx
import numpy as np

from superbrain.brain.vectors import normalize
from superbrain.core.config import Settings
from superbrain.core.logging import get_logger

logger = get_logger("brain.embeddings")

_WORD_RE = re.compile(r"\w+")
_SPACE_RE = re.compile(r"\s+")

# Feature weights for the hash embedder
WORD_WEIGHT = 2.0
WORD_SECONDARY_WEIGHT = 1.0
TRIGRAM_WEIGHT = 1.0
BIGRAM_WEIGHT = 1.5


class EmbeddingBackend(Enum):
    HASH = "hash"
    OLLAMA = "ollama"


def _feature_hash(feature: str) -> int:
    digest = hashlib.blake2b(feature.encode("utf-8"), digest_size=8).digest()
    return int.from_bytes(digest, "little")


def hash_embed(text: str, dimensions: int) -> np.ndarray:
    """Hash words, word bigrams and character trigrams into a signed vector."""
    vec = np.zeros(dimensions, dtype=np.float32)
    lowered = text.lower()
    words = _WORD_RE.findall(lowered)
    if not words:
        return vec

    def add(feature: str, weight: float, salt: str = "") -> None:
        h = _feature_hash(salt + feature)
        sign = 1.0 if (h >> 63) & 1 == 0 else -1.0
        vec[h % dimensions] += sign * weight

    for word in words:
        add(word, WORD_WEIGHT, "w:")
        add(word, WORD_SECONDARY_WEIGHT, "w2:")

    compact = _SPACE_RE.sub(" ", lowered).strip()
    for i in range(len(compact) - 2):
        add(compact[i:i + 3], TRIGRAM_WEIGHT, "c:")

    for first, second in zip(words, words[1:]):
        add(f"{first} {second}", BIGRAM_WEIGHT, "b:")

    return normalize(vec)


class EmbeddingProvider:
    """Text to fixed-size vector, hash-first with optional Ollama."""

    def __init__(
        self,
        dimensions: int = 384,
        *,
        ollama_url: str = "http://localhost:11434",
        ollama_model: str = "nomic-embed-text",
        timeout: float = 5.0,
        client: httpx.AsyncClient | None = None,
    ):
        if dimensions <= 0:
            raise ValueError("dimensions must be positive")
        self.dimensions = dimensions
        self.ollama_url = ollama_url
        self.ollama_model = ollama_model
        self.timeout = timeout
        self._client = client
        self._backend = EmbeddingBackend.HASH
        self.fallbacks = 0

    @classmethod
    def from_settings(cls, settings: Settings) -> "EmbeddingProvider":
        return cls(
            settings.embedding_dim,
            ollama_url=settings.ollama_url,
            ollama_model=settings.ollama_embed_model,
            timeout=settings.embed_timeout,
        )

    @property
    def backend(self) -> EmbeddingBackend:
        return self._backend

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(base_url=self.ollama_url, timeout=self.timeout)
        return self._client

    async def detect_backend(self) -> bool:
        """Switch to Ollama embeddings if the server answers quickly."""
        try:
            response = await self.client.get("/api/tags", timeout=2.0)
            available = response.status_code == 200
        except httpx.HTTPError as e:
            logger.debug(f"Ollama embeddings check failed: {e}")
            available = False

        self._backend = EmbeddingBackend.OLLAMA if available else EmbeddingBackend.HASH
        logger.info(f"Embedding backend: {self._backend.value}")
        return available

    def use_hash(self) -> None:
        self._backend = EmbeddingBackend.HASH

    def embed_hash(self, text: str) -> np.ndarray:
        return hash_embed(text, self.dimensions)

    async def embed(self, text: str) -> np.ndarray:
        """Embed text. Always returns a vector of length `dimensions`."""
        if self._backend is EmbeddingBackend.OLLAMA and text.strip():
            try:
                return await asyncio.wait_for(self._embed_ollama(text), timeout=self.timeout)
            except Exception as e:
                # Any failure falls back to the deterministic path
                self.fallbacks += 1
                logger.debug(f"Ollama embedding failed, using hash: {e}")
        return self.embed_hash(text)

    async def embed_batch(self, texts: list[str]) -> list[np.ndarray]:
        return [await self.embed(text) for text in texts]

    async def _embed_ollama(self, text: str) -> np.ndarray:
        response = await self.client.post(
            "/api/embed",
            json={"model": self.ollama_model, "input": text},
        )
        response.raise_for_status()
        data = response.json()
        embeddings = data.get("embeddings") or [data.get("embedding")]
        if not embeddings or not embeddings[0]:
            raise ValueError("Ollama returned no embedding")

        raw = np.asarray(embeddings[0], dtype=np.float32)
        vec = np.zeros(self.dimensions, dtype=np.float32)
        size = min(len(raw), self.dimensions)
        vec[:size] = raw[:size]
        return normalize(vec)

    async def close(self) -> None:
        """Close HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None
