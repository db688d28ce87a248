"""
AI provider interface.
"""

from abc import ABC, abstractmethod
from collections.abc import Sequence
from dataclasses import dataclass
from enum import Enum

from superbrain.core.types import RecallResult


class ProviderType(Enum):
    LOCAL = "ollama"
    CLAUDE = "claude"


SYSTEM_PROMPT = (
    "You are the reasoning layer of a personal memory assistant. "
    "Answer the user's question using the provided memories when they are relevant. "
    "Be concise. If the memories do not help, answer from general knowledge "
    "and say so briefly."
)


@dataclass
class AIResponse:
    """Response from an AI provider."""

    content: str
    model: str
    provider: ProviderType
    input_tokens: int = 0
    output_tokens: int = 0


def format_memory_context(memories: Sequence[RecallResult]) -> str:
    """Render recalled memories as a prompt section."""
    if not memories:
        return ""
    lines = ["## Relevant Memories", ""]
    for i, memory in enumerate(memories, 1):
        lines.append(
            f"{i}. [{memory.memory_type.value}] (similarity: {memory.similarity:.2f}) "
            f"{memory.content}"
        )
    return "\n".join(lines)


def build_prompt(query: str, memories: Sequence[RecallResult]) -> str:
    context = format_memory_context(memories)
    if not context:
        return query
    return f"{context}\n\n## Question\n\n{query}"


class AIProvider(ABC):
    """Abstract completion provider."""

    provider_type: ProviderType
    model: str

    @abstractmethod
    async def complete(self, prompt: str, memories: Sequence[RecallResult]) -> AIResponse:
        """
        Answer a prompt with recalled memories as context.

        Raises:
            ProviderError: unreachable, rejected or malformed response
        """
        ...

    @abstractmethod
    async def health_check(self) -> bool:
        """Check if provider is available."""
        ...

    async def close(self) -> None:
        """Release network resources."""
