"""
Configuration management.

Boot-time settings load from environment variables and .env file.
Prefix: SUPERBRAIN_

Runtime settings (AI provider, privacy, indexed folders) live in AppSettings,
which is persisted in the database and can change while the app runs.
"""

from datetime import datetime
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

AIProviderName = Literal["ollama", "claude", "none"]


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="SUPERBRAIN_",
        env_file=".env",
        env_file_encoding="utf-8",
    )

    # AI providers
    ai_provider: AIProviderName = Field(default="ollama", description="Active AI provider")
    anthropic_api_key: str = Field(default="", description="Claude API key")
    claude_model: str = Field(default="claude-sonnet-4-20250514", description="Claude model")
    ollama_url: str = Field(default="http://localhost:11434", description="Ollama endpoint")
    ollama_model: str = Field(default="llama3.2", description="Ollama completion model")
    ai_timeout: float = Field(default=10.0, gt=0, description="AI completion timeout in seconds; past it the answer falls back to memories")
    ai_max_tokens: int = Field(default=1024, description="Max tokens per AI completion")
    privacy_mode: bool = Field(default=False, description="Never send memories to an AI provider")

    # Embeddings
    embedding_dim: int = Field(default=384, gt=0, description="Embedding dimensionality")
    semantic_embeddings: bool = Field(
        default=False,
        description="Try Ollama for semantic embeddings at startup",
    )
    ollama_embed_model: str = Field(default="nomic-embed-text", description="Ollama embedding model")
    embed_timeout: float = Field(default=5.0, description="Semantic embedding timeout in seconds")

    # Storage
    data_dir: Path = Field(default=Path("data"), description="Data storage directory")
    db_name: str = Field(default="superbrain.db", description="SQLite database name")

    # Memory
    memory_soft_cap: int = Field(default=100_000, ge=0, description="Memory count that triggers eviction (0 = off)")
    importance_floor: float = Field(default=0.9, ge=0.0, le=1.0, description="Memories at or above are never evicted")
    recency_half_life_days: float = Field(default=30.0, gt=0, description="Half-life of the recency factor")
    stale_after_days: float = Field(default=7.0, gt=0, description="Unaccessed memories decay after this")
    importance_decay: float = Field(default=0.95, gt=0, le=1.0, description="Importance multiplier for stale memories")
    recall_limit: int = Field(default=5, ge=1, description="Memories recalled per thought")
    min_recall_similarity: float = Field(default=0.2, description="Similarity cutoff for recall in think")
    thought_importance: float = Field(default=0.5, ge=0.0, le=1.0, description="Importance of stored interactions")
    max_thoughts: int = Field(default=1000, ge=1, description="Thought log capacity")
    merge_similarity: float = Field(
        default=0.95, gt=0, le=1.0, description="Consolidation merges same-type memories this similar"
    )
    prune_importance: float = Field(
        default=0.05, ge=0, le=1.0, description="Consolidation drops memories whose importance fell below this"
    )

    # Learning
    learning_rate: float = Field(default=0.1, gt=0, le=1.0, description="Q-learning alpha")
    discount_factor: float = Field(default=0.9, ge=0, le=1.0, description="Q-learning gamma")
    exploration_rate: float = Field(default=0.2, ge=0, le=1.0, description="Initial epsilon")
    exploration_min: float = Field(default=0.05, ge=0, le=1.0, description="Lower bound for epsilon")
    exploration_max: float = Field(default=0.5, ge=0, le=1.0, description="Upper bound for epsilon")
    exploration_decay: float = Field(default=0.995, gt=0, le=1.0, description="Epsilon decay per update")
    replay_buffer_size: int = Field(default=1000, ge=1, description="Experience replay capacity")
    replay_batch_size: int = Field(default=32, ge=1, description="Transitions replayed per cycle")
    replay_priority_epsilon: float = Field(
        default=0.01, gt=0, description="Replay weight floor so settled transitions still get drawn"
    )
    prune_min_visits: int = Field(default=2, ge=0, description="Q entries below this visit count may be pruned")
    prune_stale_steps: int = Field(default=500, ge=0, description="Steps since last update before pruning")
    reward_confidence_weight: float = Field(default=0.7, description="Reward weight for confidence")
    reward_reuse_weight: float = Field(default=0.3, description="Reward weight for memory reuse")
    reward_ai_failure_penalty: float = Field(default=0.2, description="Reward penalty when AI assist fails")

    # Indexer
    chunk_size: int = Field(default=512, gt=0, description="Tokens per chunk")
    chunk_overlap: int = Field(default=128, ge=0, description="Tokens shared by neighbouring chunks")
    max_scan_depth: int = Field(default=10, ge=1, description="Directory depth limit for scans")
    watch_debounce_seconds: float = Field(default=2.0, ge=0, description="Quiet period before reindexing")
    max_file_size_mb: float = Field(default=10.0, gt=0, description="Files above this size are not parsed")
    file_min_similarity: float = Field(default=0.1, description="Similarity cutoff for file search")

    # Background
    cycle_interval_seconds: float = Field(default=60.0, gt=0, description="Seconds between cognitive cycles")

    @model_validator(mode="after")
    def _check_chunking(self) -> "Settings":
        if self.chunk_overlap >= self.chunk_size:
            raise ValueError("chunk_overlap must be smaller than chunk_size")
        if self.exploration_min > self.exploration_max:
            raise ValueError("exploration_min must not exceed exploration_max")
        return self

    @property
    def db_path(self) -> Path:
        return self.data_dir / self.db_name


class IndexedFolder(BaseModel):
    """A folder whose files are scanned and watched."""

    path: Path
    recursive: bool = True
    exclude: list[str] = Field(default_factory=list)
    last_scanned: datetime | None = None


class AppSettings(BaseModel):
    """Runtime settings persisted in the config table.

    Secrets stay in the environment and are never part of this model.
    """

    ai_provider: AIProviderName = "ollama"
    ollama_model: str = "llama3.2"
    claude_model: str = "claude-sonnet-4-20250514"
    privacy_mode: bool = False
    indexed_folders: list[IndexedFolder] = Field(default_factory=list)

    @classmethod
    def from_settings(cls, settings: Settings) -> "AppSettings":
        return cls(
            ai_provider=settings.ai_provider,
            ollama_model=settings.ollama_model,
            claude_model=settings.claude_model,
            privacy_mode=settings.privacy_mode,
        )

    def folder(self, path: Path) -> IndexedFolder | None:
        resolved = Path(path).resolve()
        for folder in self.indexed_folders:
            if Path(folder.path).resolve() == resolved:
                return folder
        return None


def get_settings() -> Settings:
    """Load settings from the environment."""
    return Settings()
