"""
Core module - configuration, shared types and runtime plumbing.

Components:
- config: Settings management via pydantic-settings
- types: Shared data structures (Memory, Thought, FileChunk, etc.)
- errors: Exception hierarchy surfaced by engine operations
- events: Non-blocking event bus for observers
- clock: Wall clock and virtual clock for tests
- orchestrator: Background job scheduler
- logging: Structured logging setup
"""

from superbrain.core.config import AppSettings, Settings
from superbrain.core.errors import (
    InputError,
    NotFoundError,
    ParseError,
    PersistenceError,
    ProviderError,
    SuperBrainError,
)
from superbrain.core.types import Memory, MemoryType, Thought

__all__ = [
    "AppSettings",
    "Settings",
    "Memory",
    "MemoryType",
    "Thought",
    "SuperBrainError",
    "InputError",
    "ProviderError",
    "PersistenceError",
    "ParseError",
    "NotFoundError",
]
