"""
Shared type definitions.

Core data structures used across modules.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any

import numpy as np

from superbrain.core.errors import InputError


class MemoryType(Enum):
    SEMANTIC = "semantic"
    EPISODIC = "episodic"
    PROCEDURAL = "procedural"
    WORKING = "working"
    META = "meta"
    CAUSAL = "causal"
    GOAL = "goal"
    EMOTIONAL = "emotional"

    @classmethod
    def parse(cls, value: "str | MemoryType") -> "MemoryType":
        """Parse a type name, case-insensitive."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            names = ", ".join(t.value for t in cls)
            raise InputError(f"Unknown memory type {value!r} (expected one of: {names})") from None


@dataclass
class Memory:
    """A stored piece of text with its embedding and usage metadata."""

    id: str
    content: str
    vector: np.ndarray
    memory_type: MemoryType
    importance: float
    created_at: datetime
    last_accessed: datetime
    access_count: int = 0
    connections: tuple[str, ...] = ()


@dataclass
class RecallResult:
    """A memory returned from recall, scored against the query."""

    id: str
    content: str
    memory_type: MemoryType
    importance: float
    similarity: float

    @classmethod
    def from_memory(cls, memory: Memory, similarity: float) -> "RecallResult":
        return cls(
            id=memory.id,
            content=memory.content,
            memory_type=memory.memory_type,
            importance=memory.importance,
            similarity=similarity,
        )


@dataclass
class Thought:
    """Result of one think() call."""

    id: str
    input: str
    response: str
    confidence: float
    memory_ids: list[str]
    ai_enhanced: bool
    strategy: str
    timestamp: datetime

    @property
    def memory_count(self) -> int:
        return len(self.memory_ids)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "input": self.input,
            "response": self.response,
            "confidence": self.confidence,
            "memory_ids": list(self.memory_ids),
            "memory_count": self.memory_count,
            "ai_enhanced": self.ai_enhanced,
            "strategy": self.strategy,
            "timestamp": self.timestamp.isoformat(),
        }


class GoalStatus(Enum):
    PENDING = "pending"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"

    @classmethod
    def parse(cls, value: "str | GoalStatus") -> "GoalStatus":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            names = ", ".join(s.value for s in cls)
            raise InputError(f"Unknown goal status {value!r} (expected one of: {names})") from None


@dataclass
class Goal:
    """Something the user is working towards, with tracked progress."""

    id: str
    description: str
    priority: float
    progress: float
    status: GoalStatus
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "description": self.description,
            "priority": self.priority,
            "progress": self.progress,
            "status": self.status.value,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


@dataclass
class Belief:
    """A statement held with some confidence, and where it came from."""

    id: str
    content: str
    confidence: float
    source: str
    created_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "content": self.content,
            "confidence": self.confidence,
            "source": self.source,
            "created_at": self.created_at.isoformat(),
        }


@dataclass
class FileRecord:
    """Bookkeeping for one indexed file."""

    path: str
    name: str
    file_type: str
    mtime: float
    content_hash: str
    chunk_count: int
    indexed_at: datetime

    @classmethod
    def for_path(
        cls,
        path: Path,
        mtime: float,
        content_hash: str,
        chunk_count: int,
        indexed_at: datetime,
    ) -> "FileRecord":
        return cls(
            path=str(path),
            name=path.name,
            file_type=path.suffix.lstrip(".").lower(),
            mtime=mtime,
            content_hash=content_hash,
            chunk_count=chunk_count,
            indexed_at=indexed_at,
        )


@dataclass
class FileChunk:
    """One overlapping text window of an indexed file."""

    path: str
    chunk_index: int
    text: str
    vector: np.ndarray
    file_type: str
    mtime: float

    @property
    def key(self) -> tuple[str, int]:
        return (self.path, self.chunk_index)


@dataclass
class FileResult:
    """A file chunk matched by search."""

    path: str
    name: str
    file_type: str
    chunk: str
    chunk_index: int
    similarity: float


@dataclass
class Event:
    """Something observers may want to know about."""

    name: str
    payload: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=datetime.now)
