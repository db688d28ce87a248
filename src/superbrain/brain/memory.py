"""Vector memory store.

Memories live in a sharded in-process map for fast concurrent recall and are
written to SQLite as deltas: every insert, access update or deletion marks the
id dirty, and flush() writes the dirty set in one transaction.
"""

import dataclasses
import math
import threading
from collections.abc import Collection
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import TYPE_CHECKING
from uuid import uuid4

import numpy as np

from superbrain.brain.embeddings import EmbeddingProvider
from superbrain.brain.store import ShardedVectorMap
from superbrain.brain.vectors import normalize
from superbrain.core.clock import Clock, SystemClock
from superbrain.core.errors import InputError, NotFoundError, PersistenceError
from superbrain.core.events import EventBus, EventType
from superbrain.core.logging import get_logger
from superbrain.core.types import Memory, MemoryType

if TYPE_CHECKING:
    from superbrain.brain.persistence import BrainPersistence

logger = get_logger("brain.memory")


@dataclass
class MemoryStats:
    count: int
    average_importance: float
    total_stores: int
    total_accesses: int
    by_type: dict[str, int] = field(default_factory=dict)


@dataclass
class ConsolidationResult:
    merged: int
    pruned: int
    remaining: int


def _validate_importance(importance: float) -> float:
    if not isinstance(importance, (int, float)) or math.isnan(importance):
        raise InputError(f"Importance must be a number, got {importance!r}")
    if not 0.0 <= importance <= 1.0:
        raise InputError(f"Importance must be within [0, 1], got {importance}")
    return float(importance)


class MemoryStore:
    """Concurrent memory store with cosine recall and importance-aware eviction."""

    def __init__(
        self,
        embedder: EmbeddingProvider,
        events: EventBus | None = None,
        *,
        soft_cap: int = 0,
        importance_floor: float = 0.9,
        recency_half_life: timedelta = timedelta(days=30),
        shard_count: int = 16,
        clock: Clock | None = None,
    ):
        self.embedder = embedder
        self.events = events
        self.soft_cap = soft_cap
        self.importance_floor = importance_floor
        self.recency_half_life = recency_half_life
        self.clock = clock or SystemClock()
        self._map: ShardedVectorMap[str, Memory] = ShardedVectorMap(
            embedder.dimensions, shard_count
        )
        self._dirty: set[str] = set()
        self._removed: set[str] = set()
        self._dirty_lock = threading.Lock()
        self._stats_lock = threading.Lock()
        self.total_stores = 0
        self.total_accesses = 0

    @property
    def dimensions(self) -> int:
        return self._map.dimensions

    def __len__(self) -> int:
        return len(self._map)

    def __contains__(self, memory_id: str) -> bool:
        return memory_id in self._map

    # Writes

    async def insert(
        self,
        content: str,
        memory_type: MemoryType | str = MemoryType.SEMANTIC,
        importance: float = 0.5,
    ) -> str:
        """Embed and store content. Returns the new memory id."""
        if not content or not content.strip():
            raise InputError("Memory content must not be empty")
        memory_type = MemoryType.parse(memory_type)
        importance = _validate_importance(importance)

        vector = await self.embedder.embed(content)
        memory = self.insert_vector(content, vector, memory_type, importance)
        return memory.id

    def insert_vector(
        self,
        content: str,
        vector: np.ndarray,
        memory_type: MemoryType | str = MemoryType.SEMANTIC,
        importance: float = 0.5,
    ) -> Memory:
        """Store content with a precomputed embedding."""
        if not content or not content.strip():
            raise InputError("Memory content must not be empty")
        memory_type = MemoryType.parse(memory_type)
        importance = _validate_importance(importance)

        now = self.clock.now()
        memory = Memory(
            id=str(uuid4()),
            content=content,
            vector=normalize(vector),
            memory_type=memory_type,
            importance=importance,
            created_at=now,
            last_accessed=now,
        )
        # uuid4 collisions are not expected; retry rather than overwrite
        while not self._map.put_if_absent(memory.id, memory):
            memory.id = str(uuid4())

        self._mark_dirty(memory.id)
        with self._stats_lock:
            self.total_stores += 1

        logger.debug(f"Stored {memory_type.value} memory {memory.id} (importance={importance:.2f})")
        if self.events:
            self.events.publish(EventType.MEMORY_STORED, {
                "id": memory.id,
                "memory_type": memory_type.value,
                "importance": importance,
                "preview": content[:80],
            })

        self.evict(protect={memory.id})
        return memory

    def restore(self, memory: Memory) -> None:
        """Put back a memory loaded from persistence (not marked dirty)."""
        self._map.put(memory.id, memory)

    def delete(self, memory_id: str) -> bool:
        memory = self._map.pop(memory_id)
        if memory is None:
            return False
        with self._dirty_lock:
            self._dirty.discard(memory_id)
            self._removed.add(memory_id)
        for other_id in memory.connections:
            self._unlink(other_id, memory_id)
        return True

    def connect(self, memory_id: str, other_id: str) -> bool:
        """Link two memories both ways. False if either is missing."""
        if memory_id == other_id:
            raise InputError("A memory cannot be connected to itself")
        if memory_id not in self._map or other_id not in self._map:
            return False
        for source, target in ((memory_id, other_id), (other_id, memory_id)):
            updated = self._map.update(
                source,
                lambda m, target=target: m if target in m.connections else dataclasses.replace(
                    m, connections=(*m.connections, target)
                ),
            )
            if updated is not None:
                self._mark_dirty(source)
        return True

    def _unlink(self, memory_id: str, other_id: str) -> None:
        updated = self._map.update(
            memory_id,
            lambda m: dataclasses.replace(
                m, connections=tuple(c for c in m.connections if c != other_id)
            ),
        )
        if updated is not None:
            self._mark_dirty(memory_id)

    def connected(self, memory_id: str) -> list[Memory]:
        """Memories linked to memory_id that still exist."""
        memory = self.get(memory_id)
        return [m for m in (self._map.get(c) for c in memory.connections) if m is not None]

    def set_importance(self, memory_id: str, importance: float) -> Memory:
        importance = _validate_importance(importance)
        updated = self._map.update(
            memory_id, lambda m: dataclasses.replace(m, importance=importance)
        )
        if updated is None:
            raise NotFoundError(f"Memory not found: {memory_id}")
        self._mark_dirty(memory_id)
        return updated

    # Reads

    def get(self, memory_id: str) -> Memory:
        memory = self._map.get(memory_id)
        if memory is None:
            raise NotFoundError(f"Memory not found: {memory_id}")
        return memory

    def all(self) -> list[Memory]:
        return self._map.snapshot()

    def search(
        self,
        query_vector: np.ndarray,
        k: int = 10,
        *,
        memory_type: MemoryType | str | None = None,
        min_similarity: float | None = None,
        touch: bool = True,
    ) -> list[tuple[Memory, float]]:
        """Top-k memories by cosine similarity.

        Ties rank higher importance first, then newer memories. Returned
        memories count as accessed unless touch is False.
        """
        predicate = None
        if memory_type is not None:
            wanted = MemoryType.parse(memory_type)
            predicate = lambda m: m.memory_type is wanted  # noqa: E731

        results = self._map.search(
            query_vector,
            k,
            predicate=predicate,
            min_similarity=min_similarity,
            tie_key=lambda m: (-m.importance, -m.created_at.timestamp()),
        )
        if not touch:
            return results

        touched = self.touch([memory.id for memory, _ in results])
        # Deleted between ranking and touch; still report what was ranked
        return [(touched.get(memory.id, memory), similarity) for memory, similarity in results]

    def touch(self, memory_ids: Collection[str]) -> dict[str, Memory]:
        """Record one access of each id. Returns the updated memories."""
        now = self.clock.now()
        touched: dict[str, Memory] = {}
        for memory_id in memory_ids:
            updated = self._map.update(
                memory_id,
                lambda m: dataclasses.replace(
                    m, last_accessed=now, access_count=m.access_count + 1
                ),
            )
            if updated is not None:
                self._mark_dirty(memory_id)
                touched[memory_id] = updated

        with self._stats_lock:
            self.total_accesses += len(touched)
        return touched

    # Maintenance

    def eviction_score(self, memory: Memory, now: datetime | None = None) -> float:
        """importance x recency decay x log(1 + accesses); lower goes first."""
        now = now or self.clock.now()
        age = max(0.0, (now - memory.last_accessed).total_seconds())
        half_life = self.recency_half_life.total_seconds()
        recency = 0.5 ** (age / half_life) if half_life > 0 else 1.0
        return memory.importance * recency * math.log1p(memory.access_count)

    def evict(
        self,
        target: int | None = None,
        protect: Collection[str] = (),
    ) -> list[str]:
        """Drop the lowest-scored evictable memories until len <= target.

        Without a target, evicts down to 90% of the soft cap, and only when
        the cap is exceeded. Memories at or above the importance floor stay,
        as do the ids in protect.
        """
        if target is None:
            if self.soft_cap <= 0 or len(self) <= self.soft_cap:
                return []
            target = int(self.soft_cap * 0.9)

        excess = len(self) - target
        if excess <= 0:
            return []

        now = self.clock.now()
        candidates = [
            m for m in self._map.snapshot()
            if m.importance < self.importance_floor and m.id not in protect
        ]
        candidates.sort(key=lambda m: (self.eviction_score(m, now), m.created_at))

        evicted: list[str] = []
        for memory in candidates[:excess]:
            if self.delete(memory.id):
                evicted.append(memory.id)

        if evicted:
            logger.info(f"Evicted {len(evicted)} memories (target={target})")
        return evicted

    def decay_stale(self, stale_after: timedelta, factor: float) -> int:
        """Scale down importance of memories not accessed within stale_after."""
        now = self.clock.now()
        decayed = 0
        for memory in self._map.snapshot():
            if now - memory.last_accessed <= stale_after:
                continue
            updated = self._map.update(
                memory.id,
                lambda m: dataclasses.replace(m, importance=max(0.0, m.importance * factor)),
            )
            if updated is not None:
                self._mark_dirty(memory.id)
                decayed += 1
        if decayed:
            logger.debug(f"Decayed importance of {decayed} stale memories")
        return decayed

    def consolidate(
        self,
        merge_similarity: float = 0.95,
        prune_below: float = 0.05,
    ) -> ConsolidationResult:
        """Prune memories whose importance has decayed away, then merge near-duplicates.

        Memories of the same type with cosine similarity at or above
        merge_similarity fold into the most valuable of them: it keeps the highest
        importance, the summed access count and the union of the links.
        """
        pruned = 0
        for memory in self._map.snapshot():
            if memory.importance < min(prune_below, self.importance_floor) and self.delete(memory.id):
                pruned += 1

        memories = sorted(
            self._map.snapshot(),
            key=lambda m: (-m.importance, -m.access_count, m.created_at),
        )
        merged = 0
        if memories:
            matrix = np.stack([m.vector for m in memories])
            absorbed: set[str] = set()
            for i, keeper in enumerate(memories):
                if keeper.id in absorbed:
                    continue
                similarities = matrix[i + 1:] @ keeper.vector
                group = [
                    memories[i + 1 + j] for j in np.flatnonzero(similarities >= merge_similarity)
                    if memories[i + 1 + j].id not in absorbed
                    and memories[i + 1 + j].memory_type is keeper.memory_type
                ]
                if group:
                    absorbed.update(m.id for m in group)
                    merged += self._absorb(keeper.id, group)

        if pruned or merged:
            logger.info(f"Consolidated memories: {merged} merged, {pruned} pruned")
        return ConsolidationResult(merged=merged, pruned=pruned, remaining=len(self))

    def _absorb(self, keeper_id: str, duplicates: list[Memory]) -> int:
        duplicate_ids = {m.id for m in duplicates}
        links = {c for m in duplicates for c in m.connections} - duplicate_ids - {keeper_id}

        def merge(keeper: Memory) -> Memory:
            return dataclasses.replace(
                keeper,
                importance=max([keeper.importance, *(m.importance for m in duplicates)]),
                access_count=keeper.access_count + sum(m.access_count for m in duplicates),
                last_accessed=max([keeper.last_accessed, *(m.last_accessed for m in duplicates)]),
                connections=tuple(c for c in keeper.connections if c not in duplicate_ids),
            )

        if self._map.update(keeper_id, merge) is None:
            return 0
        self._mark_dirty(keeper_id)
        removed = sum(1 for memory_id in duplicate_ids if self.delete(memory_id))
        for other_id in links:
            self.connect(keeper_id, other_id)
        return removed

    def stats(self) -> MemoryStats:
        memories = self._map.snapshot()
        by_type: dict[str, int] = {}
        for memory in memories:
            by_type[memory.memory_type.value] = by_type.get(memory.memory_type.value, 0) + 1
        average = sum(m.importance for m in memories) / len(memories) if memories else 0.0
        return MemoryStats(
            count=len(memories),
            average_importance=average,
            total_stores=self.total_stores,
            total_accesses=self.total_accesses,
            by_type=by_type,
        )

    # Persistence

    def _mark_dirty(self, memory_id: str) -> None:
        with self._dirty_lock:
            self._dirty.add(memory_id)
            self._removed.discard(memory_id)

    @property
    def pending_changes(self) -> int:
        with self._dirty_lock:
            return len(self._dirty) + len(self._removed)

    def take_changes(self) -> tuple[list[Memory], list[str]]:
        """Claim the dirty delta: (memories to upsert, ids to delete)."""
        with self._dirty_lock:
            dirty, removed = self._dirty, self._removed
            self._dirty, self._removed = set(), set()
        upserts = [m for m in (self._map.get(i) for i in dirty) if m is not None]
        return upserts, sorted(removed)

    def requeue_changes(self, upserts: list[Memory], removed: list[str]) -> None:
        """Give back a claimed delta after a failed write."""
        with self._dirty_lock:
            for memory in upserts:
                if memory.id not in self._removed:
                    self._dirty.add(memory.id)
            for memory_id in removed:
                if memory_id not in self._map:
                    self._removed.add(memory_id)

    async def persist(self, persistence: "BrainPersistence", memory_id: str) -> None:
        """Write one memory through to storage in its own transaction.

        A memory evicted before its write-through is left to the next flush,
        which records the deletion.
        """
        memory = self._map.get(memory_id)
        if memory is None:
            return
        with self._dirty_lock:
            self._dirty.discard(memory_id)
        try:
            await persistence.save_memories([memory], [])
        except PersistenceError:
            self._mark_dirty(memory_id)
            raise

    async def flush(self, persistence: "BrainPersistence") -> int:
        """Write the dirty delta in one transaction. Returns rows written."""
        upserts, removed = self.take_changes()
        if not upserts and not removed:
            return 0
        try:
            await persistence.save_memories(upserts, removed)
        except BaseException:
            # Nothing applied in memory is rolled back; retry on next flush
            self.requeue_changes(upserts, removed)
            raise
        logger.debug(f"Flushed {len(upserts)} memories, {len(removed)} deletions")
        return len(upserts) + len(removed)

    async def load(self, persistence: "BrainPersistence") -> int:
        memories = await persistence.load_memories()
        loaded = 0
        for memory in memories:
            if memory.vector.shape != (self.dimensions,):
                logger.warning(
                    f"Skipping memory {memory.id}: stored vector has "
                    f"{memory.vector.shape[0]} dims, expected {self.dimensions}"
                )
                continue
            self.restore(memory)
            loaded += 1
        logger.info(f"Loaded {loaded} memories")
        return loaded
