"""Lock-striped vector map shared by the memory store and the chunk index.

Keys are spread over N shards, each with its own lock. Writers only lock the
shard that owns their key; searches copy each shard's records under that
shard's lock and score the copy with numpy afterwards, so a search never
holds a lock while computing similarities.

Keys can be grouped (e.g. all chunks of one file). A group always lives in a
single shard, which makes replacing a whole group one atomic step.
"""

import threading
from collections.abc import Callable, Hashable, Iterator
from dataclasses import dataclass, field
from typing import Any, Generic, Protocol, TypeVar

import numpy as np

from superbrain.brain.vectors import cosine_scores

K = TypeVar("K", bound=Hashable)


class VectorRecord(Protocol):
    vector: np.ndarray


R = TypeVar("R", bound=VectorRecord)


@dataclass
class _Shard:
    lock: threading.RLock = field(default_factory=threading.RLock)
    records: dict = field(default_factory=dict)
    groups: dict = field(default_factory=dict)  # group -> metadata


class ShardedVectorMap(Generic[K, R]):
    """Concurrent map from key to vector-bearing record."""

    def __init__(
        self,
        dimensions: int,
        shard_count: int = 16,
        group_of: Callable[[K], Hashable] | None = None,
    ):
        if shard_count < 1:
            raise ValueError("shard_count must be at least 1")
        self.dimensions = dimensions
        self._group_of = group_of or (lambda key: key)
        self._shards = [_Shard() for _ in range(shard_count)]

    def _shard_for_group(self, group: Hashable) -> _Shard:
        return self._shards[hash(group) % len(self._shards)]

    def _shard_for(self, key: K) -> _Shard:
        return self._shard_for_group(self._group_of(key))

    def _check(self, record: R) -> None:
        if record.vector.shape != (self.dimensions,):
            raise ValueError(
                f"Vector has shape {record.vector.shape}, expected ({self.dimensions},)"
            )

    def put(self, key: K, record: R) -> None:
        self._check(record)
        shard = self._shard_for(key)
        with shard.lock:
            shard.records[key] = record

    def put_if_absent(self, key: K, record: R) -> bool:
        self._check(record)
        shard = self._shard_for(key)
        with shard.lock:
            if key in shard.records:
                return False
            shard.records[key] = record
            return True

    def get(self, key: K) -> R | None:
        shard = self._shard_for(key)
        with shard.lock:
            return shard.records.get(key)

    def pop(self, key: K) -> R | None:
        shard = self._shard_for(key)
        with shard.lock:
            return shard.records.pop(key, None)

    def update(self, key: K, fn: Callable[[R], R]) -> R | None:
        """Replace a record with fn(record) while holding its shard lock."""
        shard = self._shard_for(key)
        with shard.lock:
            record = shard.records.get(key)
            if record is None:
                return None
            updated = fn(record)
            shard.records[key] = updated
            return updated

    def replace_group(self, group: Hashable, items: dict[K, R], meta: Any = None) -> int:
        """Atomically swap every record of a group. Returns how many were removed."""
        for record in items.values():
            self._check(record)
        shard = self._shard_for_group(group)
        with shard.lock:
            stale = [k for k in shard.records if self._group_of(k) == group]
            for key in stale:
                del shard.records[key]
            shard.records.update(items)
            if meta is None:
                shard.groups.pop(group, None)
            else:
                shard.groups[group] = meta
        return len(stale)

    def remove_group(self, group: Hashable) -> int:
        shard = self._shard_for_group(group)
        with shard.lock:
            stale = [k for k in shard.records if self._group_of(k) == group]
            for key in stale:
                del shard.records[key]
            shard.groups.pop(group, None)
        return len(stale)

    def group_meta(self, group: Hashable) -> Any:
        shard = self._shard_for_group(group)
        with shard.lock:
            return shard.groups.get(group)

    def groups(self) -> dict[Hashable, Any]:
        result: dict[Hashable, Any] = {}
        for shard in self._shards:
            with shard.lock:
                result.update(shard.groups)
        return result

    def group_records(self, group: Hashable) -> list[R]:
        shard = self._shard_for_group(group)
        with shard.lock:
            return [r for k, r in shard.records.items() if self._group_of(k) == group]

    def snapshot(self) -> list[R]:
        records: list[R] = []
        for shard in self._shards:
            with shard.lock:
                records.extend(shard.records.values())
        return records

    def keys(self) -> list[K]:
        keys: list[K] = []
        for shard in self._shards:
            with shard.lock:
                keys.extend(shard.records.keys())
        return keys

    def __len__(self) -> int:
        total = 0
        for shard in self._shards:
            with shard.lock:
                total += len(shard.records)
        return total

    def __contains__(self, key: K) -> bool:
        shard = self._shard_for(key)
        with shard.lock:
            return key in shard.records

    def __iter__(self) -> Iterator[R]:
        return iter(self.snapshot())

    def search(
        self,
        query: np.ndarray,
        k: int,
        *,
        predicate: Callable[[R], bool] | None = None,
        min_similarity: float | None = None,
        tie_key: Callable[[R], Any] | None = None,
    ) -> list[tuple[R, float]]:
        """Top-k records by cosine similarity.

        Equal similarities are ordered by tie_key (ascending), then left in
        snapshot order.
        """
        if k <= 0:
            return []
        query = np.asarray(query, dtype=np.float32)
        if query.shape != (self.dimensions,):
            raise ValueError(f"Query has shape {query.shape}, expected ({self.dimensions},)")

        scored: list[tuple[R, float]] = []
        for shard in self._shards:
            with shard.lock:
                records = [
                    r for r in shard.records.values()
                    if predicate is None or predicate(r)
                ]
            if not records:
                continue
            matrix = np.stack([r.vector for r in records])
            scores = cosine_scores(matrix, query)
            for record, score in zip(records, scores):
                similarity = float(score)
                if min_similarity is not None and similarity < min_similarity:
                    continue
                scored.append((record, similarity))

        if tie_key is None:
            scored.sort(key=lambda item: -item[1])
        else:
            scored.sort(key=lambda item: (-item[1], tie_key(item[0])))
        return scored[:k]
