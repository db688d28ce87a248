"""In-memory chunk index keyed by (path, chunk_index).

All chunks of a file share one shard, so replacing a file's chunks together
with its FileRecord is a single locked step and searches never see a mix of
old and new chunks for the same path.
"""

from collections.abc import Sequence
from dataclasses import dataclass

import numpy as np

from superbrain.brain.store import ShardedVectorMap
from superbrain.core.types import FileChunk, FileRecord


@dataclass
class IndexCounts:
    files: int
    chunks: int


class ChunkIndex:
    """Concurrent vector index over file chunks."""

    def __init__(self, dimensions: int, shard_count: int = 16):
        self._map: ShardedVectorMap[tuple[str, int], FileChunk] = ShardedVectorMap(
            dimensions, shard_count, group_of=lambda key: key[0]
        )

    @property
    def dimensions(self) -> int:
        return self._map.dimensions

    def __len__(self) -> int:
        return len(self._map)

    def replace_path(self, record: FileRecord, chunks: Sequence[FileChunk]) -> None:
        """Swap all chunks of record.path for the given ones."""
        for chunk in chunks:
            if chunk.path != record.path:
                raise ValueError(f"Chunk for {chunk.path} passed with record for {record.path}")
        self._map.replace_group(record.path, {c.key: c for c in chunks}, meta=record)

    def remove_path(self, path: str) -> int:
        return self._map.remove_group(path)

    def file_record(self, path: str) -> FileRecord | None:
        return self._map.group_meta(path)

    def records(self) -> list[FileRecord]:
        return list(self._map.groups().values())

    def chunks_for(self, path: str) -> list[FileChunk]:
        return sorted(self._map.group_records(path), key=lambda c: c.chunk_index)

    def counts(self) -> IndexCounts:
        return IndexCounts(files=len(self._map.groups()), chunks=len(self._map))

    def records_under(self, root: str) -> list[FileRecord]:
        """File records at or below root (by path prefix)."""
        prefix = str(root).rstrip("/\\")
        return [
            record for record in self.records()
            if record.path == prefix or record.path.startswith(prefix + "/")
            or record.path.startswith(prefix + "\\")
        ]

    def chunk_count_under(self, root: str) -> int:
        """Chunks recorded for files below root."""
        return sum(record.chunk_count for record in self.records_under(root))

    def search(
        self,
        query_vector: np.ndarray,
        k: int = 10,
        min_similarity: float | None = None,
    ) -> list[tuple[FileChunk, float]]:
        """Top-k chunks; ties prefer newer files, then earlier chunks."""
        return self._map.search(
            query_vector,
            k,
            min_similarity=min_similarity,
            tie_key=lambda c: (-c.mtime, c.path, c.chunk_index),
        )
