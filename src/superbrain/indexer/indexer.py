"""
File indexer.

scan(): walk roots -> skip unchanged files -> parse -> chunk -> embed ->
persist (one transaction per file) -> swap the file's chunks in the index.

Per-file failures are logged and counted, never fatal to the scan. Writes for
one path are serialised, and every file is replaced as a unit, so cancelling a
scan leaves each file either fully old or fully new.
"""

import asyncio
import contextlib
import fnmatch
import hashlib
import os
from collections.abc import AsyncIterator, Iterable, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING

from superbrain.brain.embeddings import EmbeddingProvider
from superbrain.core.clock import Clock, SystemClock
from superbrain.core.config import IndexedFolder, Settings
from superbrain.core.errors import InputError, ParseError
from superbrain.core.events import EventBus, EventType
from superbrain.core.logging import get_logger
from superbrain.core.types import FileChunk, FileRecord, FileResult
from superbrain.indexer.chunker import chunk_text
from superbrain.indexer.index import ChunkIndex
from superbrain.indexer.parser import file_type, is_supported, parse_file
from superbrain.indexer.watcher import ChangeKind, FileChange

if TYPE_CHECKING:
    from superbrain.brain.persistence import BrainPersistence

logger = get_logger("indexer.indexer")

SKIP_DIRS = frozenset({
    "node_modules", "target", "build", "dist", "out", "__pycache__", "venv", ".venv",
    "env", ".git", ".hg", ".svn", ".idea", ".vscode", ".cache", ".tox", ".mypy_cache",
    ".pytest_cache", ".ruff_cache", "site-packages", "vendor", "bower_components",
    ".next", ".nuxt", "coverage", ".gradle", "Pods", "DerivedData",
})


@dataclass
class IndexerConfig:
    chunk_size: int = 512
    chunk_overlap: int = 128
    max_depth: int = 10
    max_file_bytes: int = 10 * 1_048_576
    min_similarity: float = 0.1

    def __post_init__(self) -> None:
        if not 0 <= self.chunk_overlap < self.chunk_size:
            raise ValueError("chunk_overlap must be in [0, chunk_size)")

    @classmethod
    def from_settings(cls, settings: Settings) -> "IndexerConfig":
        return cls(
            chunk_size=settings.chunk_size,
            chunk_overlap=settings.chunk_overlap,
            max_depth=settings.max_scan_depth,
            max_file_bytes=int(settings.max_file_size_mb * 1_048_576),
            min_similarity=settings.file_min_similarity,
        )


@dataclass
class ScanReport:
    roots: list[str] = field(default_factory=list)
    files_seen: int = 0
    files_indexed: int = 0
    files_unchanged: int = 0
    files_failed: int = 0
    files_removed: int = 0
    chunks_indexed: int = 0
    total_chunks: int = 0
    cancelled: bool = False
    started_at: datetime | None = None
    finished_at: datetime | None = None


@dataclass
class IndexStats:
    file_count: int
    chunk_count: int
    roots: list[str]
    is_indexing: bool
    last_scan: ScanReport | None


def collect_files(
    root: Path,
    max_depth: int = 10,
    exclude: Sequence[str] = (),
    recursive: bool = True,
) -> list[Path]:
    """Supported files under root, skipping hidden entries and noise directories."""
    found: list[Path] = []

    def excluded(path: Path) -> bool:
        rel = path.relative_to(root).as_posix()
        return any(fnmatch.fnmatch(path.name, p) or fnmatch.fnmatch(rel, p) for p in exclude)

    def walk(directory: Path, depth: int) -> None:
        if depth <= 0:
            return
        try:
            entries = sorted(os.scandir(directory), key=lambda e: e.name)
        except OSError as e:
            logger.debug(f"Cannot list {directory}: {e}")
            return
        for entry in entries:
            if entry.name.startswith("."):
                continue
            path = Path(entry.path)
            if exclude and excluded(path):
                continue
            try:
                if entry.is_dir(follow_symlinks=False):
                    if recursive and entry.name not in SKIP_DIRS:
                        walk(path, depth - 1)
                elif entry.is_file() and is_supported(path):
                    found.append(path)
            except OSError:
                continue

    walk(root, max_depth if recursive else 1)
    return found


@dataclass
class _PathLock:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


def _hash_file(path: Path) -> str:
    digest = hashlib.sha256()
    with path.open("rb") as f:
        for block in iter(lambda: f.read(1 << 16), b""):
            digest.update(block)
    return digest.hexdigest()


class FileIndexer:
    """Keeps the chunk index in step with the files under the indexed folders."""

    def __init__(
        self,
        index: ChunkIndex,
        embedder: EmbeddingProvider,
        *,
        config: IndexerConfig | None = None,
        persistence: "BrainPersistence | None" = None,
        events: EventBus | None = None,
        clock: Clock | None = None,
    ):
        if index.dimensions != embedder.dimensions:
            raise ValueError("Index and embedder dimensions differ")
        self.index = index
        self.embedder = embedder
        self.config = config or IndexerConfig()
        self.persistence = persistence
        self.events = events
        self.clock = clock or SystemClock()
        self._folders: dict[str, IndexedFolder] = {}
        self._path_locks: dict[str, _PathLock] = {}
        self._scan_task: asyncio.Task | None = None
        self._scan_key: tuple[str, ...] = ()
        self.last_report: ScanReport | None = None

    # Roots

    def set_folders(self, folders: Iterable[IndexedFolder]) -> None:
        self._folders = {str(Path(f.path).resolve()): f for f in folders}

    def add_folder(self, folder: IndexedFolder) -> None:
        self._folders[str(Path(folder.path).resolve())] = folder

    def remove_folder(self, path: Path | str) -> bool:
        return self._folders.pop(str(Path(path).resolve()), None) is not None

    @property
    def folders(self) -> list[IndexedFolder]:
        return list(self._folders.values())

    @property
    def is_indexing(self) -> bool:
        return self._scan_task is not None and not self._scan_task.done()

    def _folder_for(self, path: Path) -> IndexedFolder | None:
        for root, folder in self._folders.items():
            if path == Path(root) or Path(root) in path.parents:
                return folder
        return None

    @contextlib.asynccontextmanager
    async def _locked(self, path: str) -> AsyncIterator[None]:
        """Serialise writers of one path; the lock is dropped when unused."""
        entry = self._path_locks.get(path)
        if entry is None:
            entry = self._path_locks[path] = _PathLock()
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0:
                del self._path_locks[path]

    # Single files

    async def index_path(self, path: Path) -> int | None:
        """(Re)index one file. Returns new chunk count, or None when unchanged.

        Raises:
            ParseError: the file could not be read or parsed
        """
        key = str(path)
        async with self._locked(key):
            try:
                stat = path.stat()
            except OSError as e:
                raise ParseError(key, f"cannot stat: {e}") from e

            existing = self.index.file_record(key)
            if existing is not None and existing.mtime == stat.st_mtime:
                return None

            try:
                content_hash = await asyncio.to_thread(_hash_file, path)
            except OSError as e:
                raise ParseError(key, f"cannot read: {e}") from e

            if existing is not None and existing.content_hash == content_hash:
                await self._touch(existing, stat.st_mtime)
                return None

            text = await asyncio.to_thread(parse_file, path, self.config.max_file_bytes)
            pieces = chunk_text(text, self.config.chunk_size, self.config.chunk_overlap)
            vectors = await self.embedder.embed_batch(pieces)

            kind = file_type(path)
            chunks = [
                FileChunk(
                    path=key,
                    chunk_index=i,
                    text=piece,
                    vector=vector,
                    file_type=kind,
                    mtime=stat.st_mtime,
                )
                for i, (piece, vector) in enumerate(zip(pieces, vectors))
            ]
            record = FileRecord(
                path=key,
                name=path.name,
                file_type=kind,
                mtime=stat.st_mtime,
                content_hash=content_hash,
                chunk_count=len(chunks),
                indexed_at=self.clock.now(),
            )

            # Disk first: if the write fails the in-memory index keeps the old version
            if self.persistence is not None:
                await self.persistence.replace_file_chunks(record, chunks)
            self.index.replace_path(record, chunks)
            logger.debug(f"Indexed {key}: {len(chunks)} chunks")
            return len(chunks)

    async def _touch(self, record: FileRecord, mtime: float) -> None:
        if self.persistence is not None:
            await self.persistence.touch_file(record.path, mtime)
        chunks = [
            FileChunk(c.path, c.chunk_index, c.text, c.vector, c.file_type, mtime)
            for c in self.index.chunks_for(record.path)
        ]
        updated = FileRecord(
            path=record.path,
            name=record.name,
            file_type=record.file_type,
            mtime=mtime,
            content_hash=record.content_hash,
            chunk_count=record.chunk_count,
            indexed_at=record.indexed_at,
        )
        self.index.replace_path(updated, chunks)

    async def remove_path(self, path: Path | str) -> int:
        """Drop a file's chunks from the index and storage."""
        key = str(path)
        async with self._locked(key):
            if self.persistence is not None:
                await self.persistence.delete_file(key)
            removed = self.index.remove_path(key)
        if removed:
            logger.debug(f"Removed {removed} chunks for {key}")
        return removed

    async def reindex_path(self, path: Path | str) -> int | None:
        """Bring one path up to date; missing files are removed."""
        path = Path(path)
        if not path.exists():
            await self.remove_path(path)
            return 0
        if not is_supported(path):
            return None
        return await self.index_path(path)

    async def reindex_directory(self, directory: Path) -> int:
        """Sync one directory below a root: index its files, drop vanished ones.

        Returns the number of files (re)indexed.
        """
        if not directory.is_dir():
            await self.remove_under(directory)
            return 0
        files = await asyncio.to_thread(collect_files, directory, self.config.max_depth)
        files = [p for p in files if not self._ignored(p)]
        await self._prune_missing(directory, files)

        indexed = 0
        for path in files:
            try:
                if await self.index_path(path) is not None:
                    indexed += 1
            except ParseError as e:
                logger.warning(f"Skipping {e.path}: {e.reason}")
        return indexed

    def _ignored(self, path: Path) -> bool:
        folder = self._folder_for(path)
        if folder is None:
            # Outside every indexed folder, e.g. the far end of a move
            return True
        rel = path.relative_to(Path(folder.path).resolve())
        if any(part.startswith(".") for part in rel.parts):
            return True
        dirs = rel.parts if path.is_dir() else rel.parts[:-1]
        if any(part in SKIP_DIRS for part in dirs):
            return True
        rel_posix = rel.as_posix()
        return any(
            fnmatch.fnmatch(path.name, p) or fnmatch.fnmatch(rel_posix, p)
            for p in folder.exclude
        )

    async def handle_change(self, change: FileChange) -> None:
        """Debounced watcher callback for files and directories."""
        path = Path(change.path)
        if self._ignored(path):
            return

        if change.kind is ChangeKind.DELETED:
            # A deleted directory takes every file below it along
            removed = await self.remove_under(path)
            if removed > 1:
                logger.info(f"Removed {removed} files under {path}")
            return
        if path.is_dir():
            indexed = await self.reindex_directory(path)
            if indexed:
                logger.info(f"Indexed {indexed} files under {path}")
            return
        try:
            count = await self.reindex_path(path)
        except ParseError as e:
            logger.warning(f"Skipping {e.path}: {e.reason}")
            return
        if count:
            logger.info(f"Reindexed {path} ({count} chunks)")

    # Scans

    async def _prune_missing(self, root: Path, found: Sequence[Path]) -> int:
        """Drop indexed files under root that the walk no longer finds."""
        keep = {str(p) for p in found}
        stale = [r.path for r in self.index.records_under(str(root)) if r.path not in keep]
        for path in stale:
            await self.remove_path(path)
        if stale:
            logger.info(f"Removed {len(stale)} files no longer under {root}")
        return len(stale)

    async def remove_under(self, root: Path | str) -> int:
        """Drop every indexed file at or below root. Returns files removed."""
        paths = [r.path for r in self.index.records_under(str(root))]
        for path in paths:
            await self.remove_path(path)
        return len(paths)

    async def scan(self, roots: Sequence[IndexedFolder] | None = None) -> ScanReport:
        """Index every supported file under the given (or configured) folders."""
        folders = list(roots) if roots is not None else self.folders
        report = ScanReport(
            roots=[str(Path(f.path).resolve()) for f in folders],
            started_at=self.clock.now(),
        )
        logger.info(f"Scanning {len(folders)} folders")

        try:
            for folder in folders:
                root = Path(folder.path).resolve()
                if not root.is_dir():
                    logger.warning(f"Indexed folder missing: {root}")
                    continue
                files = await asyncio.to_thread(
                    collect_files, root, self.config.max_depth, folder.exclude, folder.recursive
                )
                report.files_removed += await self._prune_missing(root, files)
                for path in files:
                    report.files_seen += 1
                    try:
                        count = await self.index_path(path)
                    except ParseError as e:
                        report.files_failed += 1
                        logger.warning(f"Skipping {e.path}: {e.reason}")
                        continue
                    if count is None:
                        report.files_unchanged += 1
                    else:
                        report.files_indexed += 1
                        report.chunks_indexed += count
                folder.last_scanned = self.clock.now()
        except asyncio.CancelledError:
            report.cancelled = True
            logger.info(
                f"Scan cancelled after {report.files_seen} files "
                f"({report.files_indexed} indexed)"
            )
            raise
        finally:
            report.total_chunks = sum(self.index.chunk_count_under(r) for r in report.roots)
            report.finished_at = self.clock.now()
            self.last_report = report

        logger.info(
            f"Scan complete: {report.files_seen} files, {report.files_indexed} indexed, "
            f"{report.files_unchanged} unchanged, {report.files_failed} failed, "
            f"{report.files_removed} removed, {report.total_chunks} chunks"
        )
        if self.events:
            self.events.publish(EventType.FILES_INDEXED, {
                "files_indexed": report.files_indexed,
                "files_failed": report.files_failed,
                "total_chunks": report.total_chunks,
            })
        return report

    async def index_files(self, roots: Sequence[IndexedFolder] | None = None) -> ScanReport:
        """Run a scan, joining one already in flight for the same roots.

        A request for different roots waits for the running scan, then starts
        its own. A scan stopped with cancel_scan() returns its partial report.
        """
        folders = list(roots) if roots is not None else self.folders
        key = tuple(sorted(str(Path(f.path).resolve()) for f in folders))

        while True:
            task = self._scan_task
            if task is not None and not task.done():
                if self._scan_key == key:
                    break
                await asyncio.wait({task})
                continue
            task = asyncio.create_task(self.scan(folders))
            self._scan_task, self._scan_key = task, key
            break

        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if task.cancelled() and not (current and current.cancelling()):
                return self.last_report or ScanReport(roots=list(key), cancelled=True)
            raise

    async def cancel_scan(self) -> bool:
        """Stop the running scan. Files already committed stay indexed."""
        task = self._scan_task
        if task is None or task.done():
            return False
        task.cancel()
        await asyncio.wait({task})
        return True

    # Search

    async def search(self, query: str, limit: int = 10) -> list[FileResult]:
        if not query or not query.strip():
            raise InputError("Query must not be empty")
        if limit < 1:
            raise InputError(f"Limit must be at least 1, got {limit}")
        vector = await self.embedder.embed(query)
        results = []
        for chunk, similarity in self.index.search(vector, limit, self.config.min_similarity):
            results.append(FileResult(
                path=chunk.path,
                name=Path(chunk.path).name,
                file_type=chunk.file_type,
                chunk=chunk.text,
                chunk_index=chunk.chunk_index,
                similarity=similarity,
            ))
        return results

    def stats(self) -> IndexStats:
        counts = self.index.counts()
        return IndexStats(
            file_count=counts.files,
            chunk_count=counts.chunks,
            roots=list(self._folders),
            is_indexing=self.is_indexing,
            last_scan=self.last_report,
        )

    async def load(self) -> int:
        """Restore the chunk index from storage."""
        if self.persistence is None:
            return 0
        restored = 0
        for record, chunks in await self.persistence.load_file_index():
            usable = [c for c in chunks if c.vector.shape == (self.index.dimensions,)]
            if len(usable) != len(chunks):
                logger.warning(f"Dropping {record.path}: stored vectors have the wrong size")
                continue
            self.index.replace_path(record, usable)
            restored += 1
        logger.info(f"Loaded {restored} indexed files")
        return restored
