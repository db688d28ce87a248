"""Tests for debounced file watching."""

import asyncio
import shutil
from pathlib import Path

import pytest

from superbrain.brain.embeddings import EmbeddingProvider
from superbrain.core.clock import VirtualClock
from superbrain.core.config import IndexedFolder
from superbrain.indexer.index import ChunkIndex
from superbrain.indexer.indexer import FileIndexer
from superbrain.indexer.watcher import ChangeDebouncer, ChangeKind, FileChange, FileWatcher


@pytest.fixture
def clock():
    return VirtualClock()


@pytest.fixture
def handled():
    return []


@pytest.fixture
def debouncer(clock: VirtualClock, handled: list):
    async def handler(change: FileChange) -> None:
        handled.append(change)

    return ChangeDebouncer(handler, debounce_seconds=2.0, clock=clock)


@pytest.mark.asyncio
async def test_burst_is_coalesced(debouncer: ChangeDebouncer, clock: VirtualClock, handled: list):
    """A burst of events for one path yields a single reindex."""
    for _ in range(5):
        debouncer.notify(FileChange(ChangeKind.MODIFIED, "/docs/a.txt"))
        await clock.advance(0.5)

    assert await debouncer.process_due() == []
    await clock.advance(2.0)
    assert await debouncer.process_due() == [FileChange(ChangeKind.MODIFIED, "/docs/a.txt")]
    assert handled == [FileChange(ChangeKind.MODIFIED, "/docs/a.txt")]
    assert debouncer.pending == {}


@pytest.mark.asyncio
async def test_paths_debounced_independently(debouncer: ChangeDebouncer, clock: VirtualClock, handled: list):
    debouncer.notify(FileChange(ChangeKind.MODIFIED, "/docs/a.txt"))
    await clock.advance(1.5)
    debouncer.notify(FileChange(ChangeKind.MODIFIED, "/docs/b.txt"))
    await clock.advance(1.0)

    await debouncer.process_due()
    assert [c.path for c in handled] == ["/docs/a.txt"]
    assert list(debouncer.pending) == ["/docs/b.txt"]


@pytest.mark.asyncio
async def test_kind_merging(debouncer: ChangeDebouncer):
    debouncer.notify(FileChange(ChangeKind.CREATED, "/new.txt"))
    debouncer.notify(FileChange(ChangeKind.MODIFIED, "/new.txt"))
    debouncer.notify(FileChange(ChangeKind.DELETED, "/swap.txt"))
    debouncer.notify(FileChange(ChangeKind.CREATED, "/swap.txt"))
    debouncer.notify(FileChange(ChangeKind.MODIFIED, "/gone.txt"))
    debouncer.notify(FileChange(ChangeKind.DELETED, "/gone.txt"))

    assert debouncer.pending == {
        "/new.txt": ChangeKind.CREATED,
        "/swap.txt": ChangeKind.MODIFIED,
        "/gone.txt": ChangeKind.DELETED,
    }


@pytest.mark.asyncio
async def test_background_loop_driven_by_clock(debouncer: ChangeDebouncer, clock: VirtualClock, handled: list):
    """The debounce task fires on virtual time, not wall time."""
    debouncer.start()
    await asyncio.sleep(0)
    debouncer.notify(FileChange(ChangeKind.MODIFIED, "/docs/a.txt"))

    await clock.advance(1.0)
    assert handled == []
    await clock.advance(1.5)
    assert [c.path for c in handled] == ["/docs/a.txt"]
    await debouncer.stop()


@pytest.mark.asyncio
async def test_handler_failure_is_contained(clock: VirtualClock):
    calls = []

    async def handler(change: FileChange) -> None:
        calls.append(change.path)
        if change.path == "/bad":
            raise RuntimeError("boom")

    debouncer = ChangeDebouncer(handler, 0.0, clock)
    debouncer.notify(FileChange(ChangeKind.MODIFIED, "/bad"))
    debouncer.notify(FileChange(ChangeKind.MODIFIED, "/good"))
    await debouncer.process_due()
    assert sorted(calls) == ["/bad", "/good"]


@pytest.mark.asyncio
async def test_flush_ignores_deadlines(debouncer: ChangeDebouncer, handled: list):
    debouncer.notify(FileChange(ChangeKind.MODIFIED, "/docs/a.txt"))
    await debouncer.flush()
    assert len(handled) == 1


@pytest.mark.asyncio
async def test_file_watcher_forwards_events(tmp_path: Path):
    """Real watchdog events reach the debouncer through the loop."""
    seen: list[FileChange] = []

    async def handler(change: FileChange) -> None:
        seen.append(change)

    debouncer = ChangeDebouncer(handler, debounce_seconds=0.05)
    watcher = FileWatcher(debouncer)
    watcher.start([(tmp_path, True)])
    try:
        assert watcher.is_running
        assert watcher.roots == [str(tmp_path)]
        (tmp_path / "note.txt").write_text("hello", encoding="utf-8")

        for _ in range(100):
            if any(c.path.endswith("note.txt") for c in seen):
                break
            await asyncio.sleep(0.05)
        assert any(c.path.endswith("note.txt") for c in seen)
    finally:
        await watcher.close()
    assert not watcher.is_running


@pytest.mark.asyncio
async def test_missing_root_not_watched(tmp_path: Path):
    watcher = FileWatcher(ChangeDebouncer(lambda change: asyncio.sleep(0)))
    watcher.start([(tmp_path / "missing", True)])
    assert watcher.roots == []
    await watcher.close()


async def wait_for(condition, timeout: float = 5.0) -> bool:
    for _ in range(int(timeout / 0.05)):
        if condition():
            return True
        await asyncio.sleep(0.05)
    return condition()


@pytest.mark.asyncio
async def test_directory_moved_out_drops_its_files(tmp_path: Path):
    """Moving a subdirectory out of a watched root removes its chunks."""
    root = (tmp_path / "root").resolve()
    sub = root / "sub"
    sub.mkdir(parents=True)
    (sub / "a.txt").write_text("alpha", encoding="utf-8")
    (root / "b.txt").write_text("beta", encoding="utf-8")

    embedder = EmbeddingProvider(64)
    indexer = FileIndexer(ChunkIndex(64), embedder)
    indexer.set_folders([IndexedFolder(path=root)])
    await indexer.index_files()
    assert indexer.index.counts().files == 2

    watcher = FileWatcher(ChangeDebouncer(indexer.handle_change, debounce_seconds=0.05))
    watcher.start([(root, True)])
    try:
        shutil.move(str(sub), str(tmp_path / "outside"))
        assert await wait_for(lambda: indexer.index.counts().files == 1)
        assert [r.path for r in indexer.index.records()] == [str(root / "b.txt")]

        incoming = tmp_path / "incoming"
        incoming.mkdir()
        (incoming / "c.txt").write_text("gamma", encoding="utf-8")
        shutil.move(str(incoming), str(root / "incoming"))
        assert await wait_for(lambda: indexer.index.counts().files == 2)
        assert indexer.index.file_record(str(root / "incoming" / "c.txt")) is not None
    finally:
        await watcher.close()
