"""Filesystem watching with debounced reindexing.

watchdog delivers events on its observer thread; FileWatcher hands them to
the event loop, where ChangeDebouncer coalesces bursts per path. A path is
only handed to the indexer after it has been quiet for the debounce period,
so an editor's save storm causes one reindex.
"""

import asyncio
import contextlib
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from pathlib import Path

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer
from watchdog.observers.api import BaseObserver

from superbrain.core.clock import Clock, SystemClock
from superbrain.core.logging import get_logger

logger = get_logger("indexer.watcher")


class ChangeKind(Enum):
    CREATED = "created"
    MODIFIED = "modified"
    DELETED = "deleted"


@dataclass(frozen=True)
class FileChange:
    kind: ChangeKind
    path: str


ChangeHandler = Callable[[FileChange], Awaitable[None]]


class ChangeDebouncer:
    """Per-path debounce of file changes."""

    def __init__(
        self,
        handler: ChangeHandler,
        debounce_seconds: float = 2.0,
        clock: Clock | None = None,
    ):
        self._handler = handler
        self._debounce = timedelta(seconds=debounce_seconds)
        self.clock = clock or SystemClock()
        self._pending: dict[str, tuple[FileChange, datetime]] = {}
        self._task: asyncio.Task | None = None
        self.tick = max(0.05, min(0.5, debounce_seconds / 2))

    @property
    def pending(self) -> dict[str, ChangeKind]:
        return {path: change.kind for path, (change, _) in self._pending.items()}

    def notify(self, change: FileChange) -> None:
        """Record a change; restarts the quiet period for that path."""
        previous = self._pending.get(change.path)
        kind = change.kind
        if previous is not None:
            before = previous[0].kind
            if before is ChangeKind.DELETED and kind is not ChangeKind.DELETED:
                # Deleted then recreated: treat as a content change
                kind = ChangeKind.MODIFIED
            elif before is ChangeKind.CREATED and kind is ChangeKind.MODIFIED:
                kind = ChangeKind.CREATED
        self._pending[change.path] = (
            FileChange(kind, change.path),
            self.clock.now() + self._debounce,
        )

    async def process_due(self) -> list[FileChange]:
        """Hand every change whose quiet period has elapsed to the handler."""
        now = self.clock.now()
        due = [change for change, deadline in self._pending.values() if deadline <= now]
        for change in due:
            del self._pending[change.path]

        for change in due:
            try:
                await self._handler(change)
            except Exception as e:
                logger.error(f"Reindex failed for {change.path}: {e}")
        return due

    async def flush(self) -> list[FileChange]:
        """Process everything pending regardless of deadlines."""
        changes = [change for change, _ in self._pending.values()]
        self._pending.clear()
        for change in changes:
            try:
                await self._handler(change)
            except Exception as e:
                logger.error(f"Reindex failed for {change.path}: {e}")
        return changes

    async def _run(self) -> None:
        while True:
            await self.clock.sleep(self.tick)
            await self.process_due()

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        if self._task:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None


class _ForwardingHandler(FileSystemEventHandler):
    """Runs on the watchdog thread; forwards file events to the loop."""

    def __init__(self, loop: asyncio.AbstractEventLoop, debouncer: ChangeDebouncer):
        self._loop = loop
        self._debouncer = debouncer

    def _forward(self, kind: ChangeKind, path: str | bytes) -> None:
        if isinstance(path, bytes):
            path = path.decode("utf-8", errors="replace")
        self._loop.call_soon_threadsafe(self._debouncer.notify, FileChange(kind, path))

    # Directory events are forwarded too: a directory moved or deleted as a
    # whole produces no events for the files inside it.

    def on_created(self, event: FileSystemEvent) -> None:
        self._forward(ChangeKind.CREATED, event.src_path)

    def on_modified(self, event: FileSystemEvent) -> None:
        # Directory mtime changes with every entry added; the entries report themselves
        if not event.is_directory:
            self._forward(ChangeKind.MODIFIED, event.src_path)

    def on_deleted(self, event: FileSystemEvent) -> None:
        self._forward(ChangeKind.DELETED, event.src_path)

    def on_moved(self, event: FileSystemEvent) -> None:
        self._forward(ChangeKind.DELETED, event.src_path)
        if event.dest_path:
            self._forward(ChangeKind.CREATED, event.dest_path)


class FileWatcher:
    """watchdog observer feeding a ChangeDebouncer."""

    def __init__(self, debouncer: ChangeDebouncer):
        self.debouncer = debouncer
        self._observer: BaseObserver | None = None
        self._roots: dict[str, bool] = {}

    @property
    def is_running(self) -> bool:
        return self._observer is not None

    @property
    def roots(self) -> list[str]:
        return list(self._roots)

    def start(self, roots: Iterable[tuple[Path, bool]]) -> None:
        """Watch (path, recursive) roots. Must be called from the event loop."""
        self.stop()
        loop = asyncio.get_running_loop()
        handler = _ForwardingHandler(loop, self.debouncer)
        observer = Observer()
        self._roots = {}
        for root, recursive in roots:
            if not Path(root).is_dir():
                logger.warning(f"Not watching missing folder: {root}")
                continue
            observer.schedule(handler, str(root), recursive=recursive)
            self._roots[str(root)] = recursive
        observer.start()
        self._observer = observer
        self.debouncer.start()
        logger.info(f"Watching {len(self._roots)} folders")

    def stop(self) -> None:
        if self._observer is not None:
            self._observer.stop()
            self._observer.join(timeout=5.0)
            self._observer = None
            logger.info("File watcher stopped")

    async def close(self) -> None:
        self.stop()
        await self.debouncer.stop()
