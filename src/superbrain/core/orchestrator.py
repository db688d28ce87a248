"""Background job scheduler - runs periodic cycles, flushes and one-shot jobs."""

import asyncio
import contextlib
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum

from superbrain.core.clock import Clock, SystemClock
from superbrain.core.logging import get_logger

logger = get_logger("core.orchestrator")


class TaskPriority(Enum):
    LOW = 1
    NORMAL = 2
    HIGH = 3


@dataclass
class ScheduledTask:
    """A job scheduled for background execution."""

    id: str
    name: str
    callback: Callable
    next_run: datetime
    interval: timedelta | None = None  # None = one-shot
    priority: TaskPriority = TaskPriority.NORMAL
    last_run: datetime | None = None
    last_error: str | None = None
    run_count: int = 0
    enabled: bool = True
    running: bool = False


class Orchestrator:
    """Schedules background jobs against an injectable clock."""

    def __init__(self, clock: Clock | None = None, tick: float = 1.0):
        self.clock = clock or SystemClock()
        self._tick = tick
        self._tasks: dict[str, ScheduledTask] = {}
        self._running = False
        self._scheduler_task: asyncio.Task | None = None

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def tasks(self) -> list[ScheduledTask]:
        return list(self._tasks.values())

    def schedule_task(
        self,
        task_id: str,
        name: str,
        callback: Callable,
        interval: timedelta | None = None,
        priority: TaskPriority = TaskPriority.NORMAL,
        delay: timedelta | None = None,
    ) -> ScheduledTask:
        """Schedule a background job, replacing any job with the same id."""
        next_run = self.clock.now()
        if delay:
            next_run += delay

        task = ScheduledTask(
            id=task_id,
            name=name,
            callback=callback,
            interval=interval,
            priority=priority,
            next_run=next_run,
        )
        self._tasks[task_id] = task
        logger.info(f"Scheduled task: {name} (interval: {interval})")
        return task

    def cancel_task(self, task_id: str) -> bool:
        """Cancel a scheduled job."""
        if task_id in self._tasks:
            del self._tasks[task_id]
            return True
        return False

    async def start(self) -> None:
        """Start the scheduler loop."""
        if self._running:
            return
        self._running = True
        self._scheduler_task = asyncio.create_task(self._scheduler_loop())
        logger.info("Orchestrator started")

    async def stop(self) -> None:
        """Stop the scheduler loop, waiting for the running job to unwind."""
        self._running = False
        if self._scheduler_task:
            self._scheduler_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._scheduler_task
            self._scheduler_task = None
        logger.info("Orchestrator stopped")

    async def run_pending(self) -> int:
        """Run every due job once. Returns the number of jobs run."""
        now = self.clock.now()
        pending = [
            t for t in self._tasks.values()
            if t.enabled and not t.running and t.next_run <= now
        ]

        # Higher priority first
        pending.sort(key=lambda t: t.priority.value, reverse=True)

        for task in pending:
            task.running = True
            try:
                result = task.callback()
                if asyncio.iscoroutine(result):
                    await result
                task.last_error = None
            except Exception as e:
                task.last_error = str(e)
                logger.error(f"Task {task.name} failed: {e}")
            finally:
                task.running = False
                task.run_count += 1
                task.last_run = self.clock.now()

                if task.interval:
                    task.next_run = task.last_run + task.interval
                else:
                    self._tasks.pop(task.id, None)

        return len(pending)

    async def _scheduler_loop(self) -> None:
        while self._running:
            await self.run_pending()
            await self.clock.sleep(self._tick)
