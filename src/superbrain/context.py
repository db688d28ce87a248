"""
Application context.

BrainContext is built once at startup and owns every component: database,
embedder, memory, learner, AI router, cognitive engine, file indexer, watcher
and background scheduler. Callers (CLI, a desktop shell) use only this object.

Usage:
    async with await BrainContext.create(settings) as brain:
        await brain.remember("Buy milk")
        thought = await brain.think("What do I need to buy?")
"""

from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from superbrain.ai.router import ProviderRouter
from superbrain.brain.cognitive import (
    CognitiveEngine,
    CycleResult,
    EngineConfig,
    EngineStats,
    EvolutionResult,
)
from superbrain.brain.embeddings import EmbeddingProvider
from superbrain.brain.learning import LearningModule
from superbrain.brain.memory import ConsolidationResult, MemoryStore
from superbrain.brain.persistence import BrainPersistence
from superbrain.core.clock import Clock, SystemClock
from superbrain.core.config import AppSettings, IndexedFolder, Settings, get_settings
from superbrain.core.errors import InputError, PersistenceError
from superbrain.core.events import EventBus
from superbrain.core.logging import get_logger
from superbrain.core.orchestrator import Orchestrator, TaskPriority
from superbrain.core.types import (
    Belief,
    FileResult,
    Goal,
    GoalStatus,
    MemoryType,
    RecallResult,
    Thought,
)
from superbrain.indexer.index import ChunkIndex
from superbrain.indexer.indexer import FileIndexer, IndexerConfig, IndexStats, ScanReport
from superbrain.indexer.watcher import ChangeDebouncer, FileWatcher
from superbrain.workflows import (
    WorkflowAction,
    WorkflowResult,
    learning_digest,
    run_workflow,
    search_and_remember,
    summarize_recent,
)

logger = get_logger("context")

APP_SETTINGS_KEY = "app_settings"


@dataclass
class SystemStatus:
    status: str
    memory_count: int
    thought_count: int
    uptime_seconds: float
    ai_provider: str
    ai_available: bool
    embedding_provider: str
    indexed_files: int
    indexed_chunks: int
    learning_trend: str
    exploration_rate: float
    is_indexing: bool
    active_goals: int = 0


@dataclass
class BrainStats:
    engine: EngineStats
    index: IndexStats
    events_dropped: int


class BrainContext:
    """Everything the engine needs, constructed once."""

    def __init__(
        self,
        settings: Settings,
        app_settings: AppSettings,
        *,
        persistence: BrainPersistence,
        embedder: EmbeddingProvider,
        events: EventBus,
        engine: CognitiveEngine,
        indexer: FileIndexer,
        watcher: FileWatcher,
        orchestrator: Orchestrator,
        clock: Clock,
    ):
        self.settings = settings
        self.app_settings = app_settings
        self.persistence = persistence
        self.embedder = embedder
        self.events = events
        self.engine = engine
        self.indexer = indexer
        self.watcher = watcher
        self.orchestrator = orchestrator
        self.clock = clock
        self._started = False
        self._closed = False

    @classmethod
    async def create(
        cls,
        settings: Settings | None = None,
        *,
        clock: Clock | None = None,
        ai: ProviderRouter | None = None,
    ) -> "BrainContext":
        """Open storage, restore state and wire components."""
        settings = settings or get_settings()
        clock = clock or SystemClock()

        persistence = BrainPersistence(settings.db_path)
        await persistence.connect()

        try:
            app_settings = await cls._load_app_settings(persistence, settings)

            events = EventBus()
            embedder = EmbeddingProvider.from_settings(settings)
            memory = MemoryStore(
                embedder,
                events,
                soft_cap=settings.memory_soft_cap,
                importance_floor=settings.importance_floor,
                recency_half_life=timedelta(days=settings.recency_half_life_days),
                clock=clock,
            )
            learner = LearningModule.from_settings(settings)

            router = ai or ProviderRouter(timeout=settings.ai_timeout)
            if ai is None:
                await router.configure(app_settings, settings)

            config = EngineConfig.from_settings(settings)
            config.privacy_mode = app_settings.privacy_mode
            engine = CognitiveEngine(
                memory,
                learner,
                embedder,
                router,
                events,
                config=config,
                persistence=persistence,
                clock=clock,
            )
            await engine.load()

            indexer = FileIndexer(
                ChunkIndex(settings.embedding_dim),
                embedder,
                config=IndexerConfig.from_settings(settings),
                persistence=persistence,
                events=events,
                clock=clock,
            )
            indexer.set_folders(app_settings.indexed_folders)
            await indexer.load()

            watcher = FileWatcher(
                ChangeDebouncer(indexer.handle_change, settings.watch_debounce_seconds, clock)
            )
        except BaseException:
            await persistence.close()
            raise

        return cls(
            settings,
            app_settings,
            persistence=persistence,
            embedder=embedder,
            events=events,
            engine=engine,
            indexer=indexer,
            watcher=watcher,
            orchestrator=Orchestrator(clock),
            clock=clock,
        )

    @staticmethod
    async def _load_app_settings(persistence: BrainPersistence, settings: Settings) -> AppSettings:
        stored = await persistence.load_config(APP_SETTINGS_KEY)
        if stored is None:
            return AppSettings.from_settings(settings)
        try:
            return AppSettings.model_validate(stored)
        except ValidationError as e:
            logger.warning(f"Ignoring invalid stored settings: {e}")
            return AppSettings.from_settings(settings)

    # Lifecycle

    async def start(self, watch: bool = True) -> None:
        """Start the cycle timer and the folder watcher."""
        if self._started:
            return
        self._started = True

        if self.settings.semantic_embeddings:
            await self.embedder.detect_backend()

        interval = timedelta(seconds=self.settings.cycle_interval_seconds)
        self.orchestrator.schedule_task(
            task_id="cycle",
            name="Cognitive cycle",
            callback=self._background_cycle,
            interval=interval,
            priority=TaskPriority.NORMAL,
            delay=interval,
        )
        await self.orchestrator.start()

        if watch:
            self._restart_watcher()
        logger.info("SuperBrain started")

    async def _background_cycle(self) -> None:
        await self.engine.cycle()
        await self.flush()

    def _restart_watcher(self) -> None:
        roots = [
            (Path(f.path).resolve(), f.recursive)
            for f in self.app_settings.indexed_folders
        ]
        if roots:
            self.watcher.start(roots)
        else:
            self.watcher.stop()

    async def close(self) -> None:
        """Stop background work, flush and release resources."""
        if self._closed:
            return
        self._closed = True

        await self.orchestrator.stop()
        await self.watcher.close()
        await self.indexer.cancel_scan()
        try:
            await self.flush()
        except PersistenceError as e:
            logger.error(f"Final flush failed: {e}")
        await self.engine.ai.close()
        await self.embedder.close()
        await self.persistence.close()
        logger.info("SuperBrain closed")

    async def __aenter__(self) -> "BrainContext":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    # Engine operations

    async def think(self, text: str) -> Thought:
        return await self.engine.think(text)

    async def remember(
        self,
        content: str,
        memory_type: MemoryType | str = MemoryType.SEMANTIC,
        importance: float = 0.5,
    ) -> str:
        return await self.engine.remember(content, memory_type, importance)

    async def recall(self, query: str, limit: int = 5) -> list[RecallResult]:
        return await self.engine.recall(query, limit)

    def evolve(self) -> EvolutionResult:
        return self.engine.evolve()

    async def cycle(self) -> CycleResult:
        return await self.engine.cycle()

    def get_thoughts(self, limit: int = 20) -> list[Thought]:
        return self.engine.get_thoughts(limit)

    def consolidate(self) -> ConsolidationResult:
        return self.engine.consolidate()

    def connect_memories(self, memory_id: str, other_id: str) -> None:
        """Link two memories; raises NotFoundError if either is unknown."""
        self.engine.connect(memory_id, other_id)

    def add_goal(self, description: str, priority: float = 0.5) -> Goal:
        return self.engine.add_goal(description, priority)

    def update_goal(
        self,
        goal_id: str,
        progress: float,
        status: GoalStatus | str | None = None,
    ) -> Goal:
        return self.engine.update_goal(goal_id, progress, status)

    def get_goals(self, status: GoalStatus | str | None = None) -> list[Goal]:
        return self.engine.get_goals(status)

    def add_belief(self, content: str, confidence: float = 0.5, source: str = "user") -> Belief:
        return self.engine.add_belief(content, confidence, source)

    def get_beliefs(self, min_confidence: float = 0.0) -> list[Belief]:
        return self.engine.get_beliefs(min_confidence)

    async def flush(self) -> int:
        """Persist memories and Q-table; each in its own transaction."""
        return await self.engine.flush()

    # Files

    async def search_files(self, query: str, limit: int = 10) -> list[FileResult]:
        return await self.indexer.search(query, limit)

    async def index_files(self) -> int:
        """Scan all indexed folders. Returns the chunk count under them."""
        report = await self.indexer.index_files()
        await self._save_app_settings()
        return report.total_chunks

    async def scan(self) -> ScanReport:
        report = await self.indexer.index_files()
        await self._save_app_settings()
        return report

    async def cancel_indexing(self) -> bool:
        return await self.indexer.cancel_scan()

    async def add_indexed_folder(
        self,
        path: Path | str,
        recursive: bool = True,
        exclude: list[str] | None = None,
    ) -> ScanReport:
        """Start indexing and watching a folder."""
        folder_path = Path(path).expanduser().resolve()
        if not folder_path.is_dir():
            raise InputError(f"Not a directory: {folder_path}")

        folder = self.app_settings.folder(folder_path)
        if folder is None:
            folder = IndexedFolder(path=folder_path, recursive=recursive, exclude=exclude or [])
            self.app_settings.indexed_folders.append(folder)
        self.indexer.add_folder(folder)
        await self._save_app_settings()
        if self._started:
            self._restart_watcher()

        report = await self.indexer.index_files([folder])
        await self._save_app_settings()
        return report

    async def remove_indexed_folder(self, path: Path | str) -> bool:
        """Stop watching a folder and drop its chunks."""
        folder_path = Path(path).expanduser().resolve()
        folder = self.app_settings.folder(folder_path)
        if folder is None:
            return False
        self.app_settings.indexed_folders.remove(folder)
        self.indexer.remove_folder(folder_path)
        await self.indexer.remove_under(folder_path)
        await self._save_app_settings()
        if self._started:
            self._restart_watcher()
        return True

    # Workflows

    def summarize_recent(self) -> WorkflowResult:
        return summarize_recent(self)

    def learning_digest(self) -> WorkflowResult:
        return learning_digest(self)

    async def search_and_remember(self, query: str, limit: int = 5) -> WorkflowResult:
        return await search_and_remember(self, query, limit)

    async def run_workflow(self, action: WorkflowAction | str, **params: Any) -> WorkflowResult:
        return await run_workflow(self, action, **params)

    # Settings

    async def _save_app_settings(self) -> None:
        await self.persistence.save_config(
            APP_SETTINGS_KEY, self.app_settings.model_dump(mode="json")
        )

    async def update_settings(self, app_settings: AppSettings) -> None:
        """Persist new runtime settings and apply them without restarting."""
        previous = self.app_settings
        self.app_settings = app_settings
        try:
            await self._save_app_settings()
        except PersistenceError:
            self.app_settings = previous
            raise

        self.engine.config.privacy_mode = app_settings.privacy_mode
        if (
            app_settings.ai_provider != previous.ai_provider
            or app_settings.ollama_model != previous.ollama_model
            or app_settings.claude_model != previous.claude_model
        ):
            await self.engine.ai.configure(app_settings, self.settings)

        self.indexer.set_folders(app_settings.indexed_folders)
        if self._started:
            self._restart_watcher()
        logger.info(f"Settings updated (ai={app_settings.ai_provider}, privacy={app_settings.privacy_mode})")

    # Introspection

    def get_status(self) -> SystemStatus:
        engine = self.engine.status()
        counts = self.indexer.index.counts()
        return SystemStatus(
            status="indexing" if self.indexer.is_indexing else "ready",
            memory_count=engine.memory_count,
            thought_count=engine.thought_count,
            uptime_seconds=engine.uptime_seconds,
            ai_provider=self.engine.ai.name,
            ai_available=self.engine.ai.available,
            embedding_provider=self.embedder.backend.value,
            indexed_files=counts.files,
            indexed_chunks=counts.chunks,
            learning_trend=engine.learning_trend,
            exploration_rate=engine.exploration_rate,
            is_indexing=self.indexer.is_indexing,
            active_goals=engine.active_goals,
        )

    def get_stats(self) -> BrainStats:
        return BrainStats(
            engine=self.engine.stats(),
            index=self.indexer.stats(),
            events_dropped=self.events.dropped,
        )
