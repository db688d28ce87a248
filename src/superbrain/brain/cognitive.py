"""
Cognitive engine.

think() is the main loop of the system:
recall -> pick a strategy -> (maybe) ask the AI provider -> score the outcome
-> learn -> store the interaction as an episodic memory.

Everything except the optional AI call is local and deterministic. When no
provider is configured, privacy mode is on, or the provider fails, the engine
answers from memory alone.
"""

import math
from collections import deque
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import TYPE_CHECKING
from uuid import uuid4

from superbrain.ai.router import ProviderRouter
from superbrain.brain.embeddings import EmbeddingProvider
from superbrain.brain.learning import (
    LearningModule,
    RewardSignals,
    Strategy,
    derive_state,
)
from superbrain.brain.memory import ConsolidationResult, MemoryStats, MemoryStore
from superbrain.core.clock import Clock, SystemClock
from superbrain.core.config import Settings
from superbrain.core.errors import InputError, NotFoundError, PersistenceError, ProviderError
from superbrain.core.events import EventBus, EventType
from superbrain.core.logging import get_logger
from superbrain.core.types import (
    Belief,
    Goal,
    GoalStatus,
    MemoryType,
    RecallResult,
    Thought,
)

if TYPE_CHECKING:
    from superbrain.brain.learning import LearnerStats
    from superbrain.brain.persistence import BrainPersistence

logger = get_logger("brain.cognitive")

NO_MEMORY_RESPONSE = "No relevant information found in memory."


@dataclass
class EngineConfig:
    """Tunables for think() and cycle()."""

    recall_limit: int = 5
    min_recall_similarity: float = 0.2
    thought_importance: float = 0.5
    max_thoughts: int = 1000
    privacy_mode: bool = False
    stale_after: timedelta = timedelta(days=7)
    importance_decay: float = 0.95
    merge_similarity: float = 0.95
    prune_importance: float = 0.05

    @classmethod
    def from_settings(cls, settings: Settings) -> "EngineConfig":
        return cls(
            recall_limit=settings.recall_limit,
            min_recall_similarity=settings.min_recall_similarity,
            thought_importance=settings.thought_importance,
            max_thoughts=settings.max_thoughts,
            privacy_mode=settings.privacy_mode,
            stale_after=timedelta(days=settings.stale_after_days),
            importance_decay=settings.importance_decay,
            merge_similarity=settings.merge_similarity,
            prune_importance=settings.prune_importance,
        )


@dataclass
class EvolutionResult:
    trend: float
    trend_label: str
    exploration_before: float
    exploration_after: float
    pruned_q_entries: int
    memories_evicted: int
    adaptations: list[str] = field(default_factory=list)


@dataclass
class CycleResult:
    cycle: int
    memories_decayed: int
    replayed: int
    memories_evicted: int
    ai_available: bool
    timestamp: datetime


@dataclass
class EngineStatus:
    memory_count: int
    thought_count: int
    uptime_seconds: float
    cycles: int
    learning_trend: str
    exploration_rate: float
    active_goals: int = 0


@dataclass
class EngineStats:
    memory: MemoryStats
    learning: "LearnerStats"
    thoughts: int
    ai_calls: int
    ai_failures: int
    average_confidence: float


def _unit_interval(name: str, value: float) -> float:
    if not isinstance(value, (int, float)) or math.isnan(value):
        raise InputError(f"{name} must be a number, got {value!r}")
    if not 0.0 <= value <= 1.0:
        raise InputError(f"{name} must be within [0, 1], got {value}")
    return float(value)


def compute_confidence(similarities: list[float], ai_enhanced: bool) -> float:
    """Confidence from recall strength, lifted by a successful AI answer."""
    if similarities:
        top = max(0.0, similarities[0])
        mean = max(0.0, sum(similarities) / len(similarities))
        confidence = 0.7 * top + 0.3 * mean
    else:
        confidence = 0.1
    if ai_enhanced:
        confidence += (1.0 - confidence) * 0.25
    return min(1.0, max(0.0, confidence))


def synthesize_response(memories: list[RecallResult]) -> str:
    """Answer from recalled memories alone."""
    if not memories:
        return NO_MEMORY_RESPONSE
    lines = [f"Based on {len(memories)} relevant memor{'y' if len(memories) == 1 else 'ies'}:"]
    for memory in memories[:3]:
        lines.append(f"- {memory.content}")
    return "\n".join(lines)


class CognitiveEngine:
    """Coordinates memory, learning and the optional AI provider."""

    def __init__(
        self,
        memory: MemoryStore,
        learner: LearningModule,
        embedder: EmbeddingProvider,
        ai: ProviderRouter,
        events: EventBus,
        *,
        config: EngineConfig | None = None,
        persistence: "BrainPersistence | None" = None,
        clock: Clock | None = None,
    ):
        self.memory = memory
        self.learner = learner
        self.embedder = embedder
        self.ai = ai
        self.events = events
        self.config = config or EngineConfig()
        self.persistence = persistence
        self.clock = clock or SystemClock()
        self._thoughts: deque[Thought] = deque(maxlen=self.config.max_thoughts)
        self._started_at = self.clock.now()
        self._cycles = 0
        self.ai_calls = 0
        self.ai_failures = 0
        self._goals: dict[str, Goal] = {}
        self._beliefs: dict[str, Belief] = {}
        self._goals_dirty = False
        self._beliefs_dirty = False

    # Recall

    def _recall_vector(
        self, vector, limit: int, min_similarity: float | None, touch: bool = True
    ) -> list[RecallResult]:
        return [
            RecallResult.from_memory(memory, similarity)
            for memory, similarity in self.memory.search(
                vector, limit, min_similarity=min_similarity, touch=touch
            )
        ]

    async def recall(self, query: str, limit: int = 5) -> list[RecallResult]:
        """Memories most similar to the query, best first."""
        if not query or not query.strip():
            raise InputError("Query must not be empty")
        if limit < 1:
            raise InputError(f"Limit must be at least 1, got {limit}")
        vector = await self.embedder.embed(query)
        return self._recall_vector(vector, limit, None)

    async def remember(
        self,
        content: str,
        memory_type: MemoryType | str = MemoryType.SEMANTIC,
        importance: float = 0.5,
    ) -> str:
        """Store a memory and write it through to persistence."""
        memory_id = await self.memory.insert(content, memory_type, importance)
        await self._write_through(memory_id)
        return memory_id

    async def _write_through(self, memory_id: str) -> None:
        if self.persistence is None:
            return
        try:
            await self.memory.persist(self.persistence, memory_id)
        except PersistenceError as e:
            # Stays dirty; the next flush retries and reports
            logger.warning(f"Write-through of memory {memory_id} failed: {e}")

    # Think

    def _strategy_recall(self, strategy: Strategy) -> tuple[int, float]:
        limit = self.config.recall_limit
        threshold = self.config.min_recall_similarity
        if strategy is Strategy.WIDEN_RECALL:
            return limit * 2, threshold * 0.5
        if strategy is Strategy.NARROW_RECALL:
            return max(1, limit // 2), threshold + 0.15
        return limit, threshold

    async def think(self, text: str) -> Thought:
        """Answer a query from memory, optionally blended with the AI provider."""
        if not text or not text.strip():
            raise InputError("Input must not be empty")

        now = self.clock.now()
        vector = await self.embedder.embed(text)
        # Only the recall the chosen strategy keeps counts as an access
        recalled = self._recall_vector(
            vector, self.config.recall_limit, self.config.min_recall_similarity, touch=False
        )
        state = derive_state(
            [r.similarity for r in recalled], [r.memory_type for r in recalled], now
        )
        strategy = self.learner.select_action(state)

        limit, threshold = self._strategy_recall(strategy)
        if (limit, threshold) != (self.config.recall_limit, self.config.min_recall_similarity):
            recalled = self._recall_vector(vector, limit, threshold)
        else:
            self.memory.touch([r.id for r in recalled])

        response = synthesize_response(recalled)
        ai_attempted = False
        ai_enhanced = False
        if strategy.uses_ai and self.ai.available and not self.config.privacy_mode:
            ai_attempted = True
            self.ai_calls += 1
            try:
                answer = await self.ai.complete(text, recalled)
                response = answer.content
                ai_enhanced = True
            except ProviderError as e:
                self.ai_failures += 1
                logger.info(f"AI assist unavailable, answering from memory: {e}")

        similarities = [r.similarity for r in recalled]
        confidence = compute_confidence(similarities, ai_enhanced)
        signals = RewardSignals(
            confidence=confidence,
            memory_reuse=min(1.0, len(recalled) / self.config.recall_limit),
            ai_attempted=ai_attempted,
            ai_enhanced=ai_enhanced,
        )
        next_state = derive_state(
            similarities, [r.memory_type for r in recalled], now, confidence=confidence
        )
        transition = self.learner.observe(state, strategy, signals, next_state)

        thought = Thought(
            id=str(uuid4()),
            input=text,
            response=response,
            confidence=confidence,
            memory_ids=[r.id for r in recalled],
            ai_enhanced=ai_enhanced,
            strategy=strategy.value,
            timestamp=now,
        )

        episode = self.memory.insert_vector(
            f"Q: {text} A: {response[:200]}",
            vector,
            MemoryType.EPISODIC,
            self.config.thought_importance,
        )
        await self._write_through(episode.id)

        self._thoughts.append(thought)
        logger.debug(
            f"Thought {thought.id}: strategy={strategy.value} confidence={confidence:.2f} "
            f"memories={len(recalled)} ai={ai_enhanced} reward={transition.reward:.3f}"
        )
        self.events.publish(EventType.THOUGHT_GENERATED, thought.to_dict())
        return thought

    # Maintenance

    def evolve(self) -> EvolutionResult:
        """Adapt the learner and trim memory if over capacity."""
        summary = self.learner.evolve()
        evicted = self.memory.evict()
        adaptations = list(summary.adaptations)
        if evicted:
            adaptations.append(f"Evicted {len(evicted)} low-value memories")
        return EvolutionResult(
            trend=summary.trend,
            trend_label=summary.trend_label,
            exploration_before=summary.exploration_before,
            exploration_after=summary.exploration_after,
            pruned_q_entries=summary.pruned_entries,
            memories_evicted=len(evicted),
            adaptations=adaptations,
        )

    async def cycle(self) -> CycleResult:
        """One background tick: decay, replay, evict, re-check the provider."""
        self._cycles += 1
        decayed = self.memory.decay_stale(self.config.stale_after, self.config.importance_decay)
        replayed = self.learner.replay_batch()
        evicted = self.memory.evict()
        if not self.ai.is_configured:
            ai_available = False
        elif self.config.privacy_mode:
            # No provider traffic while private; report the last known state
            ai_available = self.ai.available
        else:
            ai_available = await self.ai.refresh_availability()

        result = CycleResult(
            cycle=self._cycles,
            memories_decayed=decayed,
            replayed=replayed,
            memories_evicted=len(evicted),
            ai_available=ai_available,
            timestamp=self.clock.now(),
        )
        payload = asdict(result)
        payload["timestamp"] = result.timestamp.isoformat()
        self.events.publish(EventType.CYCLE_COMPLETED, payload)
        return result

    def consolidate(self) -> ConsolidationResult:
        """Prune decayed memories and merge near-duplicates."""
        return self.memory.consolidate(
            self.config.merge_similarity, self.config.prune_importance
        )

    def connect(self, memory_id: str, other_id: str) -> None:
        if not self.memory.connect(memory_id, other_id):
            missing = memory_id if memory_id not in self.memory else other_id
            raise NotFoundError(f"Memory not found: {missing}")

    # Goals and beliefs

    def add_goal(self, description: str, priority: float = 0.5) -> Goal:
        if not description or not description.strip():
            raise InputError("Goal description must not be empty")
        priority = _unit_interval("Priority", priority)
        now = self.clock.now()
        goal = Goal(
            id=str(uuid4()),
            description=description.strip(),
            priority=priority,
            progress=0.0,
            status=GoalStatus.PENDING,
            created_at=now,
            updated_at=now,
        )
        self._goals[goal.id] = goal
        self._goals_dirty = True
        logger.info(f"Goal added: {goal.description[:60]} (priority={priority:.2f})")
        return goal

    def update_goal(
        self,
        goal_id: str,
        progress: float,
        status: GoalStatus | str | None = None,
    ) -> Goal:
        """Record progress on a goal.

        Progress is clamped to [0, 1]. Without an explicit status, reaching 1
        completes the goal and any progress above 0 makes it active.
        """
        goal = self._goals.get(goal_id)
        if goal is None:
            raise NotFoundError(f"Goal not found: {goal_id}")
        if not isinstance(progress, (int, float)) or math.isnan(progress):
            raise InputError(f"Progress must be a number, got {progress!r}")
        progress = min(1.0, max(0.0, float(progress)))

        if status is not None:
            goal.status = GoalStatus.parse(status)
        elif progress >= 1.0:
            goal.status = GoalStatus.COMPLETED
        elif progress > 0.0:
            goal.status = GoalStatus.ACTIVE
        goal.progress = progress
        goal.updated_at = self.clock.now()
        self._goals_dirty = True
        return goal

    def get_goals(self, status: GoalStatus | str | None = None) -> list[Goal]:
        """Goals by priority, highest first."""
        goals = list(self._goals.values())
        if status is not None:
            wanted = GoalStatus.parse(status)
            goals = [g for g in goals if g.status is wanted]
        return sorted(goals, key=lambda g: (-g.priority, g.created_at))

    def add_belief(self, content: str, confidence: float = 0.5, source: str = "user") -> Belief:
        if not content or not content.strip():
            raise InputError("Belief content must not be empty")
        belief = Belief(
            id=str(uuid4()),
            content=content.strip(),
            confidence=_unit_interval("Confidence", confidence),
            source=source,
            created_at=self.clock.now(),
        )
        self._beliefs[belief.id] = belief
        self._beliefs_dirty = True
        return belief

    def get_beliefs(self, min_confidence: float = 0.0) -> list[Belief]:
        """Beliefs at or above min_confidence, newest first."""
        beliefs = [b for b in self._beliefs.values() if b.confidence >= min_confidence]
        return sorted(beliefs, key=lambda b: b.created_at, reverse=True)

    # Introspection

    def get_thoughts(self, limit: int = 20) -> list[Thought]:
        """Most recent thoughts, newest first."""
        if limit < 1:
            raise InputError(f"Limit must be at least 1, got {limit}")
        return list(reversed(self._thoughts))[:limit]

    @property
    def thought_count(self) -> int:
        return len(self._thoughts)

    def status(self) -> EngineStatus:
        return EngineStatus(
            memory_count=len(self.memory),
            thought_count=len(self._thoughts),
            uptime_seconds=(self.clock.now() - self._started_at).total_seconds(),
            cycles=self._cycles,
            learning_trend=self.learner.trend_label(),
            exploration_rate=self.learner.exploration_rate,
            active_goals=sum(
                1 for g in self._goals.values()
                if g.status in (GoalStatus.PENDING, GoalStatus.ACTIVE)
            ),
        )

    def stats(self) -> EngineStats:
        thoughts = list(self._thoughts)
        return EngineStats(
            memory=self.memory.stats(),
            learning=self.learner.stats(),
            thoughts=len(thoughts),
            ai_calls=self.ai_calls,
            ai_failures=self.ai_failures,
            average_confidence=(
                sum(t.confidence for t in thoughts) / len(thoughts) if thoughts else 0.0
            ),
        )

    async def flush(self) -> int:
        """Persist dirty memories, the Q-table, goals and beliefs (one transaction each)."""
        if self.persistence is None:
            return 0
        written = await self.memory.flush(self.persistence)
        await self.persistence.save_q_table(self.learner.export_q_table())
        if self._goals_dirty:
            self._goals_dirty = False
            try:
                await self.persistence.save_goals(list(self._goals.values()))
            except BaseException:
                self._goals_dirty = True
                raise
        if self._beliefs_dirty:
            self._beliefs_dirty = False
            try:
                await self.persistence.save_beliefs(list(self._beliefs.values()))
            except BaseException:
                self._beliefs_dirty = True
                raise
        return written

    async def load(self) -> None:
        if self.persistence is None:
            return
        await self.memory.load(self.persistence)
        loaded = self.learner.import_q_table(await self.persistence.load_q_table())
        logger.info(f"Loaded {loaded} Q entries")
        self._goals = {g.id: g for g in await self.persistence.load_goals()}
        self._beliefs = {b.id: b for b in await self.persistence.load_beliefs()}
