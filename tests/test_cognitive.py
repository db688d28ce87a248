"""Tests for the cognitive engine."""

import asyncio
import random
from collections.abc import Sequence
from pathlib import Path
from unittest.mock import AsyncMock

import pytest

from superbrain.ai.base import AIProvider, AIResponse, ProviderType
from superbrain.ai.router import ProviderRouter
from superbrain.brain.cognitive import (
    NO_MEMORY_RESPONSE,
    CognitiveEngine,
    EngineConfig,
    compute_confidence,
    synthesize_response,
)
from superbrain.brain.embeddings import EmbeddingProvider
from superbrain.brain.learning import LearningModule, Strategy
from superbrain.brain.memory import MemoryStore
from superbrain.brain.persistence import BrainPersistence
from superbrain.core.clock import VirtualClock
from superbrain.core.errors import InputError, NotFoundError, ProviderError
from superbrain.core.events import EventBus, EventType
from superbrain.core.types import GoalStatus, MemoryType, RecallResult


class FakeProvider(AIProvider):
    """Scripted provider: answers, fails or stalls."""

    provider_type = ProviderType.LOCAL
    model = "fake"

    def __init__(self, answer: str = "AI answer", fail: bool = False, delay: float = 0.0):
        self.answer = answer
        self.fail = fail
        self.delay = delay
        self.calls: list[tuple[str, list[RecallResult]]] = []
        self.healthy = True
        self.closed = False

    async def complete(self, prompt: str, memories: Sequence[RecallResult]) -> AIResponse:
        self.calls.append((prompt, list(memories)))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise ProviderError("provider down")
        return AIResponse(content=self.answer, model=self.model, provider=self.provider_type)

    async def health_check(self) -> bool:
        return self.healthy

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def clock():
    return VirtualClock()


@pytest.fixture
def events():
    return EventBus()


@pytest.fixture
def router():
    return ProviderRouter(timeout=0.2)


@pytest.fixture
def engine(clock: VirtualClock, events: EventBus, router: ProviderRouter):
    embedder = EmbeddingProvider(384)
    learner = LearningModule(exploration_rate=0.0, exploration_min=0.0, rng=random.Random(0))
    return CognitiveEngine(
        MemoryStore(embedder, events, clock=clock),
        learner,
        embedder,
        router,
        events,
        clock=clock,
    )


def force_strategy(engine: CognitiveEngine, strategy: Strategy) -> None:
    engine.learner.select_action = lambda state: strategy


@pytest.mark.asyncio
async def test_think_without_provider(engine: CognitiveEngine):
    """No provider: ai_enhanced is false and the response is non-empty."""
    thought = await engine.think("What is 2+2?")
    assert thought.ai_enhanced is False
    assert thought.response
    assert 0.0 <= thought.confidence <= 1.0


@pytest.mark.asyncio
async def test_think_blend_ai_without_provider(engine: CognitiveEngine):
    force_strategy(engine, Strategy.BLEND_AI)
    thought = await engine.think("What is 2+2?")
    assert thought.ai_enhanced is False
    assert thought.response == NO_MEMORY_RESPONSE
    assert engine.ai_calls == 0


@pytest.mark.asyncio
async def test_remember_then_recall(engine: CognitiveEngine):
    memory_id = await engine.remember("Buy milk", "episodic", 0.5)
    results = await engine.recall("milk", 5)
    assert results[0].id == memory_id
    assert results[0].similarity > 0.3
    assert results[0].memory_type is MemoryType.EPISODIC


@pytest.mark.asyncio
@pytest.mark.parametrize("query", ["", "  "])
async def test_empty_input_rejected(engine: CognitiveEngine, query: str):
    with pytest.raises(InputError):
        await engine.think(query)
    with pytest.raises(InputError):
        await engine.recall(query)


@pytest.mark.asyncio
async def test_recall_limit_validated(engine: CognitiveEngine):
    with pytest.raises(InputError):
        await engine.recall("milk", 0)


@pytest.mark.asyncio
async def test_think_uses_memories(engine: CognitiveEngine):
    """Memory-only answers cite recalled memories and raise confidence."""
    force_strategy(engine, Strategy.MEMORY_ONLY)
    empty = await engine.think("grocery list milk eggs")

    await engine.remember("grocery list: milk, eggs, bread")
    thought = await engine.think("grocery list milk eggs")
    assert thought.memory_count >= 1
    assert thought.response.startswith("Based on")
    assert "milk, eggs, bread" in thought.response
    assert thought.confidence > empty.confidence


@pytest.mark.asyncio
async def test_think_stores_episode(engine: CognitiveEngine):
    await engine.think("Where did I park?")
    episodes = [m for m in engine.memory.all() if m.memory_type is MemoryType.EPISODIC]
    assert len(episodes) == 1
    assert episodes[0].content.startswith("Q: Where did I park? A: ")


@pytest.mark.asyncio
async def test_think_updates_learner(engine: CognitiveEngine):
    await engine.think("first question")
    assert engine.learner.steps == 1
    assert len(engine.learner.buffer) == 1


@pytest.mark.asyncio
async def test_think_with_ai(engine: CognitiveEngine, router: ProviderRouter):
    provider = FakeProvider(answer="Milk is in the fridge.")
    await router.use(provider)
    force_strategy(engine, Strategy.BLEND_AI)
    await engine.remember("Milk is kept in the fridge")

    thought = await engine.think("Where is the milk?")
    assert thought.ai_enhanced is True
    assert thought.response == "Milk is in the fridge."
    prompt, memories = provider.calls[0]
    assert prompt == "Where is the milk?"
    assert memories


@pytest.mark.asyncio
async def test_ai_lifts_confidence():
    assert compute_confidence([0.5], True) > compute_confidence([0.5], False)
    assert compute_confidence([], False) == pytest.approx(0.1)
    assert compute_confidence([1.0, 1.0], True) == 1.0


@pytest.mark.asyncio
async def test_provider_failure_degrades(engine: CognitiveEngine, router: ProviderRouter):
    """A failing provider yields a memory-only answer, never an error."""
    await router.use(FakeProvider(fail=True))
    force_strategy(engine, Strategy.BLEND_AI)
    thought = await engine.think("anything")
    assert thought.ai_enhanced is False
    assert thought.response == NO_MEMORY_RESPONSE
    assert engine.ai_failures == 1
    assert router.available is False


@pytest.mark.asyncio
async def test_provider_timeout_degrades(engine: CognitiveEngine, router: ProviderRouter):
    await router.use(FakeProvider(delay=5.0))
    force_strategy(engine, Strategy.BLEND_AI)
    thought = await engine.think("slow question")
    assert thought.ai_enhanced is False
    assert engine.ai_failures == 1


@pytest.mark.asyncio
async def test_stalled_provider_does_not_block_others(engine: CognitiveEngine, router: ProviderRouter):
    """recall and remember complete while a think waits on the provider."""
    await router.use(FakeProvider(delay=5.0))
    force_strategy(engine, Strategy.BLEND_AI)
    thinking = asyncio.create_task(engine.think("slow question"))
    await asyncio.sleep(0)

    memory_id = await engine.remember("unrelated note")
    assert (await engine.recall("unrelated note"))[0].id == memory_id
    assert not thinking.done()
    await thinking


@pytest.mark.asyncio
async def test_privacy_mode_skips_provider(engine: CognitiveEngine, router: ProviderRouter):
    provider = FakeProvider()
    await router.use(provider)
    engine.config.privacy_mode = True
    force_strategy(engine, Strategy.BLEND_AI)
    thought = await engine.think("secret question")
    assert thought.ai_enhanced is False
    assert provider.calls == []


@pytest.mark.asyncio
async def test_memory_only_strategy_skips_provider(engine: CognitiveEngine, router: ProviderRouter):
    provider = FakeProvider()
    await router.use(provider)
    force_strategy(engine, Strategy.MEMORY_ONLY)
    await engine.think("question")
    assert provider.calls == []


@pytest.mark.asyncio
async def test_widen_recall_returns_more(engine: CognitiveEngine):
    engine.config = EngineConfig(recall_limit=2, min_recall_similarity=0.0)
    for i in range(6):
        await engine.remember(f"project alpha note {i}")
    force_strategy(engine, Strategy.WIDEN_RECALL)
    wide = await engine.think("project alpha note")
    force_strategy(engine, Strategy.NARROW_RECALL)
    narrow = await engine.think("project alpha note")
    assert wide.memory_count == 4
    assert narrow.memory_count == 1


@pytest.mark.asyncio
@pytest.mark.parametrize("strategy", [Strategy.MEMORY_ONLY, Strategy.WIDEN_RECALL])
async def test_think_counts_one_access(engine: CognitiveEngine, strategy: Strategy):
    engine.config = EngineConfig(recall_limit=2, min_recall_similarity=0.0)
    memory_id = await engine.remember("project alpha deadline")
    force_strategy(engine, strategy)

    await engine.think("project alpha deadline")
    assert engine.memory.get(memory_id).access_count == 1
    await engine.think("project alpha deadline")
    assert engine.memory.get(memory_id).access_count == 2


@pytest.mark.asyncio
async def test_events(engine: CognitiveEngine, events: EventBus):
    queue = events.subscribe()
    await engine.remember("note")
    thought = await engine.think("note?")
    await engine.cycle()

    names = []
    while not queue.empty():
        names.append(queue.get_nowait())
    kinds = [e.name for e in names]
    assert kinds[0] == EventType.MEMORY_STORED.value
    assert EventType.THOUGHT_GENERATED.value in kinds
    assert kinds[-1] == EventType.CYCLE_COMPLETED.value
    generated = next(e for e in names if e.name == EventType.THOUGHT_GENERATED.value)
    assert generated.payload["id"] == thought.id


@pytest.mark.asyncio
async def test_slow_subscriber_never_blocks(engine: CognitiveEngine, events: EventBus):
    events.subscribe(maxsize=1)
    for i in range(5):
        await engine.remember(f"note {i}")
    assert events.dropped == 4


@pytest.mark.asyncio
async def test_get_thoughts_newest_first(engine: CognitiveEngine):
    first = await engine.think("first")
    second = await engine.think("second")
    assert [t.id for t in engine.get_thoughts()] == [second.id, first.id]
    assert engine.get_thoughts(1)[0].id == second.id
    assert engine.thought_count == 2


@pytest.mark.asyncio
async def test_cycle(engine: CognitiveEngine, clock: VirtualClock, router: ProviderRouter):
    """cycle decays stale memories, replays and refreshes provider status."""
    provider = FakeProvider()
    provider.healthy = False
    await router.use(provider)

    memory_id = await engine.remember("old fact", importance=0.8)
    await engine.think("old fact?")
    await clock.advance(8 * 24 * 3600)

    result = await engine.cycle()
    assert result.cycle == 1
    assert result.memories_decayed == 2
    assert result.replayed == 1
    assert result.ai_available is False
    assert engine.memory.get(memory_id).importance < 0.8


@pytest.mark.asyncio
async def test_cycle_in_privacy_mode_skips_health_check(engine: CognitiveEngine, router: ProviderRouter):
    provider = FakeProvider()
    provider.health_check = AsyncMock(return_value=True)
    await router.use(provider)
    engine.config.privacy_mode = True

    result = await engine.cycle()
    provider.health_check.assert_not_called()
    assert result.ai_available is True  # unknown counts as available

    engine.config.privacy_mode = False
    await engine.cycle()
    provider.health_check.assert_awaited_once()


@pytest.mark.asyncio
async def test_evolve(engine: CognitiveEngine):
    for i in range(12):
        await engine.think(f"question {i}")
    result = engine.evolve()
    assert result.trend_label in {"improving", "stable", "declining"}
    assert result.memories_evicted == 0
    assert engine.status().learning_trend == result.trend_label


@pytest.mark.asyncio
async def test_evolve_reports_exploration_change(engine: CognitiveEngine):
    engine.learner = LearningModule(exploration_rate=0.2)
    for i in range(12):
        await engine.think(f"question {i}")
    result = engine.evolve()
    assert result.exploration_after != result.exploration_before
    assert "exploration" in result.adaptations[0]


@pytest.mark.asyncio
async def test_status_and_stats(engine: CognitiveEngine, clock: VirtualClock):
    await engine.remember("a fact")
    await engine.think("a fact?")
    await clock.advance(30)

    status = engine.status()
    assert status.memory_count == 2
    assert status.thought_count == 1
    assert status.uptime_seconds == 30

    stats = engine.stats()
    assert stats.memory.count == 2
    assert stats.learning.total_updates == 1
    assert stats.thoughts == 1


@pytest.mark.asyncio
async def test_flush_and_load(tmp_path: Path, engine: CognitiveEngine):
    persistence = BrainPersistence(tmp_path / "brain.db")
    await persistence.connect()
    try:
        engine.persistence = persistence
        await engine.remember("durable fact")
        await engine.think("durable fact?")
        await engine.flush()

        embedder = EmbeddingProvider(384)
        fresh = CognitiveEngine(
            MemoryStore(embedder),
            LearningModule(),
            embedder,
            ProviderRouter(),
            EventBus(),
            persistence=persistence,
        )
        await fresh.load()
        assert len(fresh.memory) == 2
        assert fresh.learner.export_q_table() == engine.learner.export_q_table()
    finally:
        await persistence.close()


@pytest.mark.asyncio
async def test_goal_progress(engine: CognitiveEngine, clock: VirtualClock):
    goal = engine.add_goal("Run a marathon", priority=0.9)
    low = engine.add_goal("Tidy the garage", priority=0.2)
    assert goal.status is GoalStatus.PENDING
    assert engine.status().active_goals == 2

    await clock.advance(60)
    assert engine.update_goal(goal.id, 0.4).status is GoalStatus.ACTIVE
    assert goal.updated_at == clock.now()
    assert engine.update_goal(goal.id, 1.7).status is GoalStatus.COMPLETED
    assert goal.progress == 1.0
    assert engine.update_goal(low.id, 0.1, "failed").status is GoalStatus.FAILED

    assert engine.status().active_goals == 0
    assert [g.id for g in engine.get_goals()] == [goal.id, low.id]
    assert engine.get_goals("completed") == [goal]


@pytest.mark.asyncio
async def test_goal_and_belief_validation(engine: CognitiveEngine):
    with pytest.raises(InputError):
        engine.add_goal("  ")
    with pytest.raises(InputError):
        engine.add_goal("x", priority=1.5)
    with pytest.raises(NotFoundError):
        engine.update_goal("missing", 0.5)
    goal = engine.add_goal("x")
    with pytest.raises(InputError):
        engine.update_goal(goal.id, 0.5, "abandoned")
    assert goal.status is GoalStatus.PENDING
    with pytest.raises(InputError):
        engine.add_belief("sky is green", confidence=-0.1)


@pytest.mark.asyncio
async def test_beliefs_newest_first(engine: CognitiveEngine, clock: VirtualClock):
    old = engine.add_belief("Mornings are for deep work", 0.8)
    await clock.advance(1)
    new = engine.add_belief("Meetings drain energy", 0.3, source="journal")
    assert engine.get_beliefs() == [new, old]
    assert engine.get_beliefs(min_confidence=0.5) == [old]
    assert new.source == "journal"


@pytest.mark.asyncio
async def test_connect_and_consolidate(engine: CognitiveEngine):
    a = await engine.remember("renew the passport", importance=0.6)
    b = await engine.remember("renew the passport", importance=0.3)
    c = await engine.remember("book flights to Lisbon")
    engine.connect(b, c)
    with pytest.raises(NotFoundError):
        engine.connect(a, "missing")

    result = engine.consolidate()
    assert result.merged == 1
    assert b not in engine.memory
    assert engine.memory.get(a).connections == (c,)


@pytest.mark.asyncio
async def test_goals_and_beliefs_survive_reload(tmp_path: Path, engine: CognitiveEngine):
    persistence = BrainPersistence(tmp_path / "brain.db")
    await persistence.connect()
    try:
        engine.persistence = persistence
        goal = engine.add_goal("Learn Portuguese", 0.7)
        engine.update_goal(goal.id, 0.3)
        belief = engine.add_belief("Practice beats talent", 0.9)
        await engine.flush()

        embedder = EmbeddingProvider(384)
        fresh = CognitiveEngine(
            MemoryStore(embedder),
            LearningModule(),
            embedder,
            ProviderRouter(),
            EventBus(),
            persistence=persistence,
        )
        await fresh.load()
        assert fresh.get_goals() == [goal]
        assert fresh.get_beliefs() == [belief]
    finally:
        await persistence.close()


@pytest.mark.asyncio
async def test_soft_cap_keeps_new_memories(tmp_path: Path, clock: VirtualClock, events: EventBus):
    """Over the soft cap, remember and think still succeed and persist."""
    persistence = BrainPersistence(tmp_path / "brain.db")
    await persistence.connect()
    try:
        embedder = EmbeddingProvider(384)
        engine = CognitiveEngine(
            MemoryStore(embedder, events, soft_cap=2, clock=clock),
            LearningModule(exploration_rate=0.0, exploration_min=0.0),
            embedder,
            ProviderRouter(),
            events,
            persistence=persistence,
            clock=clock,
        )
        queue = events.subscribe(maxsize=100)
        await engine.remember("alpha note")
        await engine.remember("beta note")
        await engine.recall("alpha beta note")

        gamma = await engine.remember("gamma note")
        assert gamma in engine.memory
        thought = await engine.think("alpha beta note")
        assert thought.response
        assert len(engine.memory) <= 2

        stored = []
        while not queue.empty():
            event = queue.get_nowait()
            if event.name == EventType.MEMORY_STORED.value:
                stored.append(event.payload["id"])
        assert stored[-1] in engine.memory

        await engine.flush()
        on_disk = {m.id for m in await persistence.load_memories()}
        assert on_disk == {m.id for m in engine.memory.all()}
    finally:
        await persistence.close()


@pytest.mark.asyncio
async def test_write_through_skips_evicted(tmp_path: Path, engine: CognitiveEngine):
    persistence = BrainPersistence(tmp_path / "brain.db")
    await persistence.connect()
    try:
        memory = engine.memory.insert_vector("short lived", engine.embedder.embed_hash("short lived"))
        engine.memory.delete(memory.id)
        await engine.memory.persist(persistence, memory.id)
        assert await persistence.load_memories() == []
    finally:
        await persistence.close()


def test_synthesize_response():
    assert synthesize_response([]) == NO_MEMORY_RESPONSE
    one = [RecallResult("1", "only memory", MemoryType.SEMANTIC, 0.5, 0.9)]
    assert synthesize_response(one) == "Based on 1 relevant memory:\n- only memory"
