"""Tests for memory store."""

import asyncio
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta
from pathlib import Path
from unittest.mock import AsyncMock

import numpy as np
import pytest

from superbrain.brain.embeddings import EmbeddingProvider, hash_embed
from superbrain.brain.memory import MemoryStore
from superbrain.brain.persistence import BrainPersistence
from superbrain.core.clock import VirtualClock
from superbrain.core.errors import InputError, NotFoundError, PersistenceError
from superbrain.core.events import EventBus, EventType
from superbrain.core.types import MemoryType


@pytest.fixture
def clock():
    return VirtualClock()


@pytest.fixture
def store(clock: VirtualClock):
    return MemoryStore(EmbeddingProvider(384), clock=clock)


@pytest.fixture
async def persistence(tmp_path: Path):
    db = BrainPersistence(tmp_path / "test.db")
    await db.connect()
    yield db
    await db.close()


@pytest.mark.asyncio
async def test_insert_and_get(store: MemoryStore):
    """Inserted memories can be fetched by id."""
    memory_id = await store.insert("User likes coffee", "semantic", 0.7)
    memory = store.get(memory_id)
    assert memory.content == "User likes coffee"
    assert memory.memory_type is MemoryType.SEMANTIC
    assert memory.importance == 0.7
    assert memory.vector.shape == (384,)


@pytest.mark.asyncio
async def test_recall_shared_token(store: MemoryStore):
    """'Buy milk' is recalled for 'milk' above 0.3 similarity."""
    memory_id = await store.insert("Buy milk", "episodic", 0.5)
    await store.insert("Quarterly tax filing deadline", "semantic", 0.5)

    results = store.search(await store.embedder.embed("milk"), 5)
    top, similarity = results[0]
    assert top.id == memory_id
    assert similarity > 0.3


@pytest.mark.asyncio
async def test_search_sorted_and_k_larger_than_store(store: MemoryStore):
    """Results are in descending similarity; k > size returns everything."""
    for text in ["alpha beta", "beta gamma", "gamma delta", "delta epsilon"]:
        await store.insert(text)
    results = store.search(await store.embedder.embed("beta"), 100)
    assert len(results) == 4
    scores = [s for _, s in results]
    assert scores == sorted(scores, reverse=True)


@pytest.mark.asyncio
async def test_search_ties_prefer_importance_then_recency(store: MemoryStore, clock: VirtualClock):
    vector = hash_embed("same text", 384)
    low = store.insert_vector("same text", vector, importance=0.2)
    await clock.advance(10)
    high_old = store.insert_vector("same text", vector, importance=0.8)
    await clock.advance(10)
    high_new = store.insert_vector("same text", vector, importance=0.8)

    ranked = [m.id for m, _ in store.search(vector, 3)]
    assert ranked == [high_new.id, high_old.id, low.id]


@pytest.mark.asyncio
async def test_search_type_filter(store: MemoryStore):
    await store.insert("meeting notes", "episodic")
    goal_id = await store.insert("meeting goal", "goal")
    results = store.search(await store.embedder.embed("meeting"), 5, memory_type=MemoryType.GOAL)
    assert [m.id for m, _ in results] == [goal_id]


@pytest.mark.asyncio
async def test_search_type_filter_by_name(store: MemoryStore):
    episode_id = await store.insert("meeting notes", "episodic")
    await store.insert("meeting goal", "goal")
    vector = await store.embedder.embed("meeting")
    results = store.search(vector, 5, memory_type="Episodic")
    assert [m.id for m, _ in results] == [episode_id]
    with pytest.raises(InputError):
        store.search(vector, 5, memory_type="dream")


@pytest.mark.asyncio
async def test_search_touches_access_metadata(store: MemoryStore, clock: VirtualClock):
    memory_id = await store.insert("remember the dentist")
    await clock.advance(60)
    store.search(await store.embedder.embed("dentist"), 1)
    memory = store.get(memory_id)
    assert memory.access_count == 1
    assert memory.last_accessed == clock.now()

    store.search(await store.embedder.embed("dentist"), 1, touch=False)
    assert store.get(memory_id).access_count == 1


@pytest.mark.asyncio
async def test_touch_skips_missing(store: MemoryStore):
    memory_id = await store.insert("water the plants")
    touched = store.touch([memory_id, "gone"])
    assert list(touched) == [memory_id]
    assert store.get(memory_id).access_count == 1
    assert store.total_accesses == 1


@pytest.mark.asyncio
@pytest.mark.parametrize("content", ["", "   "])
async def test_empty_content_rejected(store: MemoryStore, content: str):
    with pytest.raises(InputError):
        await store.insert(content)


@pytest.mark.asyncio
@pytest.mark.parametrize("importance", [-0.1, 1.1, float("nan")])
async def test_importance_range(store: MemoryStore, importance: float):
    with pytest.raises(InputError):
        await store.insert("text", importance=importance)


@pytest.mark.asyncio
async def test_unknown_type_rejected(store: MemoryStore):
    with pytest.raises(InputError):
        await store.insert("text", "dreams")


def test_get_unknown_id(store: MemoryStore):
    with pytest.raises(NotFoundError):
        store.get("no-such-id")
    with pytest.raises(KeyError):
        store.set_importance("no-such-id", 0.5)


@pytest.mark.asyncio
async def test_stored_event():
    events = EventBus()
    queue = events.subscribe()
    store = MemoryStore(EmbeddingProvider(64), events)
    memory_id = await store.insert("note")
    event = queue.get_nowait()
    assert event.name == EventType.MEMORY_STORED.value
    assert event.payload["id"] == memory_id


@pytest.mark.asyncio
async def test_concurrent_remember_no_lost_writes(store: MemoryStore):
    """N concurrent inserts produce N distinct ids and N memories."""
    ids = await asyncio.gather(*(store.insert(f"memory number {i}") for i in range(100)))
    assert len(set(ids)) == 100
    assert len(store) == 100


def test_threaded_inserts(store: MemoryStore):
    """Inserts from worker threads do not lose writes."""
    def insert(i: int) -> str:
        return store.insert_vector(f"thread memory {i}", hash_embed(f"thread memory {i}", 384)).id

    with ThreadPoolExecutor(max_workers=8) as pool:
        ids = list(pool.map(insert, range(200)))
    assert len(set(ids)) == 200
    assert len(store) == 200
    assert store.stats().total_stores == 200


def test_eviction_respects_floor(clock: VirtualClock):
    """Over the soft cap, low scores go first and the importance floor is kept."""
    store = MemoryStore(EmbeddingProvider(32), soft_cap=10, importance_floor=0.9, clock=clock)
    keep = [store.insert_vector(f"vital {i}", hash_embed(f"vital {i}", 32), importance=0.95) for i in range(5)]
    for i in range(6):
        store.insert_vector(f"trivia {i}", hash_embed(f"trivia {i}", 32), importance=0.1)

    # 11 > 10: evicted down to 9, only low-importance entries go
    assert len(store) == 9
    for memory in keep:
        assert memory.id in store


def test_evict_cannot_go_below_floor(clock: VirtualClock):
    store = MemoryStore(EmbeddingProvider(32), importance_floor=0.5, clock=clock)
    for i in range(4):
        store.insert_vector(f"vital {i}", hash_embed(f"vital {i}", 32), importance=0.9)
    assert store.evict(target=0) == []
    assert len(store) == 4


def test_connect_links_both_ways(store: MemoryStore):
    a = store.insert_vector("dentist appointment", hash_embed("dentist appointment", 384))
    b = store.insert_vector("insurance card", hash_embed("insurance card", 384))

    assert store.connect(a.id, b.id)
    assert store.connect(b.id, a.id)  # already linked
    assert store.get(a.id).connections == (b.id,)
    assert [m.id for m in store.connected(b.id)] == [a.id]
    assert not store.connect(a.id, "missing")
    with pytest.raises(InputError):
        store.connect(a.id, a.id)

    store.delete(b.id)
    assert store.get(a.id).connections == ()


def test_consolidate_merges_duplicates_and_prunes(store: MemoryStore):
    vector = hash_embed("water the plants", 384)
    first = store.insert_vector("water the plants", vector, importance=0.4)
    store.touch([first.id, first.id])
    keeper = store.insert_vector("water the plants today", vector, importance=0.7)
    other_type = store.insert_vector("water the plants", vector, MemoryType.EPISODIC, 0.5)
    soil = store.insert_vector("buy potting soil", hash_embed("buy potting soil", 384))
    store.connect(first.id, soil.id)
    store.insert_vector("stale trivia", hash_embed("stale trivia", 384), importance=0.01)

    result = store.consolidate(merge_similarity=0.95, prune_below=0.05)

    assert (result.merged, result.pruned, result.remaining) == (1, 1, 3)
    assert first.id not in store
    assert other_type.id in store
    merged = store.get(keeper.id)
    assert merged.importance == 0.7
    assert merged.access_count == 2
    assert merged.connections == (soil.id,)
    assert store.get(soil.id).connections == (keeper.id,)


def test_consolidate_keeps_floor(clock: VirtualClock):
    store = MemoryStore(EmbeddingProvider(32), importance_floor=0.0, clock=clock)
    store.insert_vector("faint", hash_embed("faint", 32), importance=0.01)
    assert store.consolidate(prune_below=0.05).pruned == 0


def test_eviction_score_shape(store: MemoryStore, clock: VirtualClock):
    memory = store.insert_vector("x", hash_embed("x", 384), importance=0.8)
    assert store.eviction_score(memory) == 0.0  # never accessed
    memory.access_count = 3
    fresh = store.eviction_score(memory)
    later = store.eviction_score(memory, clock.now() + timedelta(days=30))
    assert fresh == pytest.approx(0.8 * np.log1p(3))
    assert later == pytest.approx(fresh / 2)


@pytest.mark.asyncio
async def test_decay_stale(store: MemoryStore, clock: VirtualClock):
    stale_id = await store.insert("old note", importance=0.8)
    await clock.advance(8 * 24 * 3600)
    fresh_id = await store.insert("new note", importance=0.8)

    assert store.decay_stale(timedelta(days=7), 0.5) == 1
    assert store.get(stale_id).importance == pytest.approx(0.4)
    assert store.get(fresh_id).importance == pytest.approx(0.8)


@pytest.mark.asyncio
async def test_flush_and_load(store: MemoryStore, persistence: BrainPersistence):
    """Flush writes the delta; a fresh store loads it back."""
    first = await store.insert("persisted one", "goal", 0.6)
    second = await store.insert("persisted two")
    assert await store.flush(persistence) == 2
    assert store.pending_changes == 0

    store.delete(second)
    assert await store.flush(persistence) == 1

    restored = MemoryStore(EmbeddingProvider(384))
    assert await restored.load(persistence) == 1
    memory = restored.get(first)
    assert memory.memory_type is MemoryType.GOAL
    assert np.allclose(memory.vector, store.get(first).vector)


@pytest.mark.asyncio
async def test_failed_flush_keeps_memory_and_retries(store: MemoryStore):
    """A persistence failure surfaces, in-memory state stays, delta is requeued."""
    memory_id = await store.insert("precious")
    broken = AsyncMock()
    broken.save_memories.side_effect = PersistenceError("disk full")

    with pytest.raises(PersistenceError):
        await store.flush(broken)
    assert memory_id in store
    assert store.pending_changes == 1


@pytest.mark.asyncio
async def test_load_skips_wrong_dimension(persistence: BrainPersistence):
    small = MemoryStore(EmbeddingProvider(16))
    await small.insert("short vector")
    await small.flush(persistence)

    big = MemoryStore(EmbeddingProvider(384))
    assert await big.load(persistence) == 0
