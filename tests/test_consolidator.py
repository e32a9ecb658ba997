"""Tests for the consolidation engine."""

import asyncio
import pytest
from datetime import datetime, timedelta
from unittest.mock import AsyncMock

from consolidator import ConsolidationEngine, ConsolidationStats, lifecycle_stage_for_age
from graph import RelationshipGraph, entity_node_id
from memory_config import ConsolidationConfig
from memory_store import InMemoryMemoryStore
from memory_types import Memory, MemoryDocument, LifecycleStage, ConsolidationStrategy
from temporal import to_timestamp_ms

SMALL = {"min_memories_for_consolidation": 3}


def _doc(mid, content, hours_old=1, thread_id="t1", **extra):
    ts = to_timestamp_ms(datetime.now() - timedelta(hours=hours_old))
    return MemoryDocument(content, {"id": mid, "thread_id": thread_id, "timestamp": ts, **extra})


def _make_memory(mid, content="some text", hours_old=1, importance=0.5,
                 stage=LifecycleStage.ACTIVE, access_count=0, **metadata):
    created = datetime.now() - timedelta(hours=hours_old)
    return Memory(id=mid, text_content=content, thread_id="t1", importance=importance,
                  access_count=access_count, created_at=created, last_accessed_at=created,
                  lifecycle_stage=stage, metadata=metadata)


async def _seeded(store_cls=InMemoryMemoryStore, docs=None):
    store = store_cls()
    await store.store_memories(docs if docs is not None else [
        _doc("a1", "the deploy uses docker"),
        _doc("a2", "the deploy uses docker"),
        _doc("b", "we like postgres a lot"),
    ])
    return store


class SlowStore(InMemoryMemoryStore):
    async def retrieve_relevant_memories(self, *args, **kwargs):
        await asyncio.sleep(0.01)
        return await super().retrieve_relevant_memories(*args, **kwargs)


class FlakyStore(InMemoryMemoryStore):
    fail_next_store = False

    async def store_memories(self, documents):
        if self.fail_next_store:
            self.fail_next_store = False
            raise RuntimeError("write failed")
        await super().store_memories(documents)


# ---------------------------------------------------------------------------
# Full pass
# ---------------------------------------------------------------------------

class TestConsolidatePass:
    async def test_duplicates_merged(self):
        store = await _seeded()
        engine = ConsolidationEngine(store)
        stats = await engine.consolidate_memories("t1", SMALL)

        assert stats.memories_before == 3
        assert stats.memories_after == 2
        assert stats.deduplicated == 1
        assert stats.merged == 0
        assert stats.processing_time_ms >= 0

        docs = await store.retrieve_relevant_memories("", "t1", limit=10)
        assert len(docs) == 2
        merged = [d for d in docs if d.metadata.get("consolidated_count") == 2]
        assert len(merged) == 1
        assert set(merged[0].metadata["consolidated_from"]) == {"a1", "a2"}
        assert all(d.metadata["thread_id"] == "t1" for d in docs)
        assert all("importance_score" in d.metadata for d in docs)

    async def test_below_minimum_is_noop(self):
        store = AsyncMock()
        store.retrieve_relevant_memories.return_value = [_doc("x", "one"), _doc("y", "two")]
        engine = ConsolidationEngine(store)

        stats = await engine.consolidate_memories("t1")
        assert stats == ConsolidationStats()
        store.clear_thread_memories.assert_not_called()
        store.store_memories.assert_not_called()
        assert not engine.is_consolidating

    async def test_concurrent_calls_single_flight(self):
        store = await _seeded(SlowStore)
        engine = ConsolidationEngine(store)

        first, second = await asyncio.gather(
            engine.consolidate_memories("t1", SMALL),
            engine.consolidate_memories("t1", SMALL),
        )
        results = [first, second]
        assert sum(1 for s in results if s.memories_before > 0) == 1
        assert ConsolidationStats() in results
        assert not engine.is_consolidating

    async def test_persist_failure_restores_originals(self):
        store = await _seeded(FlakyStore)
        store.fail_next_store = True
        engine = ConsolidationEngine(store)

        with pytest.raises(RuntimeError):
            await engine.consolidate_memories("t1", SMALL)

        docs = await store.retrieve_relevant_memories("", "t1", limit=10)
        assert {d.metadata["id"] for d in docs} == {"a1", "a2", "b"}
        assert not engine.is_consolidating

    async def test_fetch_error_propagates(self):
        store = AsyncMock()
        store.retrieve_relevant_memories.side_effect = RuntimeError("down")
        engine = ConsolidationEngine(store)
        with pytest.raises(RuntimeError):
            await engine.consolidate_memories("t1")
        assert not engine.is_consolidating

    async def test_full_fetch_window_skips_rewrite(self):
        store = await _seeded()
        engine = ConsolidationEngine(store)
        engine.fetch_limit = 3

        stats = await engine.consolidate_memories("t1", SMALL)
        assert stats == ConsolidationStats()
        docs = await store.retrieve_relevant_memories("", "t1", limit=10)
        assert {d.metadata["id"] for d in docs} == {"a1", "a2", "b"}
        assert not engine.is_consolidating

    async def test_stale_memories_archived(self):
        store = await _seeded(docs=[
            _doc("new1", "fresh thoughts on caching"),
            _doc("new2", "unrelated idea about queues"),
            _doc("ancient", "very old note", hours_old=800),
        ])
        engine = ConsolidationEngine(store)
        stats = await engine.consolidate_memories("t1", {**SMALL, "min_importance_threshold": 0.0})

        assert stats.archived == 1
        docs = {d.metadata["id"]: d for d in await store.retrieve_relevant_memories("", "t1")}
        assert docs["ancient"].metadata["lifecycle_stage"] == "archived"
        assert docs["ancient"].metadata["consolidation_strategy"] == "archive"
        assert "archived_at" in docs["ancient"].metadata

    async def test_graph_rebuilt_from_survivors(self):
        store = await _seeded(docs=[
            _doc("1", "Alice deploys with Docker"),
            _doc("2", "Alice deploys with Docker"),
            _doc("3", "Bob prefers Postgres"),
        ])
        graph = RelationshipGraph()
        graph.extract_nodes_and_edges("Mallory was here", thread_id="t1")
        engine = ConsolidationEngine(store, graph)

        await engine.consolidate_memories("t1", SMALL)
        assert graph.get_node(entity_node_id("Mallory", "t1")) is None
        assert graph.get_node(entity_node_id("Alice", "t1")) is not None
        assert graph.get_node(entity_node_id("Postgres", "t1")) is not None

    async def test_registry_refreshed(self):
        store = await _seeded()
        engine = ConsolidationEngine(store)
        await engine.consolidate_memories("t1", SMALL)

        assert len(engine.memory_registry) == 2
        assert engine.record_access("b")
        assert engine.memory_registry["b"].access_count == 1
        assert not engine.record_access("missing")


# ---------------------------------------------------------------------------
# Pipeline steps
# ---------------------------------------------------------------------------

class TestLifecycle:
    def test_stage_thresholds(self):
        config = ConsolidationConfig()
        stages = [lifecycle_stage_for_age(h, config) for h in (10, 50, 200, 800)]
        assert stages == [
            LifecycleStage.ACTIVE, LifecycleStage.MATURE,
            LifecycleStage.DORMANT, LifecycleStage.ARCHIVE_READY,
        ]

    def test_categorize(self):
        engine = ConsolidationEngine(InMemoryMemoryStore())
        mems = [
            _make_memory("a", hours_old=10, stage=LifecycleStage.NEW),
            _make_memory("m", hours_old=50),
            _make_memory("d", hours_old=200),
            _make_memory("r", hours_old=800),
            _make_memory("x", hours_old=1, stage=LifecycleStage.ARCHIVED),
        ]
        buckets = engine.categorize_by_lifecycle(mems)
        assert [m.id for m in buckets[LifecycleStage.ACTIVE]] == ["a"]
        assert [m.id for m in buckets[LifecycleStage.MATURE]] == ["m"]
        assert [m.id for m in buckets[LifecycleStage.DORMANT]] == ["d"]
        assert [m.id for m in buckets[LifecycleStage.ARCHIVE_READY]] == ["r"]
        assert [m.id for m in buckets[LifecycleStage.ARCHIVED]] == ["x"]
        assert buckets[LifecycleStage.NEW] == []

    def test_importance_decay(self):
        engine = ConsolidationEngine(InMemoryMemoryStore())
        mem = _make_memory("a", hours_old=240, importance=1.0)
        engine.apply_importance_decay([mem])
        # 10 days at rate 0.1
        assert mem.importance == pytest.approx(0.3679, abs=0.001)


class TestClustering:
    def test_small_input_passthrough(self):
        engine = ConsolidationEngine(InMemoryMemoryStore())
        mems = [_make_memory("a", "same"), _make_memory("b", "same")]
        assert engine.cluster_and_merge_memories(mems) is mems

    def test_small_cluster_merged(self):
        engine = ConsolidationEngine(InMemoryMemoryStore())
        mems = [_make_memory(str(i), "release notes for version two") for i in range(3)]
        [merged] = engine.cluster_and_merge_memories(mems)
        assert merged.consolidation_strategy == ConsolidationStrategy.CLUSTER
        assert merged.cluster_id.startswith("cluster-")
        assert len(merged.consolidated_from) == 3

    def test_large_cluster_summarized(self):
        engine = ConsolidationEngine(InMemoryMemoryStore())
        mems = [_make_memory(str(i), "Release notes for version two are ready.") for i in range(6)]
        [summary] = engine.cluster_and_merge_memories(mems)
        assert summary.consolidation_strategy == ConsolidationStrategy.SUMMARIZE
        assert summary.cluster_id.startswith("summary-")
        assert summary.metadata["summarized_count"] == 6


class TestPrune:
    def test_floor_and_cap(self):
        engine = ConsolidationEngine(InMemoryMemoryStore(), config=ConsolidationConfig(
            min_importance_threshold=0.2, max_memories_after_consolidation=2,
        ))
        mems = [
            _make_memory("low", importance=0.1),
            _make_memory("mid", importance=0.5),
            _make_memory("high", importance=0.9),
            _make_memory("top", importance=1.0),
        ]
        assert [m.id for m in engine.prune_by_importance(mems)] == ["top", "high"]


# ---------------------------------------------------------------------------
# Scoring and compression
# ---------------------------------------------------------------------------

class TestScoring:
    def test_fresh_well_used_memory_scores_high(self):
        engine = ConsolidationEngine(InMemoryMemoryStore())
        mem = _make_memory("a", hours_old=0, importance=1.0, access_count=10, stage=LifecycleStage.NEW)
        assert engine.calculate_importance_score(mem) == pytest.approx(1.0, abs=0.001)

    def test_weighted_blend(self):
        engine = ConsolidationEngine(InMemoryMemoryStore())
        mem = _make_memory("a", hours_old=100, importance=0.5, access_count=0)
        # 0.3 * exp(-1) + 0.2 * 0 + 0.3 * 0.5 + 0.2 * 0.9
        assert engine.calculate_importance_score(mem) == pytest.approx(0.4404, abs=0.001)


class TestCompression:
    def test_compress(self):
        engine = ConsolidationEngine(InMemoryMemoryStore())
        mem = _make_memory(
            "a", "A long conversation about the deployment pipeline. " * 20,
            facts=["uses docker", "runs nightly"], entities=["Docker"],
            full_context="x" * 2000, raw_messages=["m1", "m2"],
        )
        compressed = engine.compress_memory(mem)

        assert compressed.text_content.startswith("Summary: A long conversation")
        assert "Key Facts: uses docker; runs nightly" in compressed.text_content
        assert compressed.text_content.endswith("Entities: Docker")
        assert "full_context" not in compressed.metadata
        assert "raw_messages" not in compressed.metadata
        assert compressed.consolidation_strategy == ConsolidationStrategy.COMPRESS
        assert 0 < compressed.compression_ratio < 1
        assert engine.memory_registry["a"] is compressed
        assert mem.text_content.startswith("A long conversation")


# ---------------------------------------------------------------------------
# Cleanup
# ---------------------------------------------------------------------------

class TestCleanup:
    @pytest.fixture
    async def store(self):
        return await _seeded(docs=[
            _doc("chatter", "random chatter", hours_old=40 * 24),
            _doc("budget", "the budget for Q3", hours_old=40 * 24),
            _doc("weak", "barely relevant", importance_score=0.05),
            _doc("keep", "current plan", importance=0.8),
        ])

    async def test_age_keywords_and_importance(self, store):
        engine = ConsolidationEngine(store)
        removed = await engine.apply_cleanup_policies("t1", {
            "max_age_days": 30, "preserve_keywords": ["Budget"], "min_importance": 0.2,
        })
        assert removed == 2
        docs = await store.retrieve_relevant_memories("", "t1")
        assert {d.metadata["id"] for d in docs} == {"budget", "keep"}

    async def test_max_count(self, store):
        engine = ConsolidationEngine(store)
        assert await engine.apply_cleanup_policies("t1", {"max_count": 1}) == 3
        [doc] = await store.retrieve_relevant_memories("", "t1")
        assert doc.metadata["id"] == "keep"

    async def test_full_fetch_window_skips_cleanup(self, store):
        engine = ConsolidationEngine(store)
        engine.fetch_limit = 4
        assert await engine.apply_cleanup_policies("t1", {"max_count": 1}) == 0
        docs = await store.retrieve_relevant_memories("", "t1")
        assert len(docs) == 4

    async def test_nothing_removed_skips_persist(self):
        store = AsyncMock()
        store.retrieve_relevant_memories.return_value = [_doc("a", "fine")]
        engine = ConsolidationEngine(store)
        assert await engine.apply_cleanup_policies("t1", {"max_age_days": 30}) == 0
        store.clear_thread_memories.assert_not_called()


# ---------------------------------------------------------------------------
# Health and background scheduling
# ---------------------------------------------------------------------------

class TestHealth:
    async def test_health_after_pass(self):
        engine = ConsolidationEngine(await _seeded())
        await engine.consolidate_memories("t1", SMALL)
        health = await engine.get_consolidation_health()

        assert health["is_consolidating"] is False
        assert health["memory_count"] == 2
        assert health["lifecycle_distribution"]["active"] == 2
        assert health["last_stats"]["memories_before"] == 3
        assert health["deduplication_rate"] == pytest.approx(1 / 3)
        assert health["store"]["available"] is True
        assert health["background_running"] is False

    async def test_store_health_failure_degrades(self):
        store = AsyncMock()
        store.get_health_status.side_effect = RuntimeError("unreachable")
        health = await ConsolidationEngine(store).get_consolidation_health()
        assert health["store"]["available"] is False
        assert health["last_consolidation"] is None


class TestBackground:
    async def test_disabled_is_noop(self):
        engine = ConsolidationEngine(await _seeded())
        engine.register_thread("t1")
        assert engine.start_background_consolidation() is False
        assert await engine.run_background_tick() == {}
        assert not engine.background_running

    async def test_tick_consolidates_registered_threads(self):
        engine = ConsolidationEngine(await _seeded(), config=ConsolidationConfig(
            enable_background_consolidation=True, min_memories_for_consolidation=3,
        ))
        engine.register_thread("t1")
        results = await engine.run_background_tick()
        assert results["t1"].memories_after == 2

        engine.forget_thread("t1")
        assert await engine.run_background_tick() == {}

    async def test_start_and_stop(self):
        engine = ConsolidationEngine(InMemoryMemoryStore(), config=ConsolidationConfig(
            enable_background_consolidation=True,
        ))
        assert engine.start_background_consolidation() is True
        assert engine.background_running
        await engine.stop_background_consolidation()
        assert not engine.background_running
