"""
Memory Consolidation Engine
===========================

The "sleep cycle" for a conversation thread: pulls every stored memory,
ages it through the lifecycle, decays importance, folds near-duplicates and
related memories together, archives stale memories, prunes whatever falls
below the importance floor and writes the reduced set back. The relationship
graph for the thread is then rebuilt from the survivors.

At most one consolidation pass runs at a time per engine. A concurrent call
returns all-zero stats without touching the store.
"""

import json
import math
import time
import uuid
import asyncio
import logging
import threading
from datetime import datetime
from dataclasses import dataclass, asdict, replace
from typing import Any, Dict, List, Optional, Union

from decay import importance_decay
from dedup import group_similar, merge_memories, summarize_group
from memory_config import ConsolidationConfig, CleanupPolicy, merge_config
from memory_types import (
    Memory, MemoryDocument, LifecycleStage, ConsolidationStrategy,
    document_to_memory, memory_to_document, memory_to_dict,
)
from temporal import age_in_hours, age_in_days

logger = logging.getLogger(__name__)

FETCH_ALL_LIMIT = 1000
CLUSTER_THRESHOLD_FACTOR = 0.8
MAX_MERGE_CLUSTER_SIZE = 5
MIN_DEDUP_SIZE = 2
MIN_CLUSTER_INPUT_SIZE = 3

LIFECYCLE_FACTORS = {
    LifecycleStage.NEW: 1.0,
    LifecycleStage.ACTIVE: 0.9,
    LifecycleStage.MATURE: 0.7,
    LifecycleStage.DORMANT: 0.4,
    LifecycleStage.ARCHIVE_READY: 0.2,
    LifecycleStage.ARCHIVED: 0.1,
}

VERBOSE_METADATA_KEYS = ("full_context", "raw_messages")


@dataclass
class ConsolidationStats:
    memories_before: int = 0
    memories_after: int = 0
    deduplicated: int = 0
    merged: int = 0
    archived: int = 0
    avg_importance: float = 0.0
    processing_time_ms: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def lifecycle_stage_for_age(hours: float, config: ConsolidationConfig) -> LifecycleStage:
    if hours < config.maturity_threshold_hours:
        return LifecycleStage.ACTIVE
    if hours < config.dormancy_threshold_hours:
        return LifecycleStage.MATURE
    if hours < config.archive_threshold_hours:
        return LifecycleStage.DORMANT
    return LifecycleStage.ARCHIVE_READY


def average_importance(memories: List[Memory]) -> float:
    if not memories:
        return 0.0
    return sum(m.importance for m in memories) / len(memories)


class ConsolidationEngine:
    """Per-thread consolidation, compression and cleanup over a memory store."""

    def __init__(self, memory_store, graph=None, config: Optional[ConsolidationConfig] = None):
        self.memory_store = memory_store
        self.graph = graph
        self.config = config or ConsolidationConfig()

        self._guard = threading.Lock()
        self.fetch_limit = FETCH_ALL_LIMIT
        # Access-tracking registry: memory id -> last known Memory
        self.memory_registry: Dict[str, Memory] = {}
        self.last_consolidation: Optional[datetime] = None
        self.last_stats: Optional[ConsolidationStats] = None

        self._known_threads: List[str] = []
        self._background_task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None

    @property
    def is_consolidating(self) -> bool:
        return self._guard.locked()

    def _resolve_config(self, config) -> ConsolidationConfig:
        return merge_config(self.config, config)

    # ------------------------------------------------------------------
    # Full pass
    # ------------------------------------------------------------------

    async def consolidate_memories(
        self, thread_id: str,
        config: Optional[Union[ConsolidationConfig, Dict[str, Any]]] = None,
    ) -> ConsolidationStats:
        """Run one consolidation pass over ``thread_id``.

        Fetch and persistence errors propagate to the caller; the
        single-flight guard is always released.
        """
        cfg = self._resolve_config(config)

        if not self._guard.acquire(blocking=False):
            logger.warning(f"Consolidation already in progress, skipping thread {thread_id}")
            return ConsolidationStats()

        started = time.perf_counter()
        try:
            # 1. Fetch
            documents = await self._fetch_thread(thread_id)
            if documents is None:
                return ConsolidationStats()
            memories = [self._lift(doc, thread_id) for doc in documents]
            before = len(memories)
            if before < cfg.min_memories_for_consolidation:
                logger.debug(f"Not enough memories for consolidation in thread {thread_id} ({before})")
                return ConsolidationStats()

            # 2. Lifecycle
            buckets = self.categorize_by_lifecycle(memories, cfg)

            # 3. Importance decay
            self.apply_importance_decay(memories, cfg)

            # 4-5. Deduplicate, then cluster at a looser threshold
            active = buckets[LifecycleStage.ACTIVE]
            deduplicated = self.deduplicate_memories(active, cfg.similarity_threshold)
            clustered = self.cluster_and_merge_memories(deduplicated, cfg)

            # 6. Archive
            archived = self.archive_memories(buckets[LifecycleStage.ARCHIVE_READY])

            # 7. Prune
            survivors = (
                clustered
                + buckets[LifecycleStage.MATURE]
                + buckets[LifecycleStage.DORMANT]
                + buckets[LifecycleStage.ARCHIVED]
                + archived
            )
            survivors = self.prune_by_importance(survivors, cfg)
            for memory in survivors:
                memory.thread_id = thread_id
                memory.importance_score = self.calculate_importance_score(memory)

            # 8. Persist and rebuild the graph
            await self._persist(thread_id, survivors, documents)
            self._refresh_registry(thread_id, survivors)
            if self.graph is not None:
                await self.graph.rebuild_thread(thread_id, [m.text_content for m in survivors])

            stats = ConsolidationStats(
                memories_before=before,
                memories_after=len(survivors),
                deduplicated=len(active) - len(deduplicated),
                merged=len(deduplicated) - len(clustered),
                archived=len(archived),
                avg_importance=average_importance(survivors),
                processing_time_ms=(time.perf_counter() - started) * 1000,
            )
            self.last_stats = stats
            self.last_consolidation = datetime.now()
            logger.info(f"Consolidation completed for thread {thread_id}: "
                        f"{stats.memories_before} -> {stats.memories_after} memories "
                        f"({stats.deduplicated} deduplicated, {stats.merged} merged, "
                        f"{stats.archived} archived)")
            return stats
        except Exception as e:
            logger.error(f"Failed to consolidate memories for thread {thread_id}: {e}", exc_info=True)
            raise
        finally:
            self._guard.release()

    async def _fetch_thread(self, thread_id: str) -> Optional[List[MemoryDocument]]:
        """Fetch every stored memory for ``thread_id``.

        Returns None when the fetch fills the limit: the rewrite clears the
        whole thread, so memories past the limit would be lost.
        """
        documents = await self.memory_store.retrieve_relevant_memories(
            "", thread_id, limit=self.fetch_limit
        )
        if len(documents) >= self.fetch_limit:
            logger.warning(f"Thread {thread_id} holds at least {self.fetch_limit} memories, "
                           f"skipping rewrite to avoid dropping unfetched ones")
            return None
        return documents

    def _lift(self, doc: MemoryDocument, thread_id: str) -> Memory:
        memory = document_to_memory(doc, thread_id)
        tracked = self.memory_registry.get(memory.id)
        if tracked is not None:
            memory.access_count = max(memory.access_count, tracked.access_count)
            memory.last_accessed_at = max(memory.last_accessed_at, tracked.last_accessed_at)
        return memory

    def categorize_by_lifecycle(self, memories: List[Memory],
                                config: Optional[ConsolidationConfig] = None) -> Dict[LifecycleStage, List[Memory]]:
        """Assign each memory its age-derived stage and bucket by stage.

        Memories already ARCHIVED stay archived.
        """
        cfg = config or self.config
        buckets: Dict[LifecycleStage, List[Memory]] = {stage: [] for stage in LifecycleStage}
        now = datetime.now()
        for memory in memories:
            if memory.lifecycle_stage != LifecycleStage.ARCHIVED:
                memory.lifecycle_stage = lifecycle_stage_for_age(
                    age_in_hours(memory.created_at, now), cfg
                )
            buckets[memory.lifecycle_stage].append(memory)
        return buckets

    def apply_importance_decay(self, memories: List[Memory],
                               config: Optional[ConsolidationConfig] = None):
        cfg = config or self.config
        now = datetime.now()
        for memory in memories:
            age_days = age_in_days(memory.created_at, now)
            memory.importance = importance_decay(memory.importance, age_days, cfg.importance_decay_rate)

    def deduplicate_memories(self, memories: List[Memory], similarity_threshold: float) -> List[Memory]:
        if len(memories) < MIN_DEDUP_SIZE:
            return memories
        result = [
            merge_memories(group, ConsolidationStrategy.MERGE) if len(group) > 1 else group[0]
            for group in group_similar(memories, similarity_threshold)
        ]
        logger.debug(f"Deduplicated {len(memories)} memories to {len(result)}")
        return result

    def cluster_and_merge_memories(self, memories: List[Memory],
                                   config: Optional[ConsolidationConfig] = None) -> List[Memory]:
        cfg = config or self.config
        if len(memories) < MIN_CLUSTER_INPUT_SIZE:
            return memories

        result = []
        for cluster in group_similar(memories, cfg.similarity_threshold * CLUSTER_THRESHOLD_FACTOR):
            if len(cluster) == 1:
                result.extend(cluster)
            elif len(cluster) <= MAX_MERGE_CLUSTER_SIZE:
                merged = merge_memories(cluster, ConsolidationStrategy.CLUSTER)
                merged.cluster_id = f"cluster-{uuid.uuid4().hex[:12]}"
                result.append(merged)
            else:
                summarized = summarize_group(cluster)
                summarized.cluster_id = f"summary-{uuid.uuid4().hex[:12]}"
                result.append(summarized)
        logger.debug(f"Clustered {len(memories)} memories to {len(result)}")
        return result

    def archive_memories(self, memories: List[Memory]) -> List[Memory]:
        stamp = int(datetime.now().timestamp() * 1000)
        for memory in memories:
            memory.lifecycle_stage = LifecycleStage.ARCHIVED
            memory.consolidation_strategy = ConsolidationStrategy.ARCHIVE
            memory.metadata["archived_at"] = stamp
        if memories:
            logger.debug(f"Archived {len(memories)} memories")
        return memories

    def prune_by_importance(self, memories: List[Memory],
                            config: Optional[ConsolidationConfig] = None) -> List[Memory]:
        cfg = config or self.config
        kept = [m for m in memories if m.importance >= cfg.min_importance_threshold]
        if len(kept) > cfg.max_memories_after_consolidation:
            kept = sorted(kept, key=lambda m: m.importance, reverse=True)
            kept = kept[:cfg.max_memories_after_consolidation]
        return kept

    async def _persist(self, thread_id: str, memories: List[Memory],
                       originals: List[MemoryDocument]):
        """Replace the thread's stored memories with ``memories``.

        The replacement batch is fully built before the destructive clear.
        If the re-store fails the original documents are written back and
        the store error is re-raised.
        """
        replacement = [memory_to_document(m) for m in memories]
        await self.memory_store.clear_thread_memories(thread_id)
        try:
            await self.memory_store.store_memories(replacement)
        except Exception as e:
            logger.error(f"Storing consolidated memories for thread {thread_id} failed, "
                         f"restoring {len(originals)} originals: {e}")
            try:
                await self.memory_store.store_memories(originals)
            except Exception as restore_error:
                logger.error(f"Restore for thread {thread_id} failed: {restore_error}", exc_info=True)
            raise

    def _refresh_registry(self, thread_id: str, memories: List[Memory]):
        stale = [mid for mid, m in self.memory_registry.items() if m.thread_id == thread_id]
        for mid in stale:
            del self.memory_registry[mid]
        for memory in memories:
            self.memory_registry[memory.id] = memory

    # ------------------------------------------------------------------
    # Scoring and compression
    # ------------------------------------------------------------------

    def calculate_importance_score(self, memory: Memory) -> float:
        age_hours = age_in_hours(memory.created_at)
        recency = math.exp(-0.01 * age_hours)
        access = min(1.0, memory.access_count / 10.0)
        explicit = memory.importance if memory.importance is not None else 0.5
        lifecycle = LIFECYCLE_FACTORS.get(memory.lifecycle_stage, 0.5)
        score = 0.3 * recency + 0.2 * access + 0.3 * explicit + 0.2 * lifecycle
        return max(0.0, min(1.0, score))

    def compress_memory(self, memory: Memory) -> Memory:
        """Condensed copy of ``memory`` with verbose metadata stripped."""
        original_size = len(json.dumps(memory_to_dict(memory), default=str))

        facts = memory.metadata.get("facts") or []
        entities = memory.metadata.get("entities") or []
        summary = memory.summary or memory.text_content[:200]
        condensed = (
            f"Summary: {summary}\n"
            f"Key Facts: {'; '.join(str(f) for f in facts)}\n"
            f"Entities: {', '.join(str(e) for e in entities)}"
        )

        metadata = {k: v for k, v in memory.metadata.items() if k not in VERBOSE_METADATA_KEYS}
        compressed = replace(
            memory,
            text_content=condensed,
            metadata=metadata,
            consolidation_strategy=ConsolidationStrategy.COMPRESS,
            compression_ratio=None,
        )
        compressed_size = len(json.dumps(memory_to_dict(compressed), default=str))
        compressed.compression_ratio = compressed_size / original_size if original_size else 1.0

        self.memory_registry[compressed.id] = compressed
        logger.debug(f"Compressed memory {memory.id} to ratio {compressed.compression_ratio:.2f}")
        return compressed

    def record_access(self, memory_id: str) -> bool:
        """Count a retrieval of ``memory_id``. Returns False if it is untracked."""
        memory = self.memory_registry.get(memory_id)
        if memory is None:
            return False
        memory.access_count += 1
        memory.last_accessed_at = datetime.now()
        return True

    def register_thread(self, thread_id: str):
        if thread_id not in self._known_threads:
            self._known_threads.append(thread_id)

    def forget_thread(self, thread_id: str):
        if thread_id in self._known_threads:
            self._known_threads.remove(thread_id)
        self._refresh_registry(thread_id, [])

    # ------------------------------------------------------------------
    # Cleanup
    # ------------------------------------------------------------------

    async def apply_cleanup_policies(
        self, thread_id: str,
        policy: Optional[Union[CleanupPolicy, Dict[str, Any]]] = None,
    ) -> int:
        """Remove memories by age, importance and count. Returns removed count.

        Old memories whose content mentions a preserved keyword are kept
        past ``max_age_days``; the importance floor applies independently.
        """
        rules = policy if isinstance(policy, CleanupPolicy) else CleanupPolicy(**(policy or {}))
        documents = await self._fetch_thread(thread_id)
        if documents is None:
            return 0
        memories = [self._lift(doc, thread_id) for doc in documents]
        keywords = [k.lower() for k in rules.preserve_keywords]
        now = datetime.now()

        kept = []
        for memory in memories:
            if rules.max_age_days is not None:
                age_days = age_in_days(memory.created_at, now)
                content = memory.text_content.lower()
                if age_days > rules.max_age_days and not any(k in content for k in keywords):
                    continue
            if rules.min_importance is not None:
                importance = (
                    memory.importance_score if memory.importance_score is not None
                    else memory.importance
                )
                if importance < rules.min_importance:
                    continue
            kept.append(memory)

        if rules.max_count is not None and len(kept) > rules.max_count:
            kept = sorted(kept, key=lambda m: m.importance, reverse=True)[:rules.max_count]

        removed = len(memories) - len(kept)
        if removed:
            await self._persist(thread_id, kept, documents)
            self._refresh_registry(thread_id, kept)
        logger.info(f"Cleanup removed {removed} memories from thread {thread_id}")
        return removed

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    async def get_consolidation_health(self) -> Dict[str, Any]:
        tracked = list(self.memory_registry.values())
        distribution = {stage.value: 0 for stage in LifecycleStage}
        for memory in tracked:
            distribution[memory.lifecycle_stage.value] += 1

        ratios = [m.compression_ratio for m in tracked if m.compression_ratio is not None]
        dedup_rate = None
        if self.last_stats and self.last_stats.deduplicated:
            dedup_rate = self.last_stats.deduplicated / (self.last_stats.deduplicated + len(tracked))

        try:
            store_health = await self.memory_store.get_health_status()
        except Exception as e:
            logger.warning(f"Memory store health check failed: {e}")
            store_health = {"available": False, "error": str(e)}

        return {
            "is_consolidating": self.is_consolidating,
            "last_consolidation": self.last_consolidation.isoformat() if self.last_consolidation else None,
            "last_stats": self.last_stats.to_dict() if self.last_stats else None,
            "memory_count": len(tracked),
            "average_importance": average_importance(tracked),
            "lifecycle_distribution": distribution,
            "compression_ratio": sum(ratios) / len(ratios) if ratios else None,
            "deduplication_rate": dedup_rate,
            "background_running": self.background_running,
            "store": store_health,
        }

    # ------------------------------------------------------------------
    # Background consolidation
    # ------------------------------------------------------------------

    @property
    def background_running(self) -> bool:
        return self._background_task is not None and not self._background_task.done()

    async def run_background_tick(self) -> Dict[str, ConsolidationStats]:
        """One scheduled round over every registered thread."""
        if not self.config.enable_background_consolidation:
            return {}

        logger.info(f"Starting background consolidation for {len(self._known_threads)} threads")
        results: Dict[str, ConsolidationStats] = {}
        for thread_id in list(self._known_threads):
            try:
                results[thread_id] = await self.consolidate_memories(thread_id)
            except Exception as e:
                logger.error(f"Background consolidation failed for thread {thread_id}: {e}",
                             exc_info=True)
        return results

    async def _background_loop(self):
        interval = self.config.consolidation_interval_minutes * 60
        while not self._stop_event.is_set():
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                await self.run_background_tick()

    def start_background_consolidation(self) -> bool:
        """Schedule the recurring pass. No-op unless enabled in config."""
        if not self.config.enable_background_consolidation:
            logger.debug("Background consolidation disabled")
            return False
        if self.background_running:
            return True
        self._stop_event = asyncio.Event()
        self._background_task = asyncio.get_running_loop().create_task(self._background_loop())
        logger.info(f"Background consolidation every "
                    f"{self.config.consolidation_interval_minutes} minutes")
        return True

    async def stop_background_consolidation(self):
        """Stop scheduling further ticks and wait for the loop to exit."""
        if self._background_task is None:
            return
        self._stop_event.set()
        await self._background_task
        self._background_task = None
        logger.info("Background consolidation stopped")
