"""
Time-weighted memory retrieval.

Re-ranks semantic candidates from the memory store by blending their
similarity score with a temporal decay score, so that recent memories win
ties against stale ones. Also exposes canned configurations and a temporal
histogram of a thread's memories for observability.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from decay import temporal_score
from memory_config import TimeWeightedConfig, merge_config
from memory_types import MemoryDocument
from temporal import to_datetime, to_timestamp_ms

logger = logging.getLogger(__name__)

CANDIDATE_MULTIPLIER = 3
CANDIDATE_SCORE_FLOOR = 0.1
WEIGHT_SUM_TOLERANCE = 0.001
DISTRIBUTION_SAMPLE_LIMIT = 1000

PRESETS: Dict[str, Dict[str, Any]] = {
    # Heavily prioritize the last few hours
    "recent_focus": {
        "decay_function": "exponential",
        "decay_lambda": 0.5,
        "semantic_weight": 0.4,
        "temporal_weight": 0.6,
    },
    "balanced": {
        "decay_function": "exponential",
        "decay_lambda": 0.1,
        "semantic_weight": 0.6,
        "temporal_weight": 0.4,
    },
    # Slow decay so older memories stay competitive
    "long_term": {
        "decay_function": "logarithmic",
        "semantic_weight": 0.7,
        "temporal_weight": 0.3,
    },
    "critical_24h": {
        "decay_function": "step",
        "step_threshold_hours": 24,
        "step_penalty": 0.3,
        "semantic_weight": 0.5,
        "temporal_weight": 0.5,
    },
}


@dataclass
class TimeWeightedMemory:
    document: MemoryDocument
    semantic_score: float
    temporal_score: float
    combined_score: float
    age_in_hours: float
    timestamp: Optional[int] = None


@dataclass
class TemporalBucket:
    start_hours: float
    end_hours: float
    count: int
    average_score: Optional[float] = None


@dataclass
class TemporalDistribution:
    buckets: List[TemporalBucket] = field(default_factory=list)
    total_memories: int = 0
    oldest_memory_hours: float = 0.0
    newest_memory_hours: float = 0.0


def get_preset_config(preset: str) -> TimeWeightedConfig:
    """Canned configuration by name; unknown names give the default config."""
    overrides = PRESETS.get(preset)
    if overrides is None:
        logger.warning(f"Unknown retrieval preset '{preset}', using defaults")
        return TimeWeightedConfig()
    return TimeWeightedConfig(**overrides)


def _normalized_weights(config: TimeWeightedConfig) -> TimeWeightedConfig:
    total = config.semantic_weight + config.temporal_weight
    if abs(total - 1.0) <= WEIGHT_SUM_TOLERANCE:
        return config
    if total <= 0:
        logger.warning("Retrieval weights sum to 0, falling back to 0.6/0.4")
        return config.model_copy(update={"semantic_weight": 0.6, "temporal_weight": 0.4})
    logger.warning(f"Weights don't sum to 1 ({total}), normalizing")
    return config.model_copy(update={
        "semantic_weight": config.semantic_weight / total,
        "temporal_weight": config.temporal_weight / total,
    })


def _age_hours(metadata: Dict[str, Any], now: datetime) -> float:
    created = to_datetime(metadata.get("timestamp"))
    if created is None:
        return 0.0
    return max((now - created).total_seconds() / 3600.0, 0.0)


class TimeWeightedRetriever:
    def __init__(self, memory_store, config: Optional[TimeWeightedConfig] = None):
        self.memory_store = memory_store
        self.default_config = config or TimeWeightedConfig()

    async def retrieve_with_time_weighting(
        self,
        query: str,
        thread_id: Optional[str] = None,
        limit: int = 10,
        config: Optional[Union[TimeWeightedConfig, Dict[str, Any]]] = None,
    ) -> List[TimeWeightedMemory]:
        """Blend semantic and temporal scores, filter, rank and truncate.

        Store failures are logged and yield an empty result.
        """
        cfg = _normalized_weights(merge_config(self.default_config, config))

        try:
            candidates = await self.memory_store.retrieve_relevant_memories_with_score(
                query, thread_id,
                limit=limit * CANDIDATE_MULTIPLIER,
                score_threshold=CANDIDATE_SCORE_FLOOR,
            )
        except Exception as e:
            logger.error(f"Time-weighted retrieval failed for thread {thread_id}: {e}", exc_info=True)
            return []

        if not candidates:
            logger.debug("No memories found for time-weighted retrieval")
            return []

        now = datetime.now()
        scored = []
        for doc, semantic in candidates:
            age = _age_hours(doc.metadata, now)
            temporal = temporal_score(age, cfg)
            combined = cfg.semantic_weight * semantic + cfg.temporal_weight * temporal
            scored.append(TimeWeightedMemory(
                document=doc,
                semantic_score=semantic,
                temporal_score=temporal,
                combined_score=combined,
                age_in_hours=age,
                timestamp=to_timestamp_ms(doc.metadata.get("timestamp")),
            ))

        results = [m for m in scored if m.combined_score >= cfg.min_score]
        results.sort(key=lambda m: m.combined_score, reverse=True)
        results = results[:limit]

        if cfg.normalize_scores and results:
            top = results[0].combined_score
            if top > 0:
                for m in results:
                    m.combined_score = m.combined_score / top

        logger.debug(f"Retrieved {len(results)} time-weighted memories from "
                     f"{len(candidates)} candidates ({cfg.decay_function}, "
                     f"{cfg.semantic_weight:.2f}/{cfg.temporal_weight:.2f})")
        return results

    async def retrieve_as_documents(
        self,
        query: str,
        thread_id: Optional[str] = None,
        limit: int = 10,
        config: Optional[Union[TimeWeightedConfig, Dict[str, Any]]] = None,
    ) -> List[MemoryDocument]:
        """Same ranking, returned as documents annotated with their scores."""
        ranked = await self.retrieve_with_time_weighting(query, thread_id, limit, config)
        return [
            MemoryDocument(
                content=m.document.content,
                metadata={
                    **m.document.metadata,
                    "time_weighted_score": m.combined_score,
                    "semantic_score": m.semantic_score,
                    "temporal_score": m.temporal_score,
                    "age_in_hours": m.age_in_hours,
                },
            )
            for m in ranked
        ]

    async def analyze_temporal_distribution(self, thread_id: Optional[str] = None,
                                            bucket_size_hours: float = 24,
                                            max_buckets: int = 7) -> TemporalDistribution:
        """Histogram of memory ages in fixed-width hour buckets."""
        try:
            memories = await self.memory_store.retrieve_relevant_memories_with_score(
                "", thread_id, limit=DISTRIBUTION_SAMPLE_LIMIT, score_threshold=0.0
            )
        except Exception as e:
            logger.error(f"Temporal distribution failed for thread {thread_id}: {e}", exc_info=True)
            return TemporalDistribution()

        if not memories:
            return TemporalDistribution()

        now = datetime.now()
        ages = [(_age_hours(doc.metadata, now), score) for doc, score in memories]

        buckets = []
        for i in range(max_buckets):
            start = i * bucket_size_hours
            end = (i + 1) * bucket_size_hours
            in_bucket = [score for age, score in ages if start <= age < end]
            buckets.append(TemporalBucket(
                start_hours=start,
                end_hours=end,
                count=len(in_bucket),
                average_score=sum(in_bucket) / len(in_bucket) if in_bucket else None,
            ))

        age_values = [age for age, _ in ages]
        return TemporalDistribution(
            buckets=buckets,
            total_memories=len(memories),
            oldest_memory_hours=max(age_values),
            newest_memory_hours=min(age_values),
        )
