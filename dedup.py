"""
Similarity, grouping and merging for the consolidation pipeline.
"""

import math
import re
import logging
from datetime import datetime
from typing import List, Dict, Any

from memory_types import Memory, ConsolidationStrategy, least_aged_stage

logger = logging.getLogger(__name__)

CONTENT_SEPARATOR = "\n\n---\n\n"
IMPORTANCE_TIE_MARGIN = 0.1
SUMMARY_SENTENCE_MIN_CHARS = 10
SUMMARY_MAX_SENTENCES = 5


def jaccard_similarity(text1: str, text2: str) -> float:
    """Token-set overlap on lower-cased whitespace-split words."""
    tokens1 = set(text1.lower().split())
    tokens2 = set(text2.lower().split())
    union = tokens1 | tokens2
    if not union:
        return 0.0
    return len(tokens1 & tokens2) / len(union)


def cosine_similarity(vec1: List[float], vec2: List[float]) -> float:
    if not vec1 or not vec2 or len(vec1) != len(vec2):
        return 0.0
    dot = sum(a * b for a, b in zip(vec1, vec2))
    norm1 = math.sqrt(sum(a * a for a in vec1))
    norm2 = math.sqrt(sum(b * b for b in vec2))
    if norm1 == 0 or norm2 == 0:
        return 0.0
    return dot / (norm1 * norm2)


def memory_similarity(mem1: Memory, mem2: Memory) -> float:
    """Cosine when both sides carry embeddings, Jaccard on text otherwise."""
    if mem1.embedding and mem2.embedding:
        return cosine_similarity(mem1.embedding, mem2.embedding)
    return jaccard_similarity(mem1.text_content, mem2.text_content)


def group_similar(memories: List[Memory], threshold: float) -> List[List[Memory]]:
    """Greedy single-pass grouping.

    Each unprocessed memory seeds a group and pulls in every other
    unprocessed memory whose similarity to the seed is >= threshold.
    Group order follows input order; singletons are returned as 1-lists.
    """
    processed = set()
    groups: List[List[Memory]] = []

    for i, seed in enumerate(memories):
        if i in processed:
            continue
        processed.add(i)
        group = [seed]
        for j in range(i + 1, len(memories)):
            if j in processed:
                continue
            if memory_similarity(seed, memories[j]) >= threshold:
                group.append(memories[j])
                processed.add(j)
        groups.append(group)

    return groups


def _primary_sort_key(memory: Memory):
    return memory.created_at


def choose_primary(group: List[Memory]) -> Memory:
    """Highest importance wins; near-ties (within 0.1) go to the most recent."""
    ordered = sorted(group, key=_primary_sort_key, reverse=True)
    best = ordered[0]
    for candidate in ordered[1:]:
        if candidate.importance - best.importance > IMPORTANCE_TIE_MARGIN:
            best = candidate
    return best


def _unique_in_order(items: List[str]) -> List[str]:
    seen = set()
    result = []
    for item in items:
        if item not in seen:
            seen.add(item)
            result.append(item)
    return result


def merge_memories(group: List[Memory],
                   strategy: ConsolidationStrategy = ConsolidationStrategy.MERGE) -> Memory:
    """Fold a group of similar memories into one.

    Content is the order-preserving unique set of texts, provenance is the
    union of every source's provenance, importance the max, access counts
    summed. The merged memory takes the least aged stage of its sources.
    """
    if len(group) == 1:
        return group[0]

    primary = choose_primary(group)
    # Primary first, then the rest in their original order.
    ordered = [primary] + [m for m in group if m is not primary]

    provenance: List[str] = []
    for memory in ordered:
        provenance.extend(memory.provenance())
    provenance = _unique_in_order(provenance)

    metadata: Dict[str, Any] = dict(primary.metadata)
    metadata.update({
        "consolidated_at": int(datetime.now().timestamp() * 1000),
        "consolidated_count": len(group),
    })

    return Memory(
        id=primary.id,
        text_content=CONTENT_SEPARATOR.join(_unique_in_order([m.text_content for m in ordered])),
        thread_id=primary.thread_id,
        summary=primary.summary,
        importance=max(m.importance for m in group),
        importance_score=primary.importance_score,
        access_count=sum(m.access_count for m in group),
        last_accessed_at=max(m.last_accessed_at for m in group),
        created_at=primary.created_at,
        lifecycle_stage=least_aged_stage([m.lifecycle_stage for m in group]),
        embedding=primary.embedding,
        cluster_id=primary.cluster_id,
        consolidated_from=provenance,
        consolidation_strategy=strategy,
        metadata=metadata,
    )


def extract_key_sentences(texts: List[str], limit: int = SUMMARY_MAX_SENTENCES) -> List[str]:
    """Distinct sentences longer than 10 characters, in order of appearance."""
    joined = " ".join(texts)
    sentences = [s.strip() for s in re.split(r"[.!?]+", joined)]
    sentences = [s for s in sentences if len(s) > SUMMARY_SENTENCE_MIN_CHARS]
    return _unique_in_order(sentences)[:limit]


def summarize_group(group: List[Memory]) -> Memory:
    """Replace a large cluster with a synthetic extractive summary memory."""
    merged = merge_memories(group, ConsolidationStrategy.SUMMARIZE)
    sentences = extract_key_sentences([m.text_content for m in group])
    summary_text = ". ".join(sentences) + "." if sentences else merged.text_content

    merged.text_content = summary_text
    merged.summary = summary_text
    merged.metadata["is_summary"] = True
    merged.metadata["summarized_count"] = len(group)
    logger.debug(f"Summarized {len(group)} memories into {len(sentences)} sentences")
    return merged
