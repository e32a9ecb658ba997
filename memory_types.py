"""
Core data model for the hybrid memory engine.

Memories travel between the engine and the external store as
``MemoryDocument`` records (content plus a flat metadata dict). Inside the
engine they are lifted into ``Memory`` dataclasses so the consolidation
pipeline can work on typed fields.
"""

import uuid
import logging
from datetime import datetime
from typing import List, Dict, Optional, Any
from dataclasses import dataclass, field, asdict
from enum import Enum

from temporal import to_datetime, to_timestamp_ms

logger = logging.getLogger(__name__)


class MessageRole(Enum):
    HUMAN = "human"
    AI = "ai"
    SYSTEM = "system"


class LifecycleStage(Enum):
    NEW = "new"
    ACTIVE = "active"
    MATURE = "mature"
    DORMANT = "dormant"
    ARCHIVE_READY = "archive_ready"
    ARCHIVED = "archived"


# Age order, youngest first. Used when a merge has to pick the "least aged" stage.
LIFECYCLE_ORDER = [
    LifecycleStage.NEW,
    LifecycleStage.ACTIVE,
    LifecycleStage.MATURE,
    LifecycleStage.DORMANT,
    LifecycleStage.ARCHIVE_READY,
    LifecycleStage.ARCHIVED,
]


def least_aged_stage(stages: List[LifecycleStage]) -> LifecycleStage:
    """Return the youngest stage in the list ("still alive" wins)."""
    if not stages:
        return LifecycleStage.NEW
    return min(stages, key=LIFECYCLE_ORDER.index)


class ConsolidationStrategy(Enum):
    MERGE = "merge"
    SUMMARIZE = "summarize"
    CLUSTER = "cluster"
    DEDUPLICATE = "deduplicate"
    ARCHIVE = "archive"
    COMPRESS = "compress"


@dataclass
class Message:
    """A single conversational message with an explicit role."""
    role: MessageRole
    content: str

    @property
    def role_label(self) -> str:
        return {
            MessageRole.HUMAN: "Human",
            MessageRole.AI: "AI",
            MessageRole.SYSTEM: "System",
        }[self.role]


@dataclass
class MemoryDocument:
    """Store-level record: raw content plus flat metadata."""
    content: str
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class Memory:
    """A retrievable unit of conversational content."""
    id: str
    text_content: str
    thread_id: str = ""
    summary: Optional[str] = None
    importance: float = 0.5
    importance_score: Optional[float] = None
    access_count: int = 0
    last_accessed_at: datetime = field(default_factory=datetime.now)
    created_at: datetime = field(default_factory=datetime.now)
    lifecycle_stage: LifecycleStage = LifecycleStage.NEW
    embedding: Optional[List[float]] = None
    cluster_id: Optional[str] = None
    consolidated_from: Optional[List[str]] = None
    consolidation_strategy: Optional[ConsolidationStrategy] = None
    compression_ratio: Optional[float] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def provenance(self) -> List[str]:
        """Source ids this memory stands for (its own id if never merged)."""
        if self.consolidated_from:
            return list(self.consolidated_from)
        return [self.id]


# Metadata keys lifted into typed Memory fields; everything else is carried
# through untouched in ``Memory.metadata``.
_LIFTED_KEYS = {
    "id", "thread_id", "timestamp", "importance", "importance_score",
    "access_count", "last_accessed", "lifecycle_stage", "embedding",
    "cluster_id", "consolidated_from", "consolidation_strategy",
    "compression_ratio", "summary",
}


def _parse_enum(enum_cls, value, default=None):
    if value is None or isinstance(value, enum_cls):
        return value if value is not None else default
    try:
        return enum_cls(value)
    except ValueError:
        logger.warning(f"Unknown {enum_cls.__name__} value '{value}', using {default}")
        return default


def document_to_memory(doc: MemoryDocument, thread_id: Optional[str] = None) -> Memory:
    """Lift a store document into a typed Memory."""
    meta = doc.metadata or {}
    created = to_datetime(meta.get("timestamp")) or datetime.now()
    last_accessed = to_datetime(meta.get("last_accessed")) or created
    consolidated_from = meta.get("consolidated_from")

    return Memory(
        id=str(meta.get("id") or uuid.uuid4()),
        text_content=doc.content,
        thread_id=meta.get("thread_id") or thread_id or "",
        summary=meta.get("summary"),
        importance=float(meta.get("importance", 0.5)),
        importance_score=meta.get("importance_score"),
        access_count=int(meta.get("access_count", 0)),
        last_accessed_at=last_accessed,
        created_at=created,
        lifecycle_stage=_parse_enum(LifecycleStage, meta.get("lifecycle_stage"), LifecycleStage.NEW),
        embedding=meta.get("embedding"),
        cluster_id=meta.get("cluster_id"),
        consolidated_from=list(consolidated_from) if consolidated_from else None,
        consolidation_strategy=_parse_enum(ConsolidationStrategy, meta.get("consolidation_strategy")),
        compression_ratio=meta.get("compression_ratio"),
        metadata={k: v for k, v in meta.items() if k not in _LIFTED_KEYS},
    )


def memory_to_document(memory: Memory) -> MemoryDocument:
    """Flatten a Memory back into a store document."""
    meta: Dict[str, Any] = dict(memory.metadata)
    meta.update({
        "id": memory.id,
        "thread_id": memory.thread_id,
        "timestamp": to_timestamp_ms(memory.created_at),
        "last_accessed": to_timestamp_ms(memory.last_accessed_at),
        "importance": memory.importance,
        "access_count": memory.access_count,
        "lifecycle_stage": memory.lifecycle_stage.value,
    })
    if "message_type" not in meta:
        meta["message_type"] = "memory"

    optional = {
        "summary": memory.summary,
        "importance_score": memory.importance_score,
        "embedding": memory.embedding,
        "cluster_id": memory.cluster_id,
        "consolidated_from": list(memory.consolidated_from) if memory.consolidated_from else None,
        "consolidation_strategy": (
            memory.consolidation_strategy.value if memory.consolidation_strategy else None
        ),
        "compression_ratio": memory.compression_ratio,
    }
    meta.update({k: v for k, v in optional.items() if v is not None})
    return MemoryDocument(content=memory.text_content, metadata=meta)


def memory_to_dict(memory: Memory) -> Dict[str, Any]:
    """JSON-friendly representation, used for size accounting and export."""
    data = asdict(memory)
    data["created_at"] = memory.created_at.isoformat()
    data["last_accessed_at"] = memory.last_accessed_at.isoformat()
    data["lifecycle_stage"] = memory.lifecycle_stage.value
    if memory.consolidation_strategy:
        data["consolidation_strategy"] = memory.consolidation_strategy.value
    return data
