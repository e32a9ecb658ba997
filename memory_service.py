"""
Hybrid memory service: the composition surface over the memory components.

New messages are written to the memory store and fed to the entity tracker,
relationship graph and progressive summarizer. Reads assemble an enriched
context (summary, known entities, relevant memories) for the agent.
Storage and retrieval failures are logged and never break the conversation.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

from consolidator import ConsolidationEngine
from entities import EntityTracker
from graph import RelationshipGraph
from memory_config import ConsolidationConfig, MemoryServiceConfig
from memory_types import Message, MessageRole, MemoryDocument
from retriever import TimeWeightedRetriever
from summarizer import ProgressiveSummarizer
from temporal import now_ms, to_datetime

logger = logging.getLogger(__name__)

GLOBAL_THRESHOLD_FACTOR = 0.9


@dataclass
class RetrievedMemory:
    content: str
    relevance_score: float
    timestamp: int
    message_type: str


class MemoryService:
    def __init__(self, memory_store, llm=None,
                 config: Optional[MemoryServiceConfig] = None,
                 consolidation_config: Optional[ConsolidationConfig] = None):
        self.memory_store = memory_store
        self.config = config or MemoryServiceConfig()
        self.graph = RelationshipGraph(memory_store)
        self.entities = EntityTracker(llm)
        self.summarizer = ProgressiveSummarizer(llm)
        self.retriever = TimeWeightedRetriever(memory_store)
        self.consolidator = ConsolidationEngine(memory_store, self.graph, consolidation_config)

    async def process_new_messages(self, messages: List[Message], thread_id: str,
                                   importance: Optional[float] = None,
                                   tags: Optional[List[str]] = None) -> int:
        """Store and index a batch of messages. Returns the number stored."""
        stored = await self._store_messages(messages, thread_id, importance, tags)

        await self.summarizer.add_messages(thread_id, messages)
        await self.entities.extract_entities(thread_id, messages)
        for message in messages:
            if message.role != MessageRole.SYSTEM:
                await self.graph.ingest(message.content, thread_id)

        self.consolidator.register_thread(thread_id)
        return stored

    async def _store_messages(self, messages: List[Message], thread_id: str,
                              importance: Optional[float], tags: Optional[List[str]]) -> int:
        if not self.config.enable_semantic_memory or not messages:
            return 0

        timestamp = now_ms()
        documents = []
        for message in messages:
            if message.role == MessageRole.SYSTEM:
                continue
            content = message.content or ""
            if len(content.strip()) <= self.config.min_message_chars:
                continue
            metadata: Dict[str, Any] = {
                "thread_id": thread_id,
                "timestamp": timestamp,
                "message_type": "user" if message.role == MessageRole.HUMAN else "assistant",
            }
            if importance is not None:
                metadata["importance"] = importance
            if tags:
                metadata["tags"] = list(tags)
            documents.append(MemoryDocument(content, metadata))

        if not documents:
            return 0
        try:
            await self.memory_store.store_memories(documents)
        except Exception as e:
            logger.error(f"Failed to store conversation memory for thread {thread_id}: {e}",
                         exc_info=True)
            return 0
        logger.debug(f"Stored {len(documents)} messages for thread {thread_id}")
        return len(documents)

    async def retrieve_relevant_memories(self, query: str, thread_id: str,
                                         limit: Optional[int] = None,
                                         include_global: bool = False,
                                         min_relevance: Optional[float] = None) -> List[RetrievedMemory]:
        if not self.config.enable_semantic_memory:
            return []
        limit = limit or self.config.memory_batch_size
        threshold = (
            min_relevance if min_relevance is not None else self.config.memory_retrieval_threshold
        )

        try:
            scored = await self.memory_store.retrieve_relevant_memories_with_score(
                query, thread_id, limit=limit, score_threshold=threshold
            )
            if len(scored) < limit and include_global:
                seen = {doc.metadata.get("id") for doc, _ in scored}
                extra = await self.memory_store.retrieve_relevant_memories_with_score(
                    query, None, limit=limit - len(scored),
                    score_threshold=threshold * GLOBAL_THRESHOLD_FACTOR,
                )
                scored = scored + [(d, s) for d, s in extra if d.metadata.get("id") not in seen]
        except Exception as e:
            logger.error(f"Failed to retrieve memories for thread {thread_id}: {e}", exc_info=True)
            return []

        results = []
        for doc, score in scored[:limit]:
            memory_id = doc.metadata.get("id")
            if memory_id:
                self.consolidator.record_access(memory_id)
            results.append(RetrievedMemory(
                content=doc.content,
                relevance_score=max(0.0, min(1.0, score)),
                timestamp=doc.metadata.get("timestamp") or now_ms(),
                message_type=doc.metadata.get("message_type", "assistant"),
            ))
        logger.debug(f"Retrieved {len(results)} relevant memories for thread {thread_id}")
        return results

    async def build_context(self, current_messages: List[Message], thread_id: str,
                            semantic_query: Optional[str] = None,
                            include_semantic_memories: bool = True) -> List[Message]:
        """Summary, entity and memory notes followed by ``current_messages``."""
        context: List[Message] = []
        context.extend(self.summarizer.get_context(thread_id, include_recent=False))
        context.extend(self.entities.get_context(thread_id))

        query = semantic_query
        if not query and current_messages:
            query = current_messages[-1].content

        if include_semantic_memories and query:
            memories = await self.retrieve_relevant_memories(query, thread_id, include_global=True)
            if memories:
                lines = []
                for memory in memories:
                    stamp = to_datetime(memory.timestamp) or datetime.now()
                    lines.append(f"[{stamp.isoformat()}] {memory.content}")
                context.append(Message(
                    MessageRole.SYSTEM,
                    "Relevant context from previous conversations:\n\n"
                    + "\n\n".join(lines)
                    + "\n\nUse this context to provide more informed and consistent responses.",
                ))

        context.extend(current_messages)
        return context

    async def clear_thread(self, thread_id: str):
        """Drop everything known about ``thread_id``. Store errors propagate."""
        await self.memory_store.clear_thread_memories(thread_id)
        self.entities.clear_thread(thread_id)
        self.summarizer.clear_thread(thread_id)
        async with self.graph.thread_lock(thread_id):
            self.graph.clear_thread_graph(thread_id)
        self.consolidator.forget_thread(thread_id)
        logger.info(f"Cleared memories for thread {thread_id}")

    async def get_health_status(self) -> Dict[str, Any]:
        checked = datetime.now().isoformat()
        semantic: Dict[str, Any] = {"available": False, "last_checked": checked}
        if self.config.enable_semantic_memory:
            try:
                health = await self.memory_store.get_health_status()
                semantic = {
                    "available": bool(health.get("available")),
                    "connected": health.get("connected"),
                    "error": health.get("error"),
                    "last_checked": checked,
                }
            except Exception as e:
                semantic = {"available": False, "error": str(e), "last_checked": checked}

        return {
            "semantic": semantic,
            "consolidation": await self.consolidator.get_consolidation_health(),
            "graph": self.graph.get_statistics(),
            "entities": self.entities.get_statistics(),
            "summaries": self.summarizer.get_statistics(),
        }
