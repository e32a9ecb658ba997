"""
Memory store collaborator.

The engine talks to its vector/memory store through ``MemoryStore``. The
similarity search itself is opaque to the engine; ``InMemoryMemoryStore``
is a process-local reference implementation used by the service wiring
and the test suite. ``OllamaEmbedder`` provides optional embeddings for it.
"""

import uuid
import asyncio
import logging
from typing import List, Dict, Optional, Any, Tuple, Protocol, Callable, Awaitable

import httpx

from memory_config import OLLAMA_URL, EMBED_MODEL, OLLAMA_TIMEOUT
from memory_types import MemoryDocument
from dedup import cosine_similarity, jaccard_similarity
from temporal import now_ms

logger = logging.getLogger(__name__)

ScoredDocument = Tuple[MemoryDocument, float]


class MemoryStore(Protocol):
    async def retrieve_relevant_memories(self, query: str, thread_id: Optional[str] = None,
                                         limit: int = 10,
                                         score_threshold: float = 0.0) -> List[MemoryDocument]:
        ...

    async def retrieve_relevant_memories_with_score(self, query: str,
                                                    thread_id: Optional[str] = None,
                                                    limit: int = 10,
                                                    score_threshold: float = 0.0) -> List[ScoredDocument]:
        ...

    async def store_memories(self, documents: List[MemoryDocument]) -> None:
        ...

    async def clear_thread_memories(self, thread_id: str) -> None:
        ...

    async def get_health_status(self) -> Dict[str, Any]:
        ...


class OllamaEmbedder:
    """Embeddings from Ollama's /api/embeddings endpoint."""

    def __init__(self, base_url: str = OLLAMA_URL, model: str = EMBED_MODEL,
                 timeout: float = OLLAMA_TIMEOUT):
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.timeout = timeout

    async def __call__(self, text: str) -> Optional[List[float]]:
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                r = await client.post(f"{self.base_url}/api/embeddings", json={
                    "model": self.model,
                    "prompt": text[:8000],
                })
                if r.status_code == 200:
                    return r.json().get("embedding")
                logger.warning(f"Embedding request returned {r.status_code}")
        except Exception as e:
            logger.warning(f"Embedding failed: {e}")
        return None


Embedder = Callable[[str], Awaitable[Optional[List[float]]]]


class InMemoryMemoryStore:
    """Process-local memory store.

    Scores documents by cosine similarity when an embedder is configured and
    both sides embed successfully, Jaccard token overlap otherwise. An empty
    query matches every document with score 1.0.
    """

    def __init__(self, embedder: Optional[Embedder] = None):
        self.embedder = embedder
        self._documents: List[MemoryDocument] = []
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._documents)

    async def _embed(self, text: str) -> Optional[List[float]]:
        if self.embedder is None:
            return None
        return await self.embedder(text)

    async def _score(self, query: str, query_embedding: Optional[List[float]],
                     doc: MemoryDocument) -> float:
        if not query.strip():
            return 1.0
        doc_embedding = doc.metadata.get("embedding")
        if query_embedding and doc_embedding:
            return cosine_similarity(query_embedding, doc_embedding)
        return jaccard_similarity(query, doc.content)

    async def retrieve_relevant_memories_with_score(self, query: str,
                                                    thread_id: Optional[str] = None,
                                                    limit: int = 10,
                                                    score_threshold: float = 0.0) -> List[ScoredDocument]:
        query_embedding = await self._embed(query) if query.strip() else None
        async with self._lock:
            candidates = [
                d for d in self._documents
                if thread_id is None or d.metadata.get("thread_id") == thread_id
            ]
        scored = []
        for doc in candidates:
            score = await self._score(query, query_embedding, doc)
            if score >= score_threshold:
                scored.append((MemoryDocument(doc.content, dict(doc.metadata)), score))
        scored.sort(key=lambda pair: pair[1], reverse=True)
        return scored[:limit]

    async def retrieve_relevant_memories(self, query: str, thread_id: Optional[str] = None,
                                         limit: int = 10,
                                         score_threshold: float = 0.0) -> List[MemoryDocument]:
        scored = await self.retrieve_relevant_memories_with_score(
            query, thread_id, limit=limit, score_threshold=score_threshold
        )
        return [doc for doc, _ in scored]

    async def store_memories(self, documents: List[MemoryDocument]) -> None:
        prepared = []
        for doc in documents:
            metadata = dict(doc.metadata)
            metadata.setdefault("id", str(uuid.uuid4()))
            metadata.setdefault("timestamp", now_ms())
            if "embedding" not in metadata and self.embedder is not None:
                embedding = await self._embed(doc.content)
                if embedding:
                    metadata["embedding"] = embedding
            prepared.append(MemoryDocument(doc.content, metadata))
        async with self._lock:
            self._documents.extend(prepared)
        logger.debug(f"Stored {len(prepared)} memories")

    async def clear_thread_memories(self, thread_id: str) -> None:
        async with self._lock:
            before = len(self._documents)
            self._documents = [
                d for d in self._documents if d.metadata.get("thread_id") != thread_id
            ]
            removed = before - len(self._documents)
        logger.info(f"Cleared {removed} memories for thread {thread_id}")

    async def get_health_status(self) -> Dict[str, Any]:
        return {
            "available": True,
            "connected": True,
            "document_count": len(self._documents),
            "embeddings": self.embedder is not None,
        }
