"""
In-memory relationship graph for the memory engine.

Nodes (entities, concepts, events, ...) and weighted, typed edges are kept
in index-addressed arenas: nodes and edges live in lists, a string id maps
to a slot index, and adjacency is stored as sets of node indices. Removal
leaves a tombstone (``None``) in the slot and the slot is reused by the
next insertion.

Provides merge-on-insert, bounded BFS traversal, shortest-path search,
semantic-neighbor lookup through the memory store, clustering,
import/export and thread-scoped clearing.
"""

import re
import time
import asyncio
import logging
from datetime import datetime
from collections import defaultdict, deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Set, Tuple

logger = logging.getLogger(__name__)


class NodeType(Enum):
    ENTITY = "entity"
    CONCEPT = "concept"
    CONVERSATION = "conversation"
    EVENT = "event"
    TOPIC = "topic"
    LOCATION = "location"
    TIME = "time"


class EdgeType(Enum):
    RELATES_TO = "relates_to"
    MENTIONS = "mentions"
    FOLLOWS = "follows"
    CAUSED_BY = "caused_by"
    PART_OF = "part_of"
    CONTRADICTS = "contradicts"
    SUPPORTS = "supports"
    DEPENDS_ON = "depends_on"
    SIMILAR_TO = "similar_to"
    OPPOSITE_OF = "opposite_of"
    LOCATED_AT = "located_at"
    OCCURRED_AT = "occurred_at"
    INTERACTS_WITH = "interacts_with"


@dataclass
class GraphNode:
    id: str
    type: NodeType
    label: str
    content: str = ""
    properties: Dict[str, Any] = field(default_factory=dict)
    importance: float = 0.5
    thread_id: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: datetime = field(default_factory=datetime.now)


@dataclass
class GraphEdge:
    source_id: str
    target_id: str
    type: EdgeType
    weight: float = 1.0
    properties: Dict[str, Any] = field(default_factory=dict)
    bidirectional: bool = True
    created_at: datetime = field(default_factory=datetime.now)

    @property
    def id(self) -> str:
        return edge_id(self.source_id, self.type, self.target_id)


def edge_id(source_id: str, edge_type: EdgeType, target_id: str) -> str:
    return f"{source_id}-{edge_type.value}-{target_id}"


@dataclass
class TraversalOptions:
    max_depth: int = 3
    max_nodes: int = 50
    node_types: Optional[List[NodeType]] = None
    edge_types: Optional[List[EdgeType]] = None
    min_weight: float = 0.0
    include_edges: bool = True
    sort_by_importance: bool = True
    thread_id: Optional[str] = None


@dataclass
class GraphQueryResult:
    nodes: List[GraphNode]
    edges: List[GraphEdge]
    execution_time_ms: float = 0.0


def entity_node_id(name: str, thread_id: Optional[str] = None) -> str:
    """Node id for an extracted entity; thread-scoped when a thread is given."""
    base = f"entity-{name.lower()}"
    return f"{thread_id}:{base}" if thread_id else base


class RelationshipGraph:
    """Arena-backed directed graph with optional bidirectional edges."""

    def __init__(self, memory_store=None):
        self.memory_store = memory_store
        self._locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._reset()

    def _reset(self):
        self._nodes: List[Optional[GraphNode]] = []
        self._node_index: Dict[str, int] = {}
        # Traversable adjacency: _out[a] holds b when some edge can be walked a -> b.
        self._out: List[Set[int]] = []
        self._in: List[Set[int]] = []
        self._edges: List[Optional[GraphEdge]] = []
        self._edge_ends: List[Tuple[int, int]] = []
        self._edge_index: Dict[str, int] = {}
        # (a, b) -> edge slots walkable from a to b
        self._pairs: Dict[Tuple[int, int], List[int]] = {}
        # Edge slots touching each node, and tombstoned slots awaiting reuse
        self._incident: List[Set[int]] = []
        self._free_nodes: List[int] = []
        self._free_edges: List[int] = []

    # ------------------------------------------------------------------
    # Arena helpers
    # ------------------------------------------------------------------

    def _link(self, slot: int, a: int, b: int):
        self._pairs.setdefault((a, b), []).append(slot)
        self._out[a].add(b)
        self._in[b].add(a)

    def _unlink(self, slot: int, a: int, b: int):
        slots = self._pairs.get((a, b))
        if not slots:
            return
        if slot in slots:
            slots.remove(slot)
        if not slots:
            del self._pairs[(a, b)]
            self._out[a].discard(b)
            self._in[b].discard(a)

    def _remove_edge_slot(self, slot: int):
        edge = self._edges[slot]
        if edge is None:
            return
        a, b = self._edge_ends[slot]
        self._unlink(slot, a, b)
        if edge.bidirectional:
            self._unlink(slot, b, a)
        self._incident[a].discard(slot)
        self._incident[b].discard(slot)
        del self._edge_index[edge.id]
        self._edges[slot] = None
        self._free_edges.append(slot)

    def _allocate_node_slot(self, node: GraphNode) -> int:
        if self._free_nodes:
            idx = self._free_nodes.pop()
            self._nodes[idx] = node
            self._out[idx] = set()
            self._in[idx] = set()
            self._incident[idx] = set()
            return idx
        self._nodes.append(node)
        self._out.append(set())
        self._in.append(set())
        self._incident.append(set())
        return len(self._nodes) - 1

    def _allocate_edge_slot(self, edge: GraphEdge, a: int, b: int) -> int:
        if self._free_edges:
            slot = self._free_edges.pop()
            self._edges[slot] = edge
            self._edge_ends[slot] = (a, b)
        else:
            slot = len(self._edges)
            self._edges.append(edge)
            self._edge_ends.append((a, b))
        self._incident[a].add(slot)
        self._incident[b].add(slot)
        return slot

    def _walkable_edges(self, a: int, b: int) -> List[GraphEdge]:
        return [self._edges[s] for s in self._pairs.get((a, b), []) if self._edges[s] is not None]

    def _update_node_importance(self, idx: int):
        node = self._nodes[idx]
        degree = len(self._in[idx]) + len(self._out[idx])
        node.importance = max(node.importance, min(1.0, degree / 10.0))
        node.updated_at = datetime.now()

    def _live_nodes(self) -> List[Tuple[int, GraphNode]]:
        return [(i, n) for i, n in enumerate(self._nodes) if n is not None]

    @property
    def node_count(self) -> int:
        return len(self._node_index)

    @property
    def edge_count(self) -> int:
        return len(self._edge_index)

    def thread_lock(self, thread_id: str) -> asyncio.Lock:
        return self._locks[thread_id]

    # ------------------------------------------------------------------
    # Insertion and removal
    # ------------------------------------------------------------------

    def add_node(self, node: GraphNode) -> GraphNode:
        """Insert a node, merging into an existing node with the same id.

        On merge the new fields replace the old, except that importance is
        max-wins, properties are unioned and created_at is preserved.
        """
        idx = self._node_index.get(node.id)
        now = datetime.now()
        if idx is None:
            node.updated_at = now
            self._node_index[node.id] = self._allocate_node_slot(node)
            logger.debug(f"Added node {node.id} of type {node.type.value}")
            return node

        existing = self._nodes[idx]
        node.created_at = existing.created_at
        node.updated_at = now
        node.importance = max(existing.importance, node.importance)
        node.properties = {**existing.properties, **node.properties}
        self._nodes[idx] = node
        logger.debug(f"Merged node {node.id}")
        return node

    def add_edge(self, edge: GraphEdge) -> GraphEdge:
        """Insert an edge, merging into an existing edge with the same id.

        Raises:
            ValueError: if either endpoint node does not exist
        """
        a = self._node_index.get(edge.source_id)
        b = self._node_index.get(edge.target_id)
        if a is None or b is None:
            raise ValueError(
                f"Cannot add edge {edge.id}: one or both nodes do not exist"
            )

        slot = self._edge_index.get(edge.id)
        if slot is None:
            slot = self._allocate_edge_slot(edge, a, b)
            self._edge_index[edge.id] = slot
            self._link(slot, a, b)
            if edge.bidirectional:
                self._link(slot, b, a)
        else:
            existing = self._edges[slot]
            existing.weight = max(existing.weight, edge.weight)
            existing.properties = {**existing.properties, **edge.properties}
            if edge.bidirectional and not existing.bidirectional:
                existing.bidirectional = True
                self._link(slot, b, a)
            edge = existing

        self._update_node_importance(a)
        self._update_node_importance(b)
        logger.debug(f"Added edge {edge.id} with weight {edge.weight}")
        return edge

    def remove_node(self, node_id: str) -> bool:
        """Remove a node and every edge touching it."""
        idx = self._node_index.get(node_id)
        if idx is None:
            return False

        incident = sorted(self._incident[idx])
        for slot in incident:
            self._remove_edge_slot(slot)

        del self._node_index[node_id]
        self._nodes[idx] = None
        self._out[idx] = set()
        self._in[idx] = set()
        self._free_nodes.append(idx)
        logger.debug(f"Removed node {node_id} and {len(incident)} edges")
        return True

    def get_node(self, node_id: str) -> Optional[GraphNode]:
        idx = self._node_index.get(node_id)
        return self._nodes[idx] if idx is not None else None

    def get_edge(self, source_id: str, edge_type: EdgeType, target_id: str) -> Optional[GraphEdge]:
        slot = self._edge_index.get(edge_id(source_id, edge_type, target_id))
        return self._edges[slot] if slot is not None else None

    # ------------------------------------------------------------------
    # Extraction
    # ------------------------------------------------------------------

    def extract_nodes_and_edges(self, text: str, thread_id: Optional[str] = None,
                                min_confidence: float = 0.7) -> Tuple[List[GraphNode], List[GraphEdge]]:
        """Naive entity extraction: capitalized words become ENTITY nodes and
        every co-occurring pair gets a bidirectional RELATES_TO edge."""
        names: List[str] = []
        seen: Set[str] = set()
        for word in text.split():
            if len(word) > 2 and word[0].isupper():
                name = re.sub(r"[^a-zA-Z0-9]", "", word)
                # Node ids are lower-cased, so "Apple" and "APPLE" are one entity
                if name and name.lower() not in seen:
                    seen.add(name.lower())
                    names.append(name)

        nodes = []
        for name in names:
            nodes.append(self.add_node(GraphNode(
                id=entity_node_id(name, thread_id),
                type=NodeType.ENTITY,
                label=name,
                content=f"Entity: {name}",
                properties={
                    "extracted_from": text[:100],
                    "confidence": min_confidence,
                    "thread_id": thread_id,
                },
                importance=0.5,
                thread_id=thread_id,
            )))

        edges = []
        for i in range(len(names) - 1):
            for j in range(i + 1, len(names)):
                edges.append(self.add_edge(GraphEdge(
                    source_id=entity_node_id(names[i], thread_id),
                    target_id=entity_node_id(names[j], thread_id),
                    type=EdgeType.RELATES_TO,
                    weight=0.5,
                    properties={"co_occurrence": True, "context": text[:50]},
                    bidirectional=True,
                )))

        logger.debug(f"Extracted {len(nodes)} nodes and {len(edges)} edges from text")
        return nodes, edges

    async def ingest(self, text: str, thread_id: str):
        """Extract from ``text`` while holding the thread's lock."""
        async with self.thread_lock(thread_id):
            return self.extract_nodes_and_edges(text, thread_id)

    async def rebuild_thread(self, thread_id: str, texts: List[str]) -> int:
        """Clear a thread's subgraph and re-extract it from ``texts``.

        Returns the number of nodes in the rebuilt subgraph.
        """
        async with self.thread_lock(thread_id):
            self.clear_thread_graph(thread_id)
            for text in texts:
                self.extract_nodes_and_edges(text, thread_id)
            count = sum(1 for _, n in self._live_nodes() if n.thread_id == thread_id)
        logger.info(f"Rebuilt graph for thread {thread_id}: {count} nodes from {len(texts)} texts")
        return count

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def traverse(self, start_id: str, options: Optional[TraversalOptions] = None) -> GraphQueryResult:
        """Breadth-first walk from ``start_id`` bounded by depth and node count.

        Raises:
            ValueError: if the start node does not exist
        """
        opts = options or TraversalOptions()
        started = time.perf_counter()
        start = self._node_index.get(start_id)
        if start is None:
            raise ValueError(f"Start node {start_id} not found")

        visited: Set[int] = set()
        result_nodes: List[GraphNode] = []
        result_edges: List[GraphEdge] = []
        seen_edges: Set[str] = set()
        queue = deque([(start, 0)])

        while queue and len(result_nodes) < opts.max_nodes:
            idx, depth = queue.popleft()
            if idx in visited or depth > opts.max_depth:
                continue
            visited.add(idx)
            node = self._nodes[idx]
            if node is None:
                continue
            if opts.node_types and node.type not in opts.node_types:
                continue
            if opts.thread_id and node.thread_id != opts.thread_id:
                continue

            result_nodes.append(node)
            if depth >= opts.max_depth:
                continue

            for neighbor in sorted(self._out[idx]):
                candidates = [
                    e for e in self._walkable_edges(idx, neighbor)
                    if (not opts.edge_types or e.type in opts.edge_types)
                    and e.weight >= opts.min_weight
                ]
                if not candidates:
                    continue
                if opts.include_edges:
                    for e in candidates:
                        if e.id not in seen_edges:
                            seen_edges.add(e.id)
                            result_edges.append(e)
                queue.append((neighbor, depth + 1))

        if opts.sort_by_importance:
            result_nodes.sort(key=lambda n: n.importance, reverse=True)

        elapsed = (time.perf_counter() - started) * 1000
        logger.debug(f"Traversed from {start_id}: {len(result_nodes)} nodes, "
                     f"{len(result_edges)} edges in {elapsed:.1f}ms")
        return GraphQueryResult(nodes=result_nodes, edges=result_edges, execution_time_ms=elapsed)

    def find_path(self, start_id: str, end_id: str, max_depth: int = 10,
                  edge_types: Optional[List[EdgeType]] = None) -> Optional[List[GraphNode]]:
        """Shortest path by hop count, or None if unreachable within ``max_depth`` hops."""
        start = self._node_index.get(start_id)
        end = self._node_index.get(end_id)
        if start is None or end is None:
            return None

        parents: Dict[int, Optional[int]] = {start: None}
        queue = deque([(start, 0)])
        found = start == end

        while queue and not found:
            idx, hops = queue.popleft()
            if hops >= max_depth:
                continue
            for neighbor in sorted(self._out[idx]):
                if neighbor in parents:
                    continue
                if edge_types and not any(
                    e.type in edge_types for e in self._walkable_edges(idx, neighbor)
                ):
                    continue
                parents[neighbor] = idx
                if neighbor == end:
                    found = True
                    break
                queue.append((neighbor, hops + 1))

        if not found:
            return None

        path = []
        cursor: Optional[int] = end
        while cursor is not None:
            path.append(self._nodes[cursor])
            cursor = parents[cursor]
        path.reverse()
        return path

    async def get_semantic_neighbors(self, node_id: str, limit: int = 10,
                                     thread_id: Optional[str] = None) -> List[GraphNode]:
        """Nodes whose stored documents are semantically close to this node's content.

        Raises:
            ValueError: if the node does not exist
        """
        node = self.get_node(node_id)
        if node is None:
            raise ValueError(f"Node {node_id} not found")
        if self.memory_store is None:
            return []

        try:
            docs = await self.memory_store.retrieve_relevant_memories(
                node.content, thread_id, limit=limit
            )
        except Exception as e:
            logger.error(f"Failed to get semantic neighbors for {node_id}: {e}", exc_info=True)
            return []

        neighbors = []
        for doc in docs:
            other_id = (doc.metadata or {}).get("node_id")
            if other_id and other_id != node_id:
                other = self.get_node(other_id)
                if other is not None:
                    neighbors.append(other)
        return neighbors

    def cluster_nodes(self, node_types: Optional[List[NodeType]] = None,
                      min_cluster_size: int = 2,
                      similarity_threshold: float = 0.7) -> Dict[str, List[GraphNode]]:
        """Group nodes reachable within two hops over edges of weight >= threshold."""
        clusters: Dict[str, List[GraphNode]] = {}
        processed: Set[str] = set()

        for _, node in self._live_nodes():
            if node.id in processed:
                continue
            if node_types and node.type not in node_types:
                continue

            cluster = [node]
            processed.add(node.id)
            connected = self.traverse(node.id, TraversalOptions(
                max_depth=2,
                min_weight=similarity_threshold,
                node_types=node_types,
                include_edges=False,
                sort_by_importance=False,
                max_nodes=max(self.node_count, 1),
            ))
            for other in connected.nodes:
                if other.id not in processed:
                    cluster.append(other)
                    processed.add(other.id)

            if len(cluster) >= min_cluster_size:
                clusters[f"cluster-{len(clusters)}"] = cluster

        logger.debug(f"Created {len(clusters)} clusters from {self.node_count} nodes")
        return clusters

    def get_statistics(self) -> Dict[str, Any]:
        node_types: Dict[str, int] = defaultdict(int)
        edge_types: Dict[str, int] = defaultdict(int)
        total_degree = 0
        max_degree = 0

        for idx, node in self._live_nodes():
            node_types[node.type.value] += 1
            degree = len(self._out[idx]) + len(self._in[idx])
            total_degree += degree
            max_degree = max(max_degree, degree)

        for edge in self._edges:
            if edge is not None:
                edge_types[edge.type.value] += 1

        return {
            "node_count": self.node_count,
            "edge_count": self.edge_count,
            "node_types": dict(node_types),
            "edge_types": dict(edge_types),
            "avg_degree": total_degree / self.node_count if self.node_count else 0.0,
            "max_degree": max_degree,
        }

    # ------------------------------------------------------------------
    # Clearing, import and export
    # ------------------------------------------------------------------

    def clear_graph(self):
        self._reset()
        logger.info("Graph memory cleared")

    def clear_thread_graph(self, thread_id: str) -> int:
        doomed = [n.id for _, n in self._live_nodes() if n.thread_id == thread_id]
        for node_id in doomed:
            self.remove_node(node_id)
        logger.info(f"Cleared {len(doomed)} graph nodes for thread {thread_id}")
        return len(doomed)

    def export_to_dict(self) -> Dict[str, List[Dict[str, Any]]]:
        nodes = [{
            "id": n.id,
            "type": n.type.value,
            "label": n.label,
            "content": n.content,
            "properties": dict(n.properties),
            "importance": n.importance,
            "thread_id": n.thread_id,
            "created_at": n.created_at.isoformat(),
            "updated_at": n.updated_at.isoformat(),
        } for _, n in self._live_nodes()]
        edges = [{
            "id": e.id,
            "source_id": e.source_id,
            "target_id": e.target_id,
            "type": e.type.value,
            "weight": e.weight,
            "properties": dict(e.properties),
            "bidirectional": e.bidirectional,
            "created_at": e.created_at.isoformat(),
        } for e in self._edges if e is not None]
        return {"nodes": nodes, "edges": edges}

    def import_from_dict(self, data: Dict[str, List[Dict[str, Any]]]):
        """Replace the graph with the contents of an ``export_to_dict`` payload."""
        self.clear_graph()
        for raw in data.get("nodes", []):
            self.add_node(GraphNode(
                id=raw["id"],
                type=NodeType(raw["type"]),
                label=raw.get("label", raw["id"]),
                content=raw.get("content", ""),
                properties=dict(raw.get("properties") or {}),
                importance=float(raw.get("importance", 0.5)),
                thread_id=raw.get("thread_id"),
                created_at=datetime.fromisoformat(raw["created_at"]) if raw.get("created_at") else datetime.now(),
            ))
        for raw in data.get("edges", []):
            self.add_edge(GraphEdge(
                source_id=raw["source_id"],
                target_id=raw["target_id"],
                type=EdgeType(raw["type"]),
                weight=float(raw.get("weight", 1.0)),
                properties=dict(raw.get("properties") or {}),
                bidirectional=bool(raw.get("bidirectional", True)),
                created_at=datetime.fromisoformat(raw["created_at"]) if raw.get("created_at") else datetime.now(),
            ))
        logger.info(f"Imported {self.node_count} nodes and {self.edge_count} edges")
