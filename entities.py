"""
Entity tracking for conversation threads.

Extracts named entities (and lightweight relationships between them) from
message batches, merges repeated mentions into a single record and keeps
each thread's entity set bounded by evicting the least relevant entity.

Extraction goes through the configured language model when there is one.
Without a model, or when the model call fails or returns something that is
not parseable JSON, a deterministic regex extractor is used instead.
"""

import re
import logging
from datetime import datetime
from collections import Counter
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from llm import LLMMessage, extract_json_object
from memory_types import Message, MessageRole
from thread_state import ThreadStateRegistry

logger = logging.getLogger(__name__)

FALLBACK_RELEVANCE = 0.3
NEW_ENTITY_RELEVANCE = 0.5
EVICTION_AGE_PENALTY_PER_DAY = 0.01

EXTRACTION_SYSTEM_PROMPT = "You are an expert at extracting and tracking entities from conversations."

DEFAULT_EXTRACTION_PROMPT = (
    "Extract entities (people, organizations, locations, products, dates, events, concepts) "
    "from the following conversation. For each entity, provide: name, type, description, "
    "key facts, and relationships to other entities."
)

EXTRACTION_FORMAT = """Return the entities in JSON format with the following structure:
{
  "entities": [
    {
      "name": "entity name",
      "type": "person|organization|location|product|date|event|concept",
      "description": "brief description",
      "facts": ["fact1", "fact2"],
      "relationships": [
        {"entityName": "related entity", "relationshipType": "type of relationship"}
      ]
    }
  ]
}"""


class EntityType(Enum):
    PERSON = "person"
    ORGANIZATION = "organization"
    LOCATION = "location"
    PRODUCT = "product"
    DATE = "date"
    EVENT = "event"
    CONCEPT = "concept"
    CUSTOM = "custom"


# Deterministic patterns: (label, regex, entity type). Group 1 is the name
# when the pattern has one, otherwise the whole match.
FALLBACK_PATTERNS = [
    ("person", re.compile(r"(?:Mr\.|Mrs\.|Ms\.|Dr\.|Prof\.)\s+([A-Z][a-z]+(?:\s+[A-Z][a-z]+)*)"),
     EntityType.PERSON),
    ("email", re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b"), EntityType.CUSTOM),
    ("url", re.compile(r"https?://[^\s]+"), EntityType.CUSTOM),
    ("date", re.compile(r"\b(\d{1,2}[/-]\d{1,2}[/-]\d{2,4}|\d{4}[/-]\d{1,2}[/-]\d{1,2})\b"),
     EntityType.DATE),
]


@dataclass
class EntityRelationship:
    target_entity_id: str
    target_name: str
    relationship_type: str


@dataclass
class Entity:
    id: str
    name: str
    type: EntityType
    description: str = ""
    facts: List[str] = field(default_factory=list)
    relationships: List[EntityRelationship] = field(default_factory=list)
    first_mentioned: datetime = field(default_factory=datetime.now)
    last_updated: datetime = field(default_factory=datetime.now)
    mention_count: int = 1
    relevance_score: float = NEW_ENTITY_RELEVANCE


@dataclass
class EntityExtractionOptions:
    entity_types: Optional[List[EntityType]] = None  # None means all types
    min_confidence: float = 0.7
    max_entities_per_thread: int = 100
    custom_extraction_prompt: str = DEFAULT_EXTRACTION_PROMPT
    extract_relationships: bool = True


@dataclass
class EntityState:
    entities: Dict[str, Entity] = field(default_factory=dict)
    last_extraction_time: datetime = field(default_factory=datetime.now)
    extraction_count: int = 0


def generate_entity_id(name: str, entity_type) -> str:
    type_value = entity_type.value if isinstance(entity_type, EntityType) else str(entity_type)
    normalized = re.sub(r"\s+", "_", name.lower())
    return f"{type_value}:{normalized}"


def format_messages(messages: List[Message]) -> str:
    """``Role: content`` lines, system messages excluded."""
    return "\n".join(
        f"{m.role_label}: {m.content}" for m in messages if m.role != MessageRole.SYSTEM
    )


def _parse_entity_type(value: Any) -> Optional[EntityType]:
    if isinstance(value, EntityType):
        return value
    if not isinstance(value, str):
        return None
    try:
        return EntityType(value.strip().lower())
    except ValueError:
        return EntityType.CUSTOM


class EntityTracker:
    """Per-thread entity memory."""

    def __init__(self, llm=None, options: Optional[EntityExtractionOptions] = None):
        self.llm = llm
        self.default_options = options or EntityExtractionOptions()
        self._states: ThreadStateRegistry[EntityState] = ThreadStateRegistry(lambda _: EntityState())

    def initialize_thread(self, thread_id: str) -> EntityState:
        return self._states.get_or_create(thread_id)

    def get_entity_state(self, thread_id: str) -> Optional[EntityState]:
        return self._states.get(thread_id)

    async def extract_entities(self, thread_id: str, messages: List[Message],
                               options: Optional[EntityExtractionOptions] = None) -> List[Entity]:
        """Extract entities from ``messages`` and merge them into the thread's state.

        Returns the entities created or updated by this call.
        """
        opts = options or self.default_options
        async with self._states.lock(thread_id):
            state = self._states.get_or_create(thread_id)

            if self.llm is None:
                logger.warning("No LLM configured for entity extraction, using fallback patterns")
                return self._apply_fallback(state, messages, opts)

            text = format_messages(messages)
            prompt = f"{opts.custom_extraction_prompt}\n\nConversation:\n{text}\n\n{EXTRACTION_FORMAT}"
            try:
                response = await self.llm.invoke([
                    LLMMessage("system", EXTRACTION_SYSTEM_PROMPT),
                    LLMMessage("user", prompt),
                ])
            except Exception as e:
                logger.error(f"Entity extraction LLM call failed for thread {thread_id}: {e}",
                             exc_info=True)
                return self._apply_fallback(state, messages, opts)

            parsed = extract_json_object(response.content)
            if parsed is None or not isinstance(parsed.get("entities", []), list):
                logger.warning(f"Unparseable entity extraction response for thread {thread_id}, "
                               f"using fallback patterns")
                return self._apply_fallback(state, messages, opts)

            candidates = self._filter_candidates(parsed.get("entities", []), opts)
            updated = self._merge_entities(state, candidates, opts, NEW_ENTITY_RELEVANCE)
            state.extraction_count += 1
            state.last_extraction_time = datetime.now()

        logger.debug(f"Extracted {len(updated)} entities for thread {thread_id}")
        return updated

    def _filter_candidates(self, raw_entities: List[Any],
                           opts: EntityExtractionOptions) -> List[Dict[str, Any]]:
        candidates = []
        for raw in raw_entities:
            if not isinstance(raw, dict) or not raw.get("type"):
                continue
            name = raw.get("name")
            if not isinstance(name, str) or not name.strip():
                continue
            entity_type = _parse_entity_type(raw["type"])
            if entity_type is None:
                continue
            if opts.entity_types and entity_type not in opts.entity_types:
                continue
            confidence = raw.get("confidence")
            if isinstance(confidence, (int, float)) and confidence < opts.min_confidence:
                continue
            description = raw.get("description")
            candidates.append({
                **raw,
                "name": name.strip(),
                "type": entity_type,
                "description": description if isinstance(description, str) else "",
            })
        return candidates

    def _fallback_candidates(self, messages: List[Message]) -> List[Dict[str, Any]]:
        text = format_messages(messages)
        candidates = []
        for label, pattern, entity_type in FALLBACK_PATTERNS:
            for match in pattern.finditer(text):
                name = match.group(1) if pattern.groups else match.group(0)
                candidates.append({
                    "name": name,
                    "type": entity_type,
                    "description": f"Extracted {label}",
                })
        return candidates

    def _apply_fallback(self, state: EntityState, messages: List[Message],
                        opts: EntityExtractionOptions) -> List[Entity]:
        candidates = self._fallback_candidates(messages)
        if opts.entity_types:
            candidates = [c for c in candidates if c["type"] in opts.entity_types]
        return self._merge_entities(state, candidates, opts, FALLBACK_RELEVANCE)

    def _merge_entities(self, state: EntityState, candidates: List[Dict[str, Any]],
                        opts: EntityExtractionOptions, initial_relevance: float) -> List[Entity]:
        updated: List[Entity] = []
        now = datetime.now()

        for raw in candidates:
            entity_id = generate_entity_id(raw["name"], raw["type"])
            relationships = self._parse_relationships(raw.get("relationships"), opts)
            facts = [f for f in (raw.get("facts") or []) if isinstance(f, str)]

            existing = state.entities.get(entity_id)
            if existing is not None:
                existing.mention_count += 1
                existing.last_updated = now
                for fact in facts:
                    if fact not in existing.facts:
                        existing.facts.append(fact)
                known = {(r.target_name, r.relationship_type) for r in existing.relationships}
                for rel in relationships:
                    if (rel.target_name, rel.relationship_type) not in known:
                        existing.relationships.append(rel)
                        known.add((rel.target_name, rel.relationship_type))
                existing.relevance_score = min(1.0, existing.mention_count / 10.0)
                if existing not in updated:
                    updated.append(existing)
                continue

            if len(state.entities) >= opts.max_entities_per_thread:
                self._evict_least_relevant(state)

            entity = Entity(
                id=entity_id,
                name=raw["name"],
                type=raw["type"],
                description=raw.get("description") or "",
                facts=list(dict.fromkeys(facts)),
                relationships=relationships,
                first_mentioned=now,
                last_updated=now,
                relevance_score=initial_relevance,
            )
            state.entities[entity_id] = entity
            updated.append(entity)

        return updated

    def _parse_relationships(self, raw_relationships: Any,
                             opts: EntityExtractionOptions) -> List[EntityRelationship]:
        if not opts.extract_relationships or not isinstance(raw_relationships, list):
            return []
        result = []
        seen = set()
        for rel in raw_relationships:
            if not isinstance(rel, dict):
                continue
            name = rel.get("entityName") or rel.get("entity_name")
            rel_type = rel.get("relationshipType") or rel.get("relationship_type")
            if not isinstance(name, str) or not isinstance(rel_type, str):
                continue
            if not name or not rel_type or (name, rel_type) in seen:
                continue
            seen.add((name, rel_type))
            result.append(EntityRelationship(
                target_entity_id=generate_entity_id(name, EntityType.CUSTOM),
                target_name=name,
                relationship_type=rel_type,
            ))
        return result

    def _evict_least_relevant(self, state: EntityState):
        now = datetime.now()

        def retention(entity: Entity) -> float:
            age_days = (now - entity.last_updated).total_seconds() / 86400.0
            return entity.relevance_score - EVICTION_AGE_PENALTY_PER_DAY * age_days

        victim = min(state.entities.values(), key=retention, default=None)
        if victim is not None:
            del state.entities[victim.id]
            logger.debug(f"Evicted entity {victim.name} due to low relevance")

    def get_entities(self, thread_id: str, types: Optional[List[EntityType]] = None,
                     min_relevance: Optional[float] = None,
                     search_term: Optional[str] = None) -> List[Entity]:
        state = self._states.get(thread_id)
        if state is None:
            return []

        entities = list(state.entities.values())
        if types:
            entities = [e for e in entities if e.type in types]
        if min_relevance is not None:
            entities = [e for e in entities if e.relevance_score >= min_relevance]
        if search_term:
            needle = search_term.lower()
            entities = [
                e for e in entities
                if needle in e.name.lower()
                or needle in e.description.lower()
                or any(needle in f.lower() for f in e.facts)
            ]
        return sorted(entities, key=lambda e: e.relevance_score, reverse=True)

    def get_context(self, thread_id: str, relevant_names: Optional[List[str]] = None,
                    top_n: int = 10) -> List[Message]:
        """Known entities formatted as a single system note (empty list if none)."""
        state = self._states.get(thread_id)
        if state is None or not state.entities:
            return []

        entities = list(state.entities.values())
        if relevant_names:
            names = [n.lower() for n in relevant_names]
            entities = [e for e in entities if any(n in e.name.lower() for n in names)]
        else:
            entities = sorted(entities, key=lambda e: e.relevance_score, reverse=True)[:top_n]
        if not entities:
            return []

        blocks = []
        for e in entities:
            info = f"{e.name} ({e.type.value}): {e.description}"
            if e.facts:
                info += f"\nFacts: {'; '.join(e.facts[:3])}"
            if e.relationships:
                rels = ", ".join(f"{r.relationship_type} {r.target_name}" for r in e.relationships[:3])
                info += f"\nRelationships: {rels}"
            blocks.append(info)

        note = (
            "Known entities from the conversation:\n\n"
            + "\n\n".join(blocks)
            + "\n\nUse this entity information to provide more contextual and informed responses."
        )
        return [Message(MessageRole.SYSTEM, note)]

    def update_entity(self, thread_id: str, entity_id: str, **updates) -> Optional[Entity]:
        """Patch fields of a tracked entity. Returns None if it is unknown."""
        state = self._states.get(thread_id)
        if state is None:
            return None
        entity = state.entities.get(entity_id)
        if entity is None:
            return None

        for key, value in updates.items():
            if key in ("id", "first_mentioned"):
                raise ValueError(f"Entity field '{key}' cannot be updated")
            if not hasattr(entity, key):
                raise ValueError(f"Unknown entity field '{key}'")
            setattr(entity, key, value)
        entity.last_updated = datetime.now()
        logger.debug(f"Updated entity {entity_id} in thread {thread_id}")
        return entity

    def clear_thread(self, thread_id: str):
        self._states.discard(thread_id)
        logger.debug(f"Cleared entity memory for thread {thread_id}")

    def get_statistics(self) -> Dict[str, Any]:
        states = [state for _, state in self._states.items()]
        all_entities = [e for s in states for e in s.entities.values()]
        type_counts = Counter(e.type.value for e in all_entities)
        return {
            "total_threads": len(states),
            "total_entities": len(all_entities),
            "average_entities_per_thread": len(all_entities) / len(states) if states else 0.0,
            "top_entity_types": [
                {"type": t, "count": c} for t, c in type_counts.most_common()
            ],
        }
