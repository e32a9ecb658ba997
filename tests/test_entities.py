"""Tests for per-thread entity tracking."""

import json
import pytest
from datetime import datetime, timedelta
from unittest.mock import AsyncMock

from entities import (
    EntityTracker, EntityType, EntityExtractionOptions, generate_entity_id,
)
from llm import LLMResponse
from memory_types import Message, MessageRole


def _human(text):
    return Message(MessageRole.HUMAN, text)


def _llm_returning(*payloads):
    llm = AsyncMock()
    llm.invoke.side_effect = [LLMResponse(content=p) for p in payloads]
    return llm


def _entities_json(*entities):
    return "Here you go:\n" + json.dumps({"entities": list(entities)}) + "\nDone."


JOHN = {
    "name": "John Smith",
    "type": "person",
    "description": "Project lead",
    "facts": ["Works at Acme"],
    "relationships": [{"entityName": "Acme", "relationshipType": "works_at"}],
}


# ---------------------------------------------------------------------------
# LLM extraction
# ---------------------------------------------------------------------------

class TestLLMExtraction:
    async def test_re_mention_increments(self):
        tracker = EntityTracker(_llm_returning(_entities_json(JOHN), _entities_json(JOHN)))
        await tracker.extract_entities("t1", [_human("I met John Smith today")])
        updated = await tracker.extract_entities("t1", [_human("John Smith called again")])

        assert len(updated) == 1
        john = updated[0]
        assert john.id == "person:john_smith"
        assert john.mention_count == 2
        assert john.relevance_score == pytest.approx(0.2)
        assert john.facts == ["Works at Acme"]
        assert len(john.relationships) == 1

    async def test_new_entity_relevance(self):
        tracker = EntityTracker(_llm_returning(_entities_json(JOHN)))
        [john] = await tracker.extract_entities("t1", [_human("hello John")])
        assert john.relevance_score == 0.5
        assert john.relationships[0].target_entity_id == "custom:acme"

    async def test_facts_and_relationships_merge(self):
        second = dict(JOHN, facts=["Works at Acme", "Likes tea"],
                      relationships=[{"entityName": "Acme", "relationshipType": "works_at"},
                                     {"entityName": "Jane", "relationshipType": "manages"}])
        tracker = EntityTracker(_llm_returning(_entities_json(JOHN), _entities_json(second)))
        await tracker.extract_entities("t1", [_human("one")])
        [john] = await tracker.extract_entities("t1", [_human("two")])
        assert john.facts == ["Works at Acme", "Likes tea"]
        assert [(r.target_name, r.relationship_type) for r in john.relationships] == [
            ("Acme", "works_at"), ("Jane", "manages"),
        ]

    async def test_type_filter(self):
        acme = {"name": "Acme", "type": "organization", "description": "Company"}
        tracker = EntityTracker(_llm_returning(_entities_json(JOHN, acme)))
        result = await tracker.extract_entities(
            "t1", [_human("x")], EntityExtractionOptions(entity_types=[EntityType.ORGANIZATION])
        )
        assert [e.name for e in result] == ["Acme"]

    async def test_malformed_response_falls_back(self):
        tracker = EntityTracker(_llm_returning("sorry, I can't produce JSON {oops"))
        result = await tracker.extract_entities("t1", [_human("Please email dr.who@example.com")])
        assert [e.name for e in result] == ["dr.who@example.com"]
        assert result[0].relevance_score == 0.3

    async def test_llm_error_falls_back(self):
        llm = AsyncMock()
        llm.invoke.side_effect = RuntimeError("model offline")
        tracker = EntityTracker(llm)
        result = await tracker.extract_entities("t1", [_human("Meeting with Dr. Jane Doe")])
        assert [(e.name, e.type) for e in result] == [("Jane Doe", EntityType.PERSON)]

    async def test_non_string_names_skipped(self):
        payload = _entities_json(
            {"name": 42, "type": "person"},
            {"name": ["Jane"], "type": "person"},
            {"name": "   ", "type": "person"},
            {"name": "Acme", "type": "organization",
             "relationships": [{"entityName": 7, "relationshipType": "owns"}]},
        )
        tracker = EntityTracker(_llm_returning(payload))
        result = await tracker.extract_entities("t1", [_human("x")])
        assert [e.name for e in result] == ["Acme"]
        assert result[0].relationships == []

    async def test_non_string_description_coerced(self):
        payload = _entities_json(
            {"name": "Acme", "type": "organization", "description": ["x"]},
            {"name": "Jane", "type": "person", "description": None},
        )
        tracker = EntityTracker(_llm_returning(payload))
        await tracker.extract_entities("t1", [_human("x")])

        assert all(e.description == "" for e in tracker.get_entities("t1"))
        assert tracker.get_entities("t1", search_term="zzz") == []

    async def test_eviction_at_capacity(self):
        a = {"name": "Alpha", "type": "concept"}
        b = {"name": "Beta", "type": "concept"}
        c = {"name": "Gamma", "type": "concept"}
        tracker = EntityTracker(
            _llm_returning(_entities_json(a, b), _entities_json(b), _entities_json(c)),
            EntityExtractionOptions(max_entities_per_thread=2),
        )
        await tracker.extract_entities("t1", [_human("1")])
        await tracker.extract_entities("t1", [_human("2")])  # Beta drops to 0.2, Alpha stays 0.5
        state = tracker.get_entity_state("t1")
        state.entities["concept:alpha"].last_updated = datetime.now() - timedelta(days=40)

        await tracker.extract_entities("t1", [_human("3")])
        assert set(state.entities) == {"concept:beta", "concept:gamma"}


# ---------------------------------------------------------------------------
# Fallback extraction
# ---------------------------------------------------------------------------

class TestFallbackExtraction:
    async def test_patterns(self):
        tracker = EntityTracker()
        text = ("Mr. John Smith sent mail to jane@corp.io about https://example.com/x "
                "before 2026-02-13.")
        result = await tracker.extract_entities("t1", [_human(text)])
        by_desc = {e.description: e for e in result}

        assert by_desc["Extracted person"].name == "John Smith"
        assert by_desc["Extracted email"].name == "jane@corp.io"
        assert by_desc["Extracted url"].name.startswith("https://example.com/x")
        assert by_desc["Extracted date"].name == "2026-02-13"
        assert all(e.relevance_score == 0.3 for e in result)

    async def test_repeated_fallback_mentions(self):
        tracker = EntityTracker()
        await tracker.extract_entities("t1", [_human("Talked to Mr. John Smith")])
        [john] = await tracker.extract_entities("t1", [_human("Mr. John Smith again")])
        assert john.mention_count == 2
        assert john.relevance_score == pytest.approx(0.2)

    async def test_system_messages_ignored(self):
        tracker = EntityTracker()
        result = await tracker.extract_entities(
            "t1", [Message(MessageRole.SYSTEM, "Contact admin@corp.io")]
        )
        assert result == []


# ---------------------------------------------------------------------------
# Queries and context
# ---------------------------------------------------------------------------

class TestQueries:
    @pytest.fixture
    async def tracker(self):
        acme = {"name": "Acme", "type": "organization", "description": "Widget maker",
                "facts": ["Founded 1999"]}
        t = EntityTracker(_llm_returning(_entities_json(JOHN, acme), _entities_json(JOHN)))
        await t.extract_entities("t1", [_human("a")])
        await t.extract_entities("t1", [_human("b")])
        return t

    async def test_sorted_by_relevance(self, tracker):
        # John: 2 mentions -> 0.2, Acme: new -> 0.5
        assert [e.name for e in tracker.get_entities("t1")] == ["Acme", "John Smith"]

    async def test_filters(self, tracker):
        assert [e.name for e in tracker.get_entities("t1", types=[EntityType.PERSON])] == ["John Smith"]
        assert [e.name for e in tracker.get_entities("t1", min_relevance=0.4)] == ["Acme"]
        assert [e.name for e in tracker.get_entities("t1", search_term="1999")] == ["Acme"]
        assert tracker.get_entities("unknown") == []

    async def test_context_note(self, tracker):
        [note] = tracker.get_context("t1")
        assert note.role == MessageRole.SYSTEM
        assert note.content.startswith("Known entities from the conversation:")
        assert "John Smith (person): Project lead\nFacts: Works at Acme\nRelationships: works_at Acme" in note.content

    async def test_context_by_name(self, tracker):
        [note] = tracker.get_context("t1", relevant_names=["acme"])
        assert "Acme (organization)" in note.content
        assert "John Smith" not in note.content

    async def test_update_entity(self, tracker):
        updated = tracker.update_entity("t1", "organization:acme", description="Rocket maker")
        assert updated.description == "Rocket maker"
        assert tracker.update_entity("t1", "nope", description="x") is None
        with pytest.raises(ValueError):
            tracker.update_entity("t1", "organization:acme", bogus=1)

    async def test_clear_and_statistics(self, tracker):
        stats = tracker.get_statistics()
        assert stats["total_threads"] == 1
        assert stats["total_entities"] == 2
        tracker.clear_thread("t1")
        assert tracker.get_entities("t1") == []
        assert tracker.get_statistics()["total_threads"] == 0


def test_generate_entity_id():
    assert generate_entity_id("New  York City", EntityType.LOCATION) == "location:new_york_city"
