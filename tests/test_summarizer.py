"""Tests for progressive conversation summarization."""

import pytest
from unittest.mock import AsyncMock

from llm import LLMResponse
from memory_types import Message, MessageRole
from summarizer import ProgressiveSummarizer, SummaryOptions, SUMMARY_CHAR_CAP


def _msgs(*texts, role=MessageRole.HUMAN):
    return [Message(role, t) for t in texts]


def _llm(*summaries):
    llm = AsyncMock()
    llm.invoke.side_effect = [LLMResponse(content=s) for s in summaries]
    return llm


# ---------------------------------------------------------------------------
# Threshold handling
# ---------------------------------------------------------------------------

class TestThreshold:
    async def test_below_threshold_stays_pending(self):
        llm = _llm("unused")
        summarizer = ProgressiveSummarizer(llm, SummaryOptions(max_messages_before_summary=3))
        await summarizer.add_messages("t1", _msgs("one", "two"))

        state = summarizer.get_summary_state("t1")
        assert len(state.pending_messages) == 2
        assert state.summary == ""
        llm.invoke.assert_not_called()

    async def test_threshold_triggers_summary(self):
        llm = _llm("  Users greeted each other.  ")
        summarizer = ProgressiveSummarizer(llm, SummaryOptions(max_messages_before_summary=3))
        await summarizer.add_messages("t1", _msgs("hi", "hello", "hey"))

        state = summarizer.get_summary_state("t1")
        assert state.summary == "Users greeted each other."
        assert state.messages_summarized == 3
        assert state.pending_messages == []

    async def test_system_messages_excluded_by_default(self):
        summarizer = ProgressiveSummarizer(None, SummaryOptions(max_messages_before_summary=2))
        await summarizer.add_messages("t1", _msgs("rules", role=MessageRole.SYSTEM) + _msgs("hi"))
        assert len(summarizer.get_summary_state("t1").pending_messages) == 1


# ---------------------------------------------------------------------------
# LLM folding
# ---------------------------------------------------------------------------

class TestLLMSummaries:
    async def test_prior_summary_included_in_prompt(self):
        llm = _llm("first summary", "second summary")
        summarizer = ProgressiveSummarizer(llm, SummaryOptions(max_messages_before_summary=1))
        await summarizer.add_messages("t1", _msgs("we chose postgres"))
        await summarizer.add_messages("t1", _msgs("and docker for deploys"))

        prompt = llm.invoke.call_args_list[1].args[0][1].content
        assert "Previous summary:\nfirst summary" in prompt
        assert "New messages:\nHuman: and docker for deploys" in prompt
        assert summarizer.get_summary_state("t1").summary == "second summary"
        assert summarizer.get_summary_state("t1").messages_summarized == 2

    async def test_llm_summary_is_capped(self):
        summarizer = ProgressiveSummarizer(_llm("x" * 5000), SummaryOptions(max_messages_before_summary=1))
        await summarizer.add_messages("t1", _msgs("long story"))
        assert len(summarizer.get_summary_state("t1").summary) == SUMMARY_CHAR_CAP

    async def test_llm_failure_uses_fallback(self):
        llm = AsyncMock()
        llm.invoke.side_effect = RuntimeError("offline")
        summarizer = ProgressiveSummarizer(llm, SummaryOptions(max_messages_before_summary=1))
        await summarizer.add_messages("t1", _msgs("remember the milk"))
        assert summarizer.get_summary_state("t1").summary == "Human: remember the milk"

    async def test_blank_reply_keeps_prior_summary(self):
        summarizer = ProgressiveSummarizer(_llm("first summary", "   \n"),
                                           SummaryOptions(max_messages_before_summary=1))
        await summarizer.add_messages("t1", _msgs("we chose postgres"))
        await summarizer.add_messages("t1", _msgs("and docker"))

        state = summarizer.get_summary_state("t1")
        assert state.summary == "first summary\n\nHuman: and docker"
        assert state.messages_summarized == 2


# ---------------------------------------------------------------------------
# Fallback, context, housekeeping
# ---------------------------------------------------------------------------

class TestFallback:
    async def test_concatenates_with_prior(self):
        summarizer = ProgressiveSummarizer(options=SummaryOptions(max_messages_before_summary=1))
        await summarizer.add_messages("t1", _msgs("first"))
        await summarizer.add_messages("t1", _msgs("second", role=MessageRole.AI))
        assert summarizer.get_summary_state("t1").summary == "Human: first\n\nAI: second"

    async def test_cap(self):
        summarizer = ProgressiveSummarizer(options=SummaryOptions(max_messages_before_summary=1))
        for _ in range(5):
            await summarizer.add_messages("t1", _msgs("y" * 900))
        state = summarizer.get_summary_state("t1")
        assert len(state.summary) == SUMMARY_CHAR_CAP
        assert state.messages_summarized == 5

    async def test_force_summarize(self):
        summarizer = ProgressiveSummarizer()
        await summarizer.add_messages("t1", _msgs("only one"))
        assert await summarizer.force_summarize("t1") == "Human: only one"
        assert await summarizer.force_summarize("unknown") == ""


class TestContext:
    async def test_summary_note_and_pending(self):
        summarizer = ProgressiveSummarizer(options=SummaryOptions(max_messages_before_summary=2))
        await summarizer.add_messages("t1", _msgs("a1", "a2"))
        await summarizer.add_messages("t1", _msgs("b1"))

        context = summarizer.get_context("t1")
        assert context[0].role == MessageRole.SYSTEM
        assert context[0].content == "Previous conversation summary (2 messages):\nHuman: a1\nHuman: a2"
        assert [m.content for m in context[1:]] == ["b1"]

        assert len(summarizer.get_context("t1", include_recent=False)) == 1

    def test_unknown_thread(self):
        assert ProgressiveSummarizer().get_context("nope") == []

    async def test_clear_and_statistics(self):
        summarizer = ProgressiveSummarizer(options=SummaryOptions(max_messages_before_summary=1))
        await summarizer.add_messages("t1", _msgs("a"))
        await summarizer.add_messages("t2", _msgs("b", "c"))

        stats = summarizer.get_statistics()
        assert stats["total_threads"] == 2
        assert stats["total_messages_summarized"] == 3
        assert stats["average_messages_per_thread"] == pytest.approx(1.5)

        summarizer.clear_thread("t1")
        assert summarizer.get_summary_state("t1") is None
