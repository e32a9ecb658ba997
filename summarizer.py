"""
Progressive conversation summarization.

Messages accumulate per thread until a threshold is reached, then get folded
into the thread's running summary. The fold goes through the language model
when one is configured; otherwise (or if the call fails) the pending text is
appended to the previous summary. Every summary is capped at 2000 characters.
"""

import logging
from datetime import datetime
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from llm import LLMMessage
from memory_types import Message, MessageRole
from thread_state import ThreadStateRegistry

logger = logging.getLogger(__name__)

SUMMARY_CHAR_CAP = 2000

SUMMARY_SYSTEM_PROMPT = "You are a helpful assistant that creates concise conversation summaries."

DEFAULT_SUMMARY_PROMPT = (
    "Summarize the following conversation, preserving key information, decisions, and context:"
)


@dataclass
class SummaryOptions:
    max_messages_before_summary: int = 10
    max_summary_tokens: int = 500
    include_system_messages: bool = False
    custom_summary_prompt: str = DEFAULT_SUMMARY_PROMPT


@dataclass
class ConversationSummaryState:
    summary: str = ""
    messages_summarized: int = 0
    pending_messages: List[Message] = field(default_factory=list)
    last_summary_update: datetime = field(default_factory=datetime.now)


def format_for_summary(messages: List[Message]) -> str:
    return "\n".join(f"{m.role_label}: {m.content}" for m in messages)


class ProgressiveSummarizer:
    def __init__(self, llm=None, options: Optional[SummaryOptions] = None):
        self.llm = llm
        self.default_options = options or SummaryOptions()
        self._states: ThreadStateRegistry[ConversationSummaryState] = ThreadStateRegistry(
            lambda _: ConversationSummaryState()
        )

    def initialize_thread(self, thread_id: str) -> ConversationSummaryState:
        return self._states.get_or_create(thread_id)

    def get_summary_state(self, thread_id: str) -> Optional[ConversationSummaryState]:
        return self._states.get(thread_id)

    async def add_messages(self, thread_id: str, messages: List[Message],
                           options: Optional[SummaryOptions] = None):
        """Queue messages and summarize once the pending threshold is reached."""
        opts = options or self.default_options
        async with self._states.lock(thread_id):
            state = self._states.get_or_create(thread_id)
            accepted = [
                m for m in messages
                if opts.include_system_messages or m.role != MessageRole.SYSTEM
            ]
            state.pending_messages.extend(accepted)
            logger.debug(f"Added {len(accepted)} messages to thread {thread_id} "
                         f"({len(state.pending_messages)} pending)")

            if len(state.pending_messages) >= opts.max_messages_before_summary:
                await self._summarize(thread_id, state, opts)

    async def summarize_conversation(self, thread_id: str,
                                     options: Optional[SummaryOptions] = None) -> str:
        """Fold pending messages into the summary now. Returns the summary."""
        opts = options or self.default_options
        async with self._states.lock(thread_id):
            state = self._states.get(thread_id)
            if state is None:
                return ""
            return await self._summarize(thread_id, state, opts)

    async def force_summarize(self, thread_id: str,
                              options: Optional[SummaryOptions] = None) -> str:
        return await self.summarize_conversation(thread_id, options)

    async def _summarize(self, thread_id: str, state: ConversationSummaryState,
                         opts: SummaryOptions) -> str:
        if not state.pending_messages:
            return state.summary

        if self.llm is None:
            logger.warning("No LLM configured for summarization, concatenating messages instead")
            return self._fallback(state)

        text = format_for_summary(state.pending_messages)
        if state.summary:
            prompt = (
                f"{opts.custom_summary_prompt}\n\nPrevious summary:\n{state.summary}"
                f"\n\nNew messages:\n{text}"
                f"\n\nProvide an updated summary that incorporates both the previous summary "
                f"and new messages:"
            )
        else:
            prompt = f"{opts.custom_summary_prompt}\n\n{text}"
        prompt += f"\n\nKeep the summary under {opts.max_summary_tokens} tokens."

        try:
            response = await self.llm.invoke([
                LLMMessage("system", SUMMARY_SYSTEM_PROMPT),
                LLMMessage("user", prompt),
            ])
        except Exception as e:
            logger.error(f"Failed to summarize thread {thread_id} with LLM: {e}", exc_info=True)
            return self._fallback(state)

        summary = response.content.strip()
        if not summary:
            logger.warning(f"LLM returned an empty summary for thread {thread_id}, concatenating messages instead")
            return self._fallback(state)

        self._commit(state, summary)
        logger.debug(f"Summarized {state.messages_summarized} messages for thread {thread_id}")
        return state.summary

    def _fallback(self, state: ConversationSummaryState) -> str:
        text = format_for_summary(state.pending_messages)
        combined = f"{state.summary}\n\n{text}" if state.summary else text
        self._commit(state, combined)
        return state.summary

    def _commit(self, state: ConversationSummaryState, summary: str):
        state.summary = summary[:SUMMARY_CHAR_CAP]
        state.messages_summarized += len(state.pending_messages)
        state.pending_messages = []
        state.last_summary_update = datetime.now()

    def get_context(self, thread_id: str, include_recent: bool = True) -> List[Message]:
        """Summary note followed by still-pending messages."""
        state = self._states.get(thread_id)
        if state is None:
            return []

        context: List[Message] = []
        if state.summary:
            context.append(Message(
                MessageRole.SYSTEM,
                f"Previous conversation summary ({state.messages_summarized} messages):\n"
                f"{state.summary}",
            ))
        if include_recent:
            context.extend(state.pending_messages)
        return context

    def clear_thread(self, thread_id: str):
        self._states.discard(thread_id)
        logger.debug(f"Cleared conversation summary for thread {thread_id}")

    def get_statistics(self) -> Dict[str, Any]:
        states = [s for _, s in self._states.items()]
        total = sum(s.messages_summarized for s in states)
        return {
            "total_threads": len(states),
            "total_messages_summarized": total,
            "average_messages_per_thread": total / len(states) if states else 0.0,
        }
