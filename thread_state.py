"""
Per-thread state registry.

Entity, summary and graph state are sharded by conversation thread. Each
thread gets its own ``asyncio.Lock`` so that mutations of one thread are
serialized while different threads never wait on each other. State is
created on first touch and dropped on explicit clear.
"""

import asyncio
import logging
from collections import defaultdict
from typing import Callable, Dict, Generic, Iterator, List, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ThreadStateRegistry(Generic[T]):
    def __init__(self, factory: Callable[[str], T]):
        self._factory = factory
        self._states: Dict[str, T] = {}
        self._locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    def lock(self, thread_id: str) -> asyncio.Lock:
        return self._locks[thread_id]

    def get_or_create(self, thread_id: str) -> T:
        state = self._states.get(thread_id)
        if state is None:
            state = self._factory(thread_id)
            self._states[thread_id] = state
            logger.debug(f"Initialized state for thread {thread_id}")
        return state

    def get(self, thread_id: str) -> Optional[T]:
        return self._states.get(thread_id)

    def discard(self, thread_id: str) -> bool:
        """Drop a thread's state. Returns True if anything was removed."""
        existed = self._states.pop(thread_id, None) is not None
        lock = self._locks.get(thread_id)
        if lock is not None and not lock.locked():
            del self._locks[thread_id]
        return existed

    def thread_ids(self) -> List[str]:
        return list(self._states.keys())

    def items(self) -> Iterator:
        return iter(list(self._states.items()))

    def __contains__(self, thread_id: str) -> bool:
        return thread_id in self._states

    def __len__(self) -> int:
        return len(self._states)
