"""
Language model collaborator for summarization and entity extraction.

The engine only needs ``invoke(messages) -> LLMResponse``. ``OllamaChatModel``
is the stock implementation backed by a local Ollama server.
"""

import json
import logging
from dataclasses import dataclass
from typing import List, Optional, Dict, Any, Protocol

import httpx

from memory_config import OLLAMA_URL, LLM_MODEL, OLLAMA_TIMEOUT

logger = logging.getLogger(__name__)


@dataclass
class LLMMessage:
    role: str  # "system", "user" or "assistant"
    content: str


@dataclass
class LLMResponse:
    content: str


class LanguageModel(Protocol):
    async def invoke(self, messages: List[LLMMessage]) -> LLMResponse:
        ...


class OllamaChatModel:
    """Chat completion against Ollama's /api/chat endpoint."""

    def __init__(self, base_url: str = OLLAMA_URL, model: str = LLM_MODEL,
                 timeout: float = OLLAMA_TIMEOUT, temperature: float = 0.3):
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.timeout = timeout
        self.temperature = temperature

    async def invoke(self, messages: List[LLMMessage]) -> LLMResponse:
        payload = {
            "model": self.model,
            "messages": [{"role": m.role, "content": m.content} for m in messages],
            "stream": False,
            "options": {"temperature": self.temperature},
        }
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            r = await client.post(f"{self.base_url}/api/chat", json=payload)
            r.raise_for_status()
            data = r.json()
        content = (data.get("message") or {}).get("content", "")
        logger.debug(f"LLM response: {len(content)} chars from {self.model}")
        return LLMResponse(content=content)


def extract_json_object(text: str) -> Optional[Dict[str, Any]]:
    """Parse the first balanced top-level ``{...}`` block in ``text``.

    Model output is often wrapped in prose or code fences. Returns None when
    no block is found or the block is not valid JSON.
    """
    if not text:
        return None

    start = text.find("{")
    if start != -1:
        depth = 0
        in_string = False
        escaped = False
        for i in range(start, len(text)):
            ch = text[i]
            if in_string:
                if escaped:
                    escaped = False
                elif ch == "\\":
                    escaped = True
                elif ch == '"':
                    in_string = False
                continue
            if ch == '"':
                in_string = True
            elif ch == "{":
                depth += 1
            elif ch == "}":
                depth -= 1
                if depth == 0:
                    candidate = text[start:i + 1]
                    try:
                        parsed = json.loads(candidate)
                    except json.JSONDecodeError as e:
                        logger.debug(f"Discarding malformed JSON block: {e}")
                        return None
                    return parsed if isinstance(parsed, dict) else None
        # Unbalanced from this brace onwards
        return None
    return None
