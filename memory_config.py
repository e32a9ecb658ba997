"""
Configuration models for the memory engine.

Config objects are pydantic models so that out-of-range thresholds are
rejected at construction time. Environment overrides follow the
``os.environ.get`` pattern used for the Ollama settings.
"""

import os
import logging
from typing import Any, Dict, Optional, Union

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

OLLAMA_URL = os.environ.get("OLLAMA_URL", "http://localhost:11434")
EMBED_MODEL = os.environ.get("EMBED_MODEL", "all-minilm")
LLM_MODEL = os.environ.get("LLM_MODEL", "llama3.1")
OLLAMA_TIMEOUT = float(os.environ.get("OLLAMA_TIMEOUT", "60"))


class ConsolidationConfig(BaseModel):
    similarity_threshold: float = Field(default=0.85, ge=0.0, le=1.0)
    min_memories_for_consolidation: int = Field(default=100, ge=0)
    max_memories_after_consolidation: int = Field(default=50, ge=1)
    maturity_threshold_hours: float = Field(default=24.0, ge=0.0)
    dormancy_threshold_hours: float = Field(default=168.0, ge=0.0)
    archive_threshold_hours: float = Field(default=720.0, ge=0.0)
    importance_decay_rate: float = Field(default=0.1, ge=0.0)
    min_importance_threshold: float = Field(default=0.1, ge=0.0, le=1.0)
    enable_background_consolidation: bool = False
    consolidation_interval_minutes: float = Field(default=60.0, gt=0.0)

    @classmethod
    def from_env(cls) -> "ConsolidationConfig":
        """Defaults overridden by MEMORY_CONSOLIDATION_* environment variables."""
        overrides: Dict[str, Any] = {}
        for name in cls.model_fields:
            raw = os.environ.get(f"MEMORY_CONSOLIDATION_{name.upper()}")
            if raw is not None:
                overrides[name] = raw
        if overrides:
            logger.info(f"Consolidation config overrides from environment: {sorted(overrides)}")
        return cls(**overrides)


class TimeWeightedConfig(BaseModel):
    # Kept as a plain string: an unknown selector falls back to exponential
    # decay with a warning instead of failing validation.
    decay_function: str = "exponential"
    decay_lambda: float = Field(default=0.1, ge=0.0)
    max_hours: float = Field(default=168.0, gt=0.0)
    step_threshold_hours: float = Field(default=24.0, ge=0.0)
    step_penalty: float = Field(default=0.5, ge=0.0, le=1.0)
    semantic_weight: float = Field(default=0.6, ge=0.0)
    temporal_weight: float = Field(default=0.4, ge=0.0)
    min_score: float = Field(default=0.3, ge=0.0, le=1.0)
    normalize_scores: bool = True


class CleanupPolicy(BaseModel):
    max_age_days: Optional[float] = Field(default=None, ge=0.0)
    min_importance: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    preserve_keywords: list = Field(default_factory=list)
    max_count: Optional[int] = Field(default=None, ge=0)


class MemoryServiceConfig(BaseModel):
    enable_semantic_memory: bool = True
    memory_retrieval_threshold: float = Field(default=0.7, ge=0.0, le=1.0)
    memory_batch_size: int = Field(default=5, ge=1)
    min_message_chars: int = Field(default=10, ge=0)

    @classmethod
    def from_env(cls) -> "MemoryServiceConfig":
        return cls(
            enable_semantic_memory=os.environ.get("ENABLE_SEMANTIC_MEMORY", "true").lower() != "false",
            memory_retrieval_threshold=float(os.environ.get("MEMORY_RETRIEVAL_THRESHOLD", "0.7")),
            memory_batch_size=int(os.environ.get("MEMORY_BATCH_SIZE", "5")),
        )


def merge_config(base: BaseModel, override: Optional[Union[BaseModel, Dict[str, Any]]]):
    """Apply a per-call override (model or dict of field names) over ``base``."""
    if override is None:
        return base
    if isinstance(override, BaseModel):
        return override
    merged = base.model_dump()
    merged.update(override)
    return type(base)(**merged)
