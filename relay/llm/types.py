"""
Request and response types shared by the router, cache and queue.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from typing import Any, Optional

from relay.llm.llm_config import (
    Priority,
    TaskType,
    coerce_priority,
    coerce_task_type,
)


@dataclass(frozen=True)
class LLMRequest:
    """
    A generation request. Immutable once submitted.

    ``priority`` and ``task_type`` accept plain strings and are coerced to
    their enums; unknown values raise ValueError.
    """

    prompt: str
    priority: Priority = Priority.MEDIUM
    task_type: TaskType = TaskType.GENERAL
    model: Optional[str] = None
    max_tokens: int = 1024
    temperature: float = 0.7
    user_id: Optional[str] = None
    system_prompt: Optional[str] = None
    timeout_seconds: Optional[float] = None
    metadata: dict[str, Any] = field(default_factory=dict, hash=False, compare=False)
    request_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12], compare=False)

    def __post_init__(self) -> None:
        # frozen: go through object.__setattr__ for normalisation
        object.__setattr__(self, "priority", coerce_priority(self.priority))
        object.__setattr__(self, "task_type", coerce_task_type(self.task_type))
        if not self.prompt or not self.prompt.strip():
            raise ValueError("prompt must be a non-empty string")
        if self.max_tokens <= 0:
            raise ValueError("max_tokens must be positive")
        if self.timeout_seconds is not None and self.timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be positive")


@dataclass
class LLMResponse:
    """Unified response from any provider (or from the semantic cache)."""

    content: str
    provider: str               # Provider id that produced the content
    model: str                  # Actual model used
    tokens_used: int = 0
    response_time_ms: float = 0.0
    cost: float = 0.0           # Estimated USD cost
    confidence: float = 0.0     # Provider reliability at call time
    fallback_used: bool = False
    cache_hit: bool = False
    cache_similarity: Optional[float] = None
    attempts: list[str] = field(default_factory=list)
    raw_response: Any = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "content": self.content,
            "provider": self.provider,
            "model": self.model,
            "tokens_used": self.tokens_used,
            "response_time_ms": round(self.response_time_ms, 1),
            "cost": self.cost,
            "confidence": self.confidence,
            "fallback_used": self.fallback_used,
            "cache_hit": self.cache_hit,
            "cache_similarity": self.cache_similarity,
            "attempts": list(self.attempts),
        }
