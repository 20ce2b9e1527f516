"""
LLM Configuration — Provider definitions and the static fallback order.

Defines the built-in providers the relay knows about, which task types
each one can serve, and the order in which providers are tried when the
selected one fails. Deployments override these via the YAML config
(see relay.config.schema).

Usage:
    from relay.llm.llm_config import DEFAULT_PROVIDERS, TaskType, Priority

    profile = DEFAULT_PROVIDERS["deepseek"]
    TaskType.CODING in profile.capabilities   # → True
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Task Types & Priorities
# ---------------------------------------------------------------------------

class TaskType(str, Enum):
    """Coarse categories used for provider capability and cache scope."""

    GENERAL = "general"
    CODING = "coding"
    ANALYSIS = "analysis"
    CREATIVE = "creative"
    TECHNICAL = "technical"


class Priority(str, Enum):
    """Request urgency. Drives which term dominates the provider score."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ApiFormat(str, Enum):
    """Wire format spoken by a provider's chat-completion endpoint."""

    OPENAI = "openai"        # {model, messages, ...} → choices[0].message
    ANTHROPIC = "anthropic"  # Messages API → content[0].text
    GENERIC = "generic"      # {model, prompt, ...} → {content, tokensUsed}


ALL_TASK_TYPES: frozenset[TaskType] = frozenset(TaskType)


# ---------------------------------------------------------------------------
# Provider Profile
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ProviderProfile:
    """Static description of a provider, as read from configuration."""

    id: str
    name: str
    endpoint: str
    models: tuple[str, ...]
    cost_per_token: float           # USD per token (prompt + completion)
    max_tokens: int = 4096
    response_time_ms: float = 1000.0  # Seed for the response-time EWMA
    reliability: float = 0.9          # Seed reliability in [0.1, 1.0]
    capabilities: frozenset[TaskType] = field(default_factory=lambda: ALL_TASK_TYPES)
    api_format: ApiFormat = ApiFormat.OPENAI
    api_key_env: Optional[str] = None
    health_endpoint: Optional[str] = None
    requests_per_minute: Optional[int] = None  # None → limiter default

    @property
    def default_model(self) -> str:
        return self.models[0] if self.models else ""

    @property
    def display_name(self) -> str:
        return f"{self.id}/{self.default_model}"


# ---------------------------------------------------------------------------
# Default Provider Profiles
# ---------------------------------------------------------------------------

# --- OpenAI ---
OPENAI_GPT4 = ProviderProfile(
    id="openai-gpt4",
    name="OpenAI GPT-4",
    endpoint="https://api.openai.com/v1/chat/completions",
    models=("gpt-4", "gpt-4-turbo", "gpt-4o"),
    cost_per_token=0.00003,
    max_tokens=8192,
    response_time_ms=2000,
    reliability=0.98,
    capabilities=ALL_TASK_TYPES,
    api_format=ApiFormat.OPENAI,
    api_key_env="OPENAI_API_KEY",
    health_endpoint="https://api.openai.com/v1/models",
)

OPENAI_GPT35 = ProviderProfile(
    id="openai-gpt35",
    name="OpenAI GPT-3.5",
    endpoint="https://api.openai.com/v1/chat/completions",
    models=("gpt-3.5-turbo", "gpt-3.5-turbo-16k"),
    cost_per_token=0.000002,
    max_tokens=4096,
    response_time_ms=1000,
    reliability=0.95,
    capabilities=frozenset({TaskType.GENERAL, TaskType.CREATIVE, TaskType.TECHNICAL}),
    api_format=ApiFormat.OPENAI,
    api_key_env="OPENAI_API_KEY",
    health_endpoint="https://api.openai.com/v1/models",
)

# --- Anthropic ---
CLAUDE = ProviderProfile(
    id="claude",
    name="Claude",
    endpoint="https://api.anthropic.com/v1/messages",
    models=("claude-3-opus", "claude-3-sonnet", "claude-3-haiku"),
    cost_per_token=0.000015,
    max_tokens=4096,
    response_time_ms=1500,
    reliability=0.96,
    capabilities=frozenset({
        TaskType.GENERAL, TaskType.ANALYSIS, TaskType.CREATIVE,
        TaskType.CODING, TaskType.TECHNICAL,
    }),
    api_format=ApiFormat.ANTHROPIC,
    api_key_env="ANTHROPIC_API_KEY",
)

# --- DeepSeek ---
DEEPSEEK = ProviderProfile(
    id="deepseek",
    name="DeepSeek",
    endpoint="https://api.deepseek.com/v1/chat/completions",
    models=("deepseek-chat", "deepseek-coder"),
    cost_per_token=0.000001,
    max_tokens=4096,
    response_time_ms=3000,
    reliability=0.92,
    capabilities=frozenset({TaskType.CODING, TaskType.TECHNICAL, TaskType.GENERAL}),
    api_format=ApiFormat.OPENAI,
    api_key_env="DEEPSEEK_API_KEY",
)

# --- Groq (fast) ---
GROQ = ProviderProfile(
    id="groq",
    name="Groq",
    endpoint="https://api.groq.com/openai/v1/chat/completions",
    models=("mixtral-8x7b-32768", "llama2-70b-4096"),
    cost_per_token=0.0000005,
    max_tokens=4096,
    response_time_ms=500,
    reliability=0.90,
    capabilities=frozenset({TaskType.GENERAL, TaskType.CREATIVE}),
    api_format=ApiFormat.OPENAI,
    api_key_env="GROQ_API_KEY",
)


DEFAULT_PROVIDERS: dict[str, ProviderProfile] = {
    p.id: p for p in (OPENAI_GPT4, OPENAI_GPT35, CLAUDE, DEEPSEEK, GROQ)
}

# Primary-capability tier first, cheapest last.
DEFAULT_FALLBACK_ORDER: tuple[str, ...] = (
    "openai-gpt4",
    "claude",
    "openai-gpt35",
    "deepseek",
    "groq",
)


def coerce_task_type(value: str | TaskType) -> TaskType:
    """Turn a string into a TaskType. Raises ValueError for unknown values."""
    if isinstance(value, TaskType):
        return value
    try:
        return TaskType(str(value).lower().strip())
    except ValueError:
        raise ValueError(
            f"Unknown task type {value!r}. "
            f"Expected one of: {', '.join(t.value for t in TaskType)}"
        ) from None


def coerce_priority(value: str | Priority) -> Priority:
    """Turn a string into a Priority. Raises ValueError for unknown values."""
    if isinstance(value, Priority):
        return value
    try:
        return Priority(str(value).lower().strip())
    except ValueError:
        raise ValueError(
            f"Unknown priority {value!r}. "
            f"Expected one of: {', '.join(p.value for p in Priority)}"
        ) from None
