"""
Provider Registry — static provider metadata plus the mutable trust state.

Holds every configured provider keyed by id (configuration order is kept
and used for tie-breaking), along with one HealthRecord per provider.

Two writers touch this state: the router (after every call outcome) and
the HealthMonitor (on every tick). Each update of a single provider
record happens under the registry lock with no suspension point between
read and write, so updates are atomic per provider. A routing decision
may still see a value that is one health tick old; that drift is
accepted.

Usage:
    registry = ProviderRegistry.from_profiles(DEFAULT_PROVIDERS.values())
    registry.record_success("claude", response_time_ms=840.0)
    registry.record_failure("groq")
    registry.get("groq").reliability   # → 0.855
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Iterable, Iterator, Optional

from relay.exceptions import ProviderConfigurationError
from relay.llm.llm_config import ApiFormat, ProviderProfile, TaskType

logger = logging.getLogger(__name__)

MIN_RELIABILITY = 0.1
MAX_RELIABILITY = 1.0
AVAILABILITY_THRESHOLD = 0.3
# Reliability a successful probe restores to a provider at or below the threshold
RECOVERY_RELIABILITY = 0.35
SUCCESS_FACTOR = 1.01
FAILURE_FACTOR = 0.95
DEFAULT_EWMA_ALPHA = 0.3

# Probe outcomes kept per provider for HealthRecord.success_rate
HEALTH_WINDOW = 10


def clamp_reliability(value: float) -> float:
    return max(MIN_RELIABILITY, min(MAX_RELIABILITY, value))


# ---------------------------------------------------------------------------
# Health Types
# ---------------------------------------------------------------------------

class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    DOWN = "down"


@dataclass(frozen=True)
class HealthRecord:
    """Result of the latest health probe for one provider."""

    provider_id: str
    status: HealthStatus = HealthStatus.HEALTHY
    response_time_ms: Optional[float] = None
    success_rate: float = 1.0
    last_check: Optional[datetime] = None
    consecutive_failures: int = 0
    last_error: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "provider_id": self.provider_id,
            "status": self.status.value,
            "response_time_ms": self.response_time_ms,
            "success_rate": round(self.success_rate, 3),
            "last_check": self.last_check.isoformat() if self.last_check else None,
            "consecutive_failures": self.consecutive_failures,
            "last_error": self.last_error,
        }


# ---------------------------------------------------------------------------
# Provider (runtime state)
# ---------------------------------------------------------------------------

@dataclass
class Provider:
    """
    A provider as the router sees it: static profile fields plus mutable
    ``reliability``, ``response_time`` (EWMA, ms) and ``is_available``.
    """

    id: str
    name: str
    endpoint: str
    models: tuple[str, ...]
    cost_per_token: float
    max_tokens: int
    capabilities: frozenset[TaskType]
    response_time: float
    reliability: float
    is_available: bool = True
    api_format: ApiFormat = ApiFormat.OPENAI
    api_key_env: Optional[str] = None
    health_endpoint: Optional[str] = None
    requests_per_minute: Optional[int] = None

    @classmethod
    def from_profile(cls, profile: ProviderProfile) -> "Provider":
        reliability = clamp_reliability(profile.reliability)
        return cls(
            id=profile.id,
            name=profile.name,
            endpoint=profile.endpoint,
            models=tuple(profile.models),
            cost_per_token=profile.cost_per_token,
            max_tokens=profile.max_tokens,
            capabilities=frozenset(profile.capabilities),
            response_time=float(profile.response_time_ms),
            reliability=reliability,
            is_available=reliability > AVAILABILITY_THRESHOLD,
            api_format=profile.api_format,
            api_key_env=profile.api_key_env,
            health_endpoint=profile.health_endpoint,
            requests_per_minute=profile.requests_per_minute,
        )

    @property
    def default_model(self) -> str:
        return self.models[0] if self.models else ""

    def supports(self, task_type: TaskType) -> bool:
        return task_type in self.capabilities

    def supports_model(self, model: Optional[str]) -> bool:
        return model is None or model in self.models

    def resolve_model(self, requested: Optional[str]) -> str:
        """Requested model if this provider serves it, else its default."""
        if requested and requested in self.models:
            return requested
        return self.default_model


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

class ProviderRegistry:
    """
    All providers keyed by id, in configuration order.

    Providers are never removed; a provider that keeps failing is only
    marked unavailable.
    """

    def __init__(
        self,
        providers: Iterable[Provider] = (),
        *,
        ewma_alpha: float = DEFAULT_EWMA_ALPHA,
    ):
        if not 0.0 < ewma_alpha <= 1.0:
            raise ValueError("ewma_alpha must be in (0, 1]")
        self._providers: dict[str, Provider] = {}
        self._health: dict[str, HealthRecord] = {}
        self._probe_history: dict[str, deque[bool]] = {}
        self._alpha = ewma_alpha
        self._lock = threading.Lock()

        for provider in providers:
            self.add(provider)

    @classmethod
    def from_profiles(
        cls,
        profiles: Iterable[ProviderProfile],
        *,
        ewma_alpha: float = DEFAULT_EWMA_ALPHA,
    ) -> "ProviderRegistry":
        return cls(
            (Provider.from_profile(p) for p in profiles),
            ewma_alpha=ewma_alpha,
        )

    def add(self, provider: Provider) -> None:
        if provider.id in self._providers:
            raise ProviderConfigurationError(
                f"Duplicate provider id: {provider.id}",
                provider_id=provider.id,
            )
        self._providers[provider.id] = provider
        self._health[provider.id] = HealthRecord(provider_id=provider.id)
        self._probe_history[provider.id] = deque(maxlen=HEALTH_WINDOW)

    # --- Lookup ---

    def get(self, provider_id: str) -> Provider:
        try:
            return self._providers[provider_id]
        except KeyError:
            raise KeyError(f"Unknown provider: {provider_id}") from None

    def __contains__(self, provider_id: object) -> bool:
        return provider_id in self._providers

    def __iter__(self) -> Iterator[Provider]:
        return iter(list(self._providers.values()))

    def __len__(self) -> int:
        return len(self._providers)

    def ids(self) -> list[str]:
        return list(self._providers)

    def available(self) -> list[Provider]:
        return [p for p in self if p.is_available]

    def health(self, provider_id: str) -> Optional[HealthRecord]:
        return self._health.get(provider_id)

    # --- Call outcomes (router) ---

    def record_success(self, provider_id: str, response_time_ms: float) -> Provider:
        """Nudge reliability up and blend the observed latency into the EWMA."""
        with self._lock:
            provider = self.get(provider_id)
            provider.reliability = clamp_reliability(provider.reliability * SUCCESS_FACTOR)
            if response_time_ms > 0:
                provider.response_time = (
                    self._alpha * response_time_ms
                    + (1 - self._alpha) * provider.response_time
                )
            return provider

    def record_failure(self, provider_id: str) -> Provider:
        """Decay reliability; mark unavailable once it sinks to the threshold."""
        with self._lock:
            provider = self.get(provider_id)
            provider.reliability = clamp_reliability(provider.reliability * FAILURE_FACTOR)
            if provider.reliability <= AVAILABILITY_THRESHOLD and provider.is_available:
                provider.is_available = False
                logger.warning(
                    "provider_marked_unavailable",
                    extra={
                        "provider": provider_id,
                        "reliability": round(provider.reliability, 3),
                    },
                )
            return provider

    # --- Health probes (monitor) ---

    def mark_health(
        self,
        provider_id: str,
        *,
        healthy: bool,
        response_time_ms: Optional[float] = None,
        degraded: bool = False,
        error: Optional[str] = None,
        checked_at: Optional[datetime] = None,
    ) -> HealthRecord:
        """
        Rewrite the provider's HealthRecord from one probe outcome.

        A failed probe marks the provider down and unavailable. A successful
        probe makes it available again, lifting reliability to
        RECOVERY_RELIABILITY when call failures had sunk it to the threshold.
        """
        checked_at = checked_at or datetime.now(timezone.utc)
        with self._lock:
            provider = self.get(provider_id)
            previous = self._health[provider_id]
            history = self._probe_history[provider_id]
            history.append(healthy)

            if healthy:
                status = HealthStatus.DEGRADED if degraded else HealthStatus.HEALTHY
                record = HealthRecord(
                    provider_id=provider_id,
                    status=status,
                    response_time_ms=response_time_ms,
                    success_rate=sum(history) / len(history),
                    last_check=checked_at,
                    consecutive_failures=0,
                )
                if provider.reliability <= AVAILABILITY_THRESHOLD:
                    provider.reliability = RECOVERY_RELIABILITY
                    logger.info(
                        "provider_recovered",
                        extra={"provider": provider_id, "reliability": RECOVERY_RELIABILITY},
                    )
                provider.is_available = True
            else:
                record = HealthRecord(
                    provider_id=provider_id,
                    status=HealthStatus.DOWN,
                    response_time_ms=response_time_ms,
                    success_rate=0.0,
                    last_check=checked_at,
                    consecutive_failures=previous.consecutive_failures + 1,
                    last_error=error,
                )
                provider.is_available = False

            self._health[provider_id] = record
            return record

    # --- Administrative ---

    def update_status(
        self,
        provider_id: str,
        is_available: bool,
        response_time: Optional[float] = None,
    ) -> None:
        """Manually override availability (and optionally the latency seed)."""
        with self._lock:
            provider = self.get(provider_id)
            provider.is_available = is_available
            if response_time:
                provider.response_time = float(response_time)

    def get_provider_stats(self) -> list[dict[str, Any]]:
        """Snapshot of every provider for dashboards and debugging."""
        stats = []
        for p in self:
            health = self._health.get(p.id)
            stats.append({
                "id": p.id,
                "name": p.name,
                "is_available": p.is_available,
                "reliability": round(p.reliability, 4),
                "response_time": round(p.response_time, 1),
                "cost_per_token": p.cost_per_token,
                "status": health.status.value if health else None,
            })
        return stats
