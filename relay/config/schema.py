"""
Pydantic configuration schema for LLM Relay.

A deployment is described by a relay.yaml file that conforms to these
models. Everything has a default, so an empty file (or no file at all)
yields the five built-in providers with the standard fallback order.
"""

from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from relay.llm.llm_config import (
    DEFAULT_FALLBACK_ORDER,
    DEFAULT_PROVIDERS,
    ApiFormat,
    ProviderProfile,
    TaskType,
)
from relay.rag.embeddings import default_dimensions


# ---------------------------------------------------------------------------
# Providers
# ---------------------------------------------------------------------------

class ProviderSettings(BaseModel):
    """One provider entry. Mirrors relay.llm.llm_config.ProviderProfile."""
    id: str = Field(..., min_length=1)
    name: str
    endpoint: str
    models: list[str] = Field(..., min_length=1)
    cost_per_token: float = Field(..., ge=0.0)
    max_tokens: int = Field(default=4096, gt=0)
    response_time_ms: float = Field(default=1000.0, ge=0.0)
    reliability: float = Field(default=0.9, ge=0.1, le=1.0)
    capabilities: list[TaskType] = Field(default_factory=lambda: list(TaskType))
    api_format: ApiFormat = ApiFormat.OPENAI
    api_key_env: Optional[str] = None
    health_endpoint: Optional[str] = None
    requests_per_minute: Optional[int] = Field(default=None, gt=0)

    @field_validator("endpoint", "health_endpoint")
    @classmethod
    def validate_url(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and not v.startswith(("http://", "https://")):
            raise ValueError(f"URL must start with http:// or https:// (got {v!r})")
        return v

    @classmethod
    def from_profile(cls, profile: ProviderProfile) -> "ProviderSettings":
        return cls(
            id=profile.id,
            name=profile.name,
            endpoint=profile.endpoint,
            models=list(profile.models),
            cost_per_token=profile.cost_per_token,
            max_tokens=profile.max_tokens,
            response_time_ms=profile.response_time_ms,
            reliability=profile.reliability,
            capabilities=sorted(profile.capabilities, key=list(TaskType).index),
            api_format=profile.api_format,
            api_key_env=profile.api_key_env,
            health_endpoint=profile.health_endpoint,
            requests_per_minute=profile.requests_per_minute,
        )

    def to_profile(self) -> ProviderProfile:
        return ProviderProfile(
            id=self.id,
            name=self.name,
            endpoint=self.endpoint,
            models=tuple(self.models),
            cost_per_token=self.cost_per_token,
            max_tokens=self.max_tokens,
            response_time_ms=self.response_time_ms,
            reliability=self.reliability,
            capabilities=frozenset(self.capabilities),
            api_format=self.api_format,
            api_key_env=self.api_key_env,
            health_endpoint=self.health_endpoint,
            requests_per_minute=self.requests_per_minute,
        )


def _default_providers() -> list[ProviderSettings]:
    return [ProviderSettings.from_profile(p) for p in DEFAULT_PROVIDERS.values()]


# ---------------------------------------------------------------------------
# Sub-models
# ---------------------------------------------------------------------------

class RateLimitSettings(BaseModel):
    """Fixed-window limit applied per provider unless overridden."""
    max_requests: int = Field(default=100, gt=0)
    window_seconds: float = Field(default=60.0, gt=0)


class HealthSettings(BaseModel):
    enabled: bool = True
    interval_seconds: float = Field(default=30.0, gt=0)
    probe_timeout_seconds: float = Field(default=5.0, gt=0)
    degraded_latency_ms: float = Field(default=5000.0, gt=0)


class RouterSettings(BaseModel):
    fallback_order: list[str] = Field(
        default_factory=lambda: list(DEFAULT_FALLBACK_ORDER)
    )
    default_timeout_seconds: Optional[float] = Field(default=60.0, gt=0)
    call_timeout_seconds: float = Field(default=60.0, gt=0)
    ewma_alpha: float = Field(default=0.3, gt=0.0, le=1.0)


class CacheSettings(BaseModel):
    """Semantic cache behaviour."""
    enabled: bool = True
    similarity_threshold: float = Field(default=0.85, gt=0.0, le=1.0)
    max_cache_age_days: float = Field(default=7.0, gt=0)
    match_count: int = Field(default=5, gt=0)
    default_user_id: str = "anonymous"
    store_timeout_seconds: float = Field(default=5.0, gt=0)
    # Width of the embedding vector column in the cache migration
    vector_dimensions: int = Field(default=1536, gt=0)


class EmbeddingSettings(BaseModel):
    provider: str = "openai"
    model: Optional[str] = None
    api_key_env: Optional[str] = None
    dimensions: Optional[int] = Field(default=None, gt=0)
    timeout_seconds: float = Field(default=10.0, gt=0)

    @field_validator("provider")
    @classmethod
    def validate_provider(cls, v: str) -> str:
        if v not in ("openai", "voyage"):
            raise ValueError(f"Unsupported embedding provider: {v}")
        return v

    def resolved_dimensions(self) -> int:
        return self.dimensions or default_dimensions(self.provider)


class QueueSettings(BaseModel):
    maxsize: int = Field(default=100, gt=0)


# ---------------------------------------------------------------------------
# Root Config
# ---------------------------------------------------------------------------

class RelayConfig(BaseModel):
    """Root configuration model — maps to relay.yaml."""
    providers: list[ProviderSettings] = Field(default_factory=_default_providers)
    rate_limit: RateLimitSettings = Field(default_factory=RateLimitSettings)
    health: HealthSettings = Field(default_factory=HealthSettings)
    router: RouterSettings = Field(default_factory=RouterSettings)
    cache: CacheSettings = Field(default_factory=CacheSettings)
    embedding: EmbeddingSettings = Field(default_factory=EmbeddingSettings)
    queue: QueueSettings = Field(default_factory=QueueSettings)

    @field_validator("providers")
    @classmethod
    def validate_unique_ids(cls, v: list[ProviderSettings]) -> list[ProviderSettings]:
        if not v:
            raise ValueError("At least one provider must be configured")
        seen: set[str] = set()
        for provider in v:
            if provider.id in seen:
                raise ValueError(f"Duplicate provider id: {provider.id}")
            seen.add(provider.id)
        return v

    @model_validator(mode="after")
    def validate_fallback_order(self) -> "RelayConfig":
        known = {p.id for p in self.providers}
        unknown = [pid for pid in self.router.fallback_order if pid not in known]
        if unknown:
            # Tolerated: the default order names built-ins a file may drop
            self.router.fallback_order = [
                pid for pid in self.router.fallback_order if pid in known
            ]
        return self

    @model_validator(mode="after")
    def validate_embedding_dimensions(self) -> "RelayConfig":
        if not self.cache.enabled:
            return self
        dims = self.embedding.resolved_dimensions()
        if dims != self.cache.vector_dimensions:
            raise ValueError(
                f"Embedding provider '{self.embedding.provider}' yields {dims}-dim vectors "
                f"but the cache store column is vector({self.cache.vector_dimensions}); "
                "set embedding.dimensions or migrate the column and cache.vector_dimensions"
            )
        return self

    def provider_profiles(self) -> list[ProviderProfile]:
        return [p.to_profile() for p in self.providers]
