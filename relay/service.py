"""
RelayService — wires the relay together from a RelayConfig.

Builds the provider registry, rate limiter, health monitor, router,
embedding engine, semantic cache, metrics recorder and request queue,
and owns their lifecycle. The HTTP client, cache store and clocks are
injected; nothing is created at import time.

Usage:
    async with httpx.AsyncClient() as http:
        async with RelayService.from_config(load_config(), http_client=http) as relay:
            response = await relay.route(LLMRequest(prompt="What is RAG?"))
"""

from __future__ import annotations

import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Mapping, Optional

import httpx

from relay.config.loader import resolve_api_keys
from relay.config.schema import RelayConfig
from relay.integrations.supabase_client import RelayDB
from relay.llm.cache import SemanticCache, cached_route
from relay.llm.health import HealthMonitor
from relay.llm.metrics import MetricsRecorder
from relay.llm.providers import ProviderClient
from relay.llm.rate_limiter import RateLimiter
from relay.llm.registry import ProviderRegistry
from relay.llm.request_queue import RequestQueue
from relay.llm.router import ModelRouter
from relay.llm.types import LLMRequest, LLMResponse
from relay.observability.logging_config import clear_request_id, set_request_id
from relay.rag.embeddings import EmbeddingEngine

logger = logging.getLogger(__name__)


class RelayService:
    """Owns one relay pipeline: queue → cache → router → providers."""

    def __init__(
        self,
        router: ModelRouter,
        *,
        cache: Optional[SemanticCache] = None,
        monitor: Optional[HealthMonitor] = None,
        queue_maxsize: int = 100,
    ):
        self.router = router
        self.cache = cache
        self.monitor = monitor
        self.queue = RequestQueue(self._handle, maxsize=queue_maxsize)

    @classmethod
    def from_config(
        cls,
        config: RelayConfig,
        *,
        http_client: httpx.AsyncClient,
        store: Any = None,
        embedder: Any = None,
        api_keys: Optional[Mapping[str, str]] = None,
        clock: Callable[[], float] = time.monotonic,
        now: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> "RelayService":
        """
        Build a service from configuration.

        ``store`` defaults to RelayDB (Supabase, from SUPABASE_* env vars)
        and ``embedder`` to an EmbeddingEngine on ``http_client``; both
        are only created when the cache is enabled.
        """
        if api_keys is None:
            api_keys = resolve_api_keys(config)

        registry = ProviderRegistry.from_profiles(
            config.provider_profiles(),
            ewma_alpha=config.router.ewma_alpha,
        )
        client = ProviderClient(
            http_client,
            api_keys=api_keys,
            call_timeout=config.router.call_timeout_seconds,
            probe_timeout=config.health.probe_timeout_seconds,
        )
        limiter = RateLimiter(
            config.rate_limit.max_requests,
            config.rate_limit.window_seconds,
            clock=clock,
        )

        if config.cache.enabled:
            if store is None:
                store = RelayDB()
            if embedder is None:
                embedder = EmbeddingEngine(
                    http_client,
                    provider=config.embedding.provider,
                    model=config.embedding.model,
                    api_key_env=config.embedding.api_key_env,
                    dimensions=config.embedding.dimensions,
                    timeout=config.embedding.timeout_seconds,
                )

        metrics = MetricsRecorder(sink=store, now=now)
        router = ModelRouter(
            registry,
            client,
            rate_limiter=limiter,
            metrics=metrics,
            fallback_order=config.router.fallback_order,
            default_timeout_seconds=config.router.default_timeout_seconds,
            clock=clock,
        )

        cache = None
        if config.cache.enabled:
            cache = SemanticCache(
                store,
                embedder,
                metrics,
                similarity_threshold=config.cache.similarity_threshold,
                max_cache_age=timedelta(days=config.cache.max_cache_age_days),
                match_count=config.cache.match_count,
                user_id=config.cache.default_user_id,
                embed_timeout=config.embedding.timeout_seconds,
                store_timeout=config.cache.store_timeout_seconds,
                now=now,
                clock=clock,
            )

        monitor = None
        if config.health.enabled:
            monitor = HealthMonitor(
                registry,
                client,
                interval_seconds=config.health.interval_seconds,
                probe_timeout=config.health.probe_timeout_seconds,
                degraded_latency_ms=config.health.degraded_latency_ms,
                now=now,
            )

        return cls(
            router,
            cache=cache,
            monitor=monitor,
            queue_maxsize=config.queue.maxsize,
        )

    # --- Lifecycle ---

    async def start(self) -> None:
        self.queue.start()
        if self.monitor is not None:
            self.monitor.start()
        logger.info(
            "relay_started",
            extra={
                "providers": len(self.router.registry),
                "cache_enabled": self.cache is not None,
            },
        )

    async def stop(self, drain: bool = True) -> None:
        await self.queue.stop(drain=drain)
        if self.monitor is not None:
            await self.monitor.stop()
        logger.info("relay_stopped", extra=self.router.get_usage_stats())

    async def __aenter__(self) -> "RelayService":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.stop()

    # --- Requests ---

    async def route(self, request: LLMRequest) -> LLMResponse:
        """Submit a request through the queue and wait for the response."""
        return await self.queue.submit(request)

    async def _handle(self, request: LLMRequest) -> LLMResponse:
        set_request_id(request.request_id)
        try:
            if self.cache is None:
                return await self.router.route(request)
            return await cached_route(self.cache, self.router, request)
        finally:
            clear_request_id()

    def get_stats(self) -> dict[str, Any]:
        return {
            "usage": self.router.get_usage_stats(),
            "metrics": self.router.metrics.get_stats(),
            "providers": self.router.registry.get_provider_stats(),
            "rate_limits": self.router.rate_limiter.get_stats(),
            "queue": self.queue.get_stats(),
        }
