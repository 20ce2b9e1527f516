"""
Model Router — score-based provider selection with ordered fallback.

For each request the router:
1. Filters providers to those that are available, not rate-limited and
   able to serve the request's task type.
2. Scores the remainder (relay.llm.scoring) and picks the best one.
   If nothing passes the filter, any available provider is used as a
   last resort.
3. Calls it. Success nudges the provider's reliability up and blends
   its latency into the response-time EWMA; failure decays reliability
   and hands the request to the fallback executor.

The fallback executor walks the static fallback order once, skipping the
provider that just failed and anything unavailable or rate-limited. The
first success is returned with ``fallback_used=True`` and its confidence
discounted by 10%. If every candidate fails the request ends with
AllProvidersFailedError. There is no backoff or second pass.

Every request carries a deadline (``request.timeout_seconds`` or the
router default). Each provider call gets the remaining time, and the
fallback loop stops with RequestTimeoutError once it has passed.

Usage:
    router = ModelRouter(registry, ProviderClient(http_client))

    response = await router.route(LLMRequest(
        prompt="Refactor this function...",
        task_type="coding",
        priority="critical",
    ))
    print(response.content)
    print(f"Used: {response.provider}/{response.model} (${response.cost:.4f})")
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Callable, Iterable, Optional

from relay.exceptions import (
    AllProvidersFailedError,
    ProviderCallError,
    ProviderConfigurationError,
    RateLimitedError,
    RequestTimeoutError,
)
from relay.llm.llm_config import DEFAULT_FALLBACK_ORDER
from relay.llm.metrics import MetricsRecorder
from relay.llm.providers import ProviderClient
from relay.llm.rate_limiter import RateLimiter
from relay.llm.registry import Provider, ProviderRegistry
from relay.llm.scoring import rank
from relay.llm.types import LLMRequest, LLMResponse

logger = logging.getLogger(__name__)

FALLBACK_CONFIDENCE_FACTOR = 0.9

__all__ = ["ModelRouter", "LLMRequest", "LLMResponse"]


class ModelRouter:
    """
    Routes requests to the best-scoring provider with ordered fallback.

    Provider state lives in the injected registry, so several routers (or
    test instances) never share state unless they share a registry.
    """

    def __init__(
        self,
        registry: ProviderRegistry,
        client: ProviderClient,
        *,
        rate_limiter: Optional[RateLimiter] = None,
        metrics: Optional[MetricsRecorder] = None,
        fallback_order: Optional[Iterable[str]] = None,
        default_timeout_seconds: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._registry = registry
        self._client = client
        self._clock = clock
        self._limiter = rate_limiter or RateLimiter(clock=clock)
        self._metrics = metrics or MetricsRecorder()
        self._default_timeout = default_timeout_seconds
        self._fallback_order = self._resolve_fallback_order(
            DEFAULT_FALLBACK_ORDER if fallback_order is None else fallback_order
        )

        for provider in registry:
            if provider.requests_per_minute:
                self._limiter.set_limit(provider.id, provider.requests_per_minute)

        # Usage tracking
        self._call_count: int = 0
        self._total_cost: float = 0.0
        self._total_tokens: int = 0
        self._fallback_count: int = 0

    def _resolve_fallback_order(self, order: Iterable[str]) -> list[str]:
        """Configured order first (unknown ids dropped), then the rest in registry order."""
        resolved: list[str] = []
        for provider_id in order:
            if provider_id not in self._registry:
                logger.warning(
                    "fallback_order_unknown_provider",
                    extra={"provider": provider_id},
                )
                continue
            if provider_id not in resolved:
                resolved.append(provider_id)
        for provider_id in self._registry.ids():
            if provider_id not in resolved:
                resolved.append(provider_id)
        return resolved

    @property
    def registry(self) -> ProviderRegistry:
        return self._registry

    @property
    def rate_limiter(self) -> RateLimiter:
        return self._limiter

    @property
    def metrics(self) -> MetricsRecorder:
        return self._metrics

    @property
    def fallback_order(self) -> list[str]:
        return list(self._fallback_order)

    @property
    def clock(self) -> Callable[[], float]:
        return self._clock

    def deadline_for(self, request: LLMRequest) -> Optional[float]:
        """Absolute deadline on the router clock, or None when unbounded."""
        timeout = request.timeout_seconds or self._default_timeout
        return self._clock() + timeout if timeout else None

    @property
    def call_count(self) -> int:
        return self._call_count

    @property
    def total_cost(self) -> float:
        return self._total_cost

    # --- Selection ---

    def _eligible(self, provider: Provider, excluded: set[str]) -> bool:
        return (
            provider.is_available
            and provider.id not in excluded
            and not self._limiter.is_limited(provider.id)
        )

    def rank_providers(
        self,
        request: LLMRequest,
        excluded: Optional[set[str]] = None,
    ) -> list[tuple[Provider, float]]:
        """Eligible, capability-matching providers with their scores, best first."""
        excluded = excluded or set()
        candidates = [
            p for p in self._registry
            if self._eligible(p, excluded) and p.supports(request.task_type)
        ]
        if request.model:
            serving_model = [p for p in candidates if p.supports_model(request.model)]
            if serving_model:
                candidates = serving_model
        return rank(candidates, request, self._registry.health)

    def select_provider(
        self,
        request: LLMRequest,
        excluded: Optional[set[str]] = None,
    ) -> Provider:
        """
        Pick the provider for a request.

        Raises:
            ProviderConfigurationError: no providers configured.
            AllProvidersFailedError: no provider is available at all.
        """
        if len(self._registry) == 0:
            raise ProviderConfigurationError("No providers configured")

        excluded = excluded or set()
        ranked = self.rank_providers(request, excluded)
        if ranked:
            return ranked[0][0]

        # Last resort: anything available, capability ignored
        for provider_id in self._fallback_order:
            provider = self._registry.get(provider_id)
            if self._eligible(provider, excluded):
                logger.warning(
                    "llm_no_capable_provider",
                    extra={
                        "task_type": request.task_type.value,
                        "provider": provider.id,
                    },
                )
                return provider

        raise AllProvidersFailedError(
            "No available providers",
            details={"task_type": request.task_type.value},
        )

    # --- Main Routing API ---

    async def route(
        self,
        request: LLMRequest,
        *,
        deadline: Optional[float] = None,
    ) -> LLMResponse:
        """
        Resolve a request to a response.

        ``deadline`` is an absolute time on the router clock, for callers
        that already spent part of the budget (the semantic cache). It
        defaults to ``deadline_for(request)``.

        Raises:
            ProviderConfigurationError: no providers configured.
            AllProvidersFailedError: selection and every fallback failed.
            RequestTimeoutError: the request deadline passed first.
        """
        timeout = request.timeout_seconds or self._default_timeout
        if deadline is None:
            deadline = self.deadline_for(request)
        elif self._clock() >= deadline:
            logger.error(
                "llm_request_timed_out",
                extra={"timeout_s": timeout, "attempts": 0},
            )
            raise RequestTimeoutError(
                f"Request deadline of {timeout}s passed before routing",
                timeout_seconds=timeout,
            )
        excluded: set[str] = set()
        errors: dict[str, str] = {}
        attempts: list[str] = []

        primary = self._select_and_acquire(request, excluded)

        try:
            response = await self._execute(primary, request, deadline, attempts)
        except ProviderCallError as primary_error:
            errors[primary.id] = str(primary_error)
            logger.warning(
                "llm_primary_failed",
                extra={
                    "provider": primary.id,
                    "task_type": request.task_type.value,
                    "priority": request.priority.value,
                    "reliability": round(self._registry.get(primary.id).reliability, 3),
                    "error": str(primary_error)[:200],
                },
            )
            return await self._execute_fallback(
                request,
                failed_provider_id=primary.id,
                deadline=deadline,
                timeout=timeout,
                errors=errors,
                attempts=attempts,
                excluded=excluded,
            )

        logger.info(
            "llm_routed",
            extra={
                "provider": response.provider,
                "model": response.model,
                "task_type": request.task_type.value,
                "priority": request.priority.value,
                "tokens": response.tokens_used,
                "cost": f"${response.cost:.4f}",
                "latency_ms": round(response.response_time_ms, 1),
            },
        )
        return response

    def _select_and_acquire(self, request: LLMRequest, excluded: set[str]) -> Provider:
        """Select a provider and count the request against its window."""
        while True:
            provider = self.select_provider(request, excluded)
            try:
                self._limiter.acquire(provider.id)
                return provider
            except RateLimitedError:
                excluded.add(provider.id)

    # --- Fallback Executor ---

    async def _execute_fallback(
        self,
        request: LLMRequest,
        *,
        failed_provider_id: str,
        deadline: Optional[float],
        timeout: Optional[float],
        errors: dict[str, str],
        attempts: list[str],
        excluded: set[str],
    ) -> LLMResponse:
        for provider_id in self._fallback_order:
            if provider_id == failed_provider_id or provider_id in attempts:
                continue

            provider = self._registry.get(provider_id)
            if not self._eligible(provider, excluded):
                continue

            if deadline is not None and self._clock() >= deadline:
                break

            try:
                self._limiter.acquire(provider_id)
            except RateLimitedError:
                excluded.add(provider_id)
                continue

            try:
                response = await self._execute(
                    provider, request, deadline, attempts, fallback=True
                )
            except ProviderCallError as fallback_error:
                errors[provider_id] = str(fallback_error)
                logger.warning(
                    "llm_fallback_also_failed",
                    extra={
                        "provider": provider_id,
                        "error": str(fallback_error)[:100],
                    },
                )
                continue

            self._fallback_count += 1
            logger.info(
                "llm_fallback_used",
                extra={
                    "provider": response.provider,
                    "model": response.model,
                    "failed_provider": failed_provider_id,
                    "tokens": response.tokens_used,
                    "attempts": len(attempts),
                },
            )
            return response

        if deadline is not None and self._clock() >= deadline:
            logger.error(
                "llm_request_timed_out",
                extra={"timeout_s": timeout, "attempts": len(attempts)},
            )
            raise RequestTimeoutError(
                f"Request deadline of {timeout}s passed after {len(attempts)} attempt(s)",
                timeout_seconds=timeout,
                errors=errors,
            )

        logger.error(
            "llm_all_providers_failed",
            extra={
                "task_type": request.task_type.value,
                "attempted": ",".join(attempts),
            },
        )
        raise AllProvidersFailedError(
            f"All providers failed ({len(errors)} attempted)",
            errors=errors,
        )

    # --- Execution ---

    async def _execute(
        self,
        provider: Provider,
        request: LLMRequest,
        deadline: Optional[float],
        attempts: list[str],
        *,
        fallback: bool = False,
    ) -> LLMResponse:
        """One provider call plus the reliability/latency bookkeeping."""
        attempts.append(provider.id)
        reliability_at_call = provider.reliability
        model = provider.resolve_model(request.model)

        remaining: Optional[float] = None
        if deadline is not None:
            remaining = deadline - self._clock()
            if remaining <= 0:
                attempts.pop()
                raise RequestTimeoutError(
                    f"Request deadline passed before calling {provider.id}",
                    timeout_seconds=request.timeout_seconds or self._default_timeout,
                )

        try:
            call = self._client.complete(provider, request, model=model, timeout=remaining)
            if remaining is not None:
                result = await asyncio.wait_for(call, timeout=remaining)
            else:
                result = await call
        except asyncio.TimeoutError as e:
            error: ProviderCallError = ProviderCallError(
                f"{provider.id} exceeded the request deadline",
                provider_id=provider.id,
            )
            await self._record_failure(provider.id, error)
            raise error from e
        except ProviderCallError as e:
            await self._record_failure(provider.id, e)
            raise

        self._registry.record_success(provider.id, result.latency_ms)

        confidence = reliability_at_call
        if fallback:
            confidence *= FALLBACK_CONFIDENCE_FACTOR

        response = LLMResponse(
            content=result.content,
            provider=provider.id,
            model=model,
            tokens_used=result.tokens_used,
            response_time_ms=result.latency_ms,
            cost=result.tokens_used * provider.cost_per_token,
            confidence=confidence,
            fallback_used=fallback,
            attempts=list(attempts),
            raw_response=result.raw,
        )
        self._track_usage(response)
        await self._metrics.record_provider_outcome(
            provider.id,
            success=True,
            latency_ms=result.latency_ms,
            tokens_used=result.tokens_used,
            cost=response.cost,
            fallback=fallback,
        )
        return response

    async def _record_failure(self, provider_id: str, error: ProviderCallError) -> None:
        self._registry.record_failure(provider_id)
        await self._metrics.record_provider_outcome(
            provider_id,
            success=False,
            error=str(error),
        )

    # --- Usage Tracking ---

    def _track_usage(self, response: LLMResponse) -> None:
        """Track cumulative usage stats."""
        self._call_count += 1
        self._total_cost += response.cost
        self._total_tokens += response.tokens_used

    def get_usage_stats(self) -> dict[str, Any]:
        """Return cumulative usage statistics."""
        return {
            "total_calls": self._call_count,
            "total_cost_usd": round(self._total_cost, 6),
            "total_tokens": self._total_tokens,
            "fallbacks": self._fallback_count,
        }

    def reset_usage(self) -> None:
        """Reset usage counters (e.g., start of a billing period)."""
        self._call_count = 0
        self._total_cost = 0.0
        self._total_tokens = 0
        self._fallback_count = 0
