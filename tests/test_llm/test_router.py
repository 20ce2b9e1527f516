"""
Tests for the ModelRouter.

Covers:
1. Selection — scoring, capability filter, model filter, last resort
2. Reliability and latency bookkeeping on success/failure
3. Fallback executor — ordering, single pass, exhaustion
4. Rate limiting during selection and fallback
5. Request deadlines
6. Usage tracking and metrics

All tests use a mocked ProviderClient — no HTTP calls.
"""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from relay.exceptions import (
    AllProvidersFailedError,
    ProviderCallError,
    ProviderConfigurationError,
    RequestTimeoutError,
)
from relay.llm.llm_config import ALL_TASK_TYPES, TaskType
from relay.llm.metrics import MetricsRecorder
from relay.llm.providers import CompletionResult
from relay.llm.rate_limiter import RateLimiter
from relay.llm.registry import Provider, ProviderRegistry
from relay.llm.router import FALLBACK_CONFIDENCE_FACTOR, ModelRouter
from relay.llm.types import LLMRequest


# ===========================================================================
# Fixtures
# ===========================================================================

def make_provider(
    provider_id: str,
    *,
    reliability: float = 0.9,
    response_time: float = 1000.0,
    cost: float = 0.00001,
    capabilities=ALL_TASK_TYPES,
    **kwargs,
) -> Provider:
    return Provider(
        id=provider_id,
        name=provider_id.upper(),
        endpoint=f"https://{provider_id}.example.test/v1/chat/completions",
        models=(f"{provider_id}-model",),
        cost_per_token=cost,
        max_tokens=4096,
        capabilities=frozenset(capabilities),
        response_time=response_time,
        reliability=reliability,
        **kwargs,
    )


def ok(content: str = "hello", tokens: int = 100, latency_ms: float = 250.0) -> CompletionResult:
    return CompletionResult(content=content, tokens_used=tokens, latency_ms=latency_ms)


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def registry():
    """A (fast, reliable) beats B (slow) on critical requests."""
    return ProviderRegistry([
        make_provider("a", reliability=0.98, response_time=200.0),
        make_provider("b", reliability=0.9, response_time=2000.0),
    ])


@pytest.fixture
def client():
    client = MagicMock()
    client.complete = AsyncMock(return_value=ok())
    return client


@pytest.fixture
def router(registry, client):
    return ModelRouter(registry, client, fallback_order=["a", "b"])


def critical_coding(**kwargs) -> LLMRequest:
    return LLMRequest(prompt="Fix this bug", priority="critical", task_type="coding", **kwargs)


def called_providers(client) -> list[str]:
    return [call.args[0].id for call in client.complete.call_args_list]


# ===========================================================================
# Selection
# ===========================================================================

class TestSelection:

    def test_critical_coding_prefers_fast_reliable_provider(self, router):
        assert router.select_provider(critical_coding()).id == "a"

    def test_capability_filter(self, client):
        registry = ProviderRegistry([
            make_provider("writer", reliability=1.0, response_time=100.0,
                          capabilities={TaskType.CREATIVE}),
            make_provider("coder", reliability=0.5, response_time=3000.0,
                          capabilities={TaskType.CODING}),
        ])
        router = ModelRouter(registry, client, fallback_order=[])
        assert router.select_provider(critical_coding()).id == "coder"

    def test_requested_model_narrows_candidates(self, router):
        request = critical_coding(model="b-model")
        assert router.select_provider(request).id == "b"

    def test_unknown_model_does_not_exclude_everyone(self, router):
        request = critical_coding(model="nobody-serves-this")
        assert router.select_provider(request).id == "a"

    def test_unavailable_provider_skipped(self, router, registry):
        registry.update_status("a", is_available=False)
        assert router.select_provider(critical_coding()).id == "b"

    def test_last_resort_ignores_capability(self, client):
        registry = ProviderRegistry([
            make_provider("x", capabilities={TaskType.CREATIVE}),
            make_provider("y", capabilities={TaskType.ANALYSIS}),
        ])
        router = ModelRouter(registry, client, fallback_order=["y", "x"])
        assert router.select_provider(critical_coding()).id == "y"

    def test_empty_registry_raises_configuration_error(self, client):
        router = ModelRouter(ProviderRegistry(), client)
        with pytest.raises(ProviderConfigurationError):
            router.select_provider(critical_coding())

    def test_no_available_providers_raises(self, router, registry):
        registry.update_status("a", is_available=False)
        registry.update_status("b", is_available=False)
        with pytest.raises(AllProvidersFailedError, match="No available providers"):
            router.select_provider(critical_coding())

    def test_rank_providers_best_first(self, router):
        ranked = router.rank_providers(critical_coding())
        assert [p.id for p, _ in ranked] == ["a", "b"]
        assert ranked[0][1] > ranked[1][1]


class TestFallbackOrder:

    def test_unknown_ids_dropped_and_missing_appended(self, registry, client):
        router = ModelRouter(registry, client, fallback_order=["ghost", "b"])
        assert router.fallback_order == ["b", "a"]

    def test_default_order_falls_back_to_registry_order(self, registry, client):
        router = ModelRouter(registry, client)
        assert router.fallback_order == ["a", "b"]


# ===========================================================================
# Routing
# ===========================================================================

class TestRoute:

    @pytest.mark.asyncio
    async def test_success_returns_response(self, router, client):
        client.complete.return_value = ok("done", tokens=200, latency_ms=300.0)

        response = await router.route(critical_coding())

        assert response.content == "done"
        assert response.provider == "a"
        assert response.model == "a-model"
        assert response.tokens_used == 200
        assert response.fallback_used is False
        assert response.attempts == ["a"]
        assert response.cost == pytest.approx(200 * 0.00001)

    @pytest.mark.asyncio
    async def test_confidence_is_reliability_at_call_time(self, router):
        response = await router.route(critical_coding())
        assert response.confidence == pytest.approx(0.98)

    @pytest.mark.asyncio
    async def test_success_updates_reliability_and_latency(self, router, registry, client):
        client.complete.return_value = ok(latency_ms=500.0)

        await router.route(critical_coding())

        a = registry.get("a")
        assert a.reliability == pytest.approx(min(1.0, 0.98 * 1.01))
        assert a.response_time == pytest.approx(0.3 * 500.0 + 0.7 * 200.0)

    @pytest.mark.asyncio
    async def test_primary_failure_falls_back(self, router, registry, client):
        client.complete.side_effect = [
            ProviderCallError("HTTP 500", provider_id="a", status_code=500),
            ok("from b"),
        ]

        response = await router.route(critical_coding())

        assert registry.get("a").reliability == pytest.approx(0.931)
        assert response.provider == "b"
        assert response.content == "from b"
        assert response.fallback_used is True
        assert response.confidence == pytest.approx(0.9 * FALLBACK_CONFIDENCE_FACTOR)
        assert response.attempts == ["a", "b"]

    @pytest.mark.asyncio
    async def test_fallback_never_retries_failed_provider(self, client):
        registry = ProviderRegistry([
            make_provider("a", reliability=0.98, response_time=200.0),
            make_provider("b"),
            make_provider("c"),
        ])
        router = ModelRouter(registry, client, fallback_order=["a", "b", "c"])
        client.complete.side_effect = [
            ProviderCallError("boom", provider_id="a"),
            ProviderCallError("boom", provider_id="b"),
            ok("from c"),
        ]

        response = await router.route(critical_coding())

        assert response.provider == "c"
        assert called_providers(client) == ["a", "b", "c"]

    @pytest.mark.asyncio
    async def test_fallback_follows_configured_order(self, client):
        registry = ProviderRegistry([
            make_provider("a", reliability=0.98, response_time=200.0),
            make_provider("b"),
            make_provider("c"),
        ])
        router = ModelRouter(registry, client, fallback_order=["c", "b", "a"])
        client.complete.side_effect = [
            ProviderCallError("boom", provider_id="a"),
            ok("from c"),
        ]

        response = await router.route(critical_coding())

        assert called_providers(client) == ["a", "c"]
        assert response.provider == "c"

    @pytest.mark.asyncio
    async def test_all_providers_fail(self, router, registry, client):
        client.complete.side_effect = [
            ProviderCallError("HTTP 500", provider_id="a"),
            ProviderCallError("HTTP 502", provider_id="b"),
        ]

        with pytest.raises(AllProvidersFailedError) as exc_info:
            await router.route(critical_coding())

        assert set(exc_info.value.errors) == {"a", "b"}
        assert "HTTP 502" in exc_info.value.errors["b"]
        assert registry.get("a").reliability == pytest.approx(0.98 * 0.95)
        assert registry.get("b").reliability == pytest.approx(0.9 * 0.95)
        assert client.complete.await_count == 2

    @pytest.mark.asyncio
    async def test_fallback_skips_unavailable(self, client):
        registry = ProviderRegistry([
            make_provider("a", reliability=0.98, response_time=200.0),
            make_provider("b"),
            make_provider("c"),
        ])
        registry.update_status("b", is_available=False)
        router = ModelRouter(registry, client, fallback_order=["a", "b", "c"])
        client.complete.side_effect = [
            ProviderCallError("boom", provider_id="a"),
            ok("from c"),
        ]

        response = await router.route(critical_coding())

        assert called_providers(client) == ["a", "c"]
        assert response.provider == "c"

    @pytest.mark.asyncio
    async def test_repeated_failures_mark_provider_unavailable(self, client):
        registry = ProviderRegistry([
            make_provider("a", reliability=0.31, cost=0.000001),
            make_provider("b"),
        ])
        router = ModelRouter(registry, client, fallback_order=["a", "b"])
        client.complete.side_effect = [
            ProviderCallError("boom", provider_id="a"),
            ok("from b"),
        ]
        await router.route(LLMRequest(prompt="hi", priority="low"))

        assert registry.get("a").is_available is False

    @pytest.mark.asyncio
    async def test_reliability_stays_in_bounds(self, client):
        registry = ProviderRegistry([make_provider("a", reliability=0.1)])
        router = ModelRouter(registry, client)
        client.complete.side_effect = ProviderCallError("boom", provider_id="a")

        with pytest.raises(AllProvidersFailedError):
            await router.route(critical_coding())

        assert registry.get("a").reliability == pytest.approx(0.1)


# ===========================================================================
# Rate Limiting
# ===========================================================================

class TestRateLimiting:

    @pytest.mark.asyncio
    async def test_rate_limited_provider_excluded(self, registry, client):
        limiter = RateLimiter(max_requests=1, window_seconds=60)
        router = ModelRouter(registry, client, rate_limiter=limiter, fallback_order=["a", "b"])

        first = await router.route(critical_coding())
        second = await router.route(critical_coding())

        assert first.provider == "a"
        assert second.provider == "b"
        assert second.fallback_used is False

    @pytest.mark.asyncio
    async def test_rate_limited_provider_skipped_in_fallback(self, client):
        registry = ProviderRegistry([
            make_provider("a", reliability=0.98, response_time=200.0),
            make_provider("b"),
            make_provider("c"),
        ])
        limiter = RateLimiter(max_requests=10, limits={"b": 1})
        limiter.acquire("b")
        router = ModelRouter(registry, client, rate_limiter=limiter, fallback_order=["a", "b", "c"])
        client.complete.side_effect = [
            ProviderCallError("boom", provider_id="a"),
            ok("from c"),
        ]

        response = await router.route(critical_coding())

        assert called_providers(client) == ["a", "c"]
        assert response.provider == "c"

    def test_per_provider_limits_from_registry(self, client):
        registry = ProviderRegistry([make_provider("a", requests_per_minute=7)])
        router = ModelRouter(registry, client)
        assert router.rate_limiter.max_for("a") == 7

    @pytest.mark.asyncio
    async def test_all_rate_limited_raises(self, registry, client):
        limiter = RateLimiter(max_requests=1)
        limiter.acquire("a")
        limiter.acquire("b")
        router = ModelRouter(registry, client, rate_limiter=limiter)

        with pytest.raises(AllProvidersFailedError):
            await router.route(critical_coding())
        client.complete.assert_not_called()


# ===========================================================================
# Deadlines
# ===========================================================================

class TestDeadline:

    @pytest.mark.asyncio
    async def test_deadline_stops_fallback(self, registry, client):
        clock = FakeClock()
        router = ModelRouter(registry, client, fallback_order=["a", "b"], clock=clock)

        async def slow_failure(provider, request, *, model, timeout):
            clock.advance(5.0)
            raise ProviderCallError("HTTP 500", provider_id=provider.id)

        client.complete.side_effect = slow_failure

        with pytest.raises(RequestTimeoutError) as exc_info:
            await router.route(critical_coding(timeout_seconds=2.0))

        assert called_providers(client) == ["a"]
        assert exc_info.value.timeout_seconds == 2.0
        assert "a" in exc_info.value.errors

    @pytest.mark.asyncio
    async def test_remaining_time_passed_to_provider(self, registry, client):
        clock = FakeClock()
        router = ModelRouter(registry, client, clock=clock)

        await router.route(critical_coding(timeout_seconds=3.0))

        assert client.complete.call_args.kwargs["timeout"] == pytest.approx(3.0)

    @pytest.mark.asyncio
    async def test_hanging_provider_times_out(self, registry, client):
        router = ModelRouter(registry, client, fallback_order=["a", "b"])

        async def hang(provider, request, *, model, timeout):
            await asyncio.sleep(10)

        client.complete.side_effect = hang

        with pytest.raises(RequestTimeoutError):
            await router.route(critical_coding(timeout_seconds=0.05))

        assert registry.get("a").reliability == pytest.approx(0.98 * 0.95)

    @pytest.mark.asyncio
    async def test_default_timeout_used(self, registry, client):
        router = ModelRouter(registry, client, default_timeout_seconds=12.0)
        await router.route(critical_coding())
        assert client.complete.call_args.kwargs["timeout"] == pytest.approx(12.0, abs=0.5)

    @pytest.mark.asyncio
    async def test_no_deadline_by_default(self, router, client):
        await router.route(critical_coding())
        assert client.complete.call_args.kwargs["timeout"] is None

    def test_deadline_for(self, registry, client):
        router = ModelRouter(registry, client, clock=FakeClock())
        assert router.deadline_for(critical_coding(timeout_seconds=2.0)) == 1002.0
        assert router.deadline_for(critical_coding()) is None

    @pytest.mark.asyncio
    async def test_caller_deadline_bounds_provider_call(self, registry, client):
        clock = FakeClock()
        router = ModelRouter(registry, client, clock=clock)

        await router.route(critical_coding(timeout_seconds=10.0), deadline=clock.now + 1.5)

        assert client.complete.call_args.kwargs["timeout"] == pytest.approx(1.5)

    @pytest.mark.asyncio
    async def test_passed_deadline_raises_before_any_call(self, registry, client):
        clock = FakeClock()
        router = ModelRouter(registry, client, clock=clock)

        with pytest.raises(RequestTimeoutError) as exc_info:
            await router.route(critical_coding(timeout_seconds=0.2), deadline=clock.now - 0.4)

        client.complete.assert_not_called()
        assert exc_info.value.timeout_seconds == 0.2
        assert router.call_count == 0


# ===========================================================================
# Usage & Metrics
# ===========================================================================

class TestUsageTracking:

    @pytest.mark.asyncio
    async def test_usage_accumulates(self, router, client):
        client.complete.return_value = ok(tokens=100)

        await router.route(critical_coding())
        await router.route(critical_coding())

        stats = router.get_usage_stats()
        assert router.call_count == 2
        assert stats["total_tokens"] == 200
        assert router.total_cost == pytest.approx(200 * 0.00001)

    @pytest.mark.asyncio
    async def test_fallbacks_counted(self, router, client):
        client.complete.side_effect = [ProviderCallError("x", provider_id="a"), ok()]
        await router.route(critical_coding())
        assert router.get_usage_stats()["fallbacks"] == 1

    @pytest.mark.asyncio
    async def test_reset_usage(self, router):
        await router.route(critical_coding())
        router.reset_usage()
        assert router.call_count == 0
        assert router.total_cost == 0.0

    @pytest.mark.asyncio
    async def test_metrics_record_outcomes(self, registry, client):
        sink = MagicMock()
        metrics = MetricsRecorder(sink=sink)
        router = ModelRouter(registry, client, metrics=metrics, fallback_order=["a", "b"])
        client.complete.side_effect = [ProviderCallError("x", provider_id="a"), ok()]

        await router.route(critical_coding())

        assert metrics.provider_stats("a").failures == 1
        assert metrics.provider_stats("b").successes == 1
        assert metrics.provider_stats("b").fallbacks == 1
        assert sink.record_provider_outcome.call_count == 2
