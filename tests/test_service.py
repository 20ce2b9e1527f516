"""
End-to-end tests for RelayService.

Wires the real router, cache, metrics and queue together over an
httpx.MockTransport provider, the in-memory cache store and a stub
embedder. No network access.
"""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from relay.config.schema import RelayConfig
from relay.exceptions import AllProvidersFailedError, QueueClosedError
from relay.llm.types import LLMRequest
from relay.observability.logging_config import get_request_id
from relay.service import RelayService
from relay.testing.memory_store import InMemoryCacheStore


def local_config(**overrides) -> RelayConfig:
    data = {
        "providers": [{
            "id": "local",
            "name": "Local",
            "endpoint": "http://local.test/generate",
            "models": ["llama-3-8b"],
            "cost_per_token": 0.0,
            "api_format": "generic",
        }],
        "health": {"enabled": False},
    }
    data.update(overrides)
    return RelayConfig(**data)


class ProviderStub:
    """MockTransport handler counting generation calls."""

    def __init__(self, status: int = 200):
        self.status = status
        self.calls = 0

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.calls += 1
        if self.status != 200:
            return httpx.Response(self.status, text="unavailable")
        return httpx.Response(200, json={"content": f"answer {self.calls}", "tokensUsed": 12})


@pytest.fixture
def provider():
    return ProviderStub()


@pytest.fixture
def http(provider):
    return httpx.AsyncClient(transport=httpx.MockTransport(provider))


@pytest.fixture
def store():
    return InMemoryCacheStore()


@pytest.fixture
def embedder():
    embedder = MagicMock()
    embedder.embed_text = AsyncMock(return_value=[0.6, 0.8, 0.0])
    return embedder


def build(config, http, store, embedder) -> RelayService:
    return RelayService.from_config(
        config, http_client=http, store=store, embedder=embedder, api_keys={},
    )


class TestFromConfig:

    def test_components(self, http, store, embedder):
        service = build(local_config(), http, store, embedder)

        assert service.cache is not None
        assert service.monitor is None
        assert service.router.fallback_order == ["local"]
        assert service.queue.maxsize == 100

    def test_cache_disabled(self, http):
        service = RelayService.from_config(
            local_config(cache={"enabled": False}), http_client=http, api_keys={},
        )
        assert service.cache is None

    def test_health_enabled(self, http, store, embedder):
        service = build(local_config(health={"enabled": True}), http, store, embedder)
        assert service.monitor is not None


class TestRoute:

    @pytest.mark.asyncio
    async def test_second_identical_request_is_cache_hit(self, http, store, embedder, provider):
        async with build(local_config(), http, store, embedder) as relay:
            first = await relay.route(LLMRequest(prompt="What is RAG?"))
            second = await relay.route(LLMRequest(prompt="What is RAG?"))

        assert first.cache_hit is False
        assert first.content == "answer 1"
        assert first.provider == "local"
        assert second.cache_hit is True
        assert second.content == "answer 1"
        assert second.cost == 0.0
        assert provider.calls == 1
        assert len(store.items) == 1
        assert len(store.cache_hits) == 1

    @pytest.mark.asyncio
    async def test_without_cache_every_request_routes(self, http, provider):
        service = RelayService.from_config(
            local_config(cache={"enabled": False}), http_client=http, api_keys={},
        )
        async with service as relay:
            await relay.route(LLMRequest(prompt="q"))
            await relay.route(LLMRequest(prompt="q"))

        assert provider.calls == 2
        assert service.router.call_count == 2

    @pytest.mark.asyncio
    async def test_concurrent_requests_all_answered(self, http, store, embedder):
        async with build(local_config(), http, store, embedder) as relay:
            responses = await asyncio.gather(*[
                relay.route(LLMRequest(prompt=f"question {i}", task_type="creative"))
                for i in range(5)
            ])

        assert all(r.content for r in responses)

    @pytest.mark.asyncio
    async def test_all_providers_failed_reaches_caller(self, store, embedder):
        http = httpx.AsyncClient(transport=httpx.MockTransport(ProviderStub(status=503)))

        async with build(local_config(), http, store, embedder) as relay:
            with pytest.raises(AllProvidersFailedError):
                await relay.route(LLMRequest(prompt="q"))

        assert store.items == {}

    @pytest.mark.asyncio
    async def test_request_id_bound_while_handling(self, http, store, embedder):
        seen = []

        async def embed(text, *, timeout):
            seen.append(get_request_id())
            return [0.6, 0.8, 0.0]

        embedder.embed_text.side_effect = embed
        request = LLMRequest(prompt="q")

        async with build(local_config(), http, store, embedder) as relay:
            await relay.route(request)

        assert seen and all(rid == request.request_id for rid in seen)

    @pytest.mark.asyncio
    async def test_route_after_stop(self, http, store, embedder):
        service = build(local_config(), http, store, embedder)
        await service.start()
        await service.stop()

        with pytest.raises(QueueClosedError):
            await service.route(LLMRequest(prompt="q"))


class TestStats:

    @pytest.mark.asyncio
    async def test_get_stats(self, http, store, embedder):
        async with build(local_config(), http, store, embedder) as relay:
            await relay.route(LLMRequest(prompt="q"))
            await relay.route(LLMRequest(prompt="q"))
            stats = relay.get_stats()

        assert set(stats) == {"usage", "metrics", "providers", "rate_limits", "queue"}
        assert stats["metrics"]["cache"]["hits"] == 1
        assert stats["metrics"]["cache"]["stores"] == 1
        assert stats["metrics"]["providers"]["local"]["successes"] == 1
        assert stats["queue"]["processed"] == 2
        assert stats["rate_limits"]["local"]["count"] == 1
