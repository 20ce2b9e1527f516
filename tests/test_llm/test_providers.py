"""
Tests for the HTTP provider adapters.

Uses httpx.MockTransport — no network access.
"""

from __future__ import annotations

import json

import httpx
import pytest

from relay.exceptions import ProviderCallError
from relay.llm.llm_config import CLAUDE, GROQ, ApiFormat, ProviderProfile
from relay.llm.providers import ProviderClient, estimate_tokens
from relay.llm.registry import Provider
from relay.llm.types import LLMRequest

LOCAL = ProviderProfile(
    id="local",
    name="Local",
    endpoint="http://localhost:8080/generate",
    models=("llama-3-8b",),
    cost_per_token=0.0,
    max_tokens=512,
    api_format=ApiFormat.GENERIC,
)


def make_client(handler, **kwargs) -> ProviderClient:
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return ProviderClient(http, **kwargs)


@pytest.fixture
def request_():
    return LLMRequest(prompt="What is RAG?", system_prompt="Be brief.", max_tokens=100)


class TestPayloads:

    def test_openai_payload(self, request_):
        provider = Provider.from_profile(GROQ)
        payload = ProviderClient.build_payload(provider, request_, "mixtral-8x7b-32768")
        assert payload["model"] == "mixtral-8x7b-32768"
        assert payload["messages"] == [
            {"role": "system", "content": "Be brief."},
            {"role": "user", "content": "What is RAG?"},
        ]
        assert payload["max_tokens"] == 100

    def test_anthropic_payload(self, request_):
        provider = Provider.from_profile(CLAUDE)
        payload = ProviderClient.build_payload(provider, request_, "claude-3-haiku")
        assert payload["system"] == "Be brief."
        assert payload["messages"] == [{"role": "user", "content": "What is RAG?"}]

    def test_generic_payload_clamps_max_tokens(self):
        provider = Provider.from_profile(LOCAL)
        request = LLMRequest(prompt="hi", max_tokens=4000)
        payload = ProviderClient.build_payload(provider, request, "llama-3-8b")
        assert payload["prompt"] == "hi"
        assert payload["max_tokens"] == 512


class TestComplete:

    @pytest.mark.asyncio
    async def test_openai_response(self, request_):
        seen = {}

        def handler(req: httpx.Request) -> httpx.Response:
            seen["auth"] = req.headers.get("authorization")
            seen["body"] = json.loads(req.content)
            return httpx.Response(200, json={
                "choices": [{"message": {"content": "Retrieval-augmented generation."}}],
                "usage": {"total_tokens": 42},
            })

        client = make_client(handler, api_keys={"groq": "gsk-test"})
        result = await client.complete(Provider.from_profile(GROQ), request_)

        assert result.content == "Retrieval-augmented generation."
        assert result.tokens_used == 42
        assert result.latency_ms >= 0
        assert seen["auth"] == "Bearer gsk-test"
        assert seen["body"]["model"] == "mixtral-8x7b-32768"

    @pytest.mark.asyncio
    async def test_anthropic_response_and_headers(self, request_):
        seen = {}

        def handler(req: httpx.Request) -> httpx.Response:
            seen["headers"] = req.headers
            return httpx.Response(200, json={
                "content": [{"type": "text", "text": "RAG answer"}],
                "usage": {"input_tokens": 10, "output_tokens": 5},
            })

        client = make_client(handler, api_keys={"claude": "sk-ant"})
        result = await client.complete(Provider.from_profile(CLAUDE), request_)

        assert result.content == "RAG answer"
        assert result.tokens_used == 15
        assert seen["headers"]["x-api-key"] == "sk-ant"
        assert seen["headers"]["anthropic-version"] == "2023-06-01"
        assert "authorization" not in seen["headers"]

    @pytest.mark.asyncio
    async def test_generic_response(self):
        def handler(req: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"content": "local answer", "tokensUsed": 7})

        client = make_client(handler)
        result = await client.complete(Provider.from_profile(LOCAL), LLMRequest(prompt="hi"))
        assert result.content == "local answer"
        assert result.tokens_used == 7

    @pytest.mark.asyncio
    async def test_missing_usage_is_estimated(self):
        def handler(req: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"content": "abcdefgh"})

        client = make_client(handler)
        result = await client.complete(Provider.from_profile(LOCAL), LLMRequest(prompt="abcde"))
        assert result.tokens_used == estimate_tokens("abcde") + estimate_tokens("abcdefgh")
        assert result.tokens_used == 2 + 2

    @pytest.mark.asyncio
    async def test_http_error_raises(self, request_):
        def handler(req: httpx.Request) -> httpx.Response:
            return httpx.Response(503, text="overloaded")

        client = make_client(handler)
        with pytest.raises(ProviderCallError) as exc_info:
            await client.complete(Provider.from_profile(GROQ), request_)
        assert exc_info.value.status_code == 503
        assert exc_info.value.provider_id == "groq"

    @pytest.mark.asyncio
    async def test_timeout_raises(self, request_):
        def handler(req: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("slow", request=req)

        client = make_client(handler)
        with pytest.raises(ProviderCallError, match="timed out"):
            await client.complete(Provider.from_profile(GROQ), request_)

    @pytest.mark.asyncio
    async def test_transport_error_raises(self, request_):
        def handler(req: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=req)

        client = make_client(handler)
        with pytest.raises(ProviderCallError):
            await client.complete(Provider.from_profile(GROQ), request_)

    @pytest.mark.asyncio
    async def test_malformed_body_raises(self, request_):
        def handler(req: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"choices": []})

        client = make_client(handler)
        with pytest.raises(ProviderCallError):
            await client.complete(Provider.from_profile(GROQ), request_)

    @pytest.mark.asyncio
    async def test_non_json_body_raises(self, request_):
        def handler(req: httpx.Request) -> httpx.Response:
            return httpx.Response(200, text="<html>oops</html>")

        client = make_client(handler)
        with pytest.raises(ProviderCallError, match="non-JSON"):
            await client.complete(Provider.from_profile(GROQ), request_)


class TestProbe:

    @pytest.mark.asyncio
    async def test_uses_health_endpoint(self):
        seen = {}

        def handler(req: httpx.Request) -> httpx.Response:
            seen["url"] = str(req.url)
            seen["method"] = req.method
            return httpx.Response(200, json={"data": []})

        provider = Provider(
            id="p", name="P", endpoint="https://p.test/v1/chat", models=("m",),
            cost_per_token=0.0, max_tokens=10, capabilities=frozenset(),
            response_time=100.0, reliability=0.9,
            health_endpoint="https://p.test/v1/models",
        )
        latency = await make_client(handler).probe(provider)

        assert seen == {"url": "https://p.test/v1/models", "method": "GET"}
        assert latency >= 0

    @pytest.mark.asyncio
    async def test_client_error_still_reachable(self):
        def handler(req: httpx.Request) -> httpx.Response:
            return httpx.Response(405)

        latency = await make_client(handler).probe(Provider.from_profile(LOCAL))
        assert latency >= 0

    @pytest.mark.asyncio
    async def test_server_error_raises(self):
        def handler(req: httpx.Request) -> httpx.Response:
            return httpx.Response(502)

        with pytest.raises(ProviderCallError):
            await make_client(handler).probe(Provider.from_profile(LOCAL))
