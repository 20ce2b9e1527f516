"""
Provider adapters — chat-completion calls and health probes over HTTP.

One ProviderClient serves every provider; the provider's ``api_format``
picks the payload shape and response parser:

- openai:    POST {model, messages, temperature, max_tokens}
             → choices[0].message.content, usage.total_tokens
- anthropic: POST {model, system, messages, temperature, max_tokens}
             → content[0].text, usage.input_tokens + usage.output_tokens
- generic:   POST {model, prompt, temperature, max_tokens}
             → {content, tokensUsed}

Any non-2xx status, timeout, transport error or unparseable body becomes
a ProviderCallError.
"""

from __future__ import annotations

import logging
import math
import os
import time
from dataclasses import dataclass
from typing import Any, Mapping, Optional

import httpx

from relay.exceptions import ProviderCallError
from relay.llm.llm_config import ApiFormat
from relay.llm.registry import Provider
from relay.llm.types import LLMRequest

logger = logging.getLogger(__name__)

ANTHROPIC_VERSION = "2023-06-01"
DEFAULT_CALL_TIMEOUT = 60.0
DEFAULT_PROBE_TIMEOUT = 5.0


@dataclass
class CompletionResult:
    content: str
    tokens_used: int
    latency_ms: float
    raw: Any = None


def estimate_tokens(text: str) -> int:
    """Rough count (~4 chars per token) for providers that omit usage."""
    return math.ceil(len(text) / 4) if text else 0


class ProviderClient:
    """
    Sends chat-completion requests and probes through a shared
    httpx.AsyncClient (injected, so tests can use httpx.MockTransport).
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        *,
        api_keys: Optional[Mapping[str, str]] = None,
        call_timeout: float = DEFAULT_CALL_TIMEOUT,
        probe_timeout: float = DEFAULT_PROBE_TIMEOUT,
    ):
        self._http = http_client
        self._api_keys = dict(api_keys or {})
        self._call_timeout = call_timeout
        self._probe_timeout = probe_timeout

    def _api_key(self, provider: Provider) -> Optional[str]:
        if provider.id in self._api_keys:
            return self._api_keys[provider.id]
        if provider.api_key_env:
            return os.environ.get(provider.api_key_env) or None
        return None

    def _headers(self, provider: Provider) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        key = self._api_key(provider)
        if provider.api_format is ApiFormat.ANTHROPIC:
            headers["anthropic-version"] = ANTHROPIC_VERSION
            if key:
                headers["x-api-key"] = key
        elif key:
            headers["Authorization"] = f"Bearer {key}"
        return headers

    # --- Payloads ---

    @staticmethod
    def build_payload(
        provider: Provider,
        request: LLMRequest,
        model: str,
    ) -> dict[str, Any]:
        max_tokens = min(request.max_tokens, provider.max_tokens)

        if provider.api_format is ApiFormat.ANTHROPIC:
            payload: dict[str, Any] = {
                "model": model,
                "max_tokens": max_tokens,
                "temperature": request.temperature,
                "messages": [{"role": "user", "content": request.prompt}],
            }
            if request.system_prompt:
                payload["system"] = request.system_prompt
            return payload

        if provider.api_format is ApiFormat.GENERIC:
            prompt = request.prompt
            if request.system_prompt:
                prompt = f"{request.system_prompt}\n\n{request.prompt}"
            return {
                "model": model,
                "prompt": prompt,
                "temperature": request.temperature,
                "max_tokens": max_tokens,
            }

        messages = []
        if request.system_prompt:
            messages.append({"role": "system", "content": request.system_prompt})
        messages.append({"role": "user", "content": request.prompt})
        return {
            "model": model,
            "messages": messages,
            "temperature": request.temperature,
            "max_tokens": max_tokens,
        }

    @staticmethod
    def parse_response(
        provider: Provider,
        data: Any,
        prompt: str,
    ) -> tuple[str, int]:
        """Extract (content, tokens_used). Raises ProviderCallError on bad shape."""
        try:
            if provider.api_format is ApiFormat.ANTHROPIC:
                blocks = data.get("content") or []
                content = "".join(
                    b.get("text", "") for b in blocks if b.get("type", "text") == "text"
                )
                usage = data.get("usage") or {}
                tokens = int(usage.get("input_tokens", 0)) + int(usage.get("output_tokens", 0))
            elif provider.api_format is ApiFormat.GENERIC:
                content = data["content"]
                tokens = int(data.get("tokensUsed") or 0)
            else:
                choices = data.get("choices") or []
                message = choices[0].get("message") or {} if choices else {}
                content = message.get("content")
                if content is None:
                    raise KeyError("choices[0].message.content")
                usage = data.get("usage") or {}
                tokens = int(usage.get("total_tokens") or 0)
        except (AttributeError, KeyError, IndexError, TypeError, ValueError) as e:
            raise ProviderCallError(
                f"Unexpected response body from {provider.id}: {e}",
                provider_id=provider.id,
            ) from e

        if not isinstance(content, str):
            raise ProviderCallError(
                f"Non-text content from {provider.id}",
                provider_id=provider.id,
            )

        if tokens <= 0:
            tokens = estimate_tokens(prompt) + estimate_tokens(content)
        return content, tokens

    # --- Calls ---

    async def complete(
        self,
        provider: Provider,
        request: LLMRequest,
        *,
        model: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> CompletionResult:
        """One chat-completion call. Raises ProviderCallError on any failure."""
        model = model or provider.resolve_model(request.model)
        payload = self.build_payload(provider, request, model)
        start = time.monotonic()

        try:
            resp = await self._http.post(
                provider.endpoint,
                json=payload,
                headers=self._headers(provider),
                timeout=timeout if timeout is not None else self._call_timeout,
            )
        except httpx.TimeoutException as e:
            raise ProviderCallError(
                f"{provider.id} timed out",
                provider_id=provider.id,
            ) from e
        except httpx.HTTPError as e:
            raise ProviderCallError(
                f"{provider.id} transport error: {e}",
                provider_id=provider.id,
            ) from e

        elapsed = (time.monotonic() - start) * 1000

        if not resp.is_success:
            raise ProviderCallError(
                f"{provider.id} returned HTTP {resp.status_code}",
                provider_id=provider.id,
                status_code=resp.status_code,
                details={"body": resp.text[:200]},
            )

        try:
            data = resp.json()
        except ValueError as e:
            raise ProviderCallError(
                f"{provider.id} returned a non-JSON body",
                provider_id=provider.id,
                status_code=resp.status_code,
            ) from e

        content, tokens = self.parse_response(provider, data, request.prompt)
        return CompletionResult(
            content=content,
            tokens_used=tokens,
            latency_ms=elapsed,
            raw=data,
        )

    async def probe(self, provider: Provider, *, timeout: Optional[float] = None) -> float:
        """
        Lightweight reachability check. Returns latency in ms.

        GETs the provider's health endpoint (or its chat endpoint). Any
        response below 500 counts as reachable; 5xx, timeouts and transport
        errors raise ProviderCallError.
        """
        url = provider.health_endpoint or provider.endpoint
        start = time.monotonic()
        try:
            resp = await self._http.get(
                url,
                headers=self._headers(provider),
                timeout=timeout if timeout is not None else self._probe_timeout,
            )
        except httpx.HTTPError as e:
            raise ProviderCallError(
                f"probe failed for {provider.id}: {e.__class__.__name__}",
                provider_id=provider.id,
            ) from e

        elapsed = (time.monotonic() - start) * 1000
        if resp.status_code >= 500:
            raise ProviderCallError(
                f"probe for {provider.id} returned HTTP {resp.status_code}",
                provider_id=provider.id,
                status_code=resp.status_code,
            )
        return elapsed
