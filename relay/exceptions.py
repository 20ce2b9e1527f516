"""
Custom exception hierarchy for LLM Relay.

Structured error handling with clear categories:
- Configuration errors (caught at startup)
- Provider call errors (absorbed by the fallback executor)
- Terminal routing errors (surfaced to the caller)
- Rate limiting (provider skipped for the current request)
- Embedding and cache store errors (fail-open, never surfaced)
- Queue backpressure and shutdown

Only AllProvidersFailedError, RequestTimeoutError, configuration errors
and the queue errors ever reach a caller of ``route()``.

Usage:
    from relay.exceptions import ProviderCallError

    try:
        resp = await client.post(url, json=payload)
    except httpx.TimeoutException as e:
        raise ProviderCallError("timed out", provider_id="groq") from e
"""

from __future__ import annotations

from typing import Optional


class RelayError(Exception):
    """
    Base exception for all LLM Relay errors.

    All custom exceptions inherit from this, so you can catch
    `RelayError` to handle any relay-specific error.
    """

    def __init__(self, message: str, *, details: Optional[dict] = None):
        super().__init__(message)
        self.details = details or {}


# ── Configuration Errors ──────────────────────────────────────────


class ProviderConfigurationError(RelayError):
    """
    Raised when the provider setup is unusable.

    Examples:
    - No providers configured at all
    - Duplicate provider ids
    - Fallback order naming an unknown provider
    """

    def __init__(
        self,
        message: str,
        *,
        provider_id: Optional[str] = None,
        config_path: Optional[str] = None,
        details: Optional[dict] = None,
    ):
        super().__init__(message, details=details)
        self.provider_id = provider_id
        self.config_path = config_path


# ── Provider Errors ───────────────────────────────────────────────


class ProviderCallError(RelayError):
    """
    A single chat-completion call failed (HTTP error, timeout, bad body).

    Triggers the fallback executor; never surfaced to the caller directly.
    """

    def __init__(
        self,
        message: str,
        *,
        provider_id: Optional[str] = None,
        status_code: Optional[int] = None,
        details: Optional[dict] = None,
    ):
        super().__init__(message, details=details)
        self.provider_id = provider_id
        self.status_code = status_code


class AllProvidersFailedError(RelayError):
    """
    Raised when the selected provider and every fallback candidate failed,
    or when no provider is available at all.
    """

    def __init__(
        self,
        message: str,
        *,
        errors: Optional[dict[str, str]] = None,
        details: Optional[dict] = None,
    ):
        super().__init__(message, details=details)
        self.errors = errors or {}

    @property
    def attempted(self) -> list[str]:
        return list(self.errors)


class RequestTimeoutError(RelayError):
    """
    Raised when a request's deadline passes before any provider answered.
    """

    def __init__(
        self,
        message: str,
        *,
        timeout_seconds: Optional[float] = None,
        errors: Optional[dict[str, str]] = None,
        details: Optional[dict] = None,
    ):
        super().__init__(message, details=details)
        self.timeout_seconds = timeout_seconds
        self.errors = errors or {}


# ── Rate Limiting ─────────────────────────────────────────────────


class RateLimitedError(RelayError):
    """
    A provider's request window is exhausted.

    NOT fatal: the router excludes the provider from the current
    request's candidate set and moves on.
    """

    def __init__(
        self,
        message: str,
        *,
        provider_id: Optional[str] = None,
        retry_after_seconds: float = 0.0,
        details: Optional[dict] = None,
    ):
        super().__init__(message, details=details)
        self.provider_id = provider_id
        self.retry_after_seconds = retry_after_seconds


# ── Embedding / Cache Errors ──────────────────────────────────────


class EmbeddingError(RelayError):
    """
    Raised when the embedding service fails or returns an unusable vector.

    The semantic cache treats this as a forced miss and never stores
    the question.
    """

    def __init__(
        self,
        message: str,
        *,
        model: Optional[str] = None,
        status_code: Optional[int] = None,
        details: Optional[dict] = None,
    ):
        super().__init__(message, details=details)
        self.model = model
        self.status_code = status_code


class CacheStoreError(RelayError):
    """
    Raised when reading from or writing to the cache store fails.
    """

    def __init__(
        self,
        message: str,
        *,
        operation: Optional[str] = None,
        details: Optional[dict] = None,
    ):
        super().__init__(message, details=details)
        self.operation = operation


class CacheLookupError(CacheStoreError):
    """Similarity query failed. Behaves as a cache miss."""


class CacheWriteError(CacheStoreError):
    """Insert/delete failed. Logged; the response is still returned."""


# ── Request Queue ─────────────────────────────────────────────────


class QueueFullError(RelayError):
    """
    Raised by RequestQueue.submit() when the bounded queue is full.
    """

    def __init__(
        self,
        message: str,
        *,
        maxsize: int = 0,
        details: Optional[dict] = None,
    ):
        super().__init__(message, details=details)
        self.maxsize = maxsize


class QueueClosedError(RelayError):
    """
    Raised when submitting to a stopped queue, or for pending requests
    rejected during shutdown.
    """
