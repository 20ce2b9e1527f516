"""
Metrics Recorder — cache hit/miss counters and provider outcomes.

Keeps in-process counters (cheap to read for dashboards and adaptive
scoring) and forwards durable records to an optional sink:

- cache hits     → sink.record_cache_hit(cache_item_id, user_id, timestamp)
- provider calls → sink.record_provider_outcome({...})

Sink failures are logged and swallowed; metrics never break a request.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)


@dataclass
class ProviderCounters:
    successes: int = 0
    failures: int = 0
    fallbacks: int = 0
    total_latency_ms: float = 0.0
    total_tokens: int = 0
    total_cost: float = 0.0

    @property
    def calls(self) -> int:
        return self.successes + self.failures

    @property
    def success_rate(self) -> float:
        return self.successes / self.calls if self.calls else 0.0

    @property
    def average_latency_ms(self) -> float:
        return self.total_latency_ms / self.successes if self.successes else 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "calls": self.calls,
            "successes": self.successes,
            "failures": self.failures,
            "fallbacks": self.fallbacks,
            "success_rate": round(self.success_rate, 3),
            "average_latency_ms": round(self.average_latency_ms, 1),
            "total_tokens": self.total_tokens,
            "total_cost_usd": round(self.total_cost, 6),
        }


class MetricsRecorder:
    """
    Records cache and provider outcomes.

    The sink is any object with sync ``record_cache_hit`` and
    ``record_provider_outcome`` methods (RelayDB, InMemoryCacheStore);
    calls run in a worker thread.
    """

    def __init__(
        self,
        sink: Any = None,
        *,
        now: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self._sink = sink
        self._now = now
        self._hits = 0
        self._misses = 0
        self._stores = 0
        self._degraded_lookups = 0
        self._providers: dict[str, ProviderCounters] = {}

    # --- Cache ---

    async def record_cache_hit(
        self,
        cache_item_id: str,
        user_id: Optional[str] = None,
        similarity: Optional[float] = None,
        timeout: Optional[float] = None,
    ) -> None:
        """Count a hit and forward it to the sink, within ``timeout`` if given."""
        self._hits += 1
        if self._sink is None:
            return
        if timeout is not None and timeout <= 0:
            logger.warning(
                "cache_hit_metric_skipped",
                extra={"cache_item_id": cache_item_id, "error": "deadline passed"},
            )
            return
        try:
            await asyncio.wait_for(
                asyncio.to_thread(
                    self._sink.record_cache_hit,
                    cache_item_id,
                    user_id or "anonymous",
                    self._now(),
                ),
                timeout=timeout,
            )
        except Exception as e:
            logger.warning(
                "cache_hit_metric_failed",
                extra={"cache_item_id": cache_item_id, "error": str(e)[:200]},
            )

    def record_cache_miss(self, *, degraded: bool = False) -> None:
        self._misses += 1
        if degraded:
            self._degraded_lookups += 1

    def record_cache_store(self) -> None:
        self._stores += 1

    @property
    def cache_hits(self) -> int:
        return self._hits

    @property
    def cache_misses(self) -> int:
        return self._misses

    @property
    def hit_rate(self) -> float:
        total = self._hits + self._misses
        return self._hits / total if total > 0 else 0.0

    # --- Providers ---

    def _counters(self, provider_id: str) -> ProviderCounters:
        return self._providers.setdefault(provider_id, ProviderCounters())

    async def record_provider_outcome(
        self,
        provider_id: str,
        *,
        success: bool,
        latency_ms: float = 0.0,
        tokens_used: int = 0,
        cost: float = 0.0,
        fallback: bool = False,
        error: Optional[str] = None,
    ) -> None:
        counters = self._counters(provider_id)
        if success:
            counters.successes += 1
            counters.total_latency_ms += latency_ms
            counters.total_tokens += tokens_used
            counters.total_cost += cost
            if fallback:
                counters.fallbacks += 1
        else:
            counters.failures += 1

        if self._sink is None:
            return
        record = {
            "provider": provider_id,
            "success": success,
            "latency_ms": round(latency_ms, 1),
            "tokens_used": tokens_used,
            "cost": cost,
            "fallback": fallback,
            "error": (error or "")[:500] or None,
            "timestamp": self._now().isoformat(),
        }
        try:
            await asyncio.to_thread(self._sink.record_provider_outcome, record)
        except Exception as e:
            logger.warning(
                "provider_metric_failed",
                extra={"provider": provider_id, "error": str(e)[:200]},
            )

    def provider_stats(self, provider_id: str) -> ProviderCounters:
        return self._providers.get(provider_id, ProviderCounters())

    # --- Stats ---

    def get_stats(self) -> dict[str, Any]:
        return {
            "cache": {
                "hits": self._hits,
                "misses": self._misses,
                "stores": self._stores,
                "degraded_lookups": self._degraded_lookups,
                "hit_rate": round(self.hit_rate, 3),
            },
            "providers": {
                pid: counters.to_dict() for pid, counters in self._providers.items()
            },
        }

    def reset(self) -> None:
        self._hits = 0
        self._misses = 0
        self._stores = 0
        self._degraded_lookups = 0
        self._providers.clear()
