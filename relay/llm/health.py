"""
Health Monitor — periodic provider probes.

Every ``interval_seconds`` (default 30) the monitor probes each provider
concurrently and rewrites its HealthRecord in the registry:

- probe succeeds → healthy (degraded when slower than
  ``degraded_latency_ms``), measured latency, rolling success rate
- probe fails    → down, success rate 0, provider marked unavailable

Probe failures are logged, never raised. The monitor is the only writer
of health state besides the router's call-outcome updates.

Usage:
    monitor = HealthMonitor(registry, provider_client, interval_seconds=30)
    monitor.start()
    ...
    await monitor.stop()
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Callable, Optional

from relay.exceptions import ProviderCallError
from relay.llm.providers import ProviderClient
from relay.llm.registry import HealthRecord, Provider, ProviderRegistry

logger = logging.getLogger(__name__)


class HealthMonitor:
    """Runs provider probes on a fixed interval in a background task."""

    def __init__(
        self,
        registry: ProviderRegistry,
        client: ProviderClient,
        *,
        interval_seconds: float = 30.0,
        probe_timeout: float = 5.0,
        degraded_latency_ms: float = 5000.0,
        now: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self._registry = registry
        self._client = client
        self._interval = interval_seconds
        self._probe_timeout = probe_timeout
        self._degraded_latency_ms = degraded_latency_ms
        self._now = now
        self._task: Optional[asyncio.Task] = None
        self._ticks = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def ticks(self) -> int:
        return self._ticks

    # --- Probing ---

    async def check_provider(self, provider: Provider) -> HealthRecord:
        """Probe one provider and record the outcome."""
        try:
            latency = await asyncio.wait_for(
                self._client.probe(provider, timeout=self._probe_timeout),
                timeout=self._probe_timeout,
            )
        except (ProviderCallError, asyncio.TimeoutError) as e:
            record = self._registry.mark_health(
                provider.id,
                healthy=False,
                error=str(e) or e.__class__.__name__,
                checked_at=self._now(),
            )
            logger.warning(
                "provider_health_down",
                extra={
                    "provider": provider.id,
                    "error": (str(e) or e.__class__.__name__)[:200],
                    "consecutive_failures": record.consecutive_failures,
                },
            )
            return record

        record = self._registry.mark_health(
            provider.id,
            healthy=True,
            response_time_ms=latency,
            degraded=latency > self._degraded_latency_ms,
            checked_at=self._now(),
        )
        logger.debug(
            "provider_health_ok",
            extra={
                "provider": provider.id,
                "status": record.status.value,
                "latency_ms": round(latency, 1),
            },
        )
        return record

    async def check_all(self) -> list[HealthRecord]:
        """Probe every provider concurrently. One tick of the monitor."""
        providers = list(self._registry)
        records = await asyncio.gather(
            *(self.check_provider(p) for p in providers)
        )
        self._ticks += 1
        return list(records)

    # --- Lifecycle ---

    async def _run(self) -> None:
        while True:
            try:
                await self.check_all()
            except Exception:
                # A broken tick must not kill the monitor
                logger.exception("health_check_tick_failed")
            await asyncio.sleep(self._interval)

    def start(self) -> None:
        """Start the background loop (first tick runs immediately)."""
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(
            self._run(), name="relay-health-monitor"
        )
        logger.info("health_monitor_started", extra={"interval_s": self._interval})

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("health_monitor_stopped")
