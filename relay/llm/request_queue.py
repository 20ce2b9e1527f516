"""
Request Queue — bounded FIFO in front of the cache/router pipeline.

One worker task takes ``(request, future)`` pairs off an asyncio.Queue and
runs them through the handler strictly one at a time, so provider state
updates from routing never interleave.

Backpressure is explicit: ``submit`` raises QueueFullError as soon as the
queue holds ``maxsize`` requests, rather than waiting for space. A caller
that gives up (its task is cancelled) has its item skipped.

Usage:
    queue = RequestQueue(lambda req: cached_route(cache, router, req))
    queue.start()
    response = await queue.submit(LLMRequest(prompt="..."))
    await queue.stop(drain=True)
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

from relay.exceptions import QueueClosedError, QueueFullError
from relay.llm.types import LLMRequest, LLMResponse

logger = logging.getLogger(__name__)

Handler = Callable[[LLMRequest], Awaitable[LLMResponse]]


class RequestQueue:
    """Single-consumer bounded request queue."""

    def __init__(self, handler: Handler, maxsize: int = 100):
        if maxsize <= 0:
            raise ValueError("maxsize must be positive")
        self._handler = handler
        self._maxsize = maxsize
        self._queue: asyncio.Queue[tuple[LLMRequest, asyncio.Future]] = asyncio.Queue(
            maxsize=maxsize
        )
        self._worker: Optional[asyncio.Task] = None
        self._running = False
        self._in_flight: Optional[str] = None

        # Stats
        self._processed = 0
        self._failed = 0
        self._skipped = 0
        self._rejected = 0

    @property
    def running(self) -> bool:
        return self._running

    @property
    def pending(self) -> int:
        """Requests waiting behind the one in flight."""
        return self._queue.qsize()

    @property
    def maxsize(self) -> int:
        return self._maxsize

    @property
    def in_flight(self) -> Optional[str]:
        """request_id of the request being handled, if any."""
        return self._in_flight

    def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._worker = asyncio.get_running_loop().create_task(
            self._run(), name="relay-request-queue"
        )
        logger.info("request_queue_started", extra={"maxsize": self._maxsize})

    async def submit(self, request: LLMRequest) -> LLMResponse:
        """
        Enqueue a request and wait for its response.

        Raises:
            QueueClosedError: the queue is not running.
            QueueFullError: ``maxsize`` requests are already waiting.
            Whatever the handler raises for this request.
        """
        if not self._running:
            raise QueueClosedError("Request queue is not running")

        future: asyncio.Future = asyncio.get_running_loop().create_future()
        try:
            self._queue.put_nowait((request, future))
        except asyncio.QueueFull:
            self._rejected += 1
            logger.warning(
                "request_queue_full",
                extra={"request_id": request.request_id, "maxsize": self._maxsize},
            )
            raise QueueFullError(
                f"Request queue is full ({self._maxsize} pending)",
                maxsize=self._maxsize,
            ) from None

        return await future

    async def _run(self) -> None:
        while True:
            request, future = await self._queue.get()
            try:
                if future.done():
                    # Caller went away before we got to it
                    self._skipped += 1
                    logger.debug(
                        "request_skipped",
                        extra={"request_id": request.request_id},
                    )
                    continue
                await self._handle(request, future)
            finally:
                self._queue.task_done()

    async def _handle(self, request: LLMRequest, future: asyncio.Future) -> None:
        self._in_flight = request.request_id
        try:
            result = await self._handler(request)
        except asyncio.CancelledError:
            if not future.done():
                future.set_exception(QueueClosedError("Request queue stopped"))
            raise
        except Exception as e:
            self._failed += 1
            if not future.done():
                future.set_exception(e)
        else:
            self._processed += 1
            if not future.done():
                future.set_result(result)
        finally:
            self._in_flight = None

    async def stop(self, drain: bool = False) -> None:
        """
        Stop accepting requests and shut the worker down.

        With ``drain=True`` everything already queued is handled first;
        otherwise the in-flight request is cancelled and waiting
        requests are rejected with QueueClosedError.
        """
        if not self._running:
            return
        self._running = False

        if drain:
            await self._queue.join()

        if self._worker is not None:
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
            self._worker = None

        rejected = 0
        while not self._queue.empty():
            _, future = self._queue.get_nowait()
            self._queue.task_done()
            if not future.done():
                future.set_exception(QueueClosedError("Request queue stopped"))
                rejected += 1

        logger.info(
            "request_queue_stopped",
            extra={"drained": drain, "rejected": rejected},
        )

    def get_stats(self) -> dict[str, Any]:
        return {
            "running": self._running,
            "pending": self.pending,
            "maxsize": self._maxsize,
            "processed": self._processed,
            "failed": self._failed,
            "skipped": self._skipped,
            "rejected": self._rejected,
        }
