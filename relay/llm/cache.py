"""
Semantic Cache — embedding-based reuse of previous LLM answers.

Questions are embedded and stored next to their answers. A new question
is a hit when a stored question of the same task type is at least
``similarity_threshold`` cosine-similar (default 0.85) and younger than
``max_cache_age`` (default 7 days).

The cache is fail-open:
- embedding failure → forced miss on lookup, nothing stored on write
- store failure or timeout → miss on lookup, logged on write
Neither ever fails the request being served.

Usage:
    from relay.llm.cache import SemanticCache, cached_route

    cache = SemanticCache(store=RelayDB(), embedder=engine, metrics=metrics)

    # Manual: check/store
    answer = await cache.get_cached_response("what is X", "general")
    if answer is None:
        response = await router.route(request)
        await cache.cache_response("what is X", response.content, "general",
                                   response.model, response.provider,
                                   response.tokens_used)

    # Automatic: wrap the router
    response = await cached_route(cache, router, request)
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from relay.exceptions import CacheStoreError, EmbeddingError
from relay.llm.llm_config import TaskType, coerce_task_type
from relay.llm.metrics import MetricsRecorder
from relay.llm.types import LLMRequest, LLMResponse

logger = logging.getLogger(__name__)

DEFAULT_SIMILARITY_THRESHOLD = 0.85
DEFAULT_MAX_CACHE_AGE = timedelta(days=7)
DEFAULT_MATCH_COUNT = 5
# Hit statistics look back this far
HIT_STATS_WINDOW = timedelta(days=30)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# PostgREST timestamptz: trimmed fractions ("...:00.12345"), "+00" offsets, "Z"
_TIMESTAMP_RE = re.compile(
    r"^(?P<base>\d{4}-\d{2}-\d{2}[T ]\d{2}:\d{2}:\d{2})"
    r"(?:\.(?P<fraction>\d+))?"
    r"(?P<offset>Z|[+-]\d{2}(?::?\d{2})?)?$"
)


def _parse_timestamp(value: Any) -> Optional[datetime]:
    """
    Parse a store timestamp into an aware datetime.

    Normalises to the subset ``datetime.fromisoformat`` accepts on
    Python 3.10. Raises ValueError for anything else.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        match = _TIMESTAMP_RE.match(str(value).strip())
        if match is None:
            raise ValueError(f"Unrecognised timestamp: {value!r}")
        text = match.group("base")
        if match.group("fraction"):
            text += "." + match.group("fraction")[:6].ljust(6, "0")
        offset = match.group("offset")
        if offset == "Z":
            offset = "+00:00"
        elif offset:
            digits = offset[1:].replace(":", "")
            offset = f"{offset[0]}{digits[:2]}:{digits[2:] or '00'}"
        parsed = datetime.fromisoformat(text + (offset or ""))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


# ---------------------------------------------------------------------------
# Cache Match
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class CacheMatch:
    """One row returned by the similarity search."""

    id: str
    question: str
    answer: str
    similarity: float
    model: Optional[str] = None
    provider: Optional[str] = None
    created_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "CacheMatch":
        return cls(
            id=str(row["id"]),
            question=row.get("question", ""),
            answer=row.get("answer", ""),
            similarity=float(row.get("similarity", 0.0)),
            model=row.get("model_name"),
            provider=row.get("provider"),
            created_at=_parse_timestamp(row.get("created_at")),
        )


# ---------------------------------------------------------------------------
# Semantic Cache
# ---------------------------------------------------------------------------

class SemanticCache:
    """
    Similarity cache over a store with the RelayDB interface.

    The store is synchronous (supabase-py); every call runs in a worker
    thread bounded by ``store_timeout``. Embedding calls are bounded by
    ``embed_timeout``. Methods taking a ``deadline`` (an absolute time on
    ``clock``) cut both limits to whatever the deadline leaves.
    """

    def __init__(
        self,
        store: Any,
        embedder: Any,
        metrics: Optional[MetricsRecorder] = None,
        *,
        similarity_threshold: float = DEFAULT_SIMILARITY_THRESHOLD,
        max_cache_age: timedelta = DEFAULT_MAX_CACHE_AGE,
        match_count: int = DEFAULT_MATCH_COUNT,
        user_id: str = "anonymous",
        embed_timeout: float = 10.0,
        store_timeout: float = 5.0,
        now: Callable[[], datetime] = _utcnow,
        clock: Callable[[], float] = time.monotonic,
    ):
        if not 0.0 < similarity_threshold <= 1.0:
            raise ValueError("similarity_threshold must be in (0, 1]")
        self._store = store
        self._embedder = embedder
        self._metrics = metrics or MetricsRecorder()
        self._threshold = similarity_threshold
        self._max_age = max_cache_age
        self._match_count = match_count
        self._user_id = user_id
        self._embed_timeout = embed_timeout
        self._store_timeout = store_timeout
        self._now = now
        self._clock = clock

    @property
    def similarity_threshold(self) -> float:
        return self._threshold

    @property
    def max_cache_age(self) -> timedelta:
        return self._max_age

    @property
    def metrics(self) -> MetricsRecorder:
        return self._metrics

    # --- Internals ---

    def _budget(self, own_timeout: float, deadline: Optional[float]) -> Optional[float]:
        """Timeout for one call: its own limit, cut to what the deadline leaves.

        None when the deadline has already passed.
        """
        if deadline is None:
            return own_timeout
        remaining = deadline - self._clock()
        if remaining <= 0:
            return None
        return min(own_timeout, remaining)

    async def _embed(
        self,
        text: str,
        deadline: Optional[float] = None,
    ) -> Optional[list[float]]:
        """Embedding for ``text``, or None when it cannot be produced in time."""
        timeout = self._budget(self._embed_timeout, deadline)
        if timeout is None:
            logger.warning("cache_embedding_skipped", extra={"error": "deadline passed"})
            return None
        try:
            return await asyncio.wait_for(
                self._embedder.embed_text(text, timeout=timeout),
                timeout=timeout,
            )
        except EmbeddingError as e:
            logger.warning(
                "cache_embedding_failed",
                extra={"error": str(e)[:200], "status": e.status_code},
            )
        except asyncio.TimeoutError:
            logger.warning(
                "cache_embedding_failed",
                extra={"error": f"timed out after {timeout:.3f}s"},
            )
        return None

    async def _call_store(
        self,
        fn: Callable[..., Any],
        *args: Any,
        deadline: Optional[float] = None,
        **kwargs: Any,
    ) -> Any:
        """Run a sync store call in a thread. asyncio.TimeoutError past the budget."""
        timeout = self._budget(self._store_timeout, deadline)
        if timeout is None:
            raise asyncio.TimeoutError()
        return await asyncio.wait_for(
            asyncio.to_thread(fn, *args, **kwargs),
            timeout=timeout,
        )

    @staticmethod
    def _parse_rows(rows: list[dict[str, Any]], task_type: TaskType) -> list[CacheMatch]:
        """Rows the store returned, minus any that cannot be parsed."""
        matches = []
        for row in rows:
            try:
                matches.append(CacheMatch.from_row(row))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(
                    "cache_lookup_failed",
                    extra={
                        "task_type": task_type.value,
                        "cache_item_id": row.get("id") if isinstance(row, dict) else None,
                        "error": f"unparseable row: {str(e)[:200]}",
                    },
                )
        return matches

    def _is_fresh(self, match: CacheMatch) -> bool:
        if match.created_at is None:
            # Store already applied min_created_at
            return True
        return self._now() - match.created_at < self._max_age

    async def _search(
        self,
        question: str,
        task_type: TaskType,
        deadline: Optional[float] = None,
    ) -> tuple[list[CacheMatch], bool]:
        """Matches plus a flag telling whether the lookup was degraded."""
        embedding = await self._embed(question, deadline)
        if embedding is None:
            return [], True

        try:
            rows = await self._call_store(
                self._store.search_similar,
                embedding,
                similarity_threshold=self._threshold,
                match_count=self._match_count,
                min_created_at=self._now() - self._max_age,
                task_type=task_type.value,
                deadline=deadline,
            )
        except (CacheStoreError, asyncio.TimeoutError) as e:
            logger.warning(
                "cache_lookup_failed",
                extra={
                    "task_type": task_type.value,
                    "error": str(e)[:200] or e.__class__.__name__,
                },
            )
            return [], True

        rows = list(rows or [])
        matches = self._parse_rows(rows, task_type)
        return matches, len(matches) < len(rows)

    # --- Lookup ---

    async def find_similar_responses(
        self,
        question: str,
        task_type: TaskType | str = TaskType.GENERAL,
    ) -> list[CacheMatch]:
        """Raw similarity matches, best first. Empty on any failure."""
        matches, _ = await self._search(question, coerce_task_type(task_type))
        return sorted(matches, key=lambda m: m.similarity, reverse=True)

    async def lookup(
        self,
        question: str,
        task_type: TaskType | str = TaskType.GENERAL,
        *,
        user_id: Optional[str] = None,
        deadline: Optional[float] = None,
    ) -> Optional[CacheMatch]:
        """
        Best usable match for ``question``, or None.

        Threshold and age are re-checked here so a store that ignores
        them cannot produce a stale or weak hit. Records a hit or miss.
        ``deadline`` (on the cache clock) bounds the embedding, the
        search and the hit record together.
        """
        task_type = coerce_task_type(task_type)
        matches, degraded = await self._search(question, task_type, deadline)
        usable = [
            m for m in matches
            if m.similarity >= self._threshold and self._is_fresh(m)
        ]

        if not usable:
            self._metrics.record_cache_miss(degraded=degraded)
            logger.debug(
                "cache_miss",
                extra={"task_type": task_type.value, "degraded": degraded},
            )
            return None

        best = max(usable, key=lambda m: m.similarity)
        await self._metrics.record_cache_hit(
            best.id,
            user_id or self._user_id,
            similarity=best.similarity,
            timeout=self._budget(self._store_timeout, deadline) or 0.0,
        )
        logger.info(
            "cache_hit",
            extra={
                "cache_item_id": best.id,
                "task_type": task_type.value,
                "similarity": round(best.similarity, 4),
                "provider": best.provider,
            },
        )
        return best

    async def get_cached_response(
        self,
        question: str,
        task_type: TaskType | str = TaskType.GENERAL,
        *,
        user_id: Optional[str] = None,
        deadline: Optional[float] = None,
    ) -> Optional[str]:
        """Cached answer for a semantically similar question, or None."""
        match = await self.lookup(question, task_type, user_id=user_id, deadline=deadline)
        return match.answer if match else None

    # --- Store ---

    async def cache_response(
        self,
        question: str,
        answer: str,
        task_type: TaskType | str,
        model: str,
        provider: str,
        tokens_used: int = 0,
        metadata: Optional[dict[str, Any]] = None,
        user_id: Optional[str] = None,
        *,
        deadline: Optional[float] = None,
    ) -> Optional[str]:
        """
        Store a question/answer pair.

        Returns:
            The new cache item id, or None when nothing was stored
            (including when ``deadline`` leaves no time to store it).
        """
        task_type = coerce_task_type(task_type)
        embedding = await self._embed(question, deadline)
        if embedding is None:
            logger.warning(
                "cache_store_skipped",
                extra={"task_type": task_type.value, "provider": provider},
            )
            return None

        try:
            row = await self._call_store(
                self._store.insert_cache_item,
                {
                    "question": question,
                    "answer": answer,
                    "embedding": embedding,
                    "model_name": model,
                    "provider": provider,
                    "task_type": task_type.value,
                    "tokens_used": tokens_used,
                    "user_id": user_id or self._user_id,
                    "metadata": metadata or {},
                    "created_at": self._now().isoformat(),
                },
                deadline=deadline,
            )
        except (CacheStoreError, asyncio.TimeoutError) as e:
            logger.warning(
                "cache_store_failed",
                extra={
                    "provider": provider,
                    "error": str(e)[:200] or e.__class__.__name__,
                },
            )
            return None

        self._metrics.record_cache_store()
        item_id = row.get("id") if row else None
        logger.debug(
            "cache_stored",
            extra={"cache_item_id": item_id, "task_type": task_type.value},
        )
        return item_id

    # --- Maintenance ---

    async def cleanup_expired_cache(self) -> int:
        """Delete items older than ``max_cache_age``. Returns number removed."""
        cutoff = self._now() - self._max_age
        try:
            removed = await self._call_store(self._store.delete_items_older_than, cutoff)
        except (CacheStoreError, asyncio.TimeoutError) as e:
            logger.error("cache_cleanup_failed", extra={"error": str(e)[:200]})
            return 0
        logger.info(
            "cache_cleanup",
            extra={"removed": removed, "cutoff": cutoff.isoformat()},
        )
        return removed

    async def invalidate_cache_items(self, ids: list[str]) -> int:
        """Remove specific cache items. Returns number removed."""
        if not ids:
            return 0
        try:
            removed = await self._call_store(self._store.delete_items, list(ids))
        except (CacheStoreError, asyncio.TimeoutError) as e:
            logger.error(
                "cache_invalidate_failed",
                extra={"count": len(ids), "error": str(e)[:200]},
            )
            return 0
        logger.info("cache_invalidated", extra={"removed": removed})
        return removed

    # --- Stats ---

    async def get_cache_stats(self, user_id: Optional[str] = None) -> dict[str, Any]:
        """
        Store totals plus this process's counters.

        Hits are counted for one user (default: the cache's user id) over
        the last ``HIT_STATS_WINDOW``. ``hits_per_item`` is those hits over
        stored items and can exceed 1 when items are reused; ``hit_rate``
        is this process's hits over lookups.
        """
        local = self._metrics.get_stats()["cache"]
        user_id = user_id or self._user_id
        since = self._now() - HIT_STATS_WINDOW
        try:
            total_items = await self._call_store(self._store.count_cache_items)
            total_hits = await self._call_store(
                self._store.count_cache_hits, user_id=user_id, since=since
            )
            hit_tokens = await self._call_store(
                self._store.get_hit_token_usage, user_id=user_id, since=since
            )
        except Exception as e:
            logger.error(
                "cache_stats_failed",
                extra={"error": str(e)[:200] or e.__class__.__name__},
            )
            total_items, total_hits, hit_tokens = 0, 0, []

        return {
            "total_items": total_items,
            "total_hits": total_hits,
            "hits_per_item": total_hits / total_items if total_items > 0 else 0.0,
            "hit_rate": self._metrics.hit_rate,
            "average_tokens_saved": (
                sum(hit_tokens) / len(hit_tokens) if hit_tokens else 0.0
            ),
            "similarity_threshold": self._threshold,
            "max_cache_age_seconds": int(self._max_age.total_seconds()),
            "local": local,
        }


# ---------------------------------------------------------------------------
# Convenience: cached_route
# ---------------------------------------------------------------------------

async def cached_route(
    cache: SemanticCache,
    router: Any,  # ModelRouter
    request: LLMRequest,
) -> LLMResponse:
    """
    Route a request through the semantic cache.

    Checks the cache first, calls the router on a miss and stores the
    fresh answer. One deadline, taken from ``router.deadline_for`` when
    the call starts, bounds the lookup, the provider calls and the store:
    a slow cache eats into the provider budget, and an answer that leaves
    no time is returned without being cached. Router errors
    (AllProvidersFailedError, RequestTimeoutError) propagate; cache
    errors never do.

    The cache and the router must share a clock (RelayService wires the
    same one into both).

    Returns:
        LLMResponse, with ``cache_hit=True`` and zero cost when served
        from the cache.
    """
    started = time.perf_counter()
    deadline = router.deadline_for(request)
    match = await cache.lookup(
        request.prompt,
        request.task_type,
        user_id=request.user_id,
        deadline=deadline,
    )
    if match is not None:
        return LLMResponse(
            content=match.answer,
            provider=match.provider or "cache",
            model=match.model or "",
            tokens_used=0,
            response_time_ms=(time.perf_counter() - started) * 1000,
            cost=0.0,
            confidence=match.similarity,
            cache_hit=True,
            cache_similarity=match.similarity,
        )

    response = await router.route(request, deadline=deadline)

    await cache.cache_response(
        question=request.prompt,
        answer=response.content,
        task_type=request.task_type,
        model=response.model,
        provider=response.provider,
        tokens_used=response.tokens_used,
        metadata={"request_id": request.request_id, "fallback_used": response.fallback_used},
        user_id=request.user_id,
        deadline=deadline,
    )
    return response
