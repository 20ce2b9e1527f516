"""
Supabase client wrapper for LLM Relay.

Typed operations over the cache tables and the pgvector similarity RPC:

- llm_response_cache   — one row per cached question/answer + embedding
- llm_cache_metrics    — append-only cache-hit log
- llm_provider_metrics — append-only provider call outcomes
- match_question_embeddings(...) — cosine-similarity RPC

All methods are synchronous (supabase-py); async callers run them in a
worker thread. Failures surface as CacheLookupError / CacheWriteError.
"""

from __future__ import annotations

import os
from datetime import datetime
from typing import Any, Optional

from supabase import Client, create_client

from relay.exceptions import CacheLookupError, CacheWriteError

CACHE_TABLE = "llm_response_cache"
CACHE_METRICS_TABLE = "llm_cache_metrics"
PROVIDER_METRICS_TABLE = "llm_provider_metrics"
MATCH_FUNCTION = "match_question_embeddings"


class RelayDB:
    """
    Cache persistence and vector search backed by Supabase.

    Uses the service role key; user scoping is applied in application
    code through the ``user_id`` column.
    """

    def __init__(self, client: Optional[Client] = None):
        if client is None:
            url = os.environ.get("SUPABASE_URL")
            key = os.environ.get("SUPABASE_SERVICE_KEY")
            if not url or not key:
                raise EnvironmentError(
                    "SUPABASE_URL and SUPABASE_SERVICE_KEY must be set"
                )
            client = create_client(url, key)
        self.client: Client = client

    # ------------------------------------------------------------------
    # Similarity Search
    # ------------------------------------------------------------------

    def search_similar(
        self,
        query_embedding: list[float],
        *,
        similarity_threshold: float,
        match_count: int,
        min_created_at: datetime,
        task_type: str,
    ) -> list[dict]:
        """
        Cosine-similarity search over cached questions.

        Returns rows ``{id, question, answer, similarity, model_name,
        provider, created_at}`` ranked by similarity, all at or above
        the threshold.
        """
        try:
            result = self.client.rpc(
                MATCH_FUNCTION,
                {
                    "query_embedding": query_embedding,
                    "similarity_threshold": similarity_threshold,
                    "match_count": match_count,
                    "min_created_at": min_created_at.isoformat(),
                    "task_type": task_type,
                },
            ).execute()
        except Exception as e:
            raise CacheLookupError(
                f"Similarity search failed: {e}", operation="search_similar"
            ) from e
        return result.data or []

    # ------------------------------------------------------------------
    # Cache Items
    # ------------------------------------------------------------------

    def insert_cache_item(self, data: dict[str, Any]) -> dict:
        """Insert a cache row. Returns the stored row (with its id)."""
        try:
            result = (
                self.client.table(CACHE_TABLE)
                .insert(data)
                .execute()
            )
        except Exception as e:
            raise CacheWriteError(
                f"Cache insert failed: {e}", operation="insert_cache_item"
            ) from e
        return result.data[0] if result.data else {}

    def delete_items_older_than(self, cutoff: datetime) -> int:
        """Delete every cache row created before ``cutoff``. Returns count."""
        try:
            result = (
                self.client.table(CACHE_TABLE)
                .delete()
                .lt("created_at", cutoff.isoformat())
                .execute()
            )
        except Exception as e:
            raise CacheWriteError(
                f"Cache cleanup failed: {e}", operation="delete_items_older_than"
            ) from e
        return len(result.data or [])

    def delete_items(self, ids: list[str]) -> int:
        """Delete cache rows by id. Returns count."""
        if not ids:
            return 0
        try:
            result = (
                self.client.table(CACHE_TABLE)
                .delete()
                .in_("id", ids)
                .execute()
            )
        except Exception as e:
            raise CacheWriteError(
                f"Cache invalidation failed: {e}", operation="delete_items"
            ) from e
        return len(result.data or [])

    def count_cache_items(self) -> int:
        result = (
            self.client.table(CACHE_TABLE)
            .select("id", count="exact")
            .execute()
        )
        return result.count or 0

    # ------------------------------------------------------------------
    # Metrics
    # ------------------------------------------------------------------

    def record_cache_hit(
        self,
        cache_item_id: str,
        user_id: str,
        timestamp: datetime,
    ) -> None:
        self.client.table(CACHE_METRICS_TABLE).insert({
            "cache_item_id": cache_item_id,
            "user_id": user_id,
            "timestamp": timestamp.isoformat(),
        }).execute()

    def record_provider_outcome(self, data: dict[str, Any]) -> None:
        self.client.table(PROVIDER_METRICS_TABLE).insert(data).execute()

    def _hits_query(
        self,
        columns: str,
        user_id: Optional[str],
        since: Optional[datetime],
        **select_kwargs: Any,
    ):
        query = self.client.table(CACHE_METRICS_TABLE).select(columns, **select_kwargs)
        if user_id is not None:
            query = query.eq("user_id", user_id)
        if since is not None:
            query = query.gte("timestamp", since.isoformat())
        return query

    def count_cache_hits(
        self,
        *,
        user_id: Optional[str] = None,
        since: Optional[datetime] = None,
    ) -> int:
        """Recorded hits, optionally for one user and since a point in time."""
        result = self._hits_query("id", user_id, since, count="exact").execute()
        return result.count or 0

    def get_hit_token_usage(
        self,
        limit: int = 1000,
        *,
        user_id: Optional[str] = None,
        since: Optional[datetime] = None,
    ) -> list[int]:
        """tokens_used of the cache items behind recent hits."""
        result = (
            self._hits_query(f"{CACHE_TABLE}!inner(tokens_used)", user_id, since)
            .limit(limit)
            .execute()
        )
        tokens = []
        for row in result.data or []:
            item = row.get(CACHE_TABLE) or {}
            tokens.append(int(item.get("tokens_used") or 0))
        return tokens
