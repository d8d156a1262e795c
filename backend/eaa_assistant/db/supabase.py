"""Supabase-backed storage.

The synchronous supabase-py query builder is driven from worker threads so
storage calls never block the event loop. All failures are translated into
:class:`StorageError`; a shared circuit breaker stops hammering the database
while it is down.
"""

import asyncio
import logging
from collections.abc import Callable, Sequence
from typing import Any, TypeVar, cast

from eaa_assistant.core.circuit_breaker import CircuitBreaker, CircuitBreakerOpen
from eaa_assistant.core.config import Settings
from eaa_assistant.core.exceptions import StorageError
from eaa_assistant.db.storage import Row, rank_by_similarity
from supabase import Client, create_client

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Vector search is served by Postgres functions named after the table.
_SEARCH_FUNCTIONS: dict[str, str] = {
    "chat_messages": "match_chat_messages",
    "document_chunks": "match_documents",
}


def create_supabase_client(settings: Settings) -> Client:
    """Build a service-role Supabase client from settings.

    Raises:
        StorageError: If client initialization fails.
    """
    try:
        client = create_client(
            settings.SUPABASE_URL,
            settings.SUPABASE_SERVICE_ROLE_KEY.get_secret_value(),
        )
    except Exception as e:
        logger.exception("Failed to initialize Supabase client")
        raise StorageError(f"Failed to initialize database connection: {e}") from e
    logger.info("Supabase client initialized successfully")
    return client


class SupabaseStorage:
    """Storage implementation over a Supabase ``Client``."""

    def __init__(self, client: Client, circuit_breaker: CircuitBreaker | None = None) -> None:
        self._client = client
        self._breaker = circuit_breaker or CircuitBreaker("supabase")

    async def _execute(self, table: str, operation: str, build: Callable[[], T]) -> T:
        try:
            self._breaker.check()
        except CircuitBreakerOpen as e:
            raise StorageError(str(e), table=table) from e
        try:
            result = await asyncio.to_thread(build)
        except Exception as e:
            self._breaker.record_failure()
            logger.warning(
                "Supabase %s failed",
                operation,
                extra={"table": table, "error": str(e)},
            )
            raise StorageError(f"Failed to {operation} {table}: {e}", table=table) from e
        self._breaker.record_success()
        return result

    async def select(
        self,
        table: str,
        filters: dict[str, Any] | None = None,
        *,
        order_by: str | None = None,
        desc: bool = False,
        limit: int | None = None,
    ) -> list[Row]:
        def build() -> Any:
            query = self._client.table(table).select("*")
            for key, value in (filters or {}).items():
                query = query.eq(key, value)
            if order_by:
                query = query.order(order_by, desc=desc)
            if limit is not None:
                query = query.limit(limit)
            return query.execute()

        response = await self._execute(table, "select", build)
        return cast(list[Row], response.data or [])

    async def insert(self, table: str, row: Row) -> Row:
        response = await self._execute(
            table, "insert", lambda: self._client.table(table).insert(row).execute()
        )
        data = response.data or [row]
        return cast(Row, data[0])

    async def upsert(self, table: str, row: Row, on_conflict: str) -> Row:
        response = await self._execute(
            table,
            "upsert",
            lambda: self._client.table(table).upsert(row, on_conflict=on_conflict).execute(),
        )
        data = response.data or [row]
        return cast(Row, data[0])

    async def update(self, table: str, values: Row, filters: dict[str, Any]) -> list[Row]:
        def build() -> Any:
            query = self._client.table(table).update(values)
            for key, value in filters.items():
                query = query.eq(key, value)
            return query.execute()

        response = await self._execute(table, "update", build)
        return cast(list[Row], response.data or [])

    async def delete(self, table: str, filters: dict[str, Any]) -> int:
        def build() -> Any:
            query = self._client.table(table).delete()
            for key, value in filters.items():
                query = query.eq(key, value)
            return query.execute()

        response = await self._execute(table, "delete", build)
        return len(response.data or [])

    async def search(
        self,
        table: str,
        vector: Sequence[float],
        scope: dict[str, Any],
        limit: int,
        threshold: float,
    ) -> list[Row]:
        function = _SEARCH_FUNCTIONS.get(table, f"match_{table}")
        params = {
            "query_embedding": list(vector),
            "similarity_threshold": threshold,
            "match_count": limit,
            **scope,
        }
        response = await self._execute(
            table, "search", lambda: self._client.rpc(function, params).execute()
        )
        # The SQL function already filters, but the ranking contract is enforced here too.
        return rank_by_similarity(cast(list[Row], response.data or []), threshold, limit)
