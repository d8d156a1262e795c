"""Process-local storage backend.

Used with ``STORAGE_BACKEND=memory`` for local runs without a database and
as the storage fixture in tests. Rows live in plain dicts keyed by table.
"""

from __future__ import annotations

import copy
import logging
from collections import defaultdict
from collections.abc import Sequence
from typing import Any

from eaa_assistant.core.exceptions import StorageError
from eaa_assistant.db.storage import Row, cosine_similarity, rank_by_similarity

logger = logging.getLogger(__name__)


def _matches(row: Row, filters: dict[str, Any] | None) -> bool:
    if not filters:
        return True
    return all(row.get(key) == value for key, value in filters.items())


class InMemoryStorage:
    """Storage implementation backed by Python lists."""

    def __init__(self) -> None:
        self._tables: dict[str, list[Row]] = defaultdict(list)

    def rows(self, table: str) -> list[Row]:
        """Direct view of a table (tests and debugging)."""
        return self._tables[table]

    async def select(
        self,
        table: str,
        filters: dict[str, Any] | None = None,
        *,
        order_by: str | None = None,
        desc: bool = False,
        limit: int | None = None,
    ) -> list[Row]:
        result = [copy.deepcopy(r) for r in self._tables[table] if _matches(r, filters)]
        if order_by:
            # Nulls last in both directions, like Postgres with NULLS LAST.
            present = [r for r in result if r.get(order_by) is not None]
            missing = [r for r in result if r.get(order_by) is None]
            present.sort(key=lambda r: r[order_by], reverse=desc)
            result = present + missing
        if limit is not None:
            result = result[:limit]
        return result

    async def insert(self, table: str, row: Row) -> Row:
        row_id = row.get("id")
        if row_id is not None and any(r.get("id") == row_id for r in self._tables[table]):
            raise StorageError(
                f"duplicate key value violates unique constraint on {table}.id", table=table
            )
        stored = copy.deepcopy(row)
        self._tables[table].append(stored)
        return copy.deepcopy(stored)

    async def upsert(self, table: str, row: Row, on_conflict: str) -> Row:
        key = row.get(on_conflict)
        for existing in self._tables[table]:
            if existing.get(on_conflict) == key:
                existing.update(copy.deepcopy(row))
                return copy.deepcopy(existing)
        return await self.insert(table, row)

    async def update(self, table: str, values: Row, filters: dict[str, Any]) -> list[Row]:
        updated = []
        for existing in self._tables[table]:
            if _matches(existing, filters):
                existing.update(copy.deepcopy(values))
                updated.append(copy.deepcopy(existing))
        return updated

    async def delete(self, table: str, filters: dict[str, Any]) -> int:
        before = len(self._tables[table])
        self._tables[table] = [r for r in self._tables[table] if not _matches(r, filters)]
        return before - len(self._tables[table])

    async def search(
        self,
        table: str,
        vector: Sequence[float],
        scope: dict[str, Any],
        limit: int,
        threshold: float,
    ) -> list[Row]:
        scored = []
        for row in self._tables[table]:
            embedding = row.get("embedding")
            if not embedding or not _matches(row, scope):
                continue
            candidate = copy.deepcopy(row)
            candidate["similarity"] = cosine_similarity(vector, embedding)
            scored.append(candidate)
        return rank_by_similarity(scored, threshold, limit)
