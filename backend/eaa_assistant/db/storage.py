"""Storage capability consumed by the conversation engine."""

from __future__ import annotations

import math
from collections.abc import Sequence
from datetime import UTC, datetime
from typing import Any, Protocol

Row = dict[str, Any]

# Tables used by the engine
SESSIONS_TABLE = "chat_sessions"
MESSAGES_TABLE = "chat_messages"
FACTS_TABLE = "user_facts"
SUMMARIES_TABLE = "chat_summaries"
FRUSTRATION_TABLE = "frustration_analysis"
DOCUMENTS_TABLE = "document_chunks"


class Storage(Protocol):
    """Relational CRUD plus one vector-similarity query.

    Implementations raise :class:`~eaa_assistant.core.exceptions.StorageError`
    for any backend failure.
    """

    async def select(
        self,
        table: str,
        filters: dict[str, Any] | None = None,
        *,
        order_by: str | None = None,
        desc: bool = False,
        limit: int | None = None,
    ) -> list[Row]: ...

    async def insert(self, table: str, row: Row) -> Row: ...

    async def upsert(self, table: str, row: Row, on_conflict: str) -> Row: ...

    async def update(self, table: str, values: Row, filters: dict[str, Any]) -> list[Row]: ...

    async def delete(self, table: str, filters: dict[str, Any]) -> int: ...

    async def search(
        self,
        table: str,
        vector: Sequence[float],
        scope: dict[str, Any],
        limit: int,
        threshold: float,
    ) -> list[Row]:
        """Rows within ``scope`` ranked by similarity, descending.

        Every returned row carries a ``similarity`` key >= ``threshold``.
        """
        ...


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity of two vectors; 0.0 when either is empty or zero."""
    if not a or not b or len(a) != len(b):
        return 0.0
    dot = sum(x * y for x, y in zip(a, b, strict=True))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return dot / (norm_a * norm_b)


def rank_by_similarity(rows: list[Row], threshold: float, limit: int) -> list[Row]:
    """Drop rows under ``threshold`` and order the rest best-first."""
    kept = [r for r in rows if float(r.get("similarity") or 0.0) >= threshold]
    kept.sort(key=lambda r: float(r["similarity"]), reverse=True)
    return kept[:limit]


def now_iso() -> str:
    """Current UTC time as stored in timestamp columns."""
    return datetime.now(UTC).isoformat()


def parse_timestamp(value: Any) -> datetime:
    """Read a timestamp column; missing values become "now"."""
    if isinstance(value, datetime):
        return value
    if isinstance(value, str) and value:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    return datetime.now(UTC)
