"""Tests for the in-memory storage backend and similarity helpers."""

import pytest

from eaa_assistant.core.exceptions import StorageError
from eaa_assistant.db.memory_storage import InMemoryStorage
from eaa_assistant.db.storage import cosine_similarity, rank_by_similarity


def test_cosine_similarity_basics() -> None:
    assert cosine_similarity([1.0, 0.0], [1.0, 0.0]) == pytest.approx(1.0)
    assert cosine_similarity([1.0, 0.0], [0.0, 1.0]) == pytest.approx(0.0)
    assert cosine_similarity([], [1.0]) == 0.0
    assert cosine_similarity([0.0, 0.0], [1.0, 1.0]) == 0.0


def test_rank_by_similarity_filters_and_orders() -> None:
    rows = [
        {"id": "a", "similarity": 0.75},
        {"id": "b", "similarity": 0.95},
        {"id": "c", "similarity": 0.5},
    ]
    ranked = rank_by_similarity(rows, threshold=0.7, limit=5)
    assert [r["id"] for r in ranked] == ["b", "a"]


@pytest.mark.asyncio
async def test_insert_rejects_duplicate_id(storage: InMemoryStorage) -> None:
    await storage.insert("chat_sessions", {"id": "s1"})
    with pytest.raises(StorageError):
        await storage.insert("chat_sessions", {"id": "s1"})


@pytest.mark.asyncio
async def test_select_filters_orders_and_limits(storage: InMemoryStorage) -> None:
    for i, ts in enumerate(["2025-01-02", "2025-01-01", "2025-01-03"]):
        await storage.insert("chat_messages", {"id": str(i), "session_id": "s", "created_at": ts})
    await storage.insert(
        "chat_messages", {"id": "other", "session_id": "x", "created_at": "2025-01-04"}
    )

    rows = await storage.select(
        "chat_messages", {"session_id": "s"}, order_by="created_at", desc=True, limit=2
    )
    assert [r["id"] for r in rows] == ["2", "0"]


@pytest.mark.asyncio
async def test_select_returns_copies(storage: InMemoryStorage) -> None:
    await storage.insert("user_facts", {"id": "f", "fact_value": "bank"})
    rows = await storage.select("user_facts")
    rows[0]["fact_value"] = "changed"
    assert storage.rows("user_facts")[0]["fact_value"] == "bank"


@pytest.mark.asyncio
async def test_upsert_replaces_on_conflict_key(storage: InMemoryStorage) -> None:
    for summary in ("one", "two"):
        await storage.upsert(
            "chat_summaries", {"session_id": "s", "summary": summary}, on_conflict="session_id"
        )
    rows = storage.rows("chat_summaries")
    assert len(rows) == 1
    assert rows[0]["summary"] == "two"


@pytest.mark.asyncio
async def test_update_and_delete(storage: InMemoryStorage) -> None:
    await storage.insert("chat_sessions", {"id": "s1", "message_count": 0})
    await storage.insert("chat_sessions", {"id": "s2", "message_count": 0})

    updated = await storage.update("chat_sessions", {"message_count": 2}, {"id": "s1"})
    assert updated[0]["message_count"] == 2
    assert await storage.delete("chat_sessions", {"id": "s1"}) == 1
    assert [r["id"] for r in storage.rows("chat_sessions")] == ["s2"]


@pytest.mark.asyncio
async def test_search_scopes_and_ranks(storage: InMemoryStorage) -> None:
    for row_id, user_id, embedding in [
        ("same", "u1", [1.0, 0.0]),
        ("close", "u1", [0.9, 0.1]),
        ("far", "u1", [0.0, 1.0]),
        ("foreign", "u2", [1.0, 0.0]),
        ("unembedded", "u1", None),
    ]:
        await storage.insert(
            "chat_messages", {"id": row_id, "user_id": user_id, "embedding": embedding}
        )

    rows = await storage.search(
        "chat_messages", [1.0, 0.0], {"user_id": "u1"}, limit=5, threshold=0.5
    )

    assert [r["id"] for r in rows] == ["same", "close"]
    assert rows[0]["similarity"] >= rows[1]["similarity"] >= 0.5
