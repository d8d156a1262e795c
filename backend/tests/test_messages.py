"""Tests for MessageStore."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from eaa_assistant.core.exceptions import (
    ModelServiceError,
    NotFoundError,
    StorageError,
    ValidationError,
)
from eaa_assistant.core.task_queue import BackgroundTaskQueue
from eaa_assistant.db.memory_storage import InMemoryStorage
from eaa_assistant.db.storage import MESSAGES_TABLE
from eaa_assistant.memory.messages import MessageStore
from eaa_assistant.memory.sessions import SessionStore


@pytest.fixture
def sessions(storage: InMemoryStorage) -> SessionStore:
    return SessionStore(storage)


@pytest.fixture
def notifier() -> MagicMock:
    notifier = MagicMock()
    notifier.notify_message_threshold = AsyncMock(return_value="email-1")
    return notifier


@pytest.fixture
def messages(storage, sessions, llm, task_queue, notifier) -> MessageStore:
    return MessageStore(storage, sessions, llm, task_queue, notifier, escalation_threshold=4)


@pytest.mark.asyncio
async def test_append_pair_orders_user_then_assistant(
    messages: MessageStore, sessions: SessionStore
) -> None:
    await sessions.create_with_id("sess-1", "user-1")

    user_id, assistant_id = await messages.append_pair("sess-1", "Q", "A")
    history = await messages.list_for_session("sess-1")

    assert [m.role for m in history] == ["user", "assistant"]
    assert [m.content for m in history] == ["Q", "A"]
    assert [m.id for m in history] == [user_id, assistant_id]


@pytest.mark.asyncio
async def test_append_pair_increments_message_count(
    messages: MessageStore, sessions: SessionStore
) -> None:
    await sessions.create_with_id("sess-1", "user-1")
    await messages.append_pair("sess-1", "Q1", "A1")
    await messages.append_pair("sess-1", "Q2", "A2")
    assert (await sessions.get("sess-1")).message_count == 4


@pytest.mark.asyncio
async def test_append_stores_user_id_and_embedding(
    messages: MessageStore, sessions: SessionStore, storage: InMemoryStorage
) -> None:
    await sessions.create_with_id("sess-1", "user-1")
    await messages.append("sess-1", "user", "What is the EAA?", {"type": "user_question"})

    row = storage.rows(MESSAGES_TABLE)[0]
    assert row["user_id"] == "user-1"
    assert row["embedding"]
    assert row["metadata"] == {"type": "user_question"}


@pytest.mark.asyncio
async def test_append_without_embedding_when_model_fails(
    messages: MessageStore, sessions: SessionStore, storage: InMemoryStorage, llm
) -> None:
    await sessions.create_with_id("sess-1", "user-1")
    llm.embed.side_effect = ModelServiceError("down", operation="embed")

    await messages.append("sess-1", "user", "Hello")

    assert storage.rows(MESSAGES_TABLE)[0]["embedding"] is None


@pytest.mark.asyncio
async def test_append_validates_input(messages: MessageStore, sessions: SessionStore) -> None:
    await sessions.create_with_id("sess-1", "user-1")
    with pytest.raises(ValidationError):
        await messages.append("sess-1", "user", "   ")
    with pytest.raises(ValidationError):
        await messages.append("sess-1", "system", "hi")
    with pytest.raises(NotFoundError):
        await messages.append("missing", "user", "hi")


@pytest.mark.asyncio
async def test_list_for_session_limit_keeps_latest_oldest_first(
    messages: MessageStore, sessions: SessionStore
) -> None:
    await sessions.create_with_id("sess-1", "user-1")
    for i in range(3):
        await messages.append_pair("sess-1", f"Q{i}", f"A{i}")

    recent = await messages.list_for_session("sess-1", limit=3)
    assert [m.content for m in recent] == ["A1", "Q2", "A2"]


@pytest.mark.asyncio
async def test_find_similar_respects_floor_and_order(
    messages: MessageStore, sessions: SessionStore, storage: InMemoryStorage
) -> None:
    await sessions.create_with_id("sess-1", "user-1")
    for message_id, vector in (
        ("exact", [1.0, 0.0, 0.0]),
        ("near", [0.8, 0.6, 0.0]),
        ("weak", [0.5, 0.5, 0.7]),
        ("orthogonal", [0.0, 0.0, 1.0]),
    ):
        await storage.insert(
            MESSAGES_TABLE,
            {
                "id": message_id,
                "session_id": "sess-1",
                "user_id": "user-1",
                "role": "user",
                "content": message_id,
                "embedding": vector,
                "created_at": "2025-01-01T00:00:00+00:00",
            },
        )

    found = await messages.find_similar([1.0, 0.0, 0.0], "user-1", limit=5, min_similarity=0.7)

    assert [m.id for m in found] == ["exact", "near"]
    assert all(m.similarity is not None and m.similarity >= 0.7 for m in found)
    similarities = [m.similarity for m in found]
    assert similarities == sorted(similarities, reverse=True)


@pytest.mark.asyncio
async def test_find_similar_filters_rows_below_floor_from_backend(sessions, llm) -> None:
    storage = AsyncMock()
    storage.search.return_value = [
        {"id": "a", "session_id": "s", "role": "user", "content": "a", "similarity": 0.65},
        {"id": "b", "session_id": "s", "role": "user", "content": "b", "similarity": 0.9},
        {"id": "c", "session_id": "s", "role": "user", "content": "c", "similarity": 0.75},
    ]
    store = MessageStore(storage, sessions, llm)

    found = await store.find_similar([0.1], "user-1", limit=5, min_similarity=0.7)
    assert [m.id for m in found] == ["b", "c"]


@pytest.mark.asyncio
async def test_find_similar_storage_failure_returns_empty(sessions, llm) -> None:
    storage = AsyncMock()
    storage.search.side_effect = StorageError("rpc failed")
    store = MessageStore(storage, sessions, llm)
    assert await store.find_similar([0.1], "user-1") == []


@pytest.mark.asyncio
async def test_threshold_crossing_queues_one_notice(
    storage: InMemoryStorage, sessions: SessionStore, llm, notifier: MagicMock
) -> None:
    queue = BackgroundTaskQueue(workers=1, max_attempts=1)
    await queue.start()
    store = MessageStore(storage, sessions, llm, queue, notifier, escalation_threshold=4)
    await sessions.create_with_id("sess-1", "user-1")

    for i in range(4):
        await store.append_pair("sess-1", f"Q{i}", f"A{i}")
    await queue.stop(drain=True)

    notifier.notify_message_threshold.assert_awaited_once_with("sess-1", 4)
