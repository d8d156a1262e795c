"""Tests for DocumentRetriever and source formatting."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from eaa_assistant.core.exceptions import StorageError
from eaa_assistant.db.memory_storage import InMemoryStorage
from eaa_assistant.db.storage import DOCUMENTS_TABLE
from eaa_assistant.services.retrieval import (
    NO_RESULTS_TEXT,
    DocumentChunk,
    DocumentRetriever,
    Source,
    format_rag_context,
    format_sources,
    merge_sources,
    source_title,
    trim_chunks,
)


def _chunk(chunk_id: str, similarity: float, **kwargs) -> DocumentChunk:
    return DocumentChunk(id=chunk_id, content=f"text {chunk_id}", similarity=similarity, **kwargs)


async def _add_chunk(
    storage: InMemoryStorage, chunk_id: str, embedding: list[float], dataset_id: str = "eaa"
) -> None:
    await storage.insert(
        DOCUMENTS_TABLE,
        {
            "id": chunk_id,
            "dataset_id": dataset_id,
            "content": f"Article {chunk_id}",
            "section_title": f"Article {chunk_id}",
            "embedding": embedding,
        },
    )


class TestFormatting:
    def test_strong_top_hit_keeps_three(self) -> None:
        chunks = [_chunk(str(i), 0.95 - i * 0.01) for i in range(6)]
        assert len(trim_chunks(chunks)) == 3

    def test_weaker_hits_keep_five(self) -> None:
        chunks = [_chunk(str(i), 0.85 - i * 0.01) for i in range(6)]
        assert len(trim_chunks(chunks)) == 5
        assert trim_chunks([]) == []

    def test_sources_prefer_strong_matches(self) -> None:
        chunks = [_chunk("a", 0.9), _chunk("b", 0.82), _chunk("c", 0.79)]
        assert [s.id for s in format_sources(chunks)] == ["a", "b"]

    def test_sources_fall_back_to_first_three(self) -> None:
        chunks = [_chunk(str(i), 0.7) for i in range(5)]
        assert [s.id for s in format_sources(chunks)] == ["0", "1", "2"]

    def test_source_title_precedence(self) -> None:
        assert source_title(_chunk("abcdef", 0.9, section_title="Article 4")) == "Article 4"
        chunk = _chunk("abcdef", 0.9, metadata={"path": "docs/eaa/annex1.md"})
        assert source_title(chunk) == "annex1.md"
        assert source_title(_chunk("abcdef", 0.9)) == "Section abcd"
        assert source_title(DocumentChunk(id="", content=None)) == "Source without title"

    def test_structured_content_is_serialized(self) -> None:
        chunk = DocumentChunk(id="x", content={"requirement": "alt text"})
        assert chunk.text == '{"requirement": "alt text"}'
        assert DocumentChunk(id="y", content=None).text == "No information available"

    def test_merge_sources_keeps_first_occurrence(self) -> None:
        a = Source("A", 0.9, "1", "")
        b = Source("B", 0.8, "2", "")
        a_again = Source("A", 0.95, "1", "")
        assert merge_sources([[a, b], [a_again]]) == [a, b]

    def test_rag_context(self) -> None:
        context = format_rag_context([_chunk("1", 0.9), _chunk("2", 0.8)], "What is the EAA?")
        assert "Excerpt 1:\ntext 1" in context
        assert "Excerpt 2:\ntext 2" in context
        assert context.endswith('User question: "What is the EAA?"')

        assert NO_RESULTS_TEXT in format_rag_context([], "What is the EAA?")


class TestDocumentRetriever:
    @pytest.mark.asyncio
    async def test_search_filters_by_threshold_and_dataset(
        self, storage: InMemoryStorage, llm
    ) -> None:
        await _add_chunk(storage, "1", [1.0, 0.0])
        await _add_chunk(storage, "2", [1.0, 1.0])
        await _add_chunk(storage, "3", [1.0, 0.0], dataset_id="other")
        retriever = DocumentRetriever(storage, llm)

        result = await retriever.search("ignored", query_vector=[1.0, 0.0])

        assert [c.id for c in result.chunks] == ["1"]
        assert result.chunks[0].similarity == pytest.approx(1.0)
        assert result.sources[0].title == "Article 1"
        assert result.embedding_ms == 0
        llm.embed.assert_not_called()

    @pytest.mark.asyncio
    async def test_search_embeds_query_when_no_vector(self, storage: InMemoryStorage, llm) -> None:
        retriever = DocumentRetriever(storage, llm)

        result = await retriever.search("What is the EAA?", threshold=0.5)

        llm.embed.assert_awaited_once_with("What is the EAA?")
        assert result.no_results

    @pytest.mark.asyncio
    async def test_search_retries_once(self, llm) -> None:
        storage = MagicMock()
        storage.search = AsyncMock(
            side_effect=[StorageError("timeout"), [{"id": "1", "content": "c", "similarity": 0.9}]]
        )

        result = await DocumentRetriever(storage, llm).search("q", query_vector=[1.0])

        assert storage.search.await_count == 2
        assert [c.id for c in result.chunks] == ["1"]

    @pytest.mark.asyncio
    async def test_search_raises_after_second_failure(self, llm) -> None:
        storage = MagicMock()
        storage.search = AsyncMock(side_effect=StorageError("down"))

        with pytest.raises(StorageError):
            await DocumentRetriever(storage, llm).search("q", query_vector=[1.0])
