"""Reference-text retrieval over the ``document_chunks`` table."""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from eaa_assistant.core.exceptions import StorageError
from eaa_assistant.db.storage import DOCUMENTS_TABLE, Storage

if TYPE_CHECKING:
    from eaa_assistant.core.llm import LanguageModel

logger = logging.getLogger(__name__)

# A very strong top hit means a few chunks are enough.
STRONG_MATCH = 0.9
STRONG_MATCH_CHUNKS = 3
DEFAULT_CHUNKS = 5
SOURCE_RELEVANCE = 0.8
FALLBACK_SOURCES = 3
PREVIEW_LENGTH = 150
UNTITLED_SOURCE = "Source without title"
NO_RESULTS_TEXT = (
    "Unfortunately, no relevant information was found in the knowledge base for this request."
)


@dataclass
class DocumentChunk:
    id: str
    content: Any
    similarity: float = 0.0
    section_title: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DocumentChunk:
        return cls(
            id=str(data.get("id", "")),
            content=data.get("content"),
            similarity=float(data.get("similarity") or 0.0),
            section_title=data.get("section_title"),
            metadata=data.get("metadata") or {},
        )

    @property
    def text(self) -> str:
        """Content as prompt-ready text, structured payloads serialized."""
        if self.content is None:
            return "No information available"
        if isinstance(self.content, str):
            return self.content
        return json.dumps(self.content, ensure_ascii=False)


@dataclass
class Source:
    title: str
    relevance: float
    id: str
    text_preview: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "title": self.title,
            "relevance": self.relevance,
            "id": self.id,
            "text_preview": self.text_preview,
        }


@dataclass
class RetrievalResult:
    chunks: list[DocumentChunk]
    sources: list[Source]
    embedding_ms: int = 0
    search_ms: int = 0

    @property
    def no_results(self) -> bool:
        return not self.chunks


def trim_chunks(chunks: list[DocumentChunk]) -> list[DocumentChunk]:
    if not chunks:
        return []
    keep = STRONG_MATCH_CHUNKS if chunks[0].similarity > STRONG_MATCH else DEFAULT_CHUNKS
    return chunks[:keep]


def source_title(chunk: DocumentChunk) -> str:
    metadata = chunk.metadata
    if chunk.section_title:
        return chunk.section_title
    for key in ("title", "section_title", "source"):
        if metadata.get(key):
            return str(metadata[key])
    if metadata.get("path"):
        return str(metadata["path"]).rsplit("/", 1)[-1]
    if chunk.id:
        return f"Section {chunk.id[:4]}"
    return UNTITLED_SOURCE


def format_sources(chunks: list[DocumentChunk]) -> list[Source]:
    """Sources shown to the user: strong matches, or the first few as a fallback."""
    strong = [c for c in chunks if c.similarity >= SOURCE_RELEVANCE]
    selected = strong or chunks[:FALLBACK_SOURCES]
    return [
        Source(
            title=source_title(chunk),
            relevance=chunk.similarity,
            id=chunk.id,
            text_preview=chunk.text[:PREVIEW_LENGTH],
        )
        for chunk in selected
    ]


def merge_sources(groups: list[list[Source]]) -> list[Source]:
    """Flatten per-question sources, first occurrence of an id wins."""
    seen: set[str] = set()
    merged = []
    for group in groups:
        for source in group:
            key = source.id or source.title
            if key in seen:
                continue
            seen.add(key)
            merged.append(source)
    return merged


def format_rag_context(chunks: list[DocumentChunk], question: str) -> str:
    """Excerpts plus the question, ready to be the user turn of a completion."""
    if not chunks:
        return f'User question: "{question}"\n\n{NO_RESULTS_TEXT}'
    excerpts = "\n\n".join(f"Excerpt {i}:\n{chunk.text}" for i, chunk in enumerate(chunks, start=1))
    return (
        "Knowledge base context:\n"
        f"{excerpts}\n\n"
        f'User question: "{question}"'
    )


class DocumentRetriever:
    """Embeds queries and ranks reference chunks of a dataset."""

    def __init__(self, storage: Storage, llm: LanguageModel) -> None:
        self._storage = storage
        self._llm = llm

    async def _search_rows(
        self, vector: list[float], dataset_id: str, threshold: float, limit: int
    ) -> list[dict[str, Any]]:
        try:
            return await self._storage.search(
                DOCUMENTS_TABLE, vector, {"dataset_id": dataset_id}, limit, threshold
            )
        except StorageError as e:
            logger.warning(
                "Document search failed, retrying once",
                extra={"dataset_id": dataset_id, "error": str(e)},
            )
            return await self._storage.search(
                DOCUMENTS_TABLE, vector, {"dataset_id": dataset_id}, limit, threshold
            )

    async def search(
        self,
        query: str,
        *,
        dataset_id: str = "eaa",
        threshold: float = 0.78,
        max_chunks: int = 5,
        query_vector: list[float] | None = None,
    ) -> RetrievalResult:
        """Find the reference chunks most relevant to ``query``.

        Raises:
            ModelServiceError: If the query cannot be embedded.
            StorageError: If the search fails twice.
        """
        started = time.monotonic()
        vector = query_vector if query_vector is not None else await self._llm.embed(query)
        embedded = time.monotonic()

        rows = await self._search_rows(vector, dataset_id, threshold, max_chunks)
        chunks = trim_chunks([DocumentChunk.from_dict(row) for row in rows])
        finished = time.monotonic()

        logger.info(
            "Document search completed",
            extra={
                "dataset_id": dataset_id,
                "chunks": len(chunks),
                "top_similarity": chunks[0].similarity if chunks else None,
            },
        )
        return RetrievalResult(
            chunks=chunks,
            sources=format_sources(chunks),
            embedding_ms=int((embedded - started) * 1000) if query_vector is None else 0,
            search_ms=int((finished - embedded) * 1000),
        )
