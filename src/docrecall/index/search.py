"""Semantic retrieval interface."""

from __future__ import annotations

import logging
from typing import List, Literal, Sequence

from docrecall.embedding.encoder import Embedder
from docrecall.index.consolidate import DEFAULT_THRESHOLD, consolidate, consolidate_matches
from docrecall.index.item_store import SQLiteItemStore
from docrecall.index.vector_store import InArrayFilter, SimpleVectorStore
from docrecall.models import ChunkHit, EmbeddingProvider, QueryMode, SearchResult

LOGGER = logging.getLogger(__name__)

Granularity = Literal["page", "chunk"]
Backend = Literal["store", "items"]


class Retriever:
    """High-level API to query the stores.

    ``backend="store"`` ranks with the vector store (any query mode);
    ``backend="items"`` uses the item store's page-matching query, which
    always ranks by cosine similarity.
    """

    def __init__(
        self,
        embedder: Embedder,
        vector_store: SimpleVectorStore,
        item_store: SQLiteItemStore,
        *,
        threshold: float = DEFAULT_THRESHOLD,
    ) -> None:
        self.embedder = embedder
        self.vector_store = vector_store
        self.item_store = item_store
        self.threshold = threshold

    @property
    def provider(self) -> EmbeddingProvider:
        return self.embedder.provider

    def retrieve(
        self,
        query: str,
        *,
        file_ids: Sequence[str],
        source_count: int = 4,
        mode: QueryMode | str = QueryMode.DEFAULT,
        granularity: Granularity = "page",
        backend: Backend = "store",
        mmr_threshold: float | None = None,
    ) -> List[SearchResult]:
        unique_file_ids = list(dict.fromkeys(file_ids))
        if not unique_file_ids:
            return []

        embedding = self.embedder.embed_query(query)

        if backend == "items":
            return self._retrieve_from_items(embedding, unique_file_ids, source_count, granularity)
        if backend != "store":
            raise ValueError(f"Unknown backend: {backend}")

        result = self.vector_store.query(
            embedding,
            top_k=source_count,
            mode=mode,
            filters=[InArrayFilter("file_id", unique_file_ids)],
            mmr_threshold=mmr_threshold,
        )
        LOGGER.debug("Vector store returned %d chunks", len(result))

        if granularity == "chunk":
            items = {item.id: item for item in self.item_store.get_items(result.ids)}
            return [
                SearchResult(
                    id=chunk_id,
                    file_id=items[chunk_id].file_id,
                    content=items[chunk_id].content,
                    similarity=similarity,
                )
                for chunk_id, similarity in zip(result.ids, result.similarities)
                if chunk_id in items
            ]

        similarities = result.similarities
        if QueryMode(mode).is_learner:
            # Learner scores only order candidates; the page cutoff needs cosine scores.
            similarities = self.vector_store.cosine_scores(embedding, result.ids)

        hits = [
            ChunkHit(
                id=chunk_id,
                source=self.vector_store.get_metadata(chunk_id).get("source"),
                similarity=similarity,
            )
            for chunk_id, similarity in zip(result.ids, similarities)
        ]
        pages = self.item_store.get_pages(unique_file_ids)
        return consolidate(hits, pages, threshold=self.threshold)

    def _retrieve_from_items(
        self,
        embedding,
        file_ids: List[str],
        source_count: int,
        granularity: Granularity,
    ) -> List[SearchResult]:
        if granularity == "chunk":
            rows = self.item_store.match_file_items(
                embedding, match_count=source_count, file_ids=file_ids, provider=self.provider
            )
            return [
                SearchResult(
                    id=row["id"],
                    file_id=row["file_id"],
                    content=row["content"],
                    similarity=row["similarity"],
                )
                for row in rows
            ]

        rows = self.item_store.match_file_pages(
            embedding, match_count=source_count, file_ids=file_ids, provider=self.provider
        )
        return consolidate_matches(rows, threshold=self.threshold)
