"""Document ingestion pipeline."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Sequence

from docrecall.embedding.encoder import Embedder, ProgressCallback
from docrecall.errors import ProviderError
from docrecall.index.item_store import SQLiteItemStore
from docrecall.index.vector_store import SimpleVectorStore
from docrecall.ingestion.loaders import load_pages
from docrecall.models import Chunk, EmbeddingProvider, FileItem, Page, StoreEntry
from docrecall.utils.digest import fingerprint_chunks
from docrecall.utils.text import Tokenizer, count_tokens, get_tokenizer, split_pages

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class IngestResult:
    file_id: str
    fingerprint: str
    total_tokens: int
    chunk_count: int
    page_count: int


class Indexer:
    """Coordinates chunking, embedding and persistence of one document."""

    def __init__(
        self,
        embedder: Embedder,
        vector_store: SimpleVectorStore,
        item_store: SQLiteItemStore | None = None,
        *,
        chunk_size: int = 4000,
        chunk_overlap: int = 200,
        tokenizer: Tokenizer | None = None,
    ) -> None:
        self.embedder = embedder
        self.vector_store = vector_store
        self.item_store = item_store
        self.chunk_size = chunk_size
        self.chunk_overlap = chunk_overlap
        self.tokenizer = tokenizer or get_tokenizer()

    @property
    def provider(self) -> EmbeddingProvider:
        return self.embedder.provider

    def process(
        self,
        data: bytes,
        filename: str,
        *,
        file_id: str,
        user_id: str,
        progress: ProgressCallback | None = None,
    ) -> IngestResult:
        """Extract pages from an uploaded file and index them."""
        pages = load_pages(data, filename, file_id)
        return self.index_pages(
            pages, file_id=file_id, user_id=user_id, name=filename, progress=progress
        )

    def index_pages(
        self,
        pages: Sequence[Page],
        *,
        file_id: str,
        user_id: str,
        name: str | None = None,
        progress: ProgressCallback | None = None,
    ) -> IngestResult:
        chunks = split_pages(
            pages,
            chunk_size=self.chunk_size,
            chunk_overlap=self.chunk_overlap,
            tokenizer=self.tokenizer,
        )
        fingerprint = fingerprint_chunks(chunk.content for chunk in chunks)
        if not chunks:
            LOGGER.warning("No text extracted for file %s", file_id)
        LOGGER.info(
            "File %s: %d pages, %d chunks, fingerprint %s",
            file_id,
            len(pages),
            len(chunks),
            fingerprint,
        )

        embeddings = self.embedder.embed([chunk.content for chunk in chunks], progress=progress)
        if len(embeddings) != len(chunks):
            raise ProviderError(
                f"Got {len(embeddings)} embeddings for {len(chunks)} chunks",
                details={"file_id": file_id},
            )
        vectors = [[float(value) for value in vector] for vector in embeddings]

        pages_by_id = {page.id: page for page in pages}
        entries = [
            StoreEntry(
                id=chunk.id,
                embedding=vector,
                source_document_id=file_id,
                metadata={
                    "file_id": file_id,
                    "source": chunk.source_ref,
                    "deterministic_file_id": fingerprint,
                    "loc": pages_by_id[chunk.source_ref].metadata.get("loc"),
                },
            )
            for chunk, vector in zip(chunks, vectors)
        ]

        removed = self.vector_store.replace(file_id, entries)
        if removed:
            LOGGER.info("Replaced %d stale entries for file %s", removed, file_id)

        total_tokens = sum(chunk.token_count for chunk in chunks)
        if self.item_store is not None:
            self.item_store.delete_file(file_id)
            self.item_store.ensure_file(file_id, user_id, name)
            self.item_store.upsert_items(
                self._chunk_items(chunks, vectors, file_id, user_id)
                + self._page_items(pages, file_id, user_id)
            )
            self.item_store.update_file_tokens(file_id, total_tokens)

        return IngestResult(
            file_id=file_id,
            fingerprint=fingerprint,
            total_tokens=total_tokens,
            chunk_count=len(chunks),
            page_count=len(pages),
        )

    def _chunk_items(
        self, chunks: Sequence[Chunk], vectors: Sequence[List[float]], file_id: str, user_id: str
    ) -> List[FileItem]:
        remote = self.provider is EmbeddingProvider.OPENAI
        return [
            FileItem(
                id=chunk.id,
                file_id=file_id,
                user_id=user_id,
                content=chunk.content,
                tokens=chunk.token_count,
                source=chunk.source_ref,
                next=chunk.next_ref,
                openai_embedding=vector if remote else None,
                local_embedding=None if remote else vector,
            )
            for chunk, vector in zip(chunks, vectors)
        ]

    def _page_items(self, pages: Sequence[Page], file_id: str, user_id: str) -> List[FileItem]:
        following = [page.id for page in pages[1:]] + [None]
        return [
            FileItem(
                id=page.id,
                file_id=file_id,
                user_id=user_id,
                content=page.content,
                tokens=count_tokens(page.content, self.tokenizer),
                next=next_id,
            )
            for page, next_id in zip(pages, following)
        ]
