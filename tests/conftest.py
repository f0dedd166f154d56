"""Shared fixtures: a whitespace tokenizer and a deterministic embedder."""

from __future__ import annotations

import hashlib
from typing import Dict, Iterable, List

import numpy as np
import pytest

from docrecall.index.item_store import SQLiteItemStore
from docrecall.index.vector_store import SimpleVectorStore
from docrecall.models import EmbeddingProvider, Page


class WordTokenizer:
    """One token per whitespace-separated word."""

    def __init__(self) -> None:
        self._ids: Dict[str, int] = {}
        self._words: Dict[int, str] = {}

    def encode(self, text: str) -> List[int]:
        tokens = []
        for word in text.split():
            if word not in self._ids:
                token = len(self._ids)
                self._ids[word] = token
                self._words[token] = word
            tokens.append(self._ids[word])
        return tokens

    def decode(self, tokens: List[int]) -> str:
        return " ".join(self._words[token] for token in tokens)


def word_vector(text: str, dimension: int = 16) -> np.ndarray:
    """Bag-of-words vector hashed into ``dimension`` buckets, unit length."""
    vector = np.zeros(dimension, dtype="float32")
    for word in text.lower().split():
        bucket = int(hashlib.md5(word.encode("utf-8")).hexdigest(), 16) % dimension
        vector[bucket] += 1.0
    norm = np.linalg.norm(vector)
    return vector / norm if norm else vector


class FakeEmbedder:
    def __init__(self, provider: EmbeddingProvider = EmbeddingProvider.LOCAL, dimension: int = 16) -> None:
        self.provider = provider
        self.dimension = dimension
        self.calls: List[List[str]] = []

    def embed(self, texts: Iterable[str], progress=None) -> np.ndarray:
        texts = list(texts)
        self.calls.append(texts)
        if progress is not None:
            progress(len(texts), len(texts))
        if not texts:
            return np.zeros((0, self.dimension), dtype="float32")
        return np.vstack([word_vector(text, self.dimension) for text in texts])

    def embed_query(self, text: str) -> np.ndarray:
        return word_vector(text, self.dimension)


def make_pages(texts: Iterable[str], file_id: str = "file-1") -> List[Page]:
    return [
        Page(content=text, metadata={"loc": {"pageNumber": i + 1}}, source_document_id=file_id)
        for i, text in enumerate(texts)
    ]


@pytest.fixture
def tokenizer() -> WordTokenizer:
    return WordTokenizer()


@pytest.fixture
def embedder() -> FakeEmbedder:
    return FakeEmbedder()


@pytest.fixture
def vector_store(tmp_path) -> SimpleVectorStore:
    return SimpleVectorStore.from_persist_dir(tmp_path / "store", namespace="local")


@pytest.fixture
def item_store(tmp_path):
    store = SQLiteItemStore(tmp_path / "items.db")
    yield store
    store.close()
