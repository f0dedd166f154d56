"""Core DocRecall data models."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


def new_id() -> str:
    return str(uuid.uuid4())


class EmbeddingProvider(str, Enum):
    """Where embeddings are computed."""

    OPENAI = "openai"
    LOCAL = "local"


class QueryMode(str, Enum):
    """Ranking strategies supported by the vector store."""

    DEFAULT = "default"
    MMR = "mmr"
    SVM = "svm"
    LINEAR_REGRESSION = "linear_regression"
    LOGISTIC_REGRESSION = "logistic_regression"

    @property
    def is_learner(self) -> bool:
        return self in LEARNER_MODES


LEARNER_MODES = frozenset(
    {QueryMode.SVM, QueryMode.LINEAR_REGRESSION, QueryMode.LOGISTIC_REGRESSION}
)


@dataclass(slots=True)
class Page:
    """One logical unit of an ingested document (a PDF page, a CSV file...)."""

    content: str
    metadata: Dict[str, Any]
    source_document_id: str
    id: str = field(default_factory=new_id)


@dataclass(slots=True)
class Chunk:
    """Token-bounded slice of a single page, linked to the next chunk by id."""

    id: str
    content: str
    token_count: int
    source_ref: str
    next_ref: Optional[str] = None


@dataclass(slots=True)
class FileItem:
    """Row handed to the item store.

    Chunks carry an embedding in the column of the provider that produced it;
    whole pages are stored with both embeddings set to ``None``.
    """

    id: str
    file_id: str
    user_id: str
    content: str
    tokens: int
    source: Optional[str] = None
    next: Optional[str] = None
    openai_embedding: Optional[List[float]] = None
    local_embedding: Optional[List[float]] = None

    @property
    def is_page(self) -> bool:
        return self.openai_embedding is None and self.local_embedding is None


PageItem = FileItem


@dataclass(slots=True)
class StoreEntry:
    """Input record for ``SimpleVectorStore.add``."""

    id: str
    embedding: List[float]
    source_document_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class QueryResult:
    """Ids and scores in ranking order."""

    ids: List[str] = field(default_factory=list)
    similarities: List[float] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.ids)


@dataclass(slots=True)
class ChunkHit:
    """A scored chunk and the page it was cut from."""

    id: str
    source: Optional[str]
    similarity: float


@dataclass(slots=True)
class SearchResult:
    """Row returned to callers of the retrieve pipeline."""

    id: str
    file_id: str
    content: str
    similarity: float
