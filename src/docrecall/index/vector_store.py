"""In-memory vector store persisted as a single JSON snapshot.

The store keeps three maps keyed by chunk id: embeddings, the source document
each chunk belongs to, and chunk metadata. Every mutating call rewrites the
whole snapshot. Writers inside one process are serialized by a lock; two
processes writing the same snapshot still race and the last writer wins.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Union

import numpy as np
from sklearn import linear_model, svm

from docrecall.errors import StorePersistenceError
from docrecall.models import QueryMode, QueryResult, StoreEntry

LOGGER = logging.getLogger(__name__)

SNAPSHOT_NAME = "vector_store.json"
DEFAULT_MMR_THRESHOLD = 0.5


@dataclass(slots=True)
class ExactMatchFilter:
    key: str
    value: Any

    def matches(self, metadata: Dict[str, Any]) -> bool:
        return self.key in metadata and metadata[self.key] == self.value


@dataclass(slots=True)
class InArrayFilter:
    key: str
    values: Sequence[Any]

    def matches(self, metadata: Dict[str, Any]) -> bool:
        return self.key in metadata and metadata[self.key] in self.values


MetadataFilter = Union[ExactMatchFilter, InArrayFilter]


def cosine_similarities(query: np.ndarray, embeddings: np.ndarray) -> np.ndarray:
    """Cosine similarity of ``query`` against each row; zero vectors score 0."""
    norms = np.linalg.norm(embeddings, axis=1) * np.linalg.norm(query)
    dots = embeddings @ query
    with np.errstate(divide="ignore", invalid="ignore"):
        return np.where(norms > 0, dots / norms, 0.0)


def get_top_k_embeddings(
    query: np.ndarray, embeddings: np.ndarray, ids: Sequence[str], top_k: int
) -> tuple[List[float], List[str]]:
    scores = cosine_similarities(query, embeddings)
    top_indices = np.argsort(-scores, kind="stable")[:top_k]
    return [float(scores[idx]) for idx in top_indices], [ids[idx] for idx in top_indices]


def get_top_k_mmr_embeddings(
    query: np.ndarray,
    embeddings: np.ndarray,
    ids: Sequence[str],
    top_k: int,
    mmr_threshold: float | None = None,
) -> tuple[List[float], List[str]]:
    """Greedy maximal-marginal-relevance selection.

    Each step picks the candidate maximizing
    ``threshold * relevance - (1 - threshold) * max_similarity_to_selected``.
    Scores are that objective at selection time, in selection order.
    """
    threshold = DEFAULT_MMR_THRESHOLD if mmr_threshold is None else mmr_threshold
    relevance = cosine_similarities(query, embeddings)

    norms = np.linalg.norm(embeddings, axis=1, keepdims=True)
    normalized = np.divide(embeddings, norms, out=np.zeros_like(embeddings), where=norms > 0)

    available = np.ones(len(ids), dtype=bool)
    redundancy = np.zeros(len(ids))
    scores: List[float] = []
    selected: List[str] = []

    for step in range(min(top_k, len(ids))):
        objective = threshold * relevance
        if step:
            objective = objective - (1 - threshold) * redundancy
        objective = np.where(available, objective, -np.inf)

        best = int(np.argmax(objective))
        scores.append(float(objective[best]))
        selected.append(ids[best])
        available[best] = False

        pairwise = normalized @ normalized[best]
        redundancy = pairwise if step == 0 else np.maximum(redundancy, pairwise)

    return scores, selected


def get_top_k_learner_embeddings(
    query: np.ndarray,
    embeddings: np.ndarray,
    ids: Sequence[str],
    top_k: int,
    mode: QueryMode,
) -> tuple[List[float], List[str]]:
    """Rank candidates with a linear model fit on the query as the only positive."""
    features = np.vstack([query[np.newaxis, :], embeddings])
    labels = np.zeros(len(features))
    labels[0] = 1

    if mode is QueryMode.SVM:
        clf = svm.LinearSVC(class_weight="balanced", max_iter=10000, tol=1e-6, C=0.1)
    elif mode is QueryMode.LINEAR_REGRESSION:
        clf = linear_model.LinearRegression()
    elif mode is QueryMode.LOGISTIC_REGRESSION:
        clf = linear_model.LogisticRegression(class_weight="balanced")
    else:
        raise ValueError(f"Not a learner query mode: {mode}")

    clf.fit(features, labels)
    if mode is QueryMode.LINEAR_REGRESSION:
        decision = clf.predict(features)
    else:
        decision = clf.decision_function(features)

    candidate_scores = np.asarray(decision[1:], dtype="float64")
    top_indices = np.argsort(-candidate_scores, kind="stable")[:top_k]
    return [float(candidate_scores[idx]) for idx in top_indices], [ids[idx] for idx in top_indices]


@dataclass(slots=True)
class SimpleVectorStoreData:
    embedding_dict: Dict[str, List[float]] = field(default_factory=dict)
    text_id_to_ref_doc_id: Dict[str, str] = field(default_factory=dict)
    metadata_dict: Dict[str, Dict[str, Any]] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "embedding_dict": self.embedding_dict,
            "text_id_to_ref_doc_id": self.text_id_to_ref_doc_id,
            "metadata_dict": self.metadata_dict,
        }

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "SimpleVectorStoreData":
        data = cls(
            embedding_dict=dict(payload.get("embedding_dict") or {}),
            text_id_to_ref_doc_id=dict(payload.get("text_id_to_ref_doc_id") or {}),
            metadata_dict=dict(payload.get("metadata_dict") or {}),
        )
        for text_id, vector in data.embedding_dict.items():
            if not isinstance(vector, list):
                raise TypeError(f"Embedding for {text_id} is not a list")
        return data


class SimpleVectorStore:
    """Keyed embedding collection with metadata filtering and several rankers."""

    def __init__(
        self,
        data: SimpleVectorStoreData | None = None,
        *,
        persist_path: Path | None = None,
    ) -> None:
        self._data = data or SimpleVectorStoreData()
        self.persist_path = Path(persist_path) if persist_path is not None else None
        self._lock = threading.RLock()

    @classmethod
    def from_persist_dir(
        cls, persist_dir: Path, namespace: str | None = None
    ) -> "SimpleVectorStore":
        name = f"{namespace}_{SNAPSHOT_NAME}" if namespace else SNAPSHOT_NAME
        return cls.from_persist_path(Path(persist_dir) / name)

    @classmethod
    def from_persist_path(cls, persist_path: Path) -> "SimpleVectorStore":
        """Load a snapshot; a missing or unreadable file yields an empty store."""
        persist_path = Path(persist_path)
        persist_path.parent.mkdir(parents=True, exist_ok=True)

        data = SimpleVectorStoreData()
        if persist_path.exists():
            try:
                payload = json.loads(persist_path.read_text(encoding="utf-8"))
                data = SimpleVectorStoreData.from_dict(payload)
            except (OSError, ValueError, TypeError, AttributeError) as exc:
                LOGGER.warning(
                    "No valid data found at path: %s, starting new store (%s)", persist_path, exc
                )
                data = SimpleVectorStoreData()
        else:
            LOGGER.info("No snapshot at %s, starting new store", persist_path)

        LOGGER.debug("Loaded %d embeddings from %s", len(data.embedding_dict), persist_path)
        return cls(data, persist_path=persist_path)

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "SimpleVectorStore":
        return cls(SimpleVectorStoreData.from_dict(payload))

    def to_dict(self) -> Dict[str, Any]:
        with self._lock:
            return self._data.to_dict()

    def __len__(self) -> int:
        return len(self._data.embedding_dict)

    @property
    def dimension(self) -> int | None:
        with self._lock:
            for vector in self._data.embedding_dict.values():
                return len(vector)
        return None

    def get(self, text_id: str) -> Optional[List[float]]:
        return self._data.embedding_dict.get(text_id)

    def get_metadata(self, text_id: str) -> Dict[str, Any]:
        return self._data.metadata_dict.get(text_id, {})

    def get_ref_doc_id(self, text_id: str) -> Optional[str]:
        return self._data.text_id_to_ref_doc_id.get(text_id)

    def cosine_scores(
        self, query_embedding: Sequence[float] | np.ndarray, text_ids: Sequence[str]
    ) -> List[float]:
        """Cosine similarity of the query to each stored id; unknown ids score 0."""
        with self._lock:
            vectors = [self._data.embedding_dict.get(text_id) for text_id in text_ids]
        known = [idx for idx, vector in enumerate(vectors) if vector is not None]
        scores = [0.0] * len(text_ids)
        if known:
            embeddings = np.asarray([vectors[idx] for idx in known], dtype="float64")
            values = cosine_similarities(np.asarray(query_embedding, dtype="float64"), embeddings)
            for idx, value in zip(known, values):
                scores[idx] = float(value)
        return scores

    def add(self, entries: Sequence[StoreEntry]) -> List[str]:
        """Insert or overwrite entries by id, then persist."""
        self._write(entries)
        return [entry.id for entry in entries]

    def delete(self, ref_doc_id: str) -> int:
        """Remove every entry recorded under ``ref_doc_id``; returns the count."""
        removed = self._write([], ref_doc_id=ref_doc_id)
        LOGGER.debug("Deleted %d entries for %s", removed, ref_doc_id)
        return removed

    def replace(self, ref_doc_id: str, entries: Sequence[StoreEntry]) -> int:
        """Swap every entry of ``ref_doc_id`` for ``entries`` in one persisted write.

        Returns the number of entries removed. On failure the store is left
        exactly as it was, in memory and on disk.
        """
        return self._write(entries, ref_doc_id=ref_doc_id)

    def _write(self, entries: Sequence[StoreEntry], *, ref_doc_id: str | None = None) -> int:
        with self._lock:
            stale = set()
            if ref_doc_id is not None:
                stale = {
                    text_id
                    for text_id, source in self._data.text_id_to_ref_doc_id.items()
                    if source == ref_doc_id
                }
            vectors = [[float(value) for value in entry.embedding] for entry in entries]
            self._check_dimensions(entries, vectors, ignore=stale)

            previous = SimpleVectorStoreData(
                embedding_dict=dict(self._data.embedding_dict),
                text_id_to_ref_doc_id=dict(self._data.text_id_to_ref_doc_id),
                metadata_dict=dict(self._data.metadata_dict),
            )
            for text_id in stale:
                self._data.embedding_dict.pop(text_id, None)
                self._data.text_id_to_ref_doc_id.pop(text_id, None)
                self._data.metadata_dict.pop(text_id, None)

            for entry, vector in zip(entries, vectors):
                self._data.embedding_dict[entry.id] = vector
                self._data.metadata_dict[entry.id] = dict(entry.metadata)
                if entry.source_document_id:
                    self._data.text_id_to_ref_doc_id[entry.id] = entry.source_document_id
                else:
                    self._data.text_id_to_ref_doc_id.pop(entry.id, None)

            try:
                self._persist_if_configured()
            except StorePersistenceError:
                self._data = previous
                raise
        return len(stale)

    def _check_dimensions(
        self, entries: Sequence[StoreEntry], vectors: Sequence[List[float]], ignore: set[str]
    ) -> None:
        """Raise ``ValueError`` unless every vector matches the store, before any mutation."""
        dimension = next(
            (
                len(vector)
                for text_id, vector in self._data.embedding_dict.items()
                if text_id not in ignore
            ),
            None,
        )
        for entry, vector in zip(entries, vectors):
            if dimension is None:
                dimension = len(vector)
            elif len(vector) != dimension:
                raise ValueError(
                    f"Embedding for {entry.id} has dimension {len(vector)}, store uses {dimension}"
                )

    def query(
        self,
        query_embedding: Sequence[float] | np.ndarray,
        *,
        top_k: int,
        mode: QueryMode | str = QueryMode.DEFAULT,
        filters: Sequence[MetadataFilter] | None = None,
        doc_ids: Sequence[str] | None = None,
        mmr_threshold: float | None = None,
    ) -> QueryResult:
        mode = QueryMode(mode)
        with self._lock:
            items = list(self._data.embedding_dict.items())
            metadata = dict(self._data.metadata_dict)

        if doc_ids:
            available = set(doc_ids)
            items = [item for item in items if item[0] in available]

        if filters:
            items = [
                item
                for item in items
                if all(flt.matches(metadata.get(item[0]) or {}) for flt in filters)
            ]

        LOGGER.debug("Querying %d candidates (mode=%s, top_k=%d)", len(items), mode.value, top_k)
        if not items or top_k <= 0:
            return QueryResult()

        ids = [text_id for text_id, _ in items]
        embeddings = np.asarray([vector for _, vector in items], dtype="float64")
        query = np.asarray(query_embedding, dtype="float64")

        if mode is QueryMode.DEFAULT:
            similarities, top_ids = get_top_k_embeddings(query, embeddings, ids, top_k)
        elif mode is QueryMode.MMR:
            similarities, top_ids = get_top_k_mmr_embeddings(
                query, embeddings, ids, top_k, mmr_threshold
            )
        elif mode.is_learner:
            similarities, top_ids = get_top_k_learner_embeddings(
                query, embeddings, ids, top_k, mode
            )
        else:
            raise ValueError(f"Invalid query mode: {mode}")

        return QueryResult(ids=top_ids, similarities=similarities)

    def persist(self, persist_path: Path | None = None) -> None:
        """Atomically write the snapshot to ``persist_path`` (or the configured path)."""
        path = Path(persist_path) if persist_path is not None else self.persist_path
        if path is None:
            raise ValueError("No persist path configured")

        with self._lock:
            payload = json.dumps(self._data.to_dict())
            try:
                path.parent.mkdir(parents=True, exist_ok=True)
                fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=".", suffix=".tmp")
                with os.fdopen(fd, "w", encoding="utf-8") as handle:
                    handle.write(payload)
                os.replace(tmp_name, path)
            except OSError as exc:
                raise StorePersistenceError(
                    f"Unable to persist vector store to {path}", details={"reason": str(exc)}
                ) from exc

    def _persist_if_configured(self) -> None:
        if self.persist_path is not None:
            self.persist(self.persist_path)
