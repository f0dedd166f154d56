"""SQLite persistence for file items (chunks with embeddings) and whole pages.

Chunks and pages share the ``file_items`` table. A chunk stores its embedding
in the column of the provider that produced it; a page has no embedding at
all. Page-matching queries return page rows with a similarity of exactly -1
so callers can tell them apart from scored chunks.
"""

from __future__ import annotations

import logging
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Sequence

import numpy as np

from docrecall.errors import StorePersistenceError
from docrecall.index.consolidate import PAGE_SENTINEL
from docrecall.models import EmbeddingProvider, FileItem

LOGGER = logging.getLogger(__name__)

EMBEDDING_COLUMNS = {
    EmbeddingProvider.OPENAI: "openai_embedding",
    EmbeddingProvider.LOCAL: "local_embedding",
}


def _to_blob(vector: Optional[Sequence[float]]) -> Optional[sqlite3.Binary]:
    if vector is None:
        return None
    return sqlite3.Binary(np.asarray(vector, dtype="float32").tobytes())


def _from_blob(blob: Optional[bytes]) -> Optional[List[float]]:
    if blob is None:
        return None
    return np.frombuffer(blob, dtype="float32").tolist()


class SQLiteItemStore:
    """Persistence layer for files, chunk items and page items."""

    def __init__(self, db_path: Path) -> None:
        self.db_path = Path(db_path)
        self._conn = sqlite3.connect(self.db_path)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL;")
        self._conn.execute("PRAGMA synchronous=NORMAL;")
        self._ensure_schema()

    @property
    def connection(self) -> sqlite3.Connection:
        return self._conn

    def close(self) -> None:
        self._conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        try:
            yield self._conn
            self._conn.commit()
        except sqlite3.Error as exc:
            self._conn.rollback()
            raise StorePersistenceError(
                f"Item store write failed: {exc}", details={"db_path": str(self.db_path)}
            ) from exc
        except Exception:
            self._conn.rollback()
            raise

    def _ensure_schema(self) -> None:
        with self.transaction() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS files (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    name TEXT,
                    tokens INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT DEFAULT CURRENT_TIMESTAMP,
                    updated_at TEXT DEFAULT CURRENT_TIMESTAMP
                )
                """
            )
            conn.execute(
                """
                CREATE TRIGGER IF NOT EXISTS files_updated
                AFTER UPDATE ON files
                BEGIN
                    UPDATE files SET updated_at = CURRENT_TIMESTAMP WHERE id = NEW.id;
                END;
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS file_items (
                    id TEXT PRIMARY KEY,
                    file_id TEXT NOT NULL,
                    user_id TEXT NOT NULL,
                    source TEXT,
                    next TEXT,
                    content TEXT NOT NULL,
                    tokens INTEGER NOT NULL,
                    openai_embedding BLOB,
                    local_embedding BLOB,
                    created_at TEXT DEFAULT CURRENT_TIMESTAMP
                )
                """
            )
            conn.execute(
                """CREATE INDEX IF NOT EXISTS idx_file_items_file_id
                    ON file_items(file_id)
                """
            )

    def ensure_file(self, file_id: str, user_id: str, name: str | None = None) -> None:
        with self.transaction() as conn:
            conn.execute(
                """
                INSERT INTO files(id, user_id, name) VALUES (?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    user_id = excluded.user_id,
                    name = COALESCE(excluded.name, files.name)
                """,
                (file_id, user_id, name),
            )

    def upsert_items(self, items: Sequence[FileItem]) -> int:
        """Insert items, overwriting any existing row with the same id."""
        with self.transaction() as conn:
            conn.executemany(
                """
                INSERT INTO file_items(
                    id, file_id, user_id, source, next, content, tokens,
                    openai_embedding, local_embedding
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    file_id = excluded.file_id,
                    user_id = excluded.user_id,
                    source = excluded.source,
                    next = excluded.next,
                    content = excluded.content,
                    tokens = excluded.tokens,
                    openai_embedding = excluded.openai_embedding,
                    local_embedding = excluded.local_embedding
                """,
                [
                    (
                        item.id,
                        item.file_id,
                        item.user_id,
                        item.source,
                        item.next,
                        item.content,
                        item.tokens,
                        _to_blob(item.openai_embedding),
                        _to_blob(item.local_embedding),
                    )
                    for item in items
                ],
            )
        return len(items)

    def update_file_tokens(self, file_id: str, tokens: int) -> None:
        with self.transaction() as conn:
            conn.execute("UPDATE files SET tokens = ? WHERE id = ?", (tokens, file_id))

    def get_file_tokens(self, file_id: str) -> Optional[int]:
        row = self._conn.execute("SELECT tokens FROM files WHERE id = ?", (file_id,)).fetchone()
        return None if row is None else int(row["tokens"])

    def delete_file(self, file_id: str) -> int:
        """Remove a file and all of its items; returns the number of items removed."""
        with self.transaction() as conn:
            removed = conn.execute("DELETE FROM file_items WHERE file_id = ?", (file_id,)).rowcount
            conn.execute("DELETE FROM files WHERE id = ?", (file_id,))
        return removed

    def get_items(self, ids: Sequence[str]) -> List[FileItem]:
        if not ids:
            return []
        placeholders = ",".join("?" for _ in ids)
        rows = self._conn.execute(
            f"SELECT * FROM file_items WHERE id IN ({placeholders})", tuple(ids)
        ).fetchall()
        by_id = {row["id"]: self._row_to_item(row) for row in rows}
        return [by_id[item_id] for item_id in ids if item_id in by_id]

    def get_pages(self, file_ids: Sequence[str]) -> List[FileItem]:
        rows = self._select_for_files(
            file_ids,
            "openai_embedding IS NULL AND local_embedding IS NULL",
        )
        return [self._row_to_item(row) for row in rows]

    def match_file_items(
        self,
        query_embedding: Sequence[float] | np.ndarray,
        *,
        match_count: int,
        file_ids: Sequence[str],
        provider: EmbeddingProvider | str = EmbeddingProvider.LOCAL,
    ) -> List[Dict[str, Any]]:
        """Top ``match_count`` chunks of ``file_ids`` by cosine similarity."""
        column = EMBEDDING_COLUMNS[EmbeddingProvider(provider)]
        rows = self._select_for_files(file_ids, f"{column} IS NOT NULL")
        query = np.asarray(query_embedding, dtype="float32")

        candidates = []
        for row in rows:
            vector = np.frombuffer(row[column], dtype="float32")
            if vector.shape != query.shape:
                LOGGER.warning("Skipping item %s with dimension %d", row["id"], vector.shape[0])
                continue
            candidates.append((row, vector))

        if not candidates or match_count <= 0:
            return []

        embeddings = np.vstack([vector for _, vector in candidates])
        norms = np.linalg.norm(embeddings, axis=1) * np.linalg.norm(query)
        with np.errstate(divide="ignore", invalid="ignore"):
            scores = np.where(norms > 0, embeddings @ query / norms, 0.0)

        top_indices = np.argsort(-scores, kind="stable")[:match_count]
        return [
            self._row_to_match(candidates[idx][0], float(scores[idx])) for idx in top_indices
        ]

    def match_file_pages(
        self,
        query_embedding: Sequence[float] | np.ndarray,
        *,
        match_count: int,
        file_ids: Sequence[str],
        provider: EmbeddingProvider | str = EmbeddingProvider.LOCAL,
    ) -> List[Dict[str, Any]]:
        """Top chunk matches followed by every page of ``file_ids`` scored -1."""
        matches = self.match_file_items(
            query_embedding, match_count=match_count, file_ids=file_ids, provider=provider
        )
        pages = self._select_for_files(
            file_ids, "openai_embedding IS NULL AND local_embedding IS NULL"
        )
        return matches + [self._row_to_match(row, PAGE_SENTINEL) for row in pages]

    def _select_for_files(self, file_ids: Sequence[str], condition: str) -> List[sqlite3.Row]:
        unique_ids = list(dict.fromkeys(file_ids))
        if not unique_ids:
            return []
        placeholders = ",".join("?" for _ in unique_ids)
        return self._conn.execute(
            f"""
            SELECT * FROM file_items
            WHERE file_id IN ({placeholders}) AND {condition}
            ORDER BY rowid
            """,
            tuple(unique_ids),
        ).fetchall()

    @staticmethod
    def _row_to_item(row: sqlite3.Row) -> FileItem:
        return FileItem(
            id=row["id"],
            file_id=row["file_id"],
            user_id=row["user_id"],
            content=row["content"],
            tokens=row["tokens"],
            source=row["source"],
            next=row["next"],
            openai_embedding=_from_blob(row["openai_embedding"]),
            local_embedding=_from_blob(row["local_embedding"]),
        )

    @staticmethod
    def _row_to_match(row: sqlite3.Row, similarity: float) -> Dict[str, Any]:
        return {
            "id": row["id"],
            "file_id": row["file_id"],
            "source": row["source"],
            "content": row["content"],
            "tokens": row["tokens"],
            "similarity": similarity,
        }
