"""Tests for the SQLite item store."""

from __future__ import annotations

import pytest

from docrecall.errors import StorePersistenceError
from docrecall.index.item_store import SQLiteItemStore
from docrecall.models import EmbeddingProvider, FileItem


def _chunk(item_id: str, file_id: str, vector, source: str = "p1", **kwargs) -> FileItem:
    return FileItem(
        id=item_id,
        file_id=file_id,
        user_id="u1",
        content=f"content of {item_id}",
        tokens=3,
        source=source,
        local_embedding=list(vector),
        **kwargs,
    )


def _page(item_id: str, file_id: str, next_id: str | None = None) -> FileItem:
    return FileItem(
        id=item_id, file_id=file_id, user_id="u1", content=f"page {item_id}", tokens=2, next=next_id
    )


@pytest.fixture
def loaded(item_store: SQLiteItemStore) -> SQLiteItemStore:
    item_store.ensure_file("f1", "u1", "one.txt")
    item_store.ensure_file("f2", "u1", "two.txt")
    item_store.upsert_items(
        [
            _chunk("c1", "f1", [1.0, 0.0], source="p1", next="c2"),
            _chunk("c2", "f1", [0.5, 0.5], source="p2"),
            _chunk("c3", "f2", [0.0, 1.0], source="p3"),
            _page("p1", "f1", next_id="p2"),
            _page("p2", "f1"),
            _page("p3", "f2"),
        ]
    )
    return item_store


class TestSQLiteItemStore:
    """Tests for item persistence and page-matching queries."""

    def test_schema_created(self, item_store: SQLiteItemStore) -> None:
        tables = {
            row["name"]
            for row in item_store.connection.execute(
                "SELECT name FROM sqlite_master WHERE type = 'table'"
            )
        }
        assert {"files", "file_items"} <= tables

    def test_get_items_keeps_requested_order(self, loaded: SQLiteItemStore) -> None:
        items = loaded.get_items(["c3", "missing", "c1"])

        assert [item.id for item in items] == ["c3", "c1"]
        assert items[1].local_embedding == [1.0, 0.0]
        assert items[1].openai_embedding is None
        assert items[1].next == "c2"

    def test_get_items_empty(self, loaded: SQLiteItemStore) -> None:
        assert loaded.get_items([]) == []

    def test_get_pages(self, loaded: SQLiteItemStore) -> None:
        pages = loaded.get_pages(["f1"])

        assert [page.id for page in pages] == ["p1", "p2"]
        assert all(page.is_page for page in pages)
        assert pages[0].next == "p2"

    def test_upsert_overwrites(self, loaded: SQLiteItemStore) -> None:
        loaded.upsert_items([_chunk("c1", "f1", [0.25, 0.75])])

        (item,) = loaded.get_items(["c1"])
        assert item.local_embedding == [0.25, 0.75]

    def test_file_tokens(self, loaded: SQLiteItemStore) -> None:
        loaded.update_file_tokens("f1", 42)

        assert loaded.get_file_tokens("f1") == 42
        assert loaded.get_file_tokens("f2") == 0
        assert loaded.get_file_tokens("nope") is None

    def test_delete_file(self, loaded: SQLiteItemStore) -> None:
        removed = loaded.delete_file("f1")

        assert removed == 4
        assert loaded.get_items(["c1", "c2", "p1"]) == []
        assert loaded.get_file_tokens("f1") is None
        assert [item.id for item in loaded.get_items(["c3"])] == ["c3"]

    def test_match_file_items_ranks_by_cosine(self, loaded: SQLiteItemStore) -> None:
        rows = loaded.match_file_items([1.0, 0.0], match_count=5, file_ids=["f1", "f2"])

        assert [row["id"] for row in rows] == ["c1", "c2", "c3"]
        assert rows[0]["similarity"] == pytest.approx(1.0)
        assert rows[1]["similarity"] == pytest.approx(0.7071, abs=1e-4)
        assert rows[0]["source"] == "p1"

    def test_match_file_items_limits_and_filters(self, loaded: SQLiteItemStore) -> None:
        rows = loaded.match_file_items([0.0, 1.0], match_count=1, file_ids=["f1"])

        assert [row["id"] for row in rows] == ["c2"]

    def test_match_file_items_uses_provider_column(self, loaded: SQLiteItemStore) -> None:
        rows = loaded.match_file_items(
            [1.0, 0.0], match_count=5, file_ids=["f1"], provider=EmbeddingProvider.OPENAI
        )
        assert rows == []

    def test_match_skips_other_dimensions(self, loaded: SQLiteItemStore) -> None:
        loaded.upsert_items([_chunk("c4", "f1", [1.0, 0.0, 0.0])])

        rows = loaded.match_file_items([1.0, 0.0], match_count=5, file_ids=["f1"])

        assert "c4" not in [row["id"] for row in rows]

    def test_match_file_pages_appends_sentinel_rows(self, loaded: SQLiteItemStore) -> None:
        rows = loaded.match_file_pages([1.0, 0.0], match_count=1, file_ids=["f1"])

        assert [row["id"] for row in rows] == ["c1", "p1", "p2"]
        assert [row["similarity"] for row in rows[1:]] == [-1, -1]

    def test_no_file_ids(self, loaded: SQLiteItemStore) -> None:
        assert loaded.match_file_pages([1.0, 0.0], match_count=3, file_ids=[]) == []

    def test_failed_write_raises_and_rolls_back(self, loaded: SQLiteItemStore) -> None:
        bad = FileItem(id="x", file_id="f1", user_id="u1", content=None, tokens=1)

        with pytest.raises(StorePersistenceError):
            loaded.upsert_items([_chunk("c9", "f1", [1.0, 0.0]), bad])

        assert loaded.get_items(["c9"]) == []

    def test_reopen_sees_committed_rows(self, loaded: SQLiteItemStore) -> None:
        reopened = SQLiteItemStore(loaded.db_path)
        try:
            assert [page.id for page in reopened.get_pages(["f2"])] == ["p3"]
        finally:
            reopened.close()
