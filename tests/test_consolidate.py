"""Tests for rolling chunk hits up into pages."""

from __future__ import annotations

from docrecall.index.consolidate import consolidate, consolidate_matches, split_matches
from docrecall.models import ChunkHit, FileItem


def _page(page_id: str, file_id: str = "f1") -> FileItem:
    return FileItem(id=page_id, file_id=file_id, user_id="u", content=f"{page_id} text", tokens=2)


PAGES = [_page("p1"), _page("p2"), _page("p3", "f2")]


class TestConsolidate:
    """Tests for threshold filtering and page deduplication."""

    def test_only_near_best_hits_survive(self) -> None:
        hits = [
            ChunkHit("c1", "p1", 0.91),
            ChunkHit("c2", "p2", 0.905),
            ChunkHit("c3", "p3", 0.80),
        ]

        results = consolidate(hits, PAGES, threshold=0.995)

        assert [r.id for r in results] == ["p1"]
        assert results[0].similarity == 0.91
        assert results[0].content == "p1 text"

    def test_hit_exactly_at_cutoff_is_kept(self) -> None:
        hits = [ChunkHit("c1", "p1", 1.0), ChunkHit("c2", "p2", 0.995)]

        results = consolidate(hits, PAGES, threshold=0.995)

        assert [r.id for r in results] == ["p1", "p2"]

    def test_hit_just_below_cutoff_is_dropped(self) -> None:
        hits = [ChunkHit("c1", "p1", 1.0), ChunkHit("c2", "p2", 0.995 - 1e-9)]

        assert [r.id for r in consolidate(hits, PAGES, threshold=0.995)] == ["p1"]

    def test_pages_deduplicated_in_hit_order(self) -> None:
        hits = [
            ChunkHit("c1", "p2", 0.9),
            ChunkHit("c2", "p1", 0.9),
            ChunkHit("c3", "p2", 0.899),
        ]

        results = consolidate(hits, PAGES, threshold=0.99)

        assert [r.id for r in results] == ["p2", "p1"]
        assert results[0].similarity == 0.9

    def test_no_positive_score_gives_nothing(self) -> None:
        hits = [ChunkHit("c1", "p1", 0.0), ChunkHit("c2", "p2", -0.3)]
        assert consolidate(hits, PAGES) == []

    def test_no_hits(self) -> None:
        assert consolidate([], PAGES) == []

    def test_unknown_page_is_skipped(self) -> None:
        hits = [ChunkHit("c1", "gone", 0.9), ChunkHit("c2", "p3", 0.9)]

        results = consolidate(hits, PAGES, threshold=0.99)

        assert [(r.id, r.file_id) for r in results] == [("p3", "f2")]

    def test_hit_without_source_is_skipped(self) -> None:
        hits = [ChunkHit("c1", None, 0.9)]
        assert consolidate(hits, PAGES) == []


class TestSplitMatches:
    """Tests for separating page rows from chunk rows."""

    ROWS = [
        {"id": "c2", "file_id": "f1", "source": "p1", "content": "b", "tokens": 1, "similarity": 0.4},
        {"id": "p1", "file_id": "f1", "source": None, "content": "page one", "tokens": 2, "similarity": -1},
        {"id": "c1", "file_id": "f1", "source": "p2", "content": "a", "tokens": 1, "similarity": 0.7},
        {"id": "p2", "file_id": "f1", "source": None, "content": "page two", "tokens": 2, "similarity": -1},
    ]

    def test_sentinel_rows_become_pages(self) -> None:
        pages, hits = split_matches(self.ROWS)

        assert [page.id for page in pages] == ["p1", "p2"]
        assert all(page.is_page for page in pages)
        assert [hit.id for hit in hits] == ["c1", "c2"]

    def test_negative_scores_other_than_sentinel_are_hits(self) -> None:
        rows = [{"id": "c", "file_id": "f", "source": "p", "content": "", "similarity": -0.5}]

        pages, hits = split_matches(rows)

        assert pages == []
        assert hits[0].similarity == -0.5

    def test_consolidate_matches(self) -> None:
        results = consolidate_matches(self.ROWS, threshold=0.6)

        assert [r.id for r in results] == ["p2"]
        assert results[0].content == "page two"
        assert results[0].similarity == 0.7

    def test_consolidate_matches_loose_threshold(self) -> None:
        results = consolidate_matches(self.ROWS, threshold=0.5)

        assert [r.id for r in results] == ["p2", "p1"]
        assert [r.similarity for r in results] == [0.7, 0.4]
