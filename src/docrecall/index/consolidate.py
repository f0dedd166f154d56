"""Roll chunk-level similarity hits up to the pages they were cut from."""

from __future__ import annotations

import logging
from typing import Any, Iterable, List, Mapping, Sequence

from docrecall.models import ChunkHit, FileItem, SearchResult

LOGGER = logging.getLogger(__name__)

PAGE_SENTINEL = -1
DEFAULT_THRESHOLD = 0.995


def consolidate(
    hits: Sequence[ChunkHit],
    pages: Iterable[FileItem],
    *,
    threshold: float = DEFAULT_THRESHOLD,
) -> List[SearchResult]:
    """Return the pages behind the hits scoring within ``threshold`` of the best.

    A hit survives when ``similarity >= best * threshold``. Pages are
    deduplicated and keep the order and score of their first surviving hit.
    When no hit has a positive score the result is empty.
    """
    if not hits:
        return []

    best = max(hit.similarity for hit in hits)
    if best <= 0:
        LOGGER.debug("Best chunk score %s is not positive, returning no pages", best)
        return []

    cutoff = best * threshold
    pages_by_id = {page.id: page for page in pages}
    results: List[SearchResult] = []
    seen: set[str] = set()

    for hit in hits:
        if hit.similarity < cutoff or hit.source is None or hit.source in seen:
            continue
        page = pages_by_id.get(hit.source)
        if page is None:
            LOGGER.debug("Chunk %s points at unknown page %s", hit.id, hit.source)
            continue
        seen.add(page.id)
        results.append(
            SearchResult(
                id=page.id,
                file_id=page.file_id,
                content=page.content,
                similarity=hit.similarity,
            )
        )

    LOGGER.debug("Consolidated %d hits into %d pages (best=%.6f)", len(hits), len(results), best)
    return results


def split_matches(rows: Iterable[Mapping[str, Any]]) -> tuple[List[FileItem], List[ChunkHit]]:
    """Separate page rows (similarity exactly -1) from scored chunk rows."""
    pages: List[FileItem] = []
    hits: List[ChunkHit] = []
    for row in rows:
        if row["similarity"] == PAGE_SENTINEL:
            pages.append(
                FileItem(
                    id=row["id"],
                    file_id=row["file_id"],
                    user_id=row.get("user_id", ""),
                    content=row["content"],
                    tokens=row.get("tokens", 0),
                    source=row.get("source"),
                    next=row.get("next"),
                )
            )
        else:
            hits.append(ChunkHit(id=row["id"], source=row.get("source"), similarity=row["similarity"]))

    hits.sort(key=lambda hit: hit.similarity, reverse=True)
    return pages, hits


def consolidate_matches(
    rows: Iterable[Mapping[str, Any]], *, threshold: float = DEFAULT_THRESHOLD
) -> List[SearchResult]:
    """Consolidate the mixed rows returned by a page-matching query."""
    pages, hits = split_matches(rows)
    return consolidate(hits, pages, threshold=threshold)
