"""Text helpers including token-aware page chunking."""

from __future__ import annotations

from functools import lru_cache
from typing import Callable, Iterable, List, Protocol, Sequence

import tiktoken

from docrecall.models import Chunk, Page, new_id

DEFAULT_ENCODING = "cl100k_base"


class Tokenizer(Protocol):
    def encode(self, text: str) -> List[int]: ...

    def decode(self, tokens: List[int]) -> str: ...


@lru_cache(maxsize=None)
def get_tokenizer(encoding: str = DEFAULT_ENCODING) -> tiktoken.Encoding:
    """Return a cached tiktoken encoding."""
    return tiktoken.get_encoding(encoding)


def count_tokens(text: str, tokenizer: Tokenizer | None = None) -> int:
    tokenizer = tokenizer or get_tokenizer()
    return len(tokenizer.encode(text))


def token_windows(
    total: int,
    *,
    chunk_size: int,
    chunk_overlap: int,
    is_boundary: Callable[[int], bool] | None = None,
) -> Iterable[tuple[int, int]]:
    """Yield ``(start, end)`` token offsets covering ``total`` tokens.

    Consecutive windows share ``chunk_overlap`` tokens and the last window
    ends at ``total``. When ``is_boundary`` is given, window edges are moved
    back onto positions it accepts, so a window may come out shorter and the
    shared span longer.
    """
    if total <= 0:
        return
    start = 0
    while True:
        end = min(start + chunk_size, total)
        if is_boundary is not None and end < total:
            cut = end
            while cut > start and not is_boundary(cut):
                cut -= 1
            if cut > start:
                end = cut
        yield start, end
        if end >= total:
            break
        next_start = max(end - chunk_overlap, start + 1)
        if is_boundary is not None:
            while next_start > start and not is_boundary(next_start):
                next_start -= 1
            if next_start <= start:
                next_start = end
        start = next_start


def char_boundaries(tokenizer: Tokenizer, tokens: Sequence[int]) -> Callable[[int], bool] | None:
    """Return a check for token offsets that do not split a UTF-8 character.

    Needs a tokenizer exposing ``decode_single_token_bytes`` (tiktoken does);
    returns ``None`` otherwise.
    """
    token_bytes = getattr(tokenizer, "decode_single_token_bytes", None)
    if token_bytes is None:
        return None

    def is_boundary(position: int) -> bool:
        if position <= 0 or position >= len(tokens):
            return True
        head = token_bytes(tokens[position])
        # continuation bytes look like 0b10xxxxxx
        return not head or head[0] & 0xC0 != 0x80

    return is_boundary


def split_pages(
    pages: Sequence[Page],
    *,
    chunk_size: int,
    chunk_overlap: int,
    tokenizer: Tokenizer | None = None,
) -> List[Chunk]:
    """Split pages into overlapping token chunks chained in document order.

    Windows never straddle two pages, so every chunk points at exactly one
    source page. The returned list is the chain: ``next_ref`` of each chunk is
    the id of the following list element and the last one is ``None``.
    """
    if chunk_size <= 0:
        raise ValueError("chunk_size must be positive")
    if chunk_overlap < 0 or chunk_overlap >= chunk_size:
        raise ValueError("chunk_overlap must be in [0, chunk_size)")

    tokenizer = tokenizer or get_tokenizer()
    chunks: List[Chunk] = []

    for page in pages:
        tokens = tokenizer.encode(page.content)
        if len(tokens) <= chunk_size:
            if page.content:
                chunks.append(_make_chunk(page.content, len(tokens), page.id))
            continue

        windows = token_windows(
            len(tokens),
            chunk_size=chunk_size,
            chunk_overlap=chunk_overlap,
            is_boundary=char_boundaries(tokenizer, tokens),
        )
        for start, end in windows:
            window = tokens[start:end]
            chunks.append(_make_chunk(tokenizer.decode(window), len(window), page.id))

    for current, following in zip(chunks, chunks[1:]):
        current.next_ref = following.id
    return chunks


def _make_chunk(content: str, token_count: int, source_ref: str) -> Chunk:
    return Chunk(id=new_id(), content=content, token_count=token_count, source_ref=source_ref)


def normalize_whitespace(lines: Iterable[str]) -> str:
    """Collapse whitespace and join lines."""
    return "\n".join(line.strip() for line in lines if line.strip())
