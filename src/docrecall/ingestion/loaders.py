"""Turn uploaded bytes into pages.

PDFs are read with PyMuPDF (fitz), one page per PDF page. CSV files yield one
page per row; JSON, Markdown and plain text yield a single page.
"""

from __future__ import annotations

import csv
import io
import json
import logging
from pathlib import PurePath
from typing import Callable, Dict, List

import fitz  # PyMuPDF

from docrecall.errors import UnsupportedInputError
from docrecall.models import Page
from docrecall.utils.text import normalize_whitespace

LOGGER = logging.getLogger(__name__)


def file_extension(filename: str) -> str:
    return PurePath(filename).suffix.lstrip(".").lower()


def load_pdf(data: bytes, file_id: str) -> List[Page]:
    pages: List[Page] = []
    with fitz.open(stream=data, filetype="pdf") as doc:
        for index in range(len(doc)):
            text = normalize_whitespace((doc[index].get_text() or "").splitlines())
            if not text:
                LOGGER.debug("Skipping empty page %s of %s", index + 1, file_id)
                continue
            pages.append(
                Page(
                    content=text,
                    metadata={"loc": {"pageNumber": index + 1}, "file_id": file_id},
                    source_document_id=file_id,
                )
            )
    return pages


def load_csv(data: bytes, file_id: str) -> List[Page]:
    reader = csv.DictReader(io.StringIO(_decode(data)))
    pages: List[Page] = []
    for line, row in enumerate(reader, start=1):
        content = "\n".join(f"{key}: {value}" for key, value in row.items() if key is not None)
        pages.append(
            Page(
                content=content,
                metadata={"loc": {"line": line}, "file_id": file_id},
                source_document_id=file_id,
            )
        )
    return pages


def load_json(data: bytes, file_id: str) -> List[Page]:
    parsed = json.loads(_decode(data))
    content = json.dumps(parsed, indent=2, ensure_ascii=False)
    return [_single_page(content, file_id)]


def load_text(data: bytes, file_id: str) -> List[Page]:
    return [_single_page(_decode(data), file_id)]


LOADERS: Dict[str, Callable[[bytes, str], List[Page]]] = {
    "csv": load_csv,
    "json": load_json,
    "md": load_text,
    "pdf": load_pdf,
    "txt": load_text,
}


def load_pages(data: bytes, filename: str, file_id: str) -> List[Page]:
    """Extract pages from ``data`` based on the extension of ``filename``."""
    extension = file_extension(filename)
    loader = LOADERS.get(extension)
    if loader is None:
        raise UnsupportedInputError(extension or None, details={"filename": filename})

    try:
        pages = loader(data, file_id)
    except (ValueError, RuntimeError) as exc:
        # json.JSONDecodeError and UnicodeDecodeError are ValueErrors, fitz raises RuntimeError.
        raise UnsupportedInputError(
            extension, details={"filename": filename, "reason": str(exc)}
        ) from exc

    LOGGER.info("Extracted %d pages from %s", len(pages), filename)
    return pages


def _single_page(content: str, file_id: str) -> Page:
    return Page(
        content=content,
        metadata={"loc": {"lines": {"from": 1}}, "file_id": file_id},
        source_document_id=file_id,
    )


def _decode(data: bytes) -> str:
    return data.decode("utf-8-sig")
