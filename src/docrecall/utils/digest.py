"""Content fingerprints used as idempotency keys for re-ingestion."""

from __future__ import annotations

import hashlib
from typing import Iterable


def fingerprint_chunks(contents: Iterable[str]) -> str:
    """Compute a SHA256 digest over chunk contents, fed in order."""
    sha = hashlib.sha256()
    for content in contents:
        sha.update(content.encode("utf-8"))
    return sha.hexdigest()
