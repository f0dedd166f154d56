"""Exception hierarchy shared by the ingest and retrieve pipelines.

Every error carries an HTTP-style ``status_code`` so the web layer and the
CLI can classify failures without inspecting their origin.
"""

from __future__ import annotations

from typing import Any


class DocRecallError(Exception):
    """Base exception for all DocRecall errors."""

    status_code: int = 500

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        self.details = details or {}
        super().__init__(message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


class UnsupportedInputError(DocRecallError):
    """Raised when a document format has no extractor."""

    status_code = 400

    def __init__(self, file_type: str | None, details: dict[str, Any] | None = None) -> None:
        details = details or {}
        details["file_type"] = file_type
        super().__init__("Unsupported file type", details=details)


class MissingCredentialError(DocRecallError):
    """Raised when an embedding provider key is absent."""

    status_code = 401

    def __init__(self, provider_name: str) -> None:
        super().__init__(
            f"{provider_name} API Key not found",
            details={"provider": provider_name},
        )


class ProviderError(DocRecallError):
    """Raised when the remote embedding call fails or returns malformed data."""

    status_code = 502


class StorePersistenceError(DocRecallError):
    """Raised when a store snapshot or row cannot be written."""

    status_code = 500
