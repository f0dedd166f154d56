"""Tests for the FastAPI web application."""

from __future__ import annotations

from pathlib import Path
from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient

from docrecall.config import AppConfig
from docrecall.models import EmbeddingProvider
from docrecall.web.app import _ensure_data_dir, app, get_config, get_vector_store

from conftest import FakeEmbedder, WordTokenizer


client = TestClient(app)

NOTES = b"wind turbines spin in coastal breezes"


@pytest.fixture
def config(tmp_path: Path):
    cfg = AppConfig(data_dir=tmp_path / "data", chunk_size=50, chunk_overlap=5)
    app.dependency_overrides[get_config] = lambda: cfg
    yield cfg
    app.dependency_overrides.clear()


@pytest.fixture
def fake_pipeline():
    with patch(
        "docrecall.web.app.create_embedder",
        side_effect=lambda provider, config: FakeEmbedder(provider=EmbeddingProvider(provider)),
    ) as mock_create, patch(
        "docrecall.index.indexer.get_tokenizer", return_value=WordTokenizer()
    ):
        yield mock_create


def _upload(filename: str = "notes.txt", content: bytes = NOTES, **form):
    data = {"file_id": "f1", **form}
    return client.post(
        "/retrieval/process", files={"file": (filename, content, "text/plain")}, data=data
    )


class TestHelperFunctions:
    """Tests for helper functions."""

    def test_ensure_data_dir_creates_directory(self, tmp_path: Path) -> None:
        """Creates the data directory if it doesn't exist."""
        cfg = AppConfig(data_dir=tmp_path / "nested" / "data")
        assert _ensure_data_dir(cfg).is_dir()

    def test_vector_store_cached_per_provider(self, tmp_path: Path) -> None:
        """Returns one shared store per snapshot file."""
        first = get_vector_store(str(tmp_path), "local")
        assert get_vector_store(str(tmp_path), "local") is first
        assert get_vector_store(str(tmp_path), "openai") is not first


class TestProcessEndpoint:
    """Tests for POST /retrieval/process."""

    def test_process_success(self, config: AppConfig, fake_pipeline) -> None:
        """Embeds an uploaded text file."""
        response = _upload()

        assert response.status_code == 200
        body = response.json()
        assert body["message"] == "Embed Successful"
        assert len(body["deterministic_file_id"]) == 64
        assert body["total_tokens"] == 6
        assert body["chunk_count"] == 1
        assert body["page_count"] == 1
        assert config.db_path.exists()

    def test_process_same_content_same_fingerprint(self, config: AppConfig, fake_pipeline) -> None:
        """Re-uploading identical content yields the same fingerprint."""
        first = _upload().json()["deterministic_file_id"]
        second = _upload().json()["deterministic_file_id"]

        assert first == second
        assert len(get_vector_store(str(config.store_dir), "local")) == 1

    def test_process_unsupported_file(self, config: AppConfig, fake_pipeline) -> None:
        """Returns 400 for formats without an extractor."""
        response = _upload(filename="picture.png", content=b"\x89PNG")

        assert response.status_code == 400
        assert response.json() == {"message": "Unsupported file type"}

    def test_process_missing_openai_key(self, config: AppConfig) -> None:
        """Returns 401 before any work when the OpenAI key is absent."""
        response = _upload(embeddings_provider="openai")

        assert response.status_code == 401
        assert response.json() == {"message": "OpenAI API Key not found"}
        assert not config.db_path.exists()

    def test_process_requires_file_id(self, config: AppConfig) -> None:
        """Rejects uploads without a file id."""
        response = client.post(
            "/retrieval/process", files={"file": ("notes.txt", NOTES, "text/plain")}
        )
        assert response.status_code == 422


class TestRetrieveEndpoint:
    """Tests for POST /retrieval/retrieve."""

    def test_retrieve_empty_query(self, config: AppConfig) -> None:
        """Returns 400 for a whitespace-only query."""
        response = client.post("/retrieval/retrieve", json={"user_input": "  ", "file_ids": ["f1"]})

        assert response.status_code == 400
        assert "Empty query" in response.json()["detail"]

    def test_retrieve_local_returns_pages(self, config: AppConfig, fake_pipeline) -> None:
        """Local retrieval defaults to whole pages."""
        _upload()

        response = client.post(
            "/retrieval/retrieve",
            json={"user_input": NOTES.decode(), "file_ids": ["f1"]},
        )

        assert response.status_code == 200
        results = response.json()["results"]
        assert len(results) == 1
        assert results[0]["file_id"] == "f1"
        assert results[0]["content"] == NOTES.decode()
        assert results[0]["similarity"] == pytest.approx(1.0)
        assert get_vector_store(str(config.store_dir), "local").get(results[0]["id"]) is None

    def test_retrieve_openai_returns_chunks(self, config: AppConfig, fake_pipeline) -> None:
        """OpenAI retrieval defaults to chunks."""
        _upload(embeddings_provider="openai")

        response = client.post(
            "/retrieval/retrieve",
            json={
                "user_input": NOTES.decode(),
                "file_ids": ["f1"],
                "embeddings_provider": "openai",
            },
        )

        assert response.status_code == 200
        results = response.json()["results"]
        assert len(results) == 1
        assert get_vector_store(str(config.store_dir), "openai").get(results[0]["id"]) is not None

    def test_retrieve_unknown_file(self, config: AppConfig, fake_pipeline) -> None:
        """Returns an empty list when nothing matches."""
        response = client.post(
            "/retrieval/retrieve", json={"user_input": "wind", "file_ids": ["missing"]}
        )

        assert response.status_code == 200
        assert response.json() == {"results": []}

    def test_retrieve_invalid_mode(self, config: AppConfig) -> None:
        """Rejects unknown ranking modes."""
        response = client.post(
            "/retrieval/retrieve",
            json={"user_input": "wind", "file_ids": ["f1"], "mode": "random"},
        )
        assert response.status_code == 422


class TestDeleteEndpoint:
    """Tests for DELETE /files/{file_id}."""

    def test_delete_database_not_found(self, config: AppConfig) -> None:
        """Returns 404 when nothing was ever ingested."""
        response = client.delete("/files/f1")

        assert response.status_code == 404
        assert "Database not found" in response.json()["detail"]

    def test_delete_success(self, config: AppConfig, fake_pipeline) -> None:
        """Removes items and vectors of an ingested file."""
        _upload()

        response = client.delete("/files/f1")

        assert response.status_code == 200
        assert response.json() == {"status": "ok", "removed_items": 2, "removed_entries": 1}
        assert client.delete("/files/f1").status_code == 404
