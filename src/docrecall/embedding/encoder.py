"""Embedding model management.

Two providers sit behind the same ``embed``/``embed_query`` interface:

- ``LocalEmbeddingModel`` runs a sentence-transformers model in-process,
  in fixed-size batches, mean-pooled and L2-normalized.
- ``RemoteEmbeddingModel`` submits all texts to the OpenAI (or Azure OpenAI)
  embeddings endpoint in a single request.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from functools import lru_cache
from typing import TYPE_CHECKING, Callable, Iterable, Literal, Protocol, Sequence

import numpy as np
import openai
from sentence_transformers import SentenceTransformer

from docrecall.errors import MissingCredentialError, ProviderError
from docrecall.models import EmbeddingProvider

if TYPE_CHECKING:
    from docrecall.config import AppConfig

DEFAULT_LOCAL_MODEL = "intfloat/multilingual-e5-small"
DEFAULT_REMOTE_MODEL = "text-embedding-3-small"
AZURE_API_VERSION = "2023-12-01-preview"

REMOTE_DIMENSIONS = {
    "text-embedding-3-small": 1536,
    "text-embedding-3-large": 3072,
    "text-embedding-ada-002": 1536,
}

ProgressCallback = Callable[[int, int], None]

logger = logging.getLogger(__name__)


class Embedder(Protocol):
    provider: EmbeddingProvider
    dimension: int

    def embed(
        self, texts: Sequence[str] | Iterable[str], progress: ProgressCallback | None = None
    ) -> np.ndarray: ...

    def embed_query(self, text: str) -> np.ndarray: ...


@dataclass(slots=True)
class EmbeddingConfig:
    model_name: str = DEFAULT_LOCAL_MODEL
    batch_size: int = 100
    normalize: bool = True
    backend: Literal["torch", "onnx", "openvino"] | None = None
    device: str | None = None


@lru_cache(maxsize=4)
def get_local_model(
    model_name: str, backend: str | None = None, device: str | None = None
) -> SentenceTransformer:
    """Load a SentenceTransformer once per process and argument set."""
    logger.info("Loading embedding model %s (backend=%s, device=%s)", model_name, backend, device)
    kwargs = {"backend": backend} if backend else {}
    return SentenceTransformer(model_name, device=device, **kwargs)


class LocalEmbeddingModel:
    """Thin wrapper around `SentenceTransformer` that embeds in bounded batches.

    The default model ships a mean-pooling head, and embeddings are
    L2-normalized so cosine similarity equals the dot product. Batching only
    bounds peak memory; results match embedding one text at a time.
    """

    provider = EmbeddingProvider.LOCAL

    def __init__(
        self,
        config: EmbeddingConfig | None = None,
        *,
        model: SentenceTransformer | None = None,
    ) -> None:
        self.config = config or EmbeddingConfig()
        if self.config.batch_size <= 0:
            raise ValueError("batch_size must be positive")
        self._model = model or get_local_model(
            self.config.model_name, self.config.backend, self.config.device
        )
        self.dimension = int(self._model.get_sentence_embedding_dimension())

    def embed(
        self, texts: Sequence[str] | Iterable[str], progress: ProgressCallback | None = None
    ) -> np.ndarray:
        """Return float32 embeddings for input texts, in input order."""
        sentences = list(texts)
        total = len(sentences)
        if not sentences:
            return np.zeros((0, self.dimension), dtype="float32")

        batch_size = self.config.batch_size
        batches = []
        for start in range(0, total, batch_size):
            batch = sentences[start : start + batch_size]
            vectors = self._model.encode(
                batch,
                batch_size=len(batch),
                show_progress_bar=False,
                convert_to_numpy=True,
                normalize_embeddings=self.config.normalize,
            )
            batches.append(np.asarray(vectors, dtype="float32"))

            done = start + len(batch)
            logger.debug("Embedding progress: %d / %d", done, total)
            if progress is not None:
                progress(done, total)

        return np.vstack(batches)

    def embed_query(self, text: str) -> np.ndarray:
        """Convenience wrapper for single-query embedding."""
        return self.embed([text])[0]


class RemoteEmbeddingModel:
    """OpenAI-compatible embeddings client, one request per ``embed`` call."""

    provider = EmbeddingProvider.OPENAI

    def __init__(self, client: openai.OpenAI, *, model_name: str = DEFAULT_REMOTE_MODEL) -> None:
        self._client = client
        self.model_name = model_name
        self.dimension = REMOTE_DIMENSIONS.get(model_name, 0)

    def embed(
        self, texts: Sequence[str] | Iterable[str], progress: ProgressCallback | None = None
    ) -> np.ndarray:
        sentences = list(texts)
        if not sentences:
            return np.zeros((0, self.dimension), dtype="float32")

        try:
            response = self._client.embeddings.create(model=self.model_name, input=sentences)
        except openai.APIStatusError as exc:
            raise ProviderError(
                exc.message, status_code=exc.status_code, details={"model": self.model_name}
            ) from exc
        except openai.APIError as exc:
            raise ProviderError(exc.message, details={"model": self.model_name}) from exc

        data = sorted(response.data, key=lambda item: item.index)
        if len(data) != len(sentences):
            raise ProviderError(
                f"Embedding provider returned {len(data)} vectors for {len(sentences)} inputs",
                details={"model": self.model_name},
            )

        embeddings = np.asarray([item.embedding for item in data], dtype="float32")
        self.dimension = int(embeddings.shape[1])
        if progress is not None:
            progress(len(sentences), len(sentences))
        return embeddings

    def embed_query(self, text: str) -> np.ndarray:
        return self.embed([text])[0]


def check_api_key(api_key: str | None, provider_name: str) -> None:
    if not api_key:
        raise MissingCredentialError(provider_name)


def check_provider_credentials(provider: EmbeddingProvider, config: "AppConfig") -> None:
    """Fail fast when the chosen provider has no key configured."""
    if provider is not EmbeddingProvider.OPENAI:
        return
    if config.use_azure_openai:
        check_api_key(config.azure_openai_api_key, "Azure OpenAI")
    else:
        check_api_key(config.openai_api_key, "OpenAI")


def build_openai_client(config: "AppConfig") -> openai.OpenAI:
    if config.use_azure_openai:
        return openai.AzureOpenAI(
            api_key=config.azure_openai_api_key,
            azure_endpoint=config.azure_openai_endpoint or "",
            azure_deployment=config.azure_openai_embeddings_id,
            api_version=AZURE_API_VERSION,
        )
    return openai.OpenAI(
        api_key=config.openai_api_key,
        organization=config.openai_organization,
    )


def create_embedder(provider: EmbeddingProvider | str, config: "AppConfig") -> Embedder:
    """Build the embedder for ``provider``, checking credentials first."""
    provider = EmbeddingProvider(provider)
    check_provider_credentials(provider, config)

    if provider is EmbeddingProvider.OPENAI:
        model_name = config.remote_model_name
        if config.use_azure_openai and config.azure_openai_embeddings_id:
            model_name = config.azure_openai_embeddings_id
        return RemoteEmbeddingModel(build_openai_client(config), model_name=model_name)

    return LocalEmbeddingModel(
        EmbeddingConfig(model_name=config.model_name, batch_size=config.batch_size)
    )
