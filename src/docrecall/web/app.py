"""FastAPI application exposing the ingest and retrieve pipelines."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict
from functools import lru_cache
from pathlib import Path
from typing import Any, List, Literal

from fastapi import Depends, FastAPI, File, Form, HTTPException, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from docrecall import __version__
from docrecall.config import AppConfig
from docrecall.embedding.encoder import create_embedder
from docrecall.errors import DocRecallError
from docrecall.index.indexer import Indexer, IngestResult
from docrecall.index.item_store import SQLiteItemStore
from docrecall.index.search import Retriever
from docrecall.index.vector_store import SimpleVectorStore
from docrecall.models import EmbeddingProvider, QueryMode

LOGGER = logging.getLogger(__name__)

app = FastAPI(title="DocRecall", version=__version__)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)


class RetrievePayload(BaseModel):
    user_input: str
    file_ids: List[str]
    embeddings_provider: EmbeddingProvider = EmbeddingProvider.LOCAL
    source_count: int = 4
    mode: QueryMode = QueryMode.DEFAULT
    granularity: Literal["page", "chunk"] | None = None
    backend: Literal["store", "items"] = "store"


def get_config() -> AppConfig:
    return AppConfig.from_env()


@lru_cache(maxsize=None)
def get_vector_store(store_dir: str, provider: str) -> SimpleVectorStore:
    """One store instance per snapshot file, shared by all requests of this process."""
    return SimpleVectorStore.from_persist_dir(Path(store_dir), namespace=provider)


def _ensure_data_dir(config: AppConfig) -> Path:
    data_dir = Path(config.data_dir)
    data_dir.mkdir(parents=True, exist_ok=True)
    return data_dir


@app.on_event("startup")
async def startup_event() -> None:
    logging.basicConfig(level=logging.INFO, format="[%(levelname)s] %(message)s")


@app.exception_handler(DocRecallError)
async def docrecall_error_handler(request: Request, exc: DocRecallError) -> JSONResponse:
    LOGGER.error("%s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=exc.status_code, content={"message": exc.message})


def _run_process_job(
    data: bytes,
    filename: str,
    file_id: str,
    user_id: str,
    provider: EmbeddingProvider,
    config: AppConfig,
) -> IngestResult:
    embedder = create_embedder(provider, config)
    _ensure_data_dir(config)
    vector_store = get_vector_store(str(config.store_dir), provider.value)
    item_store = SQLiteItemStore(config.db_path)
    try:
        indexer = Indexer(
            embedder,
            vector_store,
            item_store,
            chunk_size=config.chunk_size,
            chunk_overlap=config.chunk_overlap,
        )
        return indexer.process(data, filename, file_id=file_id, user_id=user_id)
    finally:
        item_store.close()


@app.post("/retrieval/process")
async def process_file(
    file: UploadFile = File(...),
    file_id: str = Form(...),
    embeddings_provider: EmbeddingProvider = Form(EmbeddingProvider.LOCAL),
    user_id: str = Form("local"),
    config: AppConfig = Depends(get_config),
) -> dict[str, Any]:
    data = await file.read()
    LOGGER.info(
        "Process request for %s (file_id=%s, provider=%s)",
        file.filename,
        file_id,
        embeddings_provider.value,
    )

    result = await asyncio.to_thread(
        _run_process_job,
        data,
        file.filename or "",
        file_id,
        user_id,
        embeddings_provider,
        config,
    )
    return {
        "message": "Embed Successful",
        "deterministic_file_id": result.fingerprint,
        "total_tokens": result.total_tokens,
        "chunk_count": result.chunk_count,
        "page_count": result.page_count,
    }


def _run_retrieve_job(payload: RetrievePayload, config: AppConfig) -> List[dict[str, Any]]:
    provider = payload.embeddings_provider
    embedder = create_embedder(provider, config)
    _ensure_data_dir(config)
    vector_store = get_vector_store(str(config.store_dir), provider.value)
    item_store = SQLiteItemStore(config.db_path)

    granularity = payload.granularity
    if granularity is None:
        granularity = "chunk" if provider is EmbeddingProvider.OPENAI else "page"

    try:
        retriever = Retriever(
            embedder, vector_store, item_store, threshold=config.similarity_threshold
        )
        results = retriever.retrieve(
            payload.user_input,
            file_ids=payload.file_ids,
            source_count=max(1, min(payload.source_count, 50)),
            mode=payload.mode,
            granularity=granularity,
            backend=payload.backend,
        )
    finally:
        item_store.close()
    return [asdict(result) for result in results]


@app.post("/retrieval/retrieve")
async def retrieve(
    payload: RetrievePayload, config: AppConfig = Depends(get_config)
) -> dict[str, List[dict[str, Any]]]:
    if not payload.user_input.strip():
        raise HTTPException(status_code=400, detail="Empty query")

    results = await asyncio.to_thread(_run_retrieve_job, payload, config)
    return {"results": results}


@app.delete("/files/{file_id}")
async def delete_file(file_id: str, config: AppConfig = Depends(get_config)) -> dict[str, Any]:
    """Remove a file from the item store and from every provider's vector store."""
    if not config.db_path.exists():
        raise HTTPException(status_code=404, detail="Database not found")

    removed_entries = 0
    for provider in EmbeddingProvider:
        store = get_vector_store(str(config.store_dir), provider.value)
        removed_entries += store.delete(file_id)

    item_store = SQLiteItemStore(config.db_path)
    try:
        removed_items = item_store.delete_file(file_id)
    finally:
        item_store.close()

    if not removed_items and not removed_entries:
        raise HTTPException(status_code=404, detail=f"File {file_id} not found")
    return {"status": "ok", "removed_items": removed_items, "removed_entries": removed_entries}
