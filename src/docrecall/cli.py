"""Command line interface for DocRecall."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import List, Optional

import typer
from rich.console import Console
from rich.progress import Progress
from rich.table import Table

from docrecall.config import AppConfig
from docrecall.embedding.encoder import create_embedder
from docrecall.errors import DocRecallError
from docrecall.index.indexer import Indexer
from docrecall.index.item_store import SQLiteItemStore
from docrecall.index.search import Retriever
from docrecall.index.vector_store import SimpleVectorStore
from docrecall.models import EmbeddingProvider, QueryMode
from docrecall.web.app import app as web_app


console = Console()
app = typer.Typer(help="DocRecall - chunk, embed and retrieve document pages")


def _setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(level=level, format="[%(levelname)s] %(message)s")


def _ensure_data_dir(data_dir: Path) -> None:
    data_dir.mkdir(parents=True, exist_ok=True)


def _fail(exc: DocRecallError) -> typer.Exit:
    console.print(f"[red]{exc.message}[/red] (status {exc.status_code})")
    return typer.Exit(code=1)


@app.command()
def process(
    path: Path = typer.Argument(
        ..., help="Document to ingest (pdf, csv, json, md, txt).", exists=True, dir_okay=False
    ),
    file_id: Optional[str] = typer.Option(None, "--file-id", help="File id, defaults to the file name"),
    user_id: str = typer.Option("local", "--user-id", help="Owner of the ingested items"),
    provider: EmbeddingProvider = typer.Option(EmbeddingProvider.LOCAL, help="Embedding provider"),
    data_dir: Path = typer.Option(None, "--data-dir", help="Directory for the stores"),
    chunk_size: Optional[int] = typer.Option(None, help="Chunk size in tokens [env: DOCRECALL_CHUNK_SIZE]"),
    chunk_overlap: Optional[int] = typer.Option(
        None, help="Chunk overlap in tokens [env: DOCRECALL_CHUNK_OVERLAP]"
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose logging"),
) -> None:
    """Chunk, embed and store one document."""
    _setup_logging(verbose)
    config = AppConfig.from_env(data_dir=data_dir, chunk_size=chunk_size, chunk_overlap=chunk_overlap)
    _ensure_data_dir(Path(config.data_dir))

    try:
        embedder = create_embedder(provider, config)
    except DocRecallError as exc:
        raise _fail(exc)

    vector_store = SimpleVectorStore.from_persist_dir(config.store_dir, namespace=provider.value)
    item_store = SQLiteItemStore(config.db_path)
    indexer = Indexer(
        embedder,
        vector_store,
        item_store,
        chunk_size=config.chunk_size,
        chunk_overlap=config.chunk_overlap,
    )

    console.print(f"Processing [bold]{path.name}[/bold] into [bold]{config.data_dir}[/bold]...")
    try:
        with Progress(console=console, transient=True) as progress:
            task = progress.add_task("Embedding", total=None)
            result = indexer.process(
                path.read_bytes(),
                path.name,
                file_id=file_id or path.name,
                user_id=user_id,
                progress=lambda done, total: progress.update(task, completed=done, total=total),
            )
    except DocRecallError as exc:
        raise _fail(exc)
    finally:
        item_store.close()

    console.print(
        f"Pages: {result.page_count}, chunks: {result.chunk_count}, "
        f"tokens: {result.total_tokens}"
    )
    console.print(f"Fingerprint: {result.fingerprint}")


@app.command()
def retrieve(
    query: str = typer.Argument(..., help="Query text"),
    file_ids: List[str] = typer.Option(..., "--file-id", help="File ids to search (repeatable)"),
    provider: EmbeddingProvider = typer.Option(EmbeddingProvider.LOCAL, help="Embedding provider"),
    source_count: int = typer.Option(4, help="Number of chunks to match"),
    mode: QueryMode = typer.Option(QueryMode.DEFAULT, help="Ranking mode"),
    granularity: str = typer.Option("page", help="Return 'page' or 'chunk' results"),
    backend: str = typer.Option("store", help="Rank with the vector 'store' or the 'items' table"),
    data_dir: Path = typer.Option(None, "--data-dir", help="Directory for the stores"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose logging"),
) -> None:
    """Find the pages (or chunks) most similar to a query."""
    _setup_logging(verbose)
    if granularity not in ("page", "chunk"):
        raise typer.BadParameter("granularity must be 'page' or 'chunk'")
    if backend not in ("store", "items"):
        raise typer.BadParameter("backend must be 'store' or 'items'")

    config = AppConfig.from_env(data_dir=data_dir)
    if not config.db_path.exists():
        raise typer.BadParameter(f"Database not found: {config.db_path}")

    try:
        embedder = create_embedder(provider, config)
    except DocRecallError as exc:
        raise _fail(exc)

    vector_store = SimpleVectorStore.from_persist_dir(config.store_dir, namespace=provider.value)
    item_store = SQLiteItemStore(config.db_path)
    retriever = Retriever(embedder, vector_store, item_store, threshold=config.similarity_threshold)
    try:
        results = retriever.retrieve(
            query,
            file_ids=file_ids,
            source_count=source_count,
            mode=mode,
            granularity=granularity,
            backend=backend,
        )
    except DocRecallError as exc:
        raise _fail(exc)
    finally:
        item_store.close()

    if not results:
        console.print("[yellow]No matches found.[/yellow]")
        return

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Score", no_wrap=True)
    table.add_column("File")
    table.add_column("Id")
    table.add_column("Snippet")

    for result in results:
        snippet = result.content.replace("\n", " ")
        table.add_row(f"{result.similarity:.4f}", result.file_id, result.id, snippet[:180])

    console.print(table)


@app.command()
def delete(
    file_id: str = typer.Argument(..., help="File id to remove"),
    data_dir: Path = typer.Option(None, "--data-dir", help="Directory for the stores"),
) -> None:
    """Remove a file from every store."""
    config = AppConfig.from_env(data_dir=data_dir)
    if not config.db_path.exists():
        console.print("[yellow]Database not found, nothing to delete.[/yellow]")
        return

    removed_entries = 0
    for provider in EmbeddingProvider:
        store = SimpleVectorStore.from_persist_dir(config.store_dir, namespace=provider.value)
        removed_entries += store.delete(file_id)

    item_store = SQLiteItemStore(config.db_path)
    try:
        removed_items = item_store.delete_file(file_id)
    finally:
        item_store.close()
    console.print(f"Removed {removed_items} items and {removed_entries} vectors for {file_id}.")


@app.command()
def web(
    host: str = typer.Option("127.0.0.1", help="Host interface"),
    port: int = typer.Option(8000, help="Server port"),
) -> None:
    """Start the HTTP API."""
    try:
        import uvicorn
    except ImportError as exc:  # pragma: no cover - optional extra
        raise typer.BadParameter(
            "uvicorn is not installed. Install the web extras with \"python -m pip install '.[web]'\""
        ) from exc

    console.print(f"Starting API on http://{host}:{port}")
    uvicorn.run(
        web_app,
        host=host,
        port=port,
        reload=False,
        log_level="info",
    )
