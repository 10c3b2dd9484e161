"""
RAG Context Core - CLI Entry Point
-----------------------------------
Typer commands for local development against the core.

Usage:
    python -m ragcore.main chunk docs/handbook.md            # Inspect chunking
    python -m ragcore.main chunk docs/handbook.md --json     # Chunks as JSON
    python -m ragcore.main index docs/*.md --tenant acme     # Chunk, embed, index
    python -m ragcore.main index docs/ --tenant acme         # Every .txt/.md under docs/
    python -m ragcore.main ask --tenant acme                 # Interactive chat
    python -m ragcore.main ask -q "..." --tenant acme        # Single-shot query
"""
from __future__ import annotations

import sys

# Windows cp1252 terminal fix: force UTF-8 so the Rich console renderer
# does not crash on document text.
if sys.platform == "win32":
    sys.stdout.reconfigure(encoding="utf-8", errors="replace")
    sys.stderr.reconfigure(encoding="utf-8", errors="replace")

import asyncio
import json
import uuid
from pathlib import Path
from typing import Optional

import typer
from dotenv import load_dotenv
from rich import box
from rich.console import Console
from rich.markdown import Markdown
from rich.panel import Panel
from rich.table import Table

from ragcore.chunking.chunker import OverlappingChunker, analyze_overlap_quality, validate_chunks
from ragcore.config import ChunkingOptions, Settings, load_settings
from ragcore.errors import ConfigurationError
from ragcore.tokens import tiktoken_estimator
from ragcore.utils.helpers import save_json, truncate_text
from ragcore.utils.logger import setup_logger

app = typer.Typer(
    name="ragcore",
    help="RAG Context Core - chunking, retrieval and conversational context CLI",
    add_completion=False,
)
console = Console()


# --- Helpers ------------------------------------------------------------------

def _bootstrap(config_path: str) -> Settings:
    load_dotenv()
    try:
        settings = load_settings(config_path)
    except ConfigurationError as exc:
        console.print(f"[red]Invalid configuration:[/red] {exc}")
        raise typer.Exit(1)
    setup_logger(settings.logging)
    return settings


DOCUMENT_SUFFIXES = {".txt", ".md"}


def _expand_documents(paths: list[Path]) -> list[Path]:
    documents: list[Path] = []
    for path in paths:
        if path.is_dir():
            documents.extend(sorted(p for p in path.rglob("*") if p.suffix.lower() in DOCUMENT_SUFFIXES))
        else:
            documents.append(path)
    return documents


# --- Commands -----------------------------------------------------------------

@app.command()
def chunk(
    path: Path = typer.Argument(..., exists=True, dir_okay=False, help="Plain-text document"),
    config: str = typer.Option("config/config.yaml", "--config", "-c", help="Settings YAML"),
    chunk_size: Optional[int] = typer.Option(None, "--chunk-size", help="Override chunk_size_tokens"),
    overlap: Optional[int] = typer.Option(None, "--overlap", help="Override overlap_tokens"),
    json_out: bool = typer.Option(False, "--json", help="Print chunks as JSON"),
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Write chunks to a JSON file"),
    exact: bool = typer.Option(False, "--exact", help="Also report exact BPE token counts (tiktoken)"),
) -> None:
    """Chunk a document and report sizes, overlaps and validation issues."""
    settings = _bootstrap(config)
    overrides = {
        k: v for k, v in {"chunk_size_tokens": chunk_size, "overlap_tokens": overlap}.items()
        if v is not None
    }
    try:
        options = ChunkingOptions.model_validate({**settings.chunking.model_dump(), **overrides})
    except ConfigurationError as exc:
        console.print(f"[red]Invalid chunking options:[/red] {exc}")
        raise typer.Exit(1)

    text = path.read_text(encoding="utf-8")
    chunks = OverlappingChunker(options).chunk(text, document_id=path.stem)

    if output:
        save_json([c.model_dump(mode="json") for c in chunks], output)
        console.print(f"[green][OK][/green] {len(chunks)} chunks written -> {output}")
    if json_out:
        console.print_json(json.dumps([c.model_dump(mode="json") for c in chunks]))
        return

    table = Table(
        "No.", "Offsets", "Tokens", "Overlap", "Type", "Text",
        box=box.SIMPLE,
        header_style="bold dim",
    )
    for c in chunks:
        label = f"{c.chunk_index}" + (f" (sub of {c.parent_index})" if c.is_sub_chunk else "")
        table.add_row(
            label,
            f"{c.start_offset}-{c.end_offset}",
            str(c.token_count),
            str(c.overlap_with_previous),
            c.structural_type.value,
            truncate_text(c.text.replace("\n", " "), 60),
        )
    console.print(table)

    quality = analyze_overlap_quality(chunks)
    console.print(
        f"[dim]{len(chunks)} chunks | {len(text):,} chars | "
        f"avg overlap={quality.average_overlap:.0f} chars | "
        f"quality={quality.quality_score:.2f}[/dim]"
    )
    if exact:
        bpe = tiktoken_estimator(settings.context.model)
        console.print(
            f"[dim]estimated tokens={sum(c.token_count for c in chunks):,} | "
            f"tiktoken ({settings.context.model})={sum(bpe(c.text) for c in chunks):,}[/dim]"
        )
    for issue in validate_chunks(chunks, options):
        console.print(f"[yellow]![/yellow] {issue}")


@app.command()
def index(
    paths: list[Path] = typer.Argument(..., exists=True, help="Documents, or directories of .txt/.md files"),
    tenant: str = typer.Option("default", "--tenant", "-t", help="Tenant the documents belong to"),
    index_dir: Path = typer.Option(Path("data/index"), "--index-dir", help="FAISS index directory"),
    config: str = typer.Option("config/config.yaml", "--config", "-c", help="Settings YAML"),
) -> None:
    """Chunk, embed (OpenAI) and add documents to the tenant's FAISS + BM25 index."""
    settings = _bootstrap(config)
    documents = _expand_documents(paths)
    if not documents:
        console.print("[red]No .txt or .md documents found[/red]")
        raise typer.Exit(1)
    asyncio.run(_index_async(documents, tenant, index_dir, settings))


@app.command()
def ask(
    query: Optional[str] = typer.Option(None, "--query", "-q", help="Single query (omit for interactive loop)"),
    tenant: str = typer.Option("default", "--tenant", "-t", help="Tenant to query"),
    index_dir: Path = typer.Option(Path("data/index"), "--index-dir", help="FAISS index directory"),
    config: str = typer.Option("config/config.yaml", "--config", "-c", help="Settings YAML"),
    provider: Optional[str] = typer.Option(None, "--provider", help="openai | anthropic"),
    model: Optional[str] = typer.Option(None, "--model", help="Override the configured model"),
    stream: bool = typer.Option(False, "--stream", help="Stream the answer as it is generated"),
    json_out: bool = typer.Option(False, "--json", help="Print result as JSON (single-query mode only)"),
) -> None:
    """Ask questions against a tenant's index with a rolling conversation window."""
    settings = _bootstrap(config)
    if not (index_dir / "manifest.json").exists():
        console.print(
            f"[red]Index not found: {index_dir}[/red]\n"
            "Build it first: [bold]python -m ragcore.main index <files>[/bold]"
        )
        raise typer.Exit(1)

    overrides = {k: v for k, v in {"provider": provider, "model": model}.items() if v}
    context_config = settings.context.model_copy(update=overrides)
    asyncio.run(_ask_async(query, tenant, index_dir, settings, context_config, stream, json_out))


# --- Async bodies -------------------------------------------------------------

async def _index_async(paths: list[Path], tenant: str, index_dir: Path, settings: Settings) -> None:
    from ragcore.retrieval.embedder import OpenAIEmbeddingService
    from ragcore.retrieval.vector_store import FAISSVectorStore

    store = (
        FAISSVectorStore.load(index_dir)
        if (index_dir / "manifest.json").exists()
        else FAISSVectorStore()
    )
    embedder = OpenAIEmbeddingService(timeout_seconds=settings.providers.timeout_seconds)
    chunker = OverlappingChunker(settings.chunking)

    for path in paths:
        chunks = chunker.chunk(path.read_text(encoding="utf-8"), document_id=path.stem)
        if not chunks:
            console.print(f"[yellow]Skipped empty document {path}[/yellow]")
            continue
        with console.status(f"[cyan]Embedding {len(chunks)} chunks from {path.name}...[/cyan]"):
            embeddings = await embedder.embed_texts([c.text for c in chunks])
        total = store.add_chunks(tenant, chunks, embeddings)
        console.print(f"[green][OK][/green] {path.name}: {len(chunks)} chunks | tenant total {total}")

    store.save(index_dir)
    usage = embedder.usage_summary()
    console.print(
        f"[dim]embedding calls={usage['total_api_calls']} tokens={usage['total_tokens_used']} "
        f"cost=${usage['estimated_cost_usd']:.6f}[/dim]"
    )


async def _ask_async(
    query: Optional[str],
    tenant: str,
    index_dir: Path,
    settings: Settings,
    context_config,
    stream: bool,
    json_out: bool,
) -> None:
    from ragcore.context.cache import ContextCache
    from ragcore.context.manager import ContextWindowManager
    from ragcore.context.store import InMemoryMessageStore
    from ragcore.providers.registry import get_provider
    from ragcore.retrieval.embedder import OpenAIEmbeddingService
    from ragcore.retrieval.retriever import ContextRetriever
    from ragcore.retrieval.vector_store import FAISSVectorStore
    from ragcore.serving.pipeline import RAGPipeline

    with console.status("[cyan]Loading FAISS + BM25 index...[/cyan]"):
        vector_store = FAISSVectorStore.load(index_dir)

    retrieval = settings.retrieval
    pipeline = RAGPipeline(
        context_manager=ContextWindowManager(InMemoryMessageStore(), ContextCache(settings.cache)),
        retriever=ContextRetriever(
            OpenAIEmbeddingService(timeout_seconds=settings.providers.timeout_seconds),
            vector_store,
            default_max_chunks=retrieval.default_max_chunks,
            default_strategy=retrieval.strategy,
            dense_weight=retrieval.dense_weight,
            sparse_weight=retrieval.sparse_weight,
        ),
        provider_factory=lambda name: get_provider(name, settings.providers),
        max_sources=retrieval.default_max_chunks,
    )
    conversation_id = f"cli-{uuid.uuid4().hex[:8]}"
    console.print(
        f"[green][OK] Index loaded[/green] | {vector_store.size(tenant):,} vectors for {tenant} "
        f"| {context_config.provider}/{context_config.model}"
    )

    async def run(text: str) -> None:
        if stream:
            await _stream_one(pipeline, text, conversation_id, tenant, context_config)
            return
        with console.status("[cyan]Thinking...[/cyan]"):
            result = await pipeline.query(text, conversation_id, tenant, context_config)
        if json_out:
            console.print_json(json.dumps(result.to_dict()))
        else:
            _print_result(result)

    if query:
        await run(query)
        return

    console.print("[dim]Type 'exit', 'quit', or press Ctrl+C to quit.[/dim]\n")
    while True:
        try:
            raw = console.input("[bold cyan]You[/bold cyan] > ").strip()
        except (EOFError, KeyboardInterrupt):
            console.print("\n[dim]Goodbye.[/dim]")
            break
        if not raw:
            continue
        if raw.lower() in {"exit", "quit", "q"}:
            console.print("[dim]Goodbye.[/dim]")
            break
        await run(raw)


async def _stream_one(pipeline, text: str, conversation_id: str, tenant: str, context_config) -> None:
    from ragcore.serving.pipeline import CompleteEvent, ContentEvent, ErrorEvent, SourcesEvent

    async for event in pipeline.stream(text, conversation_id, tenant, context_config):
        if isinstance(event, SourcesEvent):
            console.print(f"[dim]{len(event.sources)} source(s) retrieved[/dim]")
        elif isinstance(event, ContentEvent):
            console.print(event.delta, end="", markup=False, highlight=False)
        elif isinstance(event, ErrorEvent):
            console.print(f"\n[red]{event.message}[/red] [dim]({event.code})[/dim]")
        elif isinstance(event, CompleteEvent):
            console.print()
            _print_footer(event.result)


def _print_result(result) -> None:
    """Render a QueryResult to the terminal using Rich."""
    if result.blocked or result.error_code:
        title = "Content filter" if result.blocked else f"Error: {result.error_code}"
        console.print(Panel(f"[red]{result.answer}[/red]", title=f"[red]{title}[/red]", border_style="red", expand=False))
        return

    console.print()
    console.print(
        Panel(
            Markdown(result.answer),
            title="[bold green]Answer[/bold green]",
            border_style="green",
            expand=True,
        )
    )

    if result.sources:
        table = Table("No.", "Document", "Excerpt", "Score", box=box.SIMPLE, header_style="bold dim")
        for i, source in enumerate(result.sources, start=1):
            table.add_row(
                str(i),
                source.document_id,
                truncate_text(source.excerpt.replace("\n", " "), 60),
                f"{source.relevance_score:.2f}",
            )
        console.print(table)
    elif not result.has_knowledge_base:
        console.print("[yellow]No knowledge base match; answered from general knowledge.[/yellow]")

    _print_footer(result)


def _print_footer(result) -> None:
    console.print(
        f"[dim]"
        f"retrieve={result.retrieval_ms:.0f}ms  "
        f"generate={result.generation_ms:.0f}ms  |  "
        f"confidence={result.confidence.overall:.2f}  |  "
        f"tokens={result.prompt_tokens}+{result.completion_tokens}  "
        f"cost=${result.estimated_cost_usd:.5f}"
        f"[/dim]\n"
    )


if __name__ == "__main__":
    app()
