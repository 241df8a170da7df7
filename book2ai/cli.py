"""
Command-line interface for operating Book2AI packs.

    book2ai packs                      list installed packs
    book2ai embed <chunks.jsonl>       write embeddings.json next to a chunks file
    book2ai ask "question" --pack ID   ask a running server, streaming the answer
"""

import asyncio
import sys
from pathlib import Path

import requests
import typer
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from . import settings
from .embedder import QueryEmbedder
from .errors import Book2AIError
from .models import ChunkEvent, DoneEvent, EmbeddingsFile, ErrorEvent
from .normalize import normalize_answer_payload, normalize_chunk
from .pack_store import EMBEDDINGS_FILE, PackStore, read_jsonl
from .streaming import decode_frames

app = typer.Typer(
    name="book2ai",
    help="Inspect, embed and query Book2AI packs",
    add_completion=False
)

console = Console()


@app.command()
def packs(
    packs_root: Path = typer.Option(
        None,
        "--packs-root",
        help="Directory holding one folder per pack (default: settings.PACKS_ROOT)"
    )
) -> None:
    """List installed packs."""
    store = PackStore(packs_root=packs_root)
    found = store.list_packs()
    if not found:
        console.print(f"[yellow]No packs found under {store.packs_root}[/]")
        return

    table = Table(title="Installed packs")
    table.add_column("id")
    table.add_column("title")
    table.add_column("layout")
    for info in found:
        table.add_row(info.id, info.title, "legacy" if info.legacy else "multi-pack")
    console.print(table)


@app.command()
def embed(
    chunks_path: Path = typer.Argument(
        ...,
        help="Path to a pack's chunks.jsonl"
    ),
    model: str = typer.Option(
        None,
        "--model",
        help="Embedding model (default: settings.EMBED_MODEL)"
    )
) -> None:
    """
    Embed every chunk and write embeddings.json, rows in chunk order.

    Args:
        chunks_path: Path to a pack's chunks.jsonl
        model: Embedding model override
    """
    if not chunks_path.exists():
        console.print(f"[red]Error:[/] {chunks_path} not found")
        sys.exit(1)

    chunks = [c for c in (normalize_chunk(r) for r in read_jsonl(chunks_path)) if c is not None]
    if not chunks:
        console.print(f"[red]Error:[/] no chunks in {chunks_path}")
        sys.exit(1)

    embedder = QueryEmbedder(model=model)
    try:
        vectors = asyncio.run(embedder.embed([c.text for c in chunks]))
    except Book2AIError as e:
        console.print(f"[red]Error:[/] {e}")
        sys.exit(1)

    out = EmbeddingsFile(
        model=embedder.model,
        dim=len(vectors[0]) if vectors else 1536,
        ids=[c.id for c in chunks],
        vectors=vectors,
    )
    out_path = chunks_path.parent / EMBEDDINGS_FILE
    out_path.write_text(out.model_dump_json(), encoding="utf-8")

    console.print(Panel(
        f"Embedded {len(vectors)} chunks with {out.model} (dim {out.dim})\nWrote {out_path}",
        title="Book2AI embed",
        border_style="green"
    ))


@app.command()
def ask(
    question: str = typer.Argument(..., help="Question to ask"),
    pack: str = typer.Option(settings.DEFAULT_PACK_ID, "--pack", help="Pack id"),
    k: int = typer.Option(settings.DEFAULT_K, "--k", help="Number of chunks to retrieve (3-8)"),
    url: str = typer.Option("http://localhost:8000", "--url", help="Base URL of the Book2AI API"),
    no_stream: bool = typer.Option(False, "--no-stream", help="Use the non-streaming endpoint")
) -> None:
    """Ask a running Book2AI server a question."""
    payload = {"q": question, "pack": pack, "k": k}
    base = url.rstrip("/")

    try:
        if no_stream:
            response = requests.post(f"{base}/ask", json=payload, timeout=120)
            if not response.ok:
                console.print(f"[red]Error {response.status_code}:[/] {escape(response.text)}")
                sys.exit(1)
            result = normalize_answer_payload(response.json())
            console.print(result.answer)
            sources = result.sources
        else:
            sources = []
            with requests.post(f"{base}/ask/stream", json=payload, stream=True, timeout=120) as response:
                if not response.ok:
                    console.print(f"[red]Error {response.status_code}:[/] {escape(response.text)}")
                    sys.exit(1)
                for event in decode_frames(response.iter_lines(decode_unicode=True)):
                    if isinstance(event, ChunkEvent):
                        console.print(event.delta, end="", markup=False, highlight=False)
                    elif isinstance(event, DoneEvent):
                        sources = event.sources
                        break
                    elif isinstance(event, ErrorEvent):
                        console.print(f"\n[red]Error:[/] {escape(event.message)}")
                        sys.exit(1)
            console.print()
    except requests.RequestException as e:
        console.print(f"[red]Error:[/] {e}")
        sys.exit(1)

    for i, source in enumerate(sources, 1):
        page = f" p.{source.page}" if source.page is not None else ""
        score = f" ({source.score:.2f})" if source.score is not None else ""
        label = escape(f"[#{i}] {source.id}{page}{score}")
        console.print(f"[dim]{label}[/]")


if __name__ == "__main__":
    app()
