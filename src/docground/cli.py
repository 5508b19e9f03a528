from __future__ import annotations

import json
import logging
import os
import sys

import click
from rich.console import Console
from rich.markup import escape
from rich.progress import BarColumn, Progress, TextColumn
from rich.table import Table

from .ask_core import ask_question
from .errors import SemanticError
from .model_profile import get_ask_model_profile
from .ollama import OllamaClient
from .search import build_snippet, search_top_k
from .settings import settings
from .sources import collect_documents
from .storage_sqlite import open_store
from .workers import Cancelled, Done, Error, Progress as ProgressMsg, start_indexing_worker

console = Console()


def _configure_logging() -> None:
    level = (settings.log_level or "INFO").upper()
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")


def _db(path: str | None) -> str:
    return os.path.expanduser(path or settings.db_path)


def _fail(err: SemanticError) -> None:
    console.print(f"[red]{err.code}[/red] {escape(err.message)}")
    sys.exit(1)


db_option = click.option("--db", "db_path", default=None, help="Embedding store path")
embedding_option = click.option("--embedding-model", default=None, help="Ollama embedding model")


@click.group()
@click.version_option(package_name="docground")
def cli():
    """docground - local semantic search and grounded answers"""
    _configure_logging()


def _run_indexing(client: OllamaClient, **options):
    """Drive an indexing worker behind a progress bar; Ctrl-C cancels it."""
    handle = start_indexing_worker(embed_many=client.embed_many, **options)
    terminal = None
    with Progress(TextColumn("{task.description}"), BarColumn(), TextColumn("{task.percentage:>3.0f}%"), console=console) as bar:
        task = bar.add_task("Indexing", total=100)
        try:
            for msg in handle.messages():
                if isinstance(msg, ProgressMsg):
                    p = msg.payload
                    bar.update(
                        task,
                        completed=p.get("percent", 0),
                        description=f"{p.get('docs_done', 0)}/{p.get('docs_total', 0)} {p.get('current_doc_name', '')}"[:60],
                    )
                else:
                    terminal = msg
        except KeyboardInterrupt:
            handle.cancel()
            terminal = handle.result()
    return terminal


@cli.command()
@click.argument("sources", nargs=-1, required=True)
@db_option
@embedding_option
@click.option("--chunk-min", type=int, default=None)
@click.option("--chunk-max", type=int, default=None)
@click.option("--chunk-overlap", type=int, default=None)
@click.option("--concurrency", type=int, default=None, help="Embedding batches in flight")
@click.option("--batch-size", type=int, default=None)
@click.option("--prune", is_flag=True, help="Drop stored documents missing from SOURCES")
def index(sources, db_path, embedding_model, chunk_min, chunk_max, chunk_overlap, concurrency, batch_size, prune):
    """Index documents from JSON files, directories or globs"""
    docs = collect_documents(sources)
    if not docs:
        console.print("[yellow]No documents found[/yellow]")
        return

    with OllamaClient() as client:
        terminal = _run_indexing(
            client,
            db_path=_db(db_path),
            documents=docs,
            model_name=embedding_model,
            chunk_min=chunk_min,
            chunk_max=chunk_max,
            chunk_overlap=chunk_overlap,
            embedding_concurrency=concurrency,
            batch_size=batch_size,
            prune_missing=prune,
        )

    if isinstance(terminal, Done):
        table = Table(title="Indexing result")
        table.add_column("Field", style="cyan")
        table.add_column("Value", style="white")
        for key, value in terminal.result.items():
            table.add_row(key, str(value))
        console.print(table)
    elif isinstance(terminal, Cancelled):
        console.print(f"[yellow]{terminal.message}[/yellow]")
        sys.exit(130)
    elif isinstance(terminal, Error):
        console.print(f"[red]{terminal.code}[/red] {escape(terminal.message)}")
        sys.exit(1)


@cli.command()
@click.argument("query")
@click.option("--source", "source_specs", multiple=True, help="Documents used to show snippets")
@db_option
@embedding_option
@click.option("--top-k", type=int, default=None)
def search(query, source_specs, db_path, embedding_model, top_k):
    """Search indexed chunks"""
    model = embedding_model or settings.embedding_model
    k = top_k or settings.search_top_k
    try:
        with OllamaClient() as client:
            vec = client.embed_text(model, query)
        res = search_top_k(
            {
                "db_path": _db(db_path),
                "model_name": model,
                "query_embedding": vec,
                "query_text": query,
                "top_k": k,
                "candidate_k": k * settings.search_rerank_candidate_multiplier,
            }
        )
    except SemanticError as e:
        _fail(e)
        return

    results = res["results"]
    if not results:
        console.print("[yellow]No results found[/yellow]")
        return

    contents = {d.id: d.content for d in collect_documents(source_specs)} if source_specs else {}
    table = Table(title=f"Search Results for '{query}'")
    table.add_column("Score", style="cyan", width=8)
    table.add_column("Document", style="blue")
    table.add_column("Chunk", style="magenta")
    table.add_column("Snippet", style="white", overflow="fold")
    for r in results:
        text = contents.get(r["doc_id"])
        snippet = build_snippet(text, r["start_char"], r["end_char"]) if text else ""
        table.add_row(f"{r['score']:.3f}", r["doc_id"], r["chunk_id"], snippet)
    console.print(table)


@cli.command()
@click.argument("question")
@click.argument("sources", nargs=-1, required=True)
@db_option
@embedding_option
@click.option("--model", "generation_model", default=None, help="Ollama generation model")
@click.option("--mode", type=click.Choice(["strict", "loose"]), default=None)
@click.option("--language", type=click.Choice(["en", "sv"]), default="en")
@click.option("--json", "as_json", is_flag=True, help="Print the raw result payload")
def ask(question, sources, db_path, embedding_model, generation_model, mode, language, as_json):
    """Answer QUESTION from the indexed SOURCES with citations"""
    model = generation_model or settings.generation_model
    if not model:
        console.print("[red]No generation model set; pass --model or DOCGROUND_GENERATION_MODEL[/red]")
        sys.exit(2)
    docs = collect_documents(sources)
    try:
        with OllamaClient() as client:
            result = ask_question(
                question=question,
                generate=client.generate(model),
                generation_model=model,
                db_path=_db(db_path),
                documents=docs,
                embedding_model=embedding_model or settings.embedding_model,
                embed_text_fn=client.embed_text,
                mode=mode,
                language=language,
            )
    except SemanticError as e:
        _fail(e)
        return

    if as_json:
        click.echo(json.dumps(result.to_payload(), ensure_ascii=False, indent=2))
        return

    answer = result.answer
    if answer.kind == "loose":
        console.print(answer.answer_text or "[yellow]No answer[/yellow]")
    else:
        for claim in answer.answer:
            refs = ", ".join(c.chunk_id for c in claim.citations)
            console.print(f"- {claim.claim} [dim]({refs})[/dim]" if refs else f"- {claim.claim}")
        if not answer.answer:
            console.print("[yellow]No grounded answer[/yellow]")
    if answer.notes:
        console.print(f"[dim]{answer.notes}[/dim]")

    table = Table(title="Sources")
    table.add_column("#", style="cyan", width=4)
    table.add_column("Document", style="blue")
    table.add_column("Snippet", style="white", overflow="fold")
    for i, src in enumerate(result.sources, start=1):
        table.add_row(str(src.get("marker", i)), src["doc_title"], src["snippet"])
    console.print(table)


@cli.command()
@click.argument("model_name")
def profile(model_name):
    """Show the ask profile chosen for a generation model"""
    p = get_ask_model_profile(model_name)
    table = Table(title=f"Ask profile for '{model_name}'")
    table.add_column("Field", style="cyan")
    table.add_column("Value", style="white")
    table.add_row("size_billions", "unknown" if p.size_billions is None else f"{p.size_billions:g}")
    table.add_row("small_model", str(p.is_small_model))
    table.add_row("mode", p.recommended_mode)
    table.add_row("top_k", str(p.top_k))
    table.add_row("max_prompt_chunk_chars", str(p.max_prompt_chunk_chars))
    table.add_row("num_ctx", str(p.num_ctx))
    table.add_row("min_citations_overall", str(p.min_citations_overall))
    console.print(table)


@cli.command()
@db_option
def status(db_path):
    """Show what the embedding store holds"""
    try:
        with open_store(_db(db_path)) as store:
            states = store.get_all_doc_states()
            total = store.get_total_chunk_count()
            model = store.get_meta("embedding_model_name")
    except SemanticError as e:
        _fail(e)
        return

    console.print(f"[bold]Store:[/bold] {_db(db_path)}")
    console.print(f"[bold]Embedding model:[/bold] {model or '-'}")
    console.print(f"[bold]Chunks:[/bold] {total}")
    table = Table(title=f"{len(states)} indexed documents")
    table.add_column("Document", style="blue")
    table.add_column("Model", style="magenta")
    table.add_column("Chunks", style="cyan")
    table.add_column("Last indexed", style="green")
    for s in states:
        table.add_row(s.doc_id, s.model_name, str(s.chunk_count), s.last_indexed)
    console.print(table)


@cli.command()
def models():
    """List models available on the local Ollama server"""
    try:
        with OllamaClient() as client:
            names = client.list_models()
    except SemanticError as e:
        _fail(e)
        return
    if not names:
        console.print("[yellow]No models installed[/yellow]")
        return
    for name in names:
        console.print(name)


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
