"""Repolens command line: index repositories and query them."""

import asyncio
import json
import sys
from pathlib import Path
from typing import Awaitable, Callable, Optional, TypeVar

import click
from rich.console import Console
from rich.markdown import Markdown
from rich.progress import BarColumn, Progress, SpinnerColumn, TextColumn
from rich.table import Table

from repolens.catalog import RepositoryCatalog
from repolens.config import Settings
from repolens.exceptions import RepolensError
from repolens.indexing import IndexingError
from repolens.models import RepositoryRef
from repolens.observability import configure_logging
from repolens.rag import build_minimal_context
from repolens.service import CodebaseService, build_service

console = Console()

DEFAULT_STATE_DIR = Path(".repolens")

T = TypeVar("T")


def _settings(ctx) -> Settings:
    state_dir: Path = ctx.obj["state_dir"]
    state_dir.mkdir(parents=True, exist_ok=True)
    return Settings(
        vector_index_path=state_dir / "index",
        jobs_database_url=f"sqlite:///{(state_dir / 'jobs.db').resolve()}",
        log_level=ctx.obj["log_level"],
    )


def _run(coro):
    try:
        return asyncio.run(coro)
    except IndexingError as e:
        console.print(f"[red]{e.code}[/red]: {e}")
        sys.exit(1)
    except RepolensError as e:
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)
    except ValueError as e:
        console.print(f"[red]Invalid request:[/red] {e}")
        sys.exit(1)


def _with_service(ctx, work: Callable[[CodebaseService], Awaitable[T]]) -> T:
    """Run ``work`` against a fresh service, closing the service afterwards."""

    async def run():
        service = build_service(_settings(ctx))
        try:
            return await work(service)
        finally:
            await service.close()

    return _run(run())


def _repository_for(target: str, repository_id: Optional[str], branch: str) -> RepositoryRef:
    path = Path(target)
    if path.is_dir():
        resolved = path.resolve()
        return RepositoryRef(
            id=repository_id or resolved.name,
            full_name=resolved.name,
            default_branch=branch,
            local_path=str(resolved),
        )
    if target.count("/") != 1:
        raise click.BadParameter("expected a directory or a GitHub owner/name", param_hint="TARGET")
    return RepositoryRef(id=repository_id or target, full_name=target, default_branch=branch)


@click.group()
@click.option("--log-level", default="WARNING", help="Logging level")
@click.option(
    "--state-dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=DEFAULT_STATE_DIR,
    help="Where indexes and job history are kept",
)
@click.pass_context
def cli(ctx, log_level, state_dir):
    """Repolens - index a codebase and retrieve cited context for questions."""
    configure_logging(level=log_level, format_type="text")
    ctx.ensure_object(dict)
    ctx.obj["log_level"] = log_level
    ctx.obj["state_dir"] = state_dir


@cli.command()
@click.argument("target")
@click.option("--id", "repository_id", help="Repository id (defaults to the directory or owner/name)")
@click.option("--branch", default="main", help="Default branch for hosted repositories")
@click.option("--ref", help="Branch, tag or commit to index")
@click.pass_context
def index(ctx, target, repository_id, branch, ref):
    """Index a local directory or a GitHub repository."""
    repository = _repository_for(target, repository_id, branch)

    async def run_index():
        catalog = RepositoryCatalog([repository])
        service = build_service(_settings(ctx), catalog=catalog)
        try:
            service.manager.recover_stale_jobs()
            started = await service.start_indexing(repository.id, ref)
            with Progress(
                SpinnerColumn(),
                TextColumn("[progress.description]{task.description}"),
                BarColumn(),
                TextColumn("{task.percentage:>3.0f}%"),
                console=console,
            ) as progress:
                task = progress.add_task("Initializing", total=100)
                while True:
                    status = service.get_status(repository.id)
                    progress.update(task, completed=status.progress or 0, description=status.current_phase or "")
                    if status.is_terminal:
                        break
                    await asyncio.sleep(0.5)
            return started.job_id, service.get_status(repository.id)
        finally:
            await service.close()

    job_id, status = _run(run_index())
    if status.status == "indexed":
        console.print(
            f"[green]Indexed[/green] {repository.id}: {status.files_processed} files, "
            f"{status.chunks_created} chunks (job {job_id})"
        )
    else:
        console.print(f"[red]{status.status}[/red] {status.error or ''}")
        sys.exit(1)


@cli.command()
@click.argument("repository_id")
@click.pass_context
def status(ctx, repository_id):
    """Show the latest indexing job of a repository."""

    async def read_status(service: CodebaseService):
        return service.get_status(repository_id)

    console.print_json(json.dumps(_with_service(ctx, read_status).to_dict()))


@cli.command()
@click.argument("repository_id")
@click.pass_context
def stats(ctx, repository_id):
    """Show what is indexed for a repository."""

    async def read_stats(service: CodebaseService):
        return service.retriever.vector_store.get_stats(repository_id)

    summary = _with_service(ctx, read_stats)

    table = Table(title=f"Index of {repository_id}")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", style="white")
    table.add_row("Chunks", str(summary["total_chunks"]))
    table.add_row("Files", str(summary["total_files"]))
    table.add_row("Languages", ", ".join(f"{k} ({v})" for k, v in sorted(summary["languages"].items())))
    table.add_row("Chunk types", ", ".join(f"{k} ({v})" for k, v in sorted(summary["chunk_types"].items())))
    console.print(table)


@cli.command()
@click.argument("repository_id")
@click.argument("query")
@click.option("--top-k", "-k", default=10, help="Maximum results to return")
@click.option("--min-score", type=float, help="Minimum similarity")
@click.option("--hybrid/--vector", default=None, help="Fuse vector and keyword rankings")
@click.option("--rerank/--no-rerank", default=None, help="Reorder results with the configured reranker")
@click.pass_context
def search(ctx, repository_id, query, top_k, min_score, hybrid, rerank):
    """Rank indexed chunks against a question."""

    async def run_query(service: CodebaseService):
        return await service.query(
            repository_id, query, k=top_k, min_score=min_score, hybrid=hybrid, rerank=rerank
        )

    results = _with_service(ctx, run_query)

    if not results:
        console.print("[yellow]No results[/yellow]")
        return

    table = Table(title=f"Results for: {query}")
    table.add_column("Score", style="green", justify="right")
    table.add_column("Location", style="cyan")
    table.add_column("Type")
    table.add_column("Symbol", style="magenta")
    for result in results:
        table.add_row(f"{result.score:.2f}", result.location, result.chunk_type, result.symbol_name or "")
    console.print(table)


@cli.command()
@click.argument("repository_id")
@click.argument("query")
@click.option("--top-k", "-k", default=15, help="Chunks retrieved before budgeting")
@click.option("--hybrid/--vector", default=None, help="Fuse vector and keyword rankings")
@click.option("--lang", type=click.Choice(["fr", "en"]), help="Locale of the context text")
@click.option("--max-tokens", type=click.IntRange(min=1), help="Token budget")
@click.option("--scores", is_flag=True, help="Show relevance percentages")
@click.option("--flat", is_flag=True, help="Do not group chunks by file")
@click.option("--minimal", is_flag=True, help="Only list files and symbols")
@click.option("--raw", is_flag=True, help="Print markdown source instead of rendering it")
@click.pass_context
def context(ctx, repository_id, query, top_k, hybrid, lang, max_tokens, scores, flat, minimal, raw):
    """Build the prompt context for a question."""
    options = {"include_scores": scores, "group_by_file": not flat}
    if lang:
        options["language"] = lang
    if max_tokens:
        options["max_tokens"] = max_tokens

    async def assemble(service: CodebaseService):
        chunks = await service.query(repository_id, query, k=top_k, hybrid=hybrid)
        if minimal:
            return build_minimal_context(chunks, options), None
        result = service.build_context(chunks, options)
        return result.context, result

    text, result = _with_service(ctx, assemble)
    if result is not None:
        console.print(
            f"[dim]{result.chunks_included}/{result.chunks_total} chunks, "
            f"~{result.estimated_tokens} tokens{' (truncated)' if result.truncated else ''}[/dim]"
        )

    if raw:
        click.echo(text)
    else:
        console.print(Markdown(text))


def main():
    cli(obj={})


if __name__ == "__main__":
    main()
