"""
Command-line interface for docrepo.

Provides commands to create document bases, ingest sources, query them,
and keep filesystem sources in sync.

Usage:
    docrepo create WORKSPACE NAME --engine openai --model text-embedding-3-small
    docrepo list WORKSPACE
    docrepo add BASE file ~/notes/todo.md
    docrepo query BASE "what is left to do?"
    docrepo scan           # Reconcile changes made while not running
    docrepo watch          # Reconcile, then follow filesystem changes
"""

import asyncio
import signal
import sys

import click

from docrepo.observability.logging import setup_logging
from docrepo.observability.metrics import get_metrics
from docrepo.rag.errors import DocRepoError
from docrepo.rag.schemas import QueueTask, SourceType


@click.group()
@click.option("--debug", is_flag=True, help="Enable debug logging")
def main(debug: bool) -> None:
    """docrepo - Local document bases for semantic retrieval."""
    setup_logging("DEBUG" if debug else None)


def _repository():
    from docrepo.rag.repository import DocumentRepository

    return DocumentRepository()


def _task_reporter():
    """Listener echoing queue outcomes."""
    from docrepo.rag.repository import DocRepoListener

    class TaskReporter(DocRepoListener):
        def __init__(self) -> None:
            self.failures = 0

        def on_task_done(self, task: QueueTask, queue_length: int) -> None:
            click.echo(click.style(f"  ✓ {task.origin}", fg="green"))

        def on_task_error(self, task: QueueTask, error: Exception, queue_length: int) -> None:
            self.failures += 1
            click.echo(click.style(f"  ✗ {task.origin}: {error}", fg="red"))

    return TaskReporter()


@main.command()
@click.argument("workspace")
@click.argument("name")
@click.option("--engine", default="openai", help="Embedding engine (openai, ollama, transformers)")
@click.option("--model", default="text-embedding-3-small", help="Embedding model")
@click.option("--description", default=None, help="Free-form description")
def create(workspace: str, name: str, engine: str, model: str, description: str | None) -> None:
    """Create a document base."""

    async def run():
        repo = _repository()
        try:
            base_id = await repo.create_doc_base(workspace, name, engine, model, description)
            click.echo(f"Created document base {name}: {base_id}")
        finally:
            await repo.close()

    try:
        asyncio.run(run())
    except DocRepoError as e:
        raise click.ClickException(str(e)) from e


@main.command("list")
@click.argument("workspace")
def list_bases(workspace: str) -> None:
    """List the document bases of a workspace."""
    repo = _repository()
    bases = repo.list(workspace)

    if not bases:
        click.echo("No document bases.")
        return

    for base in bases:
        click.echo(f"\n{base['name']} ({base['uuid']})")
        click.echo(f"   Engine: {base['embedding_engine']} / {base['embedding_model']}")
        for doc in base["documents"]:
            click.echo(f"   - [{doc['type']}] {doc['title']}  {doc['uuid']}")
            for item in doc["items"]:
                click.echo(f"       · {item['filename'] or item['title']}")


@main.command()
@click.argument("base_id")
@click.argument("source_type", type=click.Choice([t.value for t in SourceType]))
@click.argument("origin")
@click.option("--title", default=None, help="Title for text sources")
@click.option("--skip-size-check", is_flag=True, help="Ingest documents above the size limit")
def add(base_id: str, source_type: str, origin: str, title: str | None, skip_size_check: bool) -> None:
    """Add a source to a document base and wait for ingestion."""

    async def run() -> int:
        repo = _repository()
        reporter = _task_reporter()
        repo.add_listener(reporter)
        try:
            doc_id = await repo.add_document_source(
                base_id,
                SourceType(source_type),
                origin,
                title=title,
                skip_size_check=skip_size_check,
            )
            click.echo(f"Queued {origin} as {doc_id}")
            await repo.wait_idle()
        finally:
            await repo.close()
        return reporter.failures

    try:
        failures = asyncio.run(run())
    except DocRepoError as e:
        raise click.ClickException(str(e)) from e
    if failures:
        sys.exit(1)


@main.command()
@click.argument("base_id")
@click.argument("doc_id")
def remove(base_id: str, doc_id: str) -> None:
    """Remove a source (and its children) from a document base."""

    async def run():
        repo = _repository()
        try:
            await repo.remove_document_source(base_id, doc_id)
        finally:
            await repo.close()

    try:
        asyncio.run(run())
    except DocRepoError as e:
        raise click.ClickException(str(e)) from e
    click.echo(f"Removed {doc_id}")


@main.command()
@click.argument("base_id")
@click.argument("text")
def query(base_id: str, text: str) -> None:
    """Search a document base.

    Example:
        docrepo query 3f1c... "tell me about squash"
    """

    async def run():
        repo = _repository()
        try:
            return await repo.query(base_id, text)
        finally:
            await repo.close()

    try:
        results = asyncio.run(run())
    except DocRepoError as e:
        raise click.ClickException(str(e)) from e

    if not results:
        click.echo("No results found.")
        return

    for i, result in enumerate(results, 1):
        meta = result.metadata
        click.echo(f"\n{i}. [{meta.get('type', '?')}] {meta.get('title', '')}")
        click.echo(f"   Score: {result.score:.4f} | {meta.get('url', '')}")
        click.echo(f"   {result.content[:200]}")

    click.echo(f"\n{'-' * 60}")
    click.echo(f"Found {len(results)} results")


@main.command()
def scan() -> None:
    """Reconcile filesystem sources with changes made while not running."""

    async def run():
        repo = _repository()
        repo.add_listener(_task_reporter())
        try:
            totals = await repo.scan_for_updates()
            await repo.wait_idle()
        finally:
            await repo.close()
        return totals

    totals = asyncio.run(run())
    click.echo(
        f"Scan complete: {totals['added']} added, "
        f"{totals['modified']} modified, {totals['deleted']} deleted"
    )


@main.command()
@click.option("--metrics/--no-metrics", default=False, help="Enable metrics server")
@click.option("--metrics-port", default=None, type=int, help="Metrics server port")
def watch(metrics: bool, metrics_port: int | None) -> None:
    """Reconcile, then keep filesystem sources in sync until interrupted."""
    from docrepo.rag.monitor import DocumentMonitor

    async def run():
        if metrics:
            get_metrics().start_server(port=metrics_port)

        repo = _repository()
        repo.add_listener(_task_reporter())
        monitor = DocumentMonitor(repo)
        stopped = asyncio.Event()

        loop = asyncio.get_event_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, stopped.set)

        try:
            await repo.scan_for_updates()
            monitor.start()
            click.echo(f"Watching {len(monitor.watched_paths)} paths. Press Ctrl+C to stop.")
            await stopped.wait()
        finally:
            monitor.stop()
            await monitor.drain()
            await repo.close()

    asyncio.run(run())


if __name__ == "__main__":
    main()
