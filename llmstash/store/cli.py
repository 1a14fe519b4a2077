"""
llmstash CLI

Thin wrapper around the Store API providing a command-line interface.

Usage:
    llmstash init [--force]
    llmstash pull <name>[:<category>] [-c category] [--force]
    llmstash show <name> [--json]
    llmstash list [--json]
    llmstash search <query> [--limit N] [--json]
    llmstash update [--refresh]
    llmstash reindex
    llmstash verify
    llmstash clean
    llmstash remove <name>
    llmstash export <name> <dir>
"""

from __future__ import annotations

import json as json_module
import logging
import os
from pathlib import Path
from typing import Optional

import typer

from .errors import StoreError

app = typer.Typer(
    name="llmstash",
    help="llmstash - local content-addressed model store",
    no_args_is_help=True,
)


def get_store():
    """Get or create Store instance."""
    from . import Store
    return Store()


def output_json(data) -> None:
    """Output data as JSON."""
    typer.echo(json_module.dumps(data, indent=2, default=str))


def output_error(message: str) -> None:
    """Output error message."""
    typer.secho(f"Error: {message}", fg=typer.colors.RED, err=True)


def output_success(message: str) -> None:
    """Output success message."""
    typer.secho(message, fg=typer.colors.GREEN)


def output_warning(message: str) -> None:
    """Output warning message."""
    typer.secho(f"Warning: {message}", fg=typer.colors.YELLOW)


def fail(error: StoreError) -> None:
    output_error(f"{error.kind}: {error}")
    raise typer.Exit(1)


@app.callback()
def configure(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
):
    """Configure logging for every command."""
    level = "DEBUG" if verbose else os.environ.get("LLMSTASH_LOG_LEVEL", "WARNING")
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


# =============================================================================
# Store Commands
# =============================================================================

@app.command("init")
def init(
    force: bool = typer.Option(False, "--force", "-f", help="Recreate the metadata database"),
):
    """Initialize the store."""
    store = get_store()

    if store.is_initialized() and not force:
        output_warning("Store already initialized. Use --force to reinitialize.")

    try:
        version = store.init(force=force)
    except StoreError as e:
        fail(e)
    output_success(f"Store initialized at {store.layout.root} (schema v{version})")


@app.command("pull")
def pull(
    name: str = typer.Argument(..., help="Model name, optionally name:category"),
    category: Optional[str] = typer.Option(None, "--category", "-c", help="Model category/tag"),
    force: bool = typer.Option(False, "--force", "-f", help="Re-download every layer"),
):
    """Download a model into the store."""
    store = get_store()

    def progress(digest: str, downloaded: int, total: int) -> None:
        if total and downloaded == total:
            typer.echo(f"  {digest[:19]}  {total} bytes")

    try:
        model = store.pull(name, category, progress_callback=progress, force=force)
    except StoreError as e:
        fail(e)

    output_success(f"Pulled {model.name}")
    typer.echo(f"  hash: {model.hash}")
    typer.echo(f"  path: {model.path}")


@app.command("show")
def show(
    name: str = typer.Argument(..., help="Model name, optionally name:category"),
    json: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """Show a pulled model."""
    store = get_store()
    try:
        model = store.get_model(name)
    except StoreError as e:
        fail(e)

    if model is None:
        output_error(f"NotFoundError: Model not found: {name}")
        raise typer.Exit(1)

    if json:
        output_json(model.model_dump())
        return

    typer.echo(f"Model: {model.name}")
    for field in ("hash", "size", "context", "input", "path", "template", "license", "params"):
        value = getattr(model, field)
        if value:
            typer.echo(f"  {field}: {value}")


@app.command("list")
def list_models(
    json: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """List pulled models."""
    store = get_store()
    try:
        models = store.list_models()
    except StoreError as e:
        fail(e)

    if json:
        output_json({"models": [m.model_dump() for m in models]})
    elif not models:
        typer.echo("No models found.")
    else:
        typer.echo(f"Found {len(models)} model(s):")
        for model in models:
            typer.echo(f"  - {model.name}  {model.hash}")


@app.command("search")
def search(
    query: str = typer.Argument(..., help="Search text"),
    limit: int = typer.Option(20, "--limit", "-n", help="Maximum results"),
    json: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """Full-text search over synced library metadata."""
    store = get_store()
    try:
        results = store.search_models(query, limit)
    except StoreError as e:
        fail(e)

    if json:
        output_json({"results": [r.model_dump() for r in results]})
    elif not results:
        typer.echo("No matches.")
    else:
        for info in results:
            typer.echo(f"  {info.title:<24} {info.introduction}")


@app.command("update")
def update(
    refresh: bool = typer.Option(False, "--refresh", help="Sync even if already completed"),
):
    """Sync model metadata from the public library."""
    store = get_store()
    try:
        report = store.sync_library(refresh=refresh)
    except StoreError as e:
        fail(e)

    if report.skipped:
        typer.echo("Library already synced. Use --refresh to sync again.")
        return
    output_success(
        f"Synced {report.total} model(s): {report.inserted} new, "
        f"{report.updated} updated, {report.unchanged} unchanged"
    )
    for title in report.failed:
        output_warning(f"Failed: {title}")


@app.command("reindex")
def reindex():
    """Rebuild the search index from model metadata."""
    store = get_store()
    try:
        count = store.rebuild_search_index()
    except StoreError as e:
        fail(e)
    output_success(f"Indexed {count} model(s)")


@app.command("verify")
def verify():
    """Re-hash every blob in the store."""
    store = get_store()
    try:
        valid, invalid = store.verify_blobs()
    except StoreError as e:
        fail(e)

    typer.echo(f"{len(valid)} valid blob(s)")
    if invalid:
        for sha256 in invalid:
            output_warning(f"Corrupt blob: sha256:{sha256}")
        raise typer.Exit(1)


@app.command("clean")
def clean():
    """Remove partial downloads and temp files."""
    store = get_store()
    result = store.clean_partial()
    output_success(f"Removed {result['partial']} partial download(s), {result['tmp']} temp file(s)")


@app.command("remove")
def remove(
    name: str = typer.Argument(..., help="Model name, optionally name:category"),
):
    """Forget a pulled model (blobs are kept)."""
    store = get_store()
    try:
        store.remove_model(name)
    except StoreError as e:
        fail(e)
    output_success(f"Removed {name}")


@app.command("export")
def export(
    name: str = typer.Argument(..., help="Model name, optionally name:category"),
    target: Path = typer.Argument(..., help="Target directory"),
):
    """Link a model's blobs into a directory."""
    store = get_store()
    try:
        paths = store.export_model(name, target)
    except StoreError as e:
        fail(e)
    for path in paths:
        typer.echo(f"  {path}")
    output_success(f"Exported {len(paths)} file(s) to {target}")


def main():
    """Entry point for CLI."""
    app()


if __name__ == "__main__":
    main()
