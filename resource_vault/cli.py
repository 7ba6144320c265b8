"""Command Line Interface for Resource Vault.

This module provides a Typer CLI that drives the Resource Store directly,
for operators who need to inspect or repair stored resources without going
through the HTTP API.

Security Impact:
    - Payload files are validated by the store before anything is written
    - Credentials from the environment are never echoed
"""

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

import typer
from pydantic import TypeAdapter, ValidationError as PydanticValidationError
from rich.console import Console
from rich.table import Table

from resource_vault import __version__
from resource_vault.domain.ports import ResourceStoreError, Result
from resource_vault.domain.resource import QueryParams
from resource_vault.domain.services.resource_store import ResourceStore
from resource_vault.infrastructure.config_manager import ConfigManager
from resource_vault.infrastructure.logging_config import setup_logging
from resource_vault.infrastructure.settings import Settings
from resource_vault.main import create_store

# Initialize Typer app and Rich console
app = typer.Typer(
    name="resource-vault",
    help="Resource Vault: versioned storage for clinical resources",
    add_completion=False
)
console = Console()


# Commands run in separate processes, so the CLI keeps DuckDB data in a file
CLI_DB_PATH = "resource_vault.duckdb"


def _settings() -> Settings:
    """Settings for one command; DuckDB defaults to CLI_DB_PATH, not memory."""
    return Settings(ConfigManager.from_environment(default_db_path=CLI_DB_PATH))


def _open_store(settings: Settings) -> ResourceStore:
    try:
        return create_store(settings)
    except (ResourceStoreError, ValueError) as e:
        console.print(f"[red]✗[/red] Failed to initialize storage: {str(e)}")
        raise typer.Exit(code=1)


def _load_payload(path: Path) -> Any:
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        console.print(f"[red]✗[/red] Cannot read payload from {path}: {str(e)}")
        raise typer.Exit(code=1)


def _value_or_exit(result: Result) -> Any:
    """Print a failed result and exit with code 1, or return the value."""
    if result.is_failure():
        console.print(f"[red]✗[/red] {result.error_type}: {result.error}")
        raise typer.Exit(code=1)
    return result.value


def _print_json(data: Any) -> None:
    console.print_json(json.dumps(data, default=str))


def _version_callback(value: bool) -> None:
    if value:
        console.print(f"Resource-Vault v{__version__}")
        raise typer.Exit()


@app.callback()
def main_callback(
    version: bool = typer.Option(
        False, "--version", callback=_version_callback, is_eager=True, help="Show version information"
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose logging"),
) -> None:
    """Resource Vault: versioned storage for clinical resources."""
    setup_logging(log_level="DEBUG" if verbose else "WARNING")


@app.command("init-db")
def init_db() -> None:
    """Create the resource table and indexes on the configured backend."""
    settings = _settings()
    with console.status("[bold green]Initializing storage..."):
        store = _open_store(settings)
    store.backend.close()
    console.print(f"[green]✓[/green] Storage ready: {settings.describe_backend()}")


@app.command()
def create(
    kind: str = typer.Argument(..., help="Resource kind, e.g. Patient"),
    payload_file: Path = typer.Argument(..., help="JSON payload file", exists=True),
) -> None:
    """Create a resource from a JSON file.

    Examples:
        resource-vault create Patient patient.json
    """
    store = _open_store(_settings())
    resource = _value_or_exit(store.create(kind, _load_payload(payload_file)))
    console.print(f"[green]✓[/green] Created {resource.full_reference} (version {resource.version})")
    _print_json(resource.to_wire())


@app.command()
def read(
    kind: str = typer.Argument(..., help="Resource kind"),
    resource_id: str = typer.Argument(..., help="Resource id"),
    version: Optional[int] = typer.Option(None, "--version", help="Read a specific history version"),
) -> None:
    """Print the current (or a historical) version of a resource."""
    store = _open_store(_settings())
    if version is None:
        resource = _value_or_exit(store.read(kind, resource_id))
    else:
        resource = _value_or_exit(store.read_version(kind, resource_id, version))
    _print_json(resource.to_wire())


@app.command()
def update(
    kind: str = typer.Argument(..., help="Resource kind"),
    resource_id: str = typer.Argument(..., help="Resource id"),
    payload_file: Path = typer.Argument(..., help="JSON payload file", exists=True),
) -> None:
    """Replace a resource body, producing a new version."""
    store = _open_store(_settings())
    resource = _value_or_exit(store.update(kind, resource_id, _load_payload(payload_file)))
    console.print(f"[green]✓[/green] Updated {resource.full_reference} to version {resource.version}")


@app.command()
def delete(
    kind: str = typer.Argument(..., help="Resource kind"),
    resource_id: str = typer.Argument(..., help="Resource id"),
) -> None:
    """Tombstone a resource."""
    store = _open_store(_settings())
    _value_or_exit(store.delete(kind, resource_id))
    console.print(f"[green]✓[/green] Deleted {kind}/{resource_id}")


@app.command()
def search(
    kind: str = typer.Argument(..., help="Resource kind"),
    owner: Optional[str] = typer.Option(None, "--owner", "-o", help="Owning patient reference, e.g. Patient/123"),
    updated_after: Optional[str] = typer.Option(None, "--updated-after", help="ISO-8601 instant"),
    limit: Optional[int] = typer.Option(None, "--limit", "-n", help="Maximum number of results"),
    include_deleted: bool = typer.Option(False, "--include-deleted", help="Include tombstoned resources"),
) -> None:
    """Search current resources of one kind, most recent first.

    Examples:
        resource-vault search Observation --owner Patient/123 --limit 10
    """
    try:
        query = QueryParams(
            owner=owner,
            updated_after=TypeAdapter(datetime).validate_python(updated_after) if updated_after else None,
            limit=limit,
            include_deleted=include_deleted,
        )
    except PydanticValidationError as e:
        console.print(f"[red]✗[/red] Invalid search options: {e.error_count()} error(s)")
        raise typer.Exit(code=1)

    store = _open_store(_settings())
    result_set = _value_or_exit(store.search(kind, query))

    table = Table(title=f"{kind} ({len(result_set.items)} of {result_set.total_hint})")
    table.add_column("Reference", style="cyan")
    table.add_column("Version", justify="right")
    table.add_column("Last Modified")
    table.add_column("Owner")
    table.add_column("Deleted")
    for entry in result_set.items:
        resource = entry.resource
        table.add_row(
            entry.full_reference,
            str(resource.version),
            resource.last_modified.isoformat(),
            resource.owner or "",
            "yes" if resource.deleted else "",
        )
    console.print(table)


@app.command()
def history(
    kind: str = typer.Argument(..., help="Resource kind"),
    resource_id: str = typer.Argument(..., help="Resource id"),
) -> None:
    """List every version of a resource, newest first."""
    store = _open_store(_settings())
    versions = _value_or_exit(store.history(kind, resource_id))

    table = Table(title=f"History of {kind}/{resource_id}")
    table.add_column("Version", justify="right")
    table.add_column("Last Modified")
    table.add_column("Deleted")
    for resource in versions:
        table.add_row(str(resource.version), resource.last_modified.isoformat(), "yes" if resource.deleted else "")
    console.print(table)


@app.command()
def info() -> None:
    """Display configuration information."""
    settings = _settings()
    try:
        backend = settings.describe_backend()
        store_config = settings.store_config
    except (PydanticValidationError, ValueError) as e:
        console.print(f"[red]✗[/red] Invalid configuration: {str(e)}")
        raise typer.Exit(code=1)

    console.print("[bold blue]System Information[/bold blue]\n")
    info_table = Table(show_header=False, box=None, padding=(0, 2))
    info_table.add_row("Application:", settings.app_name)
    info_table.add_row("Backend:", backend)
    info_table.add_row("Supported Kinds:", ", ".join(sorted(store_config.supported_kinds)))
    info_table.add_row("Page Size:", f"{store_config.default_page_size} (max {store_config.max_page_size})")
    info_table.add_row("Write Attempts:", str(store_config.max_write_attempts))
    info_table.add_row("Owner Policy:", store_config.owner_policy.value)
    console.print(info_table)


@app.command()
def serve(
    host: Optional[str] = typer.Option(None, "--host", help="Bind address (defaults to RV_API_HOST)"),
    port: Optional[int] = typer.Option(None, "--port", help="Bind port (defaults to RV_API_PORT)"),
    reload: bool = typer.Option(False, "--reload", help="Reload on code changes"),
) -> None:
    """Run the HTTP API with uvicorn."""
    import uvicorn

    settings = Settings()
    logging.getLogger(__name__).info(f"Starting API on {host or settings.api_host}:{port or settings.api_port}")
    uvicorn.run(
        "resource_vault.api.main:app",
        host=host or settings.api_host,
        port=port or settings.api_port,
        reload=reload,
        log_level=settings.log_level.lower()
    )


if __name__ == "__main__":
    app()
