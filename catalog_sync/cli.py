"""Main CLI interface for the catalog sync tool."""

import asyncio
import signal
from pathlib import Path
from typing import Optional, Tuple
import typer
from rich.console import Console
from rich.table import Table

from .config import Config, load_config_from_env
from .clients import CatalogClient
from .csv_io import CSVProcessor
from .entities import ENTITY_TYPES, EntityType, get_entity_type
from .errors import SetupError
from .logging_config import setup_logging
from .lookups import LookupTableBuilder
from .models import Summary
from .pipeline import LoadOptions, LoadPipeline
from .ratelimit import TokenBucketLimiter

app = typer.Typer(
    name="catalog-sync",
    help="Bulk load catalog CSV files into a VTEX-style catalog API",
    rich_markup_mode="rich"
)

console = Console()


def _build_config(
    out_dir: Path,
    concurrency: Optional[int] = None,
    rate_limit: Optional[int] = None,
    dry_run: bool = False,
    honor_retry_after: bool = False,
) -> Config:
    """Environment settings with command line overrides applied."""
    try:
        base = load_config_from_env(out_dir)
        values = base.model_dump(exclude={"catalog"})
        if concurrency is not None:
            values["concurrency"] = concurrency
        if rate_limit is not None:
            values["rate_limit"] = rate_limit
        values["dry_run"] = dry_run or base.dry_run
        values["honor_retry_after"] = honor_retry_after or base.honor_retry_after

        return Config.model_validate({**values, "catalog": base.catalog})
    except ValueError as e:
        raise typer.BadParameter(str(e))


def _reads_remote_lookups(etype: EntityType, action: str) -> bool:
    """Whether a load of this type reads from the API before submitting."""
    return bool(etype.dependencies) or (action == "update" and etype.self_lookup is not None)


def _install_interrupt_handler(cancel_event: asyncio.Event) -> None:
    """First Ctrl-C stops new submissions; a second one aborts."""
    loop = asyncio.get_running_loop()

    def on_interrupt() -> None:
        console.print("\n[yellow]Stopping: waiting for in-flight requests (Ctrl-C again to abort)[/yellow]")
        cancel_event.set()
        loop.remove_signal_handler(signal.SIGINT)

    try:
        loop.add_signal_handler(signal.SIGINT, on_interrupt)
    except (NotImplementedError, RuntimeError):
        # Not supported on this platform; Ctrl-C raises KeyboardInterrupt
        pass


@app.command()
def load(
    entity: str = typer.Argument(..., help="Entity type to load (see the entities command)"),
    file: Path = typer.Option(..., "--file", "-f", help="CSV file with one entity per row"),
    action: str = typer.Option("import", "--action", help="import (create) or update"),
    concurrency: Optional[int] = typer.Option(None, "--concurrency", help="Requests in flight at once (1-24)"),
    rate_limit: Optional[int] = typer.Option(None, "--rate-limit", help="Requests per second (1-200)"),
    skip_cat_lookup: bool = typer.Option(False, "--skip-cat-lookup", help="Do not resolve CategoryUniqueIdentifier"),
    category_file: Optional[Path] = typer.Option(None, "--category-file", help="Categories CSV mapping UniqueIdentifier to Name"),
    product_lookup: Optional[Path] = typer.Option(None, "--product-lookup", help="Product lookup CSV written by a product load"),
    sku_lookup: Optional[Path] = typer.Option(None, "--sku-lookup", help="SKU lookup CSV written by a SKU load"),
    lookup_out: Optional[Path] = typer.Option(None, "--lookup-out", help="Where to write ids created by this load"),
    out_dir: Path = typer.Option("./out", "--out-dir", help="Output directory"),
    limit: Optional[int] = typer.Option(None, "--limit", help="Process only first N rows"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Resolve records without submitting them (lookups are still read from the API)"),
    honor_retry_after: bool = typer.Option(False, "--honor-retry-after", help="Retry HTTP 429 responses after Retry-After"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
):
    """Load a CSV file of catalog entities."""
    # Validate choices
    if action not in ["import", "update"]:
        raise typer.BadParameter(f"Invalid action choice: {action}. Must be one of: import, update")
    try:
        etype = get_entity_type(entity)
        etype.route(action)
    except ValueError as e:
        raise typer.BadParameter(str(e))
    if not file.exists():
        console.print(f"[red]Input file not found: {file}[/red]")
        raise typer.Exit(1)

    setup_logging(verbose)
    config = _build_config(out_dir, concurrency, rate_limit, dry_run, honor_retry_after)
    if not config.catalog.is_configured and (not config.dry_run or _reads_remote_lookups(etype, action)):
        console.print("[red]Set ACCOUNT_NAME, VTEX_API_APPKEY and VTEX_API_APPTOKEN (environment or .env)[/red]")
        raise typer.Exit(1)

    options = LoadOptions(
        entity=entity,
        file=file,
        action=action,
        skip_category_lookup=skip_cat_lookup,
        category_file=category_file,
        product_lookup=product_lookup,
        sku_lookup=sku_lookup,
        lookup_out=lookup_out,
        limit=limit,
    )

    try:
        summary, cancelled = asyncio.run(_load_main(config, options))
    except KeyboardInterrupt:
        console.print("\n[yellow]Load cancelled by user[/yellow]")
        raise typer.Exit(1)
    except SetupError as e:
        console.print(f"[red]Setup failed, nothing was submitted: {e}[/red]")
        raise typer.Exit(1)
    except Exception as e:
        console.print(f"[red]Load failed: {e}[/red]")
        raise typer.Exit(1)

    if cancelled:
        console.print(f"[yellow]Load interrupted: {summary.not_attempted} records not attempted[/yellow]")
        raise typer.Exit(1)


@app.command()
def lookup(
    kind: str = typer.Argument(..., help="Which table to dump (category, brand)"),
    out: Path = typer.Option(..., "--out", help="CSV file to write"),
    depth: Optional[int] = typer.Option(None, "--depth", help="Category tree depth to fetch"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
):
    """Write a remote lookup table to CSV."""
    if kind not in ["category", "brand"]:
        raise typer.BadParameter(f"Invalid lookup choice: {kind}. Must be one of: category, brand")

    setup_logging(verbose)
    config = _build_config(out.parent)
    if not config.catalog.is_configured:
        console.print("[red]Set ACCOUNT_NAME, VTEX_API_APPKEY and VTEX_API_APPTOKEN (environment or .env)[/red]")
        raise typer.Exit(1)

    try:
        asyncio.run(_lookup_main(config, kind, out, depth))
    except KeyboardInterrupt:
        console.print("\n[yellow]Lookup cancelled by user[/yellow]")
        raise typer.Exit(1)
    except SetupError as e:
        console.print(f"[red]Lookup failed: {e}[/red]")
        raise typer.Exit(1)


@app.command()
def entities():
    """List the entity types that can be loaded."""
    table = Table(title="Entity Types", show_header=True, header_style="bold magenta")
    table.add_column("Entity", style="cyan", no_wrap=True)
    table.add_column("Key Column", style="yellow")
    table.add_column("Depends On", style="green")
    table.add_column("Import", style="white")
    table.add_column("Update", style="white")

    for etype in ENTITY_TYPES.values():
        depends = ", ".join(
            f"{dep.column}{'' if dep.required else '?'}" for dep in etype.dependencies
        )
        table.add_row(
            etype.name,
            etype.key_column,
            depends or "-",
            f"{etype.create_method} {etype.create_path}",
            f"{etype.update_method} {etype.update_path}" if etype.update_path else "-",
        )

    console.print(table)


async def _load_main(config: Config, options: LoadOptions) -> Tuple[Summary, bool]:
    """Main load logic."""
    console.print("[bold cyan]Catalog Sync Tool[/bold cyan]\n")

    cancel_event = asyncio.Event()
    _install_interrupt_handler(cancel_event)

    limiter = TokenBucketLimiter(config.rate_limit, max_jitter=config.max_jitter)
    async with CatalogClient(config.catalog, rate_limiter=limiter, timeout=config.timeout) as client:
        pipeline = LoadPipeline(config, client, console, rate_limiter=limiter, cancel_event=cancel_event)
        result = await pipeline.run(options)

    return result.summary, cancel_event.is_set()


async def _lookup_main(config: Config, kind: str, out: Path, depth: Optional[int]) -> None:
    """Fetch one lookup table and write it."""
    limiter = TokenBucketLimiter(config.rate_limit, max_jitter=config.max_jitter)
    async with CatalogClient(config.catalog, rate_limiter=limiter, timeout=config.timeout) as client:
        builder = LookupTableBuilder(client, concurrency=config.concurrency)
        if kind == "category":
            table = await builder.build_category_lookup(depth or config.category_tree_depth)
            headers = ("Name", "CategoryId")
        else:
            table = await builder.build_brand_lookup()
            headers = ("Name", "BrandId")

    CSVProcessor(console).write_lookup_artifact(table, headers, out)


if __name__ == "__main__":
    app()
