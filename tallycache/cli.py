"""Command line interface for tallycache."""

import asyncio
import json
import sys
from typing import Any, Callable, Optional

import click
from rich.console import Console
from rich.progress import BarColumn, Progress, SpinnerColumn, TaskProgressColumn, TextColumn
from rich.table import Table

from . import __version__
from .cache.backends import DirectoryBackend
from .cache.store import HybridCache
from .cache.watcher import CacheIndexWatcher
from .config import CompanyConfig, Config, config_manager
from .logging_setup import configure_logging
from .models.cache import CacheType
from .models.sync import SyncProgress, SyncStatus
from .sync.client import TallyApiClient
from .sync.fetcher import SalesFetcher
from .sync.orchestrator import SyncOrchestrator
from .utils.error_handling import create_user_friendly_error


def get_spinner_name() -> str:
    """Get spinner name compatible with current platform.

    Returns ASCII-only spinner on Windows to avoid encoding issues.
    """
    if sys.platform == "win32":
        return "line"
    return "dots"


def json_serializer(obj):
    """Custom JSON serializer for special types."""
    if hasattr(obj, "model_dump"):
        return obj.model_dump(mode="json")
    elif hasattr(obj, "isoformat"):
        return obj.isoformat()
    else:
        return str(obj)


def format_size(size_bytes: int) -> str:
    if size_bytes >= 1024 * 1024:
        return f"{size_bytes / (1024 * 1024):.2f} MB"
    if size_bytes >= 1024:
        return f"{size_bytes / 1024:.1f} KB"
    return f"{size_bytes} B"


def report_error(ctx: click.Context, action: str, error: Exception) -> None:
    """Print a friendly error (with details under --verbose) and exit 1."""
    error_msg = create_user_friendly_error(error)
    click.echo(f"Error {action}: {error_msg}", err=True)
    if ctx.obj["verbose"]:
        click.echo(f"Details: {type(error).__name__}: {error}", err=True)
    ctx.exit(1)


def resolve_company(config: Config, name: str) -> CompanyConfig:
    company = config.find_company(name)
    if company is None:
        raise ValueError(
            f"Unknown company '{name}'. Add it under [[companies]] in {config_manager.config_path}."
        )
    return company


def run_with_cache(config: Config, work: Callable[[HybridCache], Any]) -> Any:
    """Open the cache, run an async callable against it and close it again."""

    async def runner():
        async with HybridCache.from_config(config.cache) as cache:
            return await work(cache)

    return asyncio.run(runner())


def build_orchestrator(config: Config, cache: HybridCache, company: CompanyConfig) -> SyncOrchestrator:
    client = TallyApiClient.from_config(config.api)
    fetcher = SalesFetcher(client, voucher_type=config.api.voucher_type_filter)
    return SyncOrchestrator(
        cache,
        fetcher,
        chunk_days=config.sync.chunk_days,
        default_books_from=config.books_from_for(company),
    )


@click.group()
@click.version_option(version=__version__)
@click.option(
    "--config", "-c", type=click.Path(exists=True), help="Path to configuration file"
)
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose output")
@click.pass_context
def cli(ctx: click.Context, config: Optional[str], verbose: bool):
    """tallycache - resumable downloads and a local cache for Tally data.

    Download sales vouchers, customer ledgers and stock items per company,
    resume interrupted downloads, and inspect or clean the local cache.
    """
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    ctx.obj["console"] = Console()

    try:
        if config:
            config_manager.config_path = config
            config_manager.reload()

        ctx.obj["config"] = config_manager.config
        configure_logging(ctx.obj["config"].logging, verbose=verbose)
    except Exception as e:
        error_msg = create_user_friendly_error(e)
        click.echo(f"Error initializing tallycache: {error_msg}", err=True)
        if verbose:
            click.echo(f"Details: {str(e)}", err=True)
        ctx.exit(1)


# === Configuration commands ===


@cli.group()
def config():
    """Configuration management commands."""
    pass


@config.command("show")
@click.pass_context
def config_show(ctx: click.Context):
    """Show current configuration."""
    try:
        config = ctx.obj["config"]

        click.echo(f"Configuration file: {config_manager.config_path}")
        click.echo()
        click.echo("Cache:")
        click.echo(f"  Root directory: {config.cache.root_dir}")
        click.echo(f"  Backend: {config.cache.backend}")
        click.echo(f"  Record database: {config.cache.db_path}")
        click.echo(f"  Expiry days: {config.cache.expiry_days}")
        click.echo(f"  Low space warning at: {config.cache.low_space_percent}%")
        click.echo()
        click.echo("API:")
        click.echo(f"  Base URL: {config.api.base_url}")
        click.echo(f"  Token: {'set' if config.api.resolved_token() else 'not set'}")
        click.echo(f"  Timeout: {config.api.timeout_seconds}s")
        if config.api.voucher_type_filter:
            click.echo(f"  Voucher type: {config.api.voucher_type_filter}")
        click.echo()
        click.echo("Sync:")
        click.echo(f"  Chunk size: {config.sync.chunk_days} day(s)")
        click.echo(f"  Default books-from: {config.sync.books_from or 'from server'}")
        click.echo()
        click.echo(f"Companies: {len(config.companies)}")
        for company in config.companies:
            click.echo(f"    - {company.name} ({company.location_id}/{company.guid})")

    except Exception as e:
        report_error(ctx, "showing configuration", e)


# === Cache management commands ===


@cli.group()
def cache():
    """Cache management commands.

    Inspect and clean the local cache of downloaded datasets.
    """
    pass


@cache.command("status")
@click.pass_context
def cache_status(ctx: click.Context):
    """Show cache status and statistics."""
    console = ctx.obj["console"]
    config = ctx.obj["config"]

    try:

        async def work(store: HybridCache):
            return await store.storage_stats(), await store.list_all()

        stats, listing = run_with_cache(config, work)

        console.print("[bold cyan]Cache Status[/bold cyan]")
        console.print()
        console.print(f"[dim]Backend:[/dim] {stats['backend']}")
        console.print(f"[dim]Location:[/dim] {stats['location']}")
        expiry = f"{config.cache.expiry_days} day(s)" if config.cache.expiry_enabled else "never"
        console.print(f"[dim]Expiry:[/dim] {expiry}")
        console.print()

        table = Table(show_header=True, header_style="bold blue")
        table.add_column("Metric", style="cyan")
        table.add_column("Value", justify="right")

        table.add_row("Entries", f"{listing.total_entries:,}")
        table.add_row("Payload size", format_size(listing.total_size_bytes))
        table.add_row("On disk", format_size(stats["used_bytes"]))
        table.add_row("Disk free", format_size(stats["disk_free_bytes"]))
        table.add_row("Disk usage", f"{stats['usage_percent']}%")
        console.print(table)

        if listing.counts_by_type:
            console.print()
            console.print("[bold]Entries by type:[/bold]")
            for entry_type, count in sorted(listing.counts_by_type.items()):
                console.print(f"  {entry_type}: {count:,}")

        if stats["low_space"]:
            console.print()
            console.print("[yellow]Storage is running low. Consider clearing old entries.[/yellow]")

    except Exception as e:
        report_error(ctx, "getting cache status", e)


@cache.command("list")
@click.option(
    "--type",
    "entry_type",
    type=click.Choice([t.value for t in CacheType]),
    default=None,
    help="Only show entries of this type",
)
@click.pass_context
def cache_list(ctx: click.Context, entry_type: Optional[str]):
    """List cached entries, newest first."""
    console = ctx.obj["console"]
    config = ctx.obj["config"]

    try:

        async def work(store: HybridCache):
            return await store.list_all()

        listing = run_with_cache(config, work)
        entries = [e for e in listing.entries if entry_type is None or e.type.value == entry_type]

        if not entries:
            console.print("[dim]No cache entries.[/dim]")
            return

        table = Table(show_header=True, header_style="bold blue")
        table.add_column("Key", style="cyan", overflow="fold")
        table.add_column("Type")
        table.add_column("Size", justify="right")
        table.add_column("Created")
        table.add_column("Range")

        for entry in entries:
            table.add_row(
                entry.cache_key,
                entry.type.value,
                format_size(entry.size_bytes),
                entry.created_at.strftime("%Y-%m-%d %H:%M"),
                str(entry.date_range) if entry.date_range else "",
            )
        console.print(table)
        console.print(f"[dim]{len(entries)} entries, {format_size(sum(e.size_bytes for e in entries))}[/dim]")

    except Exception as e:
        report_error(ctx, "listing cache", e)


@cache.command("show")
@click.argument("key")
@click.pass_context
def cache_show(ctx: click.Context, key: str):
    """Print the decoded value stored under KEY."""
    console = ctx.obj["console"]
    config = ctx.obj["config"]

    try:

        async def work(store: HybridCache):
            return await store.get_as_json(key)

        value = run_with_cache(config, work)
        console.print_json(json.dumps(value, default=json_serializer))

    except Exception as e:
        report_error(ctx, f"reading '{key}'", e)


@cache.command("clear")
@click.option("--company", help="Only clear data for this company (name or guid)")
@click.option("--yes", "-y", is_flag=True, help="Skip confirmation prompt")
@click.pass_context
def cache_clear(ctx: click.Context, company: Optional[str], yes: bool):
    """Clear cached data."""
    config = ctx.obj["config"]

    try:
        target = resolve_company(config, company) if company else None
        prompt = (
            f"This will delete all cached data for {target.name}. Continue?"
            if target
            else "This will delete all cached data. Continue?"
        )
        if not yes:
            if not click.confirm(prompt):
                click.echo("Cancelled.")
                return

        async def work(store: HybridCache):
            if target is not None:
                return len(await store.clear_by_company(target.identity()))
            await store.clear_all()
            return None

        removed = run_with_cache(config, work)
        if removed is None:
            click.echo("Cache cleared successfully.")
        else:
            click.echo(f"Removed {removed} entries for {target.name}.")

    except Exception as e:
        report_error(ctx, "clearing cache", e)


@cache.command("expire")
@click.option("--days", type=int, default=None, help="Age limit in days (default: configured expiry)")
@click.pass_context
def cache_expire(ctx: click.Context, days: Optional[int]):
    """Delete entries older than the expiry age."""
    config = ctx.obj["config"]

    try:
        if days is None and not config.cache.expiry_enabled:
            click.echo("Expiry is disabled (expiry_days = never). Use --days to expire anyway.")
            return

        async def work(store: HybridCache):
            return await store.expire_stale(days)

        removed = run_with_cache(config, work)
        click.echo(f"Expired {len(removed)} entries.")
        if ctx.obj["verbose"]:
            for key in removed:
                click.echo(f"  {key}")

    except Exception as e:
        report_error(ctx, "expiring cache entries", e)


@cache.command("set-expiry")
@click.argument("value")
@click.pass_context
def cache_set_expiry(ctx: click.Context, value: str):
    """Set how many days cached data is kept.

    VALUE: Number of days, or 'never' (0 also disables expiry)
    """
    try:
        updated = config_manager.set_expiry_days(value)
        ctx.obj["config"] = updated
        click.echo(f"Cache expiry set to {updated.cache.expiry_days} in {config_manager.config_path}")

    except Exception as e:
        report_error(ctx, "setting cache expiry", e)


# === Sync commands ===


@cli.group()
def sync():
    """Download and resume company data."""
    pass


def _progress_description(progress: SyncProgress) -> str:
    return progress.message or progress.status.value


@sync.command("run")
@click.argument("company")
@click.option("--fresh", is_flag=True, help="Discard saved progress and download everything again")
@click.pass_context
def sync_run(ctx: click.Context, company: str, fresh: bool):
    """Download (or resume downloading) sales data for COMPANY."""
    console = ctx.obj["console"]
    config = ctx.obj["config"]

    try:
        target = resolve_company(config, company)
        identity = target.identity()

        async def work(store: HybridCache):
            orchestrator = build_orchestrator(config, store, target)
            watcher = None
            if config.cache.watch_changes and isinstance(store.backend, DirectoryBackend):
                watcher = CacheIndexWatcher(store)
                watcher.start()

            with Progress(
                SpinnerColumn(spinner_name=get_spinner_name()),
                TextColumn("[progress.description]{task.description}"),
                BarColumn(),
                TaskProgressColumn(),
                console=console,
            ) as progress:
                task = progress.add_task(f"Syncing {target.name}...", total=None)

                def on_progress(update: SyncProgress):
                    if update.company_guid != identity.guid:
                        return
                    progress.update(
                        task,
                        completed=update.current_chunk,
                        total=update.total_chunks or None,
                        description=_progress_description(update),
                    )

                unsubscribe = orchestrator.subscribe(on_progress)
                try:
                    handle = await orchestrator.start_or_resume(identity, start_fresh=fresh)
                    return await handle.wait()
                finally:
                    unsubscribe()
                    await orchestrator.close()
                    if watcher is not None:
                        await watcher.stop()

        result = run_with_cache(config, work)

        if result.status == SyncStatus.INTERRUPTED:
            console.print("[yellow]Sync paused.[/yellow] Run the command again to resume.")
            return
        mode = "update" if result.incremental else "download"
        console.print(f"[green]Sync complete![/green] {result.record_count:,} vouchers ({mode}).")
        if result.last_alter_id is not None:
            console.print(f"  [dim]Last alter id: {result.last_alter_id}[/dim]")

    except Exception as e:
        report_error(ctx, "syncing", e)


@sync.command("status")
@click.argument("company", required=False)
@click.pass_context
def sync_status(ctx: click.Context, company: Optional[str]):
    """Show download progress for COMPANY (default: every configured company)."""
    console = ctx.obj["console"]
    config = ctx.obj["config"]

    try:
        targets = [resolve_company(config, company)] if company else list(config.companies)
        if not targets:
            console.print("[dim]No companies configured.[/dim]")
            return

        async def work(store: HybridCache):
            rows = []
            for target in targets:
                orchestrator = build_orchestrator(config, store, target)
                identity = target.identity()
                progress = await orchestrator.get_progress(identity)
                interrupted = await orchestrator.detect_interrupted(identity)
                rows.append((target, progress, interrupted))
            return rows

        rows = run_with_cache(config, work)

        table = Table(show_header=True, header_style="bold blue")
        table.add_column("Company", style="cyan")
        table.add_column("Status")
        table.add_column("Chunks", justify="right")
        table.add_column("Vouchers", justify="right")
        table.add_column("Updated")
        for target, progress, interrupted in rows:
            status = progress.status.value
            if interrupted is not None:
                status = f"[yellow]{status} (resume available)[/yellow]"
            chunks = f"{progress.current_chunk}/{progress.total_chunks}" if progress.total_chunks else ""
            table.add_row(
                target.name,
                status,
                chunks,
                f"{progress.record_count:,}",
                progress.last_updated_at.strftime("%Y-%m-%d %H:%M"),
            )
        console.print(table)

    except Exception as e:
        report_error(ctx, "getting sync status", e)


@sync.command("dismiss")
@click.argument("company")
@click.pass_context
def sync_dismiss(ctx: click.Context, company: str):
    """Stop reporting the interrupted download of COMPANY until it changes."""
    config = ctx.obj["config"]

    try:
        target = resolve_company(config, company)

        async def work(store: HybridCache):
            orchestrator = build_orchestrator(config, store, target)
            identity = target.identity()
            checkpoint = await orchestrator.detect_interrupted(identity)
            if checkpoint is None:
                return None
            await orchestrator.checkpoints.dismiss(identity, checkpoint)
            return checkpoint

        checkpoint = run_with_cache(config, work)
        if checkpoint is None:
            click.echo(f"No interrupted download to dismiss for {target.name}.")
        else:
            click.echo(
                f"Dismissed interrupted download for {target.name} "
                f"({checkpoint.current}/{checkpoint.total} chunks)."
            )

    except Exception as e:
        report_error(ctx, "dismissing interrupted download", e)


@sync.command("masters")
@click.argument("company")
@click.pass_context
def sync_masters(ctx: click.Context, company: str):
    """Download customer ledgers and stock items for COMPANY."""
    console = ctx.obj["console"]
    config = ctx.obj["config"]

    try:
        target = resolve_company(config, company)

        async def work(store: HybridCache):
            orchestrator = build_orchestrator(config, store, target)
            identity = target.identity()
            try:
                with console.status("Downloading customers...", spinner=get_spinner_name()):
                    customers = await orchestrator.sync_customers(identity)
                with console.status("Downloading stock items...", spinner=get_spinner_name()):
                    items = await orchestrator.sync_items(identity)
            finally:
                await orchestrator.close()
            return customers, items

        customers, items = run_with_cache(config, work)
        console.print(f"[green]Masters updated![/green] {customers:,} customers, {items:,} stock items.")

    except Exception as e:
        report_error(ctx, "downloading masters", e)


def main():
    """Main entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
