"""
Command-line interface for Nest Clip Sync.
"""

import asyncio
import logging
import os
import signal
from configparser import ConfigParser
from dataclasses import dataclass
from dataclasses import field
from datetime import datetime
from datetime import timedelta
from pathlib import Path
from typing import Annotated

import typer
from dotenv import find_dotenv
from dotenv import load_dotenv
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from nest_clip_sync.models import DEFAULT_CONFIG
from nest_clip_sync.models import CycleConfig
from nest_clip_sync.models import NestSyncError
from nest_clip_sync.models import RetentionPolicy
from nest_clip_sync.models import SyncStats
from nest_clip_sync.sync import ClipSynchronizer
from nest_clip_sync.sync.prune import PruneCycle
from nest_clip_sync.sync.prune import iter_clips

CONFIG_SECTION = "nest-clip-sync"

DEFAULT_OUTPUT = Path(".")
DEFAULT_CONCURRENCY = 10
DEFAULT_CHECK_MINUTES = 5
DEFAULT_PRUNE_MINUTES = 10
DEFAULT_RETENTION = 60

# ---------------------------------------------------------------------------
# Typer app
# ---------------------------------------------------------------------------

app = typer.Typer(
    no_args_is_help=True,
    rich_markup_mode="rich",
    help="Download Nest camera event clips and prune old ones.",
)

console = Console()


# ---------------------------------------------------------------------------
# Global state shared across subcommands
# ---------------------------------------------------------------------------


@dataclass
class _State:
    config_path: Path = field(default_factory=lambda: DEFAULT_CONFIG)
    verbose: bool = False


state = _State()


@app.callback()
def _global(
    config: Annotated[
        Path,
        typer.Option("--config", "-c", help=f"Config file path (default: {DEFAULT_CONFIG})"),
    ] = DEFAULT_CONFIG,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Enable verbose debug output"),
    ] = False,
) -> None:
    state.config_path = config
    state.verbose = verbose
    load_dotenv(find_dotenv(usecwd=True))
    _setup_logging(verbose)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(rich_tracebacks=True, show_path=False, console=console)],
    )
    # aiohttp is chatty at DEBUG.
    logging.getLogger("aiohttp").setLevel(logging.INFO)


def _load_config_file(config_path: Path) -> dict[str, str]:
    if not config_path.exists():
        return {}
    parser = ConfigParser()
    parser.read(config_path)
    if CONFIG_SECTION not in parser:
        return {}
    return dict(parser[CONFIG_SECTION])


def _file_int(config_file: dict[str, str], key: str, default: int) -> int:
    raw = config_file.get(key)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        raise typer.BadParameter(
            f"{key} in {state.config_path} must be an integer, got {raw!r}"
        ) from None


def _file_bool(config_file: dict[str, str], key: str) -> bool:
    return config_file.get(key, "").strip().lower() in ("1", "true", "yes", "on")


def _build_config(
    output: Path | None = None,
    concurrency: int | None = None,
    check_interval: int | None = None,
    prune_interval: int | None = None,
    retention_days: int | None = None,
    retention_hours: bool = False,
    timezone: str | None = None,
    embed_metadata: bool = False,
    once: bool = False,
) -> CycleConfig:
    """Merge CLI flags, environment and config file (in that order of precedence)."""
    config_file = _load_config_file(state.config_path)

    output_root = output or Path(config_file.get("output", str(DEFAULT_OUTPUT)))
    if concurrency is None:
        concurrency = _file_int(config_file, "concurrency", DEFAULT_CONCURRENCY)
    if check_interval is None:
        check_interval = _file_int(config_file, "check_interval", DEFAULT_CHECK_MINUTES)
    if prune_interval is None:
        prune_interval = _file_int(config_file, "prune_interval", DEFAULT_PRUNE_MINUTES)
    if retention_days is None:
        retention_days = _file_int(config_file, "retention_days", DEFAULT_RETENTION)
    retention_hours = retention_hours or _file_bool(config_file, "retention_hours")

    if retention_days < 0:
        raise typer.BadParameter("retention must not be negative")
    horizon = (
        timedelta(hours=retention_days) if retention_hours else timedelta(days=retention_days)
    )

    return CycleConfig(
        output_root=output_root.expanduser(),
        concurrency=concurrency,
        check_interval=timedelta(minutes=check_interval),
        prune_interval=timedelta(minutes=prune_interval),
        run_once=once,
        retention=RetentionPolicy(horizon=horizon),
        timezone=timezone or config_file.get("timezone") or None,
        embed_metadata=embed_metadata or _file_bool(config_file, "embed_metadata"),
        google_username=os.environ.get("GOOGLE_USERNAME") or config_file.get("google_username", ""),
        google_master_token=os.environ.get("GOOGLE_MASTER_TOKEN", ""),
        verbose=state.verbose,
    )


async def _serve(synchronizer: ClipSynchronizer) -> SyncStats | None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, synchronizer.stop)
        except NotImplementedError:
            pass  # Windows: KeyboardInterrupt still reaches asyncio.run
    return await synchronizer.run()


def _print_results(stats: SyncStats) -> None:
    results = Table.grid(padding=(0, 2))
    results.add_column(style="bold")
    results.add_column(justify="right")
    results.add_row("Devices", str(stats.devices))
    results.add_row("Events", str(stats.events))
    results.add_row("Downloaded", str(stats.downloaded))
    results.add_row("Skipped", str(stats.skipped))
    if stats.device_errors:
        results.add_row("Device errors", Text(str(stats.device_errors), style="bold red"))
    failed_val = Text(str(stats.failed))
    if stats.failed == 0 and not stats.cycle_failed:
        failed_val.append(" ✓", style="green")
    else:
        failed_val.stylize("bold red")
    results.add_row("Failed", failed_val)
    if stats.cycle_failed:
        results.add_row("Cycle", Text(f"FAILED: {stats.error}", style="bold red"))

    console.print(Panel(results, title="[bold]Results[/bold]", expand=False))


# ---------------------------------------------------------------------------
# Subcommand: run
# ---------------------------------------------------------------------------

_OUTPUT = Annotated[
    Path | None,
    typer.Option("--output", "-o", help="Output directory for downloaded clips (default: .)"),
]
_RETENTION = Annotated[
    int | None,
    typer.Option(
        "--retention-days",
        help=f"Days to keep clips, 0 keeps them forever (default: {DEFAULT_RETENTION})",
    ),
]
_RETENTION_HOURS = Annotated[
    bool,
    typer.Option("--retention-hours", help="Interpret --retention-days as hours"),
]


@app.command()
def run(
    output: _OUTPUT = None,
    concurrency: Annotated[
        int | None,
        typer.Option(
            "--concurrency",
            "-j",
            min=1,
            help=f"Simultaneous downloads (default: {DEFAULT_CONCURRENCY})",
        ),
    ] = None,
    check_interval: Annotated[
        int | None,
        typer.Option(
            "--check-interval",
            "-i",
            min=1,
            help=f"Minutes between event checks (default: {DEFAULT_CHECK_MINUTES})",
        ),
    ] = None,
    prune_interval: Annotated[
        int | None,
        typer.Option(
            "--prune-interval",
            min=1,
            help=f"Minutes between prune passes (default: {DEFAULT_PRUNE_MINUTES})",
        ),
    ] = None,
    retention_days: _RETENTION = None,
    retention_hours: _RETENTION_HOURS = False,
    timezone: Annotated[
        str | None,
        typer.Option("--timezone", help="IANA zone for folder and file names (default: system)"),
    ] = None,
    embed_metadata: Annotated[
        bool,
        typer.Option("--embed-metadata", help="Write creation time and camera name with exiftool"),
    ] = False,
    once: Annotated[
        bool, typer.Option("--once", help="Run one sync pass and exit (no pruning)")
    ] = False,
) -> None:
    """Download new clips continuously (or once with [cyan]--once[/]).

    Reads [cyan]GOOGLE_USERNAME[/] and [cyan]GOOGLE_MASTER_TOKEN[/] from the
    environment or a [cyan].env[/] file.
    """
    from nest_clip_sync.preflight import run_preflight_checks

    cfg = _build_config(
        output,
        concurrency,
        check_interval,
        prune_interval,
        retention_days,
        retention_hours,
        timezone,
        embed_metadata,
        once,
    )
    if not run_preflight_checks(cfg, console):
        raise typer.Exit(1)

    # -- Info panel ----------------------------------------------------------
    info = Text()
    info.append("  Account:   ", style="bold")
    info.append(f"{cfg.google_username}\n")
    info.append("  Output:    ", style="bold")
    info.append(f"{cfg.output_root.resolve()}\n")
    info.append("  Parallel:  ", style="bold")
    info.append(f"{cfg.concurrency} download(s)\n")
    info.append("  Mode:      ", style="bold")
    if cfg.run_once:
        info.append("ONCE", style="bold magenta")
    else:
        info.append(f"every {int(cfg.check_interval.total_seconds() // 60)} min", style="green")
        info.append("\n  Retention: ", style="bold")
        if cfg.retention.forever:
            info.append("forever", style="yellow")
        else:
            info.append(
                f"{cfg.retention.describe()} "
                f"(checked every {int(cfg.prune_interval.total_seconds() // 60)} min)"
            )
    console.print(Panel(info, title="[bold]Nest Clip Sync[/bold]"))

    # -- Run -----------------------------------------------------------------
    try:
        stats = asyncio.run(_serve(ClipSynchronizer(cfg)))
    except NestSyncError as e:
        console.print(f"[bold red]Sync failed:[/] {e}")
        raise typer.Exit(1) from None
    except KeyboardInterrupt:
        console.print("[yellow]Interrupted by user[/]")
        raise typer.Exit(130) from None
    except Exception as e:
        console.print_exception()
        console.print(f"[bold red]Unexpected error:[/] {e}")
        raise typer.Exit(1) from e

    if not cfg.run_once:
        return
    if stats is None:
        console.print("[yellow]Interrupted by user[/]")
        raise typer.Exit(130)

    _print_results(stats)
    if stats.cycle_failed or stats.failed:
        raise typer.Exit(1)


# ---------------------------------------------------------------------------
# Subcommand: prune
# ---------------------------------------------------------------------------


@app.command()
def prune(
    output: _OUTPUT = None,
    retention_days: _RETENTION = None,
    retention_hours: _RETENTION_HOURS = False,
    dry_run: Annotated[
        bool, typer.Option("--dry-run", "-n", help="Preview deletions without applying")
    ] = False,
) -> None:
    """Run a single prune pass now."""
    cfg = _build_config(output, retention_days=retention_days, retention_hours=retention_hours)
    if cfg.retention.forever:
        console.print("[yellow]Retention is forever — nothing to prune.[/]")
        return

    stats = PruneCycle(cfg.output_root, cfg.retention).run(dry_run=dry_run)

    prefix = "Would delete" if dry_run else "Deleted"
    results = Table.grid(padding=(0, 2))
    results.add_column(style="bold")
    results.add_column(justify="right")
    results.add_row("Scanned", str(stats.scanned))
    results.add_row(prefix, str(stats.deleted))
    results.add_row("Kept", str(stats.kept))
    error_val = Text(str(stats.errors))
    if stats.errors == 0:
        error_val.append(" ✓", style="green")
    else:
        error_val.stylize("bold red")
    results.add_row("Errors", error_val)

    console.print(Panel(results, title="[bold]Prune results[/bold]", expand=False))

    if stats.errors:
        raise typer.Exit(1)


# ---------------------------------------------------------------------------
# Subcommand: devices
# ---------------------------------------------------------------------------


@app.command()
def devices() -> None:
    """List the cameras discovery would sync."""
    cfg = _build_config()
    try:
        found = asyncio.run(ClipSynchronizer(cfg).discover())
    except NestSyncError as e:
        console.print(f"[bold red]Discovery failed:[/] {e}")
        raise typer.Exit(1) from None

    if not found:
        console.print("[yellow]No Nest cameras found on this account.[/]")
        return

    table = Table(show_header=True, header_style="bold cyan")
    table.add_column("Name", style="bold")
    table.add_column("Model")
    table.add_column("Device ID", style="dim", overflow="fold")
    for device in found:
        table.add_row(device.display_name, device.model, device.id)
    console.print(table)


# ---------------------------------------------------------------------------
# Subcommand: status
# ---------------------------------------------------------------------------


def _human_size(size: int) -> str:
    value = float(size)
    for unit in ("B", "KB", "MB", "GB"):
        if value < 1024:
            return f"{value:.0f} {unit}" if unit == "B" else f"{value:.1f} {unit}"
        value /= 1024
    return f"{value:.1f} TB"


@app.command()
def status(output: _OUTPUT = None) -> None:
    """Show configuration and a per-camera summary of the archive."""
    cfg = _build_config(output)
    config_exists = state.config_path.exists()

    cfg_info = Text()
    cfg_info.append("  Config:   ", style="bold")
    cfg_info.append(str(state.config_path) + " ")
    cfg_info.append(
        "✓" if config_exists else "(not found)", style="green" if config_exists else "yellow"
    )
    cfg_info.append("\n  Output:   ", style="bold")
    cfg_info.append(str(cfg.output_root.resolve()))
    cfg_info.append("\n  Account:  ", style="bold")
    if cfg.google_username:
        cfg_info.append(cfg.google_username)
    else:
        cfg_info.append("(GOOGLE_USERNAME not set)", style="red")
    cfg_info.append("\n  Token:    ", style="bold")
    cfg_info.append(
        "✓" if cfg.google_master_token else "(GOOGLE_MASTER_TOKEN not set)",
        style="green" if cfg.google_master_token else "red",
    )
    cfg_info.append("\n  Retention: ", style="bold")
    cfg_info.append(cfg.retention.describe())
    console.print(Panel(cfg_info, title="[bold]Nest Clip Sync — Status[/bold]"))

    # -- Archive section -----------------------------------------------------
    per_device: dict[str, list[float]] = {}
    sizes: dict[str, int] = {}
    for path in iter_clips(cfg.output_root):
        try:
            st = path.stat()
        except OSError:
            continue
        device_dir = path.relative_to(cfg.output_root).parts[0]
        per_device.setdefault(device_dir, []).append(st.st_mtime)
        sizes[device_dir] = sizes.get(device_dir, 0) + st.st_size

    if not per_device:
        console.print(
            "[yellow]No clips yet — run[/] [cyan]nest-clip-sync run --once[/] "
            "[yellow]to fetch the last 12 hours.[/]"
        )
        return

    def _fmt(ts: float) -> str:
        return datetime.fromtimestamp(ts).strftime("%Y-%m-%d %H:%M:%S")

    table = Table(show_header=True, header_style="bold cyan", box=None, padding=(0, 2))
    table.add_column("Camera", style="bold")
    table.add_column("Clips", justify="right")
    table.add_column("Oldest")
    table.add_column("Newest")
    table.add_column("Size", justify="right")
    for name in sorted(per_device):
        mtimes = per_device[name]
        table.add_row(
            name,
            str(len(mtimes)),
            _fmt(min(mtimes)),
            _fmt(max(mtimes)),
            _human_size(sizes[name]),
        )
    console.print(Panel(table, title="[bold]Archive[/bold]", expand=False))


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def main() -> None:
    app()
