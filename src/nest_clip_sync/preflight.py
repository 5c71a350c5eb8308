"""
Preflight checks run before sync to catch common misconfigurations early.
"""

import logging
import os
import tempfile

from rich.console import Console
from rich.panel import Panel
from rich.text import Text

from nest_clip_sync.metadata import exiftool_available
from nest_clip_sync.models import ConfigError
from nest_clip_sync.models import CycleConfig
from nest_clip_sync.sync.paths import resolve_timezone

logger = logging.getLogger(__name__)


def run_preflight_checks(cfg: CycleConfig, console: Console) -> bool:
    """Return True if sync may proceed; print issues and return False otherwise."""
    issues: list[tuple[str, str, str]] = []  # (label, detail, hint)

    # 1. Credentials
    if not cfg.google_username:
        issues.append(
            (
                "Google account",
                "GOOGLE_USERNAME is not set",
                "Export it, put it in .env, or set google_username in the config file",
            )
        )
    if not cfg.google_master_token:
        issues.append(
            (
                "Master token",
                "GOOGLE_MASTER_TOKEN is not set",
                "Export it or put it in .env (it is never read from the config file)",
            )
        )

    # 2. Numeric settings
    try:
        cfg.validate()
    except ConfigError as e:
        if cfg.google_username and cfg.google_master_token:
            issues.append(("Settings", str(e), "Check --concurrency and the interval options"))

    # 3. Timezone
    try:
        resolve_timezone(cfg.timezone)
    except ConfigError as e:
        issues.append(("Timezone", str(e), "Use an IANA name such as America/Vancouver"))

    # 4. Output directory exists (or can be created) and is writable
    root = cfg.output_root
    try:
        root.mkdir(parents=True, exist_ok=True)
        fd, probe = tempfile.mkstemp(prefix=".write-test-", dir=root)
        os.close(fd)
        os.unlink(probe)
    except OSError as e:
        logger.error("Output directory %s not writable: %s", root, e)
        issues.append(("Output directory", f"{root}: {e}", f"Check permissions on {root}"))

    # 5. Metadata tool
    if cfg.embed_metadata and not exiftool_available():
        issues.append(
            (
                "Metadata tool",
                "exiftool not found on PATH",
                "Install exiftool or drop --embed-metadata",
            )
        )

    if issues:
        _print_issues(issues, console)
        return False

    return True


def _print_issues(issues: list[tuple[str, str, str]], console: Console) -> None:
    body = Text()
    for i, (label, detail, hint) in enumerate(issues):
        if i:
            body.append("\n")
        body.append(f"  ✗  {label}: ", style="bold red")
        body.append(detail, style="bold red")
        body.append(f"\n       → {hint}", style="yellow")

    console.print(Panel(body, title="[bold red]Preflight checks failed[/bold red]"))
