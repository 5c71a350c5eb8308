"""
Pure data models and error types, free of network and filesystem access.
"""

import enum
from dataclasses import dataclass
from dataclasses import field
from datetime import datetime
from datetime import timedelta
from pathlib import Path

DEFAULT_CONFIG = Path.home() / ".config/nest-clip-sync.conf"

MANAGED_EXTENSION = ".mp4"
TEMP_SUFFIX = ".part"

# The clip endpoint refuses ranges longer than this.
MAX_EVENT_DURATION = timedelta(minutes=10)


class NestSyncError(Exception):
    """Base exception for clip sync errors."""

    pass


class ConfigError(NestSyncError):
    """Invalid or incomplete configuration."""


class AuthError(NestSyncError):
    """Credential exchange or refresh failed. Fatal to the current cycle."""


class DiscoveryError(NestSyncError):
    """Device listing failed. Fatal to the current cycle."""


class ListingError(NestSyncError):
    """Event listing failed for one device."""


class DownloadError(NestSyncError):
    """Fetching or storing one clip failed."""


class PruneError(NestSyncError):
    """One file could not be inspected or deleted."""


@dataclass
class Credential:
    """A short-lived access token minted from the master token."""

    access_token: str
    expires_at: datetime
    refresh_state: str = ""  # upstream service (scope) the token belongs to

    def is_valid(self, now: datetime, margin: timedelta = timedelta(0)) -> bool:
        return now < self.expires_at - margin


@dataclass(frozen=True)
class Device:
    """A camera as reported by discovery."""

    id: str
    display_name: str
    capabilities: frozenset[str] = frozenset()
    model: str = ""


@dataclass(frozen=True)
class CameraEvent:
    """A recorded clip on one device."""

    device_id: str
    start_time: datetime
    duration: timedelta
    download_ref: str = ""

    @property
    def end_time(self) -> datetime:
        return self.start_time + self.duration

    @property
    def event_id(self) -> str:
        return (
            f"{self.start_time.isoformat()}->{self.end_time.isoformat()}|{self.device_id}"
        )


@dataclass(frozen=True)
class DownloadTask:
    event: CameraEvent
    device: Device
    destination: Path


class DownloadOutcome(enum.Enum):
    DOWNLOADED = "downloaded"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass(frozen=True)
class DownloadResult:
    task: DownloadTask
    outcome: DownloadOutcome
    reason: str | None = None


@dataclass(frozen=True)
class RetentionPolicy:
    """How long clips are kept. A zero horizon keeps them forever."""

    horizon: timedelta = timedelta(days=60)

    @property
    def forever(self) -> bool:
        return self.horizon <= timedelta(0)

    def describe(self) -> str:
        if self.forever:
            return "forever"
        if self.horizon % timedelta(days=1) == timedelta(0):
            return f"{self.horizon.days} days"
        return f"{int(self.horizon.total_seconds() // 3600)} hours"


@dataclass
class CycleConfig:
    """Configuration for the sync engine."""

    output_root: Path
    concurrency: int = 10
    check_interval: timedelta = timedelta(minutes=5)
    prune_interval: timedelta = timedelta(minutes=10)
    window_lookback: timedelta = timedelta(hours=12)
    run_once: bool = False
    retention: RetentionPolicy = field(default_factory=RetentionPolicy)
    timezone: str | None = None  # IANA name; None means the system zone
    embed_metadata: bool = False
    google_username: str = ""
    google_master_token: str = field(default="", repr=False)
    verbose: bool = False

    def validate(self) -> None:
        if self.concurrency < 1:
            raise ConfigError(f"concurrency must be at least 1, got {self.concurrency}")
        if self.check_interval <= timedelta(0):
            raise ConfigError("check interval must be positive")
        if self.prune_interval <= timedelta(0):
            raise ConfigError("prune interval must be positive")
        if not self.google_username or not self.google_master_token:
            raise ConfigError(
                "GOOGLE_USERNAME and GOOGLE_MASTER_TOKEN must both be set"
            )


@dataclass
class SyncStats:
    """Statistics for one sync cycle."""

    devices: int = 0
    events: int = 0
    downloaded: int = 0
    skipped: int = 0
    failed: int = 0
    device_errors: int = 0
    cycle_failed: bool = False
    error: str | None = None

    def record(self, result: DownloadResult) -> None:
        if result.outcome is DownloadOutcome.DOWNLOADED:
            self.downloaded += 1
        elif result.outcome is DownloadOutcome.SKIPPED:
            self.skipped += 1
        else:
            self.failed += 1


@dataclass
class PruneStats:
    """Statistics for one prune cycle."""

    scanned: int = 0
    deleted: int = 0
    kept: int = 0
    errors: int = 0
    dry_run: bool = False
