"""
Deterministic on-disk layout for downloaded clips.
"""

import re
from collections.abc import Iterable
from datetime import datetime
from datetime import timedelta
from datetime import timezone
from datetime import tzinfo
from pathlib import Path
from zoneinfo import ZoneInfo

from nest_clip_sync.models import MANAGED_EXTENSION
from nest_clip_sync.models import TEMP_SUFFIX
from nest_clip_sync.models import CameraEvent
from nest_clip_sync.models import ConfigError
from nest_clip_sync.models import Device

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

# Characters that are unsafe in a directory name on common filesystems.
_UNSAFE_CHARS_RE = re.compile(r'[\\/:*?"<>|\x00-\x1f]+')


def resolve_timezone(name: str | None) -> tzinfo | None:
    """Return a zone for folder/file naming; None means the system zone."""
    if not name:
        return None
    try:
        return ZoneInfo(name)
    except (KeyError, ValueError) as e:
        raise ConfigError(f"Unknown timezone {name!r}") from e


def device_dirname(device: Device) -> str:
    name = _UNSAFE_CHARS_RE.sub("_", device.display_name).strip(" .")
    return name or _UNSAFE_CHARS_RE.sub("_", device.id) or "unnamed"


def device_dirnames(devices: Iterable[Device]) -> dict[str, str]:
    """Map device id to folder name, unique within ``devices``.

    Devices whose names clash (case-insensitively, after sanitising) get
    their id appended, e.g. ``Camera (DEVICE_A1)``; the rest keep the
    plain name so existing archives stay where they are.
    """
    devices = list(devices)
    by_folder: dict[str, list[Device]] = {}
    for device in devices:
        by_folder.setdefault(device_dirname(device).casefold(), []).append(device)
    names = {}
    for device in devices:
        name = device_dirname(device)
        if len(by_folder[name.casefold()]) > 1:
            name = f"{name} ({_UNSAFE_CHARS_RE.sub('_', device.id)})"
        names[device.id] = name
    return names


def clip_path(
    root: Path,
    device: Device,
    event: CameraEvent,
    zone: tzinfo | None = None,
    dirname: str | None = None,
) -> Path:
    """``<root>/<device>/<YYYY>/<MM>/<DD>/<YYYY-MM-DDTHH-MM-SS>.mp4`` in local time.

    The same event always maps to the same path, which is what makes
    re-listing overlapping windows idempotent.  ``dirname`` overrides the
    device folder, see device_dirnames().
    """
    local = event.start_time.astimezone(zone)
    return (
        root
        / (dirname or device_dirname(device))
        / local.strftime("%Y")
        / local.strftime("%m")
        / local.strftime("%d")
        / (local.strftime("%Y-%m-%dT%H-%M-%S") + MANAGED_EXTENSION)
    )


def temp_path(destination: Path) -> Path:
    return destination.with_name(destination.name + TEMP_SUFFIX)


def epoch_ns(dt: datetime) -> int:
    """Exact nanoseconds since the epoch, avoiding float rounding."""
    return (dt - _EPOCH) // timedelta(microseconds=1) * 1000
