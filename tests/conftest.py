"""
Shared pytest fixtures and manifest helpers.
"""

import asyncio
from datetime import datetime
from datetime import timedelta
from datetime import timezone
from zoneinfo import ZoneInfo

import pytest

from nest_clip_sync.models import Device

NOW = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)
UTC = ZoneInfo("UTC")

CAMERA_TRAIT = "action.devices.traits.CameraStream"


def make_manifest(periods: list[tuple[str, str]]) -> bytes:
    """Return a minimal DASH manifest with one Period per (programDateTime, duration)."""
    body = "".join(
        f'  <Period id="p{i}" programDateTime="{pdt}" duration="{dur}"/>\n'
        for i, (pdt, dur) in enumerate(periods)
    )
    return (
        '<?xml version="1.0" encoding="UTF-8"?>\n'
        '<MPD xmlns="urn:mpeg:dash:schema:mpd:2011" type="static">\n'
        f"{body}"
        "</MPD>\n"
    ).encode()


def iso(dt: datetime) -> str:
    """Format like the camera frontend does: millisecond precision, Z suffix."""
    return dt.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.") + (
        f"{dt.microsecond // 1000:03d}Z"
    )


def make_record(device_id: str, name: str, model: str = "Nest Cam (battery)", traits=None):
    return {
        "id": device_id,
        "name": name,
        "model": model,
        "traits": list(traits if traits is not None else [CAMERA_TRAIT]),
    }


@pytest.fixture
def front_door():
    return Device(
        id="DEVICE_A1",
        display_name="Front Door",
        capabilities=frozenset({CAMERA_TRAIT}),
        model="Nest Doorbell (battery)",
    )


@pytest.fixture
def backyard():
    return Device(
        id="DEVICE_B2",
        display_name="Backyard",
        capabilities=frozenset({CAMERA_TRAIT}),
        model="Nest Cam (outdoor)",
    )


@pytest.fixture
def clock():
    from tests.fake_client import FakeClock

    return FakeClock(NOW)


@pytest.fixture
def semaphore():
    return asyncio.Semaphore(2)


@pytest.fixture
def output_root(tmp_path):
    root = tmp_path / "clips"
    root.mkdir()
    return root


def hours_ago(hours: float) -> datetime:
    return NOW - timedelta(hours=hours)
