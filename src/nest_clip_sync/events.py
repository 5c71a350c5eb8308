"""
Event listing: fetch a device's DASH manifest and turn its Periods into events.
"""

import logging
import re
import xml.etree.ElementTree as ET
from collections.abc import Mapping
from datetime import datetime
from datetime import timedelta
from datetime import timezone
from typing import Protocol

from nest_clip_sync.auth import CredentialStore
from nest_clip_sync.models import MAX_EVENT_DURATION
from nest_clip_sync.models import AuthError
from nest_clip_sync.models import CameraEvent
from nest_clip_sync.models import Device
from nest_clip_sync.models import ListingError
from nest_clip_sync.nest_client import is_unauthorized

logger = logging.getLogger(__name__)

# 2025-01-31T08:15:02.123Z, 2025-01-31T08:15:02Z or with a numeric offset.
_TIMESTAMP_RE = re.compile(
    r"^(\d{4})-(\d{2})-(\d{2})T(\d{2}):(\d{2}):(\d{2})(?:\.(\d+))?(Z|[+-]\d{2}:?\d{2})?$"
)

# ISO 8601 durations as used by DASH: P1DT2H3M4.5S, PT12.345S, ...
_DURATION_RE = re.compile(
    r"^P(?:(\d+)D)?(?:T(?:(\d+(?:\.\d+)?)H)?(?:(\d+(?:\.\d+)?)M)?(?:(\d+(?:\.\d+)?)S)?)?$"
)


class EventListingService(Protocol):
    async def fetch_manifest(
        self, device_id: str, token: str, params: Mapping[str, str]
    ) -> bytes: ...


def parse_timestamp(value: str) -> datetime:
    """Parse an RFC 3339 timestamp into an aware UTC datetime."""
    m = _TIMESTAMP_RE.match(value.strip())
    if not m:
        raise ValueError(f"unparseable timestamp {value!r}")
    year, month, day, hour, minute, second, frac, tz = m.groups()
    micros = int((frac or "0")[:6].ljust(6, "0"))
    if tz is None or tz == "Z":
        tzinfo = timezone.utc
    else:
        sign = -1 if tz[0] == "-" else 1
        digits = tz[1:].replace(":", "")
        offset = timedelta(hours=int(digits[:2]), minutes=int(digits[2:]))
        tzinfo = timezone(sign * offset)
    dt = datetime(
        int(year), int(month), int(day), int(hour), int(minute), int(second), micros, tzinfo
    )
    return dt.astimezone(timezone.utc)


def parse_duration(value: str) -> timedelta:
    """Parse an ISO 8601 duration (days and smaller units only)."""
    m = _DURATION_RE.match(value.strip())
    if not m or value.strip() in ("P", "PT") or value.strip().endswith("T"):
        raise ValueError(f"unparseable duration {value!r}")
    days, hours, minutes, seconds = m.groups()
    return timedelta(
        days=int(days or 0),
        hours=float(hours or 0),
        minutes=float(minutes or 0),
        seconds=float(seconds or 0),
    )


def format_api_time(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S") + ".000Z"


def to_epoch_ms(dt: datetime) -> int:
    return (dt - datetime(1970, 1, 1, tzinfo=timezone.utc)) // timedelta(milliseconds=1)


def make_download_ref(start: datetime, end: datetime) -> str:
    return f"{to_epoch_ms(start)}:{to_epoch_ms(end)}"


def clip_params(download_ref: str) -> dict[str, str]:
    """Query parameters for the clip endpoint from an event's download ref."""
    start_ms, _, end_ms = download_ref.partition(":")
    return {"start_time": start_ms, "end_time": end_ms}


def event_from_period(device_id: str, program_date_time: str, duration: str) -> CameraEvent:
    start = parse_timestamp(program_date_time)
    length = parse_duration(duration)
    if length <= timedelta(0):
        raise ValueError(f"non-positive duration {duration!r}")
    if length > MAX_EVENT_DURATION:
        logger.warning(
            "Event at %s on %s lasts %ss; clipping download to %ss",
            program_date_time,
            device_id,
            int(length.total_seconds()),
            int(MAX_EVENT_DURATION.total_seconds()),
        )
        length = MAX_EVENT_DURATION
    return CameraEvent(
        device_id=device_id,
        start_time=start,
        duration=length,
        download_ref=make_download_ref(start, start + length),
    )


def _local_name(tag) -> str:
    if not isinstance(tag, str):
        return ""
    return tag.rsplit("}", 1)[-1]


def parse_manifest(device_id: str, document: bytes) -> list[CameraEvent]:
    """Extract events from a DASH manifest.

    A Period that is missing attributes or carries garbage is logged and
    skipped; only a document that is not XML at all raises ListingError.
    """
    try:
        root = ET.fromstring(document)
    except ET.ParseError as e:
        raise ListingError(f"Malformed event manifest for {device_id}: {e}") from e

    events = []
    for element in root.iter():
        if _local_name(element.tag) != "Period":
            continue
        program_date_time = element.get("programDateTime")
        duration = element.get("duration")
        if program_date_time is None or duration is None:
            logger.warning(
                "Skipping Period without programDateTime/duration on %s: %s",
                device_id,
                dict(element.attrib),
            )
            continue
        try:
            events.append(event_from_period(device_id, program_date_time, duration))
        except (ValueError, OverflowError) as e:
            logger.warning("Skipping malformed event on %s: %s", device_id, e)
    return events


class EventSource:
    """Lists the downloadable events of a device within a time window."""

    def __init__(self, service: EventListingService, credentials: CredentialStore):
        self.service = service
        self.credentials = credentials

    async def list_events(
        self, device: Device, window_start: datetime, window_end: datetime
    ) -> list[CameraEvent]:
        """Return events whose start lies in [window_start, window_end), oldest first."""
        params = {
            "start_time": format_api_time(window_start),
            "end_time": format_api_time(window_end),
            "types": "4",
            "variant": "2",
        }
        token = await self.credentials.get_valid_token()
        try:
            document = await self.service.fetch_manifest(device.id, token, params)
        except (AuthError, ListingError):
            raise
        except Exception as e:
            if is_unauthorized(e):
                self.credentials.invalidate()
            raise ListingError(f"Event listing for {device.display_name} failed: {e}") from e

        try:
            parsed = parse_manifest(device.id, document)
        except ListingError:
            raise
        except Exception as e:
            raise ListingError(
                f"Unreadable event manifest for {device.display_name}: {e!r}"
            ) from e

        events = [
            event for event in parsed if window_start <= event.start_time < window_end
        ]
        events.sort(key=lambda event: event.start_time)
        return events
