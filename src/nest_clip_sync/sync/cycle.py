"""
One sync pass: credentials, discovery, per-device listing, bounded downloads.
"""

import asyncio
import logging
from collections.abc import Callable
from datetime import datetime
from datetime import timedelta
from datetime import tzinfo
from pathlib import Path

from nest_clip_sync.auth import CredentialStore
from nest_clip_sync.auth import utcnow
from nest_clip_sync.devices import DeviceDirectory
from nest_clip_sync.events import EventSource
from nest_clip_sync.models import AuthError
from nest_clip_sync.models import CameraEvent
from nest_clip_sync.models import Device
from nest_clip_sync.models import DiscoveryError
from nest_clip_sync.models import DownloadOutcome
from nest_clip_sync.models import DownloadResult
from nest_clip_sync.models import DownloadTask
from nest_clip_sync.models import ListingError
from nest_clip_sync.models import SyncStats
from nest_clip_sync.sync.download import Downloader
from nest_clip_sync.sync.paths import clip_path
from nest_clip_sync.sync.paths import device_dirnames


class SyncCycle:
    """Runs one best-effort pass over every camera's recent events.

    A credential or discovery failure aborts the pass, since nothing can
    be fetched without devices.  A listing failure only costs that device,
    and a download failure only costs that clip.
    """

    def __init__(
        self,
        credentials: CredentialStore,
        directory: DeviceDirectory,
        source: EventSource,
        downloader: Downloader,
        output_root: Path,
        semaphore: asyncio.Semaphore,
        window_lookback: timedelta = timedelta(hours=12),
        zone: tzinfo | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.credentials = credentials
        self.directory = directory
        self.source = source
        self.downloader = downloader
        self.output_root = output_root
        self.semaphore = semaphore
        self.window_lookback = window_lookback
        self.zone = zone
        self._clock = clock
        self.logger = logging.getLogger(__name__)

    async def run(self) -> SyncStats:
        stats = SyncStats()
        self.logger.info("Checking for new events")

        try:
            await self.credentials.get_valid_token()
            devices = await self.directory.list_devices()
        except (AuthError, DiscoveryError) as e:
            stats.cycle_failed = True
            stats.error = str(e)
            self.logger.error("Sync cycle aborted: %s", e)
            self._log_summary(stats)
            return stats

        stats.devices = len(devices)
        self.logger.info("Found %d camera device(s)", len(devices))

        window_end = self._clock()
        window_start = window_end - self.window_lookback
        listings = await asyncio.gather(
            *(self._list_device(device, window_start, window_end) for device in devices)
        )

        dirnames = device_dirnames(devices)
        tasks: list[DownloadTask] = []
        seen: set[Path] = set()
        for device, events in zip(devices, listings):
            if events is None:
                stats.device_errors += 1
                continue
            stats.events += len(events)
            for event in events:
                destination = clip_path(
                    self.output_root, device, event, self.zone, dirnames[device.id]
                )
                if destination in seen:
                    self.logger.debug("Duplicate event %s in listing", event.event_id)
                    stats.skipped += 1
                    continue
                seen.add(destination)
                tasks.append(DownloadTask(event=event, device=device, destination=destination))

        results = await asyncio.gather(*(self._bounded(task) for task in tasks))
        for result in results:
            stats.record(result)

        self._log_summary(stats)
        return stats

    async def _list_device(
        self, device: Device, window_start: datetime, window_end: datetime
    ) -> list[CameraEvent] | None:
        try:
            events = await self.source.list_events(device, window_start, window_end)
        except (ListingError, AuthError) as e:
            self.logger.error("Skipping %s this cycle: %s", device.display_name, e)
            return None
        except asyncio.CancelledError:
            raise
        except Exception:
            self.logger.exception("Unexpected error listing %s", device.display_name)
            return None
        self.logger.info("Received %d event(s) from %s", len(events), device.display_name)
        return events

    async def _bounded(self, task: DownloadTask) -> DownloadResult:
        async with self.semaphore:
            try:
                return await self.downloader.download(task)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.logger.exception("Unexpected error downloading %s", task.event.event_id)
                return DownloadResult(task, DownloadOutcome.FAILED, repr(e))

    def _log_summary(self, stats: SyncStats) -> None:
        self.logger.info(
            "Sync %s: discovered=%d listed=%d downloaded=%d skipped=%d failed=%d",
            "failed" if stats.cycle_failed else "complete",
            stats.devices,
            stats.events,
            stats.downloaded,
            stats.skipped,
            stats.failed,
        )
