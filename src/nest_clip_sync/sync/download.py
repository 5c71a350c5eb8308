"""
Clip downloader: temp file, fsync, atomic rename, then stamp the event time.
"""

import asyncio
import logging
import os
from collections.abc import AsyncIterator
from collections.abc import Mapping
from contextlib import aclosing
from pathlib import Path
from typing import Protocol

import aiofiles
import aiohttp

from nest_clip_sync.auth import CredentialStore
from nest_clip_sync.events import clip_params
from nest_clip_sync.metadata import MetadataTagger
from nest_clip_sync.models import AuthError
from nest_clip_sync.models import DownloadError
from nest_clip_sync.models import DownloadOutcome
from nest_clip_sync.models import DownloadResult
from nest_clip_sync.models import DownloadTask
from nest_clip_sync.nest_client import is_unauthorized
from nest_clip_sync.sync.paths import epoch_ns
from nest_clip_sync.sync.paths import temp_path

logger = logging.getLogger(__name__)

_FAILURES = (DownloadError, AuthError, aiohttp.ClientError, asyncio.TimeoutError, OSError)


class MediaFetchService(Protocol):
    def iter_clip(
        self, device_id: str, token: str, params: Mapping[str, str]
    ) -> AsyncIterator[bytes]: ...


def already_synced(path: Path) -> bool:
    """A non-empty file at the destination means the clip is already here.

    Zero-byte leftovers are treated as missing and fetched again.
    """
    try:
        return path.stat().st_size > 0
    except FileNotFoundError:
        return False


def _discard(path: Path) -> None:
    try:
        path.unlink()
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning("Could not remove temp file %s: %s", path, e)


class Downloader:
    """Fetches one clip per task into its final path.

    Nothing ever appears at the destination unless the whole payload was
    written and flushed; partial downloads only ever exist under the
    ``.part`` name and are removed on failure or cancellation.
    """

    def __init__(
        self,
        service: MediaFetchService,
        credentials: CredentialStore,
        tagger: MetadataTagger | None = None,
    ):
        self.service = service
        self.credentials = credentials
        self.tagger = tagger

    async def download(self, task: DownloadTask) -> DownloadResult:
        destination = task.destination
        event = task.event

        if already_synced(destination):
            logger.debug("Skipping %s, %s already exists", event.event_id, destination)
            return DownloadResult(task, DownloadOutcome.SKIPPED)

        logger.info("Downloading %s to %s", event.event_id, destination)
        partial = temp_path(destination)
        try:
            size = await self._fetch_to(partial, task)
            os.replace(partial, destination)
        except asyncio.CancelledError:
            _discard(partial)
            raise
        except _FAILURES as e:
            _discard(partial)
            if is_unauthorized(e):
                self.credentials.invalidate()
            logger.error("Download of %s failed: %s", event.event_id, e)
            return DownloadResult(task, DownloadOutcome.FAILED, str(e))

        stamp = epoch_ns(event.start_time)
        try:
            os.utime(destination, ns=(stamp, stamp))
        except OSError as e:
            # Downloaded clips must carry the event time as their mtime.
            logger.error("Could not set file time on %s: %s", destination, e)
            _discard(destination)
            return DownloadResult(task, DownloadOutcome.FAILED, f"set file time: {e}")

        if self.tagger is not None:
            await self.tagger.tag(destination, task.device, event)

        logger.debug("Stored %s (%d bytes)", destination, size)
        return DownloadResult(task, DownloadOutcome.DOWNLOADED)

    async def _fetch_to(self, partial: Path, task: DownloadTask) -> int:
        token = await self.credentials.get_valid_token()
        partial.parent.mkdir(parents=True, exist_ok=True)
        params = clip_params(task.event.download_ref)

        size = 0
        async with aiofiles.open(partial, "wb") as f:
            chunks = self.service.iter_clip(task.event.device_id, token, params)
            async with aclosing(chunks):
                async for chunk in chunks:
                    await f.write(chunk)
                    size += len(chunk)
            if size == 0:
                raise DownloadError(f"empty payload for {task.event.event_id}")
            await f.flush()
            os.fsync(f.fileno())
        return size
