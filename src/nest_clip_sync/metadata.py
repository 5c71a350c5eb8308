"""
Optional post-download metadata embedding through exiftool.
"""

import asyncio
import logging
import shutil
from datetime import timezone
from pathlib import Path

from nest_clip_sync.models import CameraEvent
from nest_clip_sync.models import Device

logger = logging.getLogger(__name__)

EXIFTOOL = "exiftool"
_TIMEOUT_SECONDS = 60


def exiftool_available(executable: str = EXIFTOOL) -> bool:
    return shutil.which(executable) is not None


class MetadataTagger:
    """Writes creation time and camera name into a downloaded clip.

    This is a pass/fail step: a failure is logged and the clip stays as it
    was downloaded.
    """

    def __init__(self, executable: str = EXIFTOOL, timeout: float = _TIMEOUT_SECONDS):
        self.executable = executable
        self.timeout = timeout

    def build_command(self, path: Path, device: Device, event: CameraEvent) -> list[str]:
        stamp = event.start_time.astimezone(timezone.utc).strftime("%Y:%m:%d %H:%M:%S")
        return [
            self.executable,
            "-q",
            "-P",
            "-overwrite_original",
            "-api",
            "QuickTimeUTC",
            f"-CreateDate={stamp}",
            f"-MediaCreateDate={stamp}",
            f"-Comment={device.display_name}",
            str(path),
        ]

    async def tag(self, path: Path, device: Device, event: CameraEvent) -> bool:
        cmd = self.build_command(path, device, event)
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            logger.warning("Cannot run %s for %s: %s", self.executable, path, e)
            return False

        try:
            _, stderr = await asyncio.wait_for(proc.communicate(), self.timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            logger.warning("%s timed out on %s", self.executable, path)
            return False
        except asyncio.CancelledError:
            proc.kill()
            await proc.wait()
            raise

        if proc.returncode != 0:
            logger.warning(
                "%s failed on %s (exit %s): %s",
                self.executable,
                path,
                proc.returncode,
                stderr.decode(errors="replace").strip(),
            )
            return False
        return True
