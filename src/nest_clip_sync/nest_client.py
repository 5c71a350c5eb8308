"""
Nest camera frontend HTTP wrapper.
"""

from collections.abc import AsyncIterator
from collections.abc import Mapping

import aiohttp

_BASE = "https://nest-camera-frontend.googleapis.com"
EVENTS_URI = _BASE + "/dashmanifest/namespace/nest-phoenix-prod/device/{device_id}"
DOWNLOAD_VIDEO_URI = _BASE + "/mp4clip/namespace/nest-phoenix-prod/device/{device_id}"

CHUNK_SIZE = 64 * 1024


def is_unauthorized(e: BaseException) -> bool:
    """Return True when the server rejected our bearer token."""
    return isinstance(e, aiohttp.ClientResponseError) and e.status in (401, 403)


class NestApiClient:
    """Authenticated GETs against the camera frontend.

    Tokens are passed per call; this class holds no credential state.
    Non-2xx responses raise aiohttp.ClientResponseError.
    """

    def __init__(self, session: aiohttp.ClientSession):
        self.session = session

    @staticmethod
    def _headers(token: str) -> dict[str, str]:
        return {"Authorization": f"Bearer {token}"}

    async def fetch_manifest(
        self, device_id: str, token: str, params: Mapping[str, str]
    ) -> bytes:
        """Return the raw DASH manifest listing events for a device."""
        url = EVENTS_URI.format(device_id=device_id)
        async with self.session.get(url, params=params, headers=self._headers(token)) as resp:
            resp.raise_for_status()
            return await resp.read()

    async def iter_clip(
        self, device_id: str, token: str, params: Mapping[str, str]
    ) -> AsyncIterator[bytes]:
        """Stream an MP4 clip in chunks."""
        url = DOWNLOAD_VIDEO_URI.format(device_id=device_id)
        async with self.session.get(url, params=params, headers=self._headers(token)) as resp:
            resp.raise_for_status()
            async for chunk in resp.content.iter_chunked(CHUNK_SIZE):
                yield chunk
