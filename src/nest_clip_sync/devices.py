"""
Camera discovery via the Google Home graph.
"""

import asyncio
import logging
from collections.abc import Mapping
from collections.abc import Sequence
from datetime import datetime
from typing import Any
from typing import Protocol

from nest_clip_sync.auth import CredentialStore
from nest_clip_sync.models import AuthError
from nest_clip_sync.models import Device
from nest_clip_sync.models import DiscoveryError

logger = logging.getLogger(__name__)

CAMERA_STREAM_TRAIT = "action.devices.traits.CameraStream"
TARGET_MODEL_FAMILY = "Nest"


class DiscoveryService(Protocol):
    async def fetch_devices(self, token: str) -> Sequence[Mapping[str, Any]]: ...


def is_syncable(device: Device) -> bool:
    """A device is synced when it streams video and is Nest hardware."""
    return CAMERA_STREAM_TRAIT in device.capabilities and TARGET_MODEL_FAMILY in device.model


def device_from_record(record: Mapping[str, Any]) -> Device:
    """Build a Device from a raw discovery record.

    Raises DiscoveryError when the record is not shaped like a device.
    """
    if not isinstance(record, Mapping):
        raise DiscoveryError(f"Device record is not a mapping: {record!r}")
    try:
        device_id = record["id"]
        name = record.get("name") or ""
        traits = record.get("traits") or ()
        model = record.get("model") or ""
    except KeyError as e:
        raise DiscoveryError(f"Device record missing {e}") from None

    if not isinstance(device_id, str) or not isinstance(name, str) or not isinstance(model, str):
        raise DiscoveryError(f"Device record has wrong field types: {record!r}")
    if not isinstance(traits, (list, tuple, set, frozenset)) or not all(
        isinstance(t, str) for t in traits
    ):
        raise DiscoveryError(f"Device record has malformed traits: {record!r}")

    return Device(
        id=device_id,
        display_name=name or device_id,
        capabilities=frozenset(traits),
        model=model,
    )


class DeviceDirectory:
    """Resolves the current set of syncable cameras.

    Nothing is cached: the account owner may add or remove cameras at any
    time, so every call goes back to discovery.
    """

    def __init__(self, service: DiscoveryService, credentials: CredentialStore):
        self.service = service
        self.credentials = credentials

    async def list_devices(self) -> list[Device]:
        token = await self.credentials.get_valid_token()
        try:
            records = await self.service.fetch_devices(token)
        except (AuthError, DiscoveryError):
            raise
        except Exception as e:
            raise DiscoveryError(f"Device discovery failed: {e}") from e

        if not isinstance(records, Sequence) or isinstance(records, (str, bytes)):
            raise DiscoveryError(f"Discovery returned malformed data: {records!r}")

        devices: list[Device] = []
        seen: set[str] = set()
        for record in records:
            device = device_from_record(record)
            if not device.id or not is_syncable(device):
                logger.debug("Ignoring device %r (%s)", device.display_name, device.model)
                continue
            if device.id in seen:
                logger.debug("Ignoring duplicate device id %s", device.id)
                continue
            seen.add(device.id)
            devices.append(device)
        return devices


def records_from_homegraph(homegraph) -> list[dict[str, Any]]:
    """Flatten a GetHomeGraphResponse into plain discovery records."""
    records = []
    home = getattr(homegraph, "home", None)
    if home is None:
        return records
    for device in home.devices:
        records.append(
            {
                "id": device.device_info.agent_info.unique_id,
                "name": device.device_name,
                "traits": list(device.traits),
                "model": device.hardware.model,
            }
        )
    return records


class HomeGraphDiscovery:
    """DiscoveryService backed by glocaltokens' Home graph call.

    glocaltokens is synchronous (gRPC), so the call runs in a worker thread.
    A fresh client is built per call so its internal home graph cache never
    hides newly added cameras.
    """

    def __init__(self, username: str, master_token: str, android_id: str | None = None):
        self.username = username
        self.master_token = master_token
        self.android_id = android_id

    def _fetch_sync(self, token: str) -> list[dict[str, Any]]:
        from glocaltokens.client import GLocalAuthenticationTokens

        client = GLocalAuthenticationTokens(
            username=self.username,
            master_token=self.master_token,
            android_id=self.android_id,
        )
        # Reuse the token we already hold instead of minting another one.
        client.access_token = token
        client.access_token_date = datetime.now()

        homegraph = client.get_homegraph()
        if homegraph is None:
            raise DiscoveryError("Home graph request returned no data")
        return records_from_homegraph(homegraph)

    async def fetch_devices(self, token: str) -> list[dict[str, Any]]:
        return await asyncio.to_thread(self._fetch_sync, token)
