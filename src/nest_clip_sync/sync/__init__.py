"""
ClipSynchronizer: thin orchestrator that wires the sync submodules together.
"""

import asyncio
import logging

import aiohttp

from nest_clip_sync.auth import HOMEGRAPH_SCOPE
from nest_clip_sync.auth import NEST_SCOPE
from nest_clip_sync.auth import CredentialStore
from nest_clip_sync.auth import GoogleAuthenticator
from nest_clip_sync.devices import DeviceDirectory
from nest_clip_sync.devices import HomeGraphDiscovery
from nest_clip_sync.events import EventSource
from nest_clip_sync.metadata import MetadataTagger
from nest_clip_sync.models import CycleConfig
from nest_clip_sync.models import Device
from nest_clip_sync.models import SyncStats
from nest_clip_sync.nest_client import NestApiClient
from nest_clip_sync.sync.cycle import SyncCycle
from nest_clip_sync.sync.download import Downloader
from nest_clip_sync.sync.paths import resolve_timezone
from nest_clip_sync.sync.prune import PruneCycle
from nest_clip_sync.sync.scheduler import Scheduler

_HTTP_TIMEOUT = aiohttp.ClientTimeout(total=None, connect=30, sock_read=120)


class ClipSynchronizer:
    """Main synchronization engine."""

    def __init__(self, config: CycleConfig):
        config.validate()
        self.config = config
        self.zone = resolve_timezone(config.timezone)
        self.logger = logging.getLogger(__name__)
        self.scheduler: Scheduler | None = None

    def _directory(self, authenticator: GoogleAuthenticator) -> DeviceDirectory:
        discovery = HomeGraphDiscovery(
            self.config.google_username,
            self.config.google_master_token,
            authenticator.android_id,
        )
        return DeviceDirectory(discovery, CredentialStore(authenticator, HOMEGRAPH_SCOPE))

    def build(self, session: aiohttp.ClientSession) -> Scheduler:
        """Assemble the cycles and scheduler on top of an open HTTP session."""
        cfg = self.config
        authenticator = GoogleAuthenticator(session, cfg.google_username, cfg.google_master_token)
        nest_credentials = CredentialStore(authenticator, NEST_SCOPE)
        api = NestApiClient(session)
        tagger = MetadataTagger() if cfg.embed_metadata else None

        sync_cycle = SyncCycle(
            credentials=nest_credentials,
            directory=self._directory(authenticator),
            source=EventSource(api, nest_credentials),
            downloader=Downloader(api, nest_credentials, tagger),
            output_root=cfg.output_root,
            semaphore=asyncio.Semaphore(cfg.concurrency),
            window_lookback=cfg.window_lookback,
            zone=self.zone,
        )
        prune_cycle = None if cfg.run_once else PruneCycle(cfg.output_root, cfg.retention)
        return Scheduler(
            sync_cycle,
            prune_cycle,
            check_interval=cfg.check_interval,
            prune_interval=cfg.prune_interval,
            run_once=cfg.run_once,
        )

    async def run(self) -> SyncStats | None:
        """Execute the synchronization process until stopped (or once)."""
        self.config.output_root.mkdir(parents=True, exist_ok=True)
        async with aiohttp.ClientSession(timeout=_HTTP_TIMEOUT) as session:
            self.scheduler = self.build(session)
            if not self.config.run_once:
                self.logger.info(
                    "Checking for events every %s, pruning every %s (retention: %s)",
                    self.config.check_interval,
                    self.config.prune_interval,
                    self.config.retention.describe(),
                )
            return await self.scheduler.run()

    def stop(self) -> None:
        if self.scheduler is not None:
            self.scheduler.stop()

    async def discover(self) -> list[Device]:
        """One-off discovery of the cameras that would be synced."""
        async with aiohttp.ClientSession(timeout=_HTTP_TIMEOUT) as session:
            authenticator = GoogleAuthenticator(
                session, self.config.google_username, self.config.google_master_token
            )
            return await self._directory(authenticator).list_devices()
