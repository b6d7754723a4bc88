"""
Engine - wires settings into the HTTP client, credential cache, catalog,
version store, ingestion worker and poller, and owns the poll task.

The poll loop runs as an explicit asyncio task: `start()` creates it and
`stop()` cancels and joins it, then closes the shared HTTP client if the
engine created it.
"""

import asyncio
from typing import Callable, Optional

import httpx

from osugit.config import Settings
from osugit.core.version_store import VersionStore
from osugit.ingestion.credentials import CredentialCache
from osugit.ingestion.osu import OsuCatalogClient
from osugit.utils.log import get_logger
from osugit.workers.ingest_worker import IngestionWorker
from osugit.workers.poller import CycleReport, Poller

log = get_logger(__name__)


class Engine:
    def __init__(
        self,
        settings: Settings,
        progress_callback: Optional[Callable] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.settings = settings
        # An injected client belongs to the caller and is left open on stop()
        self._owns_http_client = http_client is None
        self.http_client = http_client or httpx.AsyncClient(
            timeout=httpx.Timeout(settings.request_timeout),
            headers={"User-Agent": "osugit"},
        )
        self.credentials = CredentialCache(
            self.http_client,
            settings.token_endpoint,
            settings.client_id,
            settings.client_secret,
            skew_seconds=settings.credential_skew_seconds,
        )
        self.catalog = OsuCatalogClient(
            self.http_client,
            self.credentials,
            base_url=settings.api_base_url,
            download_url=settings.download_url,
        )
        self.store = VersionStore(settings.storage_root_path)
        self.worker = IngestionWorker(
            self.catalog,
            self.store,
            max_concurrent_downloads=settings.max_concurrent_downloads,
            progress_callback=progress_callback,
        )
        self.poller = Poller(
            self.catalog,
            self.worker,
            poll_interval=settings.poll_interval,
            rank_status=settings.rank_status,
            initial_watermark=settings.initial_watermark,
            progress_callback=progress_callback,
        )
        self._task: Optional[asyncio.Task] = None

    def start(self) -> asyncio.Task:
        """Spawns the poll loop. Must be called from a running event loop."""
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.poller.run_forever(), name="osugit-poller")
        return self._task

    async def run_once(self) -> CycleReport:
        return await self.poller.run_cycle()

    async def stop(self):
        """Cancels the poll loop, waits for it to unwind and releases an owned HTTP client."""
        if self._task is not None and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
        if self._owns_http_client:
            await self.http_client.aclose()
        log.info("engine_stopped", watermark=self.poller.watermark.isoformat())

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        await self.stop()
