"""
Ingestion Worker - Turns one changed beatmapset into one commit.

Flow per record:
    1. Open (or create) the record's history
    2. Download every .osu file concurrently into a private staging directory
    3. If any download fails, cancel the others and discard the staging directory:
       nothing is committed
    4. Otherwise move the files into the working directory and commit them,
       authored by the mapper at the record's last-updated time
"""

import asyncio
import os
import shutil
import tempfile
from pathlib import Path
from typing import Callable, Optional, Tuple

from osugit.core.version_store import SYSTEM_EMAIL, SYSTEM_NAME, HistoryHandle, VersionStore
from osugit.errors import AuthError, CommitError, IngestError, UpstreamError
from osugit.ingestion.base import BaseCatalog, ChangedRecord, FileRef
from osugit.utils.log import get_logger
from osugit.utils.paths import staging_path

log = get_logger(__name__)


class IngestionWorker:
    """
    Materializes a record's files via the catalog and commits them via the version store.

    One worker instance serves a whole poll cycle: its semaphore bounds the total
    number of downloads in flight across every record, not per record.
    """

    def __init__(
        self,
        catalog: BaseCatalog,
        store: VersionStore,
        max_concurrent_downloads: int = 16,
        progress_callback: Optional[Callable] = None,
    ):
        self.catalog = catalog
        self.store = store
        self.progress_callback = progress_callback or (lambda *args, **kwargs: None)
        self._downloads = asyncio.Semaphore(max(1, max_concurrent_downloads))
        self._staging_root = staging_path(store.root)

    @staticmethod
    def author_for(record: ChangedRecord) -> Tuple[str, str]:
        """Commit identity for a record: the mapper, or the system identity if unnamed."""
        creator = (record.creator or "").strip()
        if not creator:
            return SYSTEM_NAME, SYSTEM_EMAIL
        return creator, f"{record.user_id}@users.osu.ppy.sh"

    @staticmethod
    def message_for(record: ChangedRecord) -> str:
        header = f"{record.artist} - {record.title} ({record.creator})".strip()
        return (
            f"{header}\n\n"
            f"beatmapset {record.id}, last updated {record.last_updated.isoformat()}\n"
        )

    async def _download(self, file: FileRef, destination: Path):
        async with self._downloads:
            fh = await asyncio.to_thread(open, destination, "wb")
            try:
                async for chunk in self.catalog.download_file(file.file_id):
                    await asyncio.to_thread(fh.write, chunk)
            finally:
                await asyncio.to_thread(fh.close)
        log.debug("file_downloaded", file_id=file.file_id, filename=file.filename)

    async def _download_all(self, record: ChangedRecord, staging: Path):
        """Downloads every file of a record; the first failure cancels the rest."""
        tasks = [
            asyncio.create_task(self._download(f, staging / f.filename))
            for f in record.files
        ]
        if not tasks:
            return
        try:
            done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_EXCEPTION)
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

        for task in done:
            if not task.cancelled() and task.exception() is not None:
                raise task.exception()

    def _publish(self, staging: Path, handle: HistoryHandle, record: ChangedRecord):
        workdir = self.store.working_directory(handle)
        for file in record.files:
            os.replace(staging / file.filename, workdir / file.filename)

    async def ingest(self, record: ChangedRecord) -> str:
        """
        Ingests one record, all-or-nothing.

        Returns:
            Hex id of the new commit.

        Raises:
            IngestError: any download, filesystem or commit failure for this record
        """
        log.info("ingest_start", record_id=record.id, files=len(record.files))
        try:
            handle = await asyncio.to_thread(self.store.open_or_init, record.id)

            self._staging_root.mkdir(parents=True, exist_ok=True)
            staging = Path(tempfile.mkdtemp(prefix=f"{record.id}-", dir=self._staging_root))
            try:
                await self._download_all(record, staging)
                await asyncio.to_thread(self._publish, staging, handle, record)
            finally:
                shutil.rmtree(staging, ignore_errors=True)

            author_name, author_email = self.author_for(record)
            commit_id = await asyncio.to_thread(
                self.store.commit,
                handle,
                author_name,
                author_email,
                record.last_updated,
                self.message_for(record),
            )
        except (AuthError, UpstreamError, CommitError, OSError) as e:
            log.warning("ingest_failed", record_id=record.id, error=str(e))
            raise IngestError(record.id, e) from e

        self.progress_callback("committed", f"beatmapset {record.id} -> {commit_id[:10]}")
        return commit_id
