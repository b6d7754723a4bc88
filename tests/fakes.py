import asyncio
from datetime import datetime, timedelta, timezone

from osugit.errors import UpstreamError
from osugit.ingestion.base import BaseCatalog, ChangedRecord, FileRef, RankStatus

T0 = datetime(2024, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


def at(minutes: int) -> datetime:
    return T0 + timedelta(minutes=minutes)


def make_record(record_id, last_updated, file_ids=None, creator="peppy", user_id=2):
    file_ids = file_ids if file_ids is not None else [record_id * 10 + 1, record_id * 10 + 2]
    return ChangedRecord(
        id=record_id,
        title=f"Song {record_id}",
        artist="Artist",
        creator=creator,
        user_id=user_id,
        last_updated=last_updated,
        files=[
            FileRef(file_id=f, filename=f"Artist - Song {record_id} ({creator}) [Diff {f}].osu")
            for f in file_ids
        ],
    )


def osu_bytes(file_id: int) -> bytes:
    return f"osu file format v14\n\n[Metadata]\nBeatmapID:{file_id}\n".encode()


class FakeCatalog(BaseCatalog):
    """In-memory catalog: canned search results, generated file bodies, optional failures."""

    def __init__(self, records=None, failing_files=None, search_error=None, delay=0.0, file_delays=None):
        self.records = list(records or [])
        self.failing_files = set(failing_files or [])
        self.search_error = search_error
        self.delay = delay
        self.file_delays = dict(file_delays or {})
        self.search_calls = 0
        self.downloaded = []
        self.active = 0
        self.max_active = 0
        self.cancelled = []

    async def search(self, status=RankStatus.PENDING):
        self.search_calls += 1
        if self.search_error is not None:
            raise self.search_error
        return list(self.records)

    async def download_file(self, file_id):
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            await asyncio.sleep(self.file_delays.get(file_id, self.delay))
            if file_id in self.failing_files:
                raise UpstreamError(500, "internal error", f"/osu/{file_id}")
            data = osu_bytes(file_id)
            self.downloaded.append(file_id)
            for i in range(0, len(data), 16):
                yield data[i:i + 16]
                await asyncio.sleep(0)
        except asyncio.CancelledError:
            self.cancelled.append(file_id)
            raise
        finally:
            self.active -= 1
