"""
Poller - Watermark-driven change detection for the osu! catalog.

Cycle:
    Idle -> Searching -> Filtering -> Fanning-out -> Advancing -> Idle

Watermark policy:
    - Records strictly older than the watermark are never ingested again.
    - Records exactly at the watermark are ingested unless the cycle that set the
      watermark already considered that same record id at that instant. An update
      landing in the same instant as the previous cycle's newest record is never
      skipped, and the newest record is not re-committed every cycle.
    - After fan-out the watermark moves to the newest last_updated seen in the
      cycle, failed records included. A record whose ingestion failed is
      therefore not retried until it is updated upstream again. This trades
      "never re-process forever" for "a failed record may be skipped"; do not
      change it without revisiting that trade-off.
    - A failed search leaves the watermark untouched; the next cycle after the
      fixed delay is the only retry.
"""

import asyncio
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Set

from pydantic import BaseModel, Field

from osugit.errors import AuthError, IngestError, UpstreamError
from osugit.ingestion.base import BaseCatalog, ChangedRecord, RankStatus
from osugit.utils.log import get_logger
from osugit.workers.ingest_worker import IngestionWorker

log = get_logger(__name__)


class CycleReport(BaseModel):
    """Outcome of one poll cycle."""

    started_at: datetime
    watermark_before: datetime
    watermark_after: datetime
    considered: List[int] = Field(default_factory=list)
    skipped: List[int] = Field(default_factory=list)
    succeeded: Dict[int, str] = Field(default_factory=dict)
    failed: Dict[int, str] = Field(default_factory=dict)
    aborted: Optional[str] = None


class Poller:
    """
    Owns the watermark and drives one IngestionWorker per changed record.
    """

    def __init__(
        self,
        catalog: BaseCatalog,
        worker: IngestionWorker,
        poll_interval: float = 30.0,
        rank_status: RankStatus = RankStatus.PENDING,
        initial_watermark: Optional[datetime] = None,
        progress_callback: Optional[Callable] = None,
    ):
        """
        Args:
            catalog: Source of changed records
            worker: Ingests a single record
            poll_interval: Seconds to sleep after each cycle (not reduced by cycle duration)
            rank_status: Search filter
            initial_watermark: Starting boundary. Defaults to now, so records updated
                               before start-up are not ingested.
            progress_callback: Optional callback for progress updates.
                               Signature: (status: str, message: str, **counts)
        """
        self.catalog = catalog
        self.worker = worker
        self.poll_interval = poll_interval
        self.rank_status = rank_status
        self.watermark = initial_watermark or datetime.now(timezone.utc)
        # Record ids already considered whose last_updated equals the watermark
        self.seen_at_watermark: Set[int] = set()
        self.progress_callback = progress_callback or (lambda *args, **kwargs: None)
        self.cycles = 0

    @staticmethod
    def select(
        records: List[ChangedRecord],
        watermark: datetime,
        seen_at_watermark: Optional[Set[int]] = None,
    ):
        """
        Splits a search result into records to ingest and ids to skip.

        Duplicate ids collapse to their newest entry so that a record never has two
        writers in one cycle. The records to ingest come back in ascending
        last_updated order.
        """
        seen_at_watermark = seen_at_watermark or set()
        latest: Dict[int, ChangedRecord] = {}
        for record in records:
            current = latest.get(record.id)
            if current is None or record.last_updated > current.last_updated:
                latest[record.id] = record

        qualifying = []
        skipped = []
        for record in latest.values():
            if record.last_updated < watermark:
                skipped.append(record.id)
            elif record.last_updated == watermark and record.id in seen_at_watermark:
                skipped.append(record.id)
            else:
                qualifying.append(record)

        qualifying.sort(key=lambda r: (r.last_updated, r.id))
        return qualifying, sorted(skipped)

    async def run_cycle(self) -> CycleReport:
        """
        Runs one full cycle and returns its report. Never raises for upstream,
        credential or per-record failures.
        """
        self.cycles += 1
        started_at = datetime.now(timezone.utc)
        before = self.watermark
        report = CycleReport(started_at=started_at, watermark_before=before, watermark_after=before)

        # Searching
        self.progress_callback("searching", f"Searching {self.rank_status.value} beatmapsets...")
        try:
            records = await self.catalog.search(self.rank_status)
        except (UpstreamError, AuthError) as e:
            log.error("cycle_search_failed", cycle=self.cycles, error=str(e))
            self.progress_callback("error", f"Search failed: {e}")
            report.aborted = str(e)
            return report

        # Filtering
        qualifying, skipped = self.select(records, before, self.seen_at_watermark)
        report.considered = [r.id for r in qualifying]
        report.skipped = skipped
        log.info(
            "cycle_filtered",
            cycle=self.cycles,
            returned=len(records),
            qualifying=len(qualifying),
            watermark=before.isoformat(),
        )

        # Fanning-out
        if qualifying:
            self.progress_callback(
                "syncing",
                f"Ingesting {len(qualifying)} beatmapsets...",
                total_documents=len(qualifying),
            )
        results = await asyncio.gather(
            *(self.worker.ingest(record) for record in qualifying),
            return_exceptions=True,
        )
        for record, result in zip(qualifying, results):
            if isinstance(result, IngestError):
                report.failed[record.id] = str(result.cause)
            elif isinstance(result, Exception):
                log.error("ingest_crashed", record_id=record.id, error=repr(result))
                report.failed[record.id] = repr(result)
            elif isinstance(result, BaseException):
                raise result
            else:
                report.succeeded[record.id] = result

        # Advancing: failed records count toward the new watermark too
        newest = max((r.last_updated for r in qualifying), default=before)
        at_newest = {r.id for r in qualifying if r.last_updated == newest}
        if newest > before:
            self.seen_at_watermark = at_newest
        else:
            self.seen_at_watermark |= at_newest
        self.watermark = max(before, newest)
        report.watermark_after = self.watermark

        log.info(
            "cycle_complete",
            cycle=self.cycles,
            succeeded=len(report.succeeded),
            failed=len(report.failed),
            watermark=self.watermark.isoformat(),
        )
        self.progress_callback(
            "complete",
            f"Cycle {self.cycles}: {len(report.succeeded)} committed, {len(report.failed)} failed",
            documents_processed=len(report.succeeded),
        )
        return report

    async def run_forever(self):
        """
        Cycles back-to-back with a fixed delay in between. Returns only when cancelled;
        a crashed cycle is logged and the next one runs after the usual delay.
        """
        log.info("poller_started", watermark=self.watermark.isoformat(), interval=self.poll_interval)
        while True:
            try:
                await self.run_cycle()
            except Exception:
                log.exception("cycle_crashed", cycle=self.cycles, watermark=self.watermark.isoformat())
            await asyncio.sleep(self.poll_interval)
