import asyncio
import shutil
import tempfile
import unittest
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

from fakes import FakeCatalog, T0, at, make_record

from osugit.core.version_store import VersionStore
from osugit.errors import AuthError, UpstreamError
from osugit.workers.ingest_worker import IngestionWorker
from osugit.workers.poller import Poller


class PollerTestCase(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.test_dir = tempfile.mkdtemp()
        self.store = VersionStore(Path(self.test_dir) / "repos")

    def tearDown(self):
        shutil.rmtree(self.test_dir)

    def _poller(self, catalog, watermark=T0, **kwargs):
        worker = IngestionWorker(catalog, self.store, max_concurrent_downloads=4)
        return Poller(catalog, worker, poll_interval=0.01, initial_watermark=watermark, **kwargs)

    def _commits(self, record_id):
        if record_id not in self.store.record_ids():
            return 0
        # Root commit excluded
        return len(self.store.log(self.store.open_or_init(record_id))) - 1


class TestPollCycle(PollerTestCase):
    async def test_two_fresh_records_are_committed_and_watermark_advances(self):
        a = make_record(1, at(1))
        b = make_record(2, at(2))
        poller = self._poller(FakeCatalog([b, a]))

        report = await poller.run_cycle()

        self.assertEqual(poller.watermark, at(2))
        self.assertEqual(report.watermark_after, at(2))
        self.assertEqual(report.considered, [1, 2])
        self.assertEqual(set(report.succeeded), {1, 2})
        self.assertEqual(self._commits(1), 1)
        self.assertEqual(self._commits(2), 1)

    async def test_failed_record_still_advances_watermark(self):
        c = make_record(3, at(3), file_ids=[31, 32])
        poller = self._poller(FakeCatalog([c], failing_files={32}))

        report = await poller.run_cycle()

        self.assertEqual(poller.watermark, at(3))
        self.assertIn(3, report.failed)
        self.assertEqual(report.succeeded, {})
        self.assertEqual(self._commits(3), 0)

    async def test_failed_record_is_not_retried_when_unchanged(self):
        c = make_record(3, at(3), file_ids=[31, 32])
        catalog = FakeCatalog([c], failing_files={32})
        poller = self._poller(catalog)
        await poller.run_cycle()

        catalog.failing_files.clear()
        report = await poller.run_cycle()

        self.assertEqual(report.considered, [])
        self.assertEqual(report.skipped, [3])
        self.assertEqual(self._commits(3), 0)

    async def test_failed_record_is_retried_once_updated_upstream(self):
        catalog = FakeCatalog([make_record(3, at(3), file_ids=[31, 32])], failing_files={32})
        poller = self._poller(catalog)
        await poller.run_cycle()

        catalog.failing_files.clear()
        catalog.records = [make_record(3, at(4), file_ids=[31, 32])]
        report = await poller.run_cycle()

        self.assertEqual(report.succeeded.keys(), {3})
        self.assertEqual(self._commits(3), 1)

    async def test_sibling_succeeds_when_one_record_fails(self):
        good = make_record(1, at(1), file_ids=[11, 12])
        bad = make_record(2, at(2), file_ids=[21, 22])
        poller = self._poller(FakeCatalog([good, bad], failing_files={22}))

        report = await poller.run_cycle()

        self.assertEqual(set(report.succeeded), {1})
        self.assertEqual(set(report.failed), {2})
        self.assertEqual(self._commits(1), 1)
        self.assertEqual(self._commits(2), 0)
        self.assertEqual(poller.watermark, at(2))

    async def test_records_older_than_watermark_are_never_ingested(self):
        old = make_record(1, at(-5))
        catalog = FakeCatalog([old])
        poller = self._poller(catalog)

        for _ in range(3):
            report = await poller.run_cycle()
            self.assertEqual(report.skipped, [1])

        self.assertEqual(self._commits(1), 0)
        self.assertEqual(catalog.downloaded, [])
        self.assertEqual(poller.watermark, T0)

    async def test_record_at_watermark_is_ingested_once(self):
        a = make_record(1, T0)
        catalog = FakeCatalog([a])
        poller = self._poller(catalog)

        first = await poller.run_cycle()
        second = await poller.run_cycle()

        self.assertEqual(first.considered, [1])
        self.assertEqual(second.considered, [])
        self.assertEqual(self._commits(1), 1)

    async def test_new_record_sharing_watermark_instant_is_not_skipped(self):
        catalog = FakeCatalog([make_record(1, at(5))])
        poller = self._poller(catalog)
        await poller.run_cycle()

        catalog.records = [make_record(1, at(5)), make_record(2, at(5))]
        report = await poller.run_cycle()

        self.assertEqual(report.considered, [2])
        self.assertEqual(self._commits(1), 1)
        self.assertEqual(self._commits(2), 1)

    async def test_watermark_is_monotonic(self):
        catalog = FakeCatalog()
        poller = self._poller(catalog)
        batches = [
            [make_record(1, at(3))],
            [make_record(2, at(1))],
            [],
            [make_record(3, at(10)), make_record(4, at(-20))],
            [make_record(5, at(7))],
        ]

        for batch in batches:
            catalog.records = batch
            before = poller.watermark
            report = await poller.run_cycle()
            self.assertGreaterEqual(poller.watermark, before)
            self.assertEqual(report.watermark_before, before)

        self.assertEqual(poller.watermark, at(10))

    async def test_duplicate_ids_in_one_response_get_one_writer(self):
        older = make_record(1, at(1))
        newer = make_record(1, at(2))
        catalog = FakeCatalog([older, newer])
        poller = self._poller(catalog)

        report = await poller.run_cycle()

        self.assertEqual(report.considered, [1])
        self.assertEqual(self._commits(1), 1)
        latest = self.store.log(self.store.open_or_init(1))[0]
        self.assertEqual(latest.authored_at, at(2))


class TestCycleFailures(PollerTestCase):
    async def test_search_failure_aborts_cycle_and_keeps_watermark(self):
        catalog = FakeCatalog([make_record(1, at(1))], search_error=UpstreamError(502, "bad gateway"))
        poller = self._poller(catalog)

        report = await poller.run_cycle()

        self.assertIsNotNone(report.aborted)
        self.assertEqual(poller.watermark, T0)
        self.assertEqual(catalog.downloaded, [])

    async def test_auth_failure_aborts_cycle(self):
        catalog = FakeCatalog(search_error=AuthError("token endpoint down"))
        poller = self._poller(catalog)

        report = await poller.run_cycle()

        self.assertIn("token endpoint down", report.aborted)
        self.assertEqual(poller.watermark, T0)

    async def test_next_cycle_retries_after_search_failure(self):
        catalog = FakeCatalog([make_record(1, at(1))], search_error=UpstreamError(None, "timeout"))
        poller = self._poller(catalog)
        await poller.run_cycle()

        catalog.search_error = None
        report = await poller.run_cycle()

        self.assertEqual(set(report.succeeded), {1})
        self.assertEqual(poller.watermark, at(1))

    async def test_unexpected_worker_exception_is_isolated(self):
        catalog = FakeCatalog([make_record(1, at(1)), make_record(2, at(2))])
        worker = MagicMock()

        async def ingest(record):
            if record.id == 2:
                raise RuntimeError("disk on fire")
            return "abc123"

        worker.ingest = AsyncMock(side_effect=ingest)
        poller = Poller(catalog, worker, initial_watermark=T0)

        report = await poller.run_cycle()

        self.assertEqual(report.succeeded, {1: "abc123"})
        self.assertIn("disk on fire", report.failed[2])
        self.assertEqual(poller.watermark, at(2))

    async def test_progress_callback_sees_phases(self):
        callback = MagicMock()
        poller = self._poller(FakeCatalog([make_record(1, at(1))]), progress_callback=callback)

        await poller.run_cycle()

        statuses = [c.args[0] for c in callback.call_args_list]
        self.assertEqual(statuses, ["searching", "syncing", "complete"])


class TestRunForever(PollerTestCase):
    async def test_loop_keeps_cycling_until_cancelled(self):
        catalog = FakeCatalog(search_error=UpstreamError(500, "down"))
        poller = self._poller(catalog)

        task = asyncio.create_task(poller.run_forever())
        while catalog.search_calls < 3:
            await asyncio.sleep(0.01)
        task.cancel()
        with self.assertRaises(asyncio.CancelledError):
            await task

        self.assertGreaterEqual(poller.cycles, 3)
        self.assertEqual(poller.watermark, T0)

    async def test_loop_survives_unexpected_cycle_error(self):
        catalog = FakeCatalog([make_record(1, at(1))], search_error=RuntimeError("unexpected"))
        poller = self._poller(catalog)

        task = asyncio.create_task(poller.run_forever())
        while catalog.search_calls < 1:
            await asyncio.sleep(0.01)
        catalog.search_error = None
        while catalog.search_calls < 3 and not task.done():
            await asyncio.sleep(0.01)

        self.assertFalse(task.done())
        task.cancel()
        with self.assertRaises(asyncio.CancelledError):
            await task

        self.assertEqual(poller.watermark, at(1))
        self.assertEqual(self._commits(1), 1)


if __name__ == '__main__':
    unittest.main()
