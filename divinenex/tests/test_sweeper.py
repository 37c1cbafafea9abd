import asyncio
import time
import unittest

from divinenex.config import HOUR_MS, LifecycleConfig
from divinenex.db import InMemoryMetadataStore
from divinenex.lifecycle import PostLifecycleManager
from divinenex.locks import InMemorySweepLock
from divinenex.scheduler import PeriodicTask
from divinenex.storage import InMemoryBlobStore
from divinenex.sweeper import reconcile_once, sweep_once


class ReadOnlyOnceLock(InMemorySweepLock):
    """Fails the first acquire the way a Redis replica in read-only mode does."""

    def __init__(self):
        super().__init__()
        self.failures = 1

    def acquire(self, name, ttl_seconds):
        if self.failures:
            self.failures -= 1
            raise RuntimeError("READONLY You can't write against a read only replica.")
        return super().acquire(name, ttl_seconds)


class BrokenReleaseLock(InMemorySweepLock):
    def release(self, name):
        raise RuntimeError("connection reset")


class SlowLock(InMemorySweepLock):
    def acquire(self, name, ttl_seconds):
        time.sleep(0.5)
        return super().acquire(name, ttl_seconds)


class SweeperTests(unittest.TestCase):
    def setUp(self):
        self.now = 1_700_000_000_000
        self.metadata = InMemoryMetadataStore()
        self.manager = PostLifecycleManager(
            LifecycleConfig(ttl_hours=1),
            metadata=self.metadata,
            blobs=InMemoryBlobStore(),
            clock=lambda: self.now,
        )

    def tearDown(self):
        self.manager.close()

    def test_sweep_once_deletes_expired(self):
        self.manager.publish("a_b_com", "Hello", "World")
        self.now += 2 * HOUR_MS
        report = sweep_once(self.manager, InMemorySweepLock())
        self.assertEqual(report.deleted, 1)
        self.assertEqual(self.metadata.posts, {})

    def test_sweep_once_skips_when_locked(self):
        lock = InMemorySweepLock()
        lock.acquire("sweep", 60)
        self.assertIsNone(sweep_once(self.manager, lock))

    def test_lock_is_released_after_run(self):
        lock = InMemorySweepLock()
        sweep_once(self.manager, lock)
        self.assertTrue(lock.acquire("sweep", 60))

    def test_reconcile_once(self):
        self.assertEqual(reconcile_once(self.manager, InMemorySweepLock()), 0)


class PeriodicTaskTests(unittest.IsolatedAsyncioTestCase):
    async def test_runs_after_delay_and_repeats_until_stopped(self):
        calls = []
        task = PeriodicTask(
            "sweep", lambda: calls.append(1), interval_seconds=0.01, initial_delay_seconds=0.0
        )
        task.start()
        await asyncio.sleep(0.2)
        await task.stop()
        self.assertGreaterEqual(len(calls), 2)
        self.assertFalse(task.running)
        count = len(calls)
        await asyncio.sleep(0.05)
        self.assertEqual(len(calls), count)

    async def test_initial_delay_defers_first_run(self):
        calls = []
        task = PeriodicTask(
            "sweep", lambda: calls.append(1), interval_seconds=60, initial_delay_seconds=60
        )
        task.start()
        await asyncio.sleep(0.05)
        await task.stop()
        self.assertEqual(calls, [])

    async def test_failure_is_logged_and_loop_continues(self):
        calls = []

        def flaky():
            calls.append(1)
            raise RuntimeError("boom")

        task = PeriodicTask("sweep", flaky, interval_seconds=0.01)
        with self.assertLogs("divinenex.scheduler", level="ERROR"):
            task.start()
            await asyncio.sleep(0.1)
            await task.stop()
        self.assertGreaterEqual(len(calls), 2)

    async def test_run_skipped_while_lock_held(self):
        lock = InMemorySweepLock()
        lock.acquire("sweep", 60)
        task = PeriodicTask("sweep", lambda: "ran", interval_seconds=60, lock=lock)
        self.assertIsNone(await task.run_once())
        lock.release("sweep")
        self.assertEqual(await task.run_once(), "ran")
        self.assertEqual(task.runs, 1)

    async def test_lock_error_does_not_kill_the_loop(self):
        calls = []
        task = PeriodicTask(
            "sweep", lambda: calls.append(1), interval_seconds=0.01, lock=ReadOnlyOnceLock()
        )
        with self.assertLogs("divinenex.scheduler", level="ERROR"):
            task.start()
            await asyncio.sleep(0.2)
            self.assertTrue(task.running)
            await task.stop()
        self.assertGreaterEqual(len(calls), 1)

    async def test_release_error_is_logged(self):
        task = PeriodicTask(
            "sweep", lambda: "ran", interval_seconds=60, lock=BrokenReleaseLock()
        )
        with self.assertLogs("divinenex.scheduler", level="ERROR"):
            self.assertEqual(await task.run_once(), "ran")

    async def test_stop_does_not_raise_for_a_failed_task(self):
        task = PeriodicTask("sweep", lambda: None, interval_seconds=60)

        async def crash():
            raise RuntimeError("boom")

        task._task = asyncio.get_running_loop().create_task(crash())
        await asyncio.sleep(0)
        with self.assertLogs("divinenex.scheduler", level="ERROR"):
            await task.stop()
        self.assertFalse(task.running)

    async def test_slow_lock_does_not_block_the_event_loop(self):
        task = PeriodicTask(
            "sweep", lambda: None, interval_seconds=60, lock=SlowLock()
        )
        run = asyncio.get_running_loop().create_task(task.run_once())
        await asyncio.sleep(0)
        started = time.monotonic()
        await asyncio.sleep(0.01)
        lag = time.monotonic() - started
        await run
        self.assertLess(lag, 0.2)
        self.assertEqual(task.runs, 1)


if __name__ == "__main__":
    unittest.main()
