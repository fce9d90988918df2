"""Tests for the stage worker pool."""

import asyncio
import threading
import time

import pytest

from targum.jobs import ListSource, OcrJobHandler, OcrJobQueue, WorkerPool, run_pool
from targum.store import JobStatus


class StaticThrottle:
    def __init__(self, limit):
        self.limit = limit

    def limit_for(self, stage):
        return self.limit


class ConcurrencyRecorder:
    """Handler that records the peak number of concurrent calls."""

    def __init__(self, delay=0.02):
        self.delay = delay
        self.active = 0
        self.peak = 0
        self.seen = []
        self._lock = threading.Lock()

    def __call__(self, item):
        with self._lock:
            self.active += 1
            self.peak = max(self.peak, self.active)
            self.seen.append(item)
        time.sleep(self.delay)
        with self._lock:
            self.active -= 1
        return True


class TestWorkerPool:
    @pytest.mark.asyncio
    async def test_drains_source(self):
        recorder = ConcurrencyRecorder()
        stats = await run_pool("remap", ListSource(range(10)), recorder, max_workers=3)
        assert stats.completed == 10
        assert stats.failed == 0
        assert sorted(recorder.seen) == list(range(10))

    @pytest.mark.asyncio
    async def test_throttle_caps_concurrency(self):
        recorder = ConcurrencyRecorder()
        pool = WorkerPool(
            "ocr", ListSource(range(6)), recorder, max_workers=4, throttle=StaticThrottle(1)
        )
        assert pool.current_limit() == 1
        stats = await pool.run()
        assert stats.completed == 6
        assert recorder.peak == 1

    @pytest.mark.asyncio
    async def test_handler_errors_are_isolated(self):
        def handler(item):
            if item == 2:
                raise ValueError("bad item")
            return item != 4

        source = ListSource(range(6))
        stats = await run_pool("taam_align", source, handler, max_workers=2)
        assert stats.completed == 4
        assert stats.failed == 2
        assert stats.errors == ["bad item"]
        assert source.failures == [(2, "bad item")]
        assert stats.processed == 6

    @pytest.mark.asyncio
    async def test_stop_ends_polling_pool(self):
        pool = WorkerPool(
            "ocr",
            ListSource([]),
            lambda item: True,
            max_workers=2,
            stop_when_idle=False,
            poll_interval=0.01,
        )
        pool.start()
        await asyncio.sleep(0.05)
        assert pool.is_running
        await pool.stop(timeout=5)
        assert not pool.is_running

    @pytest.mark.asyncio
    async def test_empty_source(self):
        stats = await run_pool("remap", ListSource([]), lambda item: True)
        assert stats.to_dict() == {"stage": "remap", "completed": 0, "failed": 0, "errors": []}


class TestOcrPool:
    @pytest.mark.asyncio
    async def test_ocr_queue_drains_with_handler(
        self, store, seed, fake_executor, fake_cropper, tmp_path
    ):
        seed.witness("w1", priority=1)
        seed.witness("w2", priority=2)
        queue = OcrJobQueue(store)
        for witness_id in ("w1", "w2", "w1"):
            queue.create(seed.region(witness_id).id)

        handler = OcrJobHandler(store, queue, fake_executor, fake_cropper, tmp_path / "crops")
        stats = await WorkerPool("ocr", queue, handler, max_workers=2).run()

        assert stats.completed == 3
        assert queue.counts()[JobStatus.COMPLETED.value] == 3
        assert all(store.get_ocr_artifact(r.id) for r in store.list_regions())
