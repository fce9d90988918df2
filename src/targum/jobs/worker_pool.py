"""Stage-parameterised worker pool.

One pool abstraction serves every stage (OCR, remap, taam alignment,
taam consensus). Each worker claims one unit from a shared source, runs
the handler to completion in a thread, and loops. A handler failure is
logged, reported back to the source, and counted; it never stops the
other workers.

Concurrency is capped by the shared throttle controller: a worker whose
index is at or above the current stage limit pauses until the limit
rises again (or the source runs dry).
"""

from __future__ import annotations

import asyncio
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable, Generic, Iterable, Protocol, TypeVar

if TYPE_CHECKING:
    from targum.telemetry.throttle import ThrottleController

logger = logging.getLogger(__name__)

T = TypeVar("T")

POLL_INTERVAL_SECONDS = 0.5
MAX_BACKOFF_SECONDS = 5.0


class WorkSource(Protocol[T]):
    """Shared claim queue for a pool."""

    def claim(self) -> T | None:
        ...

    def fail(self, item: T, error: BaseException) -> None:
        ...


class ListSource(Generic[T]):
    """In-memory work source over a fixed list of items."""

    def __init__(self, items: Iterable[T]):
        self._items = list(items)
        self._lock = threading.Lock()
        self.failures: list[tuple[T, str]] = []

    def claim(self) -> T | None:
        with self._lock:
            return self._items.pop(0) if self._items else None

    def fail(self, item: T, error: BaseException) -> None:
        with self._lock:
            self.failures.append((item, str(error)))

    def __len__(self) -> int:
        return len(self._items)


@dataclass
class PoolStats:
    stage: str
    completed: int = 0
    failed: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def processed(self) -> int:
        return self.completed + self.failed

    def to_dict(self) -> dict[str, Any]:
        return {
            "stage": self.stage,
            "completed": self.completed,
            "failed": self.failed,
            "errors": self.errors[-20:],
        }


class WorkerPool(Generic[T]):
    """Bounded pool of async workers for one stage."""

    def __init__(
        self,
        stage: str,
        source: WorkSource[T],
        handler: Callable[[T], Any],
        *,
        max_workers: int = 2,
        throttle: "ThrottleController | None" = None,
        stop_when_idle: bool = True,
        poll_interval: float = POLL_INTERVAL_SECONDS,
    ):
        """
        Args:
            stage: Stage name, used for throttle limits and logging
            source: Shared claim queue
            handler: Sync callable run per item; returning ``False``
                counts as a failure, raising counts as a failure and is
                reported to ``source.fail``
            max_workers: Upper bound regardless of throttle state
            throttle: Shared throttle controller, if any
            stop_when_idle: Exit once the source is empty instead of
                polling for new work until ``stop()``
            poll_interval: Initial idle backoff in seconds
        """
        self.stage = stage
        self._source = source
        self._handler = handler
        self._max_workers = max(1, max_workers)
        self._throttle = throttle
        self._stop_when_idle = stop_when_idle
        self._poll_interval = poll_interval
        self._shutdown = asyncio.Event()
        self._exhausted = asyncio.Event()
        self._stats = PoolStats(stage=stage)
        self._task: asyncio.Task | None = None

    @property
    def stats(self) -> PoolStats:
        return self._stats

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def current_limit(self) -> int:
        if self._throttle is None:
            return self._max_workers
        return min(self._max_workers, self._throttle.limit_for(self.stage))

    def start(self) -> None:
        """Run the pool as a background task."""
        if self._task is not None:
            logger.warning(f"{self.stage} pool already started")
            return
        self._task = asyncio.create_task(self.run(), name=f"{self.stage}-pool")

    async def stop(self, timeout: float = 30.0) -> None:
        """Ask workers to finish their current item and exit."""
        self._shutdown.set()
        if self._task is None:
            return
        try:
            await asyncio.wait_for(self._task, timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(f"{self.stage} pool stop timed out after {timeout}s, cancelling")
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None

    async def run(self) -> PoolStats:
        """Run workers until the source is exhausted or ``stop()`` is called."""
        logger.info(f"{self.stage} pool starting with up to {self._max_workers} worker(s)")
        with ThreadPoolExecutor(
            max_workers=self._max_workers, thread_name_prefix=f"{self.stage}-worker"
        ) as threads:
            await asyncio.gather(
                *(self._worker(idx, threads) for idx in range(self._max_workers))
            )
        logger.info(
            f"{self.stage} pool done: completed={self._stats.completed} "
            f"failed={self._stats.failed}"
        )
        return self._stats

    async def _wait(self, seconds: float) -> bool:
        """Sleep unless shut down or exhausted; True if the worker should exit."""
        try:
            await asyncio.wait_for(self._shutdown.wait(), timeout=seconds)
            return True
        except asyncio.TimeoutError:
            return self._exhausted.is_set()

    async def _worker(self, index: int, threads: ThreadPoolExecutor) -> None:
        loop = asyncio.get_running_loop()
        backoff = self._poll_interval

        while not self._shutdown.is_set() and not self._exhausted.is_set():
            if index >= self.current_limit():
                # Paused by throttle
                if await self._wait(self._poll_interval):
                    break
                continue

            item = await loop.run_in_executor(threads, self._source.claim)
            if item is None:
                if self._stop_when_idle:
                    self._exhausted.set()
                    break
                backoff = min(backoff * 1.5, MAX_BACKOFF_SECONDS)
                if await self._wait(backoff):
                    break
                continue

            backoff = self._poll_interval
            await self._process(item, loop, threads)

    async def _process(
        self, item: T, loop: asyncio.AbstractEventLoop, threads: ThreadPoolExecutor
    ) -> None:
        try:
            result = await loop.run_in_executor(threads, self._handler, item)
        except Exception as e:
            logger.exception(f"{self.stage} worker failed on {item!r}: {e}")
            self._stats.failed += 1
            self._stats.errors.append(str(e))
            await loop.run_in_executor(threads, self._source.fail, item, e)
            return

        if result is False:
            self._stats.failed += 1
        else:
            self._stats.completed += 1


async def run_pool(
    stage: str,
    source: WorkSource[T],
    handler: Callable[[T], Any],
    *,
    max_workers: int = 2,
    throttle: "ThrottleController | None" = None,
) -> PoolStats:
    """Drain ``source`` with a pool and return its stats."""
    pool = WorkerPool(
        stage, source, handler, max_workers=max_workers, throttle=throttle
    )
    return await pool.run()
