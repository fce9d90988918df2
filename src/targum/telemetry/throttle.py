"""Resource telemetry and worker throttling.

Samples process and system resources with psutil and maps them onto a
discrete throttle state that caps worker-pool sizes per stage. This is
advisory backpressure: a failed sample degrades to ``reduced`` rather
than stopping work.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable

import psutil

if TYPE_CHECKING:
    from targum.config import Settings

logger = logging.getLogger(__name__)

STAGES = ("ocr", "remap", "taam_align", "taam_consensus")


class ThrottleState(str, Enum):
    NORMAL = "normal"
    REDUCED = "reduced"
    SINGLE = "single"


DEFAULT_LIMITS: dict[str, dict[str, int]] = {
    ThrottleState.NORMAL.value: {stage: 2 for stage in STAGES},
    ThrottleState.REDUCED.value: {stage: 2 for stage in STAGES},
    ThrottleState.SINGLE.value: {stage: 1 for stage in STAGES},
}


@dataclass
class ResourceSample:
    memory_percent: float
    cpu_percent: float
    process_rss_mb: float
    available_memory_gb: float
    sampled_at: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "memory_percent": self.memory_percent,
            "cpu_percent": self.cpu_percent,
            "process_rss_mb": self.process_rss_mb,
            "available_memory_gb": self.available_memory_gb,
            "sampled_at": self.sampled_at,
        }


def sample_resources() -> ResourceSample:
    """Take one resource sample of the system and this process."""
    memory = psutil.virtual_memory()
    rss = psutil.Process().memory_info().rss
    return ResourceSample(
        memory_percent=float(memory.percent),
        cpu_percent=float(psutil.cpu_percent(interval=None)),
        process_rss_mb=rss / 1024**2,
        available_memory_gb=memory.available / 1024**3,
        sampled_at=datetime.now(timezone.utc).isoformat(),
    )


def classify(
    sample: ResourceSample,
    reduced_memory_percent: float = 80.0,
    single_memory_percent: float = 90.0,
) -> ThrottleState:
    if sample.memory_percent >= single_memory_percent:
        return ThrottleState.SINGLE
    if sample.memory_percent >= reduced_memory_percent:
        return ThrottleState.REDUCED
    return ThrottleState.NORMAL


class ThrottleController:
    """Shared throttle consulted by every worker pool.

    Samples lazily: a new sample is taken when the last one is older
    than ``min_interval`` seconds.
    """

    def __init__(
        self,
        limits: dict[str, dict[str, int]] | None = None,
        reduced_memory_percent: float = 80.0,
        single_memory_percent: float = 90.0,
        sampler: Callable[[], ResourceSample] = sample_resources,
        min_interval: float = 5.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._limits = limits or DEFAULT_LIMITS
        self._reduced_at = reduced_memory_percent
        self._single_at = single_memory_percent
        self._sampler = sampler
        self._min_interval = min_interval
        self._clock = clock
        self._lock = threading.Lock()
        self._state = ThrottleState.NORMAL
        self._last_sample: ResourceSample | None = None
        self._last_sampled: float | None = None

    @classmethod
    def from_settings(cls, settings: "Settings", **kwargs) -> "ThrottleController":
        return cls(
            limits=settings.throttle_worker_limits,
            reduced_memory_percent=settings.throttle_reduced_memory_percent,
            single_memory_percent=settings.throttle_single_memory_percent,
            **kwargs,
        )

    @property
    def state(self) -> ThrottleState:
        return self._state

    @property
    def last_sample(self) -> ResourceSample | None:
        return self._last_sample

    def refresh(self) -> ThrottleState:
        """Take a sample now and update the state."""
        with self._lock:
            previous = self._state
            try:
                sample = self._sampler()
            except (psutil.Error, OSError) as e:
                logger.warning(f"Resource sampling failed, throttling to reduced: {e}")
                self._state = ThrottleState.REDUCED
            else:
                self._last_sample = sample
                self._state = classify(sample, self._reduced_at, self._single_at)
            self._last_sampled = self._clock()
            if self._state != previous:
                logger.warning(
                    f"Throttle state {previous.value} -> {self._state.value}"
                )
            return self._state

    def current_state(self) -> ThrottleState:
        last = self._last_sampled
        if last is None or self._clock() - last >= self._min_interval:
            return self.refresh()
        return self._state

    def limit_for(self, stage: str) -> int:
        """Worker cap for ``stage`` under the current state (at least 1)."""
        state = self.current_state()
        limits = self._limits.get(state.value, {})
        return max(1, int(limits.get(stage, 1)))

    def snapshot(self) -> dict[str, Any]:
        state = self.current_state()
        return {
            "state": state.value,
            "sample": self._last_sample.to_dict() if self._last_sample else None,
            "limits": {stage: self.limit_for(stage) for stage in STAGES},
        }
