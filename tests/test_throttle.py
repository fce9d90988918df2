"""Tests for resource throttling."""

import psutil
import pytest

from targum.telemetry import (
    STAGES,
    ResourceSample,
    ThrottleController,
    ThrottleState,
    classify,
    sample_resources,
)

LIMITS = {
    "normal": {"ocr": 4, "remap": 3},
    "reduced": {"ocr": 2, "remap": 2},
    "single": {"ocr": 1, "remap": 1},
}


def make_sample(memory_percent):
    return ResourceSample(
        memory_percent=memory_percent,
        cpu_percent=10.0,
        process_rss_mb=100.0,
        available_memory_gb=4.0,
        sampled_at="2026-01-01T00:00:00+00:00",
    )


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


class SequenceSampler:
    def __init__(self, *percents):
        self.percents = list(percents)
        self.calls = 0

    def __call__(self):
        self.calls += 1
        value = self.percents.pop(0) if len(self.percents) > 1 else self.percents[0]
        return make_sample(value)


class TestClassify:
    @pytest.mark.parametrize(
        "percent,state",
        [
            (50.0, ThrottleState.NORMAL),
            (80.0, ThrottleState.REDUCED),
            (89.9, ThrottleState.REDUCED),
            (90.0, ThrottleState.SINGLE),
        ],
    )
    def test_thresholds(self, percent, state):
        assert classify(make_sample(percent)) == state


class TestThrottleController:
    def test_limits_follow_state(self):
        controller = ThrottleController(LIMITS, sampler=SequenceSampler(95.0))
        assert controller.limit_for("ocr") == 1
        assert controller.state == ThrottleState.SINGLE

    def test_unknown_stage_gets_one_worker(self):
        controller = ThrottleController(LIMITS, sampler=SequenceSampler(10.0))
        assert controller.limit_for("taam_align") == 1
        assert controller.limit_for("ocr") == 4

    def test_samples_lazily(self):
        clock = FakeClock()
        sampler = SequenceSampler(10.0, 85.0)
        controller = ThrottleController(LIMITS, sampler=sampler, min_interval=5.0, clock=clock)

        assert controller.limit_for("ocr") == 4
        clock.now = 1.0
        assert controller.limit_for("ocr") == 4
        assert sampler.calls == 1

        clock.now = 6.0
        assert controller.limit_for("ocr") == 2
        assert sampler.calls == 2

    def test_failed_sample_reduces(self):
        def broken():
            raise psutil.AccessDenied()

        controller = ThrottleController(LIMITS, sampler=broken)
        assert controller.refresh() == ThrottleState.REDUCED
        assert controller.last_sample is None

    def test_snapshot(self):
        controller = ThrottleController(LIMITS, sampler=SequenceSampler(10.0))
        snapshot = controller.snapshot()
        assert snapshot["state"] == "normal"
        assert snapshot["sample"]["memory_percent"] == 10.0
        assert set(snapshot["limits"]) == set(STAGES)
        assert snapshot["limits"]["remap"] == 3

    def test_from_settings(self, settings):
        settings.throttle_reduced_memory_percent = 10.0
        controller = ThrottleController.from_settings(settings, sampler=SequenceSampler(20.0))
        assert controller.refresh() == ThrottleState.REDUCED


def test_sample_resources_reads_real_process():
    sample = sample_resources()
    assert 0.0 <= sample.memory_percent <= 100.0
    assert sample.process_rss_mb > 0
