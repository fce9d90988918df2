"""Resource telemetry and throttle control for worker pools."""

from targum.telemetry.throttle import (
    DEFAULT_LIMITS,
    STAGES,
    ResourceSample,
    ThrottleController,
    ThrottleState,
    classify,
    sample_resources,
)

__all__ = [
    "DEFAULT_LIMITS",
    "STAGES",
    "ResourceSample",
    "ThrottleController",
    "ThrottleState",
    "classify",
    "sample_resources",
]
