"""
Hardware-facing layer.

Adapter protocols for motors, camera and clock, in-memory fakes, and the
executor that drives calibration scripts against them.
"""

from mirror_control.hardware.adapters import (
    FakeCameraAdapter,
    FakeClock,
    FakeMotorAdapter,
    HardwareError,
    SystemClock,
)
from mirror_control.hardware.executor import CalibrationExecutor, ExecutorState

__all__ = [
    "CalibrationExecutor",
    "ExecutorState",
    "FakeCameraAdapter",
    "FakeClock",
    "FakeMotorAdapter",
    "HardwareError",
    "SystemClock",
]
