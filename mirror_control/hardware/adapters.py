"""Host capabilities the executor drives, plus in-memory fakes.

The executor never talks to a transport directly.  It calls three narrow
capabilities:

MotorAdapter
    ``home_all(macs)``, ``home_tile(x, y)``, ``move_motor(motor, steps)``.
    Blocks until the move is acknowledged.
CameraAdapter
    ``capture(timeout_ms, expected_position, max_distance)`` returns one
    blob in centered coordinates or ``None``.
ClockAdapter
    ``sleep_ms`` / ``now``.

The fakes record every call so tests (and the simulation entrypoint) can
assert on what was commanded.
"""

from __future__ import annotations

import logging
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Iterable, Protocol, Sequence, Union

from mirror_control.calibration.types import BlobMeasurement, MotorRef, Point2

logger = logging.getLogger(__name__)


class HardwareError(Exception):
    """Base exception for adapter failures."""


class MotorCommandError(HardwareError):
    """A motor controller rejected or failed a command."""


# ---------------------------------------------------------------------------
# Protocols
# ---------------------------------------------------------------------------


class MotorAdapter(Protocol):
    def home_all(self, mac_addresses: Sequence[str]) -> None: ...

    def home_tile(self, x_motor: MotorRef | None, y_motor: MotorRef | None) -> None: ...

    def move_motor(self, motor: MotorRef, position_steps: int) -> None: ...


class CameraAdapter(Protocol):
    def capture(
        self,
        timeout_ms: int,
        expected_position: Point2 | None = None,
        max_distance: float | None = None,
    ) -> BlobMeasurement | None: ...


class ClockAdapter(Protocol):
    def sleep_ms(self, ms: float) -> None: ...

    def now(self) -> float: ...


class SystemClock:
    """Wall clock backed by :mod:`time`."""

    def sleep_ms(self, ms: float) -> None:
        if ms > 0:
            time.sleep(ms / 1000.0)

    def now(self) -> float:
        return time.monotonic()


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


@dataclass
class MotorCall:
    """One recorded motor command."""

    op: str
    motor: MotorRef | None = None
    steps: int | None = None
    macs: tuple[str, ...] = ()


class FakeMotorAdapter:
    """Records commands and tracks per-motor positions.

    Parameters
    ----------
    fail_on : callable, optional
        Predicate on each :class:`MotorCall`; when it returns True the call
        raises :class:`MotorCommandError` instead of being applied.
    """

    def __init__(self, fail_on: Callable[[MotorCall], bool] | None = None) -> None:
        self.calls: list[MotorCall] = []
        self.positions: dict[MotorRef, int] = {}
        self._fail_on = fail_on

    def _record(self, call: MotorCall) -> None:
        if self._fail_on is not None and self._fail_on(call):
            raise MotorCommandError(f"Motor command {call.op} failed")
        self.calls.append(call)

    def home_all(self, mac_addresses: Sequence[str]) -> None:
        macs = tuple(mac_addresses)
        self._record(MotorCall("home_all", macs=macs))
        for motor in list(self.positions):
            if motor.mac in macs:
                self.positions[motor] = 0

    def home_tile(self, x_motor: MotorRef | None, y_motor: MotorRef | None) -> None:
        for motor in (x_motor, y_motor):
            if motor is not None:
                self._record(MotorCall("home", motor=motor))
                self.positions[motor] = 0

    def move_motor(self, motor: MotorRef, position_steps: int) -> None:
        self._record(MotorCall("move", motor=motor, steps=position_steps))
        self.positions[motor] = position_steps

    def moves(self) -> list[tuple[MotorRef, int]]:
        return [(c.motor, c.steps) for c in self.calls if c.op == "move"]


CaptureScript = Union[Iterable[Union[BlobMeasurement, None]], Callable[..., Union[BlobMeasurement, None]]]


class FakeCameraAdapter:
    """Camera returning scripted measurements.

    *script* is either an iterable consumed one item per capture (``None``
    entries simulate a missed detection; an exhausted iterable keeps
    returning ``None``) or a callable receiving the capture arguments.
    """

    def __init__(self, script: CaptureScript) -> None:
        self.requests: list[tuple[int, Point2 | None, float | None]] = []
        if callable(script):
            self._fn: Callable[..., BlobMeasurement | None] | None = script
            self._queue: deque[BlobMeasurement | None] = deque()
        else:
            self._fn = None
            self._queue = deque(script)

    def capture(
        self,
        timeout_ms: int,
        expected_position: Point2 | None = None,
        max_distance: float | None = None,
    ) -> BlobMeasurement | None:
        self.requests.append((timeout_ms, expected_position, max_distance))
        if self._fn is not None:
            return self._fn(timeout_ms, expected_position, max_distance)
        if not self._queue:
            logger.debug("Fake camera exhausted; returning no blob")
            return None
        return self._queue.popleft()


@dataclass
class FakeClock:
    """Clock that advances only when slept on."""

    t: float = 0.0
    sleeps: list[float] = field(default_factory=list)

    def sleep_ms(self, ms: float) -> None:
        self.sleeps.append(ms)
        self.t += ms / 1000.0

    def now(self) -> float:
        return self.t
