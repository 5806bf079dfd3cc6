"""Calibration command protocol -- the vocabulary between scripts and hosts.

A calibration script is a generator that yields :class:`CalibrationCommand`
values and is resumed with exactly one :class:`CommandResult` per command.
Commands are immutable, slotted dataclasses; each carries its
:class:`CommandKind` as a class attribute.

Result shapes
-------------
``CAPTURE``
    :class:`CaptureResult` (measurement or None plus an optional error).
``AWAIT_DECISION``
    :class:`DecisionResult` (one of the offered options).
everything else
    :class:`Ack` with the matching kind.

:func:`request` wraps one round trip and raises :class:`ProtocolError`
when the host answers with the wrong result type.
"""

from __future__ import annotations

from abc import ABC
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, ClassVar, Generator, Literal, Mapping, TypeVar, Union

from mirror_control.calibration.types import (
    BlobMeasurement,
    CalibrationSummary,
    MotorRef,
    Point2,
    RunPhase,
    RunProgress,
    TileAddress,
    TileCalibrationMetrics,
    TileStatus,
)

Pose = Literal["home", "aside"]
DecisionKind = Literal["tile-failure", "step-test-failure", "command-failure"]
StepKind = Literal[
    "home-all",
    "stage-all",
    "measure-home",
    "step-test-x-interim",
    "step-test-x",
    "step-test-y-interim",
    "step-test-y",
    "align-grid",
]

_DECISION_KINDS = ("tile-failure", "step-test-failure", "command-failure")


class ProtocolError(RuntimeError):
    """A host answered a command with a result of the wrong kind."""


class CommandKind(str, Enum):
    HOME_ALL = "HOME_ALL"
    HOME_TILE = "HOME_TILE"
    MOVE_AXIS = "MOVE_AXIS"
    MOVE_AXES_BATCH = "MOVE_AXES_BATCH"
    MOVE_TILE_POSE = "MOVE_TILE_POSE"
    MOVE_TILES_BATCH = "MOVE_TILES_BATCH"
    CAPTURE = "CAPTURE"
    DELAY = "DELAY"
    AWAIT_DECISION = "AWAIT_DECISION"
    UPDATE_PHASE = "UPDATE_PHASE"
    UPDATE_TILE = "UPDATE_TILE"
    CHECKPOINT = "CHECKPOINT"
    LOG = "LOG"
    UPDATE_SUMMARY = "UPDATE_SUMMARY"
    UPDATE_EXPECTED_POSITION = "UPDATE_EXPECTED_POSITION"
    UPDATE_PROGRESS = "UPDATE_PROGRESS"

    @property
    def is_io(self) -> bool:
        """Whether the command touches hardware or waits on the operator."""
        return self in _IO_KINDS


_IO_KINDS = frozenset({
    CommandKind.HOME_ALL,
    CommandKind.HOME_TILE,
    CommandKind.MOVE_AXIS,
    CommandKind.MOVE_AXES_BATCH,
    CommandKind.MOVE_TILE_POSE,
    CommandKind.MOVE_TILES_BATCH,
    CommandKind.CAPTURE,
    CommandKind.DELAY,
    CommandKind.AWAIT_DECISION,
})


class DecisionOption(str, Enum):
    RETRY = "retry"
    HOME_RETRY = "home-retry"
    SKIP = "skip"
    IGNORE = "ignore"
    ABORT = "abort"


# ---------------------------------------------------------------------------
# Base class
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class CalibrationCommand(ABC):
    """Base class for all calibration commands."""

    kind: ClassVar[CommandKind]


# ---------------------------------------------------------------------------
# I/O commands
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class HomeAll(CalibrationCommand):
    """Home every motor on the listed controller nodes."""

    kind: ClassVar[CommandKind] = CommandKind.HOME_ALL
    mac_addresses: tuple[str, ...]


@dataclass(frozen=True, slots=True)
class HomeTile(CalibrationCommand):
    kind: ClassVar[CommandKind] = CommandKind.HOME_TILE
    tile: TileAddress


@dataclass(frozen=True, slots=True)
class MoveAxis(CalibrationCommand):
    """Move one motor to an absolute step target."""

    kind: ClassVar[CommandKind] = CommandKind.MOVE_AXIS
    motor: MotorRef
    target: int


@dataclass(frozen=True, slots=True)
class AxisMove:
    motor: MotorRef
    target: int


@dataclass(frozen=True, slots=True)
class MoveAxesBatch(CalibrationCommand):
    """Several axis moves the host may run in parallel; one result for all."""

    kind: ClassVar[CommandKind] = CommandKind.MOVE_AXES_BATCH
    moves: tuple[AxisMove, ...]


@dataclass(frozen=True, slots=True)
class MoveTilePose(CalibrationCommand):
    kind: ClassVar[CommandKind] = CommandKind.MOVE_TILE_POSE
    tile: TileAddress
    pose: Pose

    def __post_init__(self) -> None:
        if self.pose not in ("home", "aside"):
            raise ValueError(f"pose must be 'home' or 'aside', got {self.pose!r}")


@dataclass(frozen=True, slots=True)
class TilePoseMove:
    tile: TileAddress
    pose: Pose


@dataclass(frozen=True, slots=True)
class MoveTilesBatch(CalibrationCommand):
    kind: ClassVar[CommandKind] = CommandKind.MOVE_TILES_BATCH
    moves: tuple[TilePoseMove, ...]


@dataclass(frozen=True, slots=True)
class Capture(CalibrationCommand):
    """Capture one blob measurement.

    Parameters
    ----------
    label : str
        Human-readable description, e.g. ``"Home measurement R0C1"``.
    tolerance : float
        Maximum viewport distance from *expected_position* to accept a blob.
    expected_position : Point2 | None
        Viewport position to search around.
    """

    kind: ClassVar[CommandKind] = CommandKind.CAPTURE
    label: str
    tolerance: float
    expected_position: Point2 | None = None


@dataclass(frozen=True, slots=True)
class Delay(CalibrationCommand):
    kind: ClassVar[CommandKind] = CommandKind.DELAY
    ms: int


@dataclass(frozen=True, slots=True)
class AwaitDecision(CalibrationCommand):
    """Stop and ask the operator how to proceed after a failure."""

    kind: ClassVar[CommandKind] = CommandKind.AWAIT_DECISION
    decision_kind: DecisionKind
    tile: TileAddress | None
    error: str
    options: tuple[DecisionOption, ...]

    def __post_init__(self) -> None:
        if self.decision_kind not in _DECISION_KINDS:
            raise ValueError(f"unknown decision kind {self.decision_kind!r}")
        if not self.options:
            raise ValueError("AwaitDecision requires at least one option")


# ---------------------------------------------------------------------------
# State commands
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class UpdatePhase(CalibrationCommand):
    kind: ClassVar[CommandKind] = CommandKind.UPDATE_PHASE
    phase: RunPhase


@dataclass(frozen=True, slots=True)
class UpdateTile(CalibrationCommand):
    """Patch one tile's run state; None fields are left unchanged."""

    kind: ClassVar[CommandKind] = CommandKind.UPDATE_TILE
    key: str
    status: TileStatus | None = None
    error: str | None = None
    warnings: tuple[str, ...] | None = None
    metrics: TileCalibrationMetrics | None = None


@dataclass(frozen=True, slots=True)
class StepDescriptor:
    kind: StepKind
    label: str
    tile: TileAddress | None = None


@dataclass(frozen=True, slots=True)
class Checkpoint(CalibrationCommand):
    """A natural pause point; hosts in step mode wait here."""

    kind: ClassVar[CommandKind] = CommandKind.CHECKPOINT
    step: StepDescriptor


@dataclass(frozen=True, slots=True)
class Log(CalibrationCommand):
    kind: ClassVar[CommandKind] = CommandKind.LOG
    hint: str
    tile: TileAddress | None = None
    group: str | None = None
    metadata: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class UpdateSummary(CalibrationCommand):
    kind: ClassVar[CommandKind] = CommandKind.UPDATE_SUMMARY
    summary: CalibrationSummary


@dataclass(frozen=True, slots=True)
class UpdateExpectedPosition(CalibrationCommand):
    kind: ClassVar[CommandKind] = CommandKind.UPDATE_EXPECTED_POSITION
    position: Point2 | None
    tolerance: float


@dataclass(frozen=True, slots=True)
class UpdateProgress(CalibrationCommand):
    kind: ClassVar[CommandKind] = CommandKind.UPDATE_PROGRESS
    progress: RunProgress


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class Ack:
    """Success result for every command without a payload."""

    kind: CommandKind

    def __post_init__(self) -> None:
        if self.kind in (CommandKind.CAPTURE, CommandKind.AWAIT_DECISION):
            raise ValueError(f"{self.kind.value} has a dedicated result type")


@dataclass(frozen=True, slots=True)
class CaptureResult:
    measurement: BlobMeasurement | None
    error: str | None = None

    @property
    def kind(self) -> CommandKind:
        return CommandKind.CAPTURE


@dataclass(frozen=True, slots=True)
class DecisionResult:
    decision: DecisionOption

    @property
    def kind(self) -> CommandKind:
        return CommandKind.AWAIT_DECISION


CommandResult = Union[Ack, CaptureResult, DecisionResult]

R = TypeVar("R")
Script = Generator[CalibrationCommand, CommandResult, R]


def check_result(command: CalibrationCommand, result: CommandResult) -> None:
    """Raise :class:`ProtocolError` unless *result* answers *command*."""
    if result.kind != command.kind:
        raise ProtocolError(
            f"Expected {command.kind.value} result, got {result.kind.value}"
        )
    if isinstance(command, AwaitDecision) and isinstance(result, DecisionResult):
        if result.decision not in command.options:
            raise ProtocolError(
                f"Decision {result.decision.value!r} was not offered "
                f"(options: {[o.value for o in command.options]})"
            )


def request(command: CalibrationCommand) -> Script[CommandResult]:
    """Yield *command*, validate the result and return it."""
    result = yield command
    check_result(command, result)
    return result


def capture(
    label: str, tolerance: float, expected: Point2 | None = None,
) -> Script[CaptureResult]:
    result = yield from request(Capture(label, tolerance, expected))
    if not isinstance(result, CaptureResult):
        raise ProtocolError(f"Expected a capture result, got {result!r}")
    return result


def decide(
    kind: DecisionKind, tile: TileAddress | None, error: str, options: tuple[DecisionOption, ...],
) -> Script[DecisionOption]:
    result = yield from request(AwaitDecision(kind, tile, error, options))
    if not isinstance(result, DecisionResult):
        raise ProtocolError(f"Expected a decision result, got {result!r}")
    return result.decision


def emit(command: CalibrationCommand) -> Script[None]:
    """Yield a command whose only valid answer is an :class:`Ack`."""
    yield from request(command)


def log(
    hint: str,
    tile: TileAddress | None = None,
    group: str | None = None,
    **metadata: Any,
) -> Script[None]:
    yield from emit(Log(hint, tile, group, metadata))


def ack_for(command: CalibrationCommand) -> Ack:
    return Ack(command.kind)
