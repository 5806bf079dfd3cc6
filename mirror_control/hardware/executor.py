"""Calibration executor -- drives a command script against real adapters.

Pulls one command at a time from a calibration script, performs the side
effect through the motor / camera / clock adapters, and resumes the script
with the matching result.

Run control
    ``pause()`` takes effect at the next command boundary and blocks until
    ``resume()``.  ``abort()`` closes the script at the next boundary and
    ends the run in the ``ABORTED`` state.  In step mode every
    ``CHECKPOINT`` waits on ``checkpoint_gate`` (or on ``resume()`` when no
    gate is given).

Motion
    Axis targets are rounded and clamped to the motor range.  Positions are
    tracked per motor and a move to the current position is skipped.
    ``HOME_ALL`` forgets every tracked position; ``HOME_TILE`` resets the
    tile's two motors to 0.

Capture
    Up to ``max_detection_retries`` attempts, ``retry_delay_ms`` apart.  A
    blob farther than the command's tolerance from the expected position
    counts as a miss.
"""

from __future__ import annotations

import logging
import math
import threading
from dataclasses import dataclass, field, replace
from enum import Enum, auto
from typing import Any, Callable, Mapping

from mirror_control.calibration.expected_position import centered_to_viewport
from mirror_control.calibration.staging import compute_pose_targets, round_steps
from mirror_control.calibration.types import (
    BlobMeasurement,
    CalibrationSummary,
    GridConfig,
    MotorRef,
    Point2,
    RunPhase,
    RunProgress,
    TileAddress,
    TileRunState,
    TileStatus,
    count_progress,
    create_baseline_tile_states,
)
from mirror_control.configs.loader import ArrayConfig
from mirror_control.hardware.adapters import CameraAdapter, ClockAdapter, MotorAdapter, SystemClock
from mirror_control.script.commands import (
    AwaitDecision,
    CalibrationCommand,
    Capture,
    CaptureResult,
    Checkpoint,
    CommandResult,
    DecisionOption,
    DecisionResult,
    Delay,
    HomeAll,
    HomeTile,
    Log,
    MoveAxesBatch,
    MoveAxis,
    MoveTilePose,
    MoveTilesBatch,
    Script,
    StepDescriptor,
    UpdateExpectedPosition,
    UpdatePhase,
    UpdateProgress,
    UpdateSummary,
    UpdateTile,
    ack_for,
)
from mirror_control.script.context import ScriptContext
from mirror_control.script.grid_script import (
    grid_calibration_script,
    single_tile_recalibration_script,
)
from mirror_control.utils.logging_config import pop_context, push_context

logger = logging.getLogger(__name__)

DecisionProvider = Callable[[AwaitDecision], DecisionOption]
CheckpointGate = Callable[[StepDescriptor], None]

_PAUSE_POLL_S = 0.05


# ---------------------------------------------------------------------------
# State
# ---------------------------------------------------------------------------


class ExecutorState(Enum):
    """Current executor state; mirrors :class:`RunPhase`."""

    IDLE = auto()
    HOMING = auto()
    STAGING = auto()
    MEASURING = auto()
    ALIGNING = auto()
    PAUSED = auto()
    ABORTED = auto()
    COMPLETED = auto()
    ERROR = auto()

    @classmethod
    def from_phase(cls, phase: RunPhase) -> ExecutorState:
        return cls[phase.name]


@dataclass(frozen=True, slots=True)
class CommandLogEntry:
    id: str
    hint: str
    phase: RunPhase
    tile: TileAddress | None
    sequence: int
    group: str | None
    metadata: Mapping[str, Any]


@dataclass
class ExecutorSnapshot:
    """Run state snapshot handed to the state callback."""

    state: ExecutorState
    phase: RunPhase = RunPhase.IDLE
    tiles: dict[str, TileRunState] = field(default_factory=dict)
    progress: RunProgress = field(default_factory=RunProgress)
    summary: CalibrationSummary | None = None
    active_tile: str | None = None
    expected_position: Point2 | None = None
    tolerance: float | None = None
    step: StepDescriptor | None = None
    error: str | None = None


# ---------------------------------------------------------------------------
# Executor
# ---------------------------------------------------------------------------


class CalibrationExecutor:
    """Run calibration scripts against motor and camera adapters.

    Parameters
    ----------
    config : ArrayConfig
        Loaded configuration.
    grid : GridConfig
        Grid size and motor wiring.
    motors, camera : adapters
        Hardware capabilities.
    decision_provider : callable
        Called with each :class:`AwaitDecision`; must return one of its
        options.
    clock : ClockAdapter, optional
        Defaults to :class:`SystemClock`.
    step_mode : bool, optional
        Wait at checkpoints.  Defaults to ``config.calibration.mode == "step"``.
    checkpoint_gate : callable, optional
        Blocking callable invoked at each checkpoint in step mode.
    """

    def __init__(
        self,
        config: ArrayConfig,
        grid: GridConfig,
        motors: MotorAdapter,
        camera: CameraAdapter,
        decision_provider: DecisionProvider,
        clock: ClockAdapter | None = None,
        step_mode: bool | None = None,
        checkpoint_gate: CheckpointGate | None = None,
    ) -> None:
        self._cfg = config
        self._grid = grid
        self._ctx = ScriptContext(config, grid)
        self._staging = self._ctx.staging_config()
        self._motors = motors
        self._camera = camera
        self._clock = clock or SystemClock()
        self._decide = decision_provider
        self._step_mode = (config.calibration.mode == "step") if step_mode is None else step_mode
        self._gate = checkpoint_gate

        self._positions: dict[MotorRef, int] = {}
        self._log: list[CommandLogEntry] = []
        self._snapshot = ExecutorSnapshot(
            state=ExecutorState.IDLE, tiles=create_baseline_tile_states(grid),
        )
        self._pause_flag = threading.Event()
        self._abort_flag = threading.Event()
        self._state_cb: Callable[[ExecutorSnapshot], None] | None = None

    # ------------------------------------------------------------------
    # Common
    # ------------------------------------------------------------------

    def get_state(self) -> ExecutorState:
        return self._snapshot.state

    @property
    def snapshot(self) -> ExecutorSnapshot:
        return self._snapshot

    @property
    def command_log(self) -> list[CommandLogEntry]:
        return list(self._log)

    @property
    def axis_positions(self) -> dict[MotorRef, int]:
        return dict(self._positions)

    @property
    def active_tile(self) -> str | None:
        return self._snapshot.active_tile

    def set_state_callback(self, fn: Callable[[ExecutorSnapshot], None]) -> None:
        """Register a callback invoked on every state change."""
        self._state_cb = fn

    def _notify(self) -> None:
        if self._state_cb is not None:
            try:
                self._state_cb(replace(self._snapshot, tiles=dict(self._snapshot.tiles)))
            except Exception as exc:  # noqa: BLE001
                logger.error("State callback error: %s", exc)

    def pause(self) -> None:
        """Pause at the next command boundary."""
        self._pause_flag.set()
        logger.info("Pause requested")

    def resume(self) -> None:
        self._pause_flag.clear()
        logger.info("Resume requested")

    def abort(self) -> None:
        """Stop the run at the next command boundary."""
        self._abort_flag.set()
        self._pause_flag.clear()
        logger.info("Abort requested")

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def run_grid(self) -> ExecutorSnapshot:
        """Calibrate the whole grid."""
        return self.run(grid_calibration_script(self._ctx))

    def recalibrate_tile(self, target: TileAddress, summary: CalibrationSummary) -> ExecutorSnapshot:
        """Recalibrate one tile against an existing summary."""
        return self.run(single_tile_recalibration_script(self._ctx, target, summary))

    def run(self, script: Script[Any]) -> ExecutorSnapshot:
        """Drive *script* until it returns, is aborted, or raises."""
        self._abort_flag.clear()
        self._snapshot.error = None
        push_context(run=self._snapshot.phase.value)
        try:
            command = next(script)
            while True:
                self._wait_while_paused()
                if self._abort_flag.is_set():
                    script.close()
                    self._set_phase(RunPhase.ABORTED)
                    logger.warning("Run aborted")
                    break
                result = self._execute(command)
                command = script.send(result)
        except StopIteration:
            pass
        except Exception as exc:
            self._snapshot.error = str(exc)
            self._set_phase(RunPhase.ERROR)
            logger.exception("Calibration run failed: %s", exc)
            raise
        finally:
            pop_context(["run", "tile"])
        logger.info("Run finished in phase %s", self._snapshot.phase.value)
        return self._snapshot

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def _execute(self, command: CalibrationCommand) -> CommandResult:
        if isinstance(command, Capture):
            return self._capture(command)
        if isinstance(command, AwaitDecision):
            return self._await_decision(command)

        if isinstance(command, HomeAll):
            logger.info("Homing %d controller(s)", len(command.mac_addresses))
            self._motors.home_all(command.mac_addresses)
            self._positions.clear()
        elif isinstance(command, HomeTile):
            a = self._grid.assignment(command.tile)
            self._motors.home_tile(a.x, a.y)
            for motor in (a.x, a.y):
                if motor is not None:
                    self._positions[motor] = 0
        elif isinstance(command, MoveAxis):
            self._move(command.motor, command.target)
        elif isinstance(command, MoveAxesBatch):
            for move in command.moves:
                self._move(move.motor, move.target)
        elif isinstance(command, MoveTilePose):
            self._move_pose(command.tile, command.pose)
        elif isinstance(command, MoveTilesBatch):
            for move in command.moves:
                self._move_pose(move.tile, move.pose)
        elif isinstance(command, Delay):
            self._clock.sleep_ms(command.ms)
        elif isinstance(command, UpdatePhase):
            self._set_phase(command.phase)
        elif isinstance(command, UpdateTile):
            self._update_tile(command)
        elif isinstance(command, Checkpoint):
            self._checkpoint(command.step)
        elif isinstance(command, Log):
            self._record_log(command)
        elif isinstance(command, UpdateSummary):
            self._snapshot.summary = command.summary
            self._notify()
        elif isinstance(command, UpdateExpectedPosition):
            self._snapshot.expected_position = command.position
            self._snapshot.tolerance = command.tolerance
        elif isinstance(command, UpdateProgress):
            self._snapshot.progress = command.progress
            self._notify()
        else:
            raise TypeError(f"Unsupported command {type(command).__name__}")
        return ack_for(command)

    # ------------------------------------------------------------------
    # Motion
    # ------------------------------------------------------------------

    def _move(self, motor: MotorRef, target: float) -> None:
        steps = round_steps(self._cfg.motor.clamp(target))
        if self._positions.get(motor) == steps:
            logger.debug("Skipping move of %s:%d, already at %d", motor.mac, motor.motor_id, steps)
            return
        self._motors.move_motor(motor, steps)
        self._positions[motor] = steps

    def _move_pose(self, tile: TileAddress, pose: str) -> None:
        a = self._grid.assignment(tile)
        targets = compute_pose_targets(tile, pose, self._staging)  # type: ignore[arg-type]
        if a.x is not None:
            self._move(a.x, targets.x)
        if a.y is not None:
            self._move(a.y, targets.y)

    # ------------------------------------------------------------------
    # Capture and decisions
    # ------------------------------------------------------------------

    def _capture(self, command: Capture) -> CaptureResult:
        cal = self._cfg.calibration
        attempts = max(1, cal.max_detection_retries)
        for attempt in range(attempts):
            if attempt:
                self._clock.sleep_ms(cal.retry_delay_ms)
            measurement = self._camera.capture(
                cal.sample_timeout_ms, command.expected_position, command.tolerance,
            )
            if measurement is not None and self._within_tolerance(measurement, command):
                return CaptureResult(measurement)
            logger.debug("%s: attempt %d/%d found no blob", command.label, attempt + 1, attempts)

        if command.expected_position is not None:
            error = f"No blob detected within {command.tolerance:.2f} of expected position"
        else:
            error = "No blob detected"
        logger.warning("%s: %s", command.label, error)
        return CaptureResult(None, error)

    @staticmethod
    def _within_tolerance(m: BlobMeasurement, command: Capture) -> bool:
        if command.expected_position is None:
            return True
        view = centered_to_viewport(m.x, m.y)
        return math.hypot(
            view.x - command.expected_position.x, view.y - command.expected_position.y,
        ) <= command.tolerance

    def _await_decision(self, command: AwaitDecision) -> DecisionResult:
        previous = self._snapshot.state
        self._snapshot.state = ExecutorState.PAUSED
        self._notify()
        logger.info("Awaiting %s decision: %s", command.decision_kind, command.error)
        decision = self._decide(command)
        logger.info("Decision: %s", decision.value)
        self._snapshot.state = previous
        self._notify()
        return DecisionResult(decision)

    # ------------------------------------------------------------------
    # State commands
    # ------------------------------------------------------------------

    def _set_phase(self, phase: RunPhase) -> None:
        self._snapshot.phase = phase
        self._snapshot.state = ExecutorState.from_phase(phase)
        push_context(run=phase.value)
        if phase.terminal:
            self._snapshot.active_tile = None
            self._snapshot.expected_position = None
        self._notify()

    def _update_tile(self, command: UpdateTile) -> None:
        tiles = self._snapshot.tiles
        current = tiles.get(command.key)
        if current is None:
            tile = TileAddress.from_key(command.key)
            current = TileRunState(tile, self._grid.assignment(tile), TileStatus.PENDING)
        patch: dict[str, Any] = {}
        if command.status is not None:
            patch["status"] = command.status
            if command.status in (TileStatus.COMPLETED, TileStatus.PARTIAL, TileStatus.MEASURING):
                patch["error"] = None
        if command.error is not None:
            patch["error"] = command.error
        if command.warnings is not None:
            patch["warnings"] = command.warnings
        if command.metrics is not None:
            patch["metrics"] = command.metrics
        tiles[command.key] = replace(current, **patch)

        self._snapshot.active_tile = command.key
        push_context(tile=command.key)
        if self._snapshot.phase in (RunPhase.IDLE, RunPhase.MEASURING):
            self._snapshot.progress = count_progress(tiles)
        self._notify()

    def _checkpoint(self, step: StepDescriptor) -> None:
        self._snapshot.step = step
        self._notify()
        if not self._step_mode:
            return
        logger.info("Checkpoint: %s", step.label)
        if self._gate is not None:
            self._gate(step)
        else:
            self._pause_flag.set()
            self._wait_while_paused()

    def _wait_while_paused(self) -> None:
        if not self._pause_flag.is_set():
            return
        previous = self._snapshot.state
        self._snapshot.state = ExecutorState.PAUSED
        self._notify()
        while self._pause_flag.is_set() and not self._abort_flag.is_set():
            self._abort_flag.wait(_PAUSE_POLL_S)
        self._snapshot.state = previous
        self._notify()

    def _record_log(self, command: Log) -> None:
        sequence = len(self._log)
        entry = CommandLogEntry(
            id=f"log-{sequence}",
            hint=command.hint,
            phase=self._snapshot.phase,
            tile=command.tile,
            sequence=sequence,
            group=command.group,
            metadata=dict(command.metadata),
        )
        self._log.append(entry)
        if command.metadata:
            logger.info("[%s] %s %s", command.group or "-", command.hint, dict(command.metadata))
        else:
            logger.info("[%s] %s", command.group or "-", command.hint)
