"""Per-tile calibration workflow as a command generator.

Measures a tile's home position, then runs the X and Y step tests.  Every
failed capture stops on an ``AWAIT_DECISION``; the script never resolves
a failure on its own.

Decisions
---------
home measurement
    ``retry`` | ``home-retry`` | ``skip`` | ``abort``.  ``skip`` finishes
    the tile as ``skipped``.
step test
    ``retry`` | ``home-retry`` | ``ignore`` | ``abort``.  ``ignore`` keeps
    going with the first calibrated tile's ratio (when known) and marks the
    tile ``partial``.

``abort`` ends the tile generator with :data:`ABORT`; callers unwind the
whole run.

Usage::

    outcome = yield from calibrate_tile(ctx, descriptor, is_first_tile=True,
                                        first_tile_per_step=StepToDisplacement(),
                                        completed=[])
    if outcome == ABORT:
        ...
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Final, Literal, Sequence, Union

from mirror_control.calibration.expected_position import (
    TileMeasurement,
    centered_to_viewport,
    compute_expected_blob_position,
)
from mirror_control.calibration.step_test import (
    AxisStepTestResult,
    combine_step_test_results,
    compute_axis_step_test_result,
    get_axis_step_delta,
)
from mirror_control.calibration.types import (
    BlobMeasurement,
    Point2,
    StepToDisplacement,
    TileCalibrationMetrics,
    TileCalibrationResult,
    TileStatus,
)
from mirror_control.geometry.rotation import Axis
from mirror_control.script.commands import (
    AxisMove,
    Checkpoint,
    DecisionOption,
    HomeTile,
    MoveAxesBatch,
    MoveAxis,
    ProtocolError,
    Script,
    StepDescriptor,
    UpdateExpectedPosition,
    UpdateTile,
    capture,
    decide,
    emit,
    log,
)
from mirror_control.script.context import ScriptContext, TileDescriptor

logger = logging.getLogger(__name__)

ABORT: Final = "abort"
Aborted = Literal["abort"]

HOME_OPTIONS = (
    DecisionOption.RETRY, DecisionOption.HOME_RETRY, DecisionOption.SKIP, DecisionOption.ABORT,
)
STEP_TEST_OPTIONS = (
    DecisionOption.RETRY, DecisionOption.HOME_RETRY, DecisionOption.IGNORE, DecisionOption.ABORT,
)


@dataclass(frozen=True, slots=True)
class TileCalibrationOutcome:
    status: TileStatus
    result: TileCalibrationResult
    home_measurement: BlobMeasurement | None = None
    x_result: AxisStepTestResult | None = None
    y_result: AxisStepTestResult | None = None
    warnings: tuple[str, ...] = ()
    interim_per_step: StepToDisplacement = field(default_factory=StepToDisplacement)


@dataclass(frozen=True, slots=True)
class _HomeSkipped:
    error: str


@dataclass(frozen=True, slots=True)
class _AxisOutcome:
    result: AxisStepTestResult | None = None
    ignored: bool = False
    interim_per_step: float | None = None
    warnings: tuple[str, ...] = ()


def _describe(m: BlobMeasurement) -> str:
    max_dim = max(m.source_width or 1, m.source_height or 1)
    return (
        f"blob={m.size / 2 * max_dim:.1f}px at ({m.x * max_dim:.1f}, {m.y * max_dim:.1f})px "
        f"[centered: x={m.x:.3f}, y={m.y:.3f}, size={m.size:.3f}] "
        f"src={m.source_width}x{m.source_height}"
    )


# ---------------------------------------------------------------------------
# Home measurement
# ---------------------------------------------------------------------------


def measure_home(
    tile: TileDescriptor, expected: Point2, tolerance: float,
) -> Script[Union[BlobMeasurement, _HomeSkipped, Aborted]]:
    address, label = tile.tile, tile.label
    yield from emit(UpdateExpectedPosition(expected, tolerance))

    while True:
        captured = yield from capture(f"Home measurement {label}", tolerance, expected)
        if captured.measurement is not None:
            yield from log(
                f"Home measurement {label}: {_describe(captured.measurement)}", address, "measure",
            )
            return captured.measurement

        error = captured.error or "Unable to detect blob at home position"
        yield from log(f"Home measurement failed for {label}", address, "measure", error=captured.error)

        decision = yield from decide("tile-failure", address, error, HOME_OPTIONS)
        if decision == DecisionOption.RETRY:
            yield from log(f"Retrying home measurement for {label}", address, "measure")
        elif decision == DecisionOption.HOME_RETRY:
            yield from log(f"Homing tile {label} before retry", address, "measure")
            yield from emit(HomeTile(address))
        elif decision == DecisionOption.SKIP:
            yield from log(f"Skipping tile {label}", address, "measure")
            return _HomeSkipped(error)
        else:
            yield from log("Calibration aborted by user", None, "abort")
            return ABORT


# ---------------------------------------------------------------------------
# Step tests
# ---------------------------------------------------------------------------


def _full_step_move(
    tile: TileDescriptor, axis: Axis, delta: int, is_first_tile: bool,
) -> Script[None]:
    """Issue the full step-test move; for Y the X motor is returned to 0."""
    motor = tile.x_motor if axis == "x" else tile.y_motor
    if motor is None:
        raise ProtocolError(f"Tile {tile.label} has no {axis} motor")
    if axis == "y" and tile.x_motor is not None:
        moves = [AxisMove(tile.x_motor, 0), AxisMove(motor, delta)]
        if is_first_tile:
            moves.reverse()
        yield from emit(MoveAxesBatch(tuple(moves)))
    else:
        yield from emit(MoveAxis(motor, delta))


def run_axis_step_test(
    ctx: ScriptContext,
    axis: Axis,
    tile: TileDescriptor,
    home: BlobMeasurement,
    is_first_tile: bool,
    first_tile_per_step: float | None,
) -> Script[Union[_AxisOutcome, Aborted]]:
    """Measure displacement per step for one axis.

    The first tile of a run first probes with a small interim delta so the
    full-step search window can be placed near where the spot will land.
    Later tiles reuse the first tile's ratio for that estimate.
    """
    motor = tile.x_motor if axis == "x" else tile.y_motor
    if motor is None:
        return _AxisOutcome()

    cal = ctx.config.calibration
    rotation = cal.array_rotation
    address, label, axis_label = tile.tile, tile.label, axis.upper()
    home_view = centered_to_viewport(home.x, home.y)

    interim_per_step: float | None = None
    if is_first_tile:
        interim_delta = get_axis_step_delta(
            axis, cal.first_tile_interim_step_delta, rotation, ctx.config.motor,
        )
        if interim_delta is not None:
            yield from log(f"{axis_label} interim step test ({interim_delta} steps)", address, "step-test")
            yield from emit(UpdateExpectedPosition(home_view, cal.first_tile_tolerance))
            yield from emit(MoveAxis(motor, interim_delta))
            interim = yield from capture(
                f"{axis_label} interim step {label}", cal.first_tile_tolerance, home_view,
            )
            if interim.measurement is not None:
                probe = compute_axis_step_test_result(home, interim.measurement, axis, interim_delta)
                interim_per_step = probe.per_step
                yield from log(
                    f"{axis_label} interim: perStep={probe.per_step}, {_describe(interim.measurement)}",
                    address,
                    "step-test",
                )
                yield from emit(
                    Checkpoint(
                        StepDescriptor(f"step-test-{axis}-interim", f"{axis_label} interim step {label}", address)
                    )
                )

    full_delta = get_axis_step_delta(axis, cal.delta_steps, rotation, ctx.config.motor)
    if full_delta is None:
        return _AxisOutcome(interim_per_step=interim_per_step)

    yield from log(f"{axis_label} full step test ({full_delta} steps)", address, "step-test")

    seed = interim_per_step if interim_per_step is not None else first_tile_per_step
    estimate = full_delta * seed if seed is not None else 0.0
    if axis == "x":
        expected = Point2(centered_to_viewport(home.x + estimate, home.y).x, home_view.y)
    else:
        expected = Point2(home_view.x, centered_to_viewport(home.x, home.y + estimate).y)
    yield from emit(UpdateExpectedPosition(expected, cal.tile_tolerance))
    yield from _full_step_move(tile, axis, full_delta, is_first_tile)

    result: AxisStepTestResult | None = None
    ignored = False
    warnings: list[str] = []
    while result is None and not ignored:
        captured = yield from capture(f"{axis_label} full step {label}", cal.tile_tolerance, expected)
        if captured.measurement is not None:
            result = compute_axis_step_test_result(home, captured.measurement, axis, full_delta)
            yield from log(
                f"{axis_label} full: displacement={result.displacement:.4f}, "
                f"perStep={result.per_step}, {_describe(captured.measurement)}",
                address,
                "step-test",
            )
            continue

        error = captured.error or f"{axis_label} step test failed: unable to detect blob"
        yield from log(f"{axis_label} step test failed for {label}", address, "step-test", error=captured.error)
        decision = yield from decide("step-test-failure", address, error, STEP_TEST_OPTIONS)

        if decision == DecisionOption.RETRY:
            yield from log(f"Retrying {axis_label} step test for {label}", address, "step-test")
        elif decision == DecisionOption.HOME_RETRY:
            yield from log(f"Homing tile {label} before {axis_label} step test retry", address, "step-test")
            yield from emit(HomeTile(address))
            yield from _full_step_move(tile, axis, full_delta, is_first_tile)
        elif decision == DecisionOption.IGNORE:
            ignored = True
            if first_tile_per_step is not None:
                result = AxisStepTestResult(displacement=0.0, per_step=first_tile_per_step, size_delta=None)
                yield from log(
                    f"{axis_label} step test ignored for {label}, using inferred "
                    f"perStep={first_tile_per_step:.6f}",
                    address,
                    "step-test",
                )
            warnings.append(f"{axis_label} step test failed: {error}")
        else:
            yield from log("Calibration aborted by user", None, "abort")
            return ABORT

    yield from emit(
        Checkpoint(StepDescriptor(f"step-test-{axis}", f"{axis_label} step test {label}", address))
    )
    return _AxisOutcome(result, ignored, interim_per_step, tuple(warnings))


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def calibrate_tile(
    ctx: ScriptContext,
    tile: TileDescriptor,
    is_first_tile: bool,
    first_tile_per_step: StepToDisplacement,
    completed: Sequence[TileMeasurement],
) -> Script[Union[TileCalibrationOutcome, Aborted]]:
    """Calibrate one tile that is already at its home pose.

    Parameters
    ----------
    ctx : ScriptContext
        Config and grid wiring.
    tile : TileDescriptor
        The tile and its motors.
    is_first_tile : bool
        Use the wide first-tile tolerance and run interim probes.
    first_tile_per_step : StepToDisplacement
        Ratios of the first calibrated tile, used to place search windows
        and to fill in ignored step tests.
    completed : sequence of TileMeasurement
        Earlier home positions (raw centered coordinates).

    Returns
    -------
    TileCalibrationOutcome | ``"abort"``
    """
    address, label = tile.tile, tile.label
    cal = ctx.config.calibration

    yield from emit(UpdateTile(address.key, status=TileStatus.MEASURING))
    yield from log(f"Measuring tile {label}", address, "measure")

    expected = compute_expected_blob_position(
        address.row, address.col, completed, ctx.expected_position_config(),
    )
    tolerance = cal.first_tile_tolerance if is_first_tile else cal.tile_tolerance

    home = yield from measure_home(tile, expected, tolerance)
    if home == ABORT:
        return ABORT
    if isinstance(home, _HomeSkipped):
        yield from emit(UpdateTile(address.key, status=TileStatus.SKIPPED, error=home.error))
        logger.info("Tile %s skipped: %s", address.key, home.error)
        return TileCalibrationOutcome(
            status=TileStatus.SKIPPED,
            result=TileCalibrationResult(address, TileStatus.SKIPPED, error=home.error),
        )
    if not isinstance(home, BlobMeasurement):
        raise ProtocolError(f"Unexpected home outcome {home!r}")

    yield from log(f"Home captured for {label}", address, "measure", x=home.x, y=home.y, size=home.size)
    yield from emit(Checkpoint(StepDescriptor("measure-home", f"Home measurement {label}", address)))

    x = yield from run_axis_step_test(ctx, "x", tile, home, is_first_tile, first_tile_per_step.x)
    if x == ABORT:
        return ABORT
    y = yield from run_axis_step_test(ctx, "y", tile, home, is_first_tile, first_tile_per_step.y)
    if y == ABORT:
        return ABORT
    if not (isinstance(x, _AxisOutcome) and isinstance(y, _AxisOutcome)):
        raise ProtocolError(f"Unexpected step test outcome {x!r}, {y!r}")

    combined = combine_step_test_results(x.result, y.result)
    status = TileStatus.PARTIAL if (x.ignored or y.ignored) else TileStatus.COMPLETED
    warnings = x.warnings + y.warnings

    yield from emit(
        UpdateTile(
            address.key,
            status=status,
            warnings=warnings or None,
            metrics=TileCalibrationMetrics(
                home=home,
                step_to_displacement=combined.step_to_displacement,
                size_delta_at_step_test=combined.size_delta_at_step_test,
            ),
        )
    )
    yield from log(f"Tile {label} complete", address, "measure")
    logger.info("Tile %s %s", address.key, status.value)

    return TileCalibrationOutcome(
        status=status,
        result=TileCalibrationResult(
            tile=address,
            status=status,
            warnings=warnings,
            home_measurement=home,
            step_to_displacement=combined.step_to_displacement,
            size_delta_at_step_test=combined.size_delta_at_step_test,
        ),
        home_measurement=home,
        x_result=x.result,
        y_result=y.result,
        warnings=warnings,
        interim_per_step=StepToDisplacement(x.interim_per_step, y.interim_per_step),
    )
