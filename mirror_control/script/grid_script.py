"""Run-level calibration scripts.

``grid_calibration_script``
    Home everything, park every tile aside, then bring tiles home one at a
    time and calibrate them.  The first calibrated tile seeds the per-step
    ratios used to place later search windows.  Once all tiles are done the
    blueprint is computed and every completed tile is driven onto its ideal
    grid position in a single batch.

``single_tile_recalibration_script``
    Recalibrate one tile against an existing summary, keeping the existing
    blueprint when there is one.
"""

from __future__ import annotations

import logging
from typing import Mapping

from mirror_control.calibration.blueprint import compute_calibration_summary
from mirror_control.calibration.expected_position import TileMeasurement
from mirror_control.calibration.profile_merger import (
    extract_existing_measurements,
    extract_first_tile_per_step,
    merge_tile_result,
)
from mirror_control.calibration.step_test import compute_alignment_target_steps
from mirror_control.calibration.types import (
    CalibrationSummary,
    RunPhase,
    RunProgress,
    StepToDisplacement,
    TileAddress,
    TileCalibrationMetrics,
    TileCalibrationResult,
    TileStatus,
)
from mirror_control.script.commands import (
    AxisMove,
    Checkpoint,
    HomeAll,
    MoveAxesBatch,
    MoveTilePose,
    MoveTilesBatch,
    Script,
    StepDescriptor,
    TilePoseMove,
    UpdatePhase,
    UpdateProgress,
    UpdateSummary,
    UpdateTile,
    emit,
    log,
)
from mirror_control.script.context import ScriptContext, TileDescriptor, tile_label
from mirror_control.script.tile_calibration import ABORT, calibrate_tile

logger = logging.getLogger(__name__)


def _metrics_from(result: TileCalibrationResult) -> TileCalibrationMetrics:
    return TileCalibrationMetrics(
        home=result.home_measurement,
        home_offset=result.home_offset,
        adjusted_home=result.adjusted_home,
        step_to_displacement=result.step_to_displacement,
        size_delta_at_step_test=result.size_delta_at_step_test,
    )


def _home_and_stage(ctx: ScriptContext, tiles: list[TileDescriptor], hint: str) -> Script[None]:
    macs = ctx.mac_addresses(tiles)
    yield from emit(UpdatePhase(RunPhase.HOMING))
    yield from log(hint, None, "homing", mac_addresses=list(macs))
    yield from emit(HomeAll(macs))
    yield from emit(Checkpoint(StepDescriptor("home-all", "Home all tiles")))

    yield from emit(UpdatePhase(RunPhase.STAGING))
    yield from log("Moving tiles aside", None, "staging")
    yield from emit(MoveTilesBatch(tuple(TilePoseMove(d.tile, "aside") for d in tiles)))
    for d in tiles:
        yield from emit(UpdateTile(d.tile.key, status=TileStatus.STAGED))
    yield from emit(Checkpoint(StepDescriptor("stage-all", "Move tiles aside")))


def _publish_summary(summary: CalibrationSummary) -> Script[None]:
    yield from emit(UpdateSummary(summary))
    for key, tile in summary.tiles.items():
        yield from emit(
            UpdateTile(key, status=tile.status, error=tile.error, metrics=_metrics_from(tile))
        )


def align_tiles(
    ctx: ScriptContext, tiles: list[TileDescriptor], summary: CalibrationSummary,
) -> Script[None]:
    """Drive every completed tile onto its blueprint position.

    Targets are the steps that cancel each tile's home offset.  All moves go
    out as one ``MOVE_AXES_BATCH``.  Nothing happens without a blueprint.
    """
    if summary.grid_blueprint is None:
        return

    yield from emit(UpdatePhase(RunPhase.ALIGNING))
    yield from log("Aligning tiles to grid", None, "align")

    moves: list[AxisMove] = []
    motor = ctx.config.motor
    for d in tiles:
        result = summary.tiles.get(d.tile.key)
        if result is None or result.status != TileStatus.COMPLETED or result.home_offset is None:
            continue
        per_step = result.step_to_displacement or StepToDisplacement()
        target_x = compute_alignment_target_steps(-result.home_offset.dx, per_step.x, motor)
        target_y = compute_alignment_target_steps(-result.home_offset.dy, per_step.y, motor)
        if target_x is None and target_y is None:
            continue
        if d.x_motor is None or d.y_motor is None:
            continue
        yield from log(
            f"Aligning {d.label}: X={target_x or 0}, Y={target_y or 0}", d.tile, "align",
        )
        if target_x is not None:
            moves.append(AxisMove(d.x_motor, target_x))
        if target_y is not None:
            moves.append(AxisMove(d.y_motor, target_y))

    if moves:
        yield from emit(MoveAxesBatch(tuple(moves)))
    yield from emit(Checkpoint(StepDescriptor("align-grid", "Align tiles to grid")))


# ---------------------------------------------------------------------------
# Full grid
# ---------------------------------------------------------------------------


def grid_calibration_script(ctx: ScriptContext) -> Script[None]:
    """Calibrate every tile that has both motors assigned."""
    tiles = ctx.calibratable()
    if not tiles:
        yield from log("No calibratable tiles (every tile is missing motors)", None, "error")
        yield from emit(UpdatePhase(RunPhase.ERROR))
        return

    yield from _home_and_stage(ctx, tiles, "Homing all motors")
    yield from emit(UpdatePhase(RunPhase.MEASURING))

    results: dict[str, TileCalibrationResult] = {}
    completed: list[TileMeasurement] = []
    first_per_step: StepToDisplacement | None = None
    progress = RunProgress(total=len(tiles))

    for d in tiles:
        yield from emit(MoveTilePose(d.tile, "home"))
        outcome = yield from calibrate_tile(
            ctx,
            d,
            is_first_tile=first_per_step is None,
            first_tile_per_step=first_per_step or StepToDisplacement(),
            completed=completed,
        )
        if outcome == ABORT:
            yield from emit(UpdatePhase(RunPhase.ABORTED))
            yield from log(f"Calibration stopped at {d.label}", d.tile, "abort")
            return

        results[d.tile.key] = outcome.result
        if outcome.status == TileStatus.SKIPPED:
            progress = RunProgress(
                progress.total, progress.completed, progress.failed, progress.skipped + 1,
            )
        else:
            progress = RunProgress(
                progress.total, progress.completed + 1, progress.failed, progress.skipped,
            )
            home = outcome.home_measurement
            if home is not None:
                completed.append(TileMeasurement(d.tile.row, d.tile.col, home.x, home.y))
            if first_per_step is None:
                first_per_step = outcome.result.step_to_displacement
        yield from emit(MoveTilePose(d.tile, "aside"))
        yield from emit(UpdateProgress(progress))

    yield from log("Computing grid blueprint", None, "summary")
    summary = compute_calibration_summary(results, ctx.rows, ctx.cols, ctx.config)
    yield from _publish_summary(summary)
    yield from align_tiles(ctx, tiles, summary)

    yield from emit(UpdateProgress(progress))
    yield from emit(UpdatePhase(RunPhase.COMPLETED))
    yield from log("Calibration complete", None, "complete", **_counts(summary.tiles))


def _counts(tiles: Mapping[str, TileCalibrationResult]) -> dict[str, int]:
    counts: dict[str, int] = {}
    for result in tiles.values():
        counts[result.status.value] = counts.get(result.status.value, 0) + 1
    return counts


# ---------------------------------------------------------------------------
# Single tile
# ---------------------------------------------------------------------------


def single_tile_recalibration_script(
    ctx: ScriptContext, target: TileAddress, existing: CalibrationSummary,
) -> Script[None]:
    """Recalibrate *target* and fold the result into *existing*."""
    tiles = ctx.calibratable()
    descriptor = next((d for d in ctx.descriptors() if d.tile == target), None)
    if descriptor is None:
        yield from log(f"Target tile {target.key} not found in grid", None, "error")
        yield from emit(UpdatePhase(RunPhase.ERROR))
        return
    if not descriptor.calibratable:
        yield from log(f"Target tile {target.key} is not calibratable (missing motors)", None, "error")
        yield from emit(UpdatePhase(RunPhase.ERROR))
        return

    for d in tiles:
        previous = existing.tiles.get(d.tile.key)
        if previous is None:
            continue
        yield from emit(
            UpdateTile(
                d.tile.key,
                status=TileStatus.PENDING if d.tile == target else previous.status,
                metrics=_metrics_from(previous),
            )
        )

    yield from _home_and_stage(ctx, tiles, "Homing all motors for recalibration")
    yield from emit(UpdatePhase(RunPhase.MEASURING))
    yield from log(f"Recalibrating tile {target.key}", target, "measure")
    yield from emit(MoveTilePose(target, "home"))

    outcome = yield from calibrate_tile(
        ctx,
        descriptor,
        is_first_tile=False,
        first_tile_per_step=extract_first_tile_per_step(existing),
        completed=extract_existing_measurements(existing, exclude_key=target.key),
    )
    if outcome == ABORT:
        yield from emit(UpdatePhase(RunPhase.ABORTED))
        yield from log(f"Recalibration of {target.key} stopped", target, "abort")
        return
    if outcome.status == TileStatus.SKIPPED:
        yield from emit(UpdatePhase(RunPhase.ERROR))
        yield from log(f"Recalibration skipped for tile {target.key}", target, "error")
        return

    yield from emit(MoveTilePose(target, "aside"))
    yield from log("Recomputing grid with updated measurements", None, "summary")
    _, summary = merge_tile_result(existing, outcome.result, ctx.rows, ctx.cols, ctx.config)
    yield from _publish_summary(summary)
    yield from align_tiles(ctx, tiles, summary)

    yield from emit(UpdateProgress(RunProgress(total=1, completed=1)))
    yield from emit(UpdatePhase(RunPhase.COMPLETED))
    yield from log(
        f"Recalibration complete for tile {tile_label(target)}", target, "complete",
        status=outcome.status.value,
    )
