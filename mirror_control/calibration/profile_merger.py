"""Fold recalibrated tiles back into an existing calibration summary.

When the existing summary has a blueprint the blueprint is kept as-is and
only the new tiles are re-derived against it, so recalibrating one tile
never moves the others.  Without a blueprint the whole summary is
recomputed.
"""

from __future__ import annotations

from dataclasses import replace
from typing import Sequence

from mirror_control.calibration.blueprint import compute_calibration_summary, derive_tile_summary
from mirror_control.calibration.expected_position import TileMeasurement
from mirror_control.calibration.types import (
    CalibrationSummary,
    StepToDisplacement,
    TileAddress,
    TileCalibrationResult,
    TileStatus,
)
from mirror_control.configs.loader import ArrayConfig

_USABLE = (TileStatus.COMPLETED, TileStatus.PARTIAL)


def extract_first_tile_per_step(summary: CalibrationSummary) -> StepToDisplacement:
    """Per-step ratios of the first usable tile in ``(row, col)`` order."""
    ordered = sorted(summary.tiles.values(), key=lambda r: r.tile)
    for result in ordered:
        if result.status in _USABLE and result.step_to_displacement is not None:
            return result.step_to_displacement
    return StepToDisplacement()


def extract_existing_measurements(
    summary: CalibrationSummary, exclude_key: str | None = None,
) -> list[TileMeasurement]:
    """Usable home positions, converted back to raw camera coordinates."""
    offset = summary.grid_blueprint.camera_origin_offset if summary.grid_blueprint else None
    ox, oy = (offset.x, offset.y) if offset is not None else (0.0, 0.0)
    measurements = []
    for key, result in summary.tiles.items():
        if key == exclude_key or result.status not in _USABLE:
            continue
        if result.home_measurement is None:
            continue
        measurements.append(
            TileMeasurement(
                result.tile.row,
                result.tile.col,
                result.home_measurement.x + ox,
                result.home_measurement.y + oy,
            )
        )
    return measurements


def extract_tile_addresses(summary: CalibrationSummary) -> list[TileAddress]:
    return [TileAddress.from_key(key) for key in summary.tiles]


def merge_tile_results(
    summary: CalibrationSummary,
    new_results: Sequence[TileCalibrationResult],
    rows: int,
    cols: int,
    config: ArrayConfig,
) -> tuple[dict[str, TileCalibrationResult], CalibrationSummary]:
    """Merge *new_results* into *summary*.

    Returns
    -------
    tuple[dict, CalibrationSummary]
        The raw per-tile results (existing plus new) and the updated summary.
    """
    results = dict(summary.tiles)
    for result in new_results:
        results[result.tile.key] = result

    blueprint = summary.grid_blueprint
    if blueprint is None:
        return results, compute_calibration_summary(results, rows, cols, config)

    tiles = dict(summary.tiles)
    for result in new_results:
        tiles[result.tile.key] = derive_tile_summary(result, blueprint, config)
    return results, replace(summary, tiles=tiles)


def merge_tile_result(
    summary: CalibrationSummary,
    new_result: TileCalibrationResult,
    rows: int,
    cols: int,
    config: ArrayConfig,
) -> tuple[dict[str, TileCalibrationResult], CalibrationSummary]:
    return merge_tile_results(summary, [new_result], rows, cols, config)
