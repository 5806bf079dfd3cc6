"""Grid blueprint estimation and the per-run calibration summary.

The blueprint turns noisy per-tile home measurements into a regular grid
model: tile footprint, gap, origin and the camera offset that recentres
the grid on the frame.

Pipeline
--------
1. Tile size from blob sizes (plain max, or max after rejecting high
   outliers with median/MAD).
2. Pitch per axis from the median of neighbour deltas, measured along
   that axis only and corrected for sensor aspect ratio.
3. Tile footprint = pitch - gap (falls back to the sized tile when no
   neighbours exist).
4. Grid origin = per-axis minimum of the origins implied by every tile,
   then shifted so the grid's bounding box is centred on (0, 0).

Usage::

    from mirror_control.calibration.blueprint import compute_calibration_summary
    summary = compute_calibration_summary(results, rows=4, cols=6, config=cfg)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from typing import Mapping, Sequence

from mirror_control.calibration.bounds import (
    STEP_EPSILON,
    compute_blueprint_footprint_bounds,
    compute_live_tile_bounds,
)
from mirror_control.calibration.robust_stats import (
    DEFAULT_OUTLIER_MAD_THRESHOLD,
    OutlierDetectionResult,
    compute_median,
    detect_outliers_with_keys,
    robust_max,
)
from mirror_control.calibration.types import (
    BlobMeasurement,
    CalibrationSummary,
    GridBlueprint,
    HomeOffset,
    OutlierAnalysis,
    Point2,
    StepToDisplacement,
    TileAddress,
    TileCalibrationResult,
    TileFootprint,
    TileStatus,
)
from mirror_control.configs.loader import ArrayConfig, CalibrationConfig

logger = logging.getLogger(__name__)

DEFAULT_SOURCE_WIDTH = 1920
DEFAULT_SOURCE_HEIGHT = 1080

_MEASURED_STATUSES = (TileStatus.COMPLETED, TileStatus.PARTIAL, TileStatus.MEASURING)


@dataclass(frozen=True, slots=True)
class MeasuredTile:
    tile: TileAddress
    measurement: BlobMeasurement


@dataclass(frozen=True, slots=True)
class TileEntry:
    key: str
    size: float


# ---------------------------------------------------------------------------
# Sizing strategies
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class SizingResult:
    tile_size: float
    strategy: str
    input_count: int
    metadata: Mapping[str, object] = field(default_factory=dict)


class MaxSizingStrategy:
    """Largest blob wins."""

    name = "max"

    def compute(self, sizes: Sequence[float]) -> SizingResult:
        if not sizes:
            return SizingResult(0.0, self.name, 0)
        return SizingResult(float(max(sizes)), self.name, len(sizes))


class RobustMaxSizingStrategy:
    """Largest blob after rejecting high outliers."""

    name = "robust-max"

    def __init__(self, mad_threshold: float = DEFAULT_OUTLIER_MAD_THRESHOLD) -> None:
        self.mad_threshold = mad_threshold

    def compute(self, sizes: Sequence[float]) -> SizingResult:
        entries = [TileEntry(f"tile-{i}", s) for i, s in enumerate(sizes)]
        result, _ = self.compute_with_keys(entries)
        return result

    def compute_with_keys(
        self, entries: Sequence[TileEntry],
    ) -> tuple[SizingResult, OutlierDetectionResult[TileEntry]]:
        detection = detect_outliers_with_keys(
            entries, lambda e: e.size, self.mad_threshold, direction="high",
        )
        if not entries:
            return SizingResult(0.0, self.name, 0), detection
        tile_size = robust_max([e.size for e in entries], self.mad_threshold)
        metadata = {
            "median": detection.median,
            "mad": detection.mad,
            "n_mad": detection.n_mad,
            "upper_threshold": detection.upper_threshold,
            "outlier_count": len(detection.outliers),
            "outlier_keys": [e.key for e in detection.outliers],
        }
        return SizingResult(tile_size, self.name, len(entries), metadata), detection


def create_sizing_strategy(cfg: CalibrationConfig) -> MaxSizingStrategy | RobustMaxSizingStrategy:
    if cfg.robust_tile_size.enabled:
        return RobustMaxSizingStrategy(cfg.robust_tile_size.mad_threshold)
    return MaxSizingStrategy()


# ---------------------------------------------------------------------------
# Grid math
# ---------------------------------------------------------------------------


def compute_axis_pitch(deltas: Sequence[float]) -> float:
    """Median neighbour delta along one axis; 0 without neighbours."""
    return compute_median(deltas) if deltas else 0.0


def build_step_scale(step: StepToDisplacement | None) -> StepToDisplacement | None:
    """Steps per unit displacement (inverse of the per-step ratio)."""
    if step is None:
        return None

    def invert(per_step: float | None) -> float | None:
        if per_step is None or abs(per_step) < STEP_EPSILON:
            return None
        return 1.0 / per_step

    x, y = invert(step.x), invert(step.y)
    if x is None and y is None:
        return None
    return StepToDisplacement(x, y)


def compute_adjusted_center(blueprint: GridBlueprint, tile: TileAddress) -> Point2:
    """Where a perfect grid would place the centre of *tile*."""
    spacing = blueprint.spacing
    footprint = blueprint.adjusted_tile_footprint
    return Point2(
        blueprint.grid_origin.x + tile.col * spacing.x + footprint.width / 2,
        blueprint.grid_origin.y + tile.row * spacing.y + footprint.height / 2,
    )


def compute_home_offset(measurement: BlobMeasurement, adjusted: Point2) -> HomeOffset:
    return HomeOffset(measurement.x - adjusted.x, measurement.y - adjusted.y)


def _pitch_deltas(
    measured: Sequence[MeasuredTile], iso_x: float, iso_y: float,
) -> tuple[list[float], list[float]]:
    by_key = {m.tile.key: m.measurement for m in measured}
    deltas_x: list[float] = []
    deltas_y: list[float] = []
    for m in measured:
        right = by_key.get(f"{m.tile.row}-{m.tile.col + 1}")
        if right is not None:
            deltas_x.append(abs((right.x - m.measurement.x) * iso_x))
        down = by_key.get(f"{m.tile.row + 1}-{m.tile.col}")
        if down is not None:
            deltas_y.append(abs((down.y - m.measurement.y) * iso_y))
    return deltas_x, deltas_y


def compute_grid_blueprint(
    measured: Sequence[MeasuredTile], rows: int, cols: int, cfg: CalibrationConfig,
) -> tuple[GridBlueprint | None, OutlierAnalysis]:
    """Estimate the grid blueprint from measured home positions.

    Parameters
    ----------
    measured : sequence of MeasuredTile
        Tiles with a home measurement, in any order.
    rows, cols : int
        Full grid dimensions (sets the bounding box used for recentring).
    cfg : CalibrationConfig
        Gap, gap limits and robust sizing settings.

    Returns
    -------
    tuple[GridBlueprint | None, OutlierAnalysis]
        ``(None, empty analysis)`` when nothing was measured.
    """
    robust = cfg.robust_tile_size
    if not measured:
        return None, OutlierAnalysis(enabled=robust.enabled)

    first = measured[0].measurement
    source_width = first.source_width or DEFAULT_SOURCE_WIDTH
    source_height = first.source_height or DEFAULT_SOURCE_HEIGHT

    if robust.enabled and len(measured) > 1:
        strategy = RobustMaxSizingStrategy(robust.mad_threshold)
        sized, detection = strategy.compute_with_keys(
            [TileEntry(m.tile.key, m.measurement.size) for m in measured]
        )
        tile_size = sized.tile_size
        analysis = OutlierAnalysis(
            enabled=True,
            outlier_tile_keys=tuple(e.key for e in detection.outliers),
            outlier_count=len(detection.outliers),
            median=detection.median,
            mad=detection.mad,
            n_mad=detection.n_mad,
            upper_threshold=detection.upper_threshold,
            computed_tile_size=tile_size,
        )
        if detection.outliers:
            logger.info(
                "Rejected %d oversized blob(s) %s (median %.4f, threshold %.4f)",
                analysis.outlier_count, list(analysis.outlier_tile_keys),
                analysis.median, analysis.upper_threshold,
            )
    else:
        tile_size = MaxSizingStrategy().compute([m.measurement.size for m in measured]).tile_size
        analysis = OutlierAnalysis(
            enabled=False,
            median=tile_size,
            upper_threshold=tile_size,
            computed_tile_size=tile_size,
        )

    avg_dim = (source_width + source_height) / 2
    iso_x = source_width / avg_dim
    iso_y = source_height / avg_dim

    gap_lo, gap_hi = cfg.grid_gap_limits
    gap = min(gap_hi, max(gap_lo, cfg.grid_gap_normalized)) * 2

    deltas_x, deltas_y = _pitch_deltas(measured, iso_x, iso_y)
    pitch_x = compute_axis_pitch(deltas_x)
    pitch_y = compute_axis_pitch(deltas_y)
    if pitch_y <= 0 < pitch_x:
        pitch_y = pitch_x
    if pitch_x > 0 and pitch_y > 0:
        iso_pitch = (pitch_x + pitch_y) / 2
    else:
        iso_pitch = max(pitch_x, pitch_y, 0.0)

    width = height = tile_size
    if iso_pitch > 0:
        width = (iso_pitch - gap) / iso_x
        height = (iso_pitch - gap) / iso_y

    spacing_x = width + gap
    spacing_y = height + gap
    origin_x = min(
        m.measurement.x - (m.tile.col * spacing_x + width / 2) for m in measured
    )
    origin_y = min(
        m.measurement.y - (m.tile.row * spacing_y + height / 2) for m in measured
    )

    total_width = cols * spacing_x - gap
    total_height = rows * spacing_y - gap
    offset = Point2(origin_x + total_width / 2, origin_y + total_height / 2)

    blueprint = GridBlueprint(
        adjusted_tile_footprint=TileFootprint(width, height),
        tile_gap=Point2(gap, gap),
        grid_origin=Point2(origin_x - offset.x, origin_y - offset.y),
        camera_origin_offset=offset,
        source_width=source_width,
        source_height=source_height,
    )
    logger.debug(
        "Blueprint: pitch x=%.4f y=%.4f, footprint %.4fx%.4f, offset (%.4f, %.4f)",
        pitch_x, pitch_y, width, height, offset.x, offset.y,
    )
    return blueprint, analysis


# ---------------------------------------------------------------------------
# Summary
# ---------------------------------------------------------------------------


def measured_tiles(results: Mapping[str, TileCalibrationResult]) -> list[MeasuredTile]:
    return [
        MeasuredTile(r.tile, r.home_measurement)
        for r in results.values()
        if r.status in _MEASURED_STATUSES and r.home_measurement is not None
    ]


def derive_tile_summary(
    result: TileCalibrationResult, blueprint: GridBlueprint | None, config: ArrayConfig,
) -> TileCalibrationResult:
    """Recentre one tile against *blueprint* and fill in its derived fields."""
    measurement = result.home_measurement
    if blueprint is not None and measurement is not None:
        off = blueprint.camera_origin_offset
        measurement = measurement.shifted(-off.x, -off.y)

    if measurement is not None and result.step_to_displacement is not None:
        reach = compute_live_tile_bounds(
            measurement.x, measurement.y, result.step_to_displacement, config.motor,
        )
    else:
        reach = result.motor_reach_bounds

    footprint = result.footprint_bounds
    if footprint is None and blueprint is not None:
        footprint = compute_blueprint_footprint_bounds(blueprint, result.tile.row, result.tile.col)

    summary = replace(
        result,
        home_measurement=measurement,
        motor_reach_bounds=reach,
        footprint_bounds=footprint,
        step_scale=result.step_scale or build_step_scale(result.step_to_displacement),
    )
    if result.status != TileStatus.COMPLETED or measurement is None or blueprint is None:
        return summary

    adjusted = compute_adjusted_center(blueprint, result.tile)
    return replace(
        summary,
        adjusted_home=adjusted,
        home_offset=compute_home_offset(measurement, adjusted),
    )


def compute_calibration_summary(
    results: Mapping[str, TileCalibrationResult], rows: int, cols: int, config: ArrayConfig,
) -> CalibrationSummary:
    """Blueprint, outlier analysis and recentred per-tile results for one run."""
    measured = measured_tiles(results)
    blueprint, analysis = compute_grid_blueprint(measured, rows, cols, config.calibration)

    source_width = source_height = None
    if measured:
        first = measured[0].measurement
        source_width = first.source_width or DEFAULT_SOURCE_WIDTH
        source_height = first.source_height or DEFAULT_SOURCE_HEIGHT

    tiles = {key: derive_tile_summary(r, blueprint, config) for key, r in results.items()}
    return CalibrationSummary(
        grid_blueprint=blueprint,
        source_width=source_width,
        source_height=source_height,
        delta_steps=config.calibration.delta_steps,
        tiles=tiles,
        outlier_analysis=analysis,
    )
