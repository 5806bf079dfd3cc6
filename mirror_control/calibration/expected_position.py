"""Where to look for the next tile's blob.

The very first tile is searched for around the ROI centre.  After that,
completed home measurements are mapped into camera (row, col) space using
the array's mounting rotation, spacing is estimated from camera-adjacent
pairs only, and the next tile's position is extrapolated from the fitted
origin.  All outputs are viewport coordinates.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence

from mirror_control.calibration.types import Point2
from mirror_control.configs.loader import RoiConfig
from mirror_control.geometry.rotation import validate_rotation

DEFAULT_TILE_SPACING = 0.15


@dataclass(frozen=True, slots=True)
class TileMeasurement:
    """A completed home position, centered coordinates."""

    row: int
    col: int
    x: float
    y: float


@dataclass(frozen=True, slots=True)
class GridEstimate:
    origin_x: float
    origin_y: float
    spacing_x: float
    spacing_y: float


@dataclass(frozen=True, slots=True)
class ExpectedPositionConfig:
    rows: int
    cols: int
    array_rotation: int
    roi: RoiConfig


def centered_to_viewport(x: float, y: float) -> Point2:
    return Point2((x + 1) / 2, (y + 1) / 2)


def viewport_to_centered(x: float, y: float) -> Point2:
    return Point2(x * 2 - 1, y * 2 - 1)


def transform_tile_to_camera(
    row: int, col: int, rows: int, cols: int, rotation: int,
) -> tuple[int, int]:
    """Map a logical tile to its ``(camera_row, camera_col)``."""
    validate_rotation(rotation)
    if rotation == 90:
        return col, rows - 1 - row
    if rotation == 180:
        return rows - 1 - row, cols - 1 - col
    if rotation == 270:
        return cols - 1 - col, row
    return row, col


def estimate_grid_from_measurements(
    measurements: Sequence[TileMeasurement], rows: int, cols: int, rotation: int,
) -> GridEstimate:
    """Fit origin and spacing to completed measurements.

    Only pairs exactly one camera row or column apart contribute to the
    spacing.  Without such a pair :data:`DEFAULT_TILE_SPACING` is assumed.
    """
    if not measurements:
        raise ValueError("at least one measurement is required")

    cam = []
    for m in measurements:
        cam_row, cam_col = transform_tile_to_camera(m.row, m.col, rows, cols, rotation)
        viewport = centered_to_viewport(m.x, m.y)
        cam.append((cam_row, cam_col, viewport.x, viewport.y))

    spacing_x = spacing_y = DEFAULT_TILE_SPACING
    if len(cam) > 1:
        dx: list[float] = []
        dy: list[float] = []
        for i, (ra, ca, xa, ya) in enumerate(cam):
            for rb, cb, xb, yb in cam[i + 1:]:
                if ra == rb and abs(ca - cb) == 1:
                    dx.append(abs(xa - xb))
                if ca == cb and abs(ra - rb) == 1:
                    dy.append(abs(ya - yb))
        if dx:
            spacing_x = sum(dx) / len(dx)
        if dy:
            spacing_y = sum(dy) / len(dy)

    origin_x = sum(x - c * spacing_x for _, c, x, _ in cam) / len(cam)
    origin_y = sum(y - r * spacing_y for r, _, _, y in cam) / len(cam)
    return GridEstimate(origin_x, origin_y, spacing_x, spacing_y)


def compute_first_tile_expected(roi: RoiConfig) -> Point2:
    cx, cy = roi.center
    return Point2(cx, cy)


def compute_expected_from_grid(
    row: int, col: int, estimate: GridEstimate, rows: int, cols: int, rotation: int,
) -> Point2:
    cam_row, cam_col = transform_tile_to_camera(row, col, rows, cols, rotation)
    return Point2(
        estimate.origin_x + cam_col * estimate.spacing_x,
        estimate.origin_y + cam_row * estimate.spacing_y,
    )


def compute_expected_blob_position(
    row: int, col: int, completed: Sequence[TileMeasurement], cfg: ExpectedPositionConfig,
) -> Point2:
    """Expected viewport position of tile ``(row, col)``."""
    if not completed:
        return compute_first_tile_expected(cfg.roi)
    estimate = estimate_grid_from_measurements(completed, cfg.rows, cfg.cols, cfg.array_rotation)
    return compute_expected_from_grid(row, col, estimate, cfg.rows, cfg.cols, cfg.array_rotation)
