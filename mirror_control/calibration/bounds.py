"""Motor-reachable and footprint bounds per tile, in centered coordinates.

Two kinds of bounds exist:

- *motor reach*: the image of the motor's step range under the measured
  displacement-per-step ratio.  These describe where the spot can go.
- *footprint*: the tile's cell in the grid blueprint.  These describe
  where the tile appears.

Merging reach bounds from several sources uses intersection (the range
every source agrees is safe).  Footprints are only ever unioned into reach
bounds, for display.
"""

from __future__ import annotations

from mirror_control.calibration.types import (
    AxisBounds,
    GridBlueprint,
    StepToDisplacement,
    TileBounds,
)
from mirror_control.configs.loader import MotorConfig

STEP_EPSILON = 1e-9


def _clamp_normalized(value: float) -> float:
    return min(1.0, max(-1.0, value))


def compute_axis_bounds(
    center: float | None,
    center_steps: float | None,
    per_step: float | None,
    motor: MotorConfig,
) -> AxisBounds | None:
    """Map the motor's step range to a centered interval.

    Returns None when any input is missing or ``|per_step|`` is below
    :data:`STEP_EPSILON`.  Endpoints are clamped to [-1, 1] and ordered.
    """
    if center is None or center_steps is None or per_step is None:
        return None
    if abs(per_step) < STEP_EPSILON:
        return None
    a = _clamp_normalized(center + (motor.min_position_steps - center_steps) * per_step)
    b = _clamp_normalized(center + (motor.max_position_steps - center_steps) * per_step)
    return AxisBounds(min(a, b), max(a, b))


def compute_tile_bounds(
    x: float,
    y: float,
    steps_x: float | None,
    steps_y: float | None,
    step_to_displacement: StepToDisplacement,
    motor: MotorConfig,
) -> TileBounds | None:
    """Bounds for a tile whose position ``(x, y)`` was observed at ``(steps_x, steps_y)``."""
    bx = compute_axis_bounds(x, steps_x, step_to_displacement.x, motor)
    by = compute_axis_bounds(y, steps_y, step_to_displacement.y, motor)
    if bx is None or by is None:
        return None
    return TileBounds(bx, by)


def compute_live_tile_bounds(
    home_x: float, home_y: float, step_to_displacement: StepToDisplacement, motor: MotorConfig,
) -> TileBounds | None:
    """Bounds around a home position measured with both motors at step 0."""
    return compute_tile_bounds(home_x, home_y, 0, 0, step_to_displacement, motor)


def compute_blueprint_footprint_bounds(blueprint: GridBlueprint, row: int, col: int) -> TileBounds:
    """Cell ``(row, col)`` of the blueprint, converted back to centered units."""
    avg_dim = (blueprint.source_width + blueprint.source_height) / 2
    iso_x = avg_dim / blueprint.source_width
    iso_y = avg_dim / blueprint.source_height

    width = blueprint.adjusted_tile_footprint.width
    height = blueprint.adjusted_tile_footprint.height
    min_x = blueprint.grid_origin.x + col * (width + blueprint.tile_gap.x) * iso_x
    min_y = blueprint.grid_origin.y + row * (height + blueprint.tile_gap.y) * iso_y
    return TileBounds(
        AxisBounds(min_x, min_x + width * iso_x),
        AxisBounds(min_y, min_y + height * iso_y),
    )


def merge_bounds_intersection(current: TileBounds | None, candidate: TileBounds) -> TileBounds | None:
    """Tightest range common to both; None when they do not overlap."""
    if current is None:
        return candidate
    min_x = max(current.x.min, candidate.x.min)
    max_x = min(current.x.max, candidate.x.max)
    min_y = max(current.y.min, candidate.y.min)
    max_y = min(current.y.max, candidate.y.max)
    if min_x > max_x or min_y > max_y:
        return None
    return TileBounds(AxisBounds(min_x, max_x), AxisBounds(min_y, max_y))


def merge_bounds_union(current: TileBounds | None, candidate: TileBounds) -> TileBounds:
    if current is None:
        return candidate
    return TileBounds(
        AxisBounds(min(current.x.min, candidate.x.min), max(current.x.max, candidate.x.max)),
        AxisBounds(min(current.y.min, candidate.y.min), max(current.y.max, candidate.y.max)),
    )


def merge_with_blueprint_footprint(
    bounds: TileBounds | None, blueprint: GridBlueprint | None, row: int, col: int,
) -> TileBounds | None:
    if blueprint is None:
        return bounds
    return merge_bounds_union(bounds, compute_blueprint_footprint_bounds(blueprint, row, col))
