"""Motor pose targets for homing and staging tiles out of the way.

While one tile is measured every other tile is parked "aside" so its
spot does not land near the tile under test.  Where "aside" is depends on
the staging strategy and the array's mounting rotation, so that
``nearest-corner`` means nearest as seen by the camera.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Literal

from mirror_control.calibration.types import TileAddress
from mirror_control.configs.loader import MotorConfig

Pose = Literal["home", "aside"]


@dataclass(frozen=True, slots=True)
class StagingConfig:
    rows: int
    cols: int
    array_rotation: int
    staging_position: str
    motor: MotorConfig


@dataclass(frozen=True, slots=True)
class AxisTargets:
    x: int
    y: int


def clamp_steps(value: float, motor: MotorConfig) -> float:
    return motor.clamp(value)


def round_steps(value: float) -> int:
    """Round half up to whole steps; non-finite values become 0."""
    if not math.isfinite(value):
        return 0
    return math.floor(value + 0.5)


def _native_orientation(rotation: int) -> bool:
    return rotation in (0, 90)


def compute_distributed_axis_target(column: int, total_cols: int, motor: MotorConfig) -> int:
    """Spread columns evenly across the motor range (midpoint for one column)."""
    cols = max(1, total_cols)
    lo, hi = motor.min_position_steps, motor.max_position_steps
    if cols == 1:
        return round_steps(clamp_steps((lo + hi) / 2, motor))
    return round_steps(clamp_steps(lo + column / (cols - 1) * (hi - lo), motor))


def compute_nearest_corner_target(tile: TileAddress, cfg: StagingConfig) -> AxisTargets:
    lo, hi = cfg.motor.min_position_steps, cfg.motor.max_position_steps
    native = _native_orientation(cfg.array_rotation)
    is_top = tile.row < (cfg.rows - 1) / 2
    is_left = tile.col < (cfg.cols - 1) / 2

    left_x, right_x = (hi, lo) if native else (lo, hi)
    top_y, bottom_y = (hi, lo) if native else (lo, hi)
    return AxisTargets(
        x=left_x if is_left else right_x,
        y=top_y if is_top else bottom_y,
    )


def compute_pose_targets(tile: TileAddress, pose: Pose, cfg: StagingConfig) -> AxisTargets:
    """Absolute step targets for moving *tile* to *pose*.

    ``home`` is always ``(0, 0)``.  ``aside`` follows ``cfg.staging_position``:

    nearest-corner
        the corner on the tile's side of the array centre.
    corner
        one fixed corner for every tile.
    bottom
        Y parked, X spread by column.
    left
        X parked, Y spread by column (also the fallback).
    """
    if pose == "home":
        return AxisTargets(0, 0)

    lo, hi = cfg.motor.min_position_steps, cfg.motor.max_position_steps
    native = _native_orientation(cfg.array_rotation)
    aside_x = hi if native else lo
    aside_y = lo if native else hi

    if cfg.staging_position == "nearest-corner":
        return compute_nearest_corner_target(tile, cfg)
    if cfg.staging_position == "corner":
        return AxisTargets(aside_x, aside_y)
    distributed = compute_distributed_axis_target(tile.col, cfg.cols, cfg.motor)
    if cfg.staging_position == "bottom":
        return AxisTargets(distributed, aside_y)
    return AxisTargets(aside_x, distributed)
