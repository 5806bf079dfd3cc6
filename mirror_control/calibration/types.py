"""Value types shared by the calibration math, scripts and executor.

Coordinates
-----------
centered
    Blob positions as reported by the camera capability, roughly [-1, 1]
    on both axes with (0, 0) at the frame centre.
viewport
    [0, 1] on both axes, origin top-left.  Used for search windows.
normalized
    Grid fraction, used only by the reflection solver's assignment.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Mapping

# ---------------------------------------------------------------------------
# Measurements
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class BlobMeasurement:
    """A detected light spot in centered coordinates."""

    x: float
    y: float
    size: float
    response: float = 1.0
    captured_at: float = 0.0
    source_width: int | None = None
    source_height: int | None = None
    stats: Mapping[str, Any] | None = None

    def shifted(self, dx: float, dy: float) -> BlobMeasurement:
        """Copy moved by ``(dx, dy)``; used to recentre against the grid.

        A positional ``stats["median"]`` moves with the spot.
        """
        stats = self.stats
        median = stats.get("median") if stats is not None else None
        if isinstance(median, Mapping) and "x" in median and "y" in median:
            stats = {
                **stats,
                "median": {**median, "x": median["x"] + dx, "y": median["y"] + dy},
            }
        return replace(self, x=self.x + dx, y=self.y + dy, stats=stats)


@dataclass(frozen=True, slots=True)
class Point2:
    x: float
    y: float


@dataclass(frozen=True, slots=True)
class HomeOffset:
    """Measured home minus the blueprint's ideal home, centered units."""

    dx: float
    dy: float


@dataclass(frozen=True, slots=True)
class StepToDisplacement:
    """Centered displacement per motor step; None when unknown."""

    x: float | None = None
    y: float | None = None


# ---------------------------------------------------------------------------
# Bounds and blueprint
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class AxisBounds:
    min: float
    max: float

    def __post_init__(self) -> None:
        if self.min > self.max:
            raise ValueError(f"AxisBounds min {self.min} exceeds max {self.max}")


@dataclass(frozen=True, slots=True)
class TileBounds:
    x: AxisBounds
    y: AxisBounds


@dataclass(frozen=True, slots=True)
class TileFootprint:
    width: float
    height: float


@dataclass(frozen=True, slots=True)
class GridBlueprint:
    """Estimated physical layout of the array as seen by the camera.

    ``grid_origin`` is the top-left corner of tile (0, 0) after the grid has
    been recentred around its bounding box; ``camera_origin_offset`` is the
    shift that was applied to every measurement to get there.
    """

    adjusted_tile_footprint: TileFootprint
    tile_gap: Point2
    grid_origin: Point2
    camera_origin_offset: Point2
    source_width: int
    source_height: int

    @property
    def spacing(self) -> Point2:
        return Point2(
            self.adjusted_tile_footprint.width + self.tile_gap.x,
            self.adjusted_tile_footprint.height + self.tile_gap.y,
        )


@dataclass(frozen=True, slots=True)
class OutlierAnalysis:
    enabled: bool
    outlier_tile_keys: tuple[str, ...] = ()
    outlier_count: int = 0
    median: float = 0.0
    mad: float = 0.0
    n_mad: float = 0.0
    upper_threshold: float = 0.0
    computed_tile_size: float = 0.0


# ---------------------------------------------------------------------------
# Tiles and motors
# ---------------------------------------------------------------------------


class TileStatus(str, Enum):
    PENDING = "pending"
    STAGED = "staged"
    MEASURING = "measuring"
    COMPLETED = "completed"
    PARTIAL = "partial"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass(frozen=True, slots=True, order=True)
class TileAddress:
    row: int
    col: int

    def __post_init__(self) -> None:
        if self.row < 0 or self.col < 0:
            raise ValueError(f"tile indices must be non-negative, got ({self.row}, {self.col})")

    @property
    def key(self) -> str:
        return f"{self.row}-{self.col}"

    @classmethod
    def from_key(cls, key: str) -> TileAddress:
        row, _, col = key.partition("-")
        return cls(int(row), int(col))


@dataclass(frozen=True, slots=True)
class MotorRef:
    """One stepper axis on a motor controller node."""

    mac: str
    motor_id: int


@dataclass(frozen=True, slots=True)
class TileAssignment:
    x: MotorRef | None = None
    y: MotorRef | None = None

    @property
    def calibratable(self) -> bool:
        return self.x is not None and self.y is not None


@dataclass(frozen=True, slots=True)
class GridConfig:
    """Grid dimensions plus which motors drive each tile.

    Tiles missing from ``assignments`` have no motors.
    """

    rows: int
    cols: int
    assignments: Mapping[str, TileAssignment] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.rows < 0 or self.cols < 0:
            raise ValueError(f"grid size must be non-negative, got {self.rows}x{self.cols}")

    def tiles(self) -> list[TileAddress]:
        return [TileAddress(r, c) for r in range(self.rows) for c in range(self.cols)]

    def assignment(self, tile: TileAddress) -> TileAssignment:
        return self.assignments.get(tile.key, TileAssignment())


# ---------------------------------------------------------------------------
# Calibration results
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class TileCalibrationMetrics:
    home: BlobMeasurement | None = None
    home_offset: HomeOffset | None = None
    adjusted_home: Point2 | None = None
    step_to_displacement: StepToDisplacement | None = None
    size_delta_at_step_test: float | None = None


@dataclass(frozen=True, slots=True)
class TileCalibrationResult:
    """Finalised (or in-flight) calibration data for one tile."""

    tile: TileAddress
    status: TileStatus
    error: str | None = None
    warnings: tuple[str, ...] = ()
    home_measurement: BlobMeasurement | None = None
    home_offset: HomeOffset | None = None
    adjusted_home: Point2 | None = None
    step_to_displacement: StepToDisplacement | None = None
    size_delta_at_step_test: float | None = None
    motor_reach_bounds: TileBounds | None = None
    footprint_bounds: TileBounds | None = None
    step_scale: StepToDisplacement | None = None


@dataclass(frozen=True, slots=True)
class CalibrationSummary:
    """Everything derived from one run: blueprint plus per-tile results."""

    grid_blueprint: GridBlueprint | None
    source_width: int | None
    source_height: int | None
    delta_steps: int
    tiles: Mapping[str, TileCalibrationResult]
    outlier_analysis: OutlierAnalysis


# ---------------------------------------------------------------------------
# Runner state
# ---------------------------------------------------------------------------


class RunPhase(str, Enum):
    IDLE = "idle"
    HOMING = "homing"
    STAGING = "staging"
    MEASURING = "measuring"
    ALIGNING = "aligning"
    PAUSED = "paused"
    ABORTED = "aborted"
    COMPLETED = "completed"
    ERROR = "error"

    @property
    def terminal(self) -> bool:
        return self in (RunPhase.ABORTED, RunPhase.COMPLETED, RunPhase.ERROR)


@dataclass(frozen=True, slots=True)
class TileRunState:
    tile: TileAddress
    assignment: TileAssignment
    status: TileStatus
    error: str | None = None
    warnings: tuple[str, ...] = ()
    metrics: TileCalibrationMetrics | None = None


@dataclass(frozen=True, slots=True)
class RunProgress:
    total: int = 0
    completed: int = 0
    failed: int = 0
    skipped: int = 0


MISSING_MOTORS_ERROR = "Tile is missing X/Y motor assignments"


def create_baseline_tile_states(grid: GridConfig) -> dict[str, TileRunState]:
    """Initial per-tile state: ``pending`` when both motors exist, else ``skipped``."""
    states: dict[str, TileRunState] = {}
    for tile in grid.tiles():
        assignment = grid.assignment(tile)
        if assignment.calibratable:
            states[tile.key] = TileRunState(tile, assignment, TileStatus.PENDING)
        else:
            states[tile.key] = TileRunState(
                tile, assignment, TileStatus.SKIPPED, error=MISSING_MOTORS_ERROR,
            )
    return states


def count_progress(states: Mapping[str, TileRunState]) -> RunProgress:
    calibratable = [s for s in states.values() if s.assignment.calibratable]
    return RunProgress(
        total=len(calibratable),
        completed=sum(
            1 for s in calibratable
            if s.status in (TileStatus.COMPLETED, TileStatus.PARTIAL)
        ),
        failed=sum(1 for s in calibratable if s.status == TileStatus.FAILED),
        skipped=sum(1 for s in states.values() if s.status == TileStatus.SKIPPED),
    )
