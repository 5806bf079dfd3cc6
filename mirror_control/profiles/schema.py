"""Persisted calibration profile schema (JSON, camelCase keys).

Validated with pydantic so a hand-edited or truncated profile fails fast
with the offending key.  Field names are snake_case in Python and
camelCase on disk (``gridBlueprint``, ``stepToDisplacement``, ...).

Schema history:
    1 -- projection settings stored as five angle fields
         (``wallDistance``, ``wallAngleHorizontal/Vertical``,
         ``lightAngleHorizontal/Vertical``).
    2 -- projection settings stored as orientation states (current).

Usage:
    from mirror_control.profiles import schema

    profile = schema.CalibrationProfile.model_validate(data)
    profile.model_dump(by_alias=True, mode="json")
"""

from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from mirror_control.configs.loader import ARRAY_ROTATIONS, STAGING_POSITIONS
from mirror_control.geometry.orientation import OrientationState, Vec3
from mirror_control.geometry.projection import PixelSpacing, ProjectionSettings

SCHEMA_VERSION = 2
MIN_WALL_DISTANCE_M = 1.0
MAX_WALL_DISTANCE_M = 20.0


class _Model(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ============================================================================
# GEOMETRY PRIMITIVES
# ============================================================================

class PointModel(_Model):
    """2D point in centered coordinates."""
    x: float
    y: float


class OffsetModel(_Model):
    dx: float
    dy: float


class SizeModel(_Model):
    width: float = Field(..., ge=0.0)
    height: float = Field(..., ge=0.0)


class StepRatioModel(_Model):
    """Per-axis ratio; null when the axis was not measured."""
    x: Optional[float] = None
    y: Optional[float] = None


class AxisBoundsModel(_Model):
    min: float
    max: float

    @model_validator(mode='after')
    def validate_order(self) -> "AxisBoundsModel":
        if self.min > self.max:
            raise ValueError(f"Bounds min ({self.min}) must be <= max ({self.max})")
        return self


class TileBoundsModel(_Model):
    x: AxisBoundsModel
    y: AxisBoundsModel


class Vec3Model(_Model):
    x: float
    y: float
    z: float


# ============================================================================
# MEASUREMENTS AND TILES
# ============================================================================

class BlobMeasurementModel(_Model):
    """One detected blob (centered coordinates, size as fraction of frame)."""
    x: float
    y: float
    size: float = Field(..., ge=0.0)
    response: float = 1.0
    captured_at: float = 0.0
    source_width: Optional[int] = Field(None, gt=0)
    source_height: Optional[int] = Field(None, gt=0)
    stats: Optional[Dict[str, Any]] = None


TileStatusLiteral = Literal["pending", "staged", "measuring", "completed", "partial", "failed", "skipped"]


class ProfileTile(_Model):
    """Calibration data stored per tile."""
    key: str
    row: int = Field(..., ge=0)
    col: int = Field(..., ge=0)
    status: TileStatusLiteral
    error: Optional[str] = None
    warnings: List[str] = Field(default_factory=list)
    adjusted_home: Optional[PointModel] = None
    home_offset: Optional[OffsetModel] = None
    home_measurement: Optional[BlobMeasurementModel] = None
    step_to_displacement: StepRatioModel = Field(default_factory=StepRatioModel)
    size_delta_at_step_test: Optional[float] = None
    blob_size: Optional[float] = None
    motor_reach_bounds: Optional[TileBoundsModel] = None
    footprint_bounds: Optional[TileBoundsModel] = None
    step_scale: Optional[StepRatioModel] = None

    @model_validator(mode='after')
    def validate_key(self) -> "ProfileTile":
        expected = f"{self.row}-{self.col}"
        if self.key != expected:
            raise ValueError(f"Tile key '{self.key}' does not match row/col ({expected})")
        return self


class GridBlueprintModel(_Model):
    adjusted_tile_footprint: SizeModel
    tile_gap: PointModel
    grid_origin: PointModel
    camera_origin_offset: PointModel
    source_width: int = Field(..., gt=0)
    source_height: int = Field(..., gt=0)


class GridSizeModel(_Model):
    rows: int = Field(..., ge=0)
    cols: int = Field(..., ge=0)


class StepTestSettingsModel(_Model):
    delta_steps: int = Field(..., gt=0)


class OutlierAnalysisModel(_Model):
    enabled: bool = False
    outlier_tile_keys: List[str] = Field(default_factory=list)
    outlier_count: int = Field(0, ge=0)
    median: float = 0.0
    mad: float = 0.0
    n_mad: float = 0.0
    upper_threshold: float = 0.0
    computed_tile_size: float = 0.0


class ProfileMetrics(_Model):
    total_tiles: int = Field(0, ge=0)
    completed_tiles: int = Field(0, ge=0)
    partial_tiles: int = Field(0, ge=0)
    failed_tiles: int = Field(0, ge=0)
    skipped_tiles: int = Field(0, ge=0)
    outlier_analysis: Optional[OutlierAnalysisModel] = None


# ============================================================================
# SETTINGS SNAPSHOTS
# ============================================================================

class RoiModel(_Model):
    x: float = Field(..., ge=0.0, le=1.0)
    y: float = Field(..., ge=0.0, le=1.0)
    width: float = Field(..., gt=0.0, le=1.0)
    height: float = Field(..., gt=0.0, le=1.0)


class CalibrationSettingsModel(_Model):
    """Calibration settings the profile was recorded with."""
    delta_steps: int = Field(..., gt=0)
    grid_gap_normalized: float = Field(0.0, ge=0.0)
    array_rotation: int = 0
    staging_position: str = "nearest-corner"
    tile_tolerance: float = Field(..., gt=0.0)
    first_tile_tolerance: float = Field(..., gt=0.0)
    robust_tile_size_enabled: bool = True
    mad_threshold: float = Field(3.0, gt=0.0)
    roi: Optional[RoiModel] = None

    @field_validator('array_rotation')
    @classmethod
    def validate_rotation(cls, v: int) -> int:
        if v not in ARRAY_ROTATIONS:
            raise ValueError(f"arrayRotation must be one of {ARRAY_ROTATIONS}, got {v}")
        return v

    @field_validator('staging_position')
    @classmethod
    def validate_staging(cls, v: str) -> str:
        if v not in STAGING_POSITIONS:
            raise ValueError(f"stagingPosition must be one of {STAGING_POSITIONS}, got '{v}'")
        return v


class OrientationStateModel(_Model):
    mode: Literal["angles", "vector"] = "angles"
    yaw: float
    pitch: float
    vector: Vec3Model

    def to_state(self) -> OrientationState:
        v = self.vector
        return OrientationState(self.mode, self.yaw, self.pitch, Vec3(v.x, v.y, v.z))

    @classmethod
    def from_state(cls, state: OrientationState) -> "OrientationStateModel":
        v = state.vector
        return cls(mode=state.mode, yaw=state.yaw, pitch=state.pitch, vector=Vec3Model(x=v.x, y=v.y, z=v.z))


class ProjectionSettingsModel(_Model):
    """Projection scene (schema 2)."""
    wall_distance: float = Field(..., ge=MIN_WALL_DISTANCE_M, le=MAX_WALL_DISTANCE_M)
    wall_orientation: OrientationStateModel
    sun_orientation: OrientationStateModel
    world_up_orientation: OrientationStateModel
    projection_offset: float = 0.0
    pixel_spacing: Tuple[float, float] = (0.05, 0.05)
    sun_angular_diameter_deg: float = Field(0.53, ge=0.0)
    slope_blur_sigma_deg: float = Field(0.1, ge=0.0)

    @field_validator('pixel_spacing')
    @classmethod
    def validate_spacing(cls, v: Tuple[float, float]) -> Tuple[float, float]:
        if v[0] <= 0 or v[1] <= 0:
            raise ValueError(f"pixelSpacing must be positive, got {v}")
        return v

    def to_settings(self) -> ProjectionSettings:
        return ProjectionSettings(
            wall_distance=self.wall_distance,
            wall_orientation=self.wall_orientation.to_state(),
            sun_orientation=self.sun_orientation.to_state(),
            world_up_orientation=self.world_up_orientation.to_state(),
            projection_offset=self.projection_offset,
            pixel_spacing=PixelSpacing(*self.pixel_spacing),
            sun_angular_diameter_deg=self.sun_angular_diameter_deg,
            slope_blur_sigma_deg=self.slope_blur_sigma_deg,
        )

    @classmethod
    def from_settings(cls, settings: ProjectionSettings) -> "ProjectionSettingsModel":
        return cls(
            wall_distance=settings.wall_distance,
            wall_orientation=OrientationStateModel.from_state(settings.wall_orientation),
            sun_orientation=OrientationStateModel.from_state(settings.sun_orientation),
            world_up_orientation=OrientationStateModel.from_state(settings.world_up_orientation),
            projection_offset=settings.projection_offset,
            pixel_spacing=(settings.pixel_spacing.x, settings.pixel_spacing.y),
            sun_angular_diameter_deg=settings.sun_angular_diameter_deg,
            slope_blur_sigma_deg=settings.slope_blur_sigma_deg,
        )


# ============================================================================
# PROFILE
# ============================================================================

class CalibrationProfile(_Model):
    """Complete persisted calibration profile."""
    schema_version: int = SCHEMA_VERSION
    id: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)
    created_at: str
    updated_at: Optional[str] = None
    grid_size: GridSizeModel
    grid_blueprint: Optional[GridBlueprintModel] = None
    step_test_settings: StepTestSettingsModel
    grid_state_fingerprint: Optional[str] = None
    tiles: Dict[str, ProfileTile] = Field(default_factory=dict)
    metrics: ProfileMetrics = Field(default_factory=ProfileMetrics)
    calibration_settings: Optional[CalibrationSettingsModel] = None
    projection_settings: Optional[ProjectionSettingsModel] = None

    @field_validator('schema_version')
    @classmethod
    def validate_schema(cls, v: int) -> int:
        if v != SCHEMA_VERSION:
            raise ValueError(f"Expected schemaVersion {SCHEMA_VERSION}, got {v}")
        return v

    @model_validator(mode='after')
    def validate_tiles(self) -> "CalibrationProfile":
        rows, cols = self.grid_size.rows, self.grid_size.cols
        for key, tile in self.tiles.items():
            if key != tile.key:
                raise ValueError(f"Tile entry '{key}' holds tile '{tile.key}'")
            if tile.row >= rows or tile.col >= cols:
                raise ValueError(f"Tile {key} outside {rows}x{cols} grid")
        return self
