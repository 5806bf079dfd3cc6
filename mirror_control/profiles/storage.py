"""Profile load/save, legacy migration and run-summary conversion.

Profiles are JSON files validated against :mod:`mirror_control.profiles.schema`.
Writes are atomic (temp file + rename).  ``schemaVersion`` values other
than the current one are rejected, except schema 1 whose projection
settings are migrated to orientation states on load.

Usage:
    from mirror_control.profiles import storage

    profile = storage.profile_from_summary(summary, name="Studio", grid=grid, config=cfg)
    storage.save_profile(profile, "profiles/studio.json")
    summary = storage.summary_from_profile(storage.load_profile("profiles/studio.json"))
"""

from __future__ import annotations

import hashlib
import json
import logging
import math
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from mirror_control.calibration.types import (
    AxisBounds,
    BlobMeasurement,
    CalibrationSummary,
    GridBlueprint,
    GridConfig,
    HomeOffset,
    OutlierAnalysis,
    Point2,
    StepToDisplacement,
    TileAddress,
    TileBounds,
    TileCalibrationResult,
    TileFootprint,
    TileStatus,
)
from mirror_control.configs.loader import ArrayConfig
from mirror_control.geometry.orientation import OrientationState
from mirror_control.geometry.projection import ProjectionSettings
from mirror_control.profiles.schema import (
    MAX_WALL_DISTANCE_M,
    MIN_WALL_DISTANCE_M,
    SCHEMA_VERSION,
    AxisBoundsModel,
    BlobMeasurementModel,
    CalibrationProfile,
    CalibrationSettingsModel,
    GridBlueprintModel,
    GridSizeModel,
    OffsetModel,
    OrientationStateModel,
    OutlierAnalysisModel,
    PointModel,
    ProfileMetrics,
    ProfileTile,
    ProjectionSettingsModel,
    RoiModel,
    SizeModel,
    StepRatioModel,
    StepTestSettingsModel,
    TileBoundsModel,
)
from mirror_control.utils.fs import atomic_write_text, load_json

logger = logging.getLogger(__name__)

LEGACY_ANGLE_LIMIT_DEG = 90.0
_LEGACY_PROJECTION_KEYS = (
    "wallDistance",
    "wallAngleHorizontal",
    "wallAngleVertical",
    "lightAngleHorizontal",
    "lightAngleVertical",
)


class ProfileError(ValueError):
    """Raised when a profile cannot be loaded or fails validation."""


# ---------------------------------------------------------------------------
# Migration
# ---------------------------------------------------------------------------


def _clamp(value: float, lo: float, hi: float) -> float:
    return min(hi, max(lo, value))


def migrate_projection_settings_v1(data: dict[str, Any]) -> dict[str, Any]:
    """Convert schema-1 angle fields into schema-2 projection settings.

    The wall angles become the wall normal and the light angles the sun
    direction, both in the forward basis.  Distance is clamped to the
    supported range and angles to +/-90 degrees; world-up gets the default.

    Raises
    ------
    ProfileError
        If any of the five legacy fields is missing or not a finite number.
    """
    values: dict[str, float] = {}
    for key in _LEGACY_PROJECTION_KEYS:
        raw = data.get(key)
        if isinstance(raw, bool) or not isinstance(raw, (int, float)) or not math.isfinite(raw):
            raise ProfileError(f"Legacy projection settings field '{key}' is missing or invalid: {raw!r}")
        values[key] = float(raw)

    def angle(key: str) -> float:
        return _clamp(values[key], -LEGACY_ANGLE_LIMIT_DEG, LEGACY_ANGLE_LIMIT_DEG)

    wall = OrientationState.from_angles(angle("wallAngleHorizontal"), angle("wallAngleVertical"), "forward")
    sun = OrientationState.from_angles(angle("lightAngleHorizontal"), angle("lightAngleVertical"), "forward")
    up = OrientationState.from_angles(0.0, -90.0, "up")

    migrated = ProjectionSettingsModel(
        wall_distance=_clamp(values["wallDistance"], MIN_WALL_DISTANCE_M, MAX_WALL_DISTANCE_M),
        wall_orientation=OrientationStateModel.from_state(wall),
        sun_orientation=OrientationStateModel.from_state(sun),
        world_up_orientation=OrientationStateModel.from_state(up),
    )
    return migrated.model_dump(by_alias=True, mode="json")


def migrate_profile(data: dict[str, Any]) -> dict[str, Any]:
    """Bring a raw profile dict to the current schema version.

    Raises
    ------
    ProfileError
        On any version other than 1 or the current one.
    """
    version = data.get("schemaVersion")
    if version == SCHEMA_VERSION:
        return data
    if version != 1:
        raise ProfileError(
            f"Unsupported profile schemaVersion {version!r} (expected {SCHEMA_VERSION})"
        )
    migrated = dict(data)
    legacy = data.get("projectionSettings")
    if isinstance(legacy, dict):
        migrated["projectionSettings"] = migrate_projection_settings_v1(legacy)
    migrated["schemaVersion"] = SCHEMA_VERSION
    logger.info("Migrated profile %s from schema 1 to %d", data.get("id"), SCHEMA_VERSION)
    return migrated


# ---------------------------------------------------------------------------
# Load / save
# ---------------------------------------------------------------------------


def parse_profile(data: Any, source: str = "<memory>") -> CalibrationProfile:
    if not isinstance(data, dict):
        raise ProfileError(f"Profile at {source} must be a JSON object, got {type(data).__name__}")
    data = migrate_profile(data)
    try:
        return CalibrationProfile.model_validate(data)
    except ValidationError as e:
        raise ProfileError(f"Profile validation failed at {source}: {e}") from e


def load_profile(path: str | Path) -> CalibrationProfile:
    """Load and validate a profile JSON file.

    Raises
    ------
    FileNotFoundError
        If *path* does not exist.
    ProfileError
        On unsupported versions, invalid JSON or schema violations.
    """
    path = Path(path)
    try:
        data = load_json(path)
    except ValueError as e:
        raise ProfileError(str(e)) from e
    return parse_profile(data, str(path))


def save_profile(profile: CalibrationProfile, path: str | Path) -> Path:
    path = Path(path)
    payload = profile.model_dump(by_alias=True, mode="json")
    atomic_write_text(path, json.dumps(payload, indent=2, sort_keys=False) + "\n")
    logger.info("Saved profile '%s' (%d tiles) to %s", profile.name, len(profile.tiles), path)
    return path


# ---------------------------------------------------------------------------
# Summary -> profile
# ---------------------------------------------------------------------------


def grid_fingerprint(grid: GridConfig) -> str:
    """Stable hash of grid size and motor wiring."""
    wiring = {
        key: [
            None if a.x is None else [a.x.mac, a.x.motor_id],
            None if a.y is None else [a.y.mac, a.y.motor_id],
        ]
        for key, a in sorted(grid.assignments.items())
    }
    blob = json.dumps({"rows": grid.rows, "cols": grid.cols, "wiring": wiring}, sort_keys=True)
    return hashlib.sha256(blob.encode("utf-8")).hexdigest()[:16]


def _point(p: Point2 | None) -> PointModel | None:
    return None if p is None else PointModel(x=p.x, y=p.y)


def _bounds(b: TileBounds | None) -> TileBoundsModel | None:
    if b is None:
        return None
    return TileBoundsModel(
        x=AxisBoundsModel(min=b.x.min, max=b.x.max),
        y=AxisBoundsModel(min=b.y.min, max=b.y.max),
    )


def _ratio(r: StepToDisplacement | None) -> StepRatioModel | None:
    return None if r is None else StepRatioModel(x=r.x, y=r.y)


def _measurement(m: BlobMeasurement | None) -> BlobMeasurementModel | None:
    if m is None:
        return None
    return BlobMeasurementModel(
        x=m.x, y=m.y, size=m.size, response=m.response, captured_at=m.captured_at,
        source_width=m.source_width, source_height=m.source_height,
        stats=dict(m.stats) if m.stats is not None else None,
    )


def _tile_model(key: str, r: TileCalibrationResult) -> ProfileTile:
    return ProfileTile(
        key=key,
        row=r.tile.row,
        col=r.tile.col,
        status=r.status.value,
        error=r.error,
        warnings=list(r.warnings),
        adjusted_home=_point(r.adjusted_home),
        home_offset=None if r.home_offset is None else OffsetModel(dx=r.home_offset.dx, dy=r.home_offset.dy),
        home_measurement=_measurement(r.home_measurement),
        step_to_displacement=_ratio(r.step_to_displacement) or StepRatioModel(),
        size_delta_at_step_test=r.size_delta_at_step_test,
        blob_size=None if r.home_measurement is None else r.home_measurement.size,
        motor_reach_bounds=_bounds(r.motor_reach_bounds),
        footprint_bounds=_bounds(r.footprint_bounds),
        step_scale=_ratio(r.step_scale),
    )


def _blueprint_model(bp: GridBlueprint | None) -> GridBlueprintModel | None:
    if bp is None:
        return None
    return GridBlueprintModel(
        adjusted_tile_footprint=SizeModel(
            width=bp.adjusted_tile_footprint.width, height=bp.adjusted_tile_footprint.height,
        ),
        tile_gap=PointModel(x=bp.tile_gap.x, y=bp.tile_gap.y),
        grid_origin=PointModel(x=bp.grid_origin.x, y=bp.grid_origin.y),
        camera_origin_offset=PointModel(x=bp.camera_origin_offset.x, y=bp.camera_origin_offset.y),
        source_width=bp.source_width,
        source_height=bp.source_height,
    )


def _calibration_settings(config: ArrayConfig) -> CalibrationSettingsModel:
    cal = config.calibration
    return CalibrationSettingsModel(
        delta_steps=cal.delta_steps,
        grid_gap_normalized=cal.grid_gap_normalized,
        array_rotation=cal.array_rotation,
        staging_position=cal.staging_position,
        tile_tolerance=cal.tile_tolerance,
        first_tile_tolerance=cal.first_tile_tolerance,
        robust_tile_size_enabled=cal.robust_tile_size.enabled,
        mad_threshold=cal.robust_tile_size.mad_threshold,
        roi=RoiModel(x=cal.roi.x, y=cal.roi.y, width=cal.roi.width, height=cal.roi.height),
    )


def profile_from_summary(
    summary: CalibrationSummary,
    *,
    name: str,
    grid: GridConfig,
    config: ArrayConfig,
    projection: ProjectionSettings | None = None,
    profile_id: str | None = None,
    created_at: datetime | None = None,
) -> CalibrationProfile:
    """Build a persistable profile from a finished run."""
    stamp = (created_at or datetime.now(timezone.utc)).isoformat()
    statuses = [t.status for t in summary.tiles.values()]
    oa = summary.outlier_analysis
    metrics = ProfileMetrics(
        total_tiles=grid.rows * grid.cols,
        completed_tiles=statuses.count(TileStatus.COMPLETED),
        partial_tiles=statuses.count(TileStatus.PARTIAL),
        failed_tiles=statuses.count(TileStatus.FAILED),
        skipped_tiles=statuses.count(TileStatus.SKIPPED),
        outlier_analysis=OutlierAnalysisModel(
            enabled=oa.enabled,
            outlier_tile_keys=list(oa.outlier_tile_keys),
            outlier_count=oa.outlier_count,
            median=oa.median,
            mad=oa.mad,
            n_mad=oa.n_mad,
            upper_threshold=oa.upper_threshold,
            computed_tile_size=oa.computed_tile_size,
        ),
    )
    return CalibrationProfile(
        schema_version=SCHEMA_VERSION,
        id=profile_id or uuid.uuid4().hex,
        name=name,
        created_at=stamp,
        updated_at=stamp,
        grid_size=GridSizeModel(rows=grid.rows, cols=grid.cols),
        grid_blueprint=_blueprint_model(summary.grid_blueprint),
        step_test_settings=StepTestSettingsModel(delta_steps=summary.delta_steps),
        grid_state_fingerprint=grid_fingerprint(grid),
        tiles={key: _tile_model(key, r) for key, r in sorted(summary.tiles.items())},
        metrics=metrics,
        calibration_settings=_calibration_settings(config),
        projection_settings=(
            ProjectionSettingsModel.from_settings(projection) if projection is not None else None
        ),
    )


# ---------------------------------------------------------------------------
# Profile -> summary
# ---------------------------------------------------------------------------


def _to_bounds(b: TileBoundsModel | None) -> TileBounds | None:
    if b is None:
        return None
    return TileBounds(AxisBounds(b.x.min, b.x.max), AxisBounds(b.y.min, b.y.max))


def _to_tile(t: ProfileTile) -> TileCalibrationResult:
    m = t.home_measurement
    return TileCalibrationResult(
        tile=TileAddress(t.row, t.col),
        status=TileStatus(t.status),
        error=t.error,
        warnings=tuple(t.warnings),
        home_measurement=None if m is None else BlobMeasurement(
            m.x, m.y, m.size, m.response, m.captured_at, m.source_width, m.source_height, m.stats,
        ),
        home_offset=None if t.home_offset is None else HomeOffset(t.home_offset.dx, t.home_offset.dy),
        adjusted_home=None if t.adjusted_home is None else Point2(t.adjusted_home.x, t.adjusted_home.y),
        step_to_displacement=StepToDisplacement(t.step_to_displacement.x, t.step_to_displacement.y),
        size_delta_at_step_test=t.size_delta_at_step_test,
        motor_reach_bounds=_to_bounds(t.motor_reach_bounds),
        footprint_bounds=_to_bounds(t.footprint_bounds),
        step_scale=None if t.step_scale is None else StepToDisplacement(t.step_scale.x, t.step_scale.y),
    )


def summary_from_profile(profile: CalibrationProfile) -> CalibrationSummary:
    """Rebuild the run summary a profile was saved from."""
    bp = profile.grid_blueprint
    blueprint = None
    if bp is not None:
        blueprint = GridBlueprint(
            adjusted_tile_footprint=TileFootprint(
                bp.adjusted_tile_footprint.width, bp.adjusted_tile_footprint.height,
            ),
            tile_gap=Point2(bp.tile_gap.x, bp.tile_gap.y),
            grid_origin=Point2(bp.grid_origin.x, bp.grid_origin.y),
            camera_origin_offset=Point2(bp.camera_origin_offset.x, bp.camera_origin_offset.y),
            source_width=bp.source_width,
            source_height=bp.source_height,
        )
    oa = profile.metrics.outlier_analysis
    analysis = OutlierAnalysis(enabled=False) if oa is None else OutlierAnalysis(
        enabled=oa.enabled,
        outlier_tile_keys=tuple(oa.outlier_tile_keys),
        outlier_count=oa.outlier_count,
        median=oa.median,
        mad=oa.mad,
        n_mad=oa.n_mad,
        upper_threshold=oa.upper_threshold,
        computed_tile_size=oa.computed_tile_size,
    )
    return CalibrationSummary(
        grid_blueprint=blueprint,
        source_width=None if blueprint is None else blueprint.source_width,
        source_height=None if blueprint is None else blueprint.source_height,
        delta_steps=profile.step_test_settings.delta_steps,
        tiles={key: _to_tile(t) for key, t in profile.tiles.items()},
        outlier_analysis=analysis,
    )
