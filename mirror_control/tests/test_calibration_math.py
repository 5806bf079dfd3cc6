"""Tests for the pure calibration math.

Covers robust statistics, motor reach bounds, step-test ratios, staging
targets, expected blob positions, the grid blueprint and profile merging.
"""

from __future__ import annotations

from dataclasses import replace

import pytest

from conftest import blob
from mirror_control.calibration.blueprint import (
    MaxSizingStrategy,
    MeasuredTile,
    RobustMaxSizingStrategy,
    build_step_scale,
    compute_axis_pitch,
    compute_calibration_summary,
    compute_grid_blueprint,
    create_sizing_strategy,
)
from mirror_control.calibration.bounds import (
    compute_axis_bounds,
    compute_blueprint_footprint_bounds,
    compute_live_tile_bounds,
    compute_tile_bounds,
    merge_bounds_intersection,
    merge_bounds_union,
    merge_with_blueprint_footprint,
)
from mirror_control.calibration.expected_position import (
    DEFAULT_TILE_SPACING,
    ExpectedPositionConfig,
    TileMeasurement,
    centered_to_viewport,
    compute_expected_blob_position,
    estimate_grid_from_measurements,
    transform_tile_to_camera,
    viewport_to_centered,
)
from mirror_control.calibration.profile_merger import (
    extract_existing_measurements,
    extract_first_tile_per_step,
    extract_tile_addresses,
    merge_tile_result,
)
from mirror_control.calibration.robust_stats import (
    compute_mad,
    compute_median,
    compute_normalized_mad,
    detect_outliers,
    detect_outliers_with_keys,
    robust_max,
    robust_min,
)
from mirror_control.calibration.staging import (
    StagingConfig,
    compute_distributed_axis_target,
    compute_pose_targets,
    round_steps,
)
from mirror_control.calibration.step_test import (
    AxisStepTestResult,
    combine_step_test_results,
    compute_alignment_target_steps,
    compute_axis_step_test_result,
    get_axis_step_delta,
)
from mirror_control.calibration.types import (
    AxisBounds,
    BlobMeasurement,
    CalibrationSummary,
    StepToDisplacement,
    TileAddress,
    TileBounds,
    TileCalibrationResult,
    TileStatus,
)
from mirror_control.configs.loader import ArrayConfig, MotorConfig

MOTOR = MotorConfig(min_position_steps=-1200, max_position_steps=1200, steps_per_degree=190)


def _completed(row: int, col: int, x: float, y: float, size: float = 0.1) -> TileCalibrationResult:
    return TileCalibrationResult(
        tile=TileAddress(row, col),
        status=TileStatus.COMPLETED,
        home_measurement=blob(x, y, size, width=1000, height=1000),
        step_to_displacement=StepToDisplacement(-1.5e-4, 1.5e-4),
    )


# ---------------------------------------------------------------------------
# Robust statistics
# ---------------------------------------------------------------------------


class TestRobustStats:
    def test_median_and_mad(self) -> None:
        values = [1.0, 2.0, 3.0, 4.0, 100.0]
        assert compute_median(values) == 3.0
        assert compute_mad(values, 3.0) == 1.0
        assert compute_normalized_mad(values, 3.0) == pytest.approx(1.4826)

    def test_empty_inputs(self) -> None:
        assert compute_median([]) == 0.0
        assert robust_max([]) == 0.0
        assert detect_outliers([]).outliers == []

    def test_single_value_never_outlier(self) -> None:
        result = detect_outliers([42.0])
        assert result.inliers == [42.0]
        assert result.outliers == []

    def test_zero_mad_rejects_larger_value(self) -> None:
        result = detect_outliers([100, 100, 100, 120], direction="high")
        assert result.outliers == [120.0]
        assert result.outlier_indices == [3]
        assert result.mad == 0.0

    def test_direction_filters_side(self) -> None:
        values = [1.0, 10.0, 10.0, 10.0, 10.5, 30.0]
        high = detect_outliers(values, direction="high")
        low = detect_outliers(values, direction="low")
        assert 30.0 in high.outliers and 1.0 not in high.outliers
        assert 1.0 in low.outliers and 30.0 not in low.outliers

    def test_invalid_direction(self) -> None:
        with pytest.raises(ValueError, match="direction"):
            detect_outliers([1, 2, 3], direction="sideways")  # type: ignore[arg-type]

    def test_keys_preserved(self) -> None:
        entries = [("a", 1.0), ("b", 1.0), ("c", 1.0), ("d", 5.0)]
        result = detect_outliers_with_keys(entries, lambda e: e[1], direction="high")
        assert [e[0] for e in result.outliers] == ["d"]
        assert [e[0] for e in result.inliers] == ["a", "b", "c"]

    def test_robust_extremes(self) -> None:
        values = [0.1, 0.1, 0.1, 0.5]
        assert robust_max(values) == pytest.approx(0.1)
        assert robust_min([0.01, 0.1, 0.1, 0.1]) == pytest.approx(0.1)


# ---------------------------------------------------------------------------
# Bounds
# ---------------------------------------------------------------------------


class TestBounds:
    def test_axis_bounds_ordered_for_negative_ratio(self) -> None:
        b = compute_axis_bounds(0.0, 0, -1e-4, MOTOR)
        assert b is not None
        assert (b.min, b.max) == pytest.approx((-0.12, 0.12))

    def test_axis_bounds_clamped(self) -> None:
        b = compute_axis_bounds(0.9, 0, 1e-3, MOTOR)
        assert b is not None
        assert b.max == 1.0
        assert b.min == pytest.approx(-0.3)

    def test_missing_or_tiny_ratio(self) -> None:
        assert compute_axis_bounds(0.0, 0, None, MOTOR) is None
        assert compute_axis_bounds(0.0, 0, 1e-12, MOTOR) is None
        assert compute_axis_bounds(None, 0, 1e-4, MOTOR) is None

    def test_live_bounds_need_both_axes(self) -> None:
        assert compute_live_tile_bounds(0, 0, StepToDisplacement(1e-4, None), MOTOR) is None
        bounds = compute_live_tile_bounds(0, 0, StepToDisplacement(1e-4, 1e-4), MOTOR)
        assert bounds is not None
        assert bounds.y.max == pytest.approx(0.12)

    def test_tile_bounds_from_offset_steps(self) -> None:
        bounds = compute_tile_bounds(0.1, 0.0, 600, -200, StepToDisplacement(1e-4, -1e-4), MOTOR)
        assert bounds is not None
        assert (bounds.x.min, bounds.x.max) == pytest.approx((-0.08, 0.16))
        assert (bounds.y.min, bounds.y.max) == pytest.approx((-0.14, 0.1))

    def test_tile_bounds_need_step_positions(self) -> None:
        assert compute_tile_bounds(0.1, 0.0, None, 0, StepToDisplacement(1e-4, 1e-4), MOTOR) is None
        assert compute_tile_bounds(0.1, 0.0, 0, None, StepToDisplacement(1e-4, 1e-4), MOTOR) is None

    def test_intersection(self) -> None:
        a = TileBounds(AxisBounds(-0.5, 0.5), AxisBounds(-0.5, 0.5))
        b = TileBounds(AxisBounds(0.0, 1.0), AxisBounds(-1.0, 0.2))
        merged = merge_bounds_intersection(a, b)
        assert merged == TileBounds(AxisBounds(0.0, 0.5), AxisBounds(-0.5, 0.2))
        assert merge_bounds_intersection(None, b) == b

    def test_disjoint_intersection_is_none(self) -> None:
        a = TileBounds(AxisBounds(-0.5, -0.4), AxisBounds(0, 0.1))
        b = TileBounds(AxisBounds(0.4, 0.5), AxisBounds(0, 0.1))
        assert merge_bounds_intersection(a, b) is None

    def test_union(self) -> None:
        a = TileBounds(AxisBounds(-0.5, -0.4), AxisBounds(0, 0.1))
        b = TileBounds(AxisBounds(0.4, 0.5), AxisBounds(-0.2, 0.05))
        assert merge_bounds_union(a, b) == TileBounds(AxisBounds(-0.5, 0.5), AxisBounds(-0.2, 0.1))

    def test_invalid_axis_bounds(self) -> None:
        with pytest.raises(ValueError):
            AxisBounds(1.0, 0.0)


# ---------------------------------------------------------------------------
# Step tests and staging
# ---------------------------------------------------------------------------


class TestStepTest:
    def test_axis_delta_signed_by_jog(self) -> None:
        assert get_axis_step_delta("x", 1200, 0, MOTOR) == -1200
        assert get_axis_step_delta("y", 1200, 0, MOTOR) == 1200

    def test_axis_delta_clamped_and_disabled(self) -> None:
        assert get_axis_step_delta("y", 5000, 0, MOTOR) == 1200
        assert get_axis_step_delta("y", 0, 0, MOTOR) is None

    def test_result_ratio(self) -> None:
        r = compute_axis_step_test_result(blob(0.0, 0.0, 0.10), blob(0.18, 0.01, 0.12), "x", -1200)
        assert r.displacement == pytest.approx(0.18)
        assert r.per_step == pytest.approx(-1.5e-4)
        assert r.size_delta == pytest.approx(0.02)

    def test_zero_delta_has_no_ratio(self) -> None:
        r = compute_axis_step_test_result(blob(0, 0), blob(0, 0.1), "y", 0)
        assert r.per_step is None

    def test_alignment_target(self) -> None:
        assert compute_alignment_target_steps(0.03, 1.5e-4, MOTOR) == 200
        assert compute_alignment_target_steps(0.03, None, MOTOR) is None
        assert compute_alignment_target_steps(0.03, 1e-9, MOTOR) is None
        assert compute_alignment_target_steps(0.9, 1.5e-4, MOTOR) is None

    def test_combine(self) -> None:
        x = AxisStepTestResult(0.18, -1.5e-4, 0.02)
        combined = combine_step_test_results(x, None)
        assert combined.step_to_displacement == StepToDisplacement(-1.5e-4, None)
        assert combined.size_delta_at_step_test == pytest.approx(0.02)
        assert combine_step_test_results(None, None).size_delta_at_step_test is None


class TestStaging:
    def _cfg(self, position: str, rotation: int = 0) -> StagingConfig:
        return StagingConfig(rows=3, cols=3, array_rotation=rotation, staging_position=position, motor=MOTOR)

    def test_round_half_up(self) -> None:
        assert round_steps(2.5) == 3
        assert round_steps(-2.5) == -2
        assert round_steps(float("nan")) == 0

    def test_home_is_zero(self) -> None:
        targets = compute_pose_targets(TileAddress(1, 1), "home", self._cfg("corner"))
        assert (targets.x, targets.y) == (0, 0)

    def test_corner_native(self) -> None:
        targets = compute_pose_targets(TileAddress(0, 0), "aside", self._cfg("corner"))
        assert (targets.x, targets.y) == (1200, -1200)

    def test_corner_flipped(self) -> None:
        targets = compute_pose_targets(TileAddress(0, 0), "aside", self._cfg("corner", rotation=180))
        assert (targets.x, targets.y) == (-1200, 1200)

    def test_nearest_corner_depends_on_quadrant(self) -> None:
        cfg = self._cfg("nearest-corner")
        top_left = compute_pose_targets(TileAddress(0, 0), "aside", cfg)
        bottom_right = compute_pose_targets(TileAddress(2, 2), "aside", cfg)
        assert (top_left.x, top_left.y) == (1200, 1200)
        assert (bottom_right.x, bottom_right.y) == (-1200, -1200)

    def test_bottom_spreads_columns(self) -> None:
        cfg = self._cfg("bottom")
        xs = [compute_pose_targets(TileAddress(0, c), "aside", cfg).x for c in range(3)]
        assert xs == [-1200, 0, 1200]
        assert compute_pose_targets(TileAddress(0, 0), "aside", cfg).y == -1200

    def test_left_parks_x(self) -> None:
        targets = compute_pose_targets(TileAddress(1, 2), "aside", self._cfg("left"))
        assert targets.x == 1200
        assert targets.y == 1200

    def test_distributed_single_column_is_midpoint(self) -> None:
        assert compute_distributed_axis_target(0, 1, MOTOR) == 0


# ---------------------------------------------------------------------------
# Expected positions
# ---------------------------------------------------------------------------


class TestExpectedPosition:
    def _cfg(self, config: ArrayConfig, rotation: int = 0) -> ExpectedPositionConfig:
        return ExpectedPositionConfig(2, 3, rotation, config.calibration.roi)

    def test_coordinate_conversions(self) -> None:
        p = centered_to_viewport(-1.0, 1.0)
        assert (p.x, p.y) == (0.0, 1.0)
        back = viewport_to_centered(p.x, p.y)
        assert (back.x, back.y) == (-1.0, 1.0)

    @pytest.mark.parametrize("rotation,expected", [
        (0, (0, 1)), (90, (1, 1)), (180, (1, 0)), (270, (0, 0)),
    ])
    def test_transform_tile_to_camera(self, rotation: int, expected: tuple[int, int]) -> None:
        assert transform_tile_to_camera(0, 1, 2, 2, rotation) == expected

    def test_first_tile_uses_roi_center(self, config: ArrayConfig) -> None:
        p = compute_expected_blob_position(0, 0, [], self._cfg(config))
        cx, cy = config.calibration.roi.center
        assert (p.x, p.y) == pytest.approx((cx, cy))

    def test_single_measurement_uses_default_spacing(self, config: ArrayConfig) -> None:
        done = [TileMeasurement(0, 0, -0.1, -0.1)]
        p = compute_expected_blob_position(0, 1, done, self._cfg(config))
        assert p.x == pytest.approx(0.45 + DEFAULT_TILE_SPACING)
        assert p.y == pytest.approx(0.45)

    def test_spacing_from_adjacent_pairs_only(self) -> None:
        done = [
            TileMeasurement(0, 0, -0.2, -0.2),
            TileMeasurement(0, 1, 0.0, -0.2),
            TileMeasurement(1, 2, 0.6, 0.6),
        ]
        estimate = estimate_grid_from_measurements(done, 2, 3, 0)
        assert estimate.spacing_x == pytest.approx(0.1)
        assert estimate.spacing_y == pytest.approx(DEFAULT_TILE_SPACING)

    def test_extrapolates_next_tile(self, config: ArrayConfig) -> None:
        done = [TileMeasurement(0, 0, -0.2, -0.2), TileMeasurement(0, 1, 0.0, -0.2)]
        p = compute_expected_blob_position(0, 2, done, self._cfg(config))
        assert p.x == pytest.approx(centered_to_viewport(0.2, 0).x)

    def test_empty_measurements_rejected(self) -> None:
        with pytest.raises(ValueError):
            estimate_grid_from_measurements([], 2, 2, 0)


# ---------------------------------------------------------------------------
# Blueprint and summary
# ---------------------------------------------------------------------------


class TestBlueprint:
    def test_sizing_strategies(self, config: ArrayConfig) -> None:
        assert MaxSizingStrategy().compute([0.1, 0.3]).tile_size == pytest.approx(0.3)
        assert RobustMaxSizingStrategy().compute([0.1, 0.1, 0.1, 0.3]).tile_size == pytest.approx(0.1)
        assert isinstance(create_sizing_strategy(config.calibration), RobustMaxSizingStrategy)
        plain = replace(config.calibration.robust_tile_size, enabled=False)
        assert isinstance(
            create_sizing_strategy(replace(config.calibration, robust_tile_size=plain)),
            MaxSizingStrategy,
        )

    def test_axis_pitch_median(self) -> None:
        assert compute_axis_pitch([]) == 0.0
        assert compute_axis_pitch([0.1, 0.2, 0.9]) == pytest.approx(0.2)

    def test_step_scale_inverts(self) -> None:
        scale = build_step_scale(StepToDisplacement(2e-4, None))
        assert scale is not None
        assert scale.x == pytest.approx(5000.0)
        assert scale.y is None
        assert build_step_scale(StepToDisplacement(None, 1e-12)) is None

    def test_nothing_measured(self, config: ArrayConfig) -> None:
        bp, analysis = compute_grid_blueprint([], 2, 2, config.calibration)
        assert bp is None
        assert analysis.outlier_count == 0

    def test_two_by_two_with_oversized_blob(self, config: ArrayConfig) -> None:
        results = [
            _completed(0, 0, 0.0, 0.0, 0.10),
            _completed(0, 1, 0.2, 0.0, 0.10),
            _completed(1, 0, 0.0, 0.2, 0.10),
            _completed(1, 1, 0.2, 0.2, 0.12),
        ]
        measured = [MeasuredTile(r.tile, r.home_measurement) for r in results]
        bp, analysis = compute_grid_blueprint(measured, 2, 2, config.calibration)
        assert bp is not None
        assert bp.adjusted_tile_footprint.width == pytest.approx(0.2)
        assert bp.adjusted_tile_footprint.height == pytest.approx(0.2)
        assert analysis.outlier_count == 1
        assert analysis.outlier_tile_keys == ("1-1",)
        assert analysis.computed_tile_size == pytest.approx(0.1)
        assert (bp.camera_origin_offset.x, bp.camera_origin_offset.y) == pytest.approx((0.1, 0.1))

    def test_pitch_uses_per_axis_neighbours(self, config: ArrayConfig) -> None:
        measured = [
            MeasuredTile(TileAddress(0, 0), blob(0.0, 0.0, width=1000, height=1000)),
            MeasuredTile(TileAddress(0, 1), blob(0.1, 0.02, width=1000, height=1000)),
        ]
        bp, _ = compute_grid_blueprint(measured, 1, 2, config.calibration)
        assert bp is not None
        assert bp.adjusted_tile_footprint.width == pytest.approx(0.1)
        assert bp.adjusted_tile_footprint.height == pytest.approx(0.1)

    def test_gap_clamped_to_limits(self, config: ArrayConfig) -> None:
        cal = replace(config.calibration, grid_gap_normalized=0.9)
        measured = [
            MeasuredTile(TileAddress(0, 0), blob(0.0, 0.0, width=1000, height=1000)),
            MeasuredTile(TileAddress(0, 1), blob(0.6, 0.0, width=1000, height=1000)),
        ]
        bp, _ = compute_grid_blueprint(measured, 1, 2, cal)
        assert bp is not None
        assert bp.tile_gap.x == pytest.approx(2 * cal.grid_gap_limits[1])
        assert bp.spacing.x == pytest.approx(0.6)

    def test_summary_recentres_perfect_grid(self, config: ArrayConfig) -> None:
        results = {
            r.tile.key: r
            for r in (
                _completed(0, 0, 0.0, 0.0),
                _completed(0, 1, 0.2, 0.0),
                _completed(1, 0, 0.0, 0.2),
                _completed(1, 1, 0.2, 0.2),
            )
        }
        summary = compute_calibration_summary(results, 2, 2, config)
        assert summary.grid_blueprint is not None
        assert summary.source_width == 1000
        for tile in summary.tiles.values():
            assert tile.home_offset is not None
            assert (tile.home_offset.dx, tile.home_offset.dy) == pytest.approx((0.0, 0.0), abs=1e-12)
            assert tile.motor_reach_bounds is not None
            assert tile.footprint_bounds is not None
            assert tile.step_scale is not None
        home = summary.tiles["0-0"].home_measurement
        assert home is not None
        assert (home.x, home.y) == pytest.approx((-0.1, -0.1))

    def test_shift_moves_median_stats(self) -> None:
        measured = BlobMeasurement(
            0.3, 0.3, 0.1, stats={"median": {"x": 0.3, "y": 0.3, "size": 0.1}, "samples": 5},
        )
        moved = measured.shifted(-0.4, -0.3)
        assert (moved.x, moved.y) == pytest.approx((-0.1, 0.0))
        assert moved.stats is not None
        assert (moved.stats["median"]["x"], moved.stats["median"]["y"]) == pytest.approx((-0.1, 0.0))
        assert moved.stats["median"]["size"] == 0.1
        assert moved.stats["samples"] == 5
        assert measured.stats["median"]["x"] == 0.3

    def test_shift_without_stats(self) -> None:
        assert blob(0.1, 0.2).shifted(0.1, 0.1).stats is None
        assert BlobMeasurement(0.0, 0.0, 0.1, stats={"samples": 3}).shifted(1, 1).stats == {"samples": 3}

    def test_summary_recentres_median_stats(self, config: ArrayConfig) -> None:
        first = _completed(0, 0, 0.1, 0.3)
        second = _completed(0, 1, 0.3, 0.3)
        results = {
            "0-0": first,
            "0-1": replace(
                second,
                home_measurement=replace(
                    second.home_measurement, stats={"median": {"x": 0.3, "y": 0.3}},
                ),
            ),
        }
        summary = compute_calibration_summary(results, 1, 2, config)
        home = summary.tiles["0-1"].home_measurement
        assert home is not None and home.stats is not None
        median = home.stats["median"]
        assert (median["x"], median["y"]) == pytest.approx((home.x, home.y))

    def test_skipped_tiles_get_no_offset(self, config: ArrayConfig) -> None:
        results = {
            "0-0": _completed(0, 0, 0.0, 0.0),
            "0-1": TileCalibrationResult(TileAddress(0, 1), TileStatus.SKIPPED, error="nope"),
        }
        summary = compute_calibration_summary(results, 1, 2, config)
        skipped = summary.tiles["0-1"]
        assert skipped.home_offset is None
        assert skipped.error == "nope"

    def test_footprint_bounds_match_cell(self, config: ArrayConfig) -> None:
        results = {
            "0-0": _completed(0, 0, 0.0, 0.0),
            "0-1": _completed(0, 1, 0.2, 0.0),
        }
        bp = compute_calibration_summary(results, 1, 2, config).grid_blueprint
        assert bp is not None
        cell = compute_blueprint_footprint_bounds(bp, 0, 1)
        assert cell.x.max - cell.x.min == pytest.approx(bp.adjusted_tile_footprint.width)
        widened = merge_with_blueprint_footprint(None, bp, 0, 1)
        assert widened == cell
        assert merge_with_blueprint_footprint(None, None, 0, 1) is None


# ---------------------------------------------------------------------------
# Profile merging
# ---------------------------------------------------------------------------


class TestProfileMerger:
    @pytest.fixture
    def summary(self, config: ArrayConfig) -> CalibrationSummary:
        results = {
            r.tile.key: r
            for r in (
                _completed(0, 0, 0.0, 0.0),
                _completed(0, 1, 0.2, 0.0),
                _completed(1, 0, 0.0, 0.2),
                _completed(1, 1, 0.2, 0.2),
            )
        }
        return compute_calibration_summary(results, 2, 2, config)

    def test_first_tile_per_step(self, summary: CalibrationSummary) -> None:
        assert extract_first_tile_per_step(summary) == StepToDisplacement(-1.5e-4, 1.5e-4)

    def test_first_tile_per_step_without_usable_tiles(self, summary: CalibrationSummary) -> None:
        empty = replace(summary, tiles={})
        assert extract_first_tile_per_step(empty) == StepToDisplacement()

    def test_existing_measurements_restore_camera_coordinates(self, summary: CalibrationSummary) -> None:
        measurements = extract_existing_measurements(summary, exclude_key="1-1")
        by_key = {f"{m.row}-{m.col}": (m.x, m.y) for m in measurements}
        assert set(by_key) == {"0-0", "0-1", "1-0"}
        assert by_key["0-1"] == pytest.approx((0.2, 0.0))

    def test_tile_addresses(self, summary: CalibrationSummary) -> None:
        assert sorted(extract_tile_addresses(summary)) == [
            TileAddress(0, 0), TileAddress(0, 1), TileAddress(1, 0), TileAddress(1, 1),
        ]

    def test_merge_keeps_blueprint(self, summary: CalibrationSummary, config: ArrayConfig) -> None:
        moved = _completed(1, 1, 0.25, 0.2)
        results, merged = merge_tile_result(summary, moved, 2, 2, config)
        assert merged.grid_blueprint == summary.grid_blueprint
        assert results["1-1"] is moved
        offset = merged.tiles["1-1"].home_offset
        assert offset is not None
        assert offset.dx == pytest.approx(0.05)

    def test_merge_without_blueprint_recomputes(self, summary: CalibrationSummary, config: ArrayConfig) -> None:
        bare = replace(summary, grid_blueprint=None, tiles={"0-0": _completed(0, 0, 0.0, 0.0)})
        _, merged = merge_tile_result(bare, _completed(0, 1, 0.2, 0.0), 2, 2, config)
        assert merged.grid_blueprint is not None
