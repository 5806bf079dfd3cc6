"""Tests for orientation math, array rotation and the reflection solver."""

from __future__ import annotations

import math
from dataclasses import replace

import pytest

from mirror_control.configs.loader import ArrayConfig
from mirror_control.geometry.orientation import (
    OrientationState,
    Vec3,
    angles_to_vector,
    normalize,
    vector_to_angles,
    with_orientation_angles,
    with_orientation_vector,
)
from mirror_control.geometry.projection import ProjectionSettings, wall_up_alignment
from mirror_control.geometry.reflection import (
    GridSize,
    MirrorMeta,
    PatternPoint,
    ReflectionPattern,
    SolverErrorCode,
    _PatternTarget,
    _WallBasis,
    derive_wall_basis,
    effective_angular_spread,
    solve_mirror,
    solve_reflection,
)
from mirror_control.geometry.rotation import (
    get_axis_mapping,
    get_step_test_jog_direction,
    inverse_rotate_vector,
    rotate_vector,
    validate_rotation,
)


@pytest.fixture
def projection(config: ArrayConfig) -> ProjectionSettings:
    return ProjectionSettings.from_config(config.projection)


def _vec_approx(v: Vec3, expected: tuple[float, float, float]) -> None:
    assert (v.x, v.y, v.z) == pytest.approx(expected, abs=1e-9)


# ---------------------------------------------------------------------------
# Vectors and orientation
# ---------------------------------------------------------------------------


class TestVec3:
    def test_normalize_zero_stays_zero(self) -> None:
        assert normalize(Vec3(0, 0, 0)) == Vec3(0, 0, 0)

    def test_normalize_unit_length(self) -> None:
        assert normalize(Vec3(3, 4, 12)).length() == pytest.approx(1.0)

    def test_cross_right_handed(self) -> None:
        _vec_approx(Vec3(1, 0, 0).cross(Vec3(0, 1, 0)), (0, 0, 1))

    def test_arithmetic(self) -> None:
        v = Vec3(1, 2, 3) + Vec3(1, 1, 1) * 2 - Vec3(0, 0, 5)
        _vec_approx(v, (3, 4, 0))


class TestOrientation:
    def test_forward_zero_points_down_negative_z(self) -> None:
        _vec_approx(angles_to_vector(0, 0, "forward"), (0, 0, -1))

    def test_up_default_points_positive_y(self) -> None:
        _vec_approx(angles_to_vector(0, -90, "up"), (0, 1, 0))

    def test_forward_yaw_turns_towards_negative_x(self) -> None:
        v = angles_to_vector(90, 0, "forward")
        _vec_approx(v, (-1, 0, 0))

    @pytest.mark.parametrize("basis", ["forward", "up"])
    @pytest.mark.parametrize("yaw,pitch", [(0, 0), (30, 20), (-45, 10), (10, -60)])
    def test_angles_vector_inverse(self, basis: str, yaw: float, pitch: float) -> None:
        v = angles_to_vector(yaw, pitch, basis)  # type: ignore[arg-type]
        got_yaw, got_pitch = vector_to_angles(v, basis)  # type: ignore[arg-type]
        assert got_yaw == pytest.approx(yaw, abs=1e-9)
        assert got_pitch == pytest.approx(pitch, abs=1e-9)

    def test_vertical_forward_reports_pitch_90(self) -> None:
        _, pitch = vector_to_angles(Vec3(0, 1, 0), "forward")
        assert pitch == pytest.approx(90.0)

    def test_unknown_basis(self) -> None:
        with pytest.raises(ValueError, match="basis"):
            angles_to_vector(0, 0, "sideways")  # type: ignore[arg-type]

    def test_state_modes(self) -> None:
        a = OrientationState.from_angles(30, 10, "forward")
        assert a.mode == "angles"
        b = OrientationState.from_vector(Vec3(0, 0, -2), "forward")
        assert b.mode == "vector"
        assert b.vector.length() == pytest.approx(1.0)
        assert (b.yaw, b.pitch) == pytest.approx((0.0, 0.0), abs=1e-9)

    def test_invalid_mode(self) -> None:
        with pytest.raises(ValueError, match="mode"):
            OrientationState("both", 0, 0, Vec3(0, 0, -1))  # type: ignore[arg-type]

    def test_with_helpers_keep_representations_in_sync(self) -> None:
        state = OrientationState.from_angles(0, 0, "forward")
        moved = with_orientation_angles(state, 20, 5, "forward")
        assert moved.vector == angles_to_vector(20, 5, "forward")
        pointed = with_orientation_vector(state, Vec3(-1, 0, -1), "forward")
        assert pointed.yaw == pytest.approx(45.0)
        assert pointed.vector.length() == pytest.approx(1.0)


# ---------------------------------------------------------------------------
# Rotation
# ---------------------------------------------------------------------------


class TestRotation:
    def test_invalid_rotation(self) -> None:
        with pytest.raises(ValueError, match="rotation"):
            validate_rotation(45)

    @pytest.mark.parametrize("rotation,expected", [
        (0, (1.0, 2.0)), (90, (2.0, -1.0)), (180, (-1.0, -2.0)), (270, (-2.0, 1.0)),
    ])
    def test_rotate_clockwise(self, rotation: int, expected: tuple[float, float]) -> None:
        assert rotate_vector(1.0, 2.0, rotation) == expected

    @pytest.mark.parametrize("rotation", [0, 90, 180, 270])
    def test_inverse(self, rotation: int) -> None:
        x, y = rotate_vector(0.3, -0.7, rotation)
        assert inverse_rotate_vector(x, y, rotation) == pytest.approx((0.3, -0.7))

    def test_axis_mapping_swaps_at_quarter_turns(self) -> None:
        assert get_axis_mapping(0).logical_x == "x"
        assert get_axis_mapping(90).logical_x == "y"
        assert get_axis_mapping(270).logical_y == "x"

    def test_jog_directions_at_native_rotation(self) -> None:
        assert get_step_test_jog_direction("x", 0) == -1
        assert get_step_test_jog_direction("y", 0) == 1

    @pytest.mark.parametrize("rotation", [0, 90, 180, 270])
    def test_jog_is_unit(self, rotation: int) -> None:
        for axis in ("x", "y"):
            assert get_step_test_jog_direction(axis, rotation) in (-1, 1)  # type: ignore[arg-type]


# ---------------------------------------------------------------------------
# Reflection solver
# ---------------------------------------------------------------------------


class TestReflectionSolver:
    def test_default_scene_faces_straight(
        self, config: ArrayConfig, projection: ProjectionSettings,
    ) -> None:
        result = solve_reflection(GridSize(2, 3), projection, None, config.array, config.solver)
        assert result.ok
        assert len(result.mirrors) == 6
        assert len(result.assignments) == 6
        for m in result.mirrors:
            assert m.yaw == pytest.approx(0.0, abs=1e-9)
            assert m.pitch == pytest.approx(0.0, abs=1e-9)
            assert m.wall_hit is not None
            assert m.wall_hit.z == pytest.approx(-projection.wall_distance)

    def test_mirror_ids_row_major(self, config: ArrayConfig, projection: ProjectionSettings) -> None:
        result = solve_reflection(GridSize(2, 2), projection, None, config.array, config.solver)
        assert [m.mirror_id for m in result.mirrors] == [
            "mirror-0-0", "mirror-0-1", "mirror-1-0", "mirror-1-1",
        ]

    def test_ellipse_at_normal_incidence(
        self, config: ArrayConfig, projection: ProjectionSettings,
    ) -> None:
        result = solve_reflection(GridSize(1, 1), projection, None, config.array, config.solver)
        ellipse = result.mirrors[0].ellipse
        assert ellipse is not None
        theta = effective_angular_spread(projection)
        expected = 2 * projection.wall_distance * math.tan(theta / 2)
        assert ellipse.minor_diameter == pytest.approx(expected)
        assert ellipse.major_diameter == pytest.approx(expected)
        assert ellipse.incidence_cosine == pytest.approx(1.0)

    def test_angular_spread_combines_sun_and_slope(self, projection: ProjectionSettings) -> None:
        theta = effective_angular_spread(projection)
        sun = math.radians(projection.sun_angular_diameter_deg)
        blur = math.radians(projection.slope_blur_sigma_deg)
        assert theta == pytest.approx(math.hypot(sun, 4 * blur))

    def test_wall_parallel_to_up_is_rejected(
        self, config: ArrayConfig, projection: ProjectionSettings,
    ) -> None:
        scene = replace(projection, wall_orientation=OrientationState.from_angles(0, 90, "forward"))
        assert wall_up_alignment(scene) == pytest.approx(1.0)
        result = solve_reflection(GridSize(2, 2), scene, None, config.array, config.solver)
        assert not result.ok
        assert result.assignments == ()
        for m in result.mirrors:
            assert [e.code for e in m.errors] == [SolverErrorCode.INVALID_WALL_BASIS]
            assert m.yaw is None

    def test_zero_sun_vector(self, config: ArrayConfig, projection: ProjectionSettings) -> None:
        scene = replace(projection, sun_orientation=OrientationState("vector", 0, 0, Vec3(0, 0, 0)))
        result = solve_reflection(GridSize(1, 2), scene, None, config.array, config.solver)
        assert all(m.errors[0].code == SolverErrorCode.INCOMING_ALIGNMENT for m in result.mirrors)

    def test_pattern_exceeds_mirrors(self, config: ArrayConfig, projection: ProjectionSettings) -> None:
        pattern = ReflectionPattern(2, 1, (PatternPoint("a", 0.5, 0.5), PatternPoint("b", 1.5, 0.5)))
        result = solve_reflection(GridSize(1, 1), projection, pattern, config.array, config.solver)
        assert [e.code for e in result.errors] == [SolverErrorCode.PATTERN_EXCEEDS_MIRRORS]
        assert result.assignments == ()
        assert result.mirrors[0].pattern_id is None

    def test_adjacent_points_land_one_spacing_apart(
        self, config: ArrayConfig, projection: ProjectionSettings,
    ) -> None:
        scene = replace(projection, wall_orientation=OrientationState.from_angles(30, 0, "forward"))
        pattern = ReflectionPattern(2, 1, (PatternPoint("a", 0.5, 0.5), PatternPoint("b", 1.5, 0.5)))
        result = solve_reflection(GridSize(1, 2), scene, pattern, config.array, config.solver)
        assert result.ok
        hits = [m.wall_hit for m in result.mirrors]
        assert hits[0] is not None and hits[1] is not None
        assert (hits[1] - hits[0]).length() == pytest.approx(scene.pixel_spacing.x)

    def test_assignment_prefers_nearest_mirror(
        self, config: ArrayConfig, projection: ProjectionSettings,
    ) -> None:
        pattern = ReflectionPattern(2, 1, (PatternPoint("right", 1.5, 0.5), PatternPoint("left", 0.5, 0.5)))
        result = solve_reflection(GridSize(1, 2), projection, pattern, config.array, config.solver)
        by_mirror = {a.mirror_id: a.pattern_id for a in result.assignments}
        assert by_mirror == {"mirror-0-0": "left", "mirror-0-1": "right"}

    def test_unassigned_mirror_has_no_solution(
        self, config: ArrayConfig, projection: ProjectionSettings,
    ) -> None:
        pattern = ReflectionPattern(2, 1, (PatternPoint("only", 0.5, 0.5),))
        result = solve_reflection(GridSize(1, 2), projection, pattern, config.array, config.solver)
        assert result.ok
        idle = result.mirrors[1]
        assert idle.pattern_id is None
        assert idle.yaw is None and idle.errors == ()

    def test_results_are_fresh(self, config: ArrayConfig, projection: ProjectionSettings) -> None:
        a = solve_reflection(GridSize(1, 1), projection, None, config.array, config.solver)
        b = solve_reflection(GridSize(1, 1), projection, None, config.array, config.solver)
        assert a == b
        assert a is not b

    def test_wall_basis_is_orthonormal(self) -> None:
        axes = derive_wall_basis(Vec3(0, 0, -1), Vec3(0, 1, 0), 1e-6)
        assert axes is not None
        u, v = axes
        assert u.dot(v) == pytest.approx(0.0, abs=1e-12)
        assert u.length() == pytest.approx(1.0)
        assert v.dot(Vec3(0, 0, -1)) == pytest.approx(0.0, abs=1e-12)

    @pytest.mark.parametrize("yaw", [0.0, 30.0, -60.0])
    def test_sun_along_wall_normal_faces_straight(
        self, config: ArrayConfig, projection: ProjectionSettings, yaw: float,
    ) -> None:
        facing = OrientationState.from_angles(yaw, 0, "forward")
        scene = replace(projection, wall_orientation=facing, sun_orientation=facing)
        result = solve_reflection(GridSize(1, 1), scene, None, config.array, config.solver)
        assert result.ok
        assert result.mirrors[0].yaw == pytest.approx(0.0, abs=1e-9)
        assert result.mirrors[0].pitch == pytest.approx(0.0, abs=1e-9)

    @pytest.mark.parametrize(
        ("alignment", "rejected"), [(0.9799, False), (0.98, True), (0.9801, True)],
    )
    def test_wall_basis_threshold(
        self, config: ArrayConfig, projection: ProjectionSettings, alignment: float, rejected: bool,
    ) -> None:
        up = Vec3(0.0, math.sqrt(1 - alignment * alignment), -alignment)
        scene = replace(projection, world_up_orientation=OrientationState("vector", 0, 0, up))
        assert wall_up_alignment(scene) == pytest.approx(alignment)
        result = solve_reflection(GridSize(1, 2), scene, None, config.array, config.solver)
        codes = {e.code for e in result.errors}
        assert (SolverErrorCode.INVALID_WALL_BASIS in codes) is rejected
        if rejected:
            assert all(m.errors and m.yaw is None for m in result.mirrors)

    def test_sun_along_reflection_is_degenerate(
        self, config: ArrayConfig, projection: ProjectionSettings,
    ) -> None:
        scene = replace(projection, sun_orientation=OrientationState("vector", 0, 0, Vec3(0, 0, 1)))
        result = solve_reflection(GridSize(2, 2), scene, None, config.array, config.solver)
        assert len(result.errors) == 4
        for m in result.mirrors:
            assert [e.code for e in m.errors] == [SolverErrorCode.DEGENERATE_BISECTOR]
            assert m.errors[0].mirror_id == m.mirror_id
            assert m.pattern_id is not None
            assert m.yaw is None

    def test_mirror_error_leaves_neighbours_unchanged(
        self, config: ArrayConfig, projection: ProjectionSettings,
    ) -> None:
        # Point "a" sits straight in front of mirror 0-0, where the reflected
        # ray runs back along the incoming light.
        scene = replace(projection, sun_orientation=OrientationState("vector", 0, 0, Vec3(0, 0, 1)))
        both = ReflectionPattern(2, 1, (PatternPoint("a", 1.0, 0.5), PatternPoint("b", 1.9, 0.5)))
        alone = ReflectionPattern(2, 1, (PatternPoint("b", 1.9, 0.5),))

        mixed = solve_reflection(GridSize(1, 2), scene, both, config.array, config.solver)
        clean = solve_reflection(GridSize(1, 2), scene, alone, config.array, config.solver)

        bad, good = mixed.mirrors
        assert bad.pattern_id == "a"
        assert [e.code for e in bad.errors] == [SolverErrorCode.DEGENERATE_BISECTOR]
        assert [e.mirror_id for e in mixed.errors] == ["mirror-0-0"]
        assert good.errors == ()
        assert clean.ok
        reference = clean.mirrors[1]
        assert reference.pattern_id == good.pattern_id == "b"
        assert good.yaw == pytest.approx(reference.yaw)
        assert good.pitch == pytest.approx(reference.pitch)
        assert good.wall_hit == reference.wall_hit

    def test_wall_through_mirrors_has_no_valid_target(
        self, config: ArrayConfig, projection: ProjectionSettings,
    ) -> None:
        origin = Vec3(0, 0, 0)
        result = solve_reflection(
            GridSize(1, 1), projection, None, config.array, config.solver,
            array_origin=origin, wall_anchor=origin,
        )
        assert [e.code for e in result.errors] == [SolverErrorCode.INVALID_TARGET]

    def test_target_in_mirror_plane_is_grazing(
        self, config: ArrayConfig, projection: ProjectionSettings,
    ) -> None:
        pattern = ReflectionPattern(2, 1, (PatternPoint("a", 0.5, 0.5),))
        result = solve_reflection(
            GridSize(1, 2), projection, pattern, config.array, config.solver,
            wall_anchor=Vec3(0, 0, 0),
        )
        assert [(e.mirror_id, e.code) for e in result.errors] == [
            ("mirror-0-0", SolverErrorCode.GRAZING_INCIDENCE),
        ]
        assert result.mirrors[1].errors == ()


class TestSolveMirror:
    BASIS = _WallBasis(u=Vec3(1, 0, 0), v=Vec3(0, 1, 0), normal=Vec3(0, 0, -1))
    MIRROR = MirrorMeta("mirror-0-0", 0, 0, Vec3(0, 0, 0), 0.5, 0.5)
    SUN = Vec3(0, 0, -1)

    def _solve(self, point: Vec3, wall_point: Vec3 = Vec3(0, 0, -5)):
        target = _PatternTarget("a", 0.5, 0.5, point)
        return solve_mirror(self.MIRROR, target, self.SUN, wall_point, self.BASIS, 0.01, 1e-6)

    def test_facing_wall(self) -> None:
        solution = self._solve(Vec3(0, 0, -5))
        assert solution.errors == ()
        assert solution.wall_hit == Vec3(0, 0, -5)

    def test_wall_behind_mirror(self) -> None:
        solution = self._solve(Vec3(0, 0, -1), wall_point=Vec3(0, 0, 5))
        assert [e.code for e in solution.errors] == [SolverErrorCode.WALL_BEHIND_MIRROR]
        assert solution.wall_hit is None

    @pytest.mark.parametrize("bad", [math.nan, math.inf, -math.inf])
    def test_non_finite_target(self, bad: float) -> None:
        solution = self._solve(Vec3(bad, 0, -5))
        assert [e.code for e in solution.errors] == [SolverErrorCode.INVALID_TARGET]
        assert solution.errors[0].pattern_id == "a"
        assert solution.yaw is None
