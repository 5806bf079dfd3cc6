"""Reflection solver: per-mirror orientation and wall footprint.

Given the wall, light and world-up orientations plus a set of desired
pattern points, assign each point to a mirror and compute the mirror normal
(bisector method), the yaw/pitch that realise it, where the reflected ray
hits the wall, and the footprint ellipse of the reflected light.

Errors are returned as :class:`ReflectionSolverError` values rather than
raised.  Scene-level problems (zero light direction, wall normal parallel to
world-up) are attached to every mirror and stop the solve before any
assignment.  Per-mirror optics problems only affect that mirror.

Usage::

    from mirror_control.geometry.reflection import GridSize, solve_reflection
    result = solve_reflection(GridSize(4, 6), projection, pattern, cfg.array, cfg.solver)
    for mirror in result.mirrors:
        print(mirror.mirror_id, mirror.yaw, mirror.pitch)
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, replace
from enum import Enum

from mirror_control.configs.loader import ArrayGeometryConfig, SolverConfig
from mirror_control.geometry.orientation import Vec3, normalize
from mirror_control.geometry.projection import ProjectionSettings

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------


class SolverErrorCode(str, Enum):
    """Closed set of reflection solver failure codes."""

    INVALID_WALL_BASIS = "invalid_wall_basis"
    INCOMING_ALIGNMENT = "incoming_alignment"
    DEGENERATE_BISECTOR = "degenerate_bisector"
    GRAZING_INCIDENCE = "grazing_incidence"
    WALL_BEHIND_MIRROR = "wall_behind_mirror"
    INVALID_TARGET = "invalid_target"
    PATTERN_EXCEEDS_MIRRORS = "pattern_exceeds_mirrors"
    DEGENERATE_ASSIGNMENT = "degenerate_assignment"


@dataclass(frozen=True, slots=True)
class ReflectionSolverError:
    code: SolverErrorCode
    message: str
    mirror_id: str | None = None
    pattern_id: str | None = None


@dataclass(frozen=True, slots=True)
class GridSize:
    """Mirror grid dimensions."""

    rows: int
    cols: int

    def __post_init__(self) -> None:
        if self.rows < 0 or self.cols < 0:
            raise ValueError(f"grid size must be non-negative, got {self.rows}x{self.cols}")


@dataclass(frozen=True, slots=True)
class PatternPoint:
    """A desired light spot, in pattern canvas units."""

    id: str
    x: float
    y: float


@dataclass(frozen=True, slots=True)
class ReflectionPattern:
    """Pattern points drawn on a canvas of ``canvas_width x canvas_height``.

    Canvas Y grows downwards; the solver maps canvas centre to the pattern
    origin on the wall.
    """

    canvas_width: float
    canvas_height: float
    points: tuple[PatternPoint, ...]


@dataclass(frozen=True, slots=True)
class MirrorMeta:
    mirror_id: str
    row: int
    col: int
    center: Vec3
    normalized_x: float
    normalized_y: float


@dataclass(frozen=True, slots=True)
class ReflectionEllipse:
    """Footprint of one mirror's reflected light on the wall.

    ``major_diameter`` is ``inf`` at grazing incidence.
    """

    major_diameter: float
    minor_diameter: float
    major_axis: Vec3
    minor_axis: Vec3
    incidence_cosine: float


@dataclass(frozen=True, slots=True)
class MirrorReflectionSolution:
    """Solve output for one mirror.

    ``pattern_id`` is None when no target was assigned.  A mirror with a
    ``pattern_id`` but empty ``yaw`` carries the error that prevented the
    solve in ``errors``.
    """

    mirror_id: str
    row: int
    col: int
    center: Vec3
    pattern_id: str | None = None
    yaw: float | None = None
    pitch: float | None = None
    normal: Vec3 | None = None
    wall_hit: Vec3 | None = None
    ellipse: ReflectionEllipse | None = None
    errors: tuple[ReflectionSolverError, ...] = ()


@dataclass(frozen=True, slots=True)
class ReflectionAssignment:
    mirror_id: str
    pattern_id: str


@dataclass(frozen=True, slots=True)
class ReflectionSolverResult:
    mirrors: tuple[MirrorReflectionSolution, ...]
    assignments: tuple[ReflectionAssignment, ...]
    errors: tuple[ReflectionSolverError, ...]

    @property
    def ok(self) -> bool:
        return not self.errors


@dataclass(frozen=True, slots=True)
class _PatternTarget:
    id: str
    normalized_x: float
    normalized_y: float
    point: Vec3


@dataclass(frozen=True, slots=True)
class _WallBasis:
    u: Vec3
    v: Vec3
    normal: Vec3


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _clamp01(value: float) -> float:
    return min(1.0, max(0.0, value))


def mirror_id(row: int, col: int) -> str:
    return f"mirror-{row}-{col}"


def default_array_origin(grid: GridSize, pitch: float) -> Vec3:
    """Centre of mirror (0, 0) for an array centred on the world origin."""
    width = grid.cols * pitch
    height = grid.rows * pitch
    return Vec3(-width / 2 + pitch / 2, height / 2 - pitch / 2, 0.0)


def _project_onto_plane(point: Vec3, plane_point: Vec3, normal: Vec3) -> Vec3:
    return point + normal * (plane_point - point).dot(normal)


def build_mirror_meta(grid: GridSize, origin: Vec3, pitch: float) -> list[MirrorMeta]:
    """Mirror centres on a regular grid, row-major, rows growing downwards.

    An empty grid yields a single placeholder mirror so scene-level errors
    still have something to attach to.
    """
    mirrors = [
        MirrorMeta(
            mirror_id=mirror_id(row, col),
            row=row,
            col=col,
            center=Vec3(origin.x + col * pitch, origin.y - row * pitch, origin.z),
            normalized_x=(col + 0.5) / grid.cols,
            normalized_y=(row + 0.5) / grid.rows,
        )
        for row in range(grid.rows)
        for col in range(grid.cols)
    ]
    if not mirrors:
        mirrors.append(MirrorMeta(mirror_id(0, 0), 0, 0, origin, 0.5, 0.5))
    return mirrors


def derive_wall_basis(
    wall_normal: Vec3, world_up: Vec3, epsilon: float,
) -> tuple[Vec3, Vec3] | None:
    """Gram-Schmidt ``world_up`` against ``wall_normal``.

    Returns
    -------
    tuple[Vec3, Vec3] | None
        ``(u_wall, v_wall)`` or None when either axis degenerates.
    """
    v_candidate = world_up - wall_normal * world_up.dot(wall_normal)
    if v_candidate.length() < epsilon:
        return None
    v_wall = normalize(v_candidate)
    u_candidate = v_wall.cross(wall_normal)
    if u_candidate.length() < epsilon:
        return None
    return normalize(u_candidate), v_wall


def _pattern_targets(
    pattern: ReflectionPattern,
    grid: GridSize,
    basis: _WallBasis,
    pattern_origin: Vec3,
    projection: ProjectionSettings,
) -> list[_PatternTarget]:
    cols = max(1, grid.cols)
    rows = max(1, grid.rows)
    spacing = projection.pixel_spacing
    targets = []
    for point in pattern.points:
        nx = _clamp01(point.x / pattern.canvas_width) if pattern.canvas_width > 0 else 0.5
        ny = _clamp01(point.y / pattern.canvas_height) if pattern.canvas_height > 0 else 0.5
        offset_u = (nx - 0.5) * cols * spacing.x
        offset_v = (0.5 - ny) * rows * spacing.y
        world = pattern_origin + basis.u * offset_u + basis.v * offset_v
        targets.append(_PatternTarget(point.id, nx, ny, world))
    return targets


def _fallback_targets(
    mirrors: list[MirrorMeta], wall_point: Vec3, basis: _WallBasis, offset: float,
) -> list[_PatternTarget]:
    # Each idle mirror aims straight at its own projection on the wall.
    return [
        _PatternTarget(
            id=f"fallback-{m.row}-{m.col}",
            normalized_x=m.normalized_x,
            normalized_y=m.normalized_y,
            point=_project_onto_plane(m.center, wall_point, basis.normal) + basis.v * offset,
        )
        for m in mirrors
    ]


def _propagate(
    mirrors: list[MirrorReflectionSolution], error: ReflectionSolverError,
) -> ReflectionSolverResult:
    logger.warning("Reflection solve failed: %s (%s)", error.code.value, error.message)
    return ReflectionSolverResult(
        mirrors=tuple(
            replace(m, errors=m.errors + (replace(error, mirror_id=m.mirror_id),))
            for m in mirrors
        ),
        assignments=(),
        errors=(error,),
    )


# ---------------------------------------------------------------------------
# Assignment
# ---------------------------------------------------------------------------


def assign_targets(
    mirrors: list[MirrorMeta], targets: list[_PatternTarget], epsilon: float,
) -> tuple[dict[str, _PatternTarget], list[ReflectionAssignment], list[ReflectionSolverError]]:
    """Greedy nearest-mirror assignment in normalised grid space.

    Targets are visited in ``(normalized_y, normalized_x, id)`` order.  Costs
    within ``epsilon`` of each other are tied and resolved towards the lower
    ``(row, col)``.
    """
    if len(targets) > len(mirrors):
        return {}, [], [
            ReflectionSolverError(
                SolverErrorCode.PATTERN_EXCEEDS_MIRRORS,
                f"Pattern contains {len(targets)} tiles but only "
                f"{len(mirrors)} mirrors are available.",
            )
        ]

    by_mirror: dict[str, _PatternTarget] = {}
    ordered: list[ReflectionAssignment] = []
    errors: list[ReflectionSolverError] = []
    available = list(range(len(mirrors)))

    for target in sorted(targets, key=lambda t: (t.normalized_y, t.normalized_x, t.id)):
        best_index: int | None = None
        best_cost = math.inf
        for index in available:
            mirror = mirrors[index]
            dx = mirror.normalized_x - target.normalized_x
            dy = mirror.normalized_y - target.normalized_y
            cost = dx * dx + dy * dy
            if cost < best_cost - epsilon:
                best_cost = cost
                best_index = index
            elif best_index is not None and abs(cost - best_cost) <= epsilon:
                best = mirrors[best_index]
                if (mirror.row, mirror.col) < (best.row, best.col):
                    best_index = index

        if best_index is None:
            errors.append(
                ReflectionSolverError(
                    SolverErrorCode.DEGENERATE_ASSIGNMENT,
                    "Unable to assign pattern tile to an available mirror.",
                    pattern_id=target.id,
                )
            )
            continue

        mirror = mirrors[best_index]
        by_mirror[mirror.mirror_id] = target
        ordered.append(ReflectionAssignment(mirror.mirror_id, target.id))
        available.remove(best_index)

    return by_mirror, ordered, errors


# ---------------------------------------------------------------------------
# Per-mirror optics
# ---------------------------------------------------------------------------


def solve_mirror(
    mirror: MirrorMeta,
    target: _PatternTarget,
    sun_direction: Vec3,
    wall_point: Vec3,
    basis: _WallBasis,
    theta_effective: float,
    epsilon: float,
) -> MirrorReflectionSolution:
    """Solve one mirror for one wall target."""
    base = MirrorReflectionSolution(
        mirror.mirror_id, mirror.row, mirror.col, mirror.center, pattern_id=target.id,
    )

    def failed(code: SolverErrorCode, message: str) -> MirrorReflectionSolution:
        error = ReflectionSolverError(code, message, mirror.mirror_id, target.id)
        return replace(base, errors=(error,))

    direction = target.point - mirror.center
    distance = direction.length()
    if not math.isfinite(distance):
        return failed(SolverErrorCode.INVALID_TARGET, "Target point is not finite.")
    if distance < epsilon:
        return failed(SolverErrorCode.INVALID_TARGET, "Target point coincides with mirror center.")
    r_hat = direction * (1.0 / distance)

    bisector = normalize(r_hat + normalize(sun_direction))
    if bisector.length() < epsilon:
        return failed(
            SolverErrorCode.DEGENERATE_BISECTOR,
            "Incoming light aligns with reflected ray, resulting in undefined bisector.",
        )

    n = basis.normal
    n_u, n_v, n_w = bisector.dot(basis.u), bisector.dot(basis.v), bisector.dot(n)
    yaw = math.degrees(math.atan2(n_u, math.sqrt(max(0.0, n_v * n_v + n_w * n_w))))
    pitch = math.degrees(math.atan2(-n_v, n_w))

    den = r_hat.dot(n)
    if abs(den) < epsilon:
        return failed(SolverErrorCode.GRAZING_INCIDENCE, "Reflected ray is parallel to the wall plane.")
    t = (wall_point - mirror.center).dot(n) / den
    if t <= epsilon:
        return failed(SolverErrorCode.WALL_BEHIND_MIRROR, "Wall intersection lies behind the mirror.")

    wall_hit = mirror.center + r_hat * t
    major_axis = normalize(r_hat - n * den)
    if major_axis.length() < epsilon:
        major_axis = basis.u
    minor_axis = normalize(n.cross(major_axis))
    if minor_axis.length() < epsilon:
        minor_axis = basis.v

    incidence_cosine = abs(den)
    minor = 2 * t * math.tan(theta_effective / 2)
    major = minor / incidence_cosine if incidence_cosine > epsilon else math.inf

    return replace(
        base,
        yaw=yaw,
        pitch=pitch,
        normal=bisector,
        wall_hit=wall_hit,
        ellipse=ReflectionEllipse(major, minor, major_axis, minor_axis, incidence_cosine),
    )


def effective_angular_spread(projection: ProjectionSettings) -> float:
    """Combined light-source and slope-error spread, radians."""
    theta_sun = math.radians(projection.sun_angular_diameter_deg)
    sigma = math.radians(projection.slope_blur_sigma_deg)
    return math.sqrt(theta_sun**2 + (4 * sigma) ** 2)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def solve_reflection(
    grid: GridSize,
    projection: ProjectionSettings,
    pattern: ReflectionPattern | None,
    array: ArrayGeometryConfig,
    solver: SolverConfig,
    *,
    array_origin: Vec3 | None = None,
    wall_anchor: Vec3 | None = None,
) -> ReflectionSolverResult:
    """Assign pattern points to mirrors and solve each mirror's orientation.

    Parameters
    ----------
    grid : GridSize
        Mirror array dimensions.
    projection : ProjectionSettings
        Wall, light and world-up geometry.
    pattern : ReflectionPattern | None
        Desired spots.  None (or an empty pattern) aims every mirror at its
        own projection on the wall.
    array : ArrayGeometryConfig
        Mirror pitch.
    solver : SolverConfig
        Epsilon and wall/up alignment limit.
    array_origin : Vec3, optional
        Centre of mirror (0, 0).  Defaults to an array centred on the origin.
    wall_anchor : Vec3, optional
        A point on the wall plane.  Defaults to ``array_origin + n * wall_distance``.

    Returns
    -------
    ReflectionSolverResult
        Fresh, immutable result.  ``errors`` lists assignment errors first,
        then per-mirror errors in mirror order.
    """
    eps = solver.epsilon
    pitch = array.mirror_pitch_m
    origin = array_origin if array_origin is not None else default_array_origin(grid, pitch)

    wall_normal = normalize(projection.wall_orientation.vector)
    sun_direction = normalize(projection.sun_orientation.vector)
    world_up = normalize(projection.world_up_orientation.vector)

    meta = build_mirror_meta(grid, origin, pitch)
    base = [MirrorReflectionSolution(m.mirror_id, m.row, m.col, m.center) for m in meta]

    if projection.sun_orientation.vector.length() < eps:
        return _propagate(
            base,
            ReflectionSolverError(
                SolverErrorCode.INCOMING_ALIGNMENT, "Sun direction vector cannot be zero.",
            ),
        )

    if abs(world_up.dot(wall_normal)) >= solver.wall_basis_alignment_limit:
        return _propagate(
            base,
            ReflectionSolverError(
                SolverErrorCode.INVALID_WALL_BASIS,
                "Wall normal is nearly parallel to world up. Adjust the world-up "
                "vector to create a stable vertical axis.",
            ),
        )

    axes = derive_wall_basis(wall_normal, world_up, eps)
    if axes is None:
        return _propagate(
            base,
            ReflectionSolverError(
                SolverErrorCode.INVALID_WALL_BASIS,
                "Unable to derive wall axes from provided vectors.",
            ),
        )
    basis = _WallBasis(u=axes[0], v=axes[1], normal=wall_normal)

    wall_point = (
        wall_anchor if wall_anchor is not None
        else origin + wall_normal * projection.wall_distance
    )

    if pattern is None or not pattern.points:
        targets = _fallback_targets(meta, wall_point, basis, projection.projection_offset)
    else:
        pattern_origin = (
            _project_onto_plane(meta[0].center, wall_point, wall_normal)
            + basis.v * projection.projection_offset
        )
        targets = _pattern_targets(pattern, grid, basis, pattern_origin, projection)

    by_mirror, ordered, assignment_errors = assign_targets(meta, targets, eps)
    theta = effective_angular_spread(projection)

    mirrors: list[MirrorReflectionSolution] = []
    for m, solution in zip(meta, base):
        target = by_mirror.get(m.mirror_id)
        if target is None:
            mirrors.append(solution)
            continue
        mirrors.append(
            solve_mirror(m, target, sun_direction, wall_point, basis, theta, eps)
        )

    errors = tuple(assignment_errors) + tuple(e for m in mirrors for e in m.errors)
    logger.debug(
        "Solved %d mirrors, %d assignments, %d errors",
        len(mirrors), len(ordered), len(errors),
    )
    return ReflectionSolverResult(tuple(mirrors), tuple(ordered), errors)
