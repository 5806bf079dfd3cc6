"""Vector math, array rotation and the reflection solver."""

from mirror_control.geometry.orientation import (
    OrientationState,
    Vec3,
    angles_to_vector,
    normalize,
    vector_to_angles,
    with_orientation_angles,
    with_orientation_vector,
)
from mirror_control.geometry.projection import PixelSpacing, ProjectionSettings
from mirror_control.geometry.reflection import (
    GridSize,
    MirrorReflectionSolution,
    PatternPoint,
    ReflectionPattern,
    ReflectionSolverError,
    ReflectionSolverResult,
    SolverErrorCode,
    solve_reflection,
)

__all__ = [
    "GridSize",
    "MirrorReflectionSolution",
    "OrientationState",
    "PatternPoint",
    "PixelSpacing",
    "ProjectionSettings",
    "ReflectionPattern",
    "ReflectionSolverError",
    "ReflectionSolverResult",
    "SolverErrorCode",
    "Vec3",
    "angles_to_vector",
    "normalize",
    "solve_reflection",
    "vector_to_angles",
    "with_orientation_angles",
    "with_orientation_vector",
]
