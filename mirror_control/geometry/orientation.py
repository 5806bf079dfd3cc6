"""Vector and orientation math.

Orientations are stored as :class:`OrientationState` values holding both
the yaw/pitch angles (degrees) and the equivalent unit vector.  Two angle
bases are supported:

forward
    ``(-sin yaw, cos yaw * sin pitch, -cos yaw * cos pitch)``.  Yaw/pitch of
    zero points along -Z.  Used for the wall normal and light direction.
up
    ``(sin yaw, -cos yaw * sin pitch, cos yaw * cos pitch)``.  Used for the
    world-up vector; pitch -90 gives +Y.

Usage::

    from mirror_control.geometry.orientation import OrientationState
    wall = OrientationState.from_angles(15.0, 0.0, "forward")
    wall.vector            # Vec3, unit length
"""

from __future__ import annotations

import math
from dataclasses import dataclass, replace
from typing import Literal

OrientationBasis = Literal["forward", "up"]
OrientationMode = Literal["angles", "vector"]

_DEGENERATE_EPS = 1e-6


# ---------------------------------------------------------------------------
# Vec3
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class Vec3:
    """Immutable 3-vector in world metres (or a unit direction)."""

    x: float
    y: float
    z: float

    def length(self) -> float:
        return math.hypot(self.x, self.y, self.z)

    def dot(self, other: Vec3) -> float:
        return self.x * other.x + self.y * other.y + self.z * other.z

    def cross(self, other: Vec3) -> Vec3:
        return Vec3(
            self.y * other.z - self.z * other.y,
            self.z * other.x - self.x * other.z,
            self.x * other.y - self.y * other.x,
        )

    def __add__(self, other: Vec3) -> Vec3:
        return Vec3(self.x + other.x, self.y + other.y, self.z + other.z)

    def __sub__(self, other: Vec3) -> Vec3:
        return Vec3(self.x - other.x, self.y - other.y, self.z - other.z)

    def __mul__(self, scalar: float) -> Vec3:
        return Vec3(self.x * scalar, self.y * scalar, self.z * scalar)

    __rmul__ = __mul__


ZERO = Vec3(0.0, 0.0, 0.0)


def normalize(v: Vec3) -> Vec3:
    length = v.length()
    if length == 0:
        return ZERO
    return Vec3(v.x / length, v.y / length, v.z / length)


# ---------------------------------------------------------------------------
# Angle <-> vector conversion
# ---------------------------------------------------------------------------


def angles_to_vector(yaw_deg: float, pitch_deg: float, basis: OrientationBasis) -> Vec3:
    """Convert yaw/pitch (degrees) to a unit vector in *basis*."""
    yaw = math.radians(yaw_deg)
    pitch = math.radians(pitch_deg)
    sin_yaw, cos_yaw = math.sin(yaw), math.cos(yaw)
    sin_pitch, cos_pitch = math.sin(pitch), math.cos(pitch)
    if basis == "forward":
        raw = Vec3(-sin_yaw, cos_yaw * sin_pitch, -cos_yaw * cos_pitch)
    elif basis == "up":
        raw = Vec3(sin_yaw, -cos_yaw * sin_pitch, cos_yaw * cos_pitch)
    else:
        raise ValueError(f"basis must be 'forward' or 'up', got {basis!r}")
    return normalize(raw)


def vector_to_angles(vector: Vec3, basis: OrientationBasis) -> tuple[float, float]:
    """Invert :func:`angles_to_vector`.

    Parameters
    ----------
    vector : Vec3
        Any non-normalised direction.
    basis : ``"forward"`` | ``"up"``
        Angle convention.

    Returns
    -------
    tuple[float, float]
        ``(yaw_deg, pitch_deg)`` with yaw in [-90, 90] and pitch in
        (-180, 180].  When the vector lies along X the pitch is degenerate
        and reported as 0.
    """
    n = normalize(vector)
    if basis == "forward":
        sin_yaw, sin_pitch_part, cos_pitch_part = -n.x, n.y, -n.z
    elif basis == "up":
        sin_yaw, sin_pitch_part, cos_pitch_part = n.x, -n.y, n.z
    else:
        raise ValueError(f"basis must be 'forward' or 'up', got {basis!r}")
    yaw = math.degrees(math.asin(_clamp(sin_yaw, -1.0, 1.0)))
    if math.hypot(sin_pitch_part, cos_pitch_part) < _DEGENERATE_EPS:
        return yaw, 0.0
    return yaw, math.degrees(math.atan2(sin_pitch_part, cos_pitch_part))


def _clamp(value: float, lo: float, hi: float) -> float:
    return min(hi, max(lo, value))


# ---------------------------------------------------------------------------
# Orientation state
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class OrientationState:
    """Yaw/pitch plus the consistent unit vector.

    ``mode`` records which representation was edited last and is the
    source of truth: in ``"angles"`` mode the vector is derived from the
    angles, in ``"vector"`` mode the angles are derived from the vector.
    Build instances through :meth:`from_angles` / :meth:`from_vector` to keep
    the two in sync.
    """

    mode: OrientationMode
    yaw: float
    pitch: float
    vector: Vec3

    def __post_init__(self) -> None:
        if self.mode not in ("angles", "vector"):
            raise ValueError(f"mode must be 'angles' or 'vector', got {self.mode!r}")

    @classmethod
    def from_angles(
        cls, yaw: float, pitch: float, basis: OrientationBasis,
    ) -> OrientationState:
        return cls("angles", yaw, pitch, angles_to_vector(yaw, pitch, basis))

    @classmethod
    def from_vector(cls, vector: Vec3, basis: OrientationBasis) -> OrientationState:
        unit = normalize(vector)
        yaw, pitch = vector_to_angles(unit, basis)
        return cls("vector", yaw, pitch, unit)


def with_orientation_angles(
    orientation: OrientationState, yaw: float, pitch: float, basis: OrientationBasis,
) -> OrientationState:
    """Return *orientation* with new angles and the matching vector."""
    return replace(
        orientation, yaw=yaw, pitch=pitch, vector=angles_to_vector(yaw, pitch, basis),
    )


def with_orientation_vector(
    orientation: OrientationState, vector: Vec3, basis: OrientationBasis,
) -> OrientationState:
    """Return *orientation* with a new (normalised) vector and matching angles."""
    unit = normalize(vector)
    yaw, pitch = vector_to_angles(unit, basis)
    return replace(orientation, yaw=yaw, pitch=pitch, vector=unit)
