"""Physical array rotation relative to the camera.

The array can be mounted rotated by 0/90/180/270 degrees clockwise as seen
by the camera.  Baseline (0 deg): motor +X moves the spot LEFT, motor +Y
moves it UP.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Literal

ARRAY_ROTATIONS = (0, 90, 180, 270)

Axis = Literal["x", "y"]


@dataclass(frozen=True, slots=True)
class AxisMapping:
    """Which physical motor axis drives each logical camera axis.

    Parameters
    ----------
    logical_x, logical_y : ``"x"`` | ``"y"``
        Physical axis that moves the spot along camera X / camera Y.
    flip_x, flip_y : bool
        Whether positive steps move the spot in the negative camera
        direction on that logical axis.
    """

    logical_x: Axis
    logical_y: Axis
    flip_x: bool
    flip_y: bool


_AXIS_MAPPINGS = {
    0: AxisMapping("x", "y", True, False),
    90: AxisMapping("y", "x", True, True),
    180: AxisMapping("x", "y", False, True),
    270: AxisMapping("y", "x", False, False),
}


def validate_rotation(rotation: int) -> int:
    if rotation not in ARRAY_ROTATIONS:
        raise ValueError(f"array rotation must be one of {ARRAY_ROTATIONS}, got {rotation!r}")
    return rotation


def rotate_vector(x: float, y: float, rotation: int) -> tuple[float, float]:
    """Rotate a 2-D vector clockwise by *rotation* degrees."""
    validate_rotation(rotation)
    if rotation == 90:
        return y, -x
    if rotation == 180:
        return -x, -y
    if rotation == 270:
        return -y, x
    return x, y


def inverse_rotate_vector(x: float, y: float, rotation: int) -> tuple[float, float]:
    """Undo :func:`rotate_vector`."""
    inverse = {0: 0, 90: 270, 180: 180, 270: 90}[validate_rotation(rotation)]
    return rotate_vector(x, y, inverse)


def get_axis_mapping(rotation: int) -> AxisMapping:
    return _AXIS_MAPPINGS[validate_rotation(rotation)]


def get_step_test_jog_direction(axis: Axis, rotation: int) -> int:
    """Sign of the step-test jog so the spot moves in the positive camera direction."""
    mapping = get_axis_mapping(rotation)
    if axis == "x":
        if mapping.logical_y == "x":
            return -1 if mapping.flip_y else 1
        return -1 if mapping.flip_x else 1
    if mapping.logical_x == "y":
        return -1 if mapping.flip_x else 1
    return -1 if mapping.flip_y else 1
