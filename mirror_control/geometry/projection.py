"""Projection settings: wall, light and world-up geometry."""

from __future__ import annotations

from dataclasses import dataclass

from mirror_control.configs.loader import OrientationConfig, ProjectionConfig
from mirror_control.geometry.orientation import OrientationState, normalize


@dataclass(frozen=True, slots=True)
class PixelSpacing:
    """Wall distance (metres) between adjacent pattern cells."""

    x: float
    y: float


@dataclass(frozen=True, slots=True)
class ProjectionSettings:
    """Everything the reflection solver needs about the scene.

    Parameters
    ----------
    wall_distance : float
        Distance from the array origin to the wall plane, metres.
    wall_orientation : OrientationState
        Wall normal (forward basis), pointing from the array to the wall.
    sun_orientation : OrientationState
        Direction from the mirrors towards the light source.
    world_up_orientation : OrientationState
        World vertical (up basis).
    projection_offset : float
        Shift of the pattern along the wall's vertical axis, metres.
    pixel_spacing : PixelSpacing
        Pattern cell pitch on the wall.
    sun_angular_diameter_deg, slope_blur_sigma_deg : float
        Angular spread contributions used for the footprint ellipse.
    """

    wall_distance: float
    wall_orientation: OrientationState
    sun_orientation: OrientationState
    world_up_orientation: OrientationState
    projection_offset: float
    pixel_spacing: PixelSpacing
    sun_angular_diameter_deg: float
    slope_blur_sigma_deg: float

    @classmethod
    def from_config(cls, cfg: ProjectionConfig) -> ProjectionSettings:
        return cls(
            wall_distance=cfg.wall_distance_m,
            wall_orientation=_orientation(cfg.wall_orientation),
            sun_orientation=_orientation(cfg.sun_orientation),
            world_up_orientation=_orientation(cfg.world_up_orientation),
            projection_offset=cfg.projection_offset_m,
            pixel_spacing=PixelSpacing(*cfg.pixel_spacing_m),
            sun_angular_diameter_deg=cfg.sun_angular_diameter_deg,
            slope_blur_sigma_deg=cfg.slope_blur_sigma_deg,
        )


def _orientation(cfg: OrientationConfig) -> OrientationState:
    return OrientationState.from_angles(cfg.yaw_deg, cfg.pitch_deg, cfg.basis)  # type: ignore[arg-type]


def wall_up_alignment(settings: ProjectionSettings) -> float:
    """``|dot(world_up, wall_normal)|`` of the normalised vectors."""
    up = normalize(settings.world_up_orientation.vector)
    wall = normalize(settings.wall_orientation.vector)
    return abs(up.dot(wall))
