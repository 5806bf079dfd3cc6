"""Configuration loader for the mirror array.

Loads and validates ``array.yaml`` into typed, frozen dataclasses.  Motor
limits, mirror pitch, solver tolerances and calibration tunables all come
from the config and are passed explicitly into the solver, the blueprint
engine, the calibration scripts and the executor.

Usage::

    from mirror_control.configs.loader import load_config
    cfg = load_config()                     # default path
    cfg = load_config("/custom/array.yaml") # explicit path
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from mirror_control.utils.fs import load_yaml

logger = logging.getLogger(__name__)

ARRAY_ROTATIONS = (0, 90, 180, 270)
STAGING_POSITIONS = ("nearest-corner", "corner", "bottom", "left")
ORIENTATION_BASES = ("forward", "up")
RUN_MODES = ("auto", "step")


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class ConfigError(Exception):
    """Raised when configuration validation fails."""

    pass


# ---------------------------------------------------------------------------
# Dataclasses -- mirror the YAML structure
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class MotorConfig:
    """Stepper travel limits shared by every tile axis."""

    min_position_steps: int
    max_position_steps: int
    steps_per_degree: float

    def clamp(self, steps: float) -> float:
        """Clamp *steps* to ``[min_position_steps, max_position_steps]``."""
        return min(self.max_position_steps, max(self.min_position_steps, steps))


@dataclass(frozen=True)
class ArrayGeometryConfig:
    """Physical mirror grid dimensions in metres."""

    mirror_pitch_m: float
    mirror_dimension_m: float


@dataclass(frozen=True)
class SolverConfig:
    """Numerical tolerances of the reflection solver."""

    epsilon: float
    wall_basis_alignment_limit: float


@dataclass(frozen=True)
class OrientationConfig:
    """An orientation given as yaw/pitch angles in a named basis."""

    basis: str
    yaw_deg: float
    pitch_deg: float


@dataclass(frozen=True)
class ProjectionConfig:
    """Default projection settings.

    Parameters
    ----------
    wall_distance_m : float
        Distance from the array origin to the wall plane along its normal.
    wall_distance_limits_m : tuple[float, float]
        Accepted range for ``wall_distance_m``.
    wall_orientation, sun_orientation, world_up_orientation : OrientationConfig
        Wall normal, direction towards the light source, and world-up.
    projection_offset_m : float
        Vertical shift of the pattern on the wall (along the wall's up axis).
    pixel_spacing_m : tuple[float, float]
        Wall distance between adjacent pattern cells in X and Y.
    sun_angular_diameter_deg : float
        Apparent angular diameter of the light source.
    slope_blur_sigma_deg : float
        One-sigma mirror slope error.
    """

    wall_distance_m: float
    wall_distance_limits_m: tuple[float, float]
    wall_orientation: OrientationConfig
    sun_orientation: OrientationConfig
    world_up_orientation: OrientationConfig
    projection_offset_m: float
    pixel_spacing_m: tuple[float, float]
    sun_angular_diameter_deg: float
    slope_blur_sigma_deg: float


@dataclass(frozen=True)
class RobustTileSizeConfig:
    """Median/MAD outlier rejection for blueprint tile sizing."""

    enabled: bool = True
    mad_threshold: float = 3.0


@dataclass(frozen=True)
class RoiConfig:
    """Camera region of interest in viewport coordinates ([0, 1])."""

    x: float
    y: float
    width: float
    height: float

    @property
    def center(self) -> tuple[float, float]:
        """ROI centre in viewport coordinates."""
        return self.x + self.width / 2, self.y + self.height / 2


@dataclass(frozen=True)
class CalibrationConfig:
    """Calibration run tunables.

    Tolerances are normalised search radii around the expected blob
    position.  ``first_tile_tolerance`` applies while no prior measurement
    exists and is therefore wider.
    """

    delta_steps: int
    grid_gap_normalized: float
    grid_gap_limits: tuple[float, float]
    sample_timeout_ms: int
    max_detection_retries: int
    retry_delay_ms: int
    tile_tolerance: float
    first_tile_tolerance: float
    first_tile_interim_step_delta: int
    robust_tile_size: RobustTileSizeConfig
    array_rotation: int
    staging_position: str
    roi: RoiConfig
    mode: str = "auto"


@dataclass(frozen=True)
class LoggingConfig:
    """Logging defaults for the CLI entrypoints."""

    level: str = "INFO"
    file: str | None = None
    json: bool = False


@dataclass(frozen=True)
class ArrayConfig:
    """Complete configuration loaded from ``array.yaml``."""

    motor: MotorConfig
    array: ArrayGeometryConfig
    solver: SolverConfig
    projection: ProjectionConfig
    calibration: CalibrationConfig
    logging: LoggingConfig


# ---------------------------------------------------------------------------
# Internal parsing helpers
# ---------------------------------------------------------------------------


def _pair(value: Any, name: str) -> tuple[float, float]:
    if isinstance(value, dict):
        return float(value["x"]), float(value["y"])
    if not isinstance(value, (list, tuple)) or len(value) != 2:
        raise ConfigError(f"{name} must be a 2-element list, got {value!r}")
    return float(value[0]), float(value[1])


def _parse_orientation(name: str, data: dict[str, Any]) -> OrientationConfig:
    basis = str(data.get("basis", "forward"))
    if basis not in ORIENTATION_BASES:
        raise ConfigError(
            f"{name}.basis must be one of {ORIENTATION_BASES}, got {basis!r}"
        )
    return OrientationConfig(
        basis=basis,
        yaw_deg=float(data["yaw_deg"]),
        pitch_deg=float(data["pitch_deg"]),
    )


def _parse_projection(data: dict[str, Any]) -> ProjectionConfig:
    return ProjectionConfig(
        wall_distance_m=float(data["wall_distance_m"]),
        wall_distance_limits_m=_pair(
            data.get("wall_distance_limits_m", [1.0, 20.0]),
            "projection.wall_distance_limits_m",
        ),
        wall_orientation=_parse_orientation(
            "wall_orientation", data["wall_orientation"],
        ),
        sun_orientation=_parse_orientation(
            "sun_orientation", data["sun_orientation"],
        ),
        world_up_orientation=_parse_orientation(
            "world_up_orientation", data["world_up_orientation"],
        ),
        projection_offset_m=float(data.get("projection_offset_m", 0.0)),
        pixel_spacing_m=_pair(data["pixel_spacing_m"], "projection.pixel_spacing_m"),
        sun_angular_diameter_deg=float(data["sun_angular_diameter_deg"]),
        slope_blur_sigma_deg=float(data["slope_blur_sigma_deg"]),
    )


def _parse_calibration(data: dict[str, Any]) -> CalibrationConfig:
    robust = data.get("robust_tile_size", {}) or {}
    roi = data["roi"]
    return CalibrationConfig(
        delta_steps=int(data["delta_steps"]),
        grid_gap_normalized=float(data.get("grid_gap_normalized", 0.0)),
        grid_gap_limits=_pair(
            data.get("grid_gap_limits", [0.0, 0.25]), "calibration.grid_gap_limits",
        ),
        sample_timeout_ms=int(data["sample_timeout_ms"]),
        max_detection_retries=int(data["max_detection_retries"]),
        retry_delay_ms=int(data["retry_delay_ms"]),
        tile_tolerance=float(data["tile_tolerance"]),
        first_tile_tolerance=float(data["first_tile_tolerance"]),
        first_tile_interim_step_delta=int(data["first_tile_interim_step_delta"]),
        robust_tile_size=RobustTileSizeConfig(
            enabled=bool(robust.get("enabled", True)),
            mad_threshold=float(robust.get("mad_threshold", 3.0)),
        ),
        array_rotation=int(data.get("array_rotation", 0)),
        staging_position=str(data.get("staging_position", "nearest-corner")),
        roi=RoiConfig(
            x=float(roi["x"]),
            y=float(roi["y"]),
            width=float(roi["width"]),
            height=float(roi["height"]),
        ),
        mode=str(data.get("mode", "auto")),
    )


def _validate_config(cfg: ArrayConfig) -> None:
    """Validate cross-field consistency.

    Raises
    ------
    ConfigError
        On any invalid combination.
    """
    m = cfg.motor
    if m.min_position_steps >= m.max_position_steps:
        raise ConfigError(
            f"motor.min_position_steps ({m.min_position_steps}) must be below "
            f"max_position_steps ({m.max_position_steps})"
        )
    if m.steps_per_degree <= 0:
        raise ConfigError("motor.steps_per_degree must be positive")

    a = cfg.array
    if a.mirror_pitch_m <= 0 or a.mirror_dimension_m <= 0:
        raise ConfigError("array dimensions must be positive")
    if a.mirror_dimension_m > a.mirror_pitch_m:
        raise ConfigError(
            f"mirror_dimension_m ({a.mirror_dimension_m}) exceeds "
            f"mirror_pitch_m ({a.mirror_pitch_m})"
        )

    s = cfg.solver
    if s.epsilon <= 0:
        raise ConfigError("solver.epsilon must be positive")
    if not 0 < s.wall_basis_alignment_limit < 1:
        raise ConfigError("solver.wall_basis_alignment_limit must be in (0, 1)")

    p = cfg.projection
    lo, hi = p.wall_distance_limits_m
    if not lo <= p.wall_distance_m <= hi:
        raise ConfigError(
            f"projection.wall_distance_m {p.wall_distance_m} outside [{lo}, {hi}]"
        )
    if p.pixel_spacing_m[0] <= 0 or p.pixel_spacing_m[1] <= 0:
        raise ConfigError("projection.pixel_spacing_m must be positive")
    if p.sun_angular_diameter_deg < 0 or p.slope_blur_sigma_deg < 0:
        raise ConfigError("angular spreads must be non-negative")

    c = cfg.calibration
    if c.array_rotation not in ARRAY_ROTATIONS:
        raise ConfigError(
            f"calibration.array_rotation must be one of {ARRAY_ROTATIONS}, "
            f"got {c.array_rotation}"
        )
    if c.staging_position not in STAGING_POSITIONS:
        raise ConfigError(
            f"calibration.staging_position must be one of {STAGING_POSITIONS}, "
            f"got {c.staging_position!r}"
        )
    if c.mode not in RUN_MODES:
        raise ConfigError(f"calibration.mode must be one of {RUN_MODES}")
    if c.max_detection_retries < 1:
        raise ConfigError("calibration.max_detection_retries must be >= 1")
    if c.grid_gap_limits[0] > c.grid_gap_limits[1]:
        raise ConfigError("calibration.grid_gap_limits must be ordered")
    for name in ("tile_tolerance", "first_tile_tolerance"):
        value = getattr(c, name)
        if not (math.isfinite(value) and value > 0):
            raise ConfigError(f"calibration.{name} must be positive")
    if c.robust_tile_size.mad_threshold <= 0:
        raise ConfigError("calibration.robust_tile_size.mad_threshold must be positive")
    if c.delta_steps > m.max_position_steps:
        logger.warning(
            "delta_steps=%d exceeds motor range (max %d); step tests will be clamped",
            c.delta_steps,
            m.max_position_steps,
        )


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def load_config(path: str | Path | None = None) -> ArrayConfig:
    """Load and validate the array configuration from YAML.

    Parameters
    ----------
    path : str | Path | None
        Path to ``array.yaml``.  ``None`` loads the default shipped
        alongside this module.

    Returns
    -------
    ArrayConfig
        Fully validated, frozen configuration object.

    Raises
    ------
    ConfigError
        If any field is missing or fails validation.
    FileNotFoundError
        If *path* does not exist.
    """
    if path is None:
        path = Path(__file__).parent / "array.yaml"
    else:
        path = Path(path)

    if not path.exists():
        raise FileNotFoundError(f"Configuration file not found: {path}")

    logger.info("Loading configuration from %s", path)

    data: dict[str, Any] = load_yaml(path)
    if data is None:
        raise ConfigError(f"Empty configuration file: {path}")

    try:
        motor_data = data["motor"]
        motor = MotorConfig(
            min_position_steps=int(motor_data["min_position_steps"]),
            max_position_steps=int(motor_data["max_position_steps"]),
            steps_per_degree=float(motor_data.get("steps_per_degree", 190)),
        )

        array_data = data["array"]
        array = ArrayGeometryConfig(
            mirror_pitch_m=float(array_data["mirror_pitch_m"]),
            mirror_dimension_m=float(array_data["mirror_dimension_m"]),
        )

        solver_data = data.get("solver", {}) or {}
        solver = SolverConfig(
            epsilon=float(solver_data.get("epsilon", 1e-6)),
            wall_basis_alignment_limit=float(
                solver_data.get("wall_basis_alignment_limit", 0.98)
            ),
        )

        log_data = data.get("logging", {}) or {}
        logging_cfg = LoggingConfig(
            level=str(log_data.get("level", "INFO")),
            file=log_data.get("file"),
            json=bool(log_data.get("json", False)),
        )

        config = ArrayConfig(
            motor=motor,
            array=array,
            solver=solver,
            projection=_parse_projection(data["projection"]),
            calibration=_parse_calibration(data["calibration"]),
            logging=logging_cfg,
        )

        _validate_config(config)
        logger.info("Configuration loaded successfully")
        return config

    except KeyError as exc:
        raise ConfigError(
            f"Missing required configuration key: {exc}"
        ) from exc
    except (TypeError, ValueError) as exc:
        raise ConfigError(
            f"Invalid configuration value: {exc}"
        ) from exc
