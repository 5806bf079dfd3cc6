"""Array configuration loading and validation."""

from mirror_control.configs.loader import (
    ArrayConfig,
    ArrayGeometryConfig,
    CalibrationConfig,
    ConfigError,
    LoggingConfig,
    MotorConfig,
    OrientationConfig,
    ProjectionConfig,
    RobustTileSizeConfig,
    RoiConfig,
    SolverConfig,
    load_config,
)

__all__ = [
    "ArrayConfig",
    "ArrayGeometryConfig",
    "CalibrationConfig",
    "ConfigError",
    "LoggingConfig",
    "MotorConfig",
    "OrientationConfig",
    "ProjectionConfig",
    "RobustTileSizeConfig",
    "RoiConfig",
    "SolverConfig",
    "load_config",
]
