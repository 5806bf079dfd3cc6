"""
Calibration math.

Robust statistics, grid blueprint estimation, motor-reach bounds,
step-test ratios, staging poses and expected blob positions.  Everything
here is pure: no I/O, no hardware, no clocks.
"""

from mirror_control.calibration.blueprint import (
    compute_calibration_summary,
    compute_grid_blueprint,
)
from mirror_control.calibration.bounds import compute_axis_bounds
from mirror_control.calibration.expected_position import compute_expected_blob_position
from mirror_control.calibration.robust_stats import detect_outliers
from mirror_control.calibration.staging import compute_pose_targets
from mirror_control.calibration.step_test import (
    combine_step_test_results,
    compute_alignment_target_steps,
    compute_axis_step_test_result,
)
from mirror_control.calibration.types import (
    BlobMeasurement,
    CalibrationSummary,
    GridBlueprint,
    TileAddress,
    TileCalibrationResult,
    TileStatus,
)

__all__ = [
    "BlobMeasurement",
    "CalibrationSummary",
    "GridBlueprint",
    "TileAddress",
    "TileCalibrationResult",
    "TileStatus",
    "combine_step_test_results",
    "compute_alignment_target_steps",
    "compute_axis_bounds",
    "compute_axis_step_test_result",
    "compute_calibration_summary",
    "compute_expected_blob_position",
    "compute_grid_blueprint",
    "compute_pose_targets",
    "detect_outliers",
]
