"""Median/MAD robust statistics.

The normalised MAD (``MAD * 1.4826``) estimates the standard deviation of
normally distributed data while ignoring up to half the samples being
arbitrarily wrong, which makes it suitable for rejecting the occasional
blob that was measured while two tiles overlapped.

Usage::

    from mirror_control.calibration.robust_stats import detect_outliers, robust_max
    result = detect_outliers([100, 101, 99, 140], mad_threshold=3.0, direction="high")
    result.outliers          # [140.0]
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, Generic, Literal, Sequence, TypeVar

import numpy as np

NORMALIZED_MAD_FACTOR = 1.4826
DEFAULT_OUTLIER_MAD_THRESHOLD = 3.0

Direction = Literal["both", "high", "low"]
T = TypeVar("T")


def compute_median(values: Sequence[float]) -> float:
    """Median of *values*; 0.0 for an empty sequence."""
    if len(values) == 0:
        return 0.0
    return float(np.median(np.asarray(values, dtype=float)))


def compute_mad(values: Sequence[float], center: float) -> float:
    """Median absolute deviation around *center*."""
    if len(values) == 0:
        return 0.0
    return float(np.median(np.abs(np.asarray(values, dtype=float) - center)))


def compute_normalized_mad(values: Sequence[float], center: float) -> float:
    return compute_mad(values, center) * NORMALIZED_MAD_FACTOR


@dataclass(slots=True)
class OutlierDetectionResult(Generic[T]):
    inliers: list[T] = field(default_factory=list)
    outliers: list[T] = field(default_factory=list)
    outlier_indices: list[int] = field(default_factory=list)
    median: float = 0.0
    mad: float = 0.0
    n_mad: float = 0.0
    upper_threshold: float = float("inf")
    lower_threshold: float = float("-inf")


def detect_outliers(
    values: Sequence[float],
    mad_threshold: float = DEFAULT_OUTLIER_MAD_THRESHOLD,
    direction: Direction = "both",
) -> OutlierDetectionResult[float]:
    """Split *values* into inliers and outliers around the median.

    A value is an outlier when it lies strictly beyond
    ``median +/- mad_threshold * nMAD`` on a side selected by *direction*.
    A zero MAD collapses the band onto the median, so with three equal sizes
    and one larger the larger one is rejected.  Fewer than two values never
    produce outliers.
    """
    if direction not in ("both", "high", "low"):
        raise ValueError(f"direction must be 'both', 'high' or 'low', got {direction!r}")

    result: OutlierDetectionResult[float] = OutlierDetectionResult()
    if len(values) == 0:
        return result
    arr = np.asarray(values, dtype=float)
    if arr.size == 1:
        result.inliers = [float(arr[0])]
        result.median = float(arr[0])
        return result

    median = compute_median(arr)
    mad = compute_mad(arr, median)
    n_mad = mad * NORMALIZED_MAD_FACTOR
    band = mad_threshold * n_mad

    result.median = median
    result.mad = mad
    result.n_mad = n_mad
    result.upper_threshold = median + band
    result.lower_threshold = median - band

    mask = np.zeros(arr.size, dtype=bool)
    if direction in ("both", "high"):
        mask |= arr > result.upper_threshold
    if direction in ("both", "low"):
        mask |= arr < result.lower_threshold

    result.outlier_indices = [int(i) for i in np.flatnonzero(mask)]
    result.outliers = [float(v) for v in arr[mask]]
    result.inliers = [float(v) for v in arr[~mask]]
    return result


def detect_outliers_with_keys(
    entries: Sequence[T],
    get_value: Callable[[T], float],
    mad_threshold: float = DEFAULT_OUTLIER_MAD_THRESHOLD,
    direction: Direction = "both",
) -> OutlierDetectionResult[T]:
    """Like :func:`detect_outliers` but returns the original entries."""
    numeric = detect_outliers([get_value(e) for e in entries], mad_threshold, direction)
    rejected = set(numeric.outlier_indices)
    return OutlierDetectionResult(
        inliers=[e for i, e in enumerate(entries) if i not in rejected],
        outliers=[entries[i] for i in numeric.outlier_indices],
        outlier_indices=list(numeric.outlier_indices),
        median=numeric.median,
        mad=numeric.mad,
        n_mad=numeric.n_mad,
        upper_threshold=numeric.upper_threshold,
        lower_threshold=numeric.lower_threshold,
    )


def robust_max(values: Sequence[float], mad_threshold: float = DEFAULT_OUTLIER_MAD_THRESHOLD) -> float:
    """Maximum after discarding high outliers; plain max when all are rejected."""
    if len(values) == 0:
        return 0.0
    inliers = detect_outliers(values, mad_threshold, "high").inliers
    return max(inliers) if inliers else float(max(values))


def robust_min(values: Sequence[float], mad_threshold: float = DEFAULT_OUTLIER_MAD_THRESHOLD) -> float:
    """Minimum after discarding low outliers; plain min when all are rejected."""
    if len(values) == 0:
        return 0.0
    inliers = detect_outliers(values, mad_threshold, "low").inliers
    return min(inliers) if inliers else float(min(values))
