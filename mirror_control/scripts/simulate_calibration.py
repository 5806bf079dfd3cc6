#!/usr/bin/env python3
"""Run a full-grid calibration against simulated hardware.

A synthetic camera renders the active tile's spot from the fake motors'
positions: each tile has a base position on a regular camera grid and
moves linearly with its motor steps.  Optional noise and missed
detections exercise the retry and decision paths.

Usage::

    python -m mirror_control.scripts.simulate_calibration --rows 3 --cols 4
    python -m mirror_control.scripts.simulate_calibration --rows 3 --cols 4 \
        --noise 0.002 --miss-rate 0.2 --seed 7 --profile-out sim_profile.json
"""

from __future__ import annotations

import argparse
import logging
import sys

import numpy as np

from mirror_control.calibration.expected_position import transform_tile_to_camera
from mirror_control.calibration.types import (
    BlobMeasurement,
    GridConfig,
    MotorRef,
    Point2,
    TileAddress,
    TileAssignment,
)
from mirror_control.configs.loader import ArrayConfig, ConfigError, load_config
from mirror_control.geometry.projection import ProjectionSettings
from mirror_control.geometry.rotation import get_axis_mapping
from mirror_control.hardware.adapters import FakeCameraAdapter, FakeClock, FakeMotorAdapter
from mirror_control.hardware.executor import CalibrationExecutor, ExecutorSnapshot
from mirror_control.profiles.storage import profile_from_summary, save_profile
from mirror_control.script.commands import AwaitDecision, DecisionOption
from mirror_control.utils.logging_config import setup_logging

logger = logging.getLogger(__name__)

SOURCE_WIDTH = 1920
SOURCE_HEIGHT = 1080


def build_grid(rows: int, cols: int) -> GridConfig:
    """One controller node per row, two motors per tile."""
    assignments = {
        TileAddress(r, c).key: TileAssignment(
            x=MotorRef(f"sim-node-{r}", 2 * c), y=MotorRef(f"sim-node-{r}", 2 * c + 1),
        )
        for r in range(rows)
        for c in range(cols)
    }
    return GridConfig(rows, cols, assignments)


class SimulatedArray:
    """Synthetic scene: where each tile's spot lands for given motor steps.

    Parameters
    ----------
    pitch : float
        Camera distance between neighbouring tiles (centered units).
    per_step : float
        Spot displacement per motor step (centered units).
    size : float
        Spot size (centered units).
    noise : float
        Standard deviation of Gaussian position noise.
    miss_rate : float
        Probability that a capture finds nothing.
    """

    def __init__(
        self,
        config: ArrayConfig,
        grid: GridConfig,
        motors: FakeMotorAdapter,
        pitch: float = 0.2,
        per_step: float = 1.5e-4,
        size: float = 0.1,
        noise: float = 0.0,
        miss_rate: float = 0.0,
        seed: int | None = None,
    ) -> None:
        self._grid = grid
        self._motors = motors
        self._rotation = config.calibration.array_rotation
        self._pitch = pitch
        self._per_step = per_step
        self._size = size
        self._noise = noise
        self._miss_rate = miss_rate
        self._rng = np.random.default_rng(seed)
        self.active: TileAddress | None = None

    def base_position(self, tile: TileAddress) -> Point2:
        cam_row, cam_col = transform_tile_to_camera(
            tile.row, tile.col, self._grid.rows, self._grid.cols, self._rotation,
        )
        return Point2(-0.1 + cam_col * self._pitch, -0.1 + cam_row * self._pitch)

    def spot(self, tile: TileAddress) -> Point2:
        a = self._grid.assignment(tile)
        steps = {
            "x": self._motors.positions.get(a.x, 0) if a.x is not None else 0,
            "y": self._motors.positions.get(a.y, 0) if a.y is not None else 0,
        }
        mapping = get_axis_mapping(self._rotation)
        dx = self._per_step * steps[mapping.logical_x] * (-1 if mapping.flip_x else 1)
        dy = self._per_step * steps[mapping.logical_y] * (-1 if mapping.flip_y else 1)
        base = self.base_position(tile)
        return Point2(base.x + dx, base.y + dy)

    def follow(self, snapshot: ExecutorSnapshot) -> None:
        """State callback: render whichever tile the executor is working on."""
        self.active = TileAddress.from_key(snapshot.active_tile) if snapshot.active_tile else None

    def capture(
        self, timeout_ms: int, expected_position: Point2 | None, max_distance: float | None,
    ) -> BlobMeasurement | None:
        if self.active is None or self._rng.random() < self._miss_rate:
            return None
        p = self.spot(self.active)
        jitter = self._rng.normal(0.0, self._noise, size=3) if self._noise > 0 else np.zeros(3)
        return BlobMeasurement(
            x=float(p.x + jitter[0]),
            y=float(p.y + jitter[1]),
            size=float(max(self._size + jitter[2], 1e-3)),
            response=1.0,
            source_width=SOURCE_WIDTH,
            source_height=SOURCE_HEIGHT,
        )


def make_decision_provider(on_failure: str):
    """Answer every decision with skip/ignore, or abort."""

    def provide(command: AwaitDecision) -> DecisionOption:
        if on_failure == "abort":
            return DecisionOption.ABORT
        for option in (DecisionOption.RETRY, DecisionOption.SKIP, DecisionOption.IGNORE):
            if on_failure == option.value and option in command.options:
                return option
        for option in (DecisionOption.SKIP, DecisionOption.IGNORE):
            if option in command.options:
                return option
        return DecisionOption.ABORT

    return provide


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Simulated full-grid calibration",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--rows", type=int, required=True, help="Grid rows")
    parser.add_argument("--cols", type=int, required=True, help="Grid columns")
    parser.add_argument("--config", "-c", type=str, help="Config file path")
    parser.add_argument("--profile-out", type=str, help="Write the resulting profile JSON here")
    parser.add_argument("--name", type=str, default="Simulated", help="Profile name")
    parser.add_argument("--pitch", type=float, default=0.2, help="Tile pitch, centered units")
    parser.add_argument("--noise", type=float, default=0.0, help="Position noise sigma")
    parser.add_argument("--miss-rate", type=float, default=0.0,
                        help="Probability a capture detects nothing (0-1)")
    parser.add_argument("--seed", type=int, default=None, help="Random seed")
    parser.add_argument("--on-failure", choices=["skip", "ignore", "retry", "abort"], default="skip",
                        help="Decision taken when a capture fails (default: skip/ignore)")
    parser.add_argument("--log-level", type=str, default=None, help="Override logging level")
    args = parser.parse_args()

    try:
        config = load_config(args.config)
    except (ConfigError, FileNotFoundError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(2)
    setup_logging(
        args.log_level or config.logging.level, config.logging.file,
        json=config.logging.json, context={"app": "simulate"},
    )

    grid = build_grid(args.rows, args.cols)
    motors = FakeMotorAdapter()
    scene = SimulatedArray(
        config, grid, motors, pitch=args.pitch, noise=args.noise,
        miss_rate=args.miss_rate, seed=args.seed,
    )
    executor = CalibrationExecutor(
        config,
        grid,
        motors,
        FakeCameraAdapter(scene.capture),
        make_decision_provider(args.on_failure),
        clock=FakeClock(),
        step_mode=False,
    )

    executor.set_state_callback(scene.follow)
    snapshot = executor.run_grid()

    progress = snapshot.progress
    print(
        f"Phase: {snapshot.phase.value}  completed={progress.completed}/{progress.total} "
        f"failed={progress.failed} skipped={progress.skipped}"
    )
    summary = snapshot.summary
    if summary is not None and summary.grid_blueprint is not None:
        fp = summary.grid_blueprint.adjusted_tile_footprint
        print(f"Tile footprint: {fp.width:.4f} x {fp.height:.4f}")
    print(f"Motor commands: {len(motors.calls)}")

    if args.profile_out:
        if summary is None:
            print("No summary produced; profile not written", file=sys.stderr)
            sys.exit(1)
        profile = profile_from_summary(
            summary, name=args.name, grid=grid, config=config,
            projection=ProjectionSettings.from_config(config.projection),
        )
        path = save_profile(profile, args.profile_out)
        print(f"Profile written to {path}")

    sys.exit(0 if snapshot.phase.value == "completed" else 1)


if __name__ == "__main__":
    main()
