"""Shared fixtures: default config, small grids and a scripted command host."""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import Any, Iterable, Iterator

import pytest

from mirror_control.calibration.blueprint import compute_calibration_summary
from mirror_control.calibration.types import (
    BlobMeasurement,
    CalibrationSummary,
    GridConfig,
    MotorRef,
    StepToDisplacement,
    TileAddress,
    TileAssignment,
    TileCalibrationResult,
    TileStatus,
)
from mirror_control.configs.loader import ArrayConfig, load_config
from mirror_control.script.commands import (
    AwaitDecision,
    CalibrationCommand,
    Capture,
    CaptureResult,
    CommandResult,
    DecisionOption,
    DecisionResult,
    Script,
    ack_for,
)
from mirror_control.utils import logging_config


def blob(x: float, y: float, size: float = 0.1, width: int = 1920, height: int = 1080) -> BlobMeasurement:
    return BlobMeasurement(x=x, y=y, size=size, source_width=width, source_height=height)


def wired_grid(rows: int, cols: int, missing: Iterable[str] = ()) -> GridConfig:
    skip = set(missing)
    assignments = {
        TileAddress(r, c).key: TileAssignment(MotorRef(f"node-{r}", 2 * c), MotorRef(f"node-{r}", 2 * c + 1))
        for r in range(rows)
        for c in range(cols)
        if TileAddress(r, c).key not in skip
    }
    return GridConfig(rows, cols, assignments)


class ScriptedHost:
    """Answers script commands from canned captures and decisions.

    Captures are consumed in order; an exhausted queue answers with a miss.
    """

    def __init__(
        self,
        captures: Iterable[BlobMeasurement | None] = (),
        decisions: Iterable[DecisionOption] = (),
    ) -> None:
        self.captures = list(captures)
        self.decisions = list(decisions)
        self.commands: list[CalibrationCommand] = []

    def __call__(self, command: CalibrationCommand) -> CommandResult:
        self.commands.append(command)
        if isinstance(command, Capture):
            measurement = self.captures.pop(0) if self.captures else None
            return CaptureResult(measurement, None if measurement is not None else "No blob detected")
        if isinstance(command, AwaitDecision):
            return DecisionResult(self.decisions.pop(0))
        return ack_for(command)

    def run(self, script: Script[Any]) -> Any:
        """Drive *script* to completion and return its value."""
        try:
            command = next(script)
            while True:
                command = script.send(self(command))
        except StopIteration as stop:
            return stop.value

    def of_type(self, cls: type) -> list[Any]:
        return [c for c in self.commands if isinstance(c, cls)]


@pytest.fixture
def config() -> ArrayConfig:
    return load_config()


@pytest.fixture
def single_attempt_config(config: ArrayConfig) -> ArrayConfig:
    """Default config with a single detection attempt per capture."""
    return replace(config, calibration=replace(config.calibration, max_detection_retries=1))


def completed_result(row: int, col: int, x: float, y: float, size: float = 0.1) -> TileCalibrationResult:
    """A completed tile measured on a square 1000x1000 frame."""
    return TileCalibrationResult(
        tile=TileAddress(row, col),
        status=TileStatus.COMPLETED,
        home_measurement=blob(x, y, size, width=1000, height=1000),
        step_to_displacement=StepToDisplacement(-1.5e-4, 1.5e-4),
    )


@pytest.fixture
def grid_summary(config: ArrayConfig) -> CalibrationSummary:
    """Summary of a perfect 2x2 grid with 0.2 pitch."""
    results = {
        r.tile.key: r
        for r in (
            completed_result(0, 0, 0.0, 0.0),
            completed_result(0, 1, 0.2, 0.0),
            completed_result(1, 0, 0.0, 0.2),
            completed_result(1, 1, 0.2, 0.2),
        )
    }
    return compute_calibration_summary(results, 2, 2, config)


@pytest.fixture
def restore_logging(monkeypatch: pytest.MonkeyPatch) -> Iterator[None]:
    """Let a test call ``setup_logging`` without leaking handlers or context."""
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    monkeypatch.setattr(logging_config, "_configured", False)
    yield
    for handler in list(root.handlers):
        if handler not in handlers:
            root.removeHandler(handler)
            handler.close()
    for handler in handlers:
        if handler not in root.handlers:
            root.addHandler(handler)
    root.setLevel(level)
    logging.captureWarnings(False)
    logging_config.pop_context()
