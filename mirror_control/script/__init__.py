"""Calibration scripts: command protocol, tile workflow, run scripts."""

from mirror_control.script.commands import (
    Ack,
    CalibrationCommand,
    CaptureResult,
    CommandKind,
    CommandResult,
    DecisionOption,
    DecisionResult,
    ProtocolError,
    ack_for,
    check_result,
)
from mirror_control.script.context import ScriptContext, TileDescriptor
from mirror_control.script.grid_script import (
    align_tiles,
    grid_calibration_script,
    single_tile_recalibration_script,
)
from mirror_control.script.state_machine import (
    DONE,
    CalibrationStateMachine,
    MachineState,
    run_to_completion,
)
from mirror_control.script.tile_calibration import ABORT, TileCalibrationOutcome, calibrate_tile

__all__ = [
    "ABORT",
    "Ack",
    "CalibrationCommand",
    "CalibrationStateMachine",
    "CaptureResult",
    "CommandKind",
    "CommandResult",
    "DONE",
    "DecisionOption",
    "DecisionResult",
    "MachineState",
    "ProtocolError",
    "ScriptContext",
    "TileCalibrationOutcome",
    "TileDescriptor",
    "ack_for",
    "align_tiles",
    "calibrate_tile",
    "check_result",
    "grid_calibration_script",
    "run_to_completion",
    "single_tile_recalibration_script",
]
