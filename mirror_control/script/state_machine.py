"""Pure step-function view of a calibration script.

A host without coroutines (or one that must persist a run between
processes) drives a script through ``(state, result) -> (state, command)``
transitions.  :class:`MachineState` is an immutable value holding every
result fed so far; stepping from any state replays that history into a
fresh generator.  The most recently produced state keeps its live generator
cached, so the usual forward walk costs one ``send`` per step.

Usage::

    machine = CalibrationStateMachine.for_grid(ctx)
    state, command = machine.start()
    while command is not DONE:
        state, command = machine.step(state, host.execute(command))
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Final, Union

from mirror_control.calibration.types import CalibrationSummary, TileAddress
from mirror_control.script.commands import (
    CalibrationCommand,
    CommandResult,
    ProtocolError,
    Script,
    check_result,
)
from mirror_control.script.context import ScriptContext
from mirror_control.script.grid_script import (
    grid_calibration_script,
    single_tile_recalibration_script,
)


class _Done:
    __slots__ = ()

    def __repr__(self) -> str:
        return "DONE"


DONE: Final = _Done()

Step = Union[CalibrationCommand, _Done]


@dataclass(frozen=True, slots=True)
class MachineState:
    """Everything needed to resume a script: the results it has consumed.

    ``pending`` is the command waiting for a result, or None once the
    script has returned.
    """

    history: tuple[CommandResult, ...] = ()
    pending: CalibrationCommand | None = None
    return_value: Any = None

    @property
    def done(self) -> bool:
        return self.pending is None


class CalibrationStateMachine:
    """Drive a script factory through explicit, replayable states."""

    def __init__(self, factory: Callable[[], Script[Any]]) -> None:
        self._factory = factory
        self._live: tuple[MachineState, Script[Any]] | None = None

    @classmethod
    def for_grid(cls, ctx: ScriptContext) -> CalibrationStateMachine:
        return cls(lambda: grid_calibration_script(ctx))

    @classmethod
    def for_single_tile(
        cls, ctx: ScriptContext, target: TileAddress, summary: CalibrationSummary,
    ) -> CalibrationStateMachine:
        return cls(lambda: single_tile_recalibration_script(ctx, target, summary))

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def start(self) -> tuple[MachineState, Step]:
        self._live = None
        gen = self._factory()
        try:
            command = next(gen)
        except StopIteration as stop:
            return self._finish((), stop.value)
        state = MachineState(pending=command)
        self._live = (state, gen)
        return state, command

    def step(self, state: MachineState, result: CommandResult) -> tuple[MachineState, Step]:
        """Feed *result* to the command pending in *state*.

        Raises
        ------
        ProtocolError
            If *state* is finished or *result* does not answer its pending
            command.
        """
        if state.pending is None:
            raise ProtocolError("Script already finished")
        check_result(state.pending, result)

        gen = self._resume(state)
        history = state.history + (result,)
        try:
            command = gen.send(result)
        except StopIteration as stop:
            self._live = None
            return self._finish(history, stop.value)
        except BaseException:
            self._live = None
            raise
        next_state = MachineState(history=history, pending=command)
        self._live = (next_state, gen)
        return next_state, command

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _resume(self, state: MachineState) -> Script[Any]:
        if self._live is not None and self._live[0] is state:
            return self._live[1]
        gen = self._factory()
        command = next(gen)
        for past in state.history:
            command = gen.send(past)
        if command != state.pending:
            raise ProtocolError(
                f"Replay diverged: expected {state.pending!r}, script produced {command!r}"
            )
        return gen

    @staticmethod
    def _finish(history: tuple[CommandResult, ...], value: Any) -> tuple[MachineState, Step]:
        return MachineState(history=history, pending=None, return_value=value), DONE


def run_to_completion(
    machine: CalibrationStateMachine, answer: Callable[[CalibrationCommand], CommandResult],
) -> MachineState:
    """Step *machine* until DONE, answering each command with *answer*."""
    state, command = machine.start()
    while not isinstance(command, _Done):
        state, command = machine.step(state, answer(command))
    return state
