"""Per-run inputs shared by the calibration scripts."""

from __future__ import annotations

from dataclasses import dataclass

from mirror_control.calibration.expected_position import ExpectedPositionConfig
from mirror_control.calibration.staging import StagingConfig
from mirror_control.calibration.types import GridConfig, MotorRef, TileAddress
from mirror_control.configs.loader import ArrayConfig


@dataclass(frozen=True, slots=True)
class TileDescriptor:
    tile: TileAddress
    x_motor: MotorRef | None
    y_motor: MotorRef | None

    @property
    def calibratable(self) -> bool:
        return self.x_motor is not None and self.y_motor is not None

    @property
    def label(self) -> str:
        return tile_label(self.tile)


@dataclass(frozen=True, slots=True)
class ScriptContext:
    """Configuration plus grid wiring for one calibration run."""

    config: ArrayConfig
    grid: GridConfig

    @property
    def rows(self) -> int:
        return self.grid.rows

    @property
    def cols(self) -> int:
        return self.grid.cols

    def descriptors(self) -> list[TileDescriptor]:
        return [
            TileDescriptor(tile, self.grid.assignment(tile).x, self.grid.assignment(tile).y)
            for tile in self.grid.tiles()
        ]

    def calibratable(self) -> list[TileDescriptor]:
        return [d for d in self.descriptors() if d.calibratable]

    def mac_addresses(self, tiles: list[TileDescriptor]) -> tuple[str, ...]:
        macs: list[str] = []
        for d in tiles:
            for motor in (d.x_motor, d.y_motor):
                if motor is not None and motor.mac not in macs:
                    macs.append(motor.mac)
        return tuple(macs)

    def expected_position_config(self) -> ExpectedPositionConfig:
        cal = self.config.calibration
        return ExpectedPositionConfig(self.rows, self.cols, cal.array_rotation, cal.roi)

    def staging_config(self) -> StagingConfig:
        cal = self.config.calibration
        return StagingConfig(
            self.rows, self.cols, cal.array_rotation, cal.staging_position, self.config.motor,
        )


def tile_label(tile: TileAddress) -> str:
    return f"R{tile.row}C{tile.col}"
