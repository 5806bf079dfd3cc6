#!/usr/bin/env python3
"""Solve mirror orientations for a pattern and print per-mirror yaw/pitch.

Usage::

    python -m mirror_control.scripts.solve_reflection --rows 4 --cols 6
    python -m mirror_control.scripts.solve_reflection --rows 4 --cols 6 --targets star.yaml
    python -m mirror_control.scripts.solve_reflection --rows 2 --cols 2 --json

Targets file (YAML)::

    canvas_width: 6
    canvas_height: 4
    points:
      - {id: p0, x: 0.5, y: 0.5}
      - {id: p1, x: 5.5, y: 3.5}
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from typing import Any

from mirror_control.configs.loader import ConfigError, load_config
from mirror_control.geometry.projection import ProjectionSettings
from mirror_control.geometry.reflection import (
    GridSize,
    PatternPoint,
    ReflectionPattern,
    ReflectionSolverResult,
    solve_reflection,
)
from mirror_control.utils.fs import load_yaml
from mirror_control.utils.logging_config import setup_logging

logger = logging.getLogger(__name__)


def load_pattern(path: str) -> ReflectionPattern:
    """Read a YAML targets file into a :class:`ReflectionPattern`."""
    data = load_yaml(path)
    if not isinstance(data, dict):
        raise ValueError(f"Targets file {path} must be a mapping")
    try:
        points = tuple(
            PatternPoint(str(p["id"]), float(p["x"]), float(p["y"]))
            for p in data.get("points", [])
        )
        return ReflectionPattern(float(data["canvas_width"]), float(data["canvas_height"]), points)
    except (KeyError, TypeError) as e:
        raise ValueError(f"Invalid targets file {path}: {e}") from e


def result_to_dict(result: ReflectionSolverResult) -> dict[str, Any]:
    return {
        "mirrors": [
            {
                "mirrorId": m.mirror_id,
                "row": m.row,
                "col": m.col,
                "patternId": m.pattern_id,
                "yaw": m.yaw,
                "pitch": m.pitch,
                "errors": [e.code.value for e in m.errors],
            }
            for m in result.mirrors
        ],
        "assignments": [{"mirrorId": a.mirror_id, "patternId": a.pattern_id} for a in result.assignments],
        "errors": [
            {"code": e.code.value, "message": e.message, "mirrorId": e.mirror_id, "patternId": e.pattern_id}
            for e in result.errors
        ],
    }


def _fmt(value: float | None) -> str:
    return "      -" if value is None else f"{value:7.3f}"


def print_table(result: ReflectionSolverResult) -> None:
    print(f"{'mirror':<14} {'target':<16} {'yaw':>7} {'pitch':>7}  errors")
    for m in result.mirrors:
        codes = ",".join(e.code.value for e in m.errors)
        print(f"{m.mirror_id:<14} {m.pattern_id or '-':<16} {_fmt(m.yaw)} {_fmt(m.pitch)}  {codes}")
    if result.errors:
        print(f"\n{len(result.errors)} error(s)")


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Solve mirror yaw/pitch for a reflection pattern",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--rows", type=int, required=True, help="Mirror rows")
    parser.add_argument("--cols", type=int, required=True, help="Mirror columns")
    parser.add_argument("--targets", "-t", type=str,
                        help="YAML targets file (default: each mirror's own wall projection)")
    parser.add_argument("--config", "-c", type=str, help="Config file path")
    parser.add_argument("--json", action="store_true", help="Print JSON instead of a table")
    parser.add_argument("--log-level", type=str, default=None, help="Override logging level")
    args = parser.parse_args()

    try:
        config = load_config(args.config)
    except (ConfigError, FileNotFoundError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(2)

    setup_logging(args.log_level or config.logging.level, config.logging.file, json=config.logging.json)

    try:
        grid = GridSize(args.rows, args.cols)
        pattern = load_pattern(args.targets) if args.targets else None
    except (ValueError, FileNotFoundError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(2)

    projection = ProjectionSettings.from_config(config.projection)
    result = solve_reflection(grid, projection, pattern, config.array, config.solver)
    logger.info(
        "Solved %d mirrors, %d assignments, %d errors",
        len(result.mirrors), len(result.assignments), len(result.errors),
    )

    if args.json:
        print(json.dumps(result_to_dict(result), indent=2))
    else:
        print_table(result)
    sys.exit(0 if result.ok else 1)


if __name__ == "__main__":
    main()
