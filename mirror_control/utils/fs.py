"""Atomic filesystem helpers for configs and calibration profiles.

Provides:
    - Atomic writes: tmp file -> fsync -> rename (readers never see a
      partially written profile)
    - YAML load/save via PyYAML ``safe_load`` / ``safe_dump``
    - JSON load with path-aware error messages

All paths accept ``str`` or ``pathlib.Path``.

Usage::

    from mirror_control.utils import fs
    data = fs.load_yaml("array.yaml")
    fs.atomic_write_text("profile.json", payload)
"""

from __future__ import annotations

import json
import os
import tempfile
from pathlib import Path
from typing import Any

import yaml


def ensure_dir(p: str | Path) -> Path:
    """Create *p* (and parents) if missing and return it as a ``Path``."""
    path = Path(p)
    path.mkdir(parents=True, exist_ok=True)
    return path


def atomic_write_bytes(path: str | Path, data: bytes) -> None:
    """Write *data* to *path* atomically.

    Parameters
    ----------
    path : str | Path
        Target file.  The parent directory is created when missing.
    data : bytes
        File content.

    Raises
    ------
    OSError
        If the temporary file cannot be written or renamed.  The temporary
        file is removed before the error propagates.
    """
    path = Path(path)
    ensure_dir(path.parent)
    fd, tmp_name = tempfile.mkstemp(
        dir=path.parent, prefix=f".{path.name}.", suffix=".tmp",
    )
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise


def atomic_write_text(path: str | Path, text: str, encoding: str = "utf-8") -> None:
    """Write text to *path* atomically."""
    atomic_write_bytes(path, text.encode(encoding))


def atomic_yaml_dump(obj: Any, path: str | Path) -> None:
    """Serialise *obj* with ``yaml.safe_dump`` and write it atomically."""
    text = yaml.safe_dump(
        obj, default_flow_style=False, sort_keys=False, allow_unicode=True,
    )
    atomic_write_text(path, text)


def load_yaml(path: str | Path) -> Any:
    """Load a YAML file with ``safe_load``.

    Raises
    ------
    FileNotFoundError
        If *path* does not exist.
    yaml.YAMLError
        If the file is not valid YAML.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"YAML file not found: {path}")
    try:
        with open(path, "r", encoding="utf-8") as f:
            return yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise yaml.YAMLError(f"Failed to parse YAML file {path}: {e}") from e


def load_json(path: str | Path) -> Any:
    """Load a JSON file.

    Raises
    ------
    FileNotFoundError
        If *path* does not exist.
    ValueError
        If the content is not valid JSON.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"JSON file not found: {path}")
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise ValueError(f"Failed to parse JSON file {path}: {e}") from e
