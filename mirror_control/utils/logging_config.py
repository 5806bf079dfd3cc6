"""Logging configuration shared by the solver, executor and CLI entrypoints.

Provides:
    - Console and optional rotating file handler
    - JSON line output for log shipping
    - Contextual fields (run phase, active tile) via contextvars
    - Warning capture (Python warnings -> logging)

Public API:
    setup_logging(level="INFO", log_file=None, json=False)
    push_context(run="measuring", tile="0-1")
    pop_context(keys=["tile"])
    log_context(tile="0-1")      # context manager

Format examples:
    Human: 2026-03-02T09:14:05.112Z | INFO     | run=measuring tile=0-1 | Home captured
    JSON:  {"t":"2026-03-02T09:14:05.112000+00:00","lvl":"INFO","tile":"0-1","msg":"..."}

Idempotent: repeated ``setup_logging()`` calls replace handlers instead of
stacking them.
"""

from __future__ import annotations

import contextlib
import contextvars
import json as _json
import logging
import logging.handlers
import os
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator

_context_var: contextvars.ContextVar[dict[str, Any]] = contextvars.ContextVar(
    "mirror_control_logging_context", default={},
)

_configured = False

_COLORS = {
    "DEBUG": "\033[36m",
    "INFO": "\033[32m",
    "WARNING": "\033[33m",
    "ERROR": "\033[31m",
    "CRITICAL": "\033[35m",
}
_RESET = "\033[0m"


class ContextFormatter(logging.Formatter):
    """Formatter that appends the current context fields to each record.

    Parameters
    ----------
    fmt_mode : str
        ``"human"`` or ``"json"``.
    use_color : bool
        Colourise the level name when writing to a TTY.
    """

    def __init__(self, fmt_mode: str = "human", use_color: bool = True) -> None:
        super().__init__()
        if fmt_mode not in ("human", "json"):
            raise ValueError(f"fmt_mode must be 'human' or 'json', got {fmt_mode!r}")
        self.fmt_mode = fmt_mode
        self.use_color = use_color and sys.stderr.isatty()

    def format(self, record: logging.LogRecord) -> str:
        context = _context_var.get()
        ts = datetime.fromtimestamp(record.created, tz=timezone.utc)
        if self.fmt_mode == "json":
            return self._format_json(record, ts, context)
        return self._format_human(record, ts, context)

    def _format_json(
        self, record: logging.LogRecord, ts: datetime, context: dict[str, Any],
    ) -> str:
        payload: dict[str, Any] = {
            "t": ts.isoformat(),
            "lvl": record.levelname,
            "name": record.name,
            "pid": os.getpid(),
            "msg": record.getMessage(),
        }
        payload.update(context)
        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)
        return _json.dumps(payload, default=str)

    def _format_human(
        self, record: logging.LogRecord, ts: datetime, context: dict[str, Any],
    ) -> str:
        ts_str = ts.strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"
        level = f"{record.levelname:8s}"
        if self.use_color:
            level = f"{_COLORS.get(record.levelname, '')}{level}{_RESET}"

        parts = [ts_str, "|", level, "|"]
        if context:
            parts.append(" ".join(f"{k}={v}" for k, v in context.items()))
            parts.append("|")
        parts.append(record.getMessage())
        line = " ".join(parts)
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


def setup_logging(
    level: str = "INFO",
    log_file: str | Path | None = None,
    *,
    json: bool = False,
    color: bool = True,
    to_stderr: bool = True,
    rotate: dict[str, Any] | None = None,
    capture_warnings: bool = True,
    context: dict[str, Any] | None = None,
) -> list[logging.Handler]:
    """Configure the root logger (idempotent).

    Parameters
    ----------
    level : str
        ``"DEBUG"``, ``"INFO"``, ``"WARNING"``, ``"ERROR"`` or ``"CRITICAL"``.
    log_file : str | Path | None
        Optional log file.  Parent directories are created.
    json : bool
        Write JSON lines instead of the human format.
    color : bool
        Colourise console level names.
    to_stderr : bool
        Attach a console handler.
    rotate : dict | None
        ``{"max_bytes": 10_000_000, "backup_count": 5}`` for a size-rotated
        file handler.
    capture_warnings : bool
        Route ``warnings.warn`` through logging.
    context : dict | None
        Initial context fields, e.g. ``{"app": "simulate"}``.

    Returns
    -------
    list[logging.Handler]
        The handlers attached to the root logger.
    """
    global _configured

    root = logging.getLogger()
    if _configured:
        for handler in list(root.handlers):
            root.removeHandler(handler)
            handler.close()

    try:
        root.setLevel(getattr(logging, level.upper()))
    except AttributeError as exc:
        raise ValueError(f"Unknown log level: {level!r}") from exc

    fmt_mode = "json" if json else "human"
    handlers: list[logging.Handler] = []

    if to_stderr:
        console = logging.StreamHandler(sys.stderr)
        console.setFormatter(ContextFormatter(fmt_mode, use_color=color))
        handlers.append(console)

    if log_file is not None:
        handlers.append(_create_file_handler(Path(log_file), rotate, fmt_mode))

    for handler in handlers:
        root.addHandler(handler)

    if context:
        push_context(**context)
    if capture_warnings:
        logging.captureWarnings(True)

    _configured = True
    return handlers


def _create_file_handler(
    log_path: Path, rotate: dict[str, Any] | None, fmt_mode: str,
) -> logging.Handler:
    log_path.parent.mkdir(parents=True, exist_ok=True)
    handler: logging.Handler
    if rotate:
        handler = logging.handlers.RotatingFileHandler(
            log_path,
            maxBytes=int(rotate.get("max_bytes", 10_000_000)),
            backupCount=int(rotate.get("backup_count", 5)),
        )
    else:
        handler = logging.FileHandler(log_path)
    handler.setFormatter(ContextFormatter(fmt_mode, use_color=False))
    return handler


def set_level(level: str) -> None:
    """Update the root logger level at runtime."""
    logging.getLogger().setLevel(getattr(logging, level.upper()))


def push_context(**kwargs: Any) -> None:
    """Add contextual fields to every subsequent record in this context."""
    _context_var.set({**_context_var.get(), **kwargs})


def pop_context(keys: list[str] | None = None) -> None:
    """Remove *keys* from the context, or clear it when *keys* is None."""
    if keys is None:
        _context_var.set({})
        return
    current = dict(_context_var.get())
    for key in keys:
        current.pop(key, None)
    _context_var.set(current)


def get_context() -> dict[str, Any]:
    """Return a copy of the current context fields."""
    return dict(_context_var.get())


@contextlib.contextmanager
def log_context(**kwargs: Any) -> Iterator[None]:
    """Temporarily push *kwargs*; the previous context is restored on exit."""
    token = _context_var.set({**_context_var.get(), **kwargs})
    try:
        yield
    finally:
        _context_var.reset(token)
