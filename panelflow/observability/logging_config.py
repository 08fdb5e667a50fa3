"""
Logging setup for PanelFlow.

Engine modules log through plain logging.getLogger(__name__) and attach
panel-level fields with `extra`. This module decides how those records
look on the way out:

- PANELFLOW_ENV=production: one JSON object per line on stdout, with the
  panel correlation fields at the top level and everything else under
  "extra".
- anything else: a compact colored line on stderr that reads like a
  station log ("P1 @STATION_2 SCANNED→IN_PROGRESS").

PANELFLOW_LOG_LEVEL overrides the level (name or number).

Every state-machine mutation runs inside `panel_context(panel_id)`, so
records emitted deep in the registry or the dispatcher still carry the
panel they were emitted for.

Usage:
    from panelflow.observability.logging_config import configure_logging

    configure_logging()

    logger = logging.getLogger(__name__)
    logger.info("Decision recorded", extra={
        "station_id": "STATION_1",
        "decision": "FAIL",
        "operator_id": "op-17",
    })
"""

from __future__ import annotations

import json
import logging
import os
import sys
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from enum import Enum
from typing import IO, Any, Iterator, Optional, Union

# Fields lifted to the top level of JSON output and shown inline in dev
PANEL_FIELDS = (
    "panel_id", "station_id", "line", "from_state", "to_state",
    "decision", "operator_id", "status", "version",
)

# Attributes every LogRecord has; never treated as extras
_RECORD_ATTRS = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime"}


# ─── Panel Context ────────────────────────────────────────────────────

_local = threading.local()


def set_panel_id(panel_id: str) -> None:
    _local.panel_id = panel_id


def get_panel_id() -> Optional[str]:
    """Panel being mutated on this thread, if any."""
    return getattr(_local, "panel_id", None)


def clear_panel_id() -> None:
    _local.panel_id = None


@contextmanager
def panel_context(panel_id: str) -> Iterator[None]:
    """
    Tag records emitted inside the block with `panel_id`.

    Blocks nest; leaving one restores the enclosing panel.
    """
    outer = get_panel_id()
    set_panel_id(panel_id)
    try:
        yield
    finally:
        _local.panel_id = outer


class ContextFilter(logging.Filter):
    """Stamps the thread's current panel on records that lack one."""

    def filter(self, record: logging.LogRecord) -> bool:
        if getattr(record, "panel_id", None) is None:
            panel_id = get_panel_id()
            if panel_id:
                record.panel_id = panel_id  # type: ignore[attr-defined]
        return True


def _extras(record: logging.LogRecord) -> dict[str, Any]:
    return {
        k: v for k, v in vars(record).items()
        if k not in _RECORD_ATTRS and not k.startswith("_")
    }


def _plain(value: Any) -> Any:
    """Reduce enums and other objects to something json can encode."""
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    if isinstance(value, (list, tuple)):
        return [_plain(v) for v in value]
    if isinstance(value, dict):
        return {str(k): _plain(v) for k, v in value.items()}
    return str(value)


# ─── Formatters ───────────────────────────────────────────────────────


class JSONFormatter(logging.Formatter):
    """
    One JSON object per record.

        {"timestamp": "...", "level": "INFO", "logger": "panelflow.workflow.state_machine",
         "thread": "panelflow-dispatch_0", "message": "...",
         "panel_id": "P1", "to_state": "PASSED", "extra": {...}}
    """

    def format(self, record: logging.LogRecord) -> str:
        out: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "thread": record.threadName,
            "message": record.getMessage(),
        }

        rest: dict[str, Any] = {}
        for key, value in _extras(record).items():
            if value is None:
                continue
            if key in PANEL_FIELDS:
                out[key] = _plain(value)
            else:
                rest[key] = _plain(value)
        if rest:
            out["extra"] = rest

        if record.exc_info and record.exc_info[1] is not None:
            out["error_type"] = type(record.exc_info[1]).__name__
            out["exception"] = self.formatException(record.exc_info)

        return json.dumps(out)


class DevFormatter(logging.Formatter):
    """
    Colored single-line output for a terminal.

        14:02:07.311 WARNING  P1 @STATION_1 panelflow.workflow.state_machine: Panel P1 reached rework limit (3/3)  status=quarantine_required
    """

    LEVEL_COLORS = {
        "DEBUG": "\033[2m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[1;31m",
    }
    DIM = "\033[2m"
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        color = self.LEVEL_COLORS.get(record.levelname, "")
        clock = datetime.fromtimestamp(record.created).strftime("%H:%M:%S.%f")[:-3]

        where = []
        panel_id = getattr(record, "panel_id", None)
        station_id = getattr(record, "station_id", None)
        if panel_id:
            where.append(str(panel_id))
        if station_id:
            where.append(f"@{station_id}")
        location = f"{' '.join(where)} " if where else ""

        tail = []
        from_state = getattr(record, "from_state", None)
        to_state = getattr(record, "to_state", None)
        if from_state and to_state:
            tail.append(f"{_plain(from_state)}→{_plain(to_state)}")
        elif to_state:
            tail.append(f"→{_plain(to_state)}")
        for key in ("line", "decision", "operator_id", "status", "version"):
            value = getattr(record, key, None)
            if value is not None:
                tail.append(f"{key}={_plain(value)}")
        suffix = f"  {self.DIM}{' '.join(tail)}{self.RESET}" if tail else ""

        line = (
            f"{self.DIM}{clock}{self.RESET} "
            f"{color}{record.levelname:<8}{self.RESET} "
            f"{location}{record.name}: {record.getMessage()}{suffix}"
        )
        if record.exc_info and record.exc_info[1] is not None:
            line += "\n" + self.formatException(record.exc_info)
        return line


# ─── Setup ────────────────────────────────────────────────────────────


def _resolve_level(level: Union[int, str, None]) -> int:
    if level is None:
        level = os.environ.get("PANELFLOW_LOG_LEVEL", logging.INFO)
    if isinstance(level, str):
        name = level.strip().upper()
        if name.isdigit():
            return int(name)
        resolved = logging.getLevelName(name)
        return resolved if isinstance(resolved, int) else logging.INFO
    return int(level)


def configure_logging(
    env: Optional[str] = None,
    level: Union[int, str, None] = None,
    stream: Optional[IO[str]] = None,
) -> logging.Handler:
    """
    Replace the root logger's handlers with one PanelFlow handler.

    Args:
        env: "production" for JSON; anything else for dev output.
            Defaults to PANELFLOW_ENV, then "development".
        level: Level name or number. Defaults to PANELFLOW_LOG_LEVEL,
            then INFO.
        stream: Output stream. Defaults to stdout (JSON) or stderr (dev).

    Returns:
        The installed handler.
    """
    env = (env or os.environ.get("PANELFLOW_ENV") or "development").strip().lower()
    production = env == "production"

    handler = logging.StreamHandler(stream or (sys.stdout if production else sys.stderr))
    handler.setFormatter(JSONFormatter() if production else DevFormatter())
    handler.addFilter(ContextFilter())

    root = logging.getLogger()
    for existing in list(root.handlers):
        root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(_resolve_level(level))
    return handler
