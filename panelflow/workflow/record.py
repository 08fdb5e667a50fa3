"""
Per-panel workflow data: the active record, its notes and its audit trail.

A PanelWorkflowRecord is owned by the PanelTable and mutated only by the
WorkflowStateMachine while holding that panel's lock. Callers receive
deep-copied snapshots, never the live record.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping, Optional

from panelflow.workflow.states import INITIAL_STATE, WorkflowState

FINAL_QUALITY_KEY = "final"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class NoteType(str, Enum):
    PASS = "PASS"
    FAIL = "FAIL"
    REWORK = "REWORK"
    QUARANTINE = "QUARANTINE"
    COMPLETION = "COMPLETION"


class PanelLifecycle(str, Enum):
    ACTIVE = "ACTIVE"
    ARCHIVED = "ARCHIVED"


@dataclass(frozen=True)
class PanelNote:
    """An annotation appended to a panel's notes."""

    station: Optional[str]
    type: NoteType
    content: Optional[str] = None
    timestamp: datetime = field(default_factory=utcnow)
    extra: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(
            self, "extra", MappingProxyType(copy.deepcopy(dict(self.extra)))
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "station": self.station,
            "type": self.type.value,
            "content": self.content,
            "timestamp": self.timestamp.isoformat(),
            **copy.deepcopy(dict(self.extra)),
        }

    def __deepcopy__(self, memo: dict) -> "PanelNote":
        return self


@dataclass(frozen=True)
class TransitionHistoryEntry:
    """One state change of one panel. Never mutated once appended."""

    panel_id: str
    from_state: Optional[WorkflowState]
    to_state: WorkflowState
    reason: str = ""
    timestamp: datetime = field(default_factory=utcnow)
    additional_data: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(
            self,
            "additional_data",
            MappingProxyType(copy.deepcopy(dict(self.additional_data))),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "panel_id": self.panel_id,
            "from_state": self.from_state.value if self.from_state else None,
            "to_state": self.to_state.value,
            "reason": self.reason,
            "timestamp": self.timestamp.isoformat(),
            "additional_data": copy.deepcopy(dict(self.additional_data)),
        }

    def __deepcopy__(self, memo: dict) -> "TransitionHistoryEntry":
        return self


@dataclass
class PanelWorkflowRecord:
    """
    One panel under active traversal.

    panel_id, barcode, panel_type, line and station_sequence are fixed at
    initialization. current_station_index is -1 until the first station is
    started.
    """

    panel_id: str
    barcode: str
    panel_type: str
    line: str
    station_sequence: tuple[str, ...]
    max_rework_attempts: int = 3
    current_state: WorkflowState = INITIAL_STATE
    current_station: Optional[str] = None
    current_station_index: int = -1
    rework_count: int = 0
    quarantine_required: bool = False
    quality_data: dict[str, Any] = field(default_factory=dict)
    notes: list[PanelNote] = field(default_factory=list)
    start_time: datetime = field(default_factory=utcnow)
    last_update_time: datetime = field(default_factory=utcnow)

    def station_index(self, station_id: str) -> int:
        """Position of a station in this panel's sequence, or -1."""
        try:
            return self.station_sequence.index(station_id)
        except ValueError:
            return -1

    @property
    def next_station(self) -> Optional[str]:
        nxt = self.current_station_index + 1
        if nxt < len(self.station_sequence):
            return self.station_sequence[nxt]
        return None

    @property
    def progress_percent(self) -> float:
        """Share of the station sequence reached, 100 when completed."""
        if self.current_state == WorkflowState.COMPLETED:
            return 100.0
        if self.current_station_index < 0 or not self.station_sequence:
            return 0.0
        return round(
            (self.current_station_index + 1) / len(self.station_sequence) * 100, 2
        )

    def snapshot(self) -> "PanelWorkflowRecord":
        """Detached copy safe to hand to callers."""
        return copy.deepcopy(self)

    def to_dict(self) -> dict[str, Any]:
        return {
            "panel_id": self.panel_id,
            "barcode": self.barcode,
            "panel_type": self.panel_type,
            "line": self.line,
            "station_sequence": list(self.station_sequence),
            "current_state": self.current_state.value,
            "current_station": self.current_station,
            "current_station_index": self.current_station_index,
            "rework_count": self.rework_count,
            "max_rework_attempts": self.max_rework_attempts,
            "quarantine_required": self.quarantine_required,
            "quality_data": copy.deepcopy(self.quality_data),
            "notes": [n.to_dict() for n in self.notes],
            "progress_percent": self.progress_percent,
            "start_time": self.start_time.isoformat(),
            "last_update_time": self.last_update_time.isoformat(),
        }


@dataclass(frozen=True)
class ArchivedPanel:
    """What remains in memory of a completed panel."""

    panel_id: str
    barcode: str
    panel_type: str
    line: str
    rework_count: int
    completed_at: datetime
    final_quality_data: Any = None
