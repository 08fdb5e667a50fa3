"""
Workflow state machine for panels moving through inspection stations.

Enforces the legal-transition table and performs every mutation of a
panel record: the state change itself, the per-state side effects (notes,
rework counter, station position, queue placement), the history entry and
the domain events. All checks for a call run before its first mutation,
so a rejected call leaves the panel untouched.

Usage:
    machine = WorkflowStateMachine(dispatcher=dispatcher)
    machine.initialize_panel("P1", "BC-0001", "60", "LINE_1", stations)
    machine.transition("P1", WorkflowState.IN_PROGRESS, data={"station_id": "STATION_1"})
    result = machine.transition("P1", WorkflowState.PASSED, reason="Station passed")
    result.events   # state_transition, ready_for_next_station
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Optional, Sequence

from panelflow.exceptions import (
    InvalidStationError,
    InvalidTransitionError,
    PanelFlowError,
    ReworkLimitExceededError,
)
from panelflow.workflow.events import (
    DispatchBatch,
    DomainEvent,
    EventDispatcher,
    EventType,
)
from panelflow.workflow.queues import StationQueueManager
from panelflow.workflow.record import (
    FINAL_QUALITY_KEY,
    ArchivedPanel,
    NoteType,
    PanelLifecycle,
    PanelNote,
    PanelWorkflowRecord,
    TransitionHistoryEntry,
    utcnow,
)
from panelflow.workflow.states import (
    INITIAL_STATE,
    WorkflowState,
    allowed_transitions,
    is_valid_transition,
)
from panelflow.workflow.table import PanelTable

logger = logging.getLogger(__name__)

# One step of a transition path: target state plus its data
TransitionStep = tuple[WorkflowState, str, dict[str, Any]]


@dataclass
class TransitionResult:
    """What one committed call did to one panel."""

    workflow: PanelWorkflowRecord
    transitions: list[TransitionHistoryEntry] = field(default_factory=list)
    events: list[DomainEvent] = field(default_factory=list)

    @property
    def completed(self) -> bool:
        return self.workflow.current_state == WorkflowState.COMPLETED


class WorkflowStateMachine:
    """
    Owns the panel table and station queues for one engine instance.

    Args:
        table: Panel storage. A fresh PanelTable if omitted.
        queues: Station queues. A fresh StationQueueManager if omitted.
        dispatcher: Receives every committed batch, fire-and-forget.
        enforce_rework_limit: Flag panels that reach their rework cap and
            refuse to send them back to rework until quarantined.
    """

    def __init__(
        self,
        table: Optional[PanelTable] = None,
        queues: Optional[StationQueueManager] = None,
        *,
        dispatcher: Optional[EventDispatcher] = None,
        enforce_rework_limit: bool = True,
    ):
        self.table = table or PanelTable()
        self.queues = queues or StationQueueManager()
        self.dispatcher = dispatcher
        self.enforce_rework_limit = enforce_rework_limit

    # ─── Initialization ───────────────────────────────────────────────

    def initialize_panel(
        self,
        panel_id: str,
        barcode: str,
        panel_type: str,
        line: str,
        station_sequence: Sequence[str],
        *,
        max_rework_attempts: int = 3,
    ) -> TransitionResult:
        """
        Create a SCANNED record for a new panel.

        Raises:
            DuplicateWorkflowError: If the panel id was seen before.
        """
        record = PanelWorkflowRecord(
            panel_id=panel_id,
            barcode=barcode,
            panel_type=panel_type,
            line=line,
            station_sequence=tuple(station_sequence),
            max_rework_attempts=max_rework_attempts,
        )
        entry = TransitionHistoryEntry(
            panel_id=panel_id,
            from_state=None,
            to_state=INITIAL_STATE,
            reason="Panel initialized",
            timestamp=record.start_time,
            additional_data={
                "barcode": barcode,
                "panel_type": panel_type,
                "line": line,
            },
        )
        snapshot = record.snapshot()
        self.table.insert(record, initial_entry=entry)

        event = DomainEvent(
            EventType.PANEL_INITIALIZED,
            panel_id,
            payload={
                "barcode": barcode,
                "panel_type": panel_type,
                "line": line,
                "station_sequence": list(record.station_sequence),
            },
        )
        batch = DispatchBatch(events=[event], history=[entry])

        logger.info(
            f"Panel {panel_id} initialized on {line} "
            f"({len(record.station_sequence)} stations)",
            extra={"panel_id": panel_id, "line": line, "to_state": INITIAL_STATE.value},
        )
        self._dispatch(batch)
        return TransitionResult(
            workflow=snapshot,
            transitions=[entry],
            events=[event],
        )

    # ─── Transitions ──────────────────────────────────────────────────

    def transition(
        self,
        panel_id: str,
        target_state: WorkflowState | str,
        reason: str = "",
        data: Optional[dict[str, Any]] = None,
    ) -> TransitionResult:
        """
        Move a panel to `target_state`.

        Raises:
            PanelNotFoundError: Unknown or archived panel.
            InvalidTransitionError: Edge not in the transition table, or
                `target_state` is not a workflow state.
            ReworkLimitExceededError: Rework requested at the rework cap.
            InvalidStationError: Station outside the sequence or out of order.
        """
        try:
            target = WorkflowState(target_state)
        except ValueError:
            with self.table.locked(panel_id) as record:
                current = record.current_state
            allowed = [s.value for s in allowed_transitions(current)]
            raise InvalidTransitionError(
                f"Invalid transition from {current.value} to unknown state "
                f"{target_state!r} for panel {panel_id}. Allowed: {allowed}",
                panel_id=panel_id,
                current_state=current.value,
                attempted_state=str(target_state),
                allowed_transitions=allowed,
            ) from None
        return self.apply_path(panel_id, [(target, reason, dict(data or {}))])

    def apply_path(
        self,
        panel_id: str,
        steps: Sequence[TransitionStep],
    ) -> TransitionResult:
        """
        Apply several transitions atomically under the panel's lock.

        Every step is checked against the state the previous step would
        leave before the first one is applied.
        """
        batch = DispatchBatch()
        with self.table.locked(panel_id) as record:
            self._check_path(record, steps)
            for target, reason, data in steps:
                self._apply(record, target, reason, data, batch)
            snapshot = record.snapshot()

        self._dispatch(batch)
        return TransitionResult(
            workflow=snapshot,
            transitions=list(batch.history),
            events=list(batch.events),
        )

    def _check_path(
        self,
        record: PanelWorkflowRecord,
        steps: Sequence[TransitionStep],
    ) -> None:
        state = record.current_state
        for target, _reason, data in steps:
            self._check(record, state, target, data)
            state = target

    def _check(
        self,
        record: PanelWorkflowRecord,
        current: WorkflowState,
        target: WorkflowState,
        data: dict[str, Any],
    ) -> None:
        if not is_valid_transition(current, target):
            allowed = [s.value for s in allowed_transitions(current)]
            raise InvalidTransitionError(
                f"Invalid transition from {current.value} to {target.value} "
                f"for panel {record.panel_id}. Allowed: {allowed}",
                panel_id=record.panel_id,
                current_state=current.value,
                attempted_state=target.value,
                allowed_transitions=allowed,
            )

        if (
            target == WorkflowState.REWORK_NEEDED
            and self.enforce_rework_limit
            and record.quarantine_required
        ):
            raise ReworkLimitExceededError(
                f"Panel {record.panel_id} reached its rework limit "
                f"({record.rework_count}/{record.max_rework_attempts}); "
                f"it must be quarantined",
                panel_id=record.panel_id,
                current_state=current.value,
                attempted_state=target.value,
                rework_count=record.rework_count,
                max_rework_attempts=record.max_rework_attempts,
            )

        if target == WorkflowState.IN_PROGRESS and data.get("station_id"):
            station_id = data["station_id"]
            expected_index = max(record.current_station_index, 0)
            if record.station_index(station_id) != expected_index:
                expected = (
                    record.station_sequence[expected_index]
                    if expected_index < len(record.station_sequence)
                    else None
                )
                raise InvalidStationError(
                    f"Panel {record.panel_id} cannot start {station_id}; "
                    f"expected {expected}",
                    station_id=station_id,
                    panel_id=record.panel_id,
                    expected_station=expected,
                )

        if target == WorkflowState.REWORK_NEEDED and data.get("rework_station"):
            station_id = data["rework_station"]
            index = record.station_index(station_id)
            reached = max(record.current_station_index, 0)
            if index < 0 or index > reached:
                raise InvalidStationError(
                    f"Rework station {station_id} is not in the sequence of "
                    f"panel {record.panel_id} up to "
                    f"{record.station_sequence[reached] if record.station_sequence else None}",
                    station_id=station_id,
                    panel_id=record.panel_id,
                    details={"station_sequence": list(record.station_sequence)},
                )

    def _apply(
        self,
        record: PanelWorkflowRecord,
        target: WorkflowState,
        reason: str,
        data: dict[str, Any],
        batch: DispatchBatch,
    ) -> None:
        from_state = record.current_state
        self._enter(record, target, data)

        record.current_state = target
        record.last_update_time = utcnow()

        additional = {k: v for k, v in data.items() if v is not None}
        additional.setdefault("station_id", record.current_station)
        entry = TransitionHistoryEntry(
            panel_id=record.panel_id,
            from_state=from_state,
            to_state=target,
            reason=reason,
            timestamp=record.last_update_time,
            additional_data=additional,
        )
        self.table.append_history(entry)
        batch.history.append(entry)
        batch.events.append(DomainEvent(
            EventType.STATE_TRANSITION,
            record.panel_id,
            payload={
                "from_state": from_state.value,
                "to_state": target.value,
                "reason": reason,
                "station_id": record.current_station,
            },
        ))

        logger.info(
            f"Panel {record.panel_id}: {from_state.value} → {target.value}"
            + (f" ({reason})" if reason else ""),
            extra={
                "panel_id": record.panel_id,
                "from_state": from_state.value,
                "to_state": target.value,
                "station_id": record.current_station,
                "operator_id": data.get("operator_id"),
            },
        )

        if target == WorkflowState.PASSED:
            self._advance(record, data, batch)
        elif target == WorkflowState.COMPLETED:
            self._complete(record, batch)

    # ─── Side Effects ─────────────────────────────────────────────────

    def _enter(
        self,
        record: PanelWorkflowRecord,
        target: WorkflowState,
        data: dict[str, Any],
    ) -> None:
        station = data.get("station_id") or record.current_station

        if target == WorkflowState.IN_PROGRESS:
            if data.get("station_id"):
                previous = record.current_station
                record.current_station = station
                record.current_station_index = record.station_index(station)
                self.queues.move(record.panel_id, previous, station)

        elif target == WorkflowState.PASSED:
            if data.get("quality_data") is not None:
                record.quality_data[station] = data["quality_data"]
            if data.get("notes"):
                record.notes.append(PanelNote(
                    station=station,
                    type=NoteType.PASS,
                    content=data["notes"],
                    extra={"criteria": list(data.get("criteria") or [])},
                ))

        elif target == WorkflowState.FAILED:
            if data.get("quality_data") is not None:
                record.quality_data[station] = data["quality_data"]
            record.notes.append(PanelNote(
                station=station,
                type=NoteType.FAIL,
                content=data.get("notes"),
                extra={
                    "failure_reason": data.get("failure_reason"),
                    "criteria": list(data.get("criteria") or []),
                },
            ))
            record.rework_count += 1
            if (
                self.enforce_rework_limit
                and record.rework_count >= record.max_rework_attempts
            ):
                record.quarantine_required = True
                logger.warning(
                    f"Panel {record.panel_id} reached rework limit "
                    f"({record.rework_count}/{record.max_rework_attempts})",
                    extra={"panel_id": record.panel_id, "status": "quarantine_required"},
                )

        elif target == WorkflowState.REWORK_NEEDED:
            rework_station = data.get("rework_station")
            previous = record.current_station
            if rework_station:
                record.current_station = rework_station
                record.current_station_index = record.station_index(rework_station)
            if record.current_station is not None:
                self.queues.move(record.panel_id, previous, record.current_station)
            record.notes.append(PanelNote(
                station=record.current_station,
                type=NoteType.REWORK,
                content=data.get("rework_reason") or data.get("notes"),
                extra={"rework_station": rework_station, "from_station": previous},
            ))

        elif target == WorkflowState.QUARANTINE:
            self.queues.remove(record.current_station, record.panel_id)
            record.quarantine_required = False
            record.notes.append(PanelNote(
                station=station,
                type=NoteType.QUARANTINE,
                content=data.get("quarantine_reason") or data.get("notes"),
                extra={"level": data.get("quarantine_level")},
            ))

        elif target == WorkflowState.COMPLETED:
            if data.get("final_quality_data") is not None:
                record.quality_data[FINAL_QUALITY_KEY] = data["final_quality_data"]
            if data.get("completion_notes"):
                record.notes.append(PanelNote(
                    station=station,
                    type=NoteType.COMPLETION,
                    content=data["completion_notes"],
                ))

    def _advance(
        self,
        record: PanelWorkflowRecord,
        data: dict[str, Any],
        batch: DispatchBatch,
    ) -> None:
        """Route a PASSED panel to its next station or to completion."""
        next_station = record.next_station
        if next_station is None:
            self._apply(
                record,
                WorkflowState.COMPLETED,
                "All stations completed",
                {
                    "final_quality_data": data.get("final_quality_data"),
                    "completion_notes": data.get("completion_notes"),
                    "operator_id": data.get("operator_id"),
                },
                batch,
            )
            return

        previous = record.current_station
        record.current_station = next_station
        record.current_station_index += 1
        self.queues.move(record.panel_id, previous, next_station)
        batch.events.append(DomainEvent(
            EventType.READY_FOR_NEXT_STATION,
            record.panel_id,
            payload={
                "next_station": next_station,
                "panel_type": record.panel_type,
                "line": record.line,
            },
        ))
        logger.info(
            f"Panel {record.panel_id} ready for {next_station}",
            extra={"panel_id": record.panel_id, "station_id": next_station},
        )

    def _complete(self, record: PanelWorkflowRecord, batch: DispatchBatch) -> None:
        self.queues.remove(record.current_station, record.panel_id)
        snapshot = record.snapshot()
        self.table.archive(record.panel_id)
        batch.completions.append(snapshot)
        batch.events.append(DomainEvent(
            EventType.PANEL_COMPLETED,
            record.panel_id,
            payload={
                "barcode": record.barcode,
                "panel_type": record.panel_type,
                "line": record.line,
                "rework_count": record.rework_count,
                "duration_seconds": round(
                    (record.last_update_time - record.start_time).total_seconds(), 3
                ),
                "final_quality_data": record.quality_data.get(FINAL_QUALITY_KEY),
            },
        ))

    def _dispatch(self, batch: DispatchBatch) -> None:
        if self.dispatcher is not None:
            self.dispatcher.dispatch(batch)

    # ─── Queries ──────────────────────────────────────────────────────

    def get_panel(self, panel_id: str) -> Optional[PanelWorkflowRecord]:
        """Snapshot of an active panel, None for archived or unknown ids."""
        return self.table.get_snapshot(panel_id)

    def get_lifecycle(self, panel_id: str) -> Optional[PanelLifecycle]:
        return self.table.lifecycle(panel_id)

    def get_archived(self, panel_id: str) -> Optional[ArchivedPanel]:
        return self.table.get_archived(panel_id)

    def get_history(self, panel_id: str) -> list[TransitionHistoryEntry]:
        return self.table.get_history(panel_id)

    def get_station_queue(self, station_id: str) -> list[str]:
        return self.queues.get_queue(station_id)

    def get_next_panel_in_queue(self, station_id: str) -> Optional[str]:
        return self.queues.next_in_queue(station_id)

    def locked(self, panel_id: str):
        """Hold a panel across several reads and one apply_path call."""
        return self.table.locked(panel_id)

    def remove_from_station_queue(self, station_id: str, panel_id: str) -> bool:
        return self.queues.remove(station_id, panel_id)

    def get_panels_by_state(self, state: WorkflowState | str) -> list[PanelWorkflowRecord]:
        """
        Snapshots of active panels in `state`.

        Raises:
            PanelFlowError: `state` is not a workflow state.
        """
        try:
            state = WorkflowState(state)
        except ValueError:
            raise PanelFlowError(
                f"Unknown workflow state {state!r}",
                details={"state": str(state), "valid_states": [s.value for s in WorkflowState]},
            ) from None
        return [p for p in self.table.active_snapshots() if p.current_state == state]

    def get_statistics(self) -> dict[str, Any]:
        by_state = {s.value: 0 for s in WorkflowState}
        for panel in self.table.active_snapshots():
            by_state[panel.current_state.value] += 1
        return {
            "active_panels": self.table.active_count(),
            "archived_panels": self.table.archived_count(),
            "by_state": by_state,
            "station_queues": self.queues.counts(),
        }

    def purge_archived(self) -> list[str]:
        """Forget archived panels. Returns the purged ids."""
        return self.table.purge_archived()

    def reset(self) -> None:
        """Drop every panel and queue. For tests and shift changeovers."""
        self.table.clear()
        self.queues.clear()
        logger.info("Workflow state machine reset")
