"""
Unit tests for the WorkflowStateMachine.

Covers the transition table, per-state side effects, queue placement,
the rework cap and the Active/Archived panel lifecycle.
"""

from __future__ import annotations

import pytest
from unittest.mock import MagicMock

from panelflow.exceptions import (
    DuplicateWorkflowError,
    InvalidStationError,
    InvalidTransitionError,
    PanelFlowError,
    PanelNotFoundError,
    ReworkLimitExceededError,
)
from panelflow.workflow.events import EventDispatcher, EventType
from panelflow.workflow.record import NoteType, PanelLifecycle
from panelflow.workflow.state_machine import WorkflowStateMachine
from panelflow.workflow.states import VALID_TRANSITIONS, WorkflowState
from panelflow.workflow.table import PanelTable

STATIONS = ("STATION_1", "STATION_2", "STATION_3", "STATION_4")

S = WorkflowState


@pytest.fixture
def machine():
    return WorkflowStateMachine()


@pytest.fixture
def panel(machine):
    machine.initialize_panel("P1", "BC-P1", "60", "LINE_1", STATIONS)
    return "P1"


def _start(machine, panel_id, station):
    return machine.transition(panel_id, S.IN_PROGRESS, data={"station_id": station})


def _to_failed(machine, panel_id="P1", station="STATION_1"):
    _start(machine, panel_id, station)
    return machine.transition(
        panel_id, S.FAILED, "bad", {"failure_reason": "EL", "criteria": ["el_test_failed"]}
    )


# ─── Initialization ───────────────────────────────────────────────────


class TestInitialization:

    def test_new_panel_is_scanned(self, machine):
        result = machine.initialize_panel("P1", "BC-P1", "60", "LINE_1", STATIONS)
        panel = result.workflow
        assert panel.current_state == S.SCANNED
        assert panel.current_station is None
        assert panel.current_station_index == -1
        assert panel.station_sequence == STATIONS
        assert panel.rework_count == 0

    def test_initialization_recorded(self, machine):
        result = machine.initialize_panel("P1", "BC-P1", "60", "LINE_1", STATIONS)
        assert [e.event_type for e in result.events] == [EventType.PANEL_INITIALIZED]
        history = machine.get_history("P1")
        assert history[0].from_state is None
        assert history[0].to_state == S.SCANNED

    def test_duplicate_rejected(self, machine, panel):
        with pytest.raises(DuplicateWorkflowError):
            machine.initialize_panel("P1", "BC-P1", "60", "LINE_1", STATIONS)

    def test_initialization_entry_precedes_first_transition(self):
        class StartingTable(PanelTable):
            """Starts STATION_1 as soon as a panel becomes visible."""

            machine = None

            def insert(self, record, initial_entry=None):
                super().insert(record, initial_entry)
                self.machine.transition(
                    record.panel_id, S.IN_PROGRESS, data={"station_id": "STATION_1"}
                )

        table = StartingTable()
        machine = WorkflowStateMachine(table)
        table.machine = machine

        result = machine.initialize_panel("P1", "BC-P1", "60", "LINE_1", STATIONS)

        history = machine.get_history("P1")
        assert [(e.from_state, e.to_state) for e in history] == [
            (None, S.SCANNED),
            (S.SCANNED, S.IN_PROGRESS),
        ]
        assert history[0].reason == "Panel initialized"
        assert result.workflow.current_state == S.SCANNED
        assert machine.get_panel("P1").current_state == S.IN_PROGRESS


# ─── Transition Table ─────────────────────────────────────────────────


class TestTransitionTable:

    def test_illegal_edge_raises_and_leaves_state(self, machine, panel):
        with pytest.raises(InvalidTransitionError) as exc_info:
            machine.transition(panel, S.COMPLETED)
        assert exc_info.value.allowed_transitions == ["IN_PROGRESS", "FAILED"]
        assert exc_info.value.current_state == "SCANNED"
        assert machine.get_panel(panel).current_state == S.SCANNED

    def test_unknown_panel(self, machine):
        with pytest.raises(PanelNotFoundError):
            machine.transition("nope", S.IN_PROGRESS)

    def test_string_target_accepted(self, machine, panel):
        result = machine.transition(panel, "IN_PROGRESS", data={"station_id": "STATION_1"})
        assert result.workflow.current_state == S.IN_PROGRESS

    def test_unknown_target_state_is_invalid_transition(self, machine, panel):
        with pytest.raises(InvalidTransitionError) as exc_info:
            machine.transition(panel, "BOGUS")
        assert exc_info.value.current_state == "SCANNED"
        assert exc_info.value.attempted_state == "BOGUS"
        assert exc_info.value.allowed_transitions == ["IN_PROGRESS", "FAILED"]
        assert exc_info.value.to_dict()["code"] == "INVALID_TRANSITION"
        assert machine.get_panel(panel).current_state == S.SCANNED
        assert len(machine.get_history(panel)) == 1

    def test_unknown_target_state_on_unknown_panel(self, machine):
        with pytest.raises(PanelNotFoundError):
            machine.transition("nope", "BOGUS")

    def test_completed_has_no_exits(self):
        assert VALID_TRANSITIONS[S.COMPLETED] == ()

    @pytest.mark.parametrize("source,target", [
        (S.SCANNED, S.PASSED),
        (S.SCANNED, S.QUARANTINE),
        (S.IN_PROGRESS, S.QUARANTINE),
        (S.IN_PROGRESS, S.COMPLETED),
        (S.FAILED, S.PASSED),
        (S.FAILED, S.IN_PROGRESS),
    ])
    def test_edges_outside_table_rejected(self, machine, panel, source, target):
        if source == S.IN_PROGRESS:
            _start(machine, panel, "STATION_1")
        elif source == S.FAILED:
            _to_failed(machine, panel)
        history_len = len(machine.get_history(panel))
        with pytest.raises(InvalidTransitionError):
            machine.transition(panel, target)
        assert machine.get_panel(panel).current_state == source
        assert len(machine.get_history(panel)) == history_len

    def test_history_entries_follow_table(self, machine, panel):
        _to_failed(machine, panel)
        machine.transition(panel, S.QUARANTINE, data={"quarantine_level": "high"})
        machine.transition(panel, S.REWORK_NEEDED)
        for entry in machine.get_history(panel)[1:]:
            assert entry.to_state in VALID_TRANSITIONS[entry.from_state]


# ─── Side Effects ─────────────────────────────────────────────────────


class TestSideEffects:

    def test_in_progress_sets_station_and_enqueues(self, machine, panel):
        result = _start(machine, panel, "STATION_1")
        assert result.workflow.current_station == "STATION_1"
        assert result.workflow.current_station_index == 0
        assert machine.get_station_queue("STATION_1") == [panel]

    def test_in_progress_out_of_order_station(self, machine, panel):
        with pytest.raises(InvalidStationError) as exc_info:
            _start(machine, panel, "STATION_3")
        assert exc_info.value.expected_station == "STATION_1"
        assert machine.get_panel(panel).current_state == S.SCANNED

    def test_passed_advances_and_moves_queue(self, machine, panel):
        _start(machine, panel, "STATION_1")
        result = machine.transition(
            panel, S.PASSED, "ok", {"quality_data": {"score": 100}, "notes": "clean"}
        )
        workflow = result.workflow
        assert workflow.current_state == S.PASSED
        assert workflow.current_station == "STATION_2"
        assert workflow.current_station_index == 1
        assert workflow.quality_data["STATION_1"] == {"score": 100}
        assert workflow.notes[-1].type == NoteType.PASS
        assert machine.get_station_queue("STATION_1") == []
        assert machine.get_station_queue("STATION_2") == [panel]

        ready = [e for e in result.events if e.event_type == EventType.READY_FOR_NEXT_STATION]
        assert ready[0].payload == {
            "next_station": "STATION_2",
            "panel_type": "60",
            "line": "LINE_1",
        }

    def test_failed_appends_note_and_counts(self, machine, panel):
        result = _to_failed(machine, panel)
        assert result.workflow.rework_count == 1
        note = result.workflow.notes[-1]
        assert note.type == NoteType.FAIL
        assert note.station == "STATION_1"
        assert note.extra["failure_reason"] == "EL"
        assert note.extra["criteria"] == ["el_test_failed"]

    def test_failed_panel_stays_queued(self, machine, panel):
        _to_failed(machine, panel)
        assert machine.get_station_queue("STATION_1") == [panel]

    def test_rework_moves_back_to_earlier_station(self, machine, panel):
        for station in STATIONS[:2]:
            _start(machine, panel, station)
            machine.transition(panel, S.PASSED)
        _to_failed(machine, panel, "STATION_3")

        result = machine.transition(
            panel, S.REWORK_NEEDED, data={"rework_station": "STATION_1", "rework_reason": "redo EL"}
        )
        workflow = result.workflow
        assert workflow.current_station == "STATION_1"
        assert workflow.current_station_index == 0
        assert workflow.notes[-1].type == NoteType.REWORK
        assert workflow.notes[-1].content == "redo EL"
        assert machine.get_station_queue("STATION_3") == []
        assert machine.get_station_queue("STATION_1") == [panel]

    def test_rework_station_not_in_sequence(self, machine, panel):
        _to_failed(machine, panel)
        with pytest.raises(InvalidStationError):
            machine.transition(panel, S.REWORK_NEEDED, data={"rework_station": "STATION_9"})
        assert machine.get_panel(panel).current_state == S.FAILED

    def test_rework_station_beyond_reached(self, machine, panel):
        _to_failed(machine, panel)
        with pytest.raises(InvalidStationError):
            machine.transition(panel, S.REWORK_NEEDED, data={"rework_station": "STATION_2"})

    def test_quarantine_note_and_dequeue(self, machine, panel):
        _to_failed(machine, panel)
        result = machine.transition(
            panel, S.QUARANTINE,
            data={"quarantine_reason": "cracked glass", "quarantine_level": "critical"},
        )
        note = result.workflow.notes[-1]
        assert note.type == NoteType.QUARANTINE
        assert note.content == "cracked glass"
        assert note.extra["level"] == "critical"
        assert machine.get_station_queue("STATION_1") == []

    def test_final_pass_completes_and_archives(self, machine, panel):
        for station in STATIONS:
            _start(machine, panel, station)
            result = machine.transition(
                panel, S.PASSED, data={"final_quality_data": {"grade": "A"}}
            )

        assert result.completed
        assert result.events[-1].event_type == EventType.PANEL_COMPLETED
        assert machine.get_panel(panel) is None
        assert machine.get_lifecycle(panel) == PanelLifecycle.ARCHIVED
        assert machine.get_archived(panel).final_quality_data == {"grade": "A"}
        assert machine.get_station_queue("STATION_4") == []
        assert machine.get_history(panel)[-1].to_state == S.COMPLETED

        with pytest.raises(PanelNotFoundError):
            machine.transition(panel, S.IN_PROGRESS)


# ─── Rework Cap ───────────────────────────────────────────────────────


class TestReworkLimit:

    def _fail_rework_cycle(self, machine, panel_id, times):
        for _ in range(times):
            _to_failed(machine, panel_id)
            machine.transition(panel_id, S.REWORK_NEEDED)

    def test_cap_flags_panel_for_quarantine(self, machine, panel):
        self._fail_rework_cycle(machine, panel, 2)
        result = _to_failed(machine, panel)
        assert result.workflow.rework_count == 3
        assert result.workflow.quarantine_required is True

        with pytest.raises(ReworkLimitExceededError) as exc_info:
            machine.transition(panel, S.REWORK_NEEDED)
        assert exc_info.value.allowed_transitions == ["QUARANTINE"]
        assert machine.get_panel(panel).current_state == S.FAILED

    def test_quarantine_releases_flag(self, machine, panel):
        self._fail_rework_cycle(machine, panel, 2)
        _to_failed(machine, panel)
        machine.transition(panel, S.QUARANTINE)
        result = machine.transition(panel, S.REWORK_NEEDED)
        assert result.workflow.quarantine_required is False
        assert result.workflow.current_state == S.REWORK_NEEDED

    def test_cap_not_enforced_when_disabled(self, panel):
        machine = WorkflowStateMachine(enforce_rework_limit=False)
        machine.initialize_panel("P2", "BC-P2", "60", "LINE_1", STATIONS)
        self._fail_rework_cycle(machine, "P2", 5)
        snapshot = machine.get_panel("P2")
        assert snapshot.rework_count == 5
        assert snapshot.quarantine_required is False


# ─── Snapshots & Queries ──────────────────────────────────────────────


class TestQueries:

    def test_snapshots_are_detached(self, machine, panel):
        snapshot = machine.get_panel(panel)
        snapshot.quality_data["tampered"] = True
        snapshot.notes.append("junk")
        fresh = machine.get_panel(panel)
        assert "tampered" not in fresh.quality_data
        assert fresh.notes == []

    def test_history_entries_are_immutable(self, machine, panel):
        _start(machine, panel, "STATION_1")
        entry = machine.get_history(panel)[-1]
        with pytest.raises(TypeError):
            entry.additional_data["station_id"] = "X"

    def test_panels_by_state_and_statistics(self, machine, panel):
        machine.initialize_panel("P2", "BC-P2", "144", "LINE_2", STATIONS)
        _start(machine, "P2", "STATION_1")

        assert [p.panel_id for p in machine.get_panels_by_state(S.SCANNED)] == [panel]
        assert [p.panel_id for p in machine.get_panels_by_state("IN_PROGRESS")] == ["P2"]

        stats = machine.get_statistics()
        assert stats["active_panels"] == 2
        assert stats["by_state"]["SCANNED"] == 1
        assert stats["by_state"]["IN_PROGRESS"] == 1
        assert stats["station_queues"] == {"STATION_1": 1}

    def test_panels_by_unknown_state(self, machine, panel):
        with pytest.raises(PanelFlowError) as exc_info:
            machine.get_panels_by_state("BOGUS")
        assert exc_info.value.details["state"] == "BOGUS"
        assert "SCANNED" in exc_info.value.details["valid_states"]

    def test_queue_helpers(self, machine, panel):
        _start(machine, panel, "STATION_1")
        assert machine.get_next_panel_in_queue("STATION_1") == panel
        assert machine.remove_from_station_queue("STATION_1", panel) is True
        assert machine.get_next_panel_in_queue("STATION_1") is None

    def test_lifecycle_distinguishes_unknown(self, machine, panel):
        assert machine.get_lifecycle(panel) == PanelLifecycle.ACTIVE
        assert machine.get_lifecycle("never") is None

    def test_purge_archived(self, machine, panel):
        for station in STATIONS:
            _start(machine, panel, station)
            machine.transition(panel, S.PASSED)
        assert machine.purge_archived() == [panel]
        assert machine.get_lifecycle(panel) is None
        assert machine.get_history(panel) == []

    def test_reset(self, machine, panel):
        _start(machine, panel, "STATION_1")
        machine.reset()
        assert machine.get_panel(panel) is None
        assert machine.get_station_queue("STATION_1") == []


class TestDispatch:

    def test_committed_batches_reach_dispatcher(self, panel):
        dispatcher = MagicMock(spec=EventDispatcher)
        machine = WorkflowStateMachine(dispatcher=dispatcher)
        machine.initialize_panel("P2", "BC-P2", "60", "LINE_1", STATIONS)
        _start(machine, "P2", "STATION_1")

        assert dispatcher.dispatch.call_count == 2
        batch = dispatcher.dispatch.call_args[0][0]
        assert batch.history[0].to_state == S.IN_PROGRESS

    def test_rejected_transition_dispatches_nothing(self):
        dispatcher = MagicMock(spec=EventDispatcher)
        machine = WorkflowStateMachine(dispatcher=dispatcher)
        machine.initialize_panel("P2", "BC-P2", "60", "LINE_1", STATIONS)
        dispatcher.reset_mock()
        with pytest.raises(InvalidTransitionError):
            machine.transition("P2", S.COMPLETED)
        dispatcher.dispatch.assert_not_called()
