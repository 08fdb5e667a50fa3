"""
Workflow orchestrator: the facade the service layer calls.

Combines the validation engine, the state machine and the routing policy
into one call per inspector action. A decision is validated and its whole
path of transitions is checked before anything changes, so a rejected
decision leaves the panel exactly as it was.

Routing:
- PASS → PASSED, then next station or COMPLETED
- FAIL → FAILED (rework counter +1)
- REWORK → REWORK_NEEDED at the chosen station (default: current)
- QUARANTINE → QUARANTINE (only from FAILED)

A panel waiting at a station (SCANNED, PASSED, REWORK_NEEDED) is started
there automatically before a PASS, FAIL or REWORK is applied.

Usage:
    orchestrator = WorkflowOrchestrator.from_plant("default")
    orchestrator.initialize_panel("P1", "BC-0001", "60")
    result = orchestrator.submit_station_decision(
        "P1", "STATION_1", "FAIL",
        selected_criteria=["el_test_failed"],
        notes="EL failure at cell 4",
        operator_id="op-17",
    )
    result.outcome.quality_score   # 60
    result.next_actions            # ["Review failure reasons", ...]
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable, Mapping, Optional

from panelflow.config.loader import DEFAULT_PLANT_ID, load_plant_config
from panelflow.config.schema import LineConfig, PlantConfig
from panelflow.criteria.registry import CriteriaRegistry
from panelflow.exceptions import InvalidStationError, UnknownPanelTypeError
from panelflow.workflow.events import DomainEvent, EventDispatcher
from panelflow.workflow.record import (
    ArchivedPanel,
    PanelLifecycle,
    PanelWorkflowRecord,
    TransitionHistoryEntry,
)
from panelflow.workflow.state_machine import (
    TransitionResult,
    TransitionStep,
    WorkflowStateMachine,
)
from panelflow.workflow.states import (
    DECISION_TARGETS,
    WAITING_STATES,
    Decision,
    WorkflowState,
)
from panelflow.workflow.validation import ValidationEngine, ValidationOutcome

logger = logging.getLogger(__name__)

DEFAULT_QUARANTINE_LEVEL = "standard"


@dataclass
class StationDecisionResult:
    """Everything one station decision produced."""

    workflow: PanelWorkflowRecord
    outcome: ValidationOutcome
    next_actions: list[str] = field(default_factory=list)
    events: list[DomainEvent] = field(default_factory=list)
    transitions: list[TransitionHistoryEntry] = field(default_factory=list)

    @property
    def completed(self) -> bool:
        return self.workflow.current_state == WorkflowState.COMPLETED

    def to_dict(self) -> dict[str, Any]:
        return {
            "workflow": self.workflow.to_dict(),
            "outcome": self.outcome.to_dict(),
            "next_actions": list(self.next_actions),
            "events": [e.to_dict() for e in self.events],
            "transitions": [t.to_dict() for t in self.transitions],
        }


class ValidationLedger:
    """
    Committed validation outcomes, per panel.

    Only outcomes whose transitions were applied are recorded.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._by_panel: dict[str, list[ValidationOutcome]] = {}

    def record(self, panel_id: str, outcome: ValidationOutcome) -> None:
        with self._lock:
            self._by_panel.setdefault(panel_id, []).append(outcome)

    def history(self, panel_id: str) -> list[ValidationOutcome]:
        with self._lock:
            return list(self._by_panel.get(panel_id, []))

    def purge(self, panel_ids: Iterable[str]) -> None:
        with self._lock:
            for panel_id in panel_ids:
                self._by_panel.pop(panel_id, None)

    def clear(self) -> None:
        with self._lock:
            self._by_panel.clear()

    def statistics(
        self,
        station_id: Optional[str] = None,
        line: Optional[str] = None,
    ) -> dict[str, Any]:
        """
        Aggregate recorded outcomes, optionally for one station and/or line.

        `panels` counts the panels with at least one matching outcome.
        """
        with self._lock:
            by_panel = {
                panel_id: [
                    o for o in items
                    if (station_id is None or o.station_id == station_id)
                    and (line is None or o.line == line)
                ]
                for panel_id, items in self._by_panel.items()
            }
        panels = sum(1 for items in by_panel.values() if items)
        outcomes = [o for items in by_panel.values() for o in items]

        by_decision = {d.value: 0 for d in Decision}
        by_station: dict[str, int] = {}
        for outcome in outcomes:
            if outcome.decision is not None:
                by_decision[outcome.decision.value] += 1
            by_station[outcome.station_id] = by_station.get(outcome.station_id, 0) + 1

        total = len(outcomes)
        return {
            "total_validations": total,
            "panels": panels,
            "by_decision": by_decision,
            "by_station": by_station,
            "average_quality_score": (
                round(sum(o.quality_score for o in outcomes) / total, 2) if total else 0.0
            ),
            "first_pass_rate": (
                round(by_decision[Decision.PASS.value] / total * 100, 2) if total else 0.0
            ),
            "threshold_breaches": sum(len(o.threshold_breaches) for o in outcomes),
        }


class WorkflowOrchestrator:
    """
    One production-workflow engine instance.

    Args:
        config: Validated plant configuration (lines, panel types, stations).
        registry: Criteria registry. Built from `config` if omitted.
        dispatcher: Fire-and-forget delivery of events and history.
        state_machine: Injected for tests; built from `config` if omitted.
    """

    def __init__(
        self,
        config: PlantConfig,
        registry: Optional[CriteriaRegistry] = None,
        *,
        dispatcher: Optional[EventDispatcher] = None,
        state_machine: Optional[WorkflowStateMachine] = None,
    ):
        self.config = config
        self.registry = registry or CriteriaRegistry.from_config(config)
        self.dispatcher = dispatcher
        self.state_machine = state_machine or WorkflowStateMachine(
            dispatcher=dispatcher,
            enforce_rework_limit=config.engine.enforce_rework_limit,
        )
        self.validation = ValidationEngine(self.registry)
        self.ledger = ValidationLedger()

    @classmethod
    def from_plant(
        cls,
        plant_id: str = DEFAULT_PLANT_ID,
        config_path: Optional[str | Path] = None,
        **kwargs: Any,
    ) -> "WorkflowOrchestrator":
        """
        Load a plant's config.yaml and build an engine for it.

        Unless a dispatcher is passed, events go to a background
        EventDispatcher sized by `engine.dispatch_workers`.
        """
        config = load_plant_config(plant_id, config_path)
        if "dispatcher" not in kwargs:
            kwargs["dispatcher"] = EventDispatcher(
                max_workers=config.engine.dispatch_workers
            )
        return cls(config, **kwargs)

    # ─── Panel Intake ─────────────────────────────────────────────────

    def resolve_line(self, panel_type: str) -> LineConfig:
        """
        Map a panel type to its production line.

        Raises:
            UnknownPanelTypeError: If the type has no routing entry.
        """
        panel_type = str(panel_type)
        line_id = self.config.panel_types.get(panel_type)
        line = self.config.get_line(line_id) if line_id else None
        if line is None:
            known = sorted(self.config.panel_types)
            raise UnknownPanelTypeError(
                f"Unknown panel type: {panel_type!r}. Known types: {known}",
                panel_type=panel_type,
                known_types=known,
            )
        return line

    def initialize_panel(
        self,
        panel_id: str,
        barcode: str,
        panel_type: str,
    ) -> PanelWorkflowRecord:
        """
        Register a scanned panel and assign its line and station sequence.

        Raises:
            UnknownPanelTypeError: Panel type has no routing configuration.
            DuplicateWorkflowError: Panel id was initialized before.
        """
        line = self.resolve_line(panel_type)
        result = self.state_machine.initialize_panel(
            panel_id,
            barcode,
            str(panel_type),
            line.id,
            line.stations,
            max_rework_attempts=self.config.engine.max_rework_attempts,
        )
        return result.workflow

    # ─── Station Actions ──────────────────────────────────────────────

    def start_station(
        self,
        panel_id: str,
        station_id: Optional[str] = None,
        operator_id: Optional[str] = None,
    ) -> TransitionResult:
        """
        Start inspection of a waiting panel at its station.

        `station_id` defaults to the station the panel is waiting for.
        """
        with self.state_machine.locked(panel_id) as record:
            expected = _expected_station(record)
            station_id = station_id or expected
            return self.state_machine.transition(
                panel_id,
                WorkflowState.IN_PROGRESS,
                reason=f"Inspection started at {station_id}",
                data={"station_id": station_id, "operator_id": operator_id},
            )

    def submit_station_decision(
        self,
        panel_id: str,
        station_id: str,
        decision: Decision | str,
        selected_criteria: Optional[Iterable[str]] = None,
        notes: Optional[str] = None,
        measurements: Optional[Mapping[str, Any]] = None,
        *,
        operator_id: Optional[str] = None,
        rework_station: Optional[str] = None,
        quarantine_level: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> StationDecisionResult:
        """
        Validate an inspector decision and apply the resulting transitions.

        Raises:
            PanelNotFoundError: Unknown or archived panel.
            InvalidStationError: Station is not where the panel is.
            InvalidTransitionError: Decision not possible from the current state.
            ReworkLimitExceededError: Rework requested at the rework cap.
            CriteriaValidationError: Any rejected submission (see ValidationEngine).
        """
        selected = list(selected_criteria or [])
        with self.state_machine.locked(panel_id) as record:
            expected = _expected_station(record)
            if station_id != expected:
                raise InvalidStationError(
                    f"Panel {panel_id} is at {expected}, not {station_id}",
                    station_id=station_id,
                    panel_id=panel_id,
                    expected_station=expected,
                )

            outcome = self.validation.validate(
                station_id,
                record.line,
                decision,
                selected,
                notes,
                measurements,
            )
            steps = self._build_path(
                record, station_id, outcome, notes, measurements,
                operator_id=operator_id,
                rework_station=rework_station,
                quarantine_level=quarantine_level,
                reason=reason,
            )
            result = self.state_machine.apply_path(panel_id, steps)
            self.ledger.record(panel_id, outcome)

        logger.info(
            f"Station decision recorded for {panel_id} at {station_id}: "
            f"{outcome.decision.value} score={outcome.quality_score}",
            extra={
                "panel_id": panel_id,
                "station_id": station_id,
                "decision": outcome.decision.value,
                "operator_id": operator_id,
                "to_state": result.workflow.current_state.value,
            },
        )
        return StationDecisionResult(
            workflow=result.workflow,
            outcome=outcome,
            next_actions=self.next_actions(result.workflow, outcome),
            events=result.events,
            transitions=result.transitions,
        )

    def _build_path(
        self,
        record: PanelWorkflowRecord,
        station_id: str,
        outcome: ValidationOutcome,
        notes: Optional[str],
        measurements: Optional[Mapping[str, Any]],
        *,
        operator_id: Optional[str],
        rework_station: Optional[str],
        quarantine_level: Optional[str],
        reason: Optional[str],
    ) -> list[TransitionStep]:
        decision = outcome.decision
        steps: list[TransitionStep] = []

        if record.current_state in WAITING_STATES and decision != Decision.QUARANTINE:
            steps.append((
                WorkflowState.IN_PROGRESS,
                f"Inspection started at {station_id}",
                {"station_id": station_id, "operator_id": operator_id},
            ))

        station_result = {
            "decision": decision.value,
            "quality_score": outcome.quality_score,
            "selected_criteria": list(outcome.selected_criteria),
            "measurements": dict(measurements or {}),
            "threshold_breaches": list(outcome.threshold_breaches),
            "notes": notes,
            "operator_id": operator_id,
            "validation_id": outcome.validation_id,
            "timestamp": outcome.timestamp.isoformat(),
        }
        data: dict[str, Any] = {
            "station_id": station_id,
            "operator_id": operator_id,
            "criteria": list(outcome.selected_criteria),
            "notes": notes,
        }

        if decision == Decision.PASS:
            data["quality_data"] = station_result
            step_reason = reason or f"Passed {station_id}"
        elif decision == Decision.FAIL:
            data["quality_data"] = station_result
            data["failure_reason"] = reason or "; ".join(
                r["label"] for r in outcome.failure_reasons
            )
            step_reason = f"Failed {station_id}"
        elif decision == Decision.REWORK:
            data["rework_station"] = rework_station or record.current_station or station_id
            data["rework_reason"] = reason or notes
            step_reason = f"Rework at {data['rework_station']}"
        else:
            data["quarantine_reason"] = reason or notes
            data["quarantine_level"] = quarantine_level or DEFAULT_QUARANTINE_LEVEL
            step_reason = f"Quarantined ({data['quarantine_level']})"

        steps.append((DECISION_TARGETS[decision], step_reason, data))
        return steps

    @staticmethod
    def next_actions(
        workflow: PanelWorkflowRecord,
        outcome: Optional[ValidationOutcome] = None,
    ) -> list[str]:
        """Human-readable follow-ups for the state a panel ended in."""
        state = workflow.current_state
        actions: list[str] = []

        if state == WorkflowState.COMPLETED:
            actions += ["Panel completed successfully", "Ready for packaging and shipping"]
        elif state == WorkflowState.FAILED:
            actions.append("Review failure reasons")
            if workflow.quarantine_required:
                actions.append(
                    f"Rework limit reached ({workflow.rework_count}/"
                    f"{workflow.max_rework_attempts}): move panel to quarantine"
                )
            else:
                actions.append("Determine rework or quarantine path")
            if outcome is not None:
                actions += outcome.required_actions
        elif state == WorkflowState.REWORK_NEEDED:
            actions += [
                f"Send panel to rework at {workflow.current_station}",
                "Update workflow tracking",
            ]
        elif state == WorkflowState.QUARANTINE:
            actions += ["Place panel in quarantine area", "Schedule quality review"]
        elif state == WorkflowState.PASSED:
            actions += [f"Proceed to {workflow.current_station}", "Update workflow status"]
        elif state == WorkflowState.IN_PROGRESS:
            actions.append(f"Complete inspection at {workflow.current_station}")
        else:
            actions.append(f"Start inspection at {_expected_station(workflow)}")

        if outcome is not None and outcome.threshold_breaches:
            actions.append("Review out-of-tolerance measurements")
        return actions

    # ─── Queries ──────────────────────────────────────────────────────

    def get_panel_state(self, panel_id: str) -> Optional[PanelWorkflowRecord]:
        """Snapshot of an active panel; None once archived or if unknown."""
        return self.state_machine.get_panel(panel_id)

    def get_lifecycle(self, panel_id: str) -> Optional[PanelLifecycle]:
        return self.state_machine.get_lifecycle(panel_id)

    def get_archived_panel(self, panel_id: str) -> Optional[ArchivedPanel]:
        return self.state_machine.get_archived(panel_id)

    def get_station_queue(self, station_id: str) -> list[str]:
        return self.state_machine.get_station_queue(station_id)

    def get_transition_history(self, panel_id: str) -> list[TransitionHistoryEntry]:
        return self.state_machine.get_history(panel_id)

    def get_panels_by_state(self, state: WorkflowState | str) -> list[PanelWorkflowRecord]:
        return self.state_machine.get_panels_by_state(state)

    def get_validation_history(self, panel_id: str) -> list[ValidationOutcome]:
        return self.ledger.history(panel_id)

    def get_validation_statistics(
        self,
        station_id: Optional[str] = None,
        line: Optional[str] = None,
    ) -> dict[str, Any]:
        return self.ledger.statistics(station_id=station_id, line=line)

    def get_statistics(self) -> dict[str, Any]:
        stats = self.state_machine.get_statistics()
        stats["plant_id"] = self.config.plant_id
        stats["criteria_version"] = self.registry.version
        stats["validations"] = self.ledger.statistics()
        return stats

    # ─── Maintenance ──────────────────────────────────────────────────

    def reload_criteria(
        self,
        config: Optional[PlantConfig] = None,
        config_path: Optional[str | Path] = None,
    ) -> int:
        """
        Hot-reload station criteria. Returns the new registry version.

        Without arguments the plant's config.yaml is re-read. Panels
        already initialized keep their line and station sequence.
        """
        if config is None:
            config = load_plant_config(
                self.config.plant_id, config_path, use_cache=False
            )
        version = self.registry.reload(config)
        self.config = config
        self.state_machine.enforce_rework_limit = config.engine.enforce_rework_limit
        return version

    def purge_archived(self) -> int:
        """Forget completed panels, their history and validations."""
        purged = self.state_machine.purge_archived()
        self.ledger.purge(purged)
        return len(purged)

    def shutdown(self, wait: bool = True) -> None:
        if self.dispatcher is not None:
            self.dispatcher.shutdown(wait=wait)


def _expected_station(record: PanelWorkflowRecord) -> Optional[str]:
    """The station a panel is at, or waits for when freshly scanned."""
    if record.current_station is not None:
        return record.current_station
    if record.station_sequence:
        return record.station_sequence[0]
    return None
