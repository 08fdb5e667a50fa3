"""
Exception hierarchy for the PanelFlow workflow engine.

Every error the engine raises is synchronous and recoverable by the
caller. Errors are raised before any mutation, so a rejected request
leaves the panel exactly as it was.

Categories:
- Lookup errors (unknown panel, unknown panel type, duplicate panel)
- Workflow errors (illegal state change, rework limit, bad station)
- Criteria errors (bad decision, missing/unknown criteria, missing notes)
- Configuration errors (plant config missing or invalid)

Usage:
    from panelflow.exceptions import PanelFlowError, NotesRequiredError

    try:
        orchestrator.submit_station_decision(...)
    except NotesRequiredError as e:
        prompt_for_notes(e.criteria)
    except PanelFlowError as e:
        return {"error": e.to_dict()}
"""

from __future__ import annotations

from typing import Any, Optional


class PanelFlowError(Exception):
    """
    Base exception for all PanelFlow errors.

    Catch `PanelFlowError` to handle any engine error. `code` is a stable
    machine-readable identifier for the API layer.
    """

    code = "PANELFLOW_ERROR"

    def __init__(self, message: str, *, details: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Serialize the error for a response body or an audit record."""
        return {
            "code": self.code,
            "message": self.message,
            "details": dict(self.details),
        }


# ── Lookup Errors ─────────────────────────────────────────────────


class PanelNotFoundError(PanelFlowError):
    """Raised when a panel id has no active workflow record."""

    code = "PANEL_NOT_FOUND"

    def __init__(
        self,
        message: str,
        *,
        panel_id: Optional[str] = None,
        details: Optional[dict] = None,
    ):
        super().__init__(message, details=details)
        self.panel_id = panel_id


class DuplicateWorkflowError(PanelFlowError):
    """
    Raised when initializing a panel id that already has a record.

    Applies to archived (completed) panels too: a panel id is traversed
    exactly once.
    """

    code = "DUPLICATE_WORKFLOW"

    def __init__(
        self,
        message: str,
        *,
        panel_id: Optional[str] = None,
        details: Optional[dict] = None,
    ):
        super().__init__(message, details=details)
        self.panel_id = panel_id


class UnknownPanelTypeError(PanelFlowError):
    """Raised when a panel type has no routing configuration."""

    code = "UNKNOWN_PANEL_TYPE"

    def __init__(
        self,
        message: str,
        *,
        panel_type: Optional[str] = None,
        known_types: Optional[list[str]] = None,
        details: Optional[dict] = None,
    ):
        super().__init__(message, details=details)
        self.panel_type = panel_type
        self.known_types = known_types or []


# ── Workflow Errors ───────────────────────────────────────────────


class InvalidTransitionError(PanelFlowError):
    """
    Raised when a state change is not in the legal-transition table.

    Carries the allowed targets so the caller can offer valid options.
    """

    code = "INVALID_TRANSITION"

    def __init__(
        self,
        message: str,
        *,
        panel_id: Optional[str] = None,
        current_state: Optional[str] = None,
        attempted_state: Optional[str] = None,
        allowed_transitions: Optional[list[str]] = None,
        details: Optional[dict] = None,
    ):
        super().__init__(message, details=details)
        self.panel_id = panel_id
        self.current_state = current_state
        self.attempted_state = attempted_state
        self.allowed_transitions = allowed_transitions or []

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["details"].update({
            "current_state": self.current_state,
            "attempted_state": self.attempted_state,
            "allowed_transitions": list(self.allowed_transitions),
        })
        return data


class ReworkLimitExceededError(InvalidTransitionError):
    """
    Raised when a panel at its rework cap is routed anywhere but quarantine.
    """

    code = "REWORK_LIMIT_EXCEEDED"

    def __init__(
        self,
        message: str,
        *,
        panel_id: Optional[str] = None,
        current_state: Optional[str] = None,
        attempted_state: Optional[str] = None,
        rework_count: int = 0,
        max_rework_attempts: int = 0,
        details: Optional[dict] = None,
    ):
        super().__init__(
            message,
            panel_id=panel_id,
            current_state=current_state,
            attempted_state=attempted_state,
            allowed_transitions=["QUARANTINE"],
            details=details,
        )
        self.rework_count = rework_count
        self.max_rework_attempts = max_rework_attempts


class InvalidStationError(PanelFlowError):
    """
    Raised when a station is unknown, outside the panel's sequence, or not
    the station the panel is currently at.
    """

    code = "INVALID_STATION"

    def __init__(
        self,
        message: str,
        *,
        station_id: Optional[str] = None,
        panel_id: Optional[str] = None,
        expected_station: Optional[str] = None,
        details: Optional[dict] = None,
    ):
        super().__init__(message, details=details)
        self.station_id = station_id
        self.panel_id = panel_id
        self.expected_station = expected_station


# ── Criteria Errors ───────────────────────────────────────────────


class CriteriaValidationError(PanelFlowError):
    """
    Base class for rejected inspector submissions.

    `criteria` lists the criterion ids (or raw tokens) the rejection is
    about, so a UI can highlight them.
    """

    code = "CRITERIA_VALIDATION_FAILED"

    def __init__(
        self,
        message: str,
        *,
        station_id: Optional[str] = None,
        criteria: Optional[list[str]] = None,
        details: Optional[dict] = None,
    ):
        super().__init__(message, details=details)
        self.station_id = station_id
        self.criteria = criteria or []

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["details"].update({
            "station_id": self.station_id,
            "criteria": list(self.criteria),
        })
        return data


class InvalidDecisionError(CriteriaValidationError):
    """Raised when the decision is not PASS, FAIL, REWORK or QUARANTINE."""

    code = "INVALID_DECISION"

    def __init__(
        self,
        message: str,
        *,
        decision: Any = None,
        station_id: Optional[str] = None,
        details: Optional[dict] = None,
    ):
        super().__init__(message, station_id=station_id, details=details)
        self.decision = decision


class MissingCriteriaError(CriteriaValidationError):
    """Raised when a FAIL decision selects no criteria."""

    code = "MISSING_CRITERIA"


class UnknownCriterionError(CriteriaValidationError):
    """Raised when a selected criterion is not defined for the station/line."""

    code = "UNKNOWN_CRITERION"


class NotesRequiredError(CriteriaValidationError):
    """
    Raised when selected fail criteria require notes and none were given.

    `criteria` holds exactly the criteria that triggered the requirement.
    """

    code = "NOTES_REQUIRED"


# ── Configuration Errors ──────────────────────────────────────────


class ConfigurationError(PanelFlowError):
    """
    Raised when a plant config.yaml is missing or fails validation.
    """

    code = "CONFIGURATION_ERROR"

    def __init__(
        self,
        message: str,
        *,
        plant_id: Optional[str] = None,
        config_path: Optional[str] = None,
        details: Optional[dict] = None,
    ):
        super().__init__(message, details=details)
        self.plant_id = plant_id
        self.config_path = config_path
