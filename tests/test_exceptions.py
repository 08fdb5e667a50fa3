"""
Unit tests for the PanelFlow exception hierarchy.

Validates exception creation, inheritance, codes and serialization.
"""

import pytest

from panelflow.exceptions import (
    ConfigurationError,
    CriteriaValidationError,
    DuplicateWorkflowError,
    InvalidDecisionError,
    InvalidStationError,
    InvalidTransitionError,
    MissingCriteriaError,
    NotesRequiredError,
    PanelFlowError,
    PanelNotFoundError,
    ReworkLimitExceededError,
    UnknownCriterionError,
    UnknownPanelTypeError,
)


class TestPanelFlowError:
    """Tests for the base exception class."""

    def test_basic_creation(self):
        err = PanelFlowError("something broke")
        assert str(err) == "something broke"
        assert err.details == {}

    def test_to_dict(self):
        err = PanelFlowError("oops", details={"panel_id": "P1"})
        assert err.to_dict() == {
            "code": "PANELFLOW_ERROR",
            "message": "oops",
            "details": {"panel_id": "P1"},
        }

    def test_to_dict_does_not_alias_details(self):
        err = PanelFlowError("oops", details={"a": 1})
        err.to_dict()["details"]["a"] = 2
        assert err.details["a"] == 1


class TestLookupErrors:

    def test_panel_not_found(self):
        err = PanelNotFoundError("gone", panel_id="P1")
        assert err.panel_id == "P1"
        assert err.code == "PANEL_NOT_FOUND"
        assert isinstance(err, PanelFlowError)

    def test_duplicate_workflow(self):
        err = DuplicateWorkflowError("again", panel_id="P1")
        assert err.panel_id == "P1"
        assert err.code == "DUPLICATE_WORKFLOW"

    def test_unknown_panel_type_lists_known_types(self):
        err = UnknownPanelTypeError("no route", panel_type="99", known_types=["60", "144"])
        assert err.panel_type == "99"
        assert err.known_types == ["60", "144"]


class TestInvalidTransitionError:

    def test_carries_allowed_transitions(self):
        err = InvalidTransitionError(
            "nope",
            panel_id="P1",
            current_state="SCANNED",
            attempted_state="COMPLETED",
            allowed_transitions=["IN_PROGRESS", "FAILED"],
        )
        details = err.to_dict()["details"]
        assert details["current_state"] == "SCANNED"
        assert details["attempted_state"] == "COMPLETED"
        assert details["allowed_transitions"] == ["IN_PROGRESS", "FAILED"]

    def test_rework_limit_only_allows_quarantine(self):
        err = ReworkLimitExceededError(
            "capped",
            panel_id="P1",
            current_state="FAILED",
            attempted_state="REWORK_NEEDED",
            rework_count=3,
            max_rework_attempts=3,
        )
        assert isinstance(err, InvalidTransitionError)
        assert err.allowed_transitions == ["QUARANTINE"]
        assert err.rework_count == 3
        assert err.code == "REWORK_LIMIT_EXCEEDED"

    def test_rework_limit_catchable_as_invalid_transition(self):
        with pytest.raises(InvalidTransitionError):
            raise ReworkLimitExceededError("capped", panel_id="P1")


class TestInvalidStationError:

    def test_stores_expected_station(self):
        err = InvalidStationError(
            "wrong station", station_id="STATION_3", panel_id="P1",
            expected_station="STATION_1",
        )
        assert err.station_id == "STATION_3"
        assert err.expected_station == "STATION_1"


class TestCriteriaErrors:

    @pytest.mark.parametrize("cls", [
        InvalidDecisionError,
        MissingCriteriaError,
        UnknownCriterionError,
        NotesRequiredError,
    ])
    def test_all_are_criteria_validation_errors(self, cls):
        assert issubclass(cls, CriteriaValidationError)
        assert issubclass(cls, PanelFlowError)

    def test_notes_required_names_criteria(self):
        err = NotesRequiredError(
            "notes please", station_id="STATION_1", criteria=["el_test_failed"]
        )
        details = err.to_dict()["details"]
        assert details["criteria"] == ["el_test_failed"]
        assert details["station_id"] == "STATION_1"
        assert err.to_dict()["code"] == "NOTES_REQUIRED"

    def test_invalid_decision_stores_value(self):
        err = InvalidDecisionError("bad", decision="MAYBE", station_id="STATION_2")
        assert err.decision == "MAYBE"
        assert err.criteria == []


class TestConfigurationError:

    def test_stores_plant_and_path(self):
        err = ConfigurationError(
            "missing yaml", plant_id="default", config_path="plants/default/config.yaml"
        )
        assert err.plant_id == "default"
        assert err.config_path == "plants/default/config.yaml"
        assert err.code == "CONFIGURATION_ERROR"
