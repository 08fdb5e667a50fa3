"""
Tests for the panelflow command line.
"""

from __future__ import annotations

import logging

import pytest
from rich.console import Console
from typer.testing import CliRunner

import main

runner = CliRunner()


@pytest.fixture(autouse=True)
def wide_console(monkeypatch):
    """Wide console so tables never wrap, root logger restored afterwards."""
    monkeypatch.setattr(main, "console", Console(width=200))
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


class TestInfo:

    def test_lists_default_plant(self):
        result = runner.invoke(main.app, ["info"])
        assert result.exit_code == 0
        assert "default" in result.output
        assert "LINE_1, LINE_2" in result.output


class TestValidate:

    def test_default_plant_valid(self):
        result = runner.invoke(main.app, ["validate", "default"])
        assert result.exit_code == 0
        assert "Configuration valid!" in result.output
        assert "LINE_1: 4 stations" in result.output

    def test_unknown_plant_exits_1(self):
        result = runner.invoke(main.app, ["validate", "no_such_plant"])
        assert result.exit_code == 1
        assert "Configuration Error" in result.output


class TestCriteria:

    def test_line_overlay_shown(self):
        result = runner.invoke(main.app, ["criteria", "STATION_1", "--line", "LINE_2"])
        assert result.exit_code == 0
        assert "large_panel_handling_failed" in result.output
        assert "Quality Thresholds" in result.output
        assert "el_test_pass_rate" in result.output

    def test_unknown_station_exits_1(self):
        result = runner.invoke(main.app, ["criteria", "STATION_9"])
        assert result.exit_code == 1


class TestSimulate:

    def test_clean_run(self):
        result = runner.invoke(main.app, ["simulate", "60"])
        assert result.exit_code == 0
        for station in ("STATION_1", "STATION_2", "STATION_3", "STATION_4"):
            assert f"{station} passed" in result.output
        assert "Lifecycle: ARCHIVED" in result.output
        assert "Rework count: 0" in result.output

    def test_fail_then_rework(self):
        result = runner.invoke(main.app, ["simulate", "144", "--fail-at", "STATION_2"])
        assert result.exit_code == 0
        assert "STATION_2 failed" in result.output
        assert "sent to rework" in result.output
        assert "Rework count: 1" in result.output
        assert "Validations: 6" in result.output

    def test_unknown_panel_type_exits_1(self):
        result = runner.invoke(main.app, ["simulate", "99"])
        assert result.exit_code == 1
        assert "Simulation failed" in result.output
