"""
Shared fixtures for the PanelFlow test suite.

Every fixture builds a fresh engine so tests never share panel state.
"""

from __future__ import annotations

import pytest

from panelflow.config.loader import clear_cache, load_plant_config
from panelflow.criteria.registry import CriteriaRegistry
from panelflow.workflow.events import EventDispatcher
from panelflow.workflow.orchestrator import WorkflowOrchestrator


@pytest.fixture(autouse=True)
def _clear_config_cache():
    clear_cache()
    yield
    clear_cache()


@pytest.fixture
def plant_config():
    return load_plant_config("default")


@pytest.fixture
def registry(plant_config):
    return CriteriaRegistry.from_config(plant_config)


@pytest.fixture
def dispatcher():
    return EventDispatcher(synchronous=True)


@pytest.fixture
def orchestrator(plant_config, registry, dispatcher):
    return WorkflowOrchestrator(plant_config, registry, dispatcher=dispatcher)
