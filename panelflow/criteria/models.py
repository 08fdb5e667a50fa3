"""
Resolved criteria types used by the validation engine.

These are immutable views built by the CriteriaRegistry from the plant
config. A CriteriaSet is what a single (station, line) pair evaluates
against; once handed out it never changes, even if the registry is
reloaded mid-validation.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional

from panelflow.config.schema import Polarity


@dataclass(frozen=True)
class Criterion:
    """A selectable pass or fail criterion."""

    id: str
    label: str
    polarity: Polarity
    required: bool = True
    notes_required: bool = False
    line_specific: bool = False
    severity_penalty: int = 20
    required_action: str = ""

    def action(self) -> str:
        return self.required_action or f"Review and correct {self.label.lower()}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "label": self.label,
            "polarity": self.polarity.value,
            "required": self.required,
            "notes_required": self.notes_required,
            "line_specific": self.line_specific,
            "severity_penalty": self.severity_penalty,
        }


@dataclass(frozen=True)
class QualityThreshold:
    """Numeric bound on a named measurement."""

    name: str
    min_value: Optional[float] = None
    max_value: Optional[float] = None
    description: str = ""

    def check(self, value: float) -> Optional[str]:
        """Return a breach message, or None if `value` is within bounds."""
        if self.min_value is not None and value < self.min_value:
            return f"{self.name}={value} is below minimum {self.min_value}"
        if self.max_value is not None and value > self.max_value:
            return f"{self.name}={value} exceeds maximum {self.max_value}"
        return None


@dataclass(frozen=True)
class CriteriaSet:
    """
    Criteria for one station evaluated on one line.

    pass_criteria and fail_criteria keep config order (base criteria first,
    then the line overlay). notes_required is the derived list of fail
    criteria that make notes mandatory when selected.
    """

    station_id: str
    station_name: str
    line: str
    pass_criteria: tuple[Criterion, ...] = ()
    fail_criteria: tuple[Criterion, ...] = ()
    notes_required: tuple[Criterion, ...] = ()
    thresholds: tuple[QualityThreshold, ...] = ()
    description: str = ""
    version: int = 0
    _index: dict[tuple[str, str], Criterion] = field(
        default_factory=dict, repr=False, compare=False
    )

    def __post_init__(self) -> None:
        # Label lookups are registered first so that an id always wins
        index: dict[tuple[str, str], Criterion] = {}
        for criterion in self.pass_criteria + self.fail_criteria:
            index[(criterion.polarity.value, criterion.label)] = criterion
        for criterion in self.pass_criteria + self.fail_criteria:
            index[(criterion.polarity.value, criterion.id)] = criterion
        object.__setattr__(self, "_index", index)

    # ─── Lookups ──────────────────────────────────────────────────────

    def find(self, token: str, polarity: Polarity) -> Optional[Criterion]:
        """Resolve a selected token (criterion id or label) for a polarity."""
        return self._index.get((polarity.value, token))

    def find_fail(self, token: str) -> Optional[Criterion]:
        return self.find(token, Polarity.FAIL)

    def find_pass(self, token: str) -> Optional[Criterion]:
        return self.find(token, Polarity.PASS)

    @property
    def required_pass_criteria(self) -> tuple[Criterion, ...]:
        return tuple(c for c in self.pass_criteria if c.required)

    @property
    def required_criteria(self) -> tuple[Criterion, ...]:
        return tuple(
            c for c in self.pass_criteria + self.fail_criteria if c.required
        )

    @property
    def notes_required_ids(self) -> frozenset[str]:
        return frozenset(c.id for c in self.notes_required)

    def threshold(self, name: str) -> Optional[QualityThreshold]:
        for threshold in self.thresholds:
            if threshold.name == name:
                return threshold
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "station_id": self.station_id,
            "station_name": self.station_name,
            "line": self.line,
            "pass_criteria": [c.to_dict() for c in self.pass_criteria],
            "fail_criteria": [c.to_dict() for c in self.fail_criteria],
            "notes_required": [c.id for c in self.notes_required],
            "thresholds": {
                t.name: {"min_value": t.min_value, "max_value": t.max_value}
                for t in self.thresholds
            },
            "version": self.version,
        }
