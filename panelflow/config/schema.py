"""
Pydantic configuration schema for PanelFlow plants.

Each plant is defined by a config.yaml file that conforms to these models:
its production lines, the panel types routed to each line, the inspection
stations with their pass/fail criteria and line overlays, and the engine
settings. The engine reads the config and adapts its behavior accordingly.
No code changes are needed to add a station or a criterion.
"""

from __future__ import annotations

from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class Polarity(str, Enum):
    PASS = "pass"
    FAIL = "fail"


# ---------------------------------------------------------------------------
# Criteria
# ---------------------------------------------------------------------------

class CriterionConfig(BaseModel):
    """A single selectable pass or fail criterion."""
    id: str = Field(..., pattern=r"^[a-z][a-z0-9_]*$")
    label: str
    required: bool = True
    notes_required: bool = False
    severity_penalty: Optional[int] = Field(
        None, ge=0, le=100,
        description="Quality score penalty when selected; engine default if unset",
    )
    required_action: Optional[str] = Field(
        None, description="Operator instruction shown when this criterion fails"
    )


class CriteriaConfig(BaseModel):
    """Base (line-agnostic) criteria of a station."""
    model_config = ConfigDict(populate_by_name=True)

    pass_criteria: list[CriterionConfig] = Field(default_factory=list, alias="pass")
    fail_criteria: list[CriterionConfig] = Field(default_factory=list, alias="fail")


class LineOverlayConfig(BaseModel):
    """Criteria a line adds on top of a station's base criteria."""
    additional_pass: list[CriterionConfig] = Field(default_factory=list)
    additional_fail: list[CriterionConfig] = Field(default_factory=list)


class ThresholdConfig(BaseModel):
    """Numeric bound checked against a caller-supplied measurement."""
    min_value: Optional[float] = None
    max_value: Optional[float] = None
    description: str = ""

    @model_validator(mode="after")
    def validate_bounds(self) -> "ThresholdConfig":
        if self.min_value is None and self.max_value is None:
            raise ValueError("threshold needs min_value, max_value or both")
        if (
            self.min_value is not None
            and self.max_value is not None
            and self.min_value > self.max_value
        ):
            raise ValueError(
                f"min_value ({self.min_value}) exceeds max_value ({self.max_value})"
            )
        return self


class StationConfig(BaseModel):
    """An inspection station and its quality criteria."""
    id: str = Field(..., pattern=r"^[A-Z][A-Z0-9_]*$")
    name: str
    description: str = ""
    criteria: CriteriaConfig = Field(default_factory=CriteriaConfig)
    line_overlays: dict[str, LineOverlayConfig] = Field(default_factory=dict)
    quality_thresholds: dict[str, ThresholdConfig] = Field(default_factory=dict)
    requires_operator_confirmation: bool = True

    @model_validator(mode="after")
    def validate_unique_criteria(self) -> "StationConfig":
        for polarity, items in (
            ("pass", self.criteria.pass_criteria),
            ("fail", self.criteria.fail_criteria),
        ):
            ids = [c.id for c in items]
            dupes = sorted({i for i in ids if ids.count(i) > 1})
            if dupes:
                raise ValueError(
                    f"station {self.id}: duplicate {polarity} criterion ids {dupes}"
                )
        return self


# ---------------------------------------------------------------------------
# Lines and routing
# ---------------------------------------------------------------------------

class LineConfig(BaseModel):
    """A production line and the ordered stations a panel traverses on it."""
    id: str = Field(..., pattern=r"^[A-Z][A-Z0-9_]*$")
    name: str = ""
    stations: list[str] = Field(..., min_length=1)

    @field_validator("stations")
    @classmethod
    def validate_no_repeats(cls, v: list[str]) -> list[str]:
        if len(set(v)) != len(v):
            raise ValueError(f"station sequence repeats a station: {v}")
        return v


class EngineSettings(BaseModel):
    """Workflow engine behavior controls."""
    max_rework_attempts: int = Field(3, ge=1, le=20)
    enforce_rework_limit: bool = Field(
        True,
        description="Constrain a panel at its rework cap to quarantine",
    )
    default_severity_penalty: int = Field(20, ge=0, le=100)
    dispatch_workers: int = Field(
        1, ge=1, le=16,
        description="Threads delivering events to sinks; 1 keeps event order",
    )


# ---------------------------------------------------------------------------
# Root config
# ---------------------------------------------------------------------------

class PlantConfig(BaseModel):
    """
    Complete configuration for a PanelFlow plant.

    This is the top-level model that gets loaded from config.yaml.
    """
    plant_id: str = Field(
        ..., pattern=r"^[a-z][a-z0-9_]*$",
        description="Unique snake_case identifier for this plant",
    )
    plant_name: str = Field(..., description="Human-readable name")

    engine: EngineSettings = Field(default_factory=EngineSettings)
    stations: list[StationConfig] = Field(..., min_length=1)
    lines: list[LineConfig] = Field(..., min_length=1)
    panel_types: dict[str, str] = Field(
        ..., description="Panel type -> line id"
    )

    @field_validator("panel_types", mode="before")
    @classmethod
    def coerce_panel_type_keys(cls, v):
        # YAML reads unquoted 60 as an int
        if isinstance(v, dict):
            return {str(k): str(line) for k, line in v.items()}
        return v

    @model_validator(mode="after")
    def validate_references(self) -> "PlantConfig":
        station_ids = [s.id for s in self.stations]
        if len(set(station_ids)) != len(station_ids):
            raise ValueError(f"duplicate station ids: {station_ids}")

        line_ids = {line.id for line in self.lines}
        for line in self.lines:
            unknown = [s for s in line.stations if s not in station_ids]
            if unknown:
                raise ValueError(
                    f"line {line.id} references unknown stations {unknown}"
                )

        for panel_type, line_id in self.panel_types.items():
            if line_id not in line_ids:
                raise ValueError(
                    f"panel type {panel_type!r} routed to unknown line {line_id!r}"
                )

        for station in self.stations:
            unknown = [l for l in station.line_overlays if l not in line_ids]
            if unknown:
                raise ValueError(
                    f"station {station.id} has overlays for unknown lines {unknown}"
                )
        return self

    def get_station(self, station_id: str) -> Optional[StationConfig]:
        for station in self.stations:
            if station.id == station_id:
                return station
        return None

    def get_line(self, line_id: str) -> Optional[LineConfig]:
        for line in self.lines:
            if line.id == line_id:
                return line
        return None
