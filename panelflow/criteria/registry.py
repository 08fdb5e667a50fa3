"""
Config-driven criteria registry for PanelFlow.

Resolves (station, line) -> CriteriaSet by merging a station's base
criteria with the line's overlay. The registry can be reconfigured at
runtime (replace or merge one station, or reload the whole plant config)
without disturbing validations already in flight: every change swaps in a
new immutable snapshot, and readers resolve against the snapshot they
started with.

Usage:
    from panelflow.config.loader import load_plant_config
    from panelflow.criteria.registry import CriteriaRegistry

    registry = CriteriaRegistry.from_config(load_plant_config("default"))
    criteria = registry.get_criteria_set("STATION_1", "LINE_2")
    criteria.notes_required       # base notes-required + LINE_2 overlay fails

    # Hot reload
    registry.reload_from_file("plants/default/config.yaml")
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import ValidationError

from panelflow.config.loader import parse_plant_config
from panelflow.config.schema import (
    CriterionConfig,
    PlantConfig,
    Polarity,
    StationConfig,
)
from panelflow.criteria.models import CriteriaSet, Criterion, QualityThreshold
from panelflow.exceptions import ConfigurationError, InvalidStationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RegistrySnapshot:
    """One consistent view of every station's configuration."""

    version: int
    stations: dict[str, StationConfig]
    default_penalty: int = 20
    _cache: dict[tuple[str, str], CriteriaSet] = field(
        default_factory=dict, repr=False, compare=False
    )

    def get_criteria_set(self, station_id: str, line: str) -> CriteriaSet:
        """Resolve the merged criteria for a station on a line."""
        cached = self._cache.get((station_id, line))
        if cached is not None:
            return cached

        station = self.stations.get(station_id)
        if station is None:
            raise InvalidStationError(
                f"Station configuration not found: {station_id!r}. "
                f"Known stations: {sorted(self.stations)}",
                station_id=station_id,
            )

        criteria_set = _build_criteria_set(
            station, line, self.version, self.default_penalty
        )
        self._cache[(station_id, line)] = criteria_set
        return criteria_set


def _to_criterion(
    cfg: CriterionConfig,
    polarity: Polarity,
    default_penalty: int,
    *,
    line_specific: bool = False,
    force_notes: bool = False,
) -> Criterion:
    return Criterion(
        id=cfg.id,
        label=cfg.label,
        polarity=polarity,
        required=cfg.required,
        notes_required=cfg.notes_required or force_notes,
        line_specific=line_specific,
        severity_penalty=(
            cfg.severity_penalty
            if cfg.severity_penalty is not None
            else default_penalty
        ),
        required_action=cfg.required_action or "",
    )


def _build_criteria_set(
    station: StationConfig,
    line: str,
    version: int,
    default_penalty: int,
) -> CriteriaSet:
    """
    Merge base criteria with the line overlay.

    pass  = base.pass ++ overlay.additional_pass
    fail  = base.fail ++ overlay.additional_fail
    notes = base.notes_required ++ overlay.additional_fail
    """
    overlay = station.line_overlays.get(line)

    base_pass = [
        _to_criterion(c, Polarity.PASS, default_penalty)
        for c in station.criteria.pass_criteria
    ]
    base_fail = [
        _to_criterion(c, Polarity.FAIL, default_penalty)
        for c in station.criteria.fail_criteria
    ]
    extra_pass: list[Criterion] = []
    extra_fail: list[Criterion] = []
    if overlay is not None:
        extra_pass = [
            _to_criterion(c, Polarity.PASS, default_penalty, line_specific=True)
            for c in overlay.additional_pass
        ]
        # Overlay fail criteria always require notes
        extra_fail = [
            _to_criterion(
                c, Polarity.FAIL, default_penalty,
                line_specific=True, force_notes=True,
            )
            for c in overlay.additional_fail
        ]

    notes_required = [c for c in base_fail if c.notes_required] + extra_fail

    thresholds = tuple(
        QualityThreshold(
            name=name,
            min_value=t.min_value,
            max_value=t.max_value,
            description=t.description,
        )
        for name, t in station.quality_thresholds.items()
    )

    return CriteriaSet(
        station_id=station.id,
        station_name=station.name,
        line=line,
        pass_criteria=tuple(base_pass + extra_pass),
        fail_criteria=tuple(base_fail + extra_fail),
        notes_required=tuple(notes_required),
        thresholds=thresholds,
        description=station.description,
        version=version,
    )


def merge_station_config(
    base: StationConfig,
    patch: dict[str, Any],
) -> StationConfig:
    """
    Merge a partial station config into an existing one.

    - criteria: pass/fail lists are appended
    - line_overlays, quality_thresholds: merged per key
    - anything else: replaced
    """
    merged = base.model_dump(by_alias=True)
    for key, value in patch.items():
        if key == "criteria" and isinstance(value, dict):
            criteria = merged.setdefault("criteria", {})
            for polarity in ("pass", "fail"):
                criteria[polarity] = list(criteria.get(polarity, [])) + list(
                    value.get(polarity, [])
                )
        elif key in ("line_overlays", "quality_thresholds") and isinstance(value, dict):
            merged[key] = {**merged.get(key, {}), **value}
        elif key == "id" and value != base.id:
            raise ConfigurationError(
                f"Cannot rename station {base.id!r} to {value!r} via merge"
            )
        else:
            merged[key] = value
    return StationConfig.model_validate(merged)


class CriteriaRegistry:
    """
    Holds the per-station criteria configuration for one plant.

    Reads are lock-free against an immutable snapshot; writes build a new
    snapshot and swap it in under a lock.
    """

    def __init__(
        self,
        stations: Optional[list[StationConfig]] = None,
        *,
        default_penalty: int = 20,
    ):
        self._lock = threading.Lock()
        self._default_penalty = default_penalty
        self._snapshot = RegistrySnapshot(
            version=1,
            stations={s.id: s for s in (stations or [])},
            default_penalty=default_penalty,
        )

    @classmethod
    def from_config(cls, config: PlantConfig) -> "CriteriaRegistry":
        """Build a registry from a validated plant config."""
        registry = cls(
            config.stations,
            default_penalty=config.engine.default_severity_penalty,
        )
        logger.info(
            f"Criteria registry loaded for plant {config.plant_id}: "
            f"{len(config.stations)} stations"
        )
        return registry

    # ─── Reads ────────────────────────────────────────────────────────

    @property
    def version(self) -> int:
        return self._snapshot.version

    def snapshot(self) -> RegistrySnapshot:
        """Return the current consistent view. Hold it for one validation."""
        return self._snapshot

    def get_criteria_set(self, station_id: str, line: str) -> CriteriaSet:
        """Resolve (station, line) -> CriteriaSet."""
        return self._snapshot.get_criteria_set(station_id, line)

    def get_station(self, station_id: str) -> Optional[StationConfig]:
        return self._snapshot.stations.get(station_id)

    def list_station_ids(self) -> list[str]:
        return list(self._snapshot.stations.keys())

    def configuration_summary(self, line: str) -> dict[str, dict[str, Any]]:
        """
        Summarize every station's criteria as seen from a line.

        Returns:
            station_id -> name, description and criteria counts.
        """
        snapshot = self._snapshot
        summary: dict[str, dict[str, Any]] = {}
        for station_id, station in snapshot.stations.items():
            criteria = snapshot.get_criteria_set(station_id, line)
            summary[station_id] = {
                "name": criteria.station_name,
                "description": criteria.description,
                "pass_criteria_count": len(criteria.pass_criteria),
                "fail_criteria_count": len(criteria.fail_criteria),
                "required_criteria_count": len(criteria.required_criteria),
                "notes_required_count": len(criteria.notes_required),
                "threshold_count": len(criteria.thresholds),
                "requires_operator_confirmation": station.requires_operator_confirmation,
            }
        return summary

    # ─── Writes ───────────────────────────────────────────────────────

    def _swap(self, stations: dict[str, StationConfig], reason: str) -> int:
        with self._lock:
            version = self._snapshot.version + 1
            self._snapshot = RegistrySnapshot(
                version=version,
                stations=stations,
                default_penalty=self._default_penalty,
            )
        logger.info(
            "criteria_registry_updated",
            extra={"version": version, "reason": reason},
        )
        return version

    def replace_station(self, station: StationConfig) -> int:
        """Replace (or add) one station's whole configuration."""
        with self._lock:
            stations = dict(self._snapshot.stations)
        stations[station.id] = station
        return self._swap(stations, f"replace {station.id}")

    def merge_station(self, station_id: str, patch: dict[str, Any]) -> int:
        """
        Merge a partial configuration into an existing station.

        Raises:
            InvalidStationError: If the station is not configured.
            ConfigurationError: If the merged config fails validation.
        """
        with self._lock:
            stations = dict(self._snapshot.stations)
        base = stations.get(station_id)
        if base is None:
            raise InvalidStationError(
                f"Station not found: {station_id!r}", station_id=station_id
            )
        try:
            stations[station_id] = merge_station_config(base, patch)
        except ValidationError as e:
            raise ConfigurationError(
                f"Invalid merged config for station {station_id}:\n{e}"
            ) from e
        return self._swap(stations, f"merge {station_id}")

    def reload(self, config: PlantConfig) -> int:
        """Replace every station with those of a freshly loaded plant config."""
        self._default_penalty = config.engine.default_severity_penalty
        return self._swap(
            {s.id: s for s in config.stations},
            f"reload plant {config.plant_id}",
        )

    def reload_from_file(self, config_path: str | Path, plant_id: str = "default") -> int:
        """Re-read a config.yaml and reload from it."""
        config_path = Path(config_path)
        if not config_path.exists():
            raise ConfigurationError(
                f"Config not found: {config_path}",
                plant_id=plant_id,
                config_path=str(config_path),
            )
        with open(config_path, "r") as f:
            try:
                raw = yaml.safe_load(f)
            except yaml.YAMLError as e:
                raise ConfigurationError(
                    f"Config is not valid YAML: {config_path}\n{e}",
                    plant_id=plant_id,
                    config_path=str(config_path),
                ) from e
        return self.reload(parse_plant_config(raw, plant_id, source=str(config_path)))
