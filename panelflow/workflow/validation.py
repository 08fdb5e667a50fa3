"""
Validation engine: turns an inspector's decision into a scored outcome.

Checks a submission (decision, selected criteria, notes, measurements)
against the criteria of one station on one line and computes the quality
score. Reads the criteria registry only; never touches panel state.

Scoring:
- PASS → 100
- QUARANTINE → 0
- FAIL / REWORK → 100 minus each selected criterion's severity penalty,
  floored at 0 after every step, rounded

Usage:
    engine = ValidationEngine(registry)
    outcome = engine.validate(
        "STATION_1", "LINE_1", "FAIL",
        selected_criteria=["EL test failed"],
        notes="EL failure at cell 4",
    )
    outcome.quality_score   # 60
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterable, Mapping, Optional

from panelflow.criteria.models import CriteriaSet, Criterion
from panelflow.criteria.registry import CriteriaRegistry
from panelflow.exceptions import (
    InvalidDecisionError,
    MissingCriteriaError,
    NotesRequiredError,
    PanelFlowError,
    UnknownCriterionError,
)
from panelflow.workflow.record import utcnow
from panelflow.workflow.states import Decision

logger = logging.getLogger(__name__)

MAX_SCORE = 100
MIN_SCORE = 0

NO_PASS_CRITERIA_WARNING = "No criteria selected for PASS decision"
QUARANTINE_ACTION = "Hold panel in quarantine pending supervisor review"


@dataclass
class ValidationOutcome:
    """Result of validating one station decision."""

    valid: bool
    decision: Optional[Decision]
    station_id: str
    line: str
    quality_score: int = MIN_SCORE
    passed_criteria_count: int = 0
    total_criteria_count: int = 0
    selected_criteria: list[str] = field(default_factory=list)
    failure_reasons: list[dict[str, str]] = field(default_factory=list)
    required_actions: list[str] = field(default_factory=list)
    threshold_breaches: list[dict[str, Any]] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    error: Optional[str] = None
    error_code: Optional[str] = None
    error_details: dict[str, Any] = field(default_factory=dict)
    criteria_version: int = 0
    validation_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: datetime = field(default_factory=utcnow)

    @property
    def warning(self) -> Optional[str]:
        return "; ".join(self.warnings) if self.warnings else None

    def to_dict(self) -> dict[str, Any]:
        return {
            "validation_id": self.validation_id,
            "valid": self.valid,
            "decision": self.decision.value if self.decision else None,
            "station_id": self.station_id,
            "line": self.line,
            "quality_score": self.quality_score,
            "passed_criteria_count": self.passed_criteria_count,
            "total_criteria_count": self.total_criteria_count,
            "selected_criteria": list(self.selected_criteria),
            "failure_reasons": [dict(r) for r in self.failure_reasons],
            "required_actions": list(self.required_actions),
            "threshold_breaches": [dict(b) for b in self.threshold_breaches],
            "warning": self.warning,
            "error": self.error,
            "error_code": self.error_code,
            "criteria_version": self.criteria_version,
            "timestamp": self.timestamp.isoformat(),
        }


def calculate_quality_score(decision: Decision, penalties: Iterable[int]) -> int:
    """Score a decision given the penalties of its selected criteria."""
    if decision == Decision.PASS:
        return MAX_SCORE
    if decision == Decision.QUARANTINE:
        return MIN_SCORE
    score = float(MAX_SCORE)
    for penalty in penalties:
        score = max(MIN_SCORE, score - penalty)
    return int(round(score))


class ValidationEngine:
    """
    Validates station decisions against the criteria registry.

    Each call resolves its criteria from one registry snapshot, so a
    concurrent reload never changes the rules halfway through.
    """

    def __init__(self, registry: CriteriaRegistry):
        self.registry = registry

    def validate(
        self,
        station_id: str,
        line: str,
        decision: Decision | str,
        selected_criteria: Optional[Iterable[str]] = None,
        notes: Optional[str] = None,
        measurements: Optional[Mapping[str, Any]] = None,
        *,
        raise_on_error: bool = True,
    ) -> ValidationOutcome:
        """
        Validate a decision and compute its quality score.

        Args:
            station_id: Station the decision was made at.
            line: Line the panel runs on (selects the criteria overlay).
            decision: PASS, FAIL, REWORK or QUARANTINE (any case).
            selected_criteria: Criterion ids or labels.
            notes: Free-text inspector notes.
            measurements: Named numeric readings checked against the
                station's quality thresholds.
            raise_on_error: If False, a rejected submission comes back as
                an outcome with valid=False instead of raising.

        Raises:
            InvalidDecisionError, MissingCriteriaError,
            UnknownCriterionError, NotesRequiredError, InvalidStationError
        """
        tokens = [t for t in (selected_criteria or []) if t is not None]
        try:
            return self._validate(station_id, line, decision, tokens, notes, measurements)
        except PanelFlowError as e:
            logger.info(
                f"Decision rejected at {station_id}: {e.message}",
                extra={
                    "station_id": station_id,
                    "line": line,
                    "decision": str(decision),
                    "status": e.code,
                },
            )
            if raise_on_error:
                raise
            return ValidationOutcome(
                valid=False,
                decision=_parse_or_none(decision),
                station_id=station_id,
                line=line,
                selected_criteria=list(tokens),
                error=e.message,
                error_code=e.code,
                error_details=e.to_dict()["details"],
                criteria_version=self.registry.version,
            )

    def _validate(
        self,
        station_id: str,
        line: str,
        decision: Decision | str,
        tokens: list[str],
        notes: Optional[str],
        measurements: Optional[Mapping[str, Any]],
    ) -> ValidationOutcome:
        try:
            parsed = Decision.parse(decision)
        except ValueError:
            raise InvalidDecisionError(
                f"Invalid decision: {decision!r}. "
                f"Expected one of {[d.value for d in Decision]}",
                decision=decision,
                station_id=station_id,
            ) from None

        snapshot = self.registry.snapshot()
        criteria_set = snapshot.get_criteria_set(station_id, line)
        warnings: list[str] = []

        if parsed == Decision.PASS:
            selected = self._resolve_pass(criteria_set, tokens)
            if not tokens:
                warnings.append(NO_PASS_CRITERIA_WARNING)
        elif parsed == Decision.FAIL:
            selected = self._resolve_fail(criteria_set, tokens, notes)
        else:
            # Supervisor overrides: no gating
            selected = self._resolve_lenient(criteria_set, tokens)

        breaches = self._check_thresholds(criteria_set, measurements or {})
        warnings.extend(b["message"] for b in breaches)

        penalties = [
            c.severity_penalty if c is not None else snapshot.default_penalty
            for _token, c in selected
        ]
        score = calculate_quality_score(parsed, penalties)
        passed, total = self._criteria_counts(criteria_set, parsed, selected)

        outcome = ValidationOutcome(
            valid=True,
            decision=parsed,
            station_id=station_id,
            line=line,
            quality_score=score,
            passed_criteria_count=passed,
            total_criteria_count=total,
            selected_criteria=[c.id if c else token for token, c in selected],
            failure_reasons=self._failure_reasons(parsed, selected, notes),
            required_actions=self._required_actions(parsed, selected),
            threshold_breaches=breaches,
            warnings=warnings,
            criteria_version=criteria_set.version,
        )
        logger.debug(
            f"Decision validated at {station_id}: {parsed.value} score={score}",
            extra={"station_id": station_id, "line": line, "decision": parsed.value},
        )
        return outcome

    # ─── Criteria Resolution ──────────────────────────────────────────

    @staticmethod
    def _dedupe(pairs: list[tuple[str, Optional[Criterion]]]) -> list[tuple[str, Optional[Criterion]]]:
        seen: set[str] = set()
        unique = []
        for token, criterion in pairs:
            key = criterion.id if criterion is not None else token
            if key in seen:
                continue
            seen.add(key)
            unique.append((token, criterion))
        return unique

    def _resolve_pass(
        self,
        criteria_set: CriteriaSet,
        tokens: list[str],
    ) -> list[tuple[str, Optional[Criterion]]]:
        resolved = [(t, criteria_set.find_pass(t)) for t in tokens]
        unknown = [t for t, c in resolved if c is None]
        if unknown:
            raise UnknownCriterionError(
                f"Unknown pass criteria for {criteria_set.station_id} on "
                f"{criteria_set.line}: {unknown}",
                station_id=criteria_set.station_id,
                criteria=unknown,
            )
        return self._dedupe(resolved)

    def _resolve_fail(
        self,
        criteria_set: CriteriaSet,
        tokens: list[str],
        notes: Optional[str],
    ) -> list[tuple[str, Optional[Criterion]]]:
        if not tokens:
            raise MissingCriteriaError(
                "At least one failure criterion must be selected for FAIL decision",
                station_id=criteria_set.station_id,
            )

        resolved = [(t, criteria_set.find_fail(t)) for t in tokens]
        unknown = [t for t, c in resolved if c is None]
        if unknown:
            raise UnknownCriterionError(
                f"Invalid failure criteria for {criteria_set.station_id} on "
                f"{criteria_set.line}: {unknown}",
                station_id=criteria_set.station_id,
                criteria=unknown,
            )
        resolved = self._dedupe(resolved)

        needs_notes = [
            c.id for _t, c in resolved
            if c is not None and c.id in criteria_set.notes_required_ids
        ]
        if needs_notes and not (notes or "").strip():
            raise NotesRequiredError(
                f"Notes are required for the selected criteria: {needs_notes}",
                station_id=criteria_set.station_id,
                criteria=needs_notes,
            )
        return resolved

    def _resolve_lenient(
        self,
        criteria_set: CriteriaSet,
        tokens: list[str],
    ) -> list[tuple[str, Optional[Criterion]]]:
        return self._dedupe([(t, criteria_set.find_fail(t)) for t in tokens])

    # ─── Outcome Details ──────────────────────────────────────────────

    @staticmethod
    def _criteria_counts(
        criteria_set: CriteriaSet,
        decision: Decision,
        selected: list[tuple[str, Optional[Criterion]]],
    ) -> tuple[int, int]:
        total = len(criteria_set.required_pass_criteria)
        if decision == Decision.PASS:
            return total, total
        if decision == Decision.QUARANTINE:
            return 0, total
        failed_required = sum(1 for _t, c in selected if c is not None and c.required)
        return max(0, total - failed_required), total

    @staticmethod
    def _failure_reasons(
        decision: Decision,
        selected: list[tuple[str, Optional[Criterion]]],
        notes: Optional[str],
    ) -> list[dict[str, str]]:
        if decision == Decision.PASS:
            return []
        reason = (notes or "").strip()
        return [
            {
                "criterion": c.id if c else token,
                "label": c.label if c else token,
                "reason": reason or (c.label if c else token),
            }
            for token, c in selected
        ]

    @staticmethod
    def _required_actions(
        decision: Decision,
        selected: list[tuple[str, Optional[Criterion]]],
    ) -> list[str]:
        if decision == Decision.PASS:
            return []
        actions = []
        if decision == Decision.QUARANTINE:
            actions.append(QUARANTINE_ACTION)
        for token, criterion in selected:
            action = criterion.action() if criterion else f"Review and correct {token.lower()}"
            if action not in actions:
                actions.append(action)
        return actions

    @staticmethod
    def _check_thresholds(
        criteria_set: CriteriaSet,
        measurements: Mapping[str, Any],
    ) -> list[dict[str, Any]]:
        breaches = []
        for name, value in measurements.items():
            threshold = criteria_set.threshold(name)
            if threshold is None:
                continue
            try:
                numeric = float(value)
            except (TypeError, ValueError):
                breaches.append({
                    "measurement": name,
                    "value": value,
                    "message": f"{name}={value!r} is not numeric",
                })
                continue
            message = threshold.check(numeric)
            if message:
                breaches.append({
                    "measurement": name,
                    "value": numeric,
                    "min_value": threshold.min_value,
                    "max_value": threshold.max_value,
                    "message": message,
                })
        return breaches


def _parse_or_none(decision: Any) -> Optional[Decision]:
    try:
        return Decision.parse(decision)
    except ValueError:
        return None
