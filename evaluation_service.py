# evaluation_service.py
"""
Central pass/fail evaluation for test templates.
Single source of truth for: tolerance and range rules, per-row evaluation
state, section and template aggregates.

error/passed are projections of the authoritative inputs (measured plus the
row/section rule). They are recomputed on every call and never stored.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field, replace
from typing import Mapping

from domain.models import SectionType, TestRow, TestSection

# Float noise from measured - reference (10.2 - 10.0) is rounded away here
ERROR_PRECISION = 9

STATE_EVALUATED = "evaluated"
STATE_INCOMPLETE = "incomplete"
STATE_PENDING = "pending"
STATE_RECORD_ONLY = "record_only"


@dataclass(frozen=True)
class RowEvaluation:
    row_id: str
    state: str
    passed: bool | None = None
    error: float | None = None
    explanation: str = ""

    @property
    def counts_toward_aggregate(self) -> bool:
        return self.state == STATE_EVALUATED


@dataclass(frozen=True)
class SectionEvaluation:
    section_id: str
    rows: list[RowEvaluation] = field(default_factory=list)

    @property
    def evaluated(self) -> list[RowEvaluation]:
        return [r for r in self.rows if r.counts_toward_aggregate]

    @property
    def passed(self) -> bool | None:
        """AND over evaluated rows; None when no row carries a verdict."""
        rows = self.evaluated
        if not rows:
            return None
        return all(r.passed for r in rows)

    @property
    def incomplete(self) -> list[RowEvaluation]:
        return [r for r in self.rows if r.state == STATE_INCOMPLETE]

    @property
    def pending(self) -> list[RowEvaluation]:
        return [r for r in self.rows if r.state == STATE_PENDING]


@dataclass(frozen=True)
class TemplateEvaluation:
    sections: list[SectionEvaluation] = field(default_factory=list)

    @property
    def passed_rows(self) -> int:
        return sum(1 for s in self.sections for r in s.evaluated if r.passed)

    @property
    def failed_rows(self) -> int:
        return sum(1 for s in self.sections for r in s.evaluated if not r.passed)

    @property
    def incomplete_rows(self) -> int:
        return sum(len(s.incomplete) for s in self.sections)

    @property
    def passed(self) -> bool | None:
        verdicts = [s.passed for s in self.sections if s.passed is not None]
        if not verdicts:
            return None
        return all(verdicts)

    def section(self, section_id: str) -> SectionEvaluation | None:
        for s in self.sections:
            if s.section_id == section_id:
                return s
        return None


def evaluate_tolerance(reference: float, tolerance: float, measured: float) -> tuple[bool, float, str]:
    """
    Tolerance rule. Returns (pass, error, explanation_plain).
    error = measured - reference; pass when |error| <= tolerance.
    """
    error = round(measured - reference, ERROR_PRECISION)
    pass_ = abs(error) <= tolerance
    explanation = (
        f"Tolerance = ±{tolerance}; error = {measured} − {reference} = {error} "
        f"→ {'PASS' if pass_ else 'FAIL'}"
    )
    return pass_, error, explanation


def evaluate_range(low: float, high: float, measured: float) -> tuple[bool, str]:
    """Range rule with inclusive bounds. Returns (pass, explanation_plain)."""
    pass_ = low <= measured <= high
    explanation = f"Range = [{low}, {high}]; measured = {measured} → {'PASS' if pass_ else 'FAIL'}"
    return pass_, explanation


def evaluate_row(section: TestSection, row: TestRow) -> RowEvaluation:
    """Evaluate one row against its section's rule."""
    if section.type is SectionType.SIMPLE:
        return RowEvaluation(row.id, STATE_RECORD_ONLY, explanation="Record only")

    if section.type is SectionType.TOLERANCE:
        missing = []
        if row.reference is None:
            missing.append("reference")
        if section.tolerance is None:
            missing.append("tolerance")
        if missing:
            return RowEvaluation(
                row.id, STATE_INCOMPLETE,
                explanation=f"Cannot evaluate: missing {' and '.join(missing)}",
            )
        if row.measured is None:
            return RowEvaluation(row.id, STATE_PENDING, explanation="No measured value")
        pass_, error, explanation = evaluate_tolerance(row.reference, section.tolerance, row.measured)
        return RowEvaluation(row.id, STATE_EVALUATED, pass_, error, explanation)

    # range
    if row.min is None or row.max is None:
        missing = [k for k in ("min", "max") if getattr(row, k) is None]
        return RowEvaluation(
            row.id, STATE_INCOMPLETE,
            explanation=f"Cannot evaluate: missing {' and '.join(missing)}",
        )
    if row.measured is None:
        return RowEvaluation(row.id, STATE_PENDING, explanation="No measured value")
    pass_, explanation = evaluate_range(row.min, row.max, row.measured)
    return RowEvaluation(row.id, STATE_EVALUATED, pass_, None, explanation)


def evaluate_section(section: TestSection) -> SectionEvaluation:
    return SectionEvaluation(section.id, [evaluate_row(section, r) for r in section.rows])


def evaluate_template(sections: list[TestSection]) -> TemplateEvaluation:
    return TemplateEvaluation([evaluate_section(s) for s in sections])


def fill_sections(
    sections: list[TestSection],
    measured_by_row_id: Mapping[str, float | None],
) -> list[TestSection]:
    """
    Return copies of sections with measured values applied by row id.
    Rows not in the mapping keep their current measured value.
    Raises ValueError for unknown row ids or non-numeric values.
    """
    known = {r.id for s in sections for r in s.rows}
    unknown = [k for k in measured_by_row_id if k not in known]
    if unknown:
        raise ValueError(f"Unknown row id(s): {', '.join(sorted(map(str, unknown)))}")
    filled = []
    for section in sections:
        rows = []
        for row in section.rows:
            if row.id in measured_by_row_id:
                rows.append(replace(row, measured=_to_measured(row.id, measured_by_row_id[row.id])))
            else:
                rows.append(row)
        filled.append(section.with_rows(rows))
    return filled


def fill_section(section: TestSection, measured_by_row_id: Mapping[str, float | None]) -> TestSection:
    """Single-section form of fill_sections."""
    return fill_sections([section], measured_by_row_id)[0]


def _to_measured(row_id: str, value) -> float | None:
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise ValueError(f"Measured value for row {row_id} must be numeric")
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise ValueError(f"Measured value for row {row_id} must be numeric: {value!r}") from None
    if not math.isfinite(number):
        raise ValueError(f"Measured value for row {row_id} must be finite")
    return number


def clear_measurements(sections: list[TestSection]) -> list[TestSection]:
    """Blank copy of a template structure for a new fill."""
    return [s.with_rows([replace(r, measured=None) for r in s.rows]) for s in sections]


def validate_template_structure(sections: list[TestSection]) -> list[str]:
    """Return a list of problems with a template design (empty when valid)."""
    problems = []
    section_ids = set()
    row_ids = set()
    for s in sections:
        if not s.id:
            problems.append(f"Section '{s.title}' has no id")
        elif s.id in section_ids:
            problems.append(f"Duplicate section id: {s.id}")
        section_ids.add(s.id)
        if s.tolerance is not None and s.tolerance < 0:
            problems.append(f"Section '{s.title}': tolerance must be >= 0")
        for r in s.rows:
            if not r.id:
                problems.append(f"Section '{s.title}': row '{r.label}' has no id")
            elif r.id in row_ids:
                problems.append(f"Duplicate row id: {r.id}")
            row_ids.add(r.id)
            if s.type is SectionType.RANGE and r.min is not None and r.max is not None and r.min > r.max:
                problems.append(f"Row '{r.label}': min is greater than max")
    return problems
