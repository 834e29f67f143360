# domain/outcomes.py - Typed outcomes returned by the orchestration layer
#
# Expected business conditions are reported as values, not raised.
# Only unexpected collaborator failures (storage unavailable) propagate.

from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from typing import Any, Optional


class OutcomeKind(str, Enum):
    OK = "ok"
    PERMISSION_DENIED = "permission_denied"
    UNSCHEDULED = "unscheduled"
    STALE_COMPLETION = "stale_completion"
    NOT_FOUND = "not_found"
    INVALID = "invalid"


@dataclass
class Outcome:
    kind: OutcomeKind
    message: str = ""
    value: Any = None

    @property
    def ok(self) -> bool:
        return self.kind is OutcomeKind.OK

    @classmethod
    def success(cls, value: Any = None, message: str = "") -> "Outcome":
        return cls(OutcomeKind.OK, message, value)

    @classmethod
    def denied(cls, message: str) -> "Outcome":
        return cls(OutcomeKind.PERMISSION_DENIED, message)

    @classmethod
    def not_found(cls, message: str) -> "Outcome":
        return cls(OutcomeKind.NOT_FOUND, message)

    @classmethod
    def invalid(cls, message: str) -> "Outcome":
        return cls(OutcomeKind.INVALID, message)

    @classmethod
    def stale(cls, message: str) -> "Outcome":
        return cls(OutcomeKind.STALE_COMPLETION, message)

    @classmethod
    def unscheduled(cls, message: str) -> "Outcome":
        return cls(OutcomeKind.UNSCHEDULED, message)


@dataclass
class MaterializationResult:
    """
    Created/skipped counts for one instrument over all its schedules.
    Skipped cycles already existed. next_due_date is the earliest of
    next_due_by_type.
    """

    instrument_id: str
    created: int = 0
    skipped: int = 0
    next_due_date: Optional[date] = None
    next_due_by_type: dict[str, date] = field(default_factory=dict)


@dataclass
class MaterializationReport:
    results: list[MaterializationResult] = field(default_factory=list)
    unscheduled: list[str] = field(default_factory=list)

    @property
    def created(self) -> int:
        return sum(r.created for r in self.results)

    @property
    def skipped(self) -> int:
        return sum(r.skipped for r in self.results)
