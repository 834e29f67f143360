# domain/models.py - Domain entities (dataclasses)
#
# Typed models for cross-layer data. Conversion from sqlite3.Row/dict
# happens at the repository boundary only. All dates are calendar dates
# (timezone-naive) stored as ISO "YYYY-MM-DD" text.

import json
from dataclasses import dataclass, field, replace
from datetime import date
from enum import Enum
from typing import Any, Optional


def parse_date(value: Any) -> Optional[date]:
    """Parse ISO date text (or a date/datetime) into a date. Empty -> None."""
    if value is None or value == "":
        return None
    if isinstance(value, date):
        # datetime is a date subclass; keep only the calendar day
        return date(value.year, value.month, value.day)
    text = str(value).strip()
    if not text:
        return None
    # Accept full ISO timestamps from older rows, keep the calendar day.
    return date.fromisoformat(text[:10])


def format_date(value: Optional[date]) -> Optional[str]:
    return value.isoformat() if value is not None else None


class Frequency(str, Enum):
    WEEKLY = "Weekly"
    MONTHLY = "Monthly"
    THREE_MONTHS = "3 Months"
    SIX_MONTHS = "6 Months"
    ONE_YEAR = "1 Year"

    @classmethod
    def parse(cls, value: Any) -> Optional["Frequency"]:
        """Parse a stored/entered frequency. None/empty -> None; unknown -> ValueError."""
        if value is None or value == "":
            return None
        if isinstance(value, Frequency):
            return value
        text = str(value).strip()
        text = _FREQUENCY_ALIASES.get(text, text)
        try:
            return cls(text)
        except ValueError:
            raise ValueError(f"Unknown maintenance frequency: {value!r}") from None


# Legacy names still found in older data
_FREQUENCY_ALIASES = {
    "Quarterly": "3 Months",
    "Semi-Annual": "6 Months",
    "Annual": "1 Year",
}


class EventStatus(str, Enum):
    SCHEDULED = "Scheduled"
    IN_PROGRESS = "In Progress"
    COMPLETED = "Completed"
    OVERDUE = "Overdue"


class ResultType(str, Enum):
    CALIBRATION = "calibration"
    SERVICE = "service"
    SPARE_QUOTATION = "spare_quotation"
    OTHER = "other"


class SectionType(str, Enum):
    TOLERANCE = "tolerance"
    RANGE = "range"
    SIMPLE = "simple"


class AccessLevel(str, Enum):
    HIDDEN = "hidden"
    VIEW = "view"
    EDIT = "edit"


class Role(str, Enum):
    ADMIN = "admin"
    SUPERVISOR = "supervisor"
    USER = "user"


INSTRUMENT_STATUSES = ("Operational", "AMC", "PM", "Out of Service")

DEFAULT_MAINTENANCE_TYPES = [
    "Calibration",
    "Preventative Maintenance",
    "Validation",
    "AMC",
]


@dataclass
class Instrument:
    """
    Domain model for an instrument (maintenance-tracked equipment).
    next_maintenance_date is derived from schedule_date, frequency and the
    completed events; repository writes never take it from callers.
    """

    id: str
    eqp_id: str
    instrument_type: str = ""
    make: str = ""
    model: str = ""
    serial_number: str = ""
    location: str = ""
    status: str = "Operational"
    maintenance_type: str = "Preventative Maintenance"
    frequency: Optional[Frequency] = None
    schedule_date: Optional[date] = None
    next_maintenance_date: Optional[date] = None
    maintenance_by: str = "internal"
    vendor_name: Optional[str] = None
    vendor_contact: Optional[str] = None
    template_id: Optional[str] = None
    is_active: bool = True
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @property
    def is_scheduled(self) -> bool:
        return self.schedule_date is not None and self.frequency is not None

    @classmethod
    def from_row(cls, row: Any) -> "Instrument":
        """Build Instrument from sqlite3.Row or dict."""
        d = dict(row)
        return cls(
            id=d["id"],
            eqp_id=d.get("eqp_id") or "",
            instrument_type=d.get("instrument_type") or "",
            make=d.get("make") or "",
            model=d.get("model") or "",
            serial_number=d.get("serial_number") or "",
            location=d.get("location") or "",
            status=d.get("status") or "Operational",
            maintenance_type=d.get("maintenance_type") or "Preventative Maintenance",
            frequency=Frequency.parse(d.get("frequency")),
            schedule_date=parse_date(d.get("schedule_date")),
            next_maintenance_date=parse_date(d.get("next_maintenance_date")),
            maintenance_by=d.get("maintenance_by") or "internal",
            vendor_name=d.get("vendor_name"),
            vendor_contact=d.get("vendor_contact"),
            template_id=d.get("template_id"),
            is_active=bool(d.get("is_active", 1)),
            created_at=d.get("created_at"),
            updated_at=d.get("updated_at"),
        )

    def __str__(self) -> str:
        """String representation for audit logs."""
        return f"id={self.id}, eqp={self.eqp_id}"

    def to_dict(self) -> dict[str, Any]:
        """Convert to dict for repository write operations (add/update)."""
        return {
            "id": self.id,
            "eqp_id": self.eqp_id,
            "instrument_type": self.instrument_type,
            "make": self.make,
            "model": self.model,
            "serial_number": self.serial_number,
            "location": self.location,
            "status": self.status,
            "maintenance_type": self.maintenance_type,
            "frequency": self.frequency.value if self.frequency else None,
            "schedule_date": format_date(self.schedule_date),
            "next_maintenance_date": format_date(self.next_maintenance_date),
            "maintenance_by": self.maintenance_by,
            "vendor_name": self.vendor_name,
            "vendor_contact": self.vendor_contact,
            "template_id": self.template_id,
            "is_active": 1 if self.is_active else 0,
        }

    def primary_configuration(self) -> "MaintenanceConfiguration":
        """The schedule held on the instrument row itself."""
        return MaintenanceConfiguration(
            id="",
            instrument_id=self.id,
            maintenance_type=self.maintenance_type,
            frequency=self.frequency,
            schedule_date=self.schedule_date,
            template_id=self.template_id,
        )


@dataclass
class MaintenanceConfiguration:
    """
    One maintenance schedule of an instrument. An instrument carries its
    primary schedule on its own row (id == "") and any further schedules
    in maintenance_configurations, at most one per maintenance type.
    """

    id: str
    instrument_id: str
    maintenance_type: str
    frequency: Optional[Frequency] = None
    schedule_date: Optional[date] = None
    template_id: Optional[str] = None
    next_maintenance_date: Optional[date] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @property
    def is_primary(self) -> bool:
        return not self.id

    @property
    def is_scheduled(self) -> bool:
        return self.schedule_date is not None and self.frequency is not None

    @classmethod
    def from_row(cls, row: Any) -> "MaintenanceConfiguration":
        d = dict(row)
        return cls(
            id=d["id"],
            instrument_id=d["instrument_id"],
            maintenance_type=d["maintenance_type"],
            frequency=Frequency.parse(d.get("frequency")),
            schedule_date=parse_date(d.get("schedule_date")),
            template_id=d.get("template_id"),
            next_maintenance_date=parse_date(d.get("next_maintenance_date")),
            created_at=d.get("created_at"),
            updated_at=d.get("updated_at"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "instrument_id": self.instrument_id,
            "maintenance_type": self.maintenance_type,
            "frequency": self.frequency.value if self.frequency else None,
            "schedule_date": format_date(self.schedule_date),
            "template_id": self.template_id,
            "next_maintenance_date": format_date(self.next_maintenance_date),
        }


@dataclass
class MaintenanceEvent:
    """One materialized cycle of an instrument's maintenance obligation."""

    id: str
    instrument_id: str
    due_date: date
    type: str
    description: str = ""
    status: EventStatus = EventStatus.SCHEDULED
    started_at: Optional[str] = None
    completed_date: Optional[date] = None
    completion_notes: Optional[str] = None
    template_id: Optional[str] = None
    superseded_at: Optional[str] = None
    created_at: Optional[str] = None

    @property
    def key(self) -> tuple[str, str, date]:
        """Idempotency key of the cycle."""
        return (self.instrument_id, self.type, self.due_date)

    @classmethod
    def from_row(cls, row: Any) -> "MaintenanceEvent":
        d = dict(row)
        return cls(
            id=d["id"],
            instrument_id=d["instrument_id"],
            due_date=parse_date(d["due_date"]),
            type=d.get("type") or "",
            description=d.get("description") or "",
            status=EventStatus(d.get("status") or EventStatus.SCHEDULED.value),
            started_at=d.get("started_at"),
            completed_date=parse_date(d.get("completed_date")),
            completion_notes=d.get("completion_notes"),
            template_id=d.get("template_id"),
            superseded_at=d.get("superseded_at"),
            created_at=d.get("created_at"),
        )

    def __str__(self) -> str:
        return f"id={self.id}, instrument={self.instrument_id}, due={self.due_date}"


@dataclass
class TestRow:
    """
    A template row. measured is the only value entered when filling;
    error/passed are never part of this model (see evaluation_service).
    """

    __test__ = False  # not a pytest test class

    id: str
    label: str = ""
    reference: Optional[float] = None
    min: Optional[float] = None
    max: Optional[float] = None
    unit: Optional[str] = None
    measured: Optional[float] = None

    @classmethod
    def from_dict(cls, d: dict) -> "TestRow":
        return cls(
            id=str(d.get("id") or ""),
            label=d.get("label") or "",
            reference=_opt_float(d.get("reference")),
            min=_opt_float(d.get("min")),
            max=_opt_float(d.get("max")),
            unit=d.get("unit") or None,
            measured=_opt_float(d.get("measured")),
        )

    def to_dict(self) -> dict[str, Any]:
        # Derived fields (error/passed) are intentionally absent.
        out: dict[str, Any] = {"id": self.id, "label": self.label}
        for key in ("reference", "min", "max", "unit", "measured"):
            value = getattr(self, key)
            if value is not None:
                out[key] = value
        return out


@dataclass
class TestSection:
    __test__ = False

    id: str
    title: str = ""
    type: SectionType = SectionType.SIMPLE
    tolerance: Optional[float] = None
    unit: Optional[str] = None
    rows: list[TestRow] = field(default_factory=list)
    document_url: Optional[str] = None

    @classmethod
    def from_dict(cls, d: dict) -> "TestSection":
        raw_type = d.get("type") or SectionType.SIMPLE.value
        try:
            section_type = SectionType(raw_type)
        except ValueError:
            raise ValueError(f"Unknown section type: {raw_type!r}") from None
        return cls(
            id=str(d.get("id") or ""),
            title=d.get("title") or "",
            type=section_type,
            tolerance=_opt_float(d.get("tolerance")),
            unit=d.get("unit") or None,
            rows=[TestRow.from_dict(r) for r in (d.get("rows") or [])],
            document_url=d.get("documentUrl") or d.get("document_url") or None,
        )

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "id": self.id,
            "title": self.title,
            "type": self.type.value,
            "rows": [r.to_dict() for r in self.rows],
        }
        if self.tolerance is not None:
            out["tolerance"] = self.tolerance
        if self.unit:
            out["unit"] = self.unit
        if self.document_url:
            out["document_url"] = self.document_url
        return out

    def with_rows(self, rows: list[TestRow]) -> "TestSection":
        return replace(self, rows=rows)


def sections_from_json(text: Optional[str]) -> list[TestSection]:
    """Decode a stored template/test-data structure. Empty -> []."""
    if not (text or "").strip():
        return []
    data = json.loads(text)
    if not isinstance(data, list):
        raise ValueError("Template structure must be a list of sections")
    return [TestSection.from_dict(s) for s in data]


def sections_to_json(sections: list[TestSection]) -> str:
    return json.dumps([s.to_dict() for s in sections])


@dataclass
class TestTemplate:
    __test__ = False

    id: str
    name: str
    description: str = ""
    structure: list[TestSection] = field(default_factory=list)
    created_at: Optional[str] = None

    @classmethod
    def from_row(cls, row: Any) -> "TestTemplate":
        d = dict(row)
        return cls(
            id=d["id"],
            name=d.get("name") or "",
            description=d.get("description") or "",
            structure=sections_from_json(d.get("structure")),
            created_at=d.get("created_at"),
        )


@dataclass
class MaintenanceResult:
    """Immutable record of a completed inspection/service."""

    id: str
    event_id: str
    instrument_id: str
    result_type: ResultType
    completed_date: date
    notes: str = ""
    document_url: Optional[str] = None
    template_id: Optional[str] = None
    test_data: list[TestSection] = field(default_factory=list)
    recorded_by: Optional[str] = None
    created_at: Optional[str] = None

    @classmethod
    def from_row(cls, row: Any) -> "MaintenanceResult":
        d = dict(row)
        return cls(
            id=d["id"],
            event_id=d["event_id"],
            instrument_id=d["instrument_id"],
            result_type=ResultType(d["result_type"]),
            completed_date=parse_date(d["completed_date"]),
            notes=d.get("notes") or "",
            document_url=d.get("document_url"),
            template_id=d.get("template_id"),
            test_data=sections_from_json(d.get("test_data")),
            recorded_by=d.get("recorded_by"),
            created_at=d.get("created_at"),
        )


FEATURE_KEYS = (
    "dashboard",
    "maintenance_history",
    "update_maintenance",
    "instruments",
    "design_templates",
    "settings",
    "user_management",
)


@dataclass(frozen=True)
class UserPermissions:
    """Per-feature access levels over the closed feature key set."""

    dashboard: AccessLevel = AccessLevel.HIDDEN
    maintenance_history: AccessLevel = AccessLevel.HIDDEN
    update_maintenance: AccessLevel = AccessLevel.HIDDEN
    instruments: AccessLevel = AccessLevel.HIDDEN
    design_templates: AccessLevel = AccessLevel.HIDDEN
    settings: AccessLevel = AccessLevel.HIDDEN
    user_management: AccessLevel = AccessLevel.HIDDEN

    @classmethod
    def from_mapping(cls, data: Optional[dict]) -> "UserPermissions":
        """
        Parse a stored permission map. Missing keys are hidden; unknown keys
        or levels raise ValueError.
        """
        data = data or {}
        unknown = [k for k in data if k not in FEATURE_KEYS]
        if unknown:
            raise ValueError(f"Unknown permission feature(s): {', '.join(sorted(unknown))}")
        levels = {}
        for key, raw in data.items():
            try:
                levels[key] = AccessLevel(raw)
            except ValueError:
                raise ValueError(f"Invalid access level for {key}: {raw!r}") from None
        return cls(**levels)

    @classmethod
    def from_json(cls, text: Optional[str]) -> "UserPermissions":
        if not (text or "").strip():
            return cls()
        return cls.from_mapping(json.loads(text))

    def level_for(self, feature: str) -> AccessLevel:
        if feature not in FEATURE_KEYS:
            return AccessLevel.HIDDEN
        return getattr(self, feature)

    def to_dict(self) -> dict[str, str]:
        return {k: getattr(self, k).value for k in FEATURE_KEYS}

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True)


@dataclass
class UserProfile:
    id: str
    display_name: str = ""
    role: Role = Role.USER
    is_super_admin: bool = False
    permissions: UserPermissions = field(default_factory=UserPermissions)
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @classmethod
    def from_row(cls, row: Any) -> "UserProfile":
        d = dict(row)
        return cls(
            id=d["id"],
            display_name=d.get("display_name") or "",
            role=Role(d.get("role") or Role.USER.value),
            is_super_admin=bool(d.get("is_super_admin")),
            permissions=UserPermissions.from_json(d.get("permissions")),
            created_at=d.get("created_at"),
            updated_at=d.get("updated_at"),
        )


def _opt_float(value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    return float(value)
