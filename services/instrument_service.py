# services/instrument_service.py - Instrument persistence orchestration
#
# Thin layer: validates input, delegates to repository.
# next_maintenance_date is always derived here, never taken from the caller.

from dataclasses import replace
from datetime import date
from typing import TYPE_CHECKING

from domain.models import (
    INSTRUMENT_STATUSES,
    AccessLevel,
    Frequency,
    Instrument,
    MaintenanceConfiguration,
)
from permission_service import require_permission
from recurrence_service import current_due_date
from services.maintenance_service import MaintenanceService

if TYPE_CHECKING:
    from database import MaintenanceRepository
    from services.identity import Caller

SCHEDULE_FIELDS = ("schedule_date", "frequency", "maintenance_type")


def _validate(instrument: Instrument) -> Instrument:
    if not (instrument.eqp_id or "").strip():
        raise ValueError("Equipment ID is required")
    if instrument.status not in INSTRUMENT_STATUSES:
        raise ValueError(f"Unknown instrument status: {instrument.status!r}")
    if not (instrument.maintenance_type or "").strip():
        raise ValueError("Maintenance type is required")
    if instrument.maintenance_by not in ("internal", "vendor"):
        raise ValueError("maintenance_by must be 'internal' or 'vendor'")
    if instrument.maintenance_by == "vendor" and not (instrument.vendor_name or "").strip():
        raise ValueError("Vendor name is required for vendor-maintained instruments")
    # Normalize legacy frequency names; unknown values raise ValueError
    return replace(
        instrument,
        eqp_id=instrument.eqp_id.strip(),
        maintenance_type=instrument.maintenance_type.strip(),
        frequency=Frequency.parse(instrument.frequency),
    )


def add_instrument(repo: "MaintenanceRepository", caller: "Caller", instrument: Instrument) -> str:
    """Validate and add instrument. Returns new instrument ID. Raises ValueError on invalid input."""
    require_permission(caller, "instruments", AccessLevel.EDIT)
    instrument = _validate(instrument)
    instrument = replace(instrument, next_maintenance_date=current_due_date(instrument, 0))
    with repo.transaction():
        repo.add_maintenance_type(instrument.maintenance_type)
        if instrument.instrument_type:
            repo.add_instrument_type(instrument.instrument_type)
        return repo.add_instrument(instrument)


def update_instrument(
    repo: "MaintenanceRepository",
    caller: "Caller",
    instrument: Instrument,
    clock=None,
    now: date | None = None,
    expected_updated_at: str | None = None,
) -> None:
    """
    Validate and update instrument. A change to schedule date, frequency or
    maintenance type reconciles pending events with the new schedule.
    Raises ValueError on invalid input, StaleDataError if record was modified elsewhere.
    """
    require_permission(caller, "instruments", AccessLevel.EDIT)
    instrument = _validate(instrument)
    service = MaintenanceService(repo, clock)
    with repo.transaction():
        old = repo.get_instrument(instrument.id)
        if old is None:
            raise ValueError(f"Instrument {instrument.id} not found")
        repo.update_instrument(instrument, expected_updated_at=expected_updated_at)
        if instrument.is_scheduled and instrument.maintenance_type in _scheduled_types(
            repo, replace(instrument, frequency=None)
        ):
            raise ValueError(
                f"{instrument.eqp_id} already has a {instrument.maintenance_type} schedule"
            )
        if instrument.maintenance_type != old.maintenance_type:
            repo.add_maintenance_type(instrument.maintenance_type)
        if any(getattr(old, f) != getattr(instrument, f) for f in SCHEDULE_FIELDS):
            repo.log_audit(
                "instrument", instrument.id, "reschedule",
                old_value=f"{old.schedule_date} / {old.frequency.value if old.frequency else None}",
                new_value=f"{instrument.schedule_date} / "
                          f"{instrument.frequency.value if instrument.frequency else None}",
                actor=caller.user_id,
            )
            service.reschedule_instrument(instrument.id, now=now)


def deactivate_instrument(repo: "MaintenanceRepository", caller: "Caller", instrument_id: str) -> None:
    """Hide an instrument from read models. Its events and results are kept."""
    require_permission(caller, "instruments", AccessLevel.EDIT)
    instrument = repo.get_instrument(instrument_id)
    if instrument is None:
        raise ValueError(f"Instrument {instrument_id} not found")
    with repo.transaction():
        repo.update_instrument(replace(instrument, is_active=False))


def _validate_configuration(configuration: MaintenanceConfiguration) -> MaintenanceConfiguration:
    if not (configuration.maintenance_type or "").strip():
        raise ValueError("Maintenance type is required")
    frequency = Frequency.parse(configuration.frequency)
    if frequency is None or configuration.schedule_date is None:
        raise ValueError("A maintenance configuration needs a frequency and a schedule date")
    return replace(configuration, maintenance_type=configuration.maintenance_type.strip(), frequency=frequency)


def _scheduled_types(repo: "MaintenanceRepository", instrument: Instrument, skip_id: str = "") -> set[str]:
    """Maintenance types already scheduled on an instrument."""
    types = {c.maintenance_type for c in repo.list_configurations(instrument.id) if c.id != skip_id}
    if instrument.is_scheduled:
        types.add(instrument.maintenance_type)
    return types


def add_configuration(
    repo: "MaintenanceRepository",
    caller: "Caller",
    configuration: MaintenanceConfiguration,
    clock=None,
    now: date | None = None,
) -> str:
    """
    Add a further maintenance schedule to an instrument and materialize it.
    Raises ValueError on invalid input or when the type is already scheduled.
    """
    require_permission(caller, "instruments", AccessLevel.EDIT)
    configuration = _validate_configuration(configuration)
    with repo.transaction():
        instrument = repo.get_instrument(configuration.instrument_id)
        if instrument is None:
            raise ValueError(f"Instrument {configuration.instrument_id} not found")
        if configuration.maintenance_type in _scheduled_types(repo, instrument):
            raise ValueError(
                f"{instrument.eqp_id} already has a {configuration.maintenance_type} schedule"
            )
        repo.add_maintenance_type(configuration.maintenance_type)
        configuration_id = repo.add_configuration(configuration)
        MaintenanceService(repo, clock).reschedule_instrument(instrument.id, now=now)
    return configuration_id


def update_configuration(
    repo: "MaintenanceRepository",
    caller: "Caller",
    configuration: MaintenanceConfiguration,
    clock=None,
    now: date | None = None,
) -> None:
    """Change a schedule; pending events off its new grid are superseded."""
    require_permission(caller, "instruments", AccessLevel.EDIT)
    configuration = _validate_configuration(configuration)
    with repo.transaction():
        old = repo.get_configuration(configuration.id)
        if old is None:
            raise ValueError(f"Maintenance configuration {configuration.id} not found")
        instrument = repo.get_instrument(old.instrument_id)
        configuration = replace(configuration, instrument_id=old.instrument_id)
        if configuration.maintenance_type in _scheduled_types(repo, instrument, skip_id=old.id):
            raise ValueError(
                f"{instrument.eqp_id} already has a {configuration.maintenance_type} schedule"
            )
        repo.add_maintenance_type(configuration.maintenance_type)
        repo.update_configuration(configuration)
        MaintenanceService(repo, clock).reschedule_instrument(instrument.id, now=now)


def remove_configuration(
    repo: "MaintenanceRepository",
    caller: "Caller",
    configuration_id: str,
    clock=None,
    now: date | None = None,
) -> None:
    """Drop a schedule. Its pending events are superseded; history is kept."""
    require_permission(caller, "instruments", AccessLevel.EDIT)
    with repo.transaction():
        old = repo.get_configuration(configuration_id)
        if old is None:
            raise ValueError(f"Maintenance configuration {configuration_id} not found")
        repo.delete_configuration(configuration_id)
        MaintenanceService(repo, clock).reschedule_instrument(old.instrument_id, now=now)
