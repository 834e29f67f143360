# services/maintenance_service.py - Maintenance lifecycle orchestration
#
# The only layer that combines the recurrence, evaluation and permission
# modules with persistence. Expected business conditions come back as
# Outcome values; storage failures (sqlite3.Error, OSError) propagate.

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import TYPE_CHECKING, Mapping

from database import StaleDataError
from domain.models import (
    AccessLevel,
    EventStatus,
    Instrument,
    MaintenanceConfiguration,
    MaintenanceEvent,
    MaintenanceResult,
    ResultType,
    TestSection,
)
from domain.outcomes import MaterializationReport, MaterializationResult, Outcome
from evaluation_service import (
    TemplateEvaluation,
    clear_measurements,
    evaluate_template,
    fill_sections,
)
from permission_service import PermissionDenied, require_permission
from recurrence_service import (
    add_months,
    cycle_index_for,
    cycles_to_materialize,
    days_until,
    derive_status,
    next_due_date,
)
from services.clock import SystemClock
from services.settings_service import get_horizon_days

if TYPE_CHECKING:
    from database import MaintenanceRepository
    from services.identity import Caller

logger = logging.getLogger(__name__)


@dataclass
class EventView:
    """An open event joined with its instrument and read-time status."""

    event: MaintenanceEvent
    instrument: Instrument
    status: EventStatus
    days_until_due: int

    @property
    def sort_key(self) -> tuple:
        return (self.event.due_date, self.instrument.eqp_id, self.instrument.id, self.event.id)


@dataclass
class DueReport:
    as_of: date
    overdue: list[EventView] = field(default_factory=list)
    in_progress: list[EventView] = field(default_factory=list)
    scheduled: list[EventView] = field(default_factory=list)
    unscheduled: list[Instrument] = field(default_factory=list)

    def by_status(self) -> dict[EventStatus, list[EventView]]:
        return {
            EventStatus.OVERDUE: self.overdue,
            EventStatus.IN_PROGRESS: self.in_progress,
            EventStatus.SCHEDULED: self.scheduled,
        }


@dataclass
class RecordedResult:
    result_id: str
    event_id: str
    instrument_id: str
    evaluation: TemplateEvaluation
    next_due_date: date | None


@dataclass
class OverviewCounts:
    month_start: date
    due_by_type: dict[str, int] = field(default_factory=dict)
    calibrations_completed: int = 0
    instruments_by_type: dict[str, int] = field(default_factory=dict)

    @property
    def total_due(self) -> int:
        return sum(self.due_by_type.values())


@dataclass
class CompletionTrendPoint:
    month_start: date
    on_time: int = 0
    overdue: int = 0

    @property
    def label(self) -> str:
        return self.month_start.strftime("%b")


@dataclass
class HistoryEntry:
    event: MaintenanceEvent
    result: MaintenanceResult | None
    evaluation: TemplateEvaluation | None


@dataclass
class ResultReport:
    result: MaintenanceResult
    instrument: Instrument
    event: MaintenanceEvent
    evaluation: TemplateEvaluation


def month_start(d: date) -> date:
    return d.replace(day=1)


def month_end(d: date) -> date:
    return add_months(month_start(d), 1) - timedelta(days=1)


class MaintenanceService:
    def __init__(self, repo: "MaintenanceRepository", clock=None, horizon_days: int | None = None):
        self.repo = repo
        self.clock = clock or SystemClock()
        self.horizon_days = horizon_days

    def _now(self, now: date | None) -> date:
        return now if now is not None else self.clock.today()

    def _horizon(self) -> int:
        if self.horizon_days is not None:
            return self.horizon_days
        return get_horizon_days(self.repo)

    @staticmethod
    def _check(caller: "Caller", feature: str, level: AccessLevel) -> Outcome | None:
        try:
            require_permission(caller, feature, level)
        except PermissionDenied as e:
            return Outcome.denied(str(e))
        return None

    # ---------- Materialization ----------

    def _schedules(self, instrument: Instrument) -> list[MaintenanceConfiguration]:
        """Scheduled configurations of an instrument, its own row first."""
        schedules = [instrument.primary_configuration(), *self.repo.list_configurations(instrument.id)]
        return [s for s in schedules if s.is_scheduled]

    def _materialize_schedule(self, instrument: Instrument, schedule: MaintenanceConfiguration,
                              now: date, result: MaterializationResult) -> date:
        completed = self.repo.count_completed_events(instrument.id, schedule.maintenance_type)
        for _, due in cycles_to_materialize(
            schedule.schedule_date, schedule.frequency, completed, now, self._horizon()
        ):
            created = self.repo.insert_event_if_absent(
                instrument.id, schedule.maintenance_type, due,
                description=schedule.maintenance_type,
                template_id=schedule.template_id,
            )
            if created:
                result.created += 1
                continue
            result.skipped += 1
            existing = self.repo.find_event(instrument.id, schedule.maintenance_type, due)
            if existing is not None and existing.superseded_at:
                # back on the cycle grid after a reschedule
                self.repo.restore_events([existing.id])
        next_due = next_due_date(schedule.schedule_date, schedule.frequency, completed)
        if not schedule.is_primary and next_due != schedule.next_maintenance_date:
            self.repo.set_configuration_next_date(schedule.id, next_due)
        return next_due

    def _materialize(self, instrument: Instrument, now: date) -> MaterializationResult:
        """
        Create missing cycles for every schedule of the instrument and refresh
        next dates. The instrument's next_maintenance_date is the earliest
        over its schedules. Caller owns the transaction.
        """
        result = MaterializationResult(instrument.id)
        for schedule in self._schedules(instrument):
            result.next_due_by_type[schedule.maintenance_type] = self._materialize_schedule(
                instrument, schedule, now, result
            )
        result.next_due_date = min(result.next_due_by_type.values(), default=None)
        if result.next_due_date != instrument.next_maintenance_date:
            self.repo.set_next_maintenance_date(instrument.id, result.next_due_date)
        return result

    def _default_template(self, instrument: Instrument, maintenance_type: str) -> str | None:
        for schedule in (instrument.primary_configuration(), *self.repo.list_configurations(instrument.id)):
            if schedule.maintenance_type == maintenance_type:
                return schedule.template_id
        return None

    def materialize_instrument(self, instrument_id: str, now: date | None = None) -> Outcome:
        now = self._now(now)
        instrument = self.repo.get_instrument(instrument_id)
        if instrument is None:
            return Outcome.not_found(f"Instrument {instrument_id} not found")
        if not self._schedules(instrument):
            return Outcome.unscheduled(
                f"Instrument {instrument.eqp_id} has no schedule date or frequency"
            )
        with self.repo.transaction():
            result = self._materialize(instrument, now)
        if result.created:
            logger.info(
                "Materialized %d event(s) for instrument %s (next due %s)",
                result.created, instrument.eqp_id, result.next_due_date,
            )
        return Outcome.success(result)

    def materialize_all(self, now: date | None = None) -> MaterializationReport:
        now = self._now(now)
        report = MaterializationReport()
        for instrument in self.repo.list_instruments():
            if not self._schedules(instrument):
                report.unscheduled.append(instrument.id)
                continue
            with self.repo.transaction():
                report.results.append(self._materialize(instrument, now))
        logger.info(
            "Materialization as of %s: %d created, %d existing, %d unscheduled",
            now, report.created, report.skipped, len(report.unscheduled),
        )
        return report

    def reschedule_instrument(self, instrument_id: str, now: date | None = None) -> Outcome:
        """
        Reconcile pending events with the instrument's current schedules.
        Completed and started events are never touched. Pending events off
        the cycle grid of their type's schedule (or of a type no longer
        scheduled) are superseded; superseded ones back on it are restored.
        """
        now = self._now(now)
        with self.repo.transaction():
            instrument = self.repo.get_instrument(instrument_id)
            if instrument is None:
                return Outcome.not_found(f"Instrument {instrument_id} not found")
            schedules = {s.maintenance_type: s for s in self._schedules(instrument)}
            to_supersede = []
            to_restore = []
            for event in self.repo.list_events_for_instrument(instrument.id, include_superseded=True):
                if event.status is not EventStatus.SCHEDULED or event.started_at:
                    continue
                schedule = schedules.get(event.type)
                on_grid = (
                    schedule is not None
                    and cycle_index_for(schedule.schedule_date, schedule.frequency, event.due_date) is not None
                )
                if event.superseded_at is None and not on_grid:
                    to_supersede.append(event.id)
                elif event.superseded_at and on_grid:
                    to_restore.append(event.id)
            superseded = self.repo.supersede_events(to_supersede, reason="reschedule")
            self.repo.restore_events(to_restore)
            if schedules:
                result = self._materialize(instrument, now)
            else:
                self.repo.set_next_maintenance_date(instrument.id, None)
                result = MaterializationResult(instrument.id)
        logger.info(
            "Rescheduled instrument %s: %d pending event(s) superseded, %d restored",
            instrument.eqp_id, superseded, len(to_restore),
        )
        if not schedules:
            return Outcome.unscheduled(f"Instrument {instrument.eqp_id} is now unscheduled")
        return Outcome.success(result)

    # ---------- Read models ----------

    def get_due_and_overdue(self, now: date | None = None, caller: "Caller | None" = None,
                            refresh: bool = True) -> Outcome:
        """
        Open events partitioned by read-time status, each partition ordered by
        due date then instrument. Unscheduled instruments are listed separately.
        """
        if caller is not None:
            denied = self._check(caller, "dashboard", AccessLevel.VIEW)
            if denied:
                return denied
        now = self._now(now)
        if refresh:
            self.materialize_all(now)

        instruments = {i.id: i for i in self.repo.list_instruments()}
        report = DueReport(as_of=now)
        report.unscheduled = sorted(
            (i for i in instruments.values() if not self._schedules(i)),
            key=lambda i: (i.eqp_id, i.id),
        )
        views = []
        for event in self.repo.list_open_events():
            instrument = instruments.get(event.instrument_id)
            if instrument is None:
                continue
            views.append(EventView(event, instrument, derive_status(event, now), days_until(event.due_date, now)))
        views.sort(key=lambda v: v.sort_key)
        for view in views:
            report.by_status()[view.status].append(view)
        return Outcome.success(report)

    def get_overview_counts(self, now: date | None = None) -> OverviewCounts:
        """Events due this month by type, calibrations completed this month, instruments by type."""
        now = self._now(now)
        start, end = month_start(now), month_end(now)
        counts = OverviewCounts(month_start=start)
        for event in self.repo.list_events_due_between(start, end):
            counts.due_by_type[event.type] = counts.due_by_type.get(event.type, 0) + 1
        counts.calibrations_completed = sum(
            1 for r in self.repo.list_results_completed_between(start, end)
            if r.result_type is ResultType.CALIBRATION
        )
        for instrument in self.repo.list_instruments():
            key = instrument.maintenance_type or "Unknown"
            counts.instruments_by_type[key] = counts.instruments_by_type.get(key, 0) + 1
        return counts

    def get_completion_trend(self, now: date | None = None, months: int = 6) -> list[CompletionTrendPoint]:
        """
        On-time vs overdue per month for the last `months` months (oldest first).
        Completed late or still open past due counts as overdue.
        """
        now = self._now(now)
        points = []
        for i in range(months - 1, -1, -1):
            start = add_months(month_start(now), -i)
            point = CompletionTrendPoint(month_start=start)
            for event in self.repo.list_events_due_between(start, month_end(start)):
                if event.completed_date is not None:
                    if event.completed_date <= event.due_date:
                        point.on_time += 1
                    else:
                        point.overdue += 1
                elif event.status is EventStatus.COMPLETED:
                    point.on_time += 1
                elif event.due_date <= now:
                    point.overdue += 1
            points.append(point)
        return points

    def list_history(self, caller: "Caller", instrument_id: str) -> Outcome:
        """Completed events for an instrument with their results, newest first."""
        denied = self._check(caller, "maintenance_history", AccessLevel.VIEW)
        if denied:
            return denied
        if self.repo.get_instrument(instrument_id) is None:
            return Outcome.not_found(f"Instrument {instrument_id} not found")
        entries = []
        for event in self.repo.list_events_for_instrument(instrument_id):
            if event.status is not EventStatus.COMPLETED:
                continue
            result = self.repo.get_result_for_event(event.id)
            evaluation = evaluate_template(result.test_data) if result and result.test_data else None
            entries.append(HistoryEntry(event, result, evaluation))
        entries.sort(key=lambda h: (h.event.completed_date or h.event.due_date, h.event.due_date), reverse=True)
        return Outcome.success(entries)

    def get_result_report(self, caller: "Caller", result_id: str) -> Outcome:
        """A stored result with its evaluation recomputed from the measured values."""
        denied = self._check(caller, "maintenance_history", AccessLevel.VIEW)
        if denied:
            return denied
        result = self.repo.get_result(result_id)
        if result is None:
            return Outcome.not_found(f"Result {result_id} not found")
        instrument = self.repo.get_instrument(result.instrument_id)
        event = self.repo.get_event(result.event_id)
        if instrument is None or event is None:
            return Outcome.not_found(f"Result {result_id} references a missing instrument or event")
        return Outcome.success(ResultReport(result, instrument, event, evaluate_template(result.test_data)))

    # ---------- Work on events ----------

    def start_work(self, caller: "Caller", event_id: str) -> Outcome:
        """Scheduled -> In Progress."""
        denied = self._check(caller, "update_maintenance", AccessLevel.EDIT)
        if denied:
            return denied
        event = self.repo.get_event(event_id)
        if event is None or event.superseded_at:
            return Outcome.not_found(f"Maintenance event {event_id} not found")
        if event.status is EventStatus.COMPLETED:
            return Outcome.stale("Maintenance event is already completed")
        if event.status is EventStatus.IN_PROGRESS:
            return Outcome.invalid("Work on this maintenance event has already started")
        try:
            with self.repo.transaction():
                self.repo.start_event(event_id)
        except StaleDataError as e:
            logger.warning("Start work on event %s lost a race: %s", event_id, e)
            return Outcome.stale(str(e))
        logger.info("Work started on event %s by %s", event_id, caller.user_id)
        return Outcome.success(self.repo.get_event(event_id))

    def preview_evaluation(self, caller: "Caller", template_id: str,
                           measured_values: Mapping[str, float | None]) -> Outcome:
        """Evaluate measured values against a template without recording anything."""
        denied = self._check(caller, "update_maintenance", AccessLevel.VIEW)
        if denied:
            return denied
        template = self.repo.get_template(template_id)
        if template is None:
            return Outcome.not_found(f"Template {template_id} not found")
        try:
            sections = fill_sections(clear_measurements(template.structure), measured_values)
        except ValueError as e:
            return Outcome.invalid(str(e))
        return Outcome.success(evaluate_template(sections))

    def record_result(
        self,
        caller: "Caller",
        event_id: str,
        measured_values: Mapping[str, float | None] | None = None,
        result_type: ResultType | str = ResultType.CALIBRATION,
        completed_date: date | None = None,
        notes: str = "",
        document_url: str | None = None,
        template_id: str | None = None,
        now: date | None = None,
    ) -> Outcome:
        """
        Evaluate, persist the result, complete the event and advance the
        schedule in one transaction. A concurrent completion of the same event
        comes back as a stale_completion outcome with nothing applied.
        """
        denied = self._check(caller, "update_maintenance", AccessLevel.EDIT)
        if denied:
            return denied
        now = self._now(now)
        try:
            result_type = ResultType(result_type)
        except ValueError:
            return Outcome.invalid(f"Unknown result type: {result_type!r}")
        completed_date = completed_date or now
        if completed_date > now:
            return Outcome.invalid("Completion date cannot be in the future")

        event = self.repo.get_event(event_id)
        if event is None or event.superseded_at:
            return Outcome.not_found(f"Maintenance event {event_id} not found")
        if event.status is EventStatus.COMPLETED:
            return Outcome.stale("Maintenance event is already completed")
        instrument = self.repo.get_instrument(event.instrument_id)
        if instrument is None:
            return Outcome.not_found(f"Instrument {event.instrument_id} not found")

        template_id = template_id or event.template_id or self._default_template(instrument, event.type)
        sections: list[TestSection] = []
        if template_id:
            template = self.repo.get_template(template_id)
            if template is None:
                return Outcome.invalid(f"Template {template_id} not found")
            try:
                sections = fill_sections(clear_measurements(template.structure), measured_values or {})
            except ValueError as e:
                return Outcome.invalid(str(e))
        elif measured_values:
            return Outcome.invalid("Measured values given but no test template is assigned")
        evaluation = evaluate_template(sections)

        try:
            with self.repo.transaction():
                self.repo.complete_event(event_id, completed_date, notes)
                result_id = self.repo.insert_result(MaintenanceResult(
                    id="",
                    event_id=event_id,
                    instrument_id=instrument.id,
                    result_type=result_type,
                    completed_date=completed_date,
                    notes=notes or "",
                    document_url=document_url,
                    template_id=template_id,
                    test_data=sections,
                    recorded_by=caller.user_id,
                ))
                # schedule edits may have committed since the reads above
                current = self.repo.get_instrument(instrument.id)
                next_due = self._materialize(current, now).next_due_by_type.get(event.type)
                self.repo.log_audit(
                    "event", event_id, "record_result", field="result_id",
                    new_value=result_id, actor=caller.user_id,
                )
        except StaleDataError as e:
            logger.warning("Stale completion of event %s by %s: %s", event_id, caller.user_id, e)
            return Outcome.stale(str(e))

        logger.info(
            "Recorded %s result %s for %s (event %s, verdict %s, next due %s)",
            result_type.value, result_id, instrument.eqp_id, event_id, evaluation.passed, next_due,
        )
        return Outcome.success(RecordedResult(result_id, event_id, instrument.id, evaluation, next_due))
