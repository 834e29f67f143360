# test_maintenance_service.py
"""
Integration tests for the maintenance lifecycle: materialization, due/overdue
report, start work, recording results, reschedules and read models.
Run with: python -m pytest test_maintenance_service.py -v
"""

import sqlite3
import tempfile
import threading
import unittest
from dataclasses import replace
from datetime import date
from pathlib import Path
from unittest import mock

from database import MaintenanceRepository, StaleDataError, get_connection, initialize_db
from domain.models import (
    AccessLevel,
    EventStatus,
    Frequency,
    Instrument,
    MaintenanceConfiguration,
    ResultType,
    UserPermissions,
)
from domain.outcomes import OutcomeKind
from permission_service import PermissionDenied
from recurrence_service import MAX_CYCLES_PER_RUN
from services import instrument_service, template_service
from services.clock import FixedClock
from services.identity import Caller
from services.maintenance_service import MaintenanceService

ADMIN = Caller("admin", permissions=UserPermissions(
    instruments=AccessLevel.EDIT,
    design_templates=AccessLevel.EDIT,
    settings=AccessLevel.EDIT,
))
TECH = Caller("tech", permissions=UserPermissions(
    dashboard=AccessLevel.VIEW,
    maintenance_history=AccessLevel.VIEW,
    update_maintenance=AccessLevel.EDIT,
))
VIEWER = Caller("viewer", permissions=UserPermissions(
    dashboard=AccessLevel.VIEW,
    maintenance_history=AccessLevel.VIEW,
    update_maintenance=AccessLevel.VIEW,
))

BALANCE_TEMPLATE = [
    {
        "id": "lin",
        "title": "Linearity",
        "type": "tolerance",
        "tolerance": 0.26,
        "unit": "g",
        "rows": [
            {"id": "w10", "label": "10 g", "reference": 10.0},
            {"id": "w20", "label": "20 g", "reference": 20.0},
        ],
    },
    {
        "id": "env",
        "title": "Environment",
        "type": "range",
        "rows": [{"id": "temp", "label": "Room temperature", "min": 18, "max": 25}],
    },
    {
        "id": "obs",
        "title": "Observations",
        "type": "simple",
        "rows": [{"id": "level", "label": "Level bubble"}],
    },
]


def _open_repo(path: Path) -> MaintenanceRepository:
    conn = get_connection(path)
    initialize_db(conn, path)
    return MaintenanceRepository(conn)


class ServiceTestCase(unittest.TestCase):
    start = date(2024, 1, 15)

    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.path = Path(self.tmpdir.name) / "maintenance.db"
        self.repo = _open_repo(self.path)
        self.clock = FixedClock(self.start)
        self.service = MaintenanceService(self.repo, self.clock, horizon_days=0)

    def tearDown(self):
        self.repo.conn.close()
        self.tmpdir.cleanup()

    def add_instrument(self, eqp_id="BAL-01", **kw) -> str:
        kw.setdefault("frequency", Frequency.MONTHLY)
        kw.setdefault("schedule_date", date(2024, 1, 31))
        kw.setdefault("maintenance_type", "Calibration")
        return instrument_service.add_instrument(self.repo, ADMIN, Instrument(id="", eqp_id=eqp_id, **kw))

    def events(self, instrument_id):
        return self.repo.list_events_for_instrument(instrument_id)

    def event_due(self, instrument_id, due: date):
        return next(e for e in self.events(instrument_id) if e.due_date == due)


class TestMaterialization(ServiceTestCase):
    def test_next_cycle_materialized(self):
        inst_id = self.add_instrument()
        outcome = self.service.materialize_instrument(inst_id)
        self.assertTrue(outcome.ok)
        self.assertEqual(outcome.value.created, 1)
        self.assertEqual([e.due_date for e in self.events(inst_id)], [date(2024, 1, 31)])
        self.assertEqual(self.repo.get_instrument(inst_id).next_maintenance_date, date(2024, 1, 31))

    def test_idempotent_at_same_now(self):
        inst_id = self.add_instrument()
        self.service.materialize_instrument(inst_id, now=date(2024, 4, 1))
        before = [(e.id, e.key) for e in self.events(inst_id)]
        again = self.service.materialize_instrument(inst_id, now=date(2024, 4, 1))
        self.assertEqual(again.value.created, 0)
        self.assertEqual(again.value.skipped, len(before))
        after = [(e.id, e.key) for e in self.events(inst_id)]
        self.assertEqual(before, after)
        self.assertEqual(len({k for _, k in after}), len(after))

    def test_clock_advance_only_adds(self):
        inst_id = self.add_instrument()
        self.service.materialize_instrument(inst_id)
        first = {e.id: e for e in self.events(inst_id)}
        self.clock.set(date(2024, 3, 31))
        outcome = self.service.materialize_instrument(inst_id)
        self.assertEqual(outcome.value.created, 3)
        current = {e.id: e for e in self.events(inst_id)}
        for event_id, event in first.items():
            self.assertEqual(current[event_id], event)
        self.assertEqual(
            [e.due_date for e in self.events(inst_id)],
            [date(2024, 1, 31), date(2024, 2, 29), date(2024, 3, 31), date(2024, 4, 30)],
        )

    def test_horizon_from_settings(self):
        inst_id = self.add_instrument(frequency=Frequency.WEEKLY, schedule_date=date(2024, 1, 15))
        self.repo.set_setting("horizon_days", "14")
        service = MaintenanceService(self.repo, self.clock)
        service.materialize_instrument(inst_id)
        self.assertEqual(len(self.events(inst_id)), 4)

    def test_unscheduled_reported_not_error(self):
        inst_id = self.add_instrument(eqp_id="PH-01", frequency=None, schedule_date=None)
        outcome = self.service.materialize_instrument(inst_id)
        self.assertEqual(outcome.kind, OutcomeKind.UNSCHEDULED)
        self.assertEqual(self.events(inst_id), [])
        report = self.service.materialize_all()
        self.assertEqual(report.unscheduled, [inst_id])

    def test_not_found(self):
        self.assertEqual(self.service.materialize_instrument("missing").kind, OutcomeKind.NOT_FOUND)

    def test_concurrent_materialization_does_not_duplicate(self):
        inst_id = self.add_instrument()
        barrier = threading.Barrier(2, timeout=30)
        errors = []

        def run():
            repo = _open_repo(self.path)
            try:
                barrier.wait()
                MaintenanceService(repo, FixedClock(date(2024, 6, 1)), horizon_days=0).materialize_all()
            except Exception as e:  # surfaced through the assertion below
                errors.append(e)
            finally:
                repo.conn.close()

        threads = [threading.Thread(target=run) for _ in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        self.assertEqual(errors, [])
        keys = [e.key for e in self.events(inst_id)]
        self.assertEqual(len(keys), len(set(keys)))
        self.assertEqual(len(keys), 6)

    def test_old_anchor_reaches_upcoming_cycle(self):
        inst_id = self.add_instrument(frequency=Frequency.WEEKLY, schedule_date=date(2015, 1, 1))
        for _ in range(2):
            report = self.service.get_due_and_overdue().value
            self.assertEqual([v.event.due_date for v in report.scheduled], [date(2024, 1, 18)])
            self.assertEqual(len(report.overdue), MAX_CYCLES_PER_RUN - 1)
        self.assertEqual(len(self.events(inst_id)), MAX_CYCLES_PER_RUN)


class TestDueReport(ServiceTestCase):
    def test_partition_and_order(self):
        a = self.add_instrument(eqp_id="B-2", schedule_date=date(2024, 1, 1))
        b = self.add_instrument(eqp_id="A-1", schedule_date=date(2024, 1, 1))
        c = self.add_instrument(eqp_id="C-3", schedule_date=date(2023, 12, 20))
        self.add_instrument(eqp_id="Z-9", frequency=None, schedule_date=None)
        report = self.service.get_due_and_overdue(caller=TECH).value

        overdue = [(v.event.due_date, v.instrument.eqp_id) for v in report.overdue]
        self.assertEqual(overdue, [
            (date(2023, 12, 20), "C-3"),
            (date(2024, 1, 1), "A-1"),
            (date(2024, 1, 1), "B-2"),
        ])
        self.assertEqual([v.instrument.id for v in report.scheduled], [c, b, a])
        self.assertTrue(all(v.status is EventStatus.SCHEDULED for v in report.scheduled))
        self.assertEqual([i.eqp_id for i in report.unscheduled], ["Z-9"])
        self.assertEqual(report.overdue[0].days_until_due, -26)

    def test_due_today_is_overdue(self):
        self.add_instrument(schedule_date=self.start)
        report = self.service.get_due_and_overdue().value
        self.assertEqual(len(report.overdue), 1)

    def test_requires_dashboard_view(self):
        outcome = self.service.get_due_and_overdue(caller=Caller("x", permissions=UserPermissions()))
        self.assertEqual(outcome.kind, OutcomeKind.PERMISSION_DENIED)

    def test_start_work_moves_to_in_progress(self):
        inst_id = self.add_instrument(schedule_date=date(2024, 1, 1))
        self.service.materialize_all()
        event = self.event_due(inst_id, date(2024, 1, 1))
        self.assertTrue(self.service.start_work(TECH, event.id).ok)
        report = self.service.get_due_and_overdue().value
        self.assertEqual([v.event.id for v in report.in_progress], [event.id])
        self.assertEqual(report.overdue, [])
        self.assertEqual(self.service.start_work(TECH, event.id).kind, OutcomeKind.INVALID)
        self.assertEqual(self.service.start_work(VIEWER, event.id).kind, OutcomeKind.PERMISSION_DENIED)

    def test_deactivated_instrument_leaves_report_keeps_history(self):
        inst_id = self.add_instrument(schedule_date=date(2024, 1, 1))
        other = self.add_instrument(eqp_id="BAL-02")
        self.service.materialize_all()
        jan = self.event_due(inst_id, date(2024, 1, 1))
        self.assertTrue(self.service.record_result(TECH, jan.id, completed_date=date(2024, 1, 2)).ok)
        instrument_service.deactivate_instrument(self.repo, ADMIN, inst_id)
        stored = [e.id for e in self.events(inst_id)]

        self.clock.set(date(2024, 6, 1))
        report = self.service.get_due_and_overdue(caller=TECH).value
        listed = {v.instrument.id for v in report.overdue + report.in_progress + report.scheduled}
        self.assertEqual(listed, {other})
        self.assertEqual(report.unscheduled, [])
        materialized = self.service.materialize_all()
        self.assertNotIn(inst_id, [r.instrument_id for r in materialized.results])
        self.assertEqual([e.id for e in self.events(inst_id)], stored)

        history = self.service.list_history(TECH, inst_id)
        self.assertTrue(history.ok)
        self.assertEqual([h.event.id for h in history.value], [jan.id])
        self.assertIsNotNone(history.value[0].result)


class TestRecordResult(ServiceTestCase):
    def setUp(self):
        super().setUp()
        self.template_id = template_service.create_template(self.repo, ADMIN, "Balance", BALANCE_TEMPLATE)

    def _due_event(self, **kw):
        inst_id = self.add_instrument(template_id=self.template_id, **kw)
        self.service.materialize_instrument(inst_id)
        return inst_id, self.events(inst_id)[0]

    def test_leap_year_scenario(self):
        inst_id, event = self._due_event()
        self.assertEqual(event.due_date, date(2024, 1, 31))
        outcome = self.service.record_result(TECH, event.id, {"w10": 10.2}, "calibration")
        self.assertTrue(outcome.ok, outcome.message)
        self.assertEqual(outcome.value.next_due_date, date(2024, 2, 29))
        self.assertEqual(self.repo.get_instrument(inst_id).next_maintenance_date, date(2024, 2, 29))
        self.assertEqual(
            [e.due_date for e in self.events(inst_id)],
            [date(2024, 1, 31), date(2024, 2, 29)],
        )

    def test_evaluation_and_persistence(self):
        inst_id, event = self._due_event()
        outcome = self.service.record_result(
            TECH, event.id, {"w10": 10.2, "w20": 20.3, "temp": 22, "level": 1},
            ResultType.CALIBRATION, notes="Annual check", document_url="docs/cert-1.pdf",
        )
        evaluation = outcome.value.evaluation
        self.assertTrue(evaluation.section("lin").passed is False)
        self.assertTrue(evaluation.section("env").passed)
        self.assertIsNone(evaluation.section("obs").passed)
        self.assertEqual(evaluation.passed_rows, 2)
        self.assertEqual(evaluation.failed_rows, 1)

        completed = self.repo.get_event(event.id)
        self.assertEqual(completed.status, EventStatus.COMPLETED)
        self.assertEqual(completed.completed_date, self.start)
        self.assertEqual(completed.completion_notes, "Annual check")

        result = self.repo.get_result(outcome.value.result_id)
        self.assertEqual(result.recorded_by, "tech")
        self.assertEqual(result.document_url, "docs/cert-1.pdf")
        self.assertEqual(result.test_data[0].rows[1].measured, 20.3)

        report = self.service.get_result_report(TECH, result.id).value
        self.assertEqual(report.evaluation.failed_rows, 1)
        self.assertEqual(report.instrument.id, inst_id)

    def test_permission_denied_changes_nothing(self):
        inst_id, event = self._due_event()
        outcome = self.service.record_result(VIEWER, event.id, {"w10": 10.2})
        self.assertEqual(outcome.kind, OutcomeKind.PERMISSION_DENIED)
        self.assertEqual(self.repo.get_event(event.id).status, EventStatus.SCHEDULED)
        self.assertIsNone(self.repo.get_result_for_event(event.id))

    def test_second_completion_is_stale(self):
        _, event = self._due_event()
        self.assertTrue(self.service.record_result(TECH, event.id, {"w10": 10.0}).ok)
        outcome = self.service.record_result(TECH, event.id, {"w10": 10.0})
        self.assertEqual(outcome.kind, OutcomeKind.STALE_COMPLETION)

    def test_atomic_on_storage_failure(self):
        inst_id, event = self._due_event()
        with mock.patch.object(self.repo, "insert_result", side_effect=sqlite3.OperationalError("disk I/O error")):
            with self.assertRaises(sqlite3.OperationalError):
                self.service.record_result(TECH, event.id, {"w10": 10.0})
        self.assertEqual(self.repo.get_event(event.id).status, EventStatus.SCHEDULED)
        self.assertIsNone(self.repo.get_event(event.id).completed_date)
        self.assertEqual(self.repo.get_instrument(inst_id).next_maintenance_date, date(2024, 1, 31))
        self.assertEqual(len(self.events(inst_id)), 1)

    def test_invalid_inputs(self):
        _, event = self._due_event()
        self.assertEqual(
            self.service.record_result(TECH, event.id, {"w10": 10.0}, "warranty").kind, OutcomeKind.INVALID
        )
        self.assertEqual(
            self.service.record_result(TECH, event.id, {"nope": 1.0}).kind, OutcomeKind.INVALID
        )
        self.assertEqual(
            self.service.record_result(TECH, event.id, {"w10": "heavy"}).kind, OutcomeKind.INVALID
        )
        self.assertEqual(
            self.service.record_result(TECH, event.id, completed_date=date(2024, 1, 16)).kind,
            OutcomeKind.INVALID,
        )
        self.assertEqual(self.service.record_result(TECH, "missing").kind, OutcomeKind.NOT_FOUND)
        self.assertEqual(self.repo.get_event(event.id).status, EventStatus.SCHEDULED)

    def test_no_template_service_record(self):
        inst_id = self.add_instrument(eqp_id="GC-1")
        self.service.materialize_instrument(inst_id)
        event = self.events(inst_id)[0]
        outcome = self.service.record_result(TECH, event.id, result_type="service", notes="Replaced seal")
        self.assertTrue(outcome.ok)
        self.assertIsNone(outcome.value.evaluation.passed)
        self.assertEqual(
            self.service.record_result(TECH, "x", {"a": 1}).kind, OutcomeKind.NOT_FOUND
        )

    def test_preview_does_not_persist(self):
        _, event = self._due_event()
        outcome = self.service.preview_evaluation(VIEWER, self.template_id, {"w10": 10.3})
        self.assertFalse(outcome.value.passed)
        self.assertEqual(self.repo.get_event(event.id).status, EventStatus.SCHEDULED)

    def test_concurrent_completion_exactly_one_succeeds(self):
        _, event = self._due_event()
        barrier = threading.Barrier(2, timeout=30)
        kinds = []
        lock = threading.Lock()

        def run():
            repo = _open_repo(self.path)
            try:
                service = MaintenanceService(repo, FixedClock(self.start), horizon_days=0)
                barrier.wait()
                outcome = service.record_result(TECH, event.id, {"w10": 10.1})
                with lock:
                    kinds.append(outcome.kind)
            finally:
                repo.conn.close()

        threads = [threading.Thread(target=run) for _ in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        self.assertEqual(sorted(k.value for k in kinds), ["ok", "stale_completion"])
        self.assertEqual(self.repo.count_completed_events(event.instrument_id, "Calibration"), 1)
        self.assertEqual(
            self.repo.conn.execute("SELECT COUNT(*) FROM maintenance_results").fetchone()[0], 1
        )

    def test_schedule_change_during_completion_is_used(self):
        inst_id, event = self._due_event()
        stale = self.repo.get_instrument(inst_id)
        # another session moves the anchor after this one read the instrument
        self.repo.update_instrument(replace(stale, schedule_date=date(2024, 1, 20)))
        fresh = self.repo.get_instrument(inst_id)
        with mock.patch.object(self.repo, "get_instrument", side_effect=[stale, fresh]):
            outcome = self.service.record_result(TECH, event.id, {"w10": 10.0})
        self.assertTrue(outcome.ok, outcome.message)
        self.assertEqual(outcome.value.next_due_date, date(2024, 2, 20))
        self.assertEqual(self.repo.get_instrument(inst_id).next_maintenance_date, date(2024, 2, 20))

class TestReschedule(ServiceTestCase):
    start = date(2024, 3, 5)

    def test_reschedule_keeps_history_and_supersedes_pending(self):
        inst_id = self.add_instrument()
        self.service.materialize_instrument(inst_id)
        jan = self.event_due(inst_id, date(2024, 1, 31))
        self.assertTrue(self.service.record_result(TECH, jan.id, completed_date=date(2024, 3, 1)).ok)

        inst = self.repo.get_instrument(inst_id)
        instrument_service.update_instrument(
            self.repo, ADMIN, replace(inst, schedule_date=date(2024, 2, 15)), clock=self.clock,
        )
        self.assertEqual(
            [(e.due_date, e.status) for e in self.events(inst_id)],
            [(date(2024, 1, 31), EventStatus.COMPLETED), (date(2024, 3, 15), EventStatus.SCHEDULED)],
        )
        self.assertEqual(self.repo.get_instrument(inst_id).next_maintenance_date, date(2024, 3, 15))
        report = self.service.get_due_and_overdue().value
        self.assertEqual([v.event.due_date for v in report.overdue + report.scheduled], [date(2024, 3, 15)])
        self.assertIn("reschedule", [a["action"] for a in self.repo.get_audit_for("instrument", inst_id)])

        # Back to the original anchor: superseded cycles return
        inst = self.repo.get_instrument(inst_id)
        instrument_service.update_instrument(
            self.repo, ADMIN, replace(inst, schedule_date=date(2024, 1, 31)), clock=self.clock,
        )
        self.assertEqual(
            [e.due_date for e in self.events(inst_id)],
            [date(2024, 1, 31), date(2024, 2, 29), date(2024, 3, 31)],
        )
        self.assertEqual(self.repo.get_instrument(inst_id).next_maintenance_date, date(2024, 2, 29))

    def test_started_work_survives_reschedule(self):
        inst_id = self.add_instrument()
        self.service.materialize_instrument(inst_id)
        feb = self.event_due(inst_id, date(2024, 2, 29))
        self.service.start_work(TECH, feb.id)
        inst = self.repo.get_instrument(inst_id)
        instrument_service.update_instrument(
            self.repo, ADMIN, replace(inst, frequency=Frequency.THREE_MONTHS), clock=self.clock,
        )
        self.assertIn(feb.id, [e.id for e in self.events(inst_id)])

    def test_clearing_schedule_makes_unscheduled(self):
        inst_id = self.add_instrument()
        self.service.materialize_instrument(inst_id)
        inst = self.repo.get_instrument(inst_id)
        instrument_service.update_instrument(
            self.repo, ADMIN, replace(inst, frequency=None), clock=self.clock,
        )
        self.assertEqual(self.events(inst_id), [])
        self.assertIsNone(self.repo.get_instrument(inst_id).next_maintenance_date)

    def test_stale_update_rejected(self):
        inst_id = self.add_instrument()
        self.service.materialize_instrument(inst_id)
        inst = self.repo.get_instrument(inst_id)
        before = [(e.id, e.due_date) for e in self.events(inst_id)]
        with self.assertRaises(StaleDataError):
            instrument_service.update_instrument(
                self.repo, ADMIN, replace(inst, schedule_date=date(2024, 2, 15)), clock=self.clock,
                expected_updated_at="1999-01-01 00:00:00",
            )
        self.assertEqual(self.repo.get_instrument(inst_id).schedule_date, date(2024, 1, 31))
        self.assertEqual([(e.id, e.due_date) for e in self.events(inst_id)], before)

        instrument_service.update_instrument(
            self.repo, ADMIN, replace(inst, schedule_date=date(2024, 2, 15)), clock=self.clock,
            expected_updated_at=inst.updated_at,
        )
        self.assertEqual(self.repo.get_instrument(inst_id).next_maintenance_date, date(2024, 2, 15))


PM = "Preventative Maintenance"


class TestMultipleSchedules(ServiceTestCase):
    def setUp(self):
        super().setUp()
        self.inst_id = self.add_instrument()
        self.pm_id = self.add_configuration(self.inst_id)

    def add_configuration(self, inst_id, **kw) -> str:
        kw.setdefault("maintenance_type", PM)
        kw.setdefault("frequency", Frequency.THREE_MONTHS)
        kw.setdefault("schedule_date", date(2024, 1, 10))
        return instrument_service.add_configuration(
            self.repo, ADMIN, MaintenanceConfiguration(id="", instrument_id=inst_id, **kw), clock=self.clock,
        )

    def keys(self):
        return sorted((e.type, e.due_date) for e in self.events(self.inst_id))

    def test_each_schedule_materialized(self):
        self.assertEqual(self.keys(), [
            ("Calibration", date(2024, 1, 31)),
            (PM, date(2024, 1, 10)),
            (PM, date(2024, 4, 10)),
        ])
        self.assertEqual(self.repo.get_configuration(self.pm_id).next_maintenance_date, date(2024, 1, 10))
        self.assertEqual(self.repo.get_instrument(self.inst_id).next_maintenance_date, date(2024, 1, 10))
        outcome = self.service.materialize_instrument(self.inst_id)
        self.assertEqual(outcome.value.created, 0)
        self.assertEqual(
            outcome.value.next_due_by_type, {"Calibration": date(2024, 1, 31), PM: date(2024, 1, 10)}
        )

    def test_completion_advances_only_its_schedule(self):
        pm = next(e for e in self.events(self.inst_id) if e.type == PM)
        outcome = self.service.record_result(TECH, pm.id, result_type="service")
        self.assertTrue(outcome.ok, outcome.message)
        self.assertEqual(outcome.value.next_due_date, date(2024, 4, 10))
        self.assertEqual(self.repo.get_configuration(self.pm_id).next_maintenance_date, date(2024, 4, 10))
        self.assertEqual(self.repo.get_instrument(self.inst_id).next_maintenance_date, date(2024, 1, 31))
        self.assertEqual(self.repo.count_completed_events(self.inst_id, "Calibration"), 0)

    def test_update_reschedules_only_its_type(self):
        calibration = [e.id for e in self.events(self.inst_id) if e.type == "Calibration"]
        cfg = self.repo.get_configuration(self.pm_id)
        instrument_service.update_configuration(
            self.repo, ADMIN, replace(cfg, frequency=Frequency.MONTHLY, schedule_date=date(2024, 1, 5)),
            clock=self.clock,
        )
        self.assertEqual(self.keys(), [
            ("Calibration", date(2024, 1, 31)),
            (PM, date(2024, 1, 5)),
            (PM, date(2024, 2, 5)),
        ])
        self.assertEqual([e.id for e in self.events(self.inst_id) if e.type == "Calibration"], calibration)
        self.assertEqual(self.repo.get_instrument(self.inst_id).next_maintenance_date, date(2024, 1, 5))

    def test_remove_supersedes_pending_keeps_history(self):
        pm = next(e for e in self.events(self.inst_id) if e.type == PM)
        self.service.record_result(TECH, pm.id, result_type="service")
        instrument_service.remove_configuration(self.repo, ADMIN, self.pm_id, clock=self.clock)
        self.assertIsNone(self.repo.get_configuration(self.pm_id))
        self.assertEqual(
            [(e.type, e.due_date, e.status) for e in self.events(self.inst_id)],
            [(PM, date(2024, 1, 10), EventStatus.COMPLETED), ("Calibration", date(2024, 1, 31), EventStatus.SCHEDULED)],
        )
        self.assertEqual(self.repo.get_instrument(self.inst_id).next_maintenance_date, date(2024, 1, 31))
        with self.assertRaises(ValueError):
            instrument_service.remove_configuration(self.repo, ADMIN, self.pm_id)

    def test_type_scheduled_once_per_instrument(self):
        for maintenance_type in ("Calibration", PM):
            with self.assertRaises(ValueError):
                self.add_configuration(self.inst_id, maintenance_type=maintenance_type)
        with self.assertRaises(ValueError):
            self.add_configuration(self.inst_id, maintenance_type="Cleaning", frequency=None)
        inst = self.repo.get_instrument(self.inst_id)
        with self.assertRaises(ValueError):
            instrument_service.update_instrument(
                self.repo, ADMIN, replace(inst, maintenance_type=PM), clock=self.clock,
            )
        self.assertEqual(self.repo.get_instrument(self.inst_id).maintenance_type, "Calibration")
        with self.assertRaises(PermissionDenied):
            instrument_service.remove_configuration(self.repo, TECH, self.pm_id)
        self.assertEqual(len(self.repo.list_configurations(self.inst_id)), 1)

    def test_configuration_alone_schedules_instrument(self):
        other = self.add_instrument(eqp_id="PH-01", frequency=None, schedule_date=None)
        self.add_configuration(other, frequency=Frequency.WEEKLY, schedule_date=self.start)
        report = self.service.get_due_and_overdue().value
        self.assertEqual(report.unscheduled, [])
        self.assertIn((other, self.start), [(v.instrument.id, v.event.due_date) for v in report.overdue])
        self.assertTrue(self.service.materialize_instrument(other).ok)


class TestReadModels(ServiceTestCase):
    start = date(2024, 3, 20)

    def test_overview_and_trend(self):
        inst_id = self.add_instrument(schedule_date=date(2024, 1, 10))
        self.service.materialize_instrument(inst_id)
        jan = self.event_due(inst_id, date(2024, 1, 10))
        feb = self.event_due(inst_id, date(2024, 2, 10))
        self.service.record_result(TECH, jan.id, result_type="service", completed_date=date(2024, 1, 9))
        self.service.record_result(TECH, feb.id, result_type="calibration", completed_date=date(2024, 3, 1))

        counts = self.service.get_overview_counts()
        self.assertEqual(counts.due_by_type, {"Calibration": 1})
        self.assertEqual(counts.total_due, 1)
        self.assertEqual(counts.calibrations_completed, 1)
        self.assertEqual(counts.instruments_by_type, {"Calibration": 1})

        trend = self.service.get_completion_trend(months=3)
        self.assertEqual(
            [(p.label, p.on_time, p.overdue) for p in trend],
            [("Jan", 1, 0), ("Feb", 0, 1), ("Mar", 0, 1)],
        )

    def test_history(self):
        inst_id = self.add_instrument(schedule_date=date(2024, 1, 10))
        self.service.materialize_instrument(inst_id)
        jan = self.event_due(inst_id, date(2024, 1, 10))
        feb = self.event_due(inst_id, date(2024, 2, 10))
        self.service.record_result(TECH, jan.id, completed_date=date(2024, 1, 9))
        self.service.record_result(TECH, feb.id, completed_date=date(2024, 2, 12))
        history = self.service.list_history(TECH, inst_id).value
        self.assertEqual([h.event.id for h in history], [feb.id, jan.id])
        self.assertTrue(all(h.result is not None for h in history))
        denied = self.service.list_history(Caller("x", permissions=UserPermissions()), inst_id)
        self.assertEqual(denied.kind, OutcomeKind.PERMISSION_DENIED)


if __name__ == "__main__":
    unittest.main()
