# test_database.py
"""
Integration tests for the sqlite repository.
Run with: python -m pytest test_database.py -v
"""

import sqlite3
import tempfile
import unittest
from datetime import date
from pathlib import Path

from database import (
    DEFAULT_INSTRUMENT_TYPES,
    MaintenanceRepository,
    StaleDataError,
    get_connection,
    initialize_db,
)
from domain.models import (
    DEFAULT_MAINTENANCE_TYPES,
    EventStatus,
    Frequency,
    Instrument,
    MaintenanceConfiguration,
    MaintenanceResult,
    ResultType,
    SectionType,
    TestRow,
    TestSection,
)
from migrations import CURRENT_SCHEMA_VERSION, get_schema_version


class RepositoryTestCase(unittest.TestCase):
    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.path = Path(self.tmpdir.name) / "maintenance.db"
        self.conn = initialize_db(get_connection(self.path), self.path)
        self.repo = MaintenanceRepository(self.conn, actor="tester")

    def tearDown(self):
        self.conn.close()
        self.tmpdir.cleanup()

    def _add_instrument(self, eqp_id="BAL-01", **kw) -> str:
        kw.setdefault("frequency", Frequency.MONTHLY)
        kw.setdefault("schedule_date", date(2024, 1, 31))
        kw.setdefault("maintenance_type", "Calibration")
        return self.repo.add_instrument(Instrument(id="", eqp_id=eqp_id, **kw))


class TestSchema(RepositoryTestCase):
    def test_seeds_and_version(self):
        self.assertEqual(get_schema_version(self.conn), CURRENT_SCHEMA_VERSION)
        self.assertEqual(sorted(self.repo.list_maintenance_types()), sorted(DEFAULT_MAINTENANCE_TYPES))
        self.assertEqual(sorted(self.repo.list_instrument_types()), sorted(DEFAULT_INSTRUMENT_TYPES))
        self.assertFalse((self.path.parent / ".migrating").exists())

    def test_initialize_twice_is_safe(self):
        initialize_db(self.conn, self.path)
        self.assertEqual(len(self.repo.list_maintenance_types()), len(DEFAULT_MAINTENANCE_TYPES))

    def test_migrated_columns_present(self):
        cols = [r[1] for r in self.conn.execute("PRAGMA table_info(maintenance_events)").fetchall()]
        self.assertIn("superseded_at", cols)
        cols = [r[1] for r in self.conn.execute("PRAGMA table_info(instruments)").fetchall()]
        self.assertIn("vendor_name", cols)


class TestInstruments(RepositoryTestCase):
    def test_add_and_get(self):
        inst_id = self._add_instrument(location="Lab 2", maintenance_by="vendor", vendor_name="Acme")
        inst = self.repo.get_instrument(inst_id)
        self.assertEqual(inst.eqp_id, "BAL-01")
        self.assertEqual(inst.frequency, Frequency.MONTHLY)
        self.assertEqual(inst.schedule_date, date(2024, 1, 31))
        self.assertEqual(inst.vendor_name, "Acme")
        self.assertEqual(self.repo.get_audit_for("instrument", inst_id)[0]["actor"], "tester")

    def test_stale_update(self):
        inst = self.repo.get_instrument(self._add_instrument())
        with self.assertRaises(StaleDataError):
            self.repo.update_instrument(inst, expected_updated_at="1999-01-01 00:00:00")

    def test_update_writes_field_audit(self):
        inst = self.repo.get_instrument(self._add_instrument())
        inst.location = "Lab 9"
        self.repo.update_instrument(inst, expected_updated_at=inst.updated_at)
        fields = [a["field"] for a in self.repo.get_audit_for("instrument", inst.id)]
        self.assertIn("location", fields)

    def test_inactive_hidden_from_list(self):
        inst = self.repo.get_instrument(self._add_instrument())
        inst.is_active = False
        self.repo.update_instrument(inst)
        self.assertEqual(self.repo.list_instruments(), [])
        self.assertEqual(len(self.repo.list_instruments(include_inactive=True)), 1)


class TestConfigurations(RepositoryTestCase):
    def _config(self, inst_id, **kw):
        kw.setdefault("maintenance_type", "Preventative Maintenance")
        kw.setdefault("frequency", Frequency.SIX_MONTHS)
        kw.setdefault("schedule_date", date(2024, 2, 1))
        kw.setdefault("id", "")
        return MaintenanceConfiguration(instrument_id=inst_id, **kw)

    def test_add_update_delete(self):
        inst_id = self._add_instrument()
        cfg_id = self.repo.add_configuration(self._config(inst_id))
        cfg = self.repo.get_configuration(cfg_id)
        self.assertEqual(cfg.frequency, Frequency.SIX_MONTHS)
        self.assertFalse(cfg.is_primary)

        self.repo.update_configuration(MaintenanceConfiguration(
            id=cfg_id, instrument_id=inst_id, maintenance_type="Validation",
            frequency=Frequency.ONE_YEAR, schedule_date=date(2024, 3, 1),
        ))
        self.repo.set_configuration_next_date(cfg_id, date(2024, 3, 1))
        cfg = self.repo.get_configuration(cfg_id)
        self.assertEqual((cfg.maintenance_type, cfg.next_maintenance_date), ("Validation", date(2024, 3, 1)))

        self.repo.delete_configuration(cfg_id)
        self.assertEqual(self.repo.list_configurations(inst_id), [])
        actions = [a["action"] for a in self.repo.get_audit_for("instrument", inst_id)]
        for action in ("add_configuration", "update_configuration", "remove_configuration"):
            self.assertIn(action, actions)

    def test_one_row_per_type(self):
        inst_id = self._add_instrument()
        self.repo.add_configuration(self._config(inst_id))
        with self.assertRaises(sqlite3.IntegrityError):
            self.repo.add_configuration(self._config(inst_id, frequency=Frequency.WEEKLY))
        with self.assertRaises(KeyError):
            self.repo.update_configuration(self._config(inst_id, id="missing"))

    def test_primary_configuration_mirrors_row(self):
        inst_id = self._add_instrument()
        primary = self.repo.get_instrument(inst_id).primary_configuration()
        self.assertTrue(primary.is_primary)
        self.assertEqual(
            (primary.maintenance_type, primary.frequency, primary.schedule_date),
            ("Calibration", Frequency.MONTHLY, date(2024, 1, 31)),
        )


class TestEvents(RepositoryTestCase):
    def test_insert_is_idempotent(self):
        inst_id = self._add_instrument()
        self.assertTrue(self.repo.insert_event_if_absent(inst_id, "Calibration", date(2024, 1, 31)))
        self.assertFalse(self.repo.insert_event_if_absent(inst_id, "Calibration", date(2024, 1, 31)))
        self.assertTrue(self.repo.insert_event_if_absent(inst_id, "Validation", date(2024, 1, 31)))
        self.assertEqual(len(self.repo.list_events_for_instrument(inst_id)), 2)

    def test_unique_index_blocks_plain_duplicates(self):
        inst_id = self._add_instrument()
        self.repo.insert_event_if_absent(inst_id, "Calibration", date(2024, 1, 31))
        with self.assertRaises(sqlite3.IntegrityError):
            self.conn.execute(
                "INSERT INTO maintenance_events (id, instrument_id, due_date, type) VALUES ('x', ?, ?, ?)",
                (inst_id, "2024-01-31", "Calibration"),
            )

    def test_completion_guard(self):
        inst_id = self._add_instrument()
        self.repo.insert_event_if_absent(inst_id, "Calibration", date(2024, 1, 31))
        event = self.repo.list_events_for_instrument(inst_id)[0]
        self.repo.complete_event(event.id, date(2024, 2, 1), "done")
        with self.assertRaises(StaleDataError):
            self.repo.complete_event(event.id, date(2024, 2, 2), "again")
        event = self.repo.get_event(event.id)
        self.assertEqual(event.status, EventStatus.COMPLETED)
        self.assertEqual(event.completed_date, date(2024, 2, 1))
        self.assertEqual(self.repo.count_completed_events(inst_id, "Calibration"), 1)

    def test_start_guard(self):
        inst_id = self._add_instrument()
        self.repo.insert_event_if_absent(inst_id, "Calibration", date(2024, 1, 31))
        event = self.repo.list_events_for_instrument(inst_id)[0]
        self.repo.start_event(event.id)
        self.assertEqual(self.repo.get_event(event.id).status, EventStatus.IN_PROGRESS)
        with self.assertRaises(StaleDataError):
            self.repo.start_event(event.id)

    def test_supersede_and_restore(self):
        inst_id = self._add_instrument()
        self.repo.insert_event_if_absent(inst_id, "Calibration", date(2024, 1, 31))
        event = self.repo.list_events_for_instrument(inst_id)[0]
        self.assertEqual(self.repo.supersede_events([event.id]), 1)
        self.assertEqual(self.repo.list_events_for_instrument(inst_id), [])
        self.assertEqual(self.repo.list_open_events(), [])
        self.assertEqual(len(self.repo.list_events_for_instrument(inst_id, include_superseded=True)), 1)
        self.assertEqual(self.repo.restore_events([event.id]), 1)
        self.assertEqual(len(self.repo.list_open_events()), 1)


class TestTransactions(RepositoryTestCase):
    def test_rollback_on_error(self):
        inst_id = self._add_instrument()
        with self.assertRaises(RuntimeError):
            with self.repo.transaction():
                self.repo.insert_event_if_absent(inst_id, "Calibration", date(2024, 1, 31))
                raise RuntimeError("boom")
        self.assertEqual(self.repo.list_events_for_instrument(inst_id), [])

    def test_nested_joins_outer(self):
        inst_id = self._add_instrument()
        with self.assertRaises(RuntimeError):
            with self.repo.transaction():
                with self.repo.transaction():
                    self.repo.insert_event_if_absent(inst_id, "Calibration", date(2024, 1, 31))
                raise RuntimeError("boom")
        self.assertEqual(self.repo.list_events_for_instrument(inst_id), [])


class TestResultsAndTemplates(RepositoryTestCase):
    def _template(self) -> str:
        return self.repo.create_template("Balance check", "", [
            TestSection(id="s1", title="Linearity", type=SectionType.TOLERANCE, tolerance=0.1,
                        rows=[TestRow(id="r1", label="10 g", reference=10.0)]),
        ])

    def test_result_round_trip_and_one_per_event(self):
        inst_id = self._add_instrument()
        self.repo.insert_event_if_absent(inst_id, "Calibration", date(2024, 1, 31))
        event = self.repo.list_events_for_instrument(inst_id)[0]
        template = self.repo.get_template(self._template())
        sections = [template.structure[0].with_rows([TestRow(id="r1", label="10 g", reference=10.0, measured=10.05)])]
        result = MaintenanceResult(
            id="", event_id=event.id, instrument_id=inst_id, result_type=ResultType.CALIBRATION,
            completed_date=date(2024, 2, 1), template_id=template.id, test_data=sections,
            document_url="s3://bucket/cert.pdf",
        )
        result_id = self.repo.insert_result(result)
        stored = self.repo.get_result(result_id)
        self.assertEqual(stored.test_data[0].rows[0].measured, 10.05)
        self.assertEqual(stored.document_url, "s3://bucket/cert.pdf")
        self.assertEqual(self.repo.get_result_for_event(event.id).id, result_id)
        with self.assertRaises(sqlite3.IntegrityError):
            self.repo.insert_result(result)

    def test_template_in_use_cannot_be_deleted(self):
        inst_id = self._add_instrument()
        self.repo.insert_event_if_absent(inst_id, "Calibration", date(2024, 1, 31))
        event = self.repo.list_events_for_instrument(inst_id)[0]
        template_id = self._template()
        self.repo.insert_result(MaintenanceResult(
            id="", event_id=event.id, instrument_id=inst_id, result_type=ResultType.SERVICE,
            completed_date=date(2024, 2, 1), template_id=template_id,
        ))
        with self.assertRaises(ValueError):
            self.repo.delete_template(template_id)

    def test_settings_upsert(self):
        self.assertIsNone(self.repo.get_setting("horizon_days"))
        self.repo.set_setting("horizon_days", "7")
        self.repo.set_setting("horizon_days", "14")
        self.assertEqual(self.repo.get_setting("horizon_days"), "14")


if __name__ == "__main__":
    unittest.main()
