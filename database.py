# database.py

import json
import logging
import sqlite3
import time
import uuid
from contextlib import contextmanager
from datetime import date
from pathlib import Path
from typing import Iterator

from config import get_app_base_dir, load_app_config
from domain.models import (
    DEFAULT_MAINTENANCE_TYPES,
    EventStatus,
    Instrument,
    MaintenanceConfiguration,
    MaintenanceEvent,
    MaintenanceResult,
    TestSection,
    TestTemplate,
    UserPermissions,
    UserProfile,
    format_date,
    sections_to_json,
)

logger = logging.getLogger(__name__)

# -----------------------------------------------------------------------------
# Paths
# -----------------------------------------------------------------------------


def get_base_dir() -> Path:
    """Base dir for the app (install dir when frozen, script dir when run from source)."""
    return get_app_base_dir()


def default_db_path() -> Path:
    return load_app_config().db_path


def new_id() -> str:
    """Opaque identifier for new rows."""
    return uuid.uuid4().hex

# -----------------------------------------------------------------------------
# Connection helpers
# -----------------------------------------------------------------------------


def get_connection(db_path: Path | None = None, timeout: float = 30.0, retries: int = 3):
    """
    Open the maintenance database. Connections run in autocommit mode;
    multi-statement writes go through MaintenanceRepository.transaction().
    timeout: seconds to wait for locks.
    retries: number of retries on SQLITE_BUSY / database is locked (with exponential backoff).
    """
    if db_path is None:
        db_path = default_db_path()
    db_path = Path(db_path)
    try:
        db_path.parent.mkdir(parents=True, exist_ok=True)
    except OSError:
        pass

    last_err = None
    for attempt in range(max(1, retries)):
        try:
            conn = sqlite3.connect(str(db_path), timeout=timeout, isolation_level=None)
            break
        except sqlite3.OperationalError as e:
            last_err = e
            err_lower = str(e).lower()
            if "unable to open database file" in err_lower:
                raise sqlite3.OperationalError(
                    f"Could not open database at:\n{db_path}\n\n"
                    "Check that the folder exists and that you have read and write permission."
                ) from e
            if ("database is locked" in err_lower or "sqlite_busy" in err_lower) and attempt < retries - 1:
                time.sleep(0.1 * (2 ** attempt))
                continue
            raise
    else:
        if last_err:
            raise last_err
        raise RuntimeError("Failed to connect to database")

    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    return conn

# -----------------------------------------------------------------------------
# Default lookup values
# -----------------------------------------------------------------------------

DEFAULT_INSTRUMENT_TYPES = [
    "Lab Balance",
    "Scale",
    "pH Meter",
    "Tap Density Tester",
    "UV-Vis Spectrophotometer",
    "GC",
    "Spectrometer",
]


def seed_defaults(conn: sqlite3.Connection):
    """
    Insert default instrument and maintenance types if they don't already exist.
    Safe to call every startup; uses INSERT OR IGNORE.
    """
    for name in DEFAULT_INSTRUMENT_TYPES:
        conn.execute("INSERT OR IGNORE INTO instrument_types (name) VALUES (?)", (name,))
    for name in DEFAULT_MAINTENANCE_TYPES:
        conn.execute("INSERT OR IGNORE INTO maintenance_types (name) VALUES (?)", (name,))

# -----------------------------------------------------------------------------
# Schema initialization
# -----------------------------------------------------------------------------


def run_integrity_check(conn: sqlite3.Connection) -> str | None:
    """
    Run PRAGMA integrity_check. Returns None if OK, or an error message string if failed.
    """
    row = conn.execute("PRAGMA integrity_check").fetchone()
    if row is None:
        return None
    result = row[0]
    if result == "ok":
        return None
    return result


def initialize_db(conn: sqlite3.Connection, db_path: Path | None = None) -> sqlite3.Connection:
    """
    Initialize database schema, run migrations and seed defaults.
    On read-only error, raises with a clear message.
    Runs integrity check after init; on failure logs a warning (does not block startup).
    """
    try:
        _initialize_db_core(conn, db_path)
        err = run_integrity_check(conn)
        if err:
            logger.warning("Database integrity check failed: %s", err)
        return conn
    except sqlite3.OperationalError as e:
        err = str(e).lower()
        if "readonly" in err or "attempt to write" in err:
            raise sqlite3.OperationalError(
                f"The database at {db_path} is read-only. "
                "Ensure the folder and file have write permission for your user, then try again."
            ) from e
        raise


def _initialize_db_core(conn: sqlite3.Connection, db_path: Path | None = None) -> None:
    """Internal: run schema creation and seeding. Raises on readonly."""
    cur = conn.cursor()

    cur.execute("PRAGMA foreign_keys = ON")
    cur.execute("PRAGMA journal_mode = WAL")  # Write-Ahead Logging for better concurrency
    cur.execute("PRAGMA synchronous = NORMAL")

    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS instrument_types (
            id   INTEGER PRIMARY KEY AUTOINCREMENT,
            name TEXT NOT NULL UNIQUE
        )
        """
    )
    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS maintenance_types (
            id   INTEGER PRIMARY KEY AUTOINCREMENT,
            name TEXT NOT NULL UNIQUE
        )
        """
    )
    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS test_templates (
            id          TEXT PRIMARY KEY,
            name        TEXT NOT NULL,
            description TEXT,
            structure   TEXT NOT NULL DEFAULT '[]',
            created_at  TEXT DEFAULT (datetime('now')),
            updated_at  TEXT DEFAULT (datetime('now'))
        )
        """
    )
    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS instruments (
            id                    TEXT PRIMARY KEY,
            eqp_id                TEXT NOT NULL,
            instrument_type       TEXT,
            make                  TEXT DEFAULT '',
            model                 TEXT DEFAULT '',
            serial_number         TEXT DEFAULT '',
            location              TEXT DEFAULT '',
            status                TEXT DEFAULT 'Operational'
                                  CHECK (status IN ('Operational', 'AMC', 'PM', 'Out of Service')),
            maintenance_type      TEXT NOT NULL DEFAULT 'Preventative Maintenance',
            frequency             TEXT CHECK (frequency IS NULL OR frequency IN
                                  ('Weekly', 'Monthly', '3 Months', '6 Months', '1 Year')),
            schedule_date         TEXT,
            next_maintenance_date TEXT,
            template_id           TEXT,
            is_active             INTEGER NOT NULL DEFAULT 1,
            created_at            TEXT DEFAULT (datetime('now')),
            updated_at            TEXT DEFAULT (datetime('now')),
            FOREIGN KEY(template_id) REFERENCES test_templates(id) ON DELETE SET NULL
        )
        """
    )
    cur.execute("CREATE INDEX IF NOT EXISTS idx_instruments_eqp_id ON instruments(eqp_id)")
    cur.execute(
        "CREATE INDEX IF NOT EXISTS idx_instruments_next_date ON instruments(next_maintenance_date)"
    )

    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS maintenance_events (
            id               TEXT PRIMARY KEY,
            instrument_id    TEXT NOT NULL,
            due_date         TEXT NOT NULL,
            type             TEXT NOT NULL,
            description      TEXT NOT NULL DEFAULT '',
            status           TEXT NOT NULL DEFAULT 'Scheduled'
                             CHECK (status IN ('Scheduled', 'In Progress', 'Completed')),
            started_at       TEXT,
            completed_date   TEXT,
            completion_notes TEXT,
            template_id      TEXT,
            created_at       TEXT DEFAULT (datetime('now')),
            FOREIGN KEY(instrument_id) REFERENCES instruments(id) ON DELETE CASCADE,
            FOREIGN KEY(template_id) REFERENCES test_templates(id) ON DELETE SET NULL
        )
        """
    )
    # One event per cycle; materialization relies on this for idempotence
    cur.execute(
        "CREATE UNIQUE INDEX IF NOT EXISTS ux_events_cycle "
        "ON maintenance_events(instrument_id, type, due_date)"
    )
    cur.execute("CREATE INDEX IF NOT EXISTS idx_events_due_date ON maintenance_events(due_date)")
    cur.execute("CREATE INDEX IF NOT EXISTS idx_events_status ON maintenance_events(status)")

    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS maintenance_results (
            id             TEXT PRIMARY KEY,
            event_id       TEXT NOT NULL UNIQUE,
            instrument_id  TEXT NOT NULL,
            result_type    TEXT NOT NULL
                           CHECK (result_type IN ('calibration', 'service', 'spare_quotation', 'other')),
            completed_date TEXT NOT NULL,
            notes          TEXT,
            document_url   TEXT,
            template_id    TEXT,
            test_data      TEXT,
            recorded_by    TEXT,
            created_at     TEXT DEFAULT (datetime('now')),
            FOREIGN KEY(event_id) REFERENCES maintenance_events(id) ON DELETE CASCADE,
            FOREIGN KEY(instrument_id) REFERENCES instruments(id) ON DELETE CASCADE,
            FOREIGN KEY(template_id) REFERENCES test_templates(id) ON DELETE SET NULL
        )
        """
    )
    cur.execute(
        "CREATE INDEX IF NOT EXISTS idx_results_instrument ON maintenance_results(instrument_id)"
    )

    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS profiles (
            id             TEXT PRIMARY KEY,
            display_name   TEXT,
            role           TEXT NOT NULL DEFAULT 'user'
                           CHECK (role IN ('admin', 'supervisor', 'user')),
            is_super_admin INTEGER NOT NULL DEFAULT 0,
            permissions    TEXT,
            created_at     TEXT DEFAULT (datetime('now')),
            updated_at     TEXT DEFAULT (datetime('now'))
        )
        """
    )

    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS settings (
            key   TEXT PRIMARY KEY,
            value TEXT NOT NULL
        )
        """
    )

    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS audit_log (
            id          INTEGER PRIMARY KEY AUTOINCREMENT,
            entity_type TEXT NOT NULL,
            entity_id   TEXT NOT NULL,
            action      TEXT NOT NULL,
            field       TEXT,
            old_value   TEXT,
            new_value   TEXT,
            actor       TEXT,
            reason      TEXT,
            ts          TEXT NOT NULL DEFAULT (datetime('now'))
        )
        """
    )
    cur.execute("CREATE INDEX IF NOT EXISTS idx_audit_log_entity ON audit_log(entity_type, entity_id)")

    # Schema version and migrations (run after core tables)
    cur.execute("CREATE TABLE IF NOT EXISTS schema_version (version INTEGER PRIMARY KEY)")
    from migrations import run_migrations
    try:
        run_migrations(conn, db_path)
    except Exception as e:
        logger.error("Schema migration failed: %s", e, exc_info=True)
        raise RuntimeError(
            f"Database schema migration failed. Your database may be incompatible with this version.\n\n"
            f"Error: {e}"
        ) from e

    seed_defaults(conn)

# -----------------------------------------------------------------------------
# Exceptions
# -----------------------------------------------------------------------------


class StaleDataError(Exception):
    """Raised when a guarded update fails (row was changed by another process/user)."""

# -----------------------------------------------------------------------------
# Repository
# -----------------------------------------------------------------------------


class MaintenanceRepository:
    def __init__(self, conn: sqlite3.Connection, actor: str | None = None):
        self.conn = conn
        self.actor = actor
        self._tx_depth = 0

    @contextmanager
    def transaction(self) -> Iterator["MaintenanceRepository"]:
        """
        Run the enclosed writes atomically. BEGIN IMMEDIATE takes the write
        lock up front so concurrent guarded updates serialize. Nested use
        joins the outer transaction.
        """
        if self._tx_depth:
            self._tx_depth += 1
            try:
                yield self
            finally:
                self._tx_depth -= 1
            return
        self.conn.execute("BEGIN IMMEDIATE")
        self._tx_depth = 1
        try:
            yield self
        except BaseException:
            self.conn.execute("ROLLBACK")
            raise
        else:
            self.conn.execute("COMMIT")
        finally:
            self._tx_depth = 0

    # ---------- Audit log ----------

    def _get_actor(self):
        if self.actor:
            return self.actor
        return self.get_setting("operator_name", None)

    def log_audit(self, entity_type: str, entity_id: str, action: str,
                  field: str | None = None,
                  old_value: str | None = None,
                  new_value: str | None = None,
                  reason: str | None = None,
                  actor: str | None = None):
        self.conn.execute(
            """
            INSERT INTO audit_log
                (entity_type, entity_id, action, field, old_value, new_value, actor, reason)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (entity_type, entity_id, action, field, old_value, new_value,
             actor or self._get_actor(), reason),
        )

    def get_audit_for(self, entity_type: str, entity_id: str):
        cur = self.conn.execute(
            """
            SELECT *
            FROM audit_log
            WHERE entity_type = ?
              AND entity_id = ?
            ORDER BY ts DESC, id DESC
            """,
            (entity_type, entity_id),
        )
        return [dict(r) for r in cur.fetchall()]

    # ---------- Settings ----------

    def get_setting(self, key: str, default=None):
        row = self.conn.execute("SELECT value FROM settings WHERE key = ?", (key,)).fetchone()
        return row["value"] if row else default

    def set_setting(self, key: str, value: str):
        self.conn.execute(
            "INSERT INTO settings (key, value) VALUES (?, ?) "
            "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
            (key, value),
        )

    # ---------- Lookup lists ----------

    def list_instrument_types(self) -> list[str]:
        cur = self.conn.execute("SELECT name FROM instrument_types ORDER BY name")
        return [r["name"] for r in cur.fetchall()]

    def add_instrument_type(self, name: str) -> None:
        self.conn.execute("INSERT OR IGNORE INTO instrument_types (name) VALUES (?)", (name,))

    def list_maintenance_types(self) -> list[str]:
        cur = self.conn.execute("SELECT name FROM maintenance_types ORDER BY name")
        return [r["name"] for r in cur.fetchall()]

    def add_maintenance_type(self, name: str) -> None:
        self.conn.execute("INSERT OR IGNORE INTO maintenance_types (name) VALUES (?)", (name,))

    # ---------- Instruments ----------

    def list_instruments(self, include_inactive: bool = False) -> list[Instrument]:
        sql = "SELECT * FROM instruments"
        if not include_inactive:
            sql += " WHERE is_active = 1"
        sql += " ORDER BY eqp_id, id"
        return [Instrument.from_row(r) for r in self.conn.execute(sql).fetchall()]

    def get_instrument(self, instrument_id: str) -> Instrument | None:
        """Return Instrument model or None if not found."""
        row = self.conn.execute(
            "SELECT * FROM instruments WHERE id = ?", (instrument_id,)
        ).fetchone()
        return Instrument.from_row(row) if row else None

    def add_instrument(self, instrument: Instrument) -> str:
        data = instrument.to_dict()
        if not data.get("id"):
            data["id"] = new_id()
        self.conn.execute(
            """
            INSERT INTO instruments (
                id, eqp_id, instrument_type, make, model, serial_number, location,
                status, maintenance_type, frequency, schedule_date,
                next_maintenance_date, maintenance_by, vendor_name, vendor_contact,
                template_id, is_active, created_at, updated_at
            ) VALUES (
                :id, :eqp_id, :instrument_type, :make, :model, :serial_number, :location,
                :status, :maintenance_type, :frequency, :schedule_date,
                :next_maintenance_date, :maintenance_by, :vendor_name, :vendor_contact,
                :template_id, :is_active, datetime('now'), datetime('now')
            )
            """,
            data,
        )
        self.log_audit("instrument", data["id"], "create", new_value=str(instrument))
        return data["id"]

    def update_instrument(self, instrument: Instrument, expected_updated_at: str | None = None) -> None:
        """
        Update descriptive and schedule fields. next_maintenance_date is
        written separately by set_next_maintenance_date.
        Raises StaleDataError if expected_updated_at no longer matches.
        """
        old = self.get_instrument(instrument.id)
        data = instrument.to_dict()
        sql = """
            UPDATE instruments
            SET eqp_id           = :eqp_id,
                instrument_type  = :instrument_type,
                make             = :make,
                model            = :model,
                serial_number    = :serial_number,
                location         = :location,
                status           = :status,
                maintenance_type = :maintenance_type,
                frequency        = :frequency,
                schedule_date    = :schedule_date,
                maintenance_by   = :maintenance_by,
                vendor_name      = :vendor_name,
                vendor_contact   = :vendor_contact,
                template_id      = :template_id,
                is_active        = :is_active,
                updated_at       = datetime('now')
            WHERE id = :id
        """
        if expected_updated_at is not None:
            sql += " AND updated_at = :expected_updated_at"
            data["expected_updated_at"] = expected_updated_at
        cur = self.conn.execute(sql, data)
        if cur.rowcount == 0:
            if old is None:
                raise KeyError(instrument.id)
            raise StaleDataError("Instrument was modified by another user. Refresh and try again.")

        # simple field-by-field audit
        watched_fields = [
            "eqp_id", "location", "status", "maintenance_type",
            "frequency", "schedule_date", "template_id", "is_active",
        ]
        old_data = old.to_dict() if old else {}
        for fld in watched_fields:
            old_val = old_data.get(fld)
            new_val = data.get(fld)
            if str(old_val) != str(new_val):
                self.log_audit(
                    "instrument", instrument.id, "update", field=fld,
                    old_value=str(old_val) if old_val is not None else None,
                    new_value=str(new_val) if new_val is not None else None,
                )

    def set_next_maintenance_date(self, instrument_id: str, next_date: date | None) -> None:
        self.conn.execute(
            "UPDATE instruments SET next_maintenance_date = ? WHERE id = ?",
            (format_date(next_date), instrument_id),
        )

    # ---------- Maintenance configurations ----------

    def list_configurations(self, instrument_id: str) -> list[MaintenanceConfiguration]:
        cur = self.conn.execute(
            "SELECT * FROM maintenance_configurations WHERE instrument_id = ? "
            "ORDER BY maintenance_type, id",
            (instrument_id,),
        )
        return [MaintenanceConfiguration.from_row(r) for r in cur.fetchall()]

    def get_configuration(self, configuration_id: str) -> MaintenanceConfiguration | None:
        row = self.conn.execute(
            "SELECT * FROM maintenance_configurations WHERE id = ?", (configuration_id,)
        ).fetchone()
        return MaintenanceConfiguration.from_row(row) if row else None

    def add_configuration(self, configuration: MaintenanceConfiguration) -> str:
        data = configuration.to_dict()
        if not data.get("id"):
            data["id"] = new_id()
        self.conn.execute(
            """
            INSERT INTO maintenance_configurations (
                id, instrument_id, maintenance_type, frequency, schedule_date,
                template_id, next_maintenance_date, created_at, updated_at
            ) VALUES (
                :id, :instrument_id, :maintenance_type, :frequency, :schedule_date,
                :template_id, :next_maintenance_date, datetime('now'), datetime('now')
            )
            """,
            data,
        )
        self.log_audit(
            "instrument", configuration.instrument_id, "add_configuration",
            field="maintenance_type", new_value=configuration.maintenance_type,
        )
        return data["id"]

    def update_configuration(self, configuration: MaintenanceConfiguration) -> None:
        old = self.get_configuration(configuration.id)
        if old is None:
            raise KeyError(configuration.id)
        self.conn.execute(
            """
            UPDATE maintenance_configurations
            SET maintenance_type = :maintenance_type,
                frequency        = :frequency,
                schedule_date    = :schedule_date,
                template_id      = :template_id,
                updated_at       = datetime('now')
            WHERE id = :id
            """,
            configuration.to_dict(),
        )
        self.log_audit(
            "instrument", configuration.instrument_id, "update_configuration",
            field=configuration.maintenance_type,
            old_value=f"{old.schedule_date} / {old.frequency.value if old.frequency else None}",
            new_value=f"{configuration.schedule_date} / "
                      f"{configuration.frequency.value if configuration.frequency else None}",
        )

    def delete_configuration(self, configuration_id: str) -> None:
        old = self.get_configuration(configuration_id)
        if old is None:
            return
        self.conn.execute("DELETE FROM maintenance_configurations WHERE id = ?", (configuration_id,))
        self.log_audit(
            "instrument", old.instrument_id, "remove_configuration",
            field="maintenance_type", old_value=old.maintenance_type,
        )

    def set_configuration_next_date(self, configuration_id: str, next_date: date | None) -> None:
        self.conn.execute(
            "UPDATE maintenance_configurations SET next_maintenance_date = ? WHERE id = ?",
            (format_date(next_date), configuration_id),
        )

    # ---------- Maintenance events ----------

    def insert_event_if_absent(self, instrument_id: str, maintenance_type: str, due: date,
                               description: str = "", template_id: str | None = None) -> bool:
        """
        Materialize one cycle. Returns True if a row was created, False if an
        event for (instrument, type, due date) already existed.
        """
        cur = self.conn.execute(
            """
            INSERT OR IGNORE INTO maintenance_events
                (id, instrument_id, due_date, type, description, status, template_id)
            VALUES (?, ?, ?, ?, ?, 'Scheduled', ?)
            """,
            (new_id(), instrument_id, due.isoformat(), maintenance_type, description, template_id),
        )
        return cur.rowcount == 1

    def get_event(self, event_id: str) -> MaintenanceEvent | None:
        row = self.conn.execute(
            "SELECT * FROM maintenance_events WHERE id = ?", (event_id,)
        ).fetchone()
        return MaintenanceEvent.from_row(row) if row else None

    def find_event(self, instrument_id: str, maintenance_type: str, due: date) -> MaintenanceEvent | None:
        row = self.conn.execute(
            "SELECT * FROM maintenance_events WHERE instrument_id = ? AND type = ? AND due_date = ?",
            (instrument_id, maintenance_type, due.isoformat()),
        ).fetchone()
        return MaintenanceEvent.from_row(row) if row else None

    def list_events_for_instrument(self, instrument_id: str,
                                   include_superseded: bool = False) -> list[MaintenanceEvent]:
        sql = "SELECT * FROM maintenance_events WHERE instrument_id = ?"
        if not include_superseded:
            sql += " AND superseded_at IS NULL"
        sql += " ORDER BY due_date ASC, id ASC"
        return [MaintenanceEvent.from_row(r) for r in self.conn.execute(sql, (instrument_id,)).fetchall()]

    def list_open_events(self) -> list[MaintenanceEvent]:
        """Events not yet completed and not superseded, for active instruments."""
        cur = self.conn.execute(
            """
            SELECT e.*
            FROM maintenance_events e
            JOIN instruments i ON i.id = e.instrument_id
            WHERE e.status != 'Completed'
              AND e.superseded_at IS NULL
              AND i.is_active = 1
            ORDER BY e.due_date ASC, i.eqp_id ASC, e.id ASC
            """
        )
        return [MaintenanceEvent.from_row(r) for r in cur.fetchall()]

    def list_events_due_between(self, start: date, end: date) -> list[MaintenanceEvent]:
        cur = self.conn.execute(
            """
            SELECT * FROM maintenance_events
            WHERE due_date >= ? AND due_date <= ?
              AND superseded_at IS NULL
            ORDER BY due_date ASC, id ASC
            """,
            (start.isoformat(), end.isoformat()),
        )
        return [MaintenanceEvent.from_row(r) for r in cur.fetchall()]

    def count_completed_events(self, instrument_id: str, maintenance_type: str) -> int:
        row = self.conn.execute(
            """
            SELECT COUNT(*) AS c FROM maintenance_events
            WHERE instrument_id = ? AND type = ? AND status = 'Completed'
            """,
            (instrument_id, maintenance_type),
        ).fetchone()
        return int(row["c"])

    def start_event(self, event_id: str) -> None:
        """Scheduled -> In Progress. Raises StaleDataError if the event is no longer Scheduled."""
        cur = self.conn.execute(
            """
            UPDATE maintenance_events
            SET status = 'In Progress', started_at = datetime('now')
            WHERE id = ? AND status = 'Scheduled'
            """,
            (event_id,),
        )
        if cur.rowcount == 0:
            raise StaleDataError("Maintenance event is not in Scheduled state. Refresh and try again.")
        self.log_audit("event", event_id, "start", field="status", new_value=EventStatus.IN_PROGRESS.value)

    def complete_event(self, event_id: str, completed_date: date, notes: str = "") -> None:
        """
        Compare-and-set completion: only succeeds if the event is not already
        Completed. Raises StaleDataError otherwise.
        """
        cur = self.conn.execute(
            """
            UPDATE maintenance_events
            SET status = 'Completed', completed_date = ?, completion_notes = ?
            WHERE id = ? AND status != 'Completed'
            """,
            (completed_date.isoformat(), notes or "", event_id),
        )
        if cur.rowcount == 0:
            raise StaleDataError("Maintenance event was already completed. Refresh and try again.")
        self.log_audit("event", event_id, "complete", field="completed_date",
                       new_value=completed_date.isoformat())

    def supersede_events(self, event_ids: list[str], reason: str | None = None) -> int:
        count = 0
        for event_id in event_ids:
            cur = self.conn.execute(
                """
                UPDATE maintenance_events SET superseded_at = datetime('now')
                WHERE id = ? AND status = 'Scheduled' AND superseded_at IS NULL
                """,
                (event_id,),
            )
            if cur.rowcount:
                count += 1
                self.log_audit("event", event_id, "supersede", reason=reason)
        return count

    def restore_events(self, event_ids: list[str]) -> int:
        count = 0
        for event_id in event_ids:
            cur = self.conn.execute(
                """
                UPDATE maintenance_events SET superseded_at = NULL
                WHERE id = ? AND superseded_at IS NOT NULL AND status != 'Completed'
                """,
                (event_id,),
            )
            count += cur.rowcount
        return count

    # ---------- Results ----------

    def insert_result(self, result: MaintenanceResult) -> str:
        result_id = result.id or new_id()
        self.conn.execute(
            """
            INSERT INTO maintenance_results
                (id, event_id, instrument_id, result_type, completed_date, notes,
                 document_url, template_id, test_data, recorded_by)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                result_id, result.event_id, result.instrument_id, result.result_type.value,
                result.completed_date.isoformat(), result.notes, result.document_url,
                result.template_id,
                sections_to_json(result.test_data) if result.test_data else None,
                result.recorded_by,
            ),
        )
        self.log_audit(
            "result", result_id, "create",
            new_value=f"event_id={result.event_id}, result_type={result.result_type.value}",
        )
        return result_id

    def get_result(self, result_id: str) -> MaintenanceResult | None:
        row = self.conn.execute(
            "SELECT * FROM maintenance_results WHERE id = ?", (result_id,)
        ).fetchone()
        return MaintenanceResult.from_row(row) if row else None

    def get_result_for_event(self, event_id: str) -> MaintenanceResult | None:
        row = self.conn.execute(
            "SELECT * FROM maintenance_results WHERE event_id = ?", (event_id,)
        ).fetchone()
        return MaintenanceResult.from_row(row) if row else None

    def list_results_for_instrument(self, instrument_id: str) -> list[MaintenanceResult]:
        cur = self.conn.execute(
            """
            SELECT * FROM maintenance_results
            WHERE instrument_id = ?
            ORDER BY completed_date DESC, created_at DESC
            """,
            (instrument_id,),
        )
        return [MaintenanceResult.from_row(r) for r in cur.fetchall()]

    def list_results_completed_between(self, start: date, end: date) -> list[MaintenanceResult]:
        cur = self.conn.execute(
            """
            SELECT * FROM maintenance_results
            WHERE completed_date >= ? AND completed_date <= ?
            ORDER BY completed_date ASC
            """,
            (start.isoformat(), end.isoformat()),
        )
        return [MaintenanceResult.from_row(r) for r in cur.fetchall()]

    # ---------- Templates ----------

    def list_templates(self) -> list[TestTemplate]:
        cur = self.conn.execute("SELECT * FROM test_templates ORDER BY name, id")
        return [TestTemplate.from_row(r) for r in cur.fetchall()]

    def get_template(self, template_id: str) -> TestTemplate | None:
        row = self.conn.execute(
            "SELECT * FROM test_templates WHERE id = ?", (template_id,)
        ).fetchone()
        return TestTemplate.from_row(row) if row else None

    def create_template(self, name: str, description: str, structure: list[TestSection]) -> str:
        template_id = new_id()
        self.conn.execute(
            "INSERT INTO test_templates (id, name, description, structure) VALUES (?, ?, ?, ?)",
            (template_id, name, description, sections_to_json(structure)),
        )
        self.log_audit("template", template_id, "create", new_value=name)
        return template_id

    def update_template(self, template_id: str, name: str, description: str,
                        structure: list[TestSection]) -> None:
        cur = self.conn.execute(
            """
            UPDATE test_templates
            SET name = ?, description = ?, structure = ?, updated_at = datetime('now')
            WHERE id = ?
            """,
            (name, description, sections_to_json(structure), template_id),
        )
        if cur.rowcount == 0:
            raise KeyError(template_id)
        self.log_audit("template", template_id, "update", new_value=name)

    def delete_template(self, template_id: str) -> None:
        # refuse delete if results reference it
        c = self.conn.execute(
            "SELECT COUNT(*) AS c FROM maintenance_results WHERE template_id = ?",
            (template_id,),
        ).fetchone()["c"]
        if c > 0:
            raise ValueError(f"Cannot delete template; {c} maintenance result(s) are using it.")
        self.conn.execute("DELETE FROM test_templates WHERE id = ?", (template_id,))
        self.log_audit("template", template_id, "delete")

    # ---------- Profiles ----------

    def get_profile(self, user_id: str) -> UserProfile | None:
        row = self.conn.execute("SELECT * FROM profiles WHERE id = ?", (user_id,)).fetchone()
        return UserProfile.from_row(row) if row else None

    def list_profiles(self) -> list[UserProfile]:
        cur = self.conn.execute("SELECT * FROM profiles ORDER BY display_name, id")
        return [UserProfile.from_row(r) for r in cur.fetchall()]

    def upsert_profile(self, profile: UserProfile) -> None:
        self.conn.execute(
            """
            INSERT INTO profiles (id, display_name, role, is_super_admin, permissions)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                display_name   = excluded.display_name,
                role           = excluded.role,
                is_super_admin = excluded.is_super_admin,
                permissions    = excluded.permissions,
                updated_at     = datetime('now')
            """,
            (profile.id, profile.display_name, profile.role.value,
             1 if profile.is_super_admin else 0, profile.permissions.to_json()),
        )
        self.log_audit("profile", profile.id, "upsert",
                       new_value=json.dumps({"role": profile.role.value, **profile.permissions.to_dict()}))

    def set_profile_access(self, user_id: str, role: str, permissions: UserPermissions) -> None:
        cur = self.conn.execute(
            """
            UPDATE profiles SET role = ?, permissions = ?, updated_at = datetime('now')
            WHERE id = ?
            """,
            (role, permissions.to_json(), user_id),
        )
        if cur.rowcount == 0:
            raise KeyError(user_id)
        self.log_audit("profile", user_id, "set_access", new_value=permissions.to_json())

    def delete_profile(self, user_id: str) -> None:
        self.conn.execute("DELETE FROM profiles WHERE id = ?", (user_id,))
        self.log_audit("profile", user_id, "delete")
