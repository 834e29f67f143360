# migrations.py
# Schema versioning and migrations for Maintenance Tracker.
# Run after core schema creation; migrations are applied in order.

import logging
import sqlite3
import time
from pathlib import Path

logger = logging.getLogger(__name__)

SCHEMA_VERSION_TABLE = "schema_version"
CURRENT_SCHEMA_VERSION = 4


def get_schema_version(conn: sqlite3.Connection) -> int:
    """Return current schema version (0 if table or row missing)."""
    cur = conn.execute(
        "SELECT name FROM sqlite_master WHERE type='table' AND name=?",
        (SCHEMA_VERSION_TABLE,),
    )
    if cur.fetchone() is None:
        return 0
    cur = conn.execute(f"SELECT MAX(version) AS v FROM {SCHEMA_VERSION_TABLE}")
    row = cur.fetchone()
    if row is None or row[0] is None:
        return 0
    return int(row[0])


def set_schema_version(conn: sqlite3.Connection, version: int) -> None:
    """Set schema version (replaces any existing row)."""
    conn.execute(f"DELETE FROM {SCHEMA_VERSION_TABLE}")
    conn.execute(f"INSERT INTO {SCHEMA_VERSION_TABLE} (version) VALUES (?)", (version,))


def _has_column(cur: sqlite3.Cursor, table: str, column: str) -> bool:
    cur.execute(f"PRAGMA table_info({table})")
    return any(r[1] == column for r in cur.fetchall())


def migrate_1_instrument_vendor_fields(conn: sqlite3.Connection) -> None:
    """Add maintenance_by and vendor details to instruments (internal vs. external servicing)."""
    cur = conn.cursor()
    if not _has_column(cur, "instruments", "maintenance_by"):
        cur.execute(
            "ALTER TABLE instruments ADD COLUMN maintenance_by TEXT NOT NULL DEFAULT 'internal' "
            "CHECK (maintenance_by IN ('internal', 'vendor'))"
        )
    if not _has_column(cur, "instruments", "vendor_name"):
        cur.execute("ALTER TABLE instruments ADD COLUMN vendor_name TEXT")
    if not _has_column(cur, "instruments", "vendor_contact"):
        cur.execute("ALTER TABLE instruments ADD COLUMN vendor_contact TEXT")
    logger.info("Migration 1 applied: instrument vendor fields")


def migrate_2_event_superseded_at(conn: sqlite3.Connection) -> None:
    """
    Add superseded_at to maintenance_events. A reschedule marks pending
    off-grid events instead of deleting them.
    """
    cur = conn.cursor()
    if not _has_column(cur, "maintenance_events", "superseded_at"):
        cur.execute("ALTER TABLE maintenance_events ADD COLUMN superseded_at TEXT")
    cur.execute(
        "CREATE INDEX IF NOT EXISTS idx_events_open "
        "ON maintenance_events(instrument_id, status, superseded_at)"
    )
    logger.info("Migration 2 applied: maintenance_events.superseded_at")


def migrate_3_audit_lookup_by_time(conn: sqlite3.Connection) -> None:
    """Index audit_log by timestamp for history views and exports."""
    conn.execute("CREATE INDEX IF NOT EXISTS idx_audit_log_ts ON audit_log(ts)")
    logger.info("Migration 3 applied: audit_log timestamp index")


def migrate_4_maintenance_configurations(conn: sqlite3.Connection) -> None:
    """
    Add maintenance_configurations: further schedules per instrument, one
    per maintenance type, beside the schedule held on the instrument row.
    """
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS maintenance_configurations (
            id                    TEXT PRIMARY KEY,
            instrument_id         TEXT NOT NULL,
            maintenance_type      TEXT NOT NULL,
            frequency             TEXT NOT NULL CHECK (frequency IN
                                  ('Weekly', 'Monthly', '3 Months', '6 Months', '1 Year')),
            schedule_date         TEXT NOT NULL,
            template_id           TEXT,
            next_maintenance_date TEXT,
            created_at            TEXT DEFAULT (datetime('now')),
            updated_at            TEXT DEFAULT (datetime('now')),
            FOREIGN KEY(instrument_id) REFERENCES instruments(id) ON DELETE CASCADE,
            FOREIGN KEY(template_id) REFERENCES test_templates(id) ON DELETE SET NULL
        )
        """
    )
    conn.execute(
        "CREATE UNIQUE INDEX IF NOT EXISTS ux_configurations_type "
        "ON maintenance_configurations(instrument_id, maintenance_type)"
    )
    logger.info("Migration 4 applied: maintenance_configurations")


MIGRATIONS = [
    (1, migrate_1_instrument_vendor_fields),
    (2, migrate_2_event_superseded_at),
    (3, migrate_3_audit_lookup_by_time),
    (4, migrate_4_maintenance_configurations),
]


def _migration_lock_path(db_path) -> Path | None:
    """Path to advisory lock file next to the database."""
    if db_path is None:
        return None
    return Path(db_path).parent / ".migrating"


def run_migrations(conn: sqlite3.Connection, db_path=None) -> None:
    """Run all pending migrations in order. Uses advisory lock file to prevent concurrent migration."""
    lock_path = _migration_lock_path(db_path)
    if lock_path:
        # Wait briefly if another process is migrating
        for _ in range(30):
            if not lock_path.exists():
                break
            time.sleep(0.2)
        if lock_path.exists():
            raise RuntimeError(
                "Another process appears to be running migrations. "
                "Wait for it to finish or remove the .migrating file if it crashed."
            )
        try:
            lock_path.write_text(str(time.time()), encoding="utf-8")
        except OSError:
            pass

    try:
        _run_migrations_impl(conn)
    finally:
        if lock_path and lock_path.exists():
            try:
                lock_path.unlink()
            except OSError:
                pass


def _run_migrations_impl(conn: sqlite3.Connection) -> None:
    """Internal: run migrations without lock. Each step commits with its version bump."""
    version = get_schema_version(conn)
    for target, migrate in MIGRATIONS:
        if version >= target:
            continue
        conn.execute("BEGIN IMMEDIATE")
        try:
            migrate(conn)
            set_schema_version(conn, target)
        except Exception:
            conn.execute("ROLLBACK")
            raise
        conn.execute("COMMIT")
        version = target
