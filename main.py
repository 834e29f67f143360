# main.py

import argparse
import sqlite3
import sys
from datetime import date
from pathlib import Path

from config import load_app_config
from crash_log import install_global_excepthook, log_current_exception, logger, setup_logging
from database import MaintenanceRepository, get_connection, initialize_db, run_integrity_check
from pdf_export import export_maintenance_summary_to_pdf, export_result_to_pdf
from services.clock import FixedClock, SystemClock
from services.identity import get_current_user_id
from services.maintenance_service import MaintenanceService
from services.settings_service import get_horizon_days


def _parse_today(value: str) -> date:
    try:
        return date.fromisoformat(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"Expected YYYY-MM-DD, got {value!r}") from None


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Maintenance Tracker (headless scheduling and report mode)"
    )
    parser.add_argument(
        "--db",
        type=str,
        default=None,
        help="Path to SQLite database (overrides MAINTENANCE_TRACKER_DB_PATH and config.json)",
    )
    parser.add_argument(
        "--today",
        type=_parse_today,
        default=None,
        help="Treat this date (YYYY-MM-DD) as today.",
    )
    parser.add_argument(
        "--materialize",
        action="store_true",
        help="Create maintenance events for every cycle that has come due, then exit.",
    )
    parser.add_argument(
        "--due-report",
        action="store_true",
        help="Print overdue, in-progress and upcoming maintenance.",
    )
    parser.add_argument(
        "--export-summary",
        metavar="PATH",
        default=None,
        help="Write the due/overdue summary with completion chart to a PDF.",
    )
    parser.add_argument(
        "--export-result",
        nargs=2,
        metavar=("RESULT_ID", "PATH"),
        default=None,
        help="Write one maintenance result to a PDF.",
    )
    return parser


def _print_due_report(report) -> None:
    print(f"Maintenance due as of {report.as_of.isoformat()}")
    for title, views in (
        ("Overdue", report.overdue),
        ("In Progress", report.in_progress),
        ("Scheduled", report.scheduled),
    ):
        print(f"\n{title} ({len(views)})")
        for v in views:
            print(f"  {v.event.due_date.isoformat()}  {v.instrument.eqp_id:<16} {v.event.type:<26} {v.days_until_due:+d}d")
    if report.unscheduled:
        print(f"\nUnscheduled ({len(report.unscheduled)})")
        for i in report.unscheduled:
            print(f"  {i.eqp_id}")


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    config = load_app_config()
    setup_logging(config.log_dir)
    # Install global hook so any uncaught exception is logged
    install_global_excepthook()

    db_path = Path(args.db) if args.db else config.db_path
    logger.info("Program start. args=%s db=%s", sys.argv, db_path)

    try:
        try:
            conn = get_connection(db_path)
            conn = initialize_db(conn, db_path)
        except sqlite3.OperationalError as e:
            logger.error("Database not usable: %s", e)
            print(str(e), file=sys.stderr)
            return 1
        # Integrity check: fail fast if database is corrupt
        integrity_err = run_integrity_check(conn)
        if integrity_err:
            logger.error("Database integrity check failed: %s", integrity_err)
            print(f"Database integrity check failed: {integrity_err}", file=sys.stderr)
            return 1

        repo = MaintenanceRepository(conn)
        repo.actor = get_current_user_id(repo)
        clock = FixedClock(args.today) if args.today else SystemClock()
        horizon = get_horizon_days(repo, default=config.horizon_days)
        service = MaintenanceService(repo, clock, horizon_days=horizon)
        today = clock.today()

        if args.materialize:
            report = service.materialize_all(today)
            msg = (
                f"Materialized {report.created} event(s); {report.skipped} already existed; "
                f"{len(report.unscheduled)} instrument(s) unscheduled."
            )
            print(msg)
            logger.info(msg)

        if args.due_report:
            _print_due_report(service.get_due_and_overdue(today).value)

        if args.export_summary:
            export_maintenance_summary_to_pdf(repo, args.export_summary, today, horizon_days=horizon)
            logger.info("Summary exported to %s", args.export_summary)
            print(f"Summary written to {args.export_summary}")

        if args.export_result:
            result_id, out_path = args.export_result
            try:
                export_result_to_pdf(repo, result_id, out_path)
            except ValueError as e:
                print(str(e), file=sys.stderr)
                return 1
            logger.info("Result %s exported to %s", result_id, out_path)
            print(f"Result written to {out_path}")

        conn.close()
        logger.info("Program exit normally")
        return 0

    except RuntimeError as e:
        err_msg = str(e).lower()
        if "migration" in err_msg or "schema" in err_msg:
            log_current_exception("Migration/schema error in main()")
            print(str(e), file=sys.stderr)
            return 1
        raise
    except Exception:
        # This catches top-level failures during startup / shutdown
        log_current_exception("Fatal error in main()")
        raise


if __name__ == "__main__":
    sys.exit(main())
