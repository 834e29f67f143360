# config.py - Runtime configuration (DB path, horizon, log dir)
#
# Single place for loading configuration. Persistence (database.py) imports
# from here instead of defining config logic itself.

import json
import logging
import os
import sys
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

# Environment variable to override database path directly (highest priority)
DB_PATH_ENV = "MAINTENANCE_TRACKER_DB_PATH"

CONFIG_FILE_NAME = "config.json"

DEFAULT_DB_PATH = Path.home() / ".config" / "MaintenanceTracker" / "maintenance.db"

# Days ahead of "now" that upcoming cycles are materialized (0 = next cycle only)
DEFAULT_HORIZON_DAYS = 0


@dataclass(frozen=True)
class AppConfig:
    db_path: Path
    horizon_days: int = DEFAULT_HORIZON_DAYS
    log_dir: Path | None = None


def get_app_base_dir() -> Path:
    """Directory containing the app (install dir when frozen, script dir when run from source)."""
    if getattr(sys, "frozen", False):
        return Path(sys.executable).resolve().parent
    return Path(__file__).resolve().parent


def _read_config_file(base: Path) -> dict:
    config_path = base / CONFIG_FILE_NAME
    if not config_path.is_file():
        return {}
    try:
        with open(config_path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except (json.JSONDecodeError, OSError) as e:
        logger.warning("Ignoring unreadable %s: %s", config_path, e)
        return {}
    if not isinstance(data, dict):
        logger.warning("Ignoring %s: top level must be an object", config_path)
        return {}
    return data


def _resolve_path(raw, relative_to: Path) -> Path | None:
    if not raw or not isinstance(raw, str) or not raw.strip():
        return None
    p = Path(raw.strip()).expanduser()
    if not p.is_absolute():
        p = (relative_to / p).resolve()
    return p


def _parse_horizon(raw) -> int:
    if raw is None:
        return DEFAULT_HORIZON_DAYS
    try:
        value = int(raw)
    except (TypeError, ValueError):
        logger.warning("Invalid horizon_days %r in config; using %s", raw, DEFAULT_HORIZON_DAYS)
        return DEFAULT_HORIZON_DAYS
    if value < 0:
        logger.warning("Negative horizon_days %r in config; using 0", raw)
        return 0
    return value


def load_db_path(base: Path | None = None) -> Path:
    """
    Load database path from configuration.
    Order: DB_PATH_ENV > config.json > DEFAULT_DB_PATH.
    """
    base = base or get_app_base_dir()
    # 1. Environment variable (highest priority)
    env_path = os.environ.get(DB_PATH_ENV)
    if env_path and env_path.strip():
        return Path(env_path.strip()).expanduser().resolve()

    # 2. config.json
    configured = _resolve_path(_read_config_file(base).get("db_path"), base)
    if configured is not None:
        return configured

    return DEFAULT_DB_PATH


def load_app_config(base: Path | None = None) -> AppConfig:
    """Full runtime configuration. Settings stored in the database override horizon_days."""
    base = base or get_app_base_dir()
    data = _read_config_file(base)
    return AppConfig(
        db_path=load_db_path(base),
        horizon_days=_parse_horizon(data.get("horizon_days")),
        log_dir=_resolve_path(data.get("log_dir"), base),
    )
