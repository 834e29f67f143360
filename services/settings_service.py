# services/settings_service.py - Settings persistence orchestration
#
# Thin layer: validates, then delegates to repository.

from typing import TYPE_CHECKING

from config import DEFAULT_HORIZON_DAYS
from domain.models import AccessLevel
from permission_service import require_permission

if TYPE_CHECKING:
    from database import MaintenanceRepository
    from services.identity import Caller

HORIZON_DAYS_KEY = "horizon_days"
OPERATOR_NAME_KEY = "operator_name"


def set_setting(repo: "MaintenanceRepository", caller: "Caller", key: str, value: str) -> None:
    """Set a key-value setting. Requires settings:edit."""
    require_permission(caller, "settings", AccessLevel.EDIT)
    if key == HORIZON_DAYS_KEY:
        set_horizon_days(repo, caller, value)
        return
    repo.set_setting(key, value)


def get_horizon_days(repo: "MaintenanceRepository", default: int = DEFAULT_HORIZON_DAYS) -> int:
    """Stored horizon_days, or default when unset/invalid."""
    raw = repo.get_setting(HORIZON_DAYS_KEY, None)
    if raw is None:
        return default
    try:
        value = int(raw)
    except (TypeError, ValueError):
        return default
    return value if value >= 0 else default


def set_horizon_days(repo: "MaintenanceRepository", caller: "Caller", days) -> None:
    require_permission(caller, "settings", AccessLevel.EDIT)
    try:
        value = int(days)
    except (TypeError, ValueError):
        raise ValueError("horizon_days must be a whole number of days") from None
    if value < 0:
        raise ValueError("horizon_days must be >= 0")
    repo.set_setting(HORIZON_DAYS_KEY, str(value))
    repo.log_audit("setting", HORIZON_DAYS_KEY, "update", new_value=str(value), actor=caller.user_id)
