# permission_service.py
"""
Feature access checks for the tri-state permission model.
Single source of truth for: default permissions, level ordering, superadmin
account protection. Every gated operation calls has_permission() afresh;
results are never cached across a session change.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from domain.models import FEATURE_KEYS, AccessLevel, UserPermissions

if TYPE_CHECKING:
    from services.identity import Caller

logger = logging.getLogger(__name__)

# Least-privilege default for users without a profile row
DEFAULT_PERMISSIONS = UserPermissions(
    dashboard=AccessLevel.VIEW,
    maintenance_history=AccessLevel.VIEW,
)

# Levels each stored level satisfies (edit implies view)
_GRANTS = {
    AccessLevel.HIDDEN: frozenset(),
    AccessLevel.VIEW: frozenset({AccessLevel.VIEW}),
    AccessLevel.EDIT: frozenset({AccessLevel.VIEW, AccessLevel.EDIT}),
}


class PermissionDenied(Exception):
    """Raised when a caller lacks the required level for a feature."""

    def __init__(self, feature: str, required_level: str, message: str | None = None):
        self.feature = feature
        self.required_level = required_level
        super().__init__(message or f"'{required_level}' access to '{feature}' is required")


def _coerce_level(value: Any) -> AccessLevel | None:
    if isinstance(value, AccessLevel):
        return value
    try:
        return AccessLevel(value)
    except ValueError:
        return None


def has_permission(
    permissions: UserPermissions | dict | None,
    feature: str,
    required_level: str | AccessLevel,
) -> bool:
    """
    True if the permission map grants required_level on feature.
    Fails closed: unknown features, missing entries, malformed levels and
    a None map all deny. Never raises.
    """
    if feature not in FEATURE_KEYS:
        return False
    required = _coerce_level(required_level)
    if required is None or required is AccessLevel.HIDDEN:
        return False
    if permissions is None:
        return False
    if isinstance(permissions, UserPermissions):
        granted = permissions.level_for(feature)
    else:
        granted = _coerce_level(permissions.get(feature, AccessLevel.HIDDEN.value))
        if granted is None:
            return False
    return required in _GRANTS[granted]


def require_permission(caller: "Caller", feature: str, required_level: str | AccessLevel) -> None:
    """Raise PermissionDenied unless caller holds required_level on feature."""
    if not has_permission(caller.permissions, feature, required_level):
        level = required_level.value if isinstance(required_level, AccessLevel) else str(required_level)
        logger.warning("Permission denied: user=%s feature=%s level=%s", caller.user_id, feature, level)
        raise PermissionDenied(feature, level)


def can_modify_account(caller: "Caller", target_user_id: str, target_is_super_admin: bool) -> bool:
    """
    Superadmin accounts can only be deleted, demoted or have access revoked
    by themselves. Role and superadmin flag grant nothing else.
    """
    if target_is_super_admin:
        return caller.user_id == target_user_id
    return True


def visible_features(permissions: UserPermissions | dict | None) -> list[str]:
    """Feature keys the map grants at least view on, in canonical order."""
    return [f for f in FEATURE_KEYS if has_permission(permissions, f, AccessLevel.VIEW)]
