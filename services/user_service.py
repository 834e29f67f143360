# services/user_service.py - User access management
#
# Thin layer over profiles. Superadmin accounts can only be changed by
# themselves; nobody can delete their own account.

import logging
from typing import TYPE_CHECKING

from domain.models import AccessLevel, Role, UserPermissions, UserProfile
from permission_service import (
    DEFAULT_PERMISSIONS,
    PermissionDenied,
    can_modify_account,
    require_permission,
)

if TYPE_CHECKING:
    from database import MaintenanceRepository
    from services.identity import Caller

logger = logging.getLogger(__name__)


def list_users(repo: "MaintenanceRepository", caller: "Caller") -> list[UserProfile]:
    require_permission(caller, "user_management", AccessLevel.VIEW)
    return repo.list_profiles()


def _target(repo: "MaintenanceRepository", caller: "Caller", user_id: str) -> UserProfile:
    require_permission(caller, "user_management", AccessLevel.EDIT)
    target = repo.get_profile(user_id)
    if target is None:
        raise ValueError(f"User {user_id} not found")
    if not can_modify_account(caller, target.id, target.is_super_admin):
        logger.warning("User %s tried to modify superadmin %s", caller.user_id, target.id)
        raise PermissionDenied(
            "user_management", AccessLevel.EDIT.value,
            "The superadmin account can only be changed by its owner",
        )
    return target


def update_user_access(
    repo: "MaintenanceRepository",
    caller: "Caller",
    user_id: str,
    role: Role | str,
    permissions: UserPermissions | dict,
) -> None:
    """
    Set a user's role and permission map. Raises ValueError for unknown
    roles, feature keys or levels; PermissionDenied as above.
    """
    target = _target(repo, caller, user_id)
    role = Role(role)
    if not isinstance(permissions, UserPermissions):
        permissions = UserPermissions.from_mapping(permissions)
    with repo.transaction():
        repo.set_profile_access(target.id, role.value, permissions)
    logger.info("Access for %s updated by %s", target.id, caller.user_id)


def delete_user(repo: "MaintenanceRepository", caller: "Caller", user_id: str) -> None:
    if caller.user_id == user_id:
        raise PermissionDenied(
            "user_management", AccessLevel.EDIT.value, "You cannot delete your own account"
        )
    target = _target(repo, caller, user_id)
    with repo.transaction():
        repo.delete_profile(target.id)
    logger.info("User %s deleted by %s", target.id, caller.user_id)


def register_profile(repo: "MaintenanceRepository", user_id: str, display_name: str = "") -> UserProfile:
    """Profile row for a newly signed-up user: role user, default permissions."""
    if repo.get_profile(user_id) is not None:
        raise ValueError(f"User {user_id} already has a profile")
    profile = UserProfile(user_id, display_name, Role.USER, False, DEFAULT_PERMISSIONS)
    with repo.transaction():
        repo.upsert_profile(profile)
    return profile
