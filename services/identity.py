# services/identity.py - Caller identity for permission checks
#
# A Caller is resolved from the profiles table for every gated operation.
# Users without a profile row get the least-privilege defaults.

from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from domain.models import Role, UserPermissions
from permission_service import DEFAULT_PERMISSIONS

if TYPE_CHECKING:
    from database import MaintenanceRepository


@dataclass(frozen=True)
class Caller:
    user_id: str
    role: Role = Role.USER
    is_super_admin: bool = False
    permissions: UserPermissions = field(default_factory=lambda: DEFAULT_PERMISSIONS)
    display_name: str = ""


def resolve_caller(repo: "MaintenanceRepository", user_id: str) -> Caller:
    """Current permissions for user_id. Missing profile -> default permissions."""
    profile = repo.get_profile(user_id)
    if profile is None:
        return Caller(user_id=user_id)
    return Caller(
        user_id=profile.id,
        role=profile.role,
        is_super_admin=profile.is_super_admin,
        permissions=profile.permissions,
        display_name=profile.display_name,
    )


def get_current_user_id(repo=None) -> str:
    """
    Local operator name from settings, or "local" if unavailable.
    Used by the headless CLI, which has no login.
    """
    if repo is None:
        return "local"
    name = repo.get_setting("operator_name", "")
    return (name or "").strip() or "local"
