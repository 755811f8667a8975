"""
Permission checks for dispatch operations.
"""
from typing import Optional

from ..config import settings


def normalize_role(role: Optional[str]) -> Optional[str]:
    if not role or not role.strip():
        return None
    return role.strip().lower()


def can_override_geofence(role: Optional[str]) -> bool:
    """
    Check if an actor role may bypass the geofence and accuracy checks.
    Allowed roles come from GEO_OVERRIDE_ROLES (supervisor and admin by default).
    """
    role = normalize_role(role)
    if role is None:
        return False
    return role in settings.override_roles
