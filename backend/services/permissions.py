"""
AgencyDesk CRM - Permission System
Granular permission keys + role presets + FastAPI dependencies.
Permissions are the source of truth. Roles are presets only.
"""

import logging
from typing import Dict

from fastapi import Depends, HTTPException

logger = logging.getLogger("permissions")

# ════════════════════════════════════════════════════════════════════════
# ALL PERMISSION KEYS
# ════════════════════════════════════════════════════════════════════════

ALL_PERMISSION_KEYS = [
    "quotes.view",
    "quotes.manage",   # create / edit / delete / duplicate drafts
    "quotes.send",     # email or mark sent

    "settings.access",  # agency PDF template & colour
]

# ════════════════════════════════════════════════════════════════════════
# ROLE PRESETS (defaults when a user has no explicit permissions)
# ════════════════════════════════════════════════════════════════════════

ROLE_PRESETS: Dict[str, Dict[str, bool]] = {
    "super_admin": {k: True for k in ALL_PERMISSION_KEYS},

    "agency_admin": {k: True for k in ALL_PERMISSION_KEYS},

    "team_member": {
        "quotes.view": True, "quotes.manage": True, "quotes.send": True,
        "settings.access": False,
    },

    "client": {
        "quotes.view": False, "quotes.manage": False, "quotes.send": False,
        "settings.access": False,
    },
}


def get_preset_permissions(role: str) -> Dict[str, bool]:
    """Returns the default permissions for a role."""
    return dict(ROLE_PRESETS.get(role, ROLE_PRESETS["client"]))


# ════════════════════════════════════════════════════════════════════════
# PERMISSION CHECK HELPERS
# ════════════════════════════════════════════════════════════════════════

def user_has_permission(user: dict, key: str) -> bool:
    """Check if user has a specific permission."""
    if user.get("role") == "super_admin":
        return True
    perms = user.get("permissions", {})
    return perms.get(key, False) is True


def get_agency_scope(user: dict) -> str:
    """Every agency read/write is scoped to the user's own agency."""
    agency_id = user.get("agency_id")
    if not agency_id:
        raise HTTPException(status_code=403, detail="User is not attached to an agency")
    return agency_id


# ════════════════════════════════════════════════════════════════════════
# FASTAPI DEPENDENCIES
# ════════════════════════════════════════════════════════════════════════

def require_permission(permission_key: str):
    """
    FastAPI dependency factory.
    Usage: user: dict = Depends(require_permission("quotes.view"))
    """
    from routes.auth import get_current_user

    async def _check(user: dict = Depends(get_current_user)):
        if not user_has_permission(user, permission_key):
            logger.warning(
                f"[PERMISSION_DENIED] user={user.get('email')} "
                f"key={permission_key} role={user.get('role')}"
            )
            raise HTTPException(
                status_code=403,
                detail=f"Permission required: {permission_key}"
            )
        return user

    return _check
