"""
AgencyDesk CRM - Routes Auth
Session validation for the quote API. Login/signup live in the main CRM:
this backend only reads the sessions and users it created.
"""

from fastapi import APIRouter, Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from config import get_db, now_iso
from services.permissions import get_preset_permissions

router = APIRouter(prefix="/auth", tags=["Auth"])
security = HTTPBearer(auto_error=False)


# ==================== HELPERS ====================

async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    db=Depends(get_db),
):
    """Resolve the logged-in user from the bearer token."""
    if not credentials:
        raise HTTPException(status_code=401, detail="Not authenticated")

    token = credentials.credentials
    session = await db.sessions.find_one({
        "token": token,
        "expires_at": {"$gt": now_iso()}
    })

    if not session:
        raise HTTPException(status_code=401, detail="Session expired")

    user = await db.users.find_one(
        {"id": session["user_id"]},
        {"_id": 0, "password": 0}
    )

    if not user:
        raise HTTPException(status_code=401, detail="User not found")

    if not user.get("is_active", True):
        raise HTTPException(status_code=403, detail="Account disabled")

    # Users created before permissions existed get their role preset
    if not user.get("permissions"):
        user["permissions"] = get_preset_permissions(user.get("role", "client"))

    return user


# ==================== SESSION ====================

@router.get("/me")
async def get_me(user: dict = Depends(get_current_user)):
    """Returns user + permissions."""
    return user
