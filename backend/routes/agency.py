"""
AgencyDesk CRM - Routes Agency settings
PDF template + accent colour of the current user's agency.
"""

from fastapi import APIRouter, Depends, HTTPException

from config import get_db, now_iso
from models.agency import AgencyBranding, PdfSettingsUpdate
from services.event_logger import log_event
from services.permissions import get_agency_scope, require_permission

router = APIRouter(prefix="/agencies", tags=["Agency"])


def _pdf_settings(agency: dict) -> dict:
    branding = AgencyBranding.from_document(agency)
    return {"pdf_template": branding.pdf_template, "pdf_color": branding.pdf_color}


@router.get("/current/pdf-settings")
async def get_pdf_settings(
    user: dict = Depends(require_permission("quotes.view")),
    db=Depends(get_db),
):
    agency = await db.agencies.find_one({"id": get_agency_scope(user)}, {"_id": 0})
    if not agency:
        raise HTTPException(status_code=404, detail="Agency not found")
    return _pdf_settings(agency)


@router.put("/current/pdf-settings")
async def update_pdf_settings(
    data: PdfSettingsUpdate,
    user: dict = Depends(require_permission("settings.access")),
    db=Depends(get_db),
):
    agency_id = get_agency_scope(user)
    update = {k: (v.value if hasattr(v, "value") else v) for k, v in data.model_dump(exclude_none=True).items()}
    if not update:
        raise HTTPException(status_code=400, detail="Nothing to update")

    update["updated_at"] = now_iso()
    result = await db.agencies.update_one({"id": agency_id}, {"$set": update})
    if result.matched_count == 0:
        raise HTTPException(status_code=404, detail="Agency not found")

    await log_event(
        db, "pdf_settings_updated", "agency", agency_id, user=user.get("email"), agency_id=agency_id,
        details={k: v for k, v in update.items() if k != "updated_at"},
    )
    agency = await db.agencies.find_one({"id": agency_id}, {"_id": 0})
    return _pdf_settings(agency)
