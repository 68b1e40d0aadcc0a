"""
╔══════════════════════════════════════════════════════════════════════════════╗
║  AgencyDesk CRM - Routes Quotes (agency side)                                ║
║                                                                              ║
║  CRUD for quotes + send by email + PDF download                              ║
║  Multi-tenant strict: every query is filtered by the user's agency_id        ║
║                                                                              ║
║  Status is never written here: see services.quote_state_machine              ║
╚══════════════════════════════════════════════════════════════════════════════╝
"""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Response

from config import get_db
from email_service import EmailService, get_email_service
from models.quote import QuoteCreate, QuoteListResponse, QuoteSendRequest, QuoteStatus, QuoteUpdate
from services import quote_builder, quote_delivery
from services.event_logger import list_events
from services.permissions import get_agency_scope, require_permission

router = APIRouter(prefix="/quotes", tags=["Quotes"])

VALID_STATUS_FILTERS = [s.value for s in QuoteStatus]


@router.post("", status_code=201)
async def create_quote(
    data: QuoteCreate,
    user: dict = Depends(require_permission("quotes.manage")),
    db=Depends(get_db),
):
    """Create a draft quote. Totals are computed server-side."""
    return await quote_builder.create_quote(db, get_agency_scope(user), data, created_by=user.get("email"))


@router.get("")
async def list_quotes(
    status: Optional[str] = Query(None, description="draft | sent | approved | rejected | expired"),
    recipient_id: Optional[str] = Query(None, description="Filter by client / lead"),
    limit: int = Query(100, ge=1, le=500),
    skip: int = Query(0, ge=0),
    user: dict = Depends(require_permission("quotes.view")),
    db=Depends(get_db),
):
    if status and status not in VALID_STATUS_FILTERS:
        raise HTTPException(status_code=400, detail=f"Invalid status. Allowed: {VALID_STATUS_FILTERS}")

    quotes = await quote_builder.list_quotes(
        db, get_agency_scope(user), status=status, recipient_id=recipient_id, limit=limit, skip=skip
    )
    return QuoteListResponse(quotes=quotes, count=len(quotes))


@router.get("/{quote_id}")
async def get_quote(
    quote_id: str,
    user: dict = Depends(require_permission("quotes.view")),
    db=Depends(get_db),
):
    return await quote_builder.get_quote(db, get_agency_scope(user), quote_id)


@router.get("/{quote_id}/events")
async def get_quote_events(
    quote_id: str,
    user: dict = Depends(require_permission("quotes.view")),
    db=Depends(get_db),
):
    """Audit trail (created, sent, viewed, approved...), oldest first."""
    quote = await quote_builder.get_quote(db, get_agency_scope(user), quote_id)
    events = await list_events(db, quote["id"])
    return {"events": events, "count": len(events)}


@router.put("/{quote_id}")
async def update_quote(
    quote_id: str,
    data: QuoteUpdate,
    user: dict = Depends(require_permission("quotes.manage")),
    db=Depends(get_db),
):
    """Drafts only (409 once sent)."""
    return await quote_builder.update_quote(db, get_agency_scope(user), quote_id, data, updated_by=user.get("email"))


@router.delete("/{quote_id}")
async def delete_quote(
    quote_id: str,
    user: dict = Depends(require_permission("quotes.manage")),
    db=Depends(get_db),
):
    await quote_builder.delete_quote(db, get_agency_scope(user), quote_id, deleted_by=user.get("email"))
    return {"success": True}


@router.post("/{quote_id}/duplicate", status_code=201)
async def duplicate_quote(
    quote_id: str,
    user: dict = Depends(require_permission("quotes.manage")),
    db=Depends(get_db),
):
    return await quote_builder.duplicate_quote(db, get_agency_scope(user), quote_id, created_by=user.get("email"))


# ==================== DELIVERY ====================

@router.post("/{quote_id}/send-email")
async def send_quote_email(
    quote_id: str,
    data: Optional[QuoteSendRequest] = None,
    user: dict = Depends(require_permission("quotes.send")),
    db=Depends(get_db),
    email_service: EmailService = Depends(get_email_service),
):
    """
    Render + email + mark sent.
    On a transport failure the quote keeps its status (502).
    """
    quote = await quote_delivery.send_quote(
        db, get_agency_scope(user), quote_id, data or QuoteSendRequest(), email_service, sent_by=user.get("email")
    )
    return {"success": True, "quote": quote}


@router.post("/{quote_id}/mark-sent")
async def mark_quote_sent(
    quote_id: str,
    user: dict = Depends(require_permission("quotes.send")),
    db=Depends(get_db),
):
    """Manual fallback when the quote was delivered outside the system."""
    quote = await quote_delivery.mark_sent(db, get_agency_scope(user), quote_id, sent_by=user.get("email"))
    return {"success": True, "quote": quote}


@router.get("/{quote_id}/pdf")
async def download_quote_pdf(
    quote_id: str,
    user: dict = Depends(require_permission("quotes.view")),
    db=Depends(get_db),
):
    quote = await quote_builder.get_quote(db, get_agency_scope(user), quote_id)
    pdf = await quote_delivery.build_quote_pdf(db, quote)
    return Response(
        content=pdf,
        media_type="application/pdf",
        headers={"Content-Disposition": f'attachment; filename="{quote_delivery.pdf_filename(quote)}"'},
    )
