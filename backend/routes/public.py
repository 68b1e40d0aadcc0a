"""
Public routes - quote approval page
Endpoints WITHOUT authentication, addressed by the quote id:
- sanitized view + PDF
- view tracking
- approve (signature) / reject

Any unknown, malformed or draft id answers 404 "Quote not found".
"""

from typing import Optional

from fastapi import APIRouter, Depends, Request, Response

from config import TRUSTED_PROXIES, get_db
from email_service import EmailService, get_email_service
from models.quote import ApprovalRequest, QuoteView, RejectRequest
from services import quote_approval, quote_delivery

router = APIRouter(prefix="/quotes", tags=["Public quotes"])


def client_ip(request: Request) -> Optional[str]:
    """
    Socket peer, or the first X-Forwarded-For hop when the peer is one of
    TRUSTED_PROXIES. Anyone else could forge the header.
    """
    peer = request.client.host if request.client else None
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded and peer in TRUSTED_PROXIES:
        return forwarded.split(",")[0].strip()
    return peer


@router.get("/{quote_id}/public", response_model=QuoteView)
async def get_public_quote(quote_id: str, db=Depends(get_db)):
    return await quote_approval.view(db, quote_id)


@router.get("/{quote_id}/public/pdf")
async def get_public_quote_pdf(quote_id: str, db=Depends(get_db)):
    quote = await quote_approval.load_public_quote(db, quote_id)
    pdf = await quote_delivery.build_quote_pdf(db, quote)
    return Response(
        content=pdf,
        media_type="application/pdf",
        headers={"Content-Disposition": f'inline; filename="{quote_delivery.pdf_filename(quote)}"'},
    )


@router.post("/{quote_id}/track-view")
async def track_quote_view(quote_id: str, db=Depends(get_db)):
    await quote_approval.track_view(db, quote_id)
    return {"success": True}


@router.post("/{quote_id}/approve", response_model=QuoteView)
async def approve_quote(
    quote_id: str,
    data: ApprovalRequest,
    request: Request,
    db=Depends(get_db),
    email_service: EmailService = Depends(get_email_service),
):
    return await quote_approval.approve(
        db,
        quote_id,
        data.signature,
        ip_address=client_ip(request),
        user_agent=data.user_agent or request.headers.get("user-agent"),
        email_service=email_service,
    )


@router.post("/{quote_id}/reject", response_model=QuoteView)
async def reject_quote(
    quote_id: str,
    data: Optional[RejectRequest] = None,
    db=Depends(get_db),
    email_service: EmailService = Depends(get_email_service),
):
    return await quote_approval.reject(
        db, quote_id, reason=data.reason if data else None, email_service=email_service
    )
