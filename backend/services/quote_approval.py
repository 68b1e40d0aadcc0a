"""
AgencyDesk CRM - Public quote approval

Unauthenticated operations addressed by the quote id (UUID4):
view, track_view, approve (signature required), reject.

Malformed, unknown and draft ids all raise the same NotFoundError.
Responses are sanitized: no agency-internal field ever leaves this module.
"""

import logging
from datetime import date
from typing import Any, Dict, Optional

from pymongo import ReturnDocument

from config import now_iso
from email_service import EmailService
from models.agency import AgencyBranding
from models.quote import (
    PublicAgency,
    PublicLineItem,
    PublicRecipient,
    QuoteStatus,
    QuoteView,
    SignatureArtifact,
    TERMINAL_STATUSES,
)
from services.event_logger import log_event
from services.quote_delivery import load_branding, notify_agency_of_response
from services.quote_errors import AlreadyProcessedError, NotFoundError
from services.quote_state_machine import require_public_id, approve_quote, effective_status, reject_quote
from services.signature_pad import validate_signature

logger = logging.getLogger("quote_approval")


def build_quote_view(quote: Dict[str, Any], branding: AgencyBranding, today: Optional[date] = None) -> QuoteView:
    status = effective_status(quote, today)
    recipient = quote.get("recipient") or {}
    return QuoteView(
        id=quote["id"],
        quote_number=quote["quote_number"],
        title=quote["title"],
        description=quote.get("description"),
        recipient=PublicRecipient(name=recipient.get("name", ""), company=recipient.get("company", "")),
        agency=PublicAgency(name=branding.name, logo=branding.logo, pdf_color=branding.pdf_color),
        items=[PublicLineItem(**item) for item in quote.get("items", [])],
        subtotal=quote["subtotal"],
        vat_amount=quote["vat_amount"],
        vat_rate_bp=quote.get("vat_rate_bp", 1800),
        total_amount=quote["total_amount"],
        currency=quote.get("currency", "ILS"),
        valid_until=quote["valid_until"],
        created_at=quote["created_at"],
        notes=quote.get("notes"),
        terms=quote.get("terms"),
        status=status,
        is_expired=status == QuoteStatus.EXPIRED.value,
        can_respond=status == QuoteStatus.SENT.value,
        approved_at=quote.get("approved_at"),
        rejected_at=quote.get("rejected_at"),
        signed=bool(quote.get("signature")),
    )


async def load_public_quote(db, quote_id: str) -> Dict[str, Any]:
    require_public_id(quote_id)
    quote = await db.quotes.find_one({"id": quote_id}, {"_id": 0})
    if not quote or quote.get("status") == QuoteStatus.DRAFT.value:
        raise NotFoundError(quote_id=quote_id)
    return quote


async def view(db, quote_id: str, today: Optional[date] = None) -> QuoteView:
    """Read only: viewing never changes the status."""
    quote = await load_public_quote(db, quote_id)
    branding = await load_branding(db, quote["agency_id"])
    return build_quote_view(quote, branding, today)


async def track_view(db, quote_id: str) -> Dict[str, Any]:
    """
    Safe to call repeatedly: first_viewed_at is set once, every call bumps
    last_viewed_at and view_count. Only the first view is logged.
    """
    quote = await load_public_quote(db, quote_id)
    now = now_iso()

    first = await db.quotes.update_one(
        {"id": quote_id, "first_viewed_at": {"$exists": False}},
        {"$set": {"first_viewed_at": now}},
    )
    updated = await db.quotes.find_one_and_update(
        {"id": quote_id},
        {"$set": {"last_viewed_at": now}, "$inc": {"view_count": 1}},
        return_document=ReturnDocument.AFTER,
    )

    if first.modified_count:
        await log_event(
            db, "quote_viewed", "quote", quote_id, user="public", agency_id=quote["agency_id"],
            details={"quote_number": quote["quote_number"]},
        )
        logger.info(f"[QUOTE_VIEW] {quote['quote_number']} first viewed")
    return {field: updated.get(field) for field in ("first_viewed_at", "last_viewed_at", "view_count")}


async def approve(
    db,
    quote_id: str,
    signature_image: str,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
    email_service: Optional[EmailService] = None,
    today: Optional[date] = None,
) -> QuoteView:
    # An answered quote reports AlreadyProcessedError whatever signature is sent
    current = await load_public_quote(db, quote_id)
    if current["status"] in TERMINAL_STATUSES:
        raise AlreadyProcessedError(
            f"Quote has already been {current['status']}", quote_id=quote_id, status=current["status"]
        )
    # Signature is checked BEFORE any transition is attempted
    validate_signature(signature_image)

    signature = SignatureArtifact(
        image=signature_image,
        signed_at=now_iso(),
        ip_address=ip_address,
        user_agent=user_agent,
    ).model_dump()
    quote = await approve_quote(db, quote_id, signature, today=today)

    await log_event(
        db, "quote_approved", "quote", quote_id, user="public", agency_id=quote["agency_id"],
        details={"quote_number": quote["quote_number"], "ip_address": ip_address},
    )
    if email_service is not None:
        await notify_agency_of_response(db, quote, QuoteStatus.APPROVED.value, email_service)

    branding = await load_branding(db, quote["agency_id"])
    return build_quote_view(quote, branding, today)


async def reject(
    db,
    quote_id: str,
    reason: Optional[str] = None,
    email_service: Optional[EmailService] = None,
) -> QuoteView:
    reason = (reason or "").strip() or None
    quote = await reject_quote(db, quote_id, reason)

    await log_event(
        db, "quote_rejected", "quote", quote_id, user="public", agency_id=quote["agency_id"],
        details={"quote_number": quote["quote_number"], "reason": reason},
    )
    if email_service is not None:
        await notify_agency_of_response(db, quote, QuoteStatus.REJECTED.value, email_service)

    branding = await load_branding(db, quote["agency_id"])
    return build_quote_view(quote, branding)
