"""
╔══════════════════════════════════════════════════════════════════════════════╗
║  AgencyDesk CRM - Quote Delivery                                             ║
║                                                                              ║
║  send_quote():                                                               ║
║    load -> claim send lease -> render PDF (timeout) -> email (timeout)       ║
║         -> mark_quote_sent   |   mark_dispatch_failed + DispatchFailure      ║
║    the lease is ALWAYS released                                              ║
║                                                                              ║
║  RULE: a quote is "sent" only after the transport confirmed the email.       ║
║  A failed delivery leaves the status untouched.                              ║
╚══════════════════════════════════════════════════════════════════════════════╝
"""

import asyncio
import html
import logging
from typing import Any, Dict, Optional

import httpx

from config import PUBLIC_APP_URL, RENDER_TIMEOUT_SECONDS
from email_service import EmailAttachment, EmailService
from models.agency import AgencyBranding
from models.money import format_amount
from models.quote import QuoteSendRequest, QuoteStatus, TERMINAL_STATUSES
from models.recipient import RecipientSnapshot, is_email_in_denylist, is_valid_email_format
from services.event_logger import log_event
from services.quote_errors import (
    AlreadyProcessedError,
    DispatchFailure,
    NotFoundError,
    RenderError,
    ValidationError,
)
from services.quote_pdf import decode_data_uri, format_date, render_quote_pdf
from services.quote_state_machine import (
    claim_dispatch,
    mark_dispatch_failed,
    mark_quote_sent,
    release_dispatch,
)

logger = logging.getLogger("quote_delivery")

LOGO_FETCH_TIMEOUT = 5.0


def approval_link(quote_id: str) -> str:
    return f"{PUBLIC_APP_URL}/quote-approval/{quote_id}"


# ════════════════════════════════════════════════════════════════════════════
# RENDERING CONTEXT
# ════════════════════════════════════════════════════════════════════════════

async def load_branding(db, agency_id: str) -> AgencyBranding:
    agency = await db.agencies.find_one({"id": agency_id}, {"_id": 0})
    return AgencyBranding.from_document(agency)


async def load_logo_bytes(logo: Optional[str]) -> Optional[bytes]:
    """Data URI decoded inline, http(s) URL fetched. A missing logo never blocks a render."""
    if not logo:
        return None
    if logo.startswith("data:"):
        try:
            return decode_data_uri(logo)
        except ValueError as e:
            logger.warning(f"[PDF] Invalid logo data URI: {e}")
            return None
    if logo.startswith(("http://", "https://")):
        try:
            async with httpx.AsyncClient(timeout=LOGO_FETCH_TIMEOUT) as client:
                response = await client.get(logo)
                response.raise_for_status()
                return response.content
        except httpx.HTTPError as e:
            logger.warning(f"[PDF] Logo fetch failed ({logo}): {e}")
            return None
    return None


async def build_quote_pdf(db, quote: Dict[str, Any], branding: Optional[AgencyBranding] = None) -> bytes:
    """Render in a worker thread, bounded by RENDER_TIMEOUT_SECONDS."""
    branding = branding or await load_branding(db, quote["agency_id"])
    logo = await load_logo_bytes(branding.logo)
    try:
        return await asyncio.wait_for(
            asyncio.to_thread(render_quote_pdf, quote, branding, logo),
            timeout=RENDER_TIMEOUT_SECONDS,
        )
    except asyncio.TimeoutError:
        logger.error(f"[PDF] Render timed out for quote {quote['id']}")
        raise RenderError(f"PDF rendering timed out after {RENDER_TIMEOUT_SECONDS}s", quote_id=quote["id"])


def pdf_filename(quote: Dict[str, Any]) -> str:
    return f"{quote['quote_number']}.pdf"


# ════════════════════════════════════════════════════════════════════════════
# EMAIL CONTENT
# ════════════════════════════════════════════════════════════════════════════

def build_quote_email(quote: Dict[str, Any], branding: AgencyBranding, message: Optional[str] = None):
    """(subject, html, text) for the recipient."""
    recipient = RecipientSnapshot(**(quote.get("recipient") or {}))
    link = approval_link(quote["id"])
    total = format_amount(quote["total_amount"], quote.get("currency", "ILS"))
    valid_until = format_date(quote["valid_until"])
    sender = branding.name or "Our agency"

    subject = f"Quote {quote['quote_number']} from {sender}: {quote['title']}"

    message_html = ""
    if message:
        message_html = f'<p style="white-space: pre-line;">{html.escape(message)}</p>'

    html_body = f"""
    <!DOCTYPE html>
    <html>
    <head>
        <style>
            body {{ font-family: Arial, sans-serif; margin: 0; padding: 20px; background-color: #f5f5f5; }}
            .container {{ max-width: 600px; margin: 0 auto; background: white; border-radius: 8px; overflow: hidden; }}
            .header {{ background: {branding.pdf_color}; color: white; padding: 20px; }}
            .header h1 {{ margin: 0; font-size: 20px; }}
            .content {{ padding: 30px; }}
            .summary {{ background: #F3F4F6; padding: 15px; border-radius: 4px; margin: 20px 0; }}
            .footer {{ background: #F9FAFB; padding: 15px; text-align: center; font-size: 12px; color: #6B7280; }}
        </style>
    </head>
    <body>
        <div class="container">
            <div class="header">
                <h1>{html.escape(sender)}</h1>
            </div>
            <div class="content">
                <p>Hello {html.escape(recipient.name)},</p>
                {message_html}
                <div class="summary">
                    <strong>Quote:</strong> {html.escape(quote['quote_number'])}<br>
                    <strong>Subject:</strong> {html.escape(quote['title'])}<br>
                    <strong>Total:</strong> {total}<br>
                    <strong>Valid until:</strong> {valid_until}
                </div>
                <p>The full quote is attached as a PDF. You can review and approve it online:</p>
                <p>
                    <a href="{link}" style="display: inline-block; background: {branding.pdf_color}; color: white; padding: 12px 30px; text-decoration: none; border-radius: 4px; font-weight: bold;">
                        View and approve the quote
                    </a>
                </p>
            </div>
            <div class="footer">
                {html.escape(sender)}{' - ' + html.escape(branding.email) if branding.email else ''}
            </div>
        </div>
    </body>
    </html>
    """

    text_body = f"""Hello {recipient.name},

{message + chr(10) if message else ''}
Quote: {quote['quote_number']}
Subject: {quote['title']}
Total: {total}
Valid until: {valid_until}

The full quote is attached as a PDF. Review and approve it here:
{link}

{sender}
"""
    return subject, html_body, text_body


def build_response_email(quote: Dict[str, Any], action: str):
    """(subject, html, text) notifying the agency of an approval / rejection."""
    recipient = RecipientSnapshot(**(quote.get("recipient") or {}))
    verb = "approved" if action == QuoteStatus.APPROVED.value else "declined"
    subject = f"Quote {quote['quote_number']} was {verb} by {recipient.name or 'the recipient'}"
    reason = quote.get("rejection_reason")
    total = format_amount(quote["total_amount"], quote.get("currency", "ILS"))

    lines = [
        f"Quote: {quote['quote_number']} - {quote['title']}",
        f"Recipient: {recipient.name}" + (f" ({recipient.company})" if recipient.company else ""),
        f"Total: {total}",
        f"Status: {verb}",
    ]
    if reason:
        lines.append(f"Reason: {reason}")

    html_body = "<p>" + "<br>".join(html.escape(line) for line in lines) + "</p>"
    return subject, html_body, "\n".join(lines)


# ════════════════════════════════════════════════════════════════════════════
# OPERATIONS
# ════════════════════════════════════════════════════════════════════════════

async def _load_quote(db, agency_id: str, quote_id: str) -> Dict[str, Any]:
    quote = await db.quotes.find_one({"id": quote_id, "agency_id": agency_id}, {"_id": 0})
    if not quote:
        raise NotFoundError(quote_id=quote_id)
    if quote["status"] in TERMINAL_STATUSES:
        raise AlreadyProcessedError(
            f"Quote has already been {quote['status']}", quote_id=quote_id, status=quote["status"]
        )
    return quote


async def send_quote(
    db,
    agency_id: str,
    quote_id: str,
    request: QuoteSendRequest,
    email_service: EmailService,
    sent_by: str = "system",
) -> Dict[str, Any]:
    quote = await _load_quote(db, agency_id, quote_id)
    recipient = RecipientSnapshot(**(quote.get("recipient") or {}))
    to_email = recipient.deliverable_email()
    if not to_email:
        raise ValidationError(
            f"Recipient has no deliverable email address ({recipient.email or 'empty'})", quote_id=quote_id
        )

    quote = await claim_dispatch(db, quote_id, agency_id)
    lease = quote["dispatch_lock_until"]
    try:
        branding = await load_branding(db, agency_id)
        message = request.email_message if request.email_message is not None else quote.get("email_message")

        attachments = []
        if request.attach_pdf:
            pdf = await build_quote_pdf(db, quote, branding)
            attachments.append(EmailAttachment(pdf_filename(quote), pdf, "application/pdf"))

        subject, html_body, text_body = build_quote_email(quote, branding, message)
        result = await email_service.dispatch([to_email], subject, html_body, text_body, attachments)

        if not result.success:
            await mark_dispatch_failed(db, quote_id, result.error or "unknown error")
            await log_event(
                db, "quote_send_failed", "quote", quote_id, user=sent_by, agency_id=agency_id,
                details={"quote_number": quote["quote_number"], "error": result.error, "transport": result.transport},
            )
            raise DispatchFailure(f"Email delivery failed: {result.error}", quote_id=quote_id)

        was_resend = quote["status"] == QuoteStatus.SENT.value
        quote = await mark_quote_sent(
            db, quote_id, agency_id, [to_email], sent_by=sent_by, expected_updated_at=quote.get("updated_at")
        )
        await log_event(
            db, "quote_resent" if was_resend else "quote_sent", "quote", quote_id, user=sent_by,
            agency_id=agency_id,
            details={"quote_number": quote["quote_number"], "to": to_email, "transport": result.transport},
        )
        logger.info(f"[QUOTE_SEND] {quote['quote_number']} sent to {to_email} via {result.transport}")
        return quote
    finally:
        await release_dispatch(db, quote_id, lease)


async def mark_sent(db, agency_id: str, quote_id: str, sent_by: str = "system") -> Dict[str, Any]:
    """Manual fallback (quote delivered outside the system): no email, no send_count."""
    quote = await _load_quote(db, agency_id, quote_id)
    recipient = RecipientSnapshot(**(quote.get("recipient") or {}))
    sent_to = [recipient.email] if recipient.email else []
    quote = await mark_quote_sent(db, quote_id, agency_id, sent_to, sent_by=sent_by, manual=True)
    await log_event(
        db, "quote_marked_sent", "quote", quote_id, user=sent_by, agency_id=agency_id,
        details={"quote_number": quote["quote_number"]},
    )
    return quote


async def notify_agency_of_response(db, quote: Dict[str, Any], action: str, email_service: EmailService):
    """Best-effort: a failure is logged, never surfaced to the public caller."""
    try:
        to_email = quote.get("created_by")
        if not (is_valid_email_format(to_email) and not is_email_in_denylist(to_email)):
            branding = await load_branding(db, quote["agency_id"])
            to_email = branding.email
        if not is_valid_email_format(to_email):
            logger.info(f"[QUOTE_NOTIFY] No agency address for {quote['quote_number']}, skipped")
            return None

        subject, html_body, text_body = build_response_email(quote, action)
        result = await email_service.dispatch([to_email], subject, html_body, text_body)
        if not result.success:
            logger.warning(f"[QUOTE_NOTIFY] {quote['quote_number']} notification failed: {result.error}")
        return result
    except Exception:
        logger.exception(f"[QUOTE_NOTIFY] Notification error for quote {quote.get('id')}")
        return None
