"""
AgencyDesk CRM - Quote Document Builder

Validates caller input, computes line/subtotal/VAT/total amounts with the
currency model, snapshots the recipient, allocates the per-agency quote
number and persists the quote in "draft".
"""

import logging
from typing import Any, Dict, List, Optional

from pymongo import ReturnDocument

from config import QUOTE_CURRENCY, VAT_RATE_BP, generate_id, now_iso, today_local
from models.money import compute_totals, line_total
from models.quote import LineItemInput, QuoteCreate, QuoteStatus, QuoteUpdate, RecipientKind
from models.recipient import RECIPIENT_COLLECTIONS, RecipientSnapshot
from services.event_logger import log_event
from services.quote_errors import (
    DispatchInProgressError,
    NotFoundError,
    QuoteLockedError,
    RecipientNotFoundError,
    ValidationError,
)
from services.quote_state_machine import effective_status, is_dispatch_locked, unlocked_clause

logger = logging.getLogger("quote_builder")


# ==================== ARITHMETIC ====================

def build_line_items(items: List[LineItemInput]) -> List[Dict[str, Any]]:
    """Line totals are ALWAYS recomputed from quantity x unit price."""
    if not items:
        raise ValidationError("A quote must have at least one line item")

    built = []
    for position, item in enumerate(items, start=1):
        name = (item.name or "").strip()
        if not name:
            raise ValidationError(f"Line item {position}: name is required", position=position)
        built.append({
            "id": generate_id(),
            "product_id": item.product_id,
            "name": name,
            "description": (item.description or "").strip(),
            "quantity": item.quantity,
            "unit_price": item.unit_price,
            "price_type": item.price_type.value,
            "total": line_total(item.quantity, item.unit_price),
        })
    return built


def compute_quote_amounts(items: List[Dict[str, Any]], vat_bp: int = VAT_RATE_BP) -> Dict[str, int]:
    totals = compute_totals((item["total"] for item in items), vat_bp)
    return {
        "subtotal": totals.subtotal,
        "vat_amount": totals.vat,
        "total_amount": totals.total,
        "vat_rate_bp": vat_bp,
    }


def _clean_title(title: Optional[str]) -> str:
    title = (title or "").strip()
    if not title:
        raise ValidationError("Title is required")
    return title


# ==================== LOOKUPS ====================

async def resolve_recipient(db, agency_id: str, recipient_id: str, kind: RecipientKind) -> RecipientSnapshot:
    collection = db[RECIPIENT_COLLECTIONS[kind.value]]
    doc = await collection.find_one({"id": recipient_id, "agency_id": agency_id}, {"_id": 0})
    if not doc:
        raise RecipientNotFoundError(
            f"{kind.value.capitalize()} {recipient_id} not found", recipient_id=recipient_id, kind=kind.value
        )
    return RecipientSnapshot.from_document(doc, kind.value)


async def allocate_quote_number(db, agency_id: str, year: Optional[int] = None) -> str:
    """
    Atomic per-agency sequence ($inc upsert). Never read-then-write:
    concurrent creations always get distinct numbers.
    """
    counter = await db.counters.find_one_and_update(
        {"_id": f"quote_number:{agency_id}"},
        {"$inc": {"seq": 1}},
        upsert=True,
        return_document=ReturnDocument.AFTER,
    )
    year = year or today_local().year
    return f"Q-{year}-{counter['seq']:04d}"


async def _load_agency_quote(db, agency_id: str, quote_id: str) -> Dict[str, Any]:
    quote = await db.quotes.find_one({"id": quote_id, "agency_id": agency_id}, {"_id": 0})
    if not quote:
        raise NotFoundError(quote_id=quote_id)
    return quote


def _ensure_editable(quote: Dict[str, Any], action: str):
    if quote["status"] != QuoteStatus.DRAFT.value:
        raise QuoteLockedError(
            f"Only draft quotes can be {action} (status: {quote['status']})", quote_id=quote["id"]
        )
    if is_dispatch_locked(quote):
        raise DispatchInProgressError(
            f"Quote is being sent and cannot be {action} right now", quote_id=quote["id"]
        )


def with_effective_status(quote: Dict[str, Any], today=None) -> Dict[str, Any]:
    quote = dict(quote)
    quote["effective_status"] = effective_status(quote, today)
    quote["is_expired"] = quote["effective_status"] == QuoteStatus.EXPIRED.value
    return quote


# ==================== CREATE / UPDATE / DELETE ====================

async def create_quote(db, agency_id: str, payload: QuoteCreate, created_by: str = "system") -> Dict[str, Any]:
    title = _clean_title(payload.title)
    items = build_line_items(payload.items)
    amounts = compute_quote_amounts(items)
    recipient = await resolve_recipient(db, agency_id, payload.recipient_id, payload.recipient_kind)
    quote_number = await allocate_quote_number(db, agency_id)

    now = now_iso()
    quote = {
        "id": generate_id(),
        "agency_id": agency_id,
        "quote_number": quote_number,
        "title": title,
        "description": payload.description,
        "recipient_id": payload.recipient_id,
        "recipient_kind": payload.recipient_kind.value,
        "recipient": recipient.model_dump(),
        "items": items,
        **amounts,
        "currency": QUOTE_CURRENCY,
        "valid_until": payload.valid_until.isoformat(),
        "notes": payload.notes,
        "terms": payload.terms,
        "email_message": payload.email_message,
        "status": QuoteStatus.DRAFT.value,
        "view_count": 0,
        "send_count": 0,
        "created_by": created_by,
        "created_at": now,
        "updated_at": now,
    }
    await db.quotes.insert_one(quote)
    quote.pop("_id", None)

    await log_event(
        db, "quote_created", "quote", quote["id"], user=created_by, agency_id=agency_id,
        details={"quote_number": quote_number, "total_amount": quote["total_amount"]},
    )
    logger.info(
        f"[QUOTE_CREATE] {quote_number} agency={agency_id} items={len(items)} total={quote['total_amount']}"
    )
    return quote


async def update_quote(
    db, agency_id: str, quote_id: str, payload: QuoteUpdate, updated_by: str = "system"
) -> Dict[str, Any]:
    """Drafts only, and never while a send is rendering/emailing it. Totals and recipient snapshot are recomputed."""
    quote = await _load_agency_quote(db, agency_id, quote_id)
    _ensure_editable(quote, "edited")

    changes = payload.model_dump(exclude_unset=True)
    update: Dict[str, Any] = {}

    if "title" in changes:
        update["title"] = _clean_title(payload.title)
    for field in ("description", "notes", "terms", "email_message"):
        if field in changes:
            update[field] = changes[field]
    if payload.valid_until is not None:
        update["valid_until"] = payload.valid_until.isoformat()
    if payload.items is not None:
        update["items"] = build_line_items(payload.items)
        update.update(compute_quote_amounts(update["items"], quote.get("vat_rate_bp", VAT_RATE_BP)))

    recipient_id = payload.recipient_id or quote["recipient_id"]
    kind = payload.recipient_kind or RecipientKind(quote["recipient_kind"])
    recipient = await resolve_recipient(db, agency_id, recipient_id, kind)
    update.update({
        "recipient_id": recipient_id,
        "recipient_kind": kind.value,
        "recipient": recipient.model_dump(),
        "updated_at": now_iso(),
    })

    updated = await db.quotes.find_one_and_update(
        {"id": quote_id, "agency_id": agency_id, "status": QuoteStatus.DRAFT.value, **unlocked_clause()},
        {"$set": update},
        return_document=ReturnDocument.AFTER,
    )
    if not updated:
        _ensure_editable(await _load_agency_quote(db, agency_id, quote_id), "edited")
        raise QuoteLockedError("Quote changed while being edited, please retry", quote_id=quote_id)
    updated.pop("_id", None)

    await log_event(
        db, "quote_updated", "quote", quote_id, user=updated_by, agency_id=agency_id,
        details={"fields": sorted(changes.keys())},
    )
    return updated


async def delete_quote(db, agency_id: str, quote_id: str, deleted_by: str = "system"):
    result = await db.quotes.delete_one(
        {"id": quote_id, "agency_id": agency_id, "status": QuoteStatus.DRAFT.value, **unlocked_clause()}
    )
    if result.deleted_count == 0:
        _ensure_editable(await _load_agency_quote(db, agency_id, quote_id), "deleted")
        raise QuoteLockedError("Quote changed while being deleted, please retry", quote_id=quote_id)
    await log_event(db, "quote_deleted", "quote", quote_id, user=deleted_by, agency_id=agency_id)


async def duplicate_quote(db, agency_id: str, quote_id: str, created_by: str = "system") -> Dict[str, Any]:
    """Copy any quote (even a terminal one) into a new draft with a new number."""
    source = await _load_agency_quote(db, agency_id, quote_id)
    payload = QuoteCreate(
        title=source["title"],
        description=source.get("description"),
        recipient_id=source["recipient_id"],
        recipient_kind=source["recipient_kind"],
        valid_until=max(source["valid_until"], today_local().isoformat()),
        items=[LineItemInput(**item) for item in source["items"]],
        notes=source.get("notes"),
        terms=source.get("terms"),
        email_message=source.get("email_message"),
    )
    return await create_quote(db, agency_id, payload, created_by=created_by)


# ==================== READS ====================

async def get_quote(db, agency_id: str, quote_id: str) -> Dict[str, Any]:
    return with_effective_status(await _load_agency_quote(db, agency_id, quote_id))


async def list_quotes(
    db,
    agency_id: str,
    status: Optional[str] = None,
    recipient_id: Optional[str] = None,
    limit: int = 100,
    skip: int = 0,
) -> List[Dict[str, Any]]:
    query: Dict[str, Any] = {"agency_id": agency_id}
    today = today_local().isoformat()
    if status == QuoteStatus.EXPIRED.value:
        query.update({"status": QuoteStatus.SENT.value, "valid_until": {"$lt": today}})
    elif status == QuoteStatus.SENT.value:
        query.update({"status": QuoteStatus.SENT.value, "valid_until": {"$gte": today}})
    elif status:
        query["status"] = status
    if recipient_id:
        query["recipient_id"] = recipient_id

    quotes = await db.quotes.find(
        query, {"_id": 0, "signature.image": 0}
    ).sort("created_at", -1).skip(skip).limit(limit).to_list(limit)
    return [with_effective_status(q) for q in quotes]
