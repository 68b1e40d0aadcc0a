"""
╔══════════════════════════════════════════════════════════════════════════════╗
║  AgencyDesk CRM - Quote State Machine                                        ║
║                                                                              ║
║  ONLY THIS MODULE writes quote.status                                        ║
║                                                                              ║
║  draft -> sent -> approved | rejected      (approved/rejected are terminal)  ║
║  "expired" is a read-time overlay: status == sent AND valid_until < today    ║
║                                                                              ║
║  Every transition is ONE conditional update keyed on the current status,     ║
║  so of two racing approve/reject calls exactly one wins.                     ║
║                                                                              ║
║  INVARIANTS:                                                                 ║
║  - status="sent" IMPLIES sent_at non null                                    ║
║  - status="approved" IMPLIES signature written in the same update            ║
║  - a terminal quote is never modified again                                  ║
╚══════════════════════════════════════════════════════════════════════════════╝
"""

import logging
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from pymongo import ReturnDocument

from config import DISPATCH_LOCK_SECONDS, is_valid_uuid, now_iso, today_local
from models.quote import QuoteStatus, TERMINAL_STATUSES
from services.quote_errors import (
    AlreadyProcessedError,
    DispatchInProgressError,
    ExpiredError,
    NotFoundError,
    StateConflictError,
)

logger = logging.getLogger("quote_state_machine")


# ════════════════════════════════════════════════════════════════════════════
# VALID STATE TRANSITIONS
# ════════════════════════════════════════════════════════════════════════════

VALID_QUOTE_TRANSITIONS = {
    "draft": ["sent"],
    "sent": ["sent", "approved", "rejected"],  # sent -> sent is a re-send
    "approved": [],  # TERMINAL
    "rejected": [],  # TERMINAL
}


def validate_quote_transition(quote_id: str, from_status: str, to_status: str) -> bool:
    if from_status in TERMINAL_STATUSES:
        raise AlreadyProcessedError(
            f"Quote {quote_id} is already {from_status}", quote_id=quote_id, status=from_status
        )
    valid_next = VALID_QUOTE_TRANSITIONS.get(from_status, [])
    if to_status not in valid_next:
        raise StateConflictError(
            f"Quote {quote_id} cannot go from '{from_status}' to '{to_status}'",
            quote_id=quote_id, status=from_status,
        )
    return True


# ════════════════════════════════════════════════════════════════════════════
# READ-TIME OVERLAY
# ════════════════════════════════════════════════════════════════════════════

def is_expired(quote: dict, today: Optional[date] = None) -> bool:
    """Only a quote still waiting for an answer can be expired."""
    if quote.get("status") != QuoteStatus.SENT.value:
        return False
    valid_until = quote.get("valid_until")
    if not valid_until:
        return False
    today = today or today_local()
    return valid_until < today.isoformat()


def effective_status(quote: dict, today: Optional[date] = None) -> str:
    if is_expired(quote, today):
        return QuoteStatus.EXPIRED.value
    return quote.get("status", QuoteStatus.DRAFT.value)


# ════════════════════════════════════════════════════════════════════════════
# FAILURE CLASSIFICATION (after a conditional update matched nothing)
# ════════════════════════════════════════════════════════════════════════════

async def _classify_failure(
    db,
    quote_id: str,
    target: str,
    agency_id: Optional[str] = None,
    public: bool = False,
    today: Optional[date] = None,
):
    query = {"id": quote_id}
    if agency_id:
        query["agency_id"] = agency_id
    quote = await db.quotes.find_one(query, {"_id": 0, "status": 1, "valid_until": 1})
    if not quote:
        raise NotFoundError(quote_id=quote_id)

    status = quote.get("status")
    if public and status == QuoteStatus.DRAFT.value:
        raise NotFoundError(quote_id=quote_id)
    if status in TERMINAL_STATUSES:
        raise AlreadyProcessedError(f"Quote has already been {status}", quote_id=quote_id, status=status)
    if target == QuoteStatus.APPROVED.value and is_expired(quote, today):
        raise ExpiredError(
            f"Quote expired on {quote.get('valid_until')}", quote_id=quote_id, valid_until=quote.get("valid_until")
        )
    validate_quote_transition(quote_id, status, target)
    # Status looked legal on re-read: a concurrent writer changed it in between
    raise StateConflictError("Quote was modified concurrently, please retry", quote_id=quote_id)


def require_public_id(quote_id: str):
    if not is_valid_uuid(quote_id):
        raise NotFoundError(quote_id=quote_id)


def _strip_id(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if doc is not None:
        doc.pop("_id", None)
    return doc


# ════════════════════════════════════════════════════════════════════════════
# DISPATCH LEASE (one send at a time per quote)
# ════════════════════════════════════════════════════════════════════════════

def unlocked_clause(now: Optional[str] = None) -> Dict[str, Any]:
    """Filter clause: no send currently holds the quote (no lease, or an expired one)."""
    now = now or now_iso()
    return {"$or": [{"dispatch_lock_until": None}, {"dispatch_lock_until": {"$lt": now}}]}


def is_dispatch_locked(quote: dict, now: Optional[str] = None) -> bool:
    lock_until = quote.get("dispatch_lock_until")
    return bool(lock_until) and lock_until >= (now or now_iso())


async def claim_dispatch(db, quote_id: str, agency_id: str) -> Dict[str, Any]:
    """
    Take the send lease. Fails with DispatchInProgressError if another send
    holds an unexpired lease, AlreadyProcessedError if the quote is terminal.
    The returned document carries the lease value to hand back to release_dispatch.
    """
    now = datetime.now(timezone.utc)
    lock_until = (now + timedelta(seconds=DISPATCH_LOCK_SECONDS)).isoformat()

    quote = await db.quotes.find_one_and_update(
        {
            "id": quote_id,
            "agency_id": agency_id,
            "status": {"$in": [QuoteStatus.DRAFT.value, QuoteStatus.SENT.value]},
            **unlocked_clause(now.isoformat()),
        },
        {"$set": {"dispatch_lock_until": lock_until}},
        return_document=ReturnDocument.AFTER,
    )
    if quote:
        return _strip_id(quote)

    current = await db.quotes.find_one({"id": quote_id, "agency_id": agency_id}, {"_id": 0})
    if not current:
        raise NotFoundError(quote_id=quote_id)
    if current.get("status") in TERMINAL_STATUSES:
        raise AlreadyProcessedError(
            f"Quote has already been {current['status']}", quote_id=quote_id, status=current["status"]
        )
    raise DispatchInProgressError("This quote is already being sent", quote_id=quote_id)


async def release_dispatch(db, quote_id: str, lock_until: Optional[str] = None):
    """Clear the lease this worker took. A newer lease (ours expired) is left alone."""
    query = {"id": quote_id}
    if lock_until:
        query["dispatch_lock_until"] = lock_until
    await db.quotes.update_one(query, {"$unset": {"dispatch_lock_until": ""}})


# ════════════════════════════════════════════════════════════════════════════
# SAFE STATE TRANSITIONS (THE ONLY WAY TO WRITE STATUS)
# ════════════════════════════════════════════════════════════════════════════

async def mark_quote_sent(
    db,
    quote_id: str,
    agency_id: str,
    sent_to: List[str],
    sent_by: Optional[str] = None,
    manual: bool = False,
    expected_updated_at: Optional[str] = None,
) -> Dict[str, Any]:
    """
    🔒 ONLY function allowed to set status="sent".
    Called after a confirmed dispatch, or by the manual "mark sent" fallback.

    expected_updated_at: the version that was rendered and emailed. If the
    document changed since, it is NOT marked sent (StateConflictError).
    A manual mark is refused while a send holds the lease.
    """
    now = now_iso()
    update = {
        "$set": {
            "status": QuoteStatus.SENT.value,
            "sent_at": now,
            "sent_to": sent_to,
            "last_dispatch_error": None,
            "updated_at": now,
        },
    }
    if not manual:
        update["$inc"] = {"send_count": 1}
    if sent_by:
        update["$set"]["sent_by"] = sent_by

    query = {
        "id": quote_id,
        "agency_id": agency_id,
        "status": {"$in": [QuoteStatus.DRAFT.value, QuoteStatus.SENT.value]},
    }
    if expected_updated_at:
        query["updated_at"] = expected_updated_at
    if manual:
        query.update(unlocked_clause(now))

    quote = await db.quotes.find_one_and_update(query, update, return_document=ReturnDocument.AFTER)
    if not quote:
        if manual:
            current = await db.quotes.find_one({"id": quote_id, "agency_id": agency_id}, {"_id": 0})
            if current and current.get("status") not in TERMINAL_STATUSES and is_dispatch_locked(current, now):
                raise DispatchInProgressError("This quote is being sent right now", quote_id=quote_id)
        await _classify_failure(db, quote_id, QuoteStatus.SENT.value, agency_id=agency_id)

    logger.info(
        f"[STATE_MACHINE] Quote {quote_id} -> sent | sent_to={sent_to} manual={manual}"
    )
    return _strip_id(quote)


async def mark_dispatch_failed(db, quote_id: str, error: str):
    """Status is NOT touched: a failed delivery never leaves a quote 'sent'."""
    await db.quotes.update_one(
        {"id": quote_id},
        {"$set": {"last_dispatch_error": error, "last_dispatch_failed_at": now_iso()}},
    )
    logger.warning(f"[STATE_MACHINE] Quote {quote_id} dispatch failed | error={error}")


async def approve_quote(
    db,
    quote_id: str,
    signature: Dict[str, Any],
    today: Optional[date] = None,
) -> Dict[str, Any]:
    """
    🔒 sent -> approved. Signature and metadata are written in the SAME
    conditional update as the status, so neither can exist without the other.
    Expired quotes cannot be approved.
    """
    require_public_id(quote_id)
    today = today or today_local()
    now = now_iso()

    quote = await db.quotes.find_one_and_update(
        {
            "id": quote_id,
            "status": QuoteStatus.SENT.value,
            "valid_until": {"$gte": today.isoformat()},
        },
        {"$set": {
            "status": QuoteStatus.APPROVED.value,
            "approved_at": now,
            "signed_at": signature.get("signed_at", now),
            "signature": signature,
            "updated_at": now,
        }},
        return_document=ReturnDocument.AFTER,
    )
    if not quote:
        await _classify_failure(db, quote_id, QuoteStatus.APPROVED.value, public=True, today=today)

    logger.info(f"[STATE_MACHINE] Quote {quote_id} -> approved | ip={signature.get('ip_address')}")
    return _strip_id(quote)


async def reject_quote(db, quote_id: str, reason: Optional[str] = None) -> Dict[str, Any]:
    """🔒 sent -> rejected. No signature; allowed even after the validity date."""
    require_public_id(quote_id)
    now = now_iso()

    quote = await db.quotes.find_one_and_update(
        {"id": quote_id, "status": QuoteStatus.SENT.value},
        {"$set": {
            "status": QuoteStatus.REJECTED.value,
            "rejected_at": now,
            "rejection_reason": reason,
            "updated_at": now,
        }},
        return_document=ReturnDocument.AFTER,
    )
    if not quote:
        await _classify_failure(db, quote_id, QuoteStatus.REJECTED.value, public=True)

    logger.info(f"[STATE_MACHINE] Quote {quote_id} -> rejected")
    return _strip_id(quote)
