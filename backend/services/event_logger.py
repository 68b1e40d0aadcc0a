"""
AgencyDesk CRM - Event Logger

Centralized audit trail for quote actions.
Single function to call from any route/service.
"""

import uuid
from config import now_iso


async def log_event(
    db,
    action: str,
    entity_type: str,
    entity_id: str,
    user: str = "system",
    agency_id: str = "",
    details: dict = None,
):
    """
    Write a single event to the event_log collection.

    Args:
        action: e.g. quote_created, quote_sent, quote_viewed, quote_approved
        entity_type: quote | agency
        entity_id: ID of the primary entity
        user: email of user performing action ("public" for the approval page)
        agency_id: owning agency
        details: free-form dict (quote_number, reason, error, etc.)
    """
    await db.event_log.insert_one({
        "id": str(uuid.uuid4()),
        "action": action,
        "entity_type": entity_type,
        "entity_id": entity_id,
        "agency_id": agency_id,
        "user": user,
        "details": details or {},
        "created_at": now_iso()
    })


async def list_events(db, entity_id: str, limit: int = 100):
    return await db.event_log.find(
        {"entity_id": entity_id}, {"_id": 0}
    ).sort("created_at", 1).to_list(limit)
