"""
AgencyDesk CRM - shared test helpers
In-memory Mongo (mongomock-motor), seed data, signature images.
"""

import asyncio
import base64
import io
from datetime import date, datetime, timedelta, timezone

from PIL import Image

AGENCY_ID = "a1c0ffee-0000-4000-8000-000000000001"
OTHER_AGENCY_ID = "a1c0ffee-0000-4000-8000-000000000002"
CLIENT_ID = "c11e0000-0000-4000-8000-000000000001"
LEAD_ID = "1ead0000-0000-4000-8000-000000000001"
USER_ID = "05e40000-0000-4000-8000-000000000001"
MEMBER_ID = "05e40000-0000-4000-8000-000000000002"
ADMIN_TOKEN = "token-agency-admin"
MEMBER_TOKEN = "token-team-member"
OTHER_TOKEN = "token-other-agency"
USER_EMAIL = "owner@pixelhouse.co.il"


def _db_op(coro):
    """Run async DB operation in a fresh event loop."""
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


def future_date(days: int = 30) -> date:
    return date.today() + timedelta(days=days)


def past_date(days: int = 3) -> date:
    return date.today() - timedelta(days=days)


def seed(db):
    """Agency, one client, one lead, two users with sessions, plus a foreign agency."""
    expires = (datetime.now(timezone.utc) + timedelta(days=7)).isoformat()

    async def _seed():
        await db.agencies.insert_many([
            {
                "id": AGENCY_ID,
                "name": "Pixel House",
                "email": "hello@pixelhouse.co.il",
                "phone": "+972-3-555-0101",
                "address": "12 Rothschild Blvd, Tel Aviv",
                "pdf_template": "modern",
                "pdf_color": "#7c3aed",
            },
            {"id": OTHER_AGENCY_ID, "name": "Other Studio", "pdf_template": "classic"},
        ])
        await db.clients.insert_many([
            {
                "id": CLIENT_ID,
                "agency_id": AGENCY_ID,
                "name": "Falafel Express Ltd",
                "contact_name": "Dana Levi",
                "email": "dana@falafel-express.co.il",
                "phone": "050-1234567",
            },
        ])
        await db.leads.insert_one({
            "id": LEAD_ID,
            "agency_id": AGENCY_ID,
            "name": "Yossi Cohen",
            "email": "yossi@cohen-law.co.il",
            "company": "Cohen Law",
        })
        await db.users.insert_many([
            {"id": USER_ID, "email": USER_EMAIL, "agency_id": AGENCY_ID, "role": "agency_admin"},
            {
                "id": MEMBER_ID, "email": "member@pixelhouse.co.il", "agency_id": AGENCY_ID,
                "role": "team_member",
            },
            {"id": "05e40000-0000-4000-8000-000000000003", "email": "boss@otherstudio.io",
             "agency_id": OTHER_AGENCY_ID, "role": "agency_admin"},
        ])
        await db.sessions.insert_many([
            {"token": ADMIN_TOKEN, "user_id": USER_ID, "expires_at": expires},
            {"token": MEMBER_TOKEN, "user_id": MEMBER_ID, "expires_at": expires},
            {"token": OTHER_TOKEN, "user_id": "05e40000-0000-4000-8000-000000000003", "expires_at": expires},
        ])

    _db_op(_seed())


def quote_payload(**overrides) -> dict:
    payload = {
        "title": "Website redesign",
        "description": "New marketing site with CMS",
        "recipient_id": CLIENT_ID,
        "recipient_kind": "client",
        "valid_until": future_date().isoformat(),
        "items": [
            {"name": "Design", "quantity": 2, "unit_price": 10000, "price_type": "fixed"},
            {"name": "Hosting setup", "quantity": 1, "unit_price": 5000, "price_type": "fixed"},
        ],
        "notes": "50% upfront",
        "terms": "Payment within 30 days.",
    }
    payload.update(overrides)
    return payload


def _png_data_uri(image: Image.Image) -> str:
    buffer = io.BytesIO()
    image.save(buffer, format="PNG")
    return "data:image/png;base64," + base64.b64encode(buffer.getvalue()).decode("ascii")


def drawn_signature() -> str:
    from services.signature_pad import PointerEvent, SignaturePad
    pad = SignaturePad()
    pad.start_stroke(PointerEvent(40, 120))
    for x in range(45, 300, 15):
        pad.continue_stroke(PointerEvent(x, 100 + (x % 40)))
    pad.end_stroke()
    return pad.export()


def blank_signature() -> str:
    return _png_data_uri(Image.new("RGBA", (400, 200), (0, 0, 0, 0)))


def white_signature() -> str:
    return _png_data_uri(Image.new("RGB", (400, 200), (255, 255, 255)))
