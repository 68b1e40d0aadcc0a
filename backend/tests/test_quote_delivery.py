"""
AgencyDesk CRM - Quote delivery tests
Send = render + email + mark sent. A failed email never marks a quote sent.
Run: cd backend && pytest tests/test_quote_delivery.py -v
"""

import asyncio
import time

import pytest

from email_service import DispatchResult, EmailService
from models.quote import LineItemInput, QuoteCreate, QuoteSendRequest, QuoteUpdate
from services import quote_delivery
from services.quote_builder import create_quote, delete_quote, update_quote
from services.quote_delivery import (
    approval_link,
    build_quote_email,
    load_logo_bytes,
    mark_sent,
    send_quote,
)
from services.quote_errors import (
    AlreadyProcessedError,
    DispatchFailure,
    DispatchInProgressError,
    NotFoundError,
    RenderError,
    ValidationError,
)
from services.quote_state_machine import reject_quote
from models.agency import AgencyBranding
from tests.helpers import AGENCY_ID, OTHER_AGENCY_ID, _db_op, quote_payload


class FailingEmailService(EmailService):
    def send(self, to, subject, html_body, text_body=None, attachments=None):
        return DispatchResult(False, "smtp", error="SMTP error: 421 try later")


class EditingEmailService(EmailService):
    """Tries to edit and delete the quote while its email is going out."""

    def __init__(self, db, quote_id, **kwargs):
        super().__init__(**kwargs)
        self.db = db
        self.quote_id = quote_id
        self.refused = []

    async def dispatch(self, *args, **kwargs):
        bigger = QuoteUpdate(items=[LineItemInput(name="Everything", quantity=1, unit_price=999999)])
        for attempt in (update_quote(self.db, AGENCY_ID, self.quote_id, bigger),
                        delete_quote(self.db, AGENCY_ID, self.quote_id)):
            try:
                await attempt
            except DispatchInProgressError as e:
                self.refused.append(e)
        return await super().dispatch(*args, **kwargs)


def _draft(db, **overrides):
    return _db_op(create_quote(db, AGENCY_ID, QuoteCreate(**quote_payload(**overrides))))


class TestSendQuote:
    """Happy path + resend"""

    def test_send_marks_sent_and_emails_pdf(self, db, mailer):
        quote = _draft(db, email_message="Looking forward to working together")
        sent = _db_op(send_quote(db, AGENCY_ID, quote["id"], QuoteSendRequest(), mailer, sent_by="owner@pixelhouse.co.il"))

        assert sent["status"] == "sent"
        assert sent["sent_at"]
        assert sent["send_count"] == 1
        assert "dispatch_lock_until" not in _db_op(db.quotes.find_one({"id": quote["id"]}))

        message = mailer.outbox[0]
        assert message["to"] == ["dana@falafel-express.co.il"]
        assert quote["quote_number"] in message["subject"]
        assert approval_link(quote["id"]) in message["html"]
        assert approval_link(quote["id"]) in message["text"]
        assert "Looking forward to working together" in message["text"]
        assert message["attachments"][0][0] == f"{quote['quote_number']}.pdf"

    def test_resend_keeps_sent_and_counts(self, db, mailer):
        quote = _draft(db)
        _db_op(send_quote(db, AGENCY_ID, quote["id"], QuoteSendRequest(), mailer))
        again = _db_op(send_quote(db, AGENCY_ID, quote["id"], QuoteSendRequest(attach_pdf=False), mailer))
        assert again["status"] == "sent"
        assert again["send_count"] == 2
        assert again["quote_number"] == quote["quote_number"]
        assert mailer.outbox[1]["attachments"] == []
        actions = [e["action"] for e in _db_op(db.event_log.find({"entity_id": quote["id"]}).to_list(10))]
        assert "quote_sent" in actions and "quote_resent" in actions

    def test_request_message_overrides_stored_one(self, db, mailer):
        quote = _draft(db, email_message="stored text")
        _db_op(send_quote(db, AGENCY_ID, quote["id"], QuoteSendRequest(emailMessage="fresh text"), mailer))
        assert "fresh text" in mailer.outbox[0]["text"]
        assert "stored text" not in mailer.outbox[0]["text"]


class TestSendFailures:
    """Nothing is marked sent unless the transport confirmed"""

    def test_failed_dispatch_leaves_draft(self, db):
        quote = _draft(db)
        with pytest.raises(DispatchFailure):
            _db_op(send_quote(db, AGENCY_ID, quote["id"], QuoteSendRequest(), FailingEmailService(transport="smtp")))

        stored = _db_op(db.quotes.find_one({"id": quote["id"]}))
        assert stored["status"] == "draft"
        assert "sent_at" not in stored
        assert stored["last_dispatch_error"] == "SMTP error: 421 try later"
        assert "dispatch_lock_until" not in stored
        event = _db_op(db.event_log.find_one({"entity_id": quote["id"], "action": "quote_send_failed"}))
        assert event is not None

    def test_undeliverable_recipient(self, db, mailer):
        _db_op(db.clients.insert_one({
            "id": "c11e0000-0000-4000-8000-000000000099", "agency_id": AGENCY_ID,
            "name": "No Mail Co", "email": "",
        }))
        quote = _draft(db, recipient_id="c11e0000-0000-4000-8000-000000000099")
        with pytest.raises(ValidationError):
            _db_op(send_quote(db, AGENCY_ID, quote["id"], QuoteSendRequest(), mailer))
        assert mailer.outbox == []

    def test_terminal_quote_not_resent(self, db, mailer):
        quote = _draft(db)
        _db_op(send_quote(db, AGENCY_ID, quote["id"], QuoteSendRequest(), mailer))
        _db_op(reject_quote(db, quote["id"]))
        with pytest.raises(AlreadyProcessedError):
            _db_op(send_quote(db, AGENCY_ID, quote["id"], QuoteSendRequest(), mailer))

    def test_other_agency_cannot_send(self, db, mailer):
        quote = _draft(db)
        with pytest.raises(NotFoundError):
            _db_op(send_quote(db, OTHER_AGENCY_ID, quote["id"], QuoteSendRequest(), mailer))


class TestConcurrentSend:
    """Two concurrent sends of the same new quote"""

    def test_one_send_wins(self, db, mailer):
        quote = _draft(db)

        async def both():
            return await asyncio.gather(
                send_quote(db, AGENCY_ID, quote["id"], QuoteSendRequest(), mailer),
                send_quote(db, AGENCY_ID, quote["id"], QuoteSendRequest(), mailer),
                return_exceptions=True,
            )

        results = _db_op(both())
        winners = [r for r in results if isinstance(r, dict)]
        losers = [r for r in results if isinstance(r, DispatchInProgressError)]
        assert len(winners) == 1 and len(losers) == 1
        assert winners[0]["quote_number"] == quote["quote_number"]
        assert winners[0]["send_count"] == 1
        assert len(mailer.outbox) == 1
        assert _db_op(db.quotes.count_documents({"quote_number": quote["quote_number"]})) == 1


class TestEditsDuringSend:
    """The emailed document is the one marked sent"""

    def test_edit_and_delete_refused_while_sending(self, db):
        quote = _draft(db)
        mailer = EditingEmailService(db, quote["id"], transport="mock")
        sent = _db_op(send_quote(db, AGENCY_ID, quote["id"], QuoteSendRequest(), mailer))

        assert len(mailer.refused) == 2
        assert len(mailer.outbox) == 1
        assert "₪295.00" in mailer.outbox[0]["text"]
        assert sent["status"] == "sent"
        assert sent["total_amount"] == 29500
        stored = _db_op(db.quotes.find_one({"id": quote["id"]}))
        assert stored["total_amount"] == 29500
        assert "dispatch_lock_until" not in stored

    def test_edit_allowed_once_lease_expired(self, db):
        quote = _draft(db)
        _db_op(db.quotes.update_one(
            {"id": quote["id"]}, {"$set": {"dispatch_lock_until": "2020-01-01T00:00:00+00:00"}}
        ))
        updated = _db_op(update_quote(db, AGENCY_ID, quote["id"], QuoteUpdate(title="Landing page")))
        assert updated["title"] == "Landing page"
        assert "_id" not in updated
        _db_op(delete_quote(db, AGENCY_ID, quote["id"]))
        assert _db_op(db.quotes.find_one({"id": quote["id"]})) is None


class TestRenderTimeout:
    def test_slow_render_fails_without_sending(self, db, mailer, monkeypatch):
        def slow_render(*args, **kwargs):
            time.sleep(0.5)
            return b"%PDF-1.4"

        monkeypatch.setattr(quote_delivery, "render_quote_pdf", slow_render)
        monkeypatch.setattr(quote_delivery, "RENDER_TIMEOUT_SECONDS", 0.05)
        quote = _draft(db)
        with pytest.raises(RenderError):
            _db_op(send_quote(db, AGENCY_ID, quote["id"], QuoteSendRequest(), mailer))

        stored = _db_op(db.quotes.find_one({"id": quote["id"]}))
        assert stored["status"] == "draft"
        assert "dispatch_lock_until" not in stored
        assert mailer.outbox == []


class TestManualMarkSent:
    def test_mark_sent_without_email(self, db, mailer):
        quote = _draft(db)
        sent = _db_op(mark_sent(db, AGENCY_ID, quote["id"]))
        assert sent["status"] == "sent"
        assert sent["send_count"] == 0
        assert mailer.outbox == []


class TestEmailContent:
    def test_user_text_is_escaped_in_html(self, db):
        quote = _draft(db, title="<script>alert(1)</script>")
        branding = AgencyBranding(name="Pixel House")
        subject, html_body, text_body = build_quote_email(quote, branding, "<b>hi</b>")
        assert "<script>" not in html_body
        assert "&lt;b&gt;hi&lt;/b&gt;" in html_body
        assert "₪295.00" in text_body

    def test_logo_data_uri_decoded(self):
        assert _db_op(load_logo_bytes("data:image/png;base64,iVBORw0KGgo=")) == b"\x89PNG\r\n\x1a\n"
        assert _db_op(load_logo_bytes(None)) is None
        assert _db_op(load_logo_bytes("ftp://logo")) is None
