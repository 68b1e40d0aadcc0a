"""
AgencyDesk CRM - Quote state machine tests
Transitions map, expiry overlay, conditional updates, send lease.
Run: cd backend && pytest tests/test_quote_state_machine.py -v
"""

from datetime import date

import pytest

from models.quote import QuoteCreate
from services.quote_builder import create_quote
from services.quote_errors import (
    AlreadyProcessedError,
    DispatchInProgressError,
    ExpiredError,
    NotFoundError,
    StateConflictError,
)
from services.quote_state_machine import (
    VALID_QUOTE_TRANSITIONS,
    approve_quote,
    claim_dispatch,
    effective_status,
    is_expired,
    mark_dispatch_failed,
    mark_quote_sent,
    reject_quote,
    release_dispatch,
    validate_quote_transition,
)
from tests.helpers import AGENCY_ID, OTHER_AGENCY_ID, _db_op, past_date, quote_payload

SIGNATURE = {"image": "data:image/png;base64,AAAA", "signed_at": "2026-01-01T10:00:00+00:00"}


def _sent_quote(db, **overrides):
    quote = _db_op(create_quote(db, AGENCY_ID, QuoteCreate(**quote_payload(**overrides))))
    return _db_op(mark_quote_sent(db, quote["id"], AGENCY_ID, ["dana@falafel-express.co.il"]))


class TestTransitionMap:
    """Pure transition rules"""

    def test_terminal_states_have_no_exit(self):
        assert VALID_QUOTE_TRANSITIONS["approved"] == []
        assert VALID_QUOTE_TRANSITIONS["rejected"] == []

    def test_valid_transitions(self):
        assert validate_quote_transition("q", "draft", "sent")
        assert validate_quote_transition("q", "sent", "approved")
        assert validate_quote_transition("q", "sent", "rejected")
        assert validate_quote_transition("q", "sent", "sent")

    def test_draft_cannot_be_approved(self):
        with pytest.raises(StateConflictError):
            validate_quote_transition("q", "draft", "approved")

    def test_terminal_raises_already_processed(self):
        for status in ("approved", "rejected"):
            with pytest.raises(AlreadyProcessedError):
                validate_quote_transition("q", status, "sent")


class TestExpiryOverlay:
    """expired = sent AND valid_until < today, computed at read time"""

    def test_sent_past_date_is_expired(self):
        quote = {"status": "sent", "valid_until": "2026-03-01"}
        assert is_expired(quote, date(2026, 3, 2))
        assert effective_status(quote, date(2026, 3, 2)) == "expired"

    def test_valid_until_is_inclusive(self):
        quote = {"status": "sent", "valid_until": "2026-03-01"}
        assert not is_expired(quote, date(2026, 3, 1))
        assert effective_status(quote, date(2026, 3, 1)) == "sent"

    def test_only_sent_quotes_expire(self):
        for status in ("draft", "approved", "rejected"):
            quote = {"status": status, "valid_until": "2020-01-01"}
            assert effective_status(quote, date(2026, 1, 1)) == status


class TestConditionalTransitions:
    """Single conditional update per transition"""

    def test_sent_stamps(self, db):
        quote = _sent_quote(db)
        assert quote["status"] == "sent"
        assert quote["sent_at"]
        assert quote["send_count"] == 1
        assert quote["sent_to"] == ["dana@falafel-express.co.il"]

    def test_manual_mark_does_not_count_a_send(self, db):
        quote = _db_op(create_quote(db, AGENCY_ID, QuoteCreate(**quote_payload())))
        sent = _db_op(mark_quote_sent(db, quote["id"], AGENCY_ID, [], manual=True))
        assert sent["status"] == "sent"
        assert sent["send_count"] == 0

    def test_approve_writes_signature_atomically(self, db):
        quote = _sent_quote(db)
        approved = _db_op(approve_quote(db, quote["id"], SIGNATURE))
        assert approved["status"] == "approved"
        assert approved["signature"] == SIGNATURE
        assert approved["approved_at"]

    def test_second_approval_already_processed(self, db):
        quote = _sent_quote(db)
        _db_op(approve_quote(db, quote["id"], SIGNATURE))
        with pytest.raises(AlreadyProcessedError):
            _db_op(approve_quote(db, quote["id"], SIGNATURE))
        with pytest.raises(AlreadyProcessedError):
            _db_op(reject_quote(db, quote["id"], "changed my mind"))

    def test_expired_cannot_be_approved_but_can_be_rejected(self, db):
        quote = _sent_quote(db, valid_until=past_date().isoformat())
        with pytest.raises(ExpiredError):
            _db_op(approve_quote(db, quote["id"], SIGNATURE))
        rejected = _db_op(reject_quote(db, quote["id"], "too late"))
        assert rejected["status"] == "rejected"
        assert rejected["rejection_reason"] == "too late"

    def test_draft_is_not_found_publicly(self, db):
        quote = _db_op(create_quote(db, AGENCY_ID, QuoteCreate(**quote_payload())))
        with pytest.raises(NotFoundError):
            _db_op(approve_quote(db, quote["id"], SIGNATURE))

    def test_malformed_and_unknown_ids(self, db):
        for quote_id in ("not-a-uuid", "../../etc", "6f1c2a55-8f0e-4c55-9c1d-2b7f0c1d9e11"):
            with pytest.raises(NotFoundError):
                _db_op(reject_quote(db, quote_id))

    def test_terminal_quote_cannot_be_resent(self, db):
        quote = _sent_quote(db)
        _db_op(reject_quote(db, quote["id"]))
        with pytest.raises(AlreadyProcessedError):
            _db_op(mark_quote_sent(db, quote["id"], AGENCY_ID, ["dana@falafel-express.co.il"]))


class TestDispatchLease:
    """One send at a time per quote"""

    def test_second_claim_in_progress(self, db):
        quote = _db_op(create_quote(db, AGENCY_ID, QuoteCreate(**quote_payload())))
        _db_op(claim_dispatch(db, quote["id"], AGENCY_ID))
        with pytest.raises(DispatchInProgressError):
            _db_op(claim_dispatch(db, quote["id"], AGENCY_ID))

        _db_op(release_dispatch(db, quote["id"]))
        claimed = _db_op(claim_dispatch(db, quote["id"], AGENCY_ID))
        assert claimed["dispatch_lock_until"]

    def test_release_keeps_a_newer_lease(self, db):
        quote = _db_op(create_quote(db, AGENCY_ID, QuoteCreate(**quote_payload())))
        stale = _db_op(claim_dispatch(db, quote["id"], AGENCY_ID))["dispatch_lock_until"]
        # the first worker stalls past its lease, a second send takes over
        _db_op(db.quotes.update_one(
            {"id": quote["id"]}, {"$set": {"dispatch_lock_until": "2020-01-01T00:00:00+00:00"}}
        ))
        fresh = _db_op(claim_dispatch(db, quote["id"], AGENCY_ID))["dispatch_lock_until"]

        _db_op(release_dispatch(db, quote["id"], stale))
        assert _db_op(db.quotes.find_one({"id": quote["id"]}))["dispatch_lock_until"] == fresh

        _db_op(release_dispatch(db, quote["id"], fresh))
        assert "dispatch_lock_until" not in _db_op(db.quotes.find_one({"id": quote["id"]}))

    def test_changed_document_is_not_marked_sent(self, db):
        quote = _db_op(create_quote(db, AGENCY_ID, QuoteCreate(**quote_payload())))
        with pytest.raises(StateConflictError):
            _db_op(mark_quote_sent(
                db, quote["id"], AGENCY_ID, ["dana@falafel-express.co.il"],
                expected_updated_at="2000-01-01T00:00:00+00:00",
            ))
        assert _db_op(db.quotes.find_one({"id": quote["id"]}))["status"] == "draft"

    def test_manual_mark_refused_while_sending(self, db):
        quote = _db_op(create_quote(db, AGENCY_ID, QuoteCreate(**quote_payload())))
        _db_op(claim_dispatch(db, quote["id"], AGENCY_ID))
        with pytest.raises(DispatchInProgressError):
            _db_op(mark_quote_sent(db, quote["id"], AGENCY_ID, [], manual=True))
        assert _db_op(db.quotes.find_one({"id": quote["id"]}))["status"] == "draft"

    def test_expired_lease_can_be_taken(self, db):
        quote = _db_op(create_quote(db, AGENCY_ID, QuoteCreate(**quote_payload())))
        _db_op(db.quotes.update_one(
            {"id": quote["id"]}, {"$set": {"dispatch_lock_until": "2020-01-01T00:00:00+00:00"}}
        ))
        assert _db_op(claim_dispatch(db, quote["id"], AGENCY_ID))

    def test_claim_scoped_to_agency(self, db):
        quote = _db_op(create_quote(db, AGENCY_ID, QuoteCreate(**quote_payload())))
        with pytest.raises(NotFoundError):
            _db_op(claim_dispatch(db, quote["id"], OTHER_AGENCY_ID))

    def test_failed_dispatch_keeps_status(self, db):
        quote = _db_op(create_quote(db, AGENCY_ID, QuoteCreate(**quote_payload())))
        _db_op(mark_dispatch_failed(db, quote["id"], "SMTP error: 550"))
        stored = _db_op(db.quotes.find_one({"id": quote["id"]}))
        assert stored["status"] == "draft"
        assert stored["last_dispatch_error"] == "SMTP error: 550"


class TestReturnedDocuments:
    """Conditional updates hand back the whole updated quote, without Mongo's _id"""

    def test_claim_sent_and_approved_documents(self, db):
        quote = _db_op(create_quote(db, AGENCY_ID, QuoteCreate(**quote_payload())))
        claimed = _db_op(claim_dispatch(db, quote["id"], AGENCY_ID))
        assert "_id" not in claimed
        assert claimed["quote_number"] == quote["quote_number"]

        sent = _db_op(mark_quote_sent(
            db, quote["id"], AGENCY_ID, ["dana@falafel-express.co.il"],
            expected_updated_at=claimed["updated_at"],
        ))
        assert "_id" not in sent
        assert sent["status"] == "sent"
        assert sent["total_amount"] == 29500

        approved = _db_op(approve_quote(db, quote["id"], dict(SIGNATURE)))
        assert "_id" not in approved
        assert approved["status"] == "approved"
        assert approved["signature"]["image"] == SIGNATURE["image"]
