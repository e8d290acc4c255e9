# Overview: Pytest coverage for document workflow transitions.

"""
Document Lifecycle Tests

Covers:
- Transition tables per document kind
- Illegal (state, event) pairs rejected
- Ledger-internal events cannot be requested by callers
- Cancellation requires a reason and is never undone
"""

import pytest
from docledger.errors import IllegalTransition, LedgerValidationError
from docledger.services import lifecycle_service as lc


class TestTransitionTables:
    """Pure table lookups; no database needed."""

    def test_issue_event_per_kind(self):
        assert lc.next_status("INVOICE", "draft", "send") == "sent"
        assert lc.next_status("SALE", "draft", "confirm") == "pending"
        assert lc.next_status("ORDER", "draft", "confirm") == "pending"
        assert lc.next_status("QUOTATION", "draft", "send") == "sent"

    def test_sale_cannot_be_sent(self):
        assert not lc.can_transition("SALE", "draft", "send")
        with pytest.raises(IllegalTransition) as exc:
            lc.next_status("SALE", "draft", "send")
        assert exc.value.details == {"document_type": "SALE", "status": "draft", "event": "send"}

    def test_paid_is_terminal_for_user_events(self):
        for event in ("cancel", "send", "confirm", "mark_overdue", "convert"):
            assert not lc.can_transition("INVOICE", "paid", event)

    def test_cancelled_is_terminal_everywhere(self):
        for kind in lc.DOCUMENT_TYPES:
            assert lc.is_terminal(kind, "cancelled")

    def test_overdue_states(self):
        assert lc.states_allowing("INVOICE", "mark_overdue") == {"sent", "partially_paid"}
        assert lc.states_allowing("SALE", "mark_overdue") == {"pending", "partially_paid"}
        assert lc.states_allowing("QUOTATION", "mark_overdue") == set()

    def test_quotation_flow(self):
        assert lc.next_status("QUOTATION", "sent", "accept") == "accepted"
        assert lc.next_status("QUOTATION", "accepted", "convert") == "converted"
        assert not lc.can_transition("QUOTATION", "sent", "pay")

    def test_only_orders_convert(self):
        assert lc.next_status("ORDER", "pending", "convert") == "converted"
        assert not lc.can_transition("INVOICE", "sent", "convert")

    def test_unknown_kind_rejected(self):
        with pytest.raises(LedgerValidationError):
            lc.can_transition("RECEIPT", "draft", "send")


class TestTransitionDocument:
    """Transitions persisted through the service."""

    def test_send_publishes_event(self, db_session, make_document, publisher):
        doc = make_document("80.00", issue=False)

        sent = lc.transition_document(doc.id, "send")

        assert sent.status == "sent"
        events = publisher.of_type("document.sent")
        assert len(events) == 1
        assert events[0]["payload"]["from_status"] == "draft"
        assert events[0]["payload"]["to_status"] == "sent"

    def test_illegal_event_leaves_status(self, db_session, make_document):
        doc = make_document("80.00")

        with pytest.raises(IllegalTransition):
            lc.transition_document(doc.id, "send")

        db_session.expire_all()
        assert lc.get_documents_by_status("INVOICE", "sent")[0].id == doc.id

    def test_internal_events_rejected(self, db_session, make_document):
        doc = make_document("80.00")

        for event in ("pay", "partial_payment", "mark_overdue", "payment_reversed"):
            with pytest.raises(IllegalTransition):
                lc.transition_document(doc.id, event)

    def test_cancel_requires_reason(self, db_session, make_document):
        doc = make_document("80.00")

        with pytest.raises(LedgerValidationError):
            lc.cancel_document(doc.id, "   ")

        cancelled = lc.cancel_document(doc.id, "customer withdrew")
        assert cancelled.status == "cancelled"
        assert cancelled.cancel_reason == "customer withdrew"
        assert cancelled.cancelled_at is not None

    def test_cancelled_never_resurrected(self, db_session, make_document):
        doc = make_document("80.00", document_type="SALE")
        lc.cancel_document(doc.id, "duplicate")

        for event in ("confirm", "send", "cancel", "convert"):
            with pytest.raises(IllegalTransition):
                lc.transition_document(doc.id, event, reason="retry")

    def test_quotation_accept_and_convert(self, db_session, make_document, publisher):
        quote = make_document("40.00", document_type="QUOTATION")

        lc.transition_document(quote.id, "accept")
        converted = lc.transition_document(quote.id, "convert")

        assert converted.status == "converted"
        assert len(publisher.of_type("document.converted")) == 1

    def test_status_query_validates_status(self, db_session):
        with pytest.raises(LedgerValidationError):
            lc.get_documents_by_status("INVOICE", "pending")
