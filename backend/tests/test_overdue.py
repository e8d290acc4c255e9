# Overview: Pytest coverage for the overdue scan.

"""
Overdue Scan Tests

Covers:
- Past-due documents with a balance move to overdue with one reminder
- Re-running the scan is a no-op
- Paid, cancelled, draft and not-yet-due documents are skipped
- Eligibility is re-checked at transition time
"""

from datetime import timedelta
from decimal import Decimal

from docledger.models import LedgerEvent
from docledger.services import allocation_service, document_service, lifecycle_service, overdue_service
from docledger.time_utils import today


class TestScanOverdue:
    def test_past_due_invoice_marked_once(self, db_session, make_document, publisher, past_due_dates):
        issue_date, due_date = past_due_dates
        doc = make_document("1000.00", issue_date=issue_date, due_date=due_date)

        assert overdue_service.scan_overdue() == 1
        doc = document_service.get_document(doc.id)
        assert doc.status == "overdue"

        reminders = publisher.of_type("document.overdue")
        assert len(reminders) == 1
        assert reminders[0]["payload"]["balance_amount"] == "1000.00"
        assert reminders[0]["payload"]["due_date"] == due_date.isoformat()
        assert reminders[0]["idempotency_key"] == f"{doc.id}:document.overdue:{due_date.isoformat()}:1"

        assert overdue_service.scan_overdue() == 0
        assert len(publisher.of_type("document.overdue")) == 1
        assert db_session.query(LedgerEvent).filter_by(event_type="document.overdue").count() == 1

    def test_skips_ineligible_documents(self, db_session, make_document, publisher, past_due_dates):
        issue_date, due_date = past_due_dates
        paid = make_document("10.00", issue_date=issue_date, due_date=due_date)
        allocation_service.create_full_payment(paid.id, method="CASH")
        cancelled = make_document("10.00", issue_date=issue_date, due_date=due_date)
        lifecycle_service.cancel_document(cancelled.id, "written off")
        make_document("10.00", issue_date=issue_date, due_date=due_date, issue=False)
        make_document("10.00", issue_date=issue_date, due_date=today())
        make_document("10.00", document_type="QUOTATION", issue_date=issue_date, due_date=due_date)

        assert overdue_service.find_overdue_candidates() == []
        assert overdue_service.scan_overdue() == 0

    def test_partially_paid_goes_overdue_then_paid(self, db_session, make_document, publisher, past_due_dates):
        issue_date, due_date = past_due_dates
        doc = make_document("100.00", document_type="SALE", issue_date=issue_date, due_date=due_date)
        allocation_service.create_partial_payment(doc.id, "40.00", method="CASH")

        assert overdue_service.scan_overdue() == 1
        doc = document_service.get_document(doc.id)
        assert doc.status == "overdue"
        assert doc.balance_amount == Decimal("60.00")

        allocation_service.create_partial_payment(doc.id, "60.00", method="CASH")
        doc = document_service.get_document(doc.id)
        assert doc.status == "paid"

    def test_second_reminder_in_same_due_cycle_gets_next_key(
        self, db_session, make_document, publisher, past_due_dates
    ):
        issue_date, due_date = past_due_dates
        doc = make_document("50.00", issue_date=issue_date, due_date=due_date)
        assert overdue_service.scan_overdue() == 1

        allocation = allocation_service.create_full_payment(doc.id, method="CASH")
        allocation_service.reverse_allocation(allocation.id, "bounced")
        assert document_service.get_document(doc.id).status == "sent"

        assert overdue_service.scan_overdue() == 1
        keys = [e["idempotency_key"] for e in publisher.of_type("document.overdue")]
        assert keys == [
            f"{doc.id}:document.overdue:{due_date.isoformat()}:1",
            f"{doc.id}:document.overdue:{due_date.isoformat()}:2",
        ]

    def test_as_of_date(self, db_session, make_document, publisher):
        due = today() + timedelta(days=10)
        make_document("10.00", due_date=due)

        assert overdue_service.scan_overdue(as_of=due) == 0
        assert overdue_service.scan_overdue(as_of=(due + timedelta(days=1)).isoformat()) == 1

    def test_eligibility_rechecked_under_lock(self, db_session, make_document, publisher, past_due_dates):
        issue_date, due_date = past_due_dates
        doc = make_document("10.00", issue_date=issue_date, due_date=due_date)
        assert [d.id for d in overdue_service.find_overdue_candidates()] == [doc.id]

        # Paid between selection and transition
        allocation_service.create_full_payment(doc.id, method="CASH")

        assert overdue_service._mark_overdue(doc.id, today()) is None
        assert document_service.get_document(doc.id).status == "paid"
