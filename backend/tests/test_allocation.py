# Overview: Pytest coverage for the payment pool and allocation engine.

"""
Allocation Engine Tests

Covers:
- Payments recorded without a document
- Allocation capacity on both sides (payment unallocated, document balance)
- Payment status derivation and workflow moves
- Atomic receive-and-allocate (full / partial payment)
- Reversal and reallocation as compensating rows
- One payment split across several documents, all or nothing
- Concurrent allocations never overdraw a document
- Publication failures never roll back the ledger
"""

import threading
from decimal import Decimal

import pytest
from docledger import create_app
from docledger.errors import (
    AllocationNotFound,
    ExceedsBalance,
    IllegalTransition,
    LedgerValidationError,
    OverAllocation,
)
from docledger.extensions import db
from docledger.filters import AllocationFilter
from docledger.models import Allocation, LedgerEvent, Payment
from docledger.services import (
    allocation_service,
    document_service,
    ledger_service,
    lifecycle_service,
    payment_service,
)
from docledger.services.allocation_service import derive_payment_status


def receive(amount, payer_ref="CUST-1", **kwargs):
    return payment_service.receive_payment(
        payer_ref=payer_ref, amount=amount, method="BANK_TRANSFER", **kwargs
    )


class FailingPublisher:
    def publish(self, event):
        raise ConnectionError("event bus unavailable")


class TestPaymentStatusRule:
    def test_derivation(self):
        total = Decimal("100.00")
        assert derive_payment_status(total, Decimal("0")) == "UNPAID"
        assert derive_payment_status(total, Decimal("40.00")) == "PARTIALLY_PAID"
        assert derive_payment_status(total, Decimal("99.99")) == "PAID"
        assert derive_payment_status(total, Decimal("100.00")) == "PAID"
        assert derive_payment_status(total, Decimal("120.00")) == "OVERPAID"


class TestReceivePayment:
    """Payments enter the pool unallocated."""

    def test_receive_without_document(self, db_session, publisher):
        payment = receive("500.00")

        assert payment.payment_number.startswith("PAY-")
        assert payment.payment_number.endswith("-0001")
        assert payment.amount == Decimal("500.00")
        assert payment.allocated_amount == Decimal("0.00")
        assert payment.unallocated_amount == Decimal("500.00")

        received = publisher.of_type("payment.received")
        assert len(received) == 1
        assert received[0]["idempotency_key"] == f"payment-{payment.id}:payment.received:1"

    def test_rejects_bad_input(self, db_session, publisher):
        with pytest.raises(LedgerValidationError):
            receive("0")
        with pytest.raises(LedgerValidationError):
            receive("-5.00")
        with pytest.raises(LedgerValidationError):
            payment_service.receive_payment(payer_ref="CUST-1", amount="5.00", method="BITCOIN")
        with pytest.raises(LedgerValidationError):
            receive("5.00", payer_ref="")
        assert db_session.query(Payment).count() == 0

    def test_payer_unallocated(self, db_session, publisher):
        receive("50.00")
        receive("25.00")
        receive("10.00", payer_ref="OTHER")

        summary = payment_service.get_payer_unallocated("CUST-1")
        assert summary["total_unallocated"] == "75.00"
        assert len(summary["payments"]) == 2


class TestAllocate:
    """Capacity checks and status updates."""

    def test_one_payment_across_two_documents(self, db_session, make_document, publisher):
        doc_a = make_document("300.00")
        doc_b = make_document("250.00")
        payment = receive("500.00")

        allocation_service.allocate(payment.id, doc_a.id, "300.00")
        doc_a = document_service.get_document(doc_a.id)
        payment = payment_service.get_payment(payment.id)

        assert doc_a.payment_status == "PAID"
        assert doc_a.status == "paid"
        assert doc_a.balance_amount == Decimal("0.00")
        assert payment.unallocated_amount == Decimal("200.00")

        allocation_service.allocate(payment.id, doc_b.id, "200.00")
        doc_b = document_service.get_document(doc_b.id)
        payment = payment_service.get_payment(payment.id)

        assert doc_b.payment_status == "PARTIALLY_PAID"
        assert doc_b.status == "partially_paid"
        assert doc_b.balance_amount == Decimal("50.00")
        assert payment.unallocated_amount == Decimal("0.00")

        with pytest.raises(OverAllocation) as exc:
            allocation_service.allocate(payment.id, doc_b.id, "1.00")
        assert exc.value.details["unallocated_amount"] == "0.00"

        assert len(publisher.of_type("document.paid")) == 1
        assert allocation_service.check_balances(doc_a.id)
        assert allocation_service.check_balances(doc_b.id)

    def test_allocation_cannot_exceed_document_balance(self, db_session, make_document, publisher):
        doc = make_document("100.00")
        payment = receive("500.00")

        with pytest.raises(OverAllocation) as exc:
            allocation_service.allocate(payment.id, doc.id, "150.00")
        assert exc.value.details["balance_amount"] == "100.00"
        assert db_session.query(Allocation).count() == 0

    def test_overpayment_allowed_by_policy(self, app, db_session, make_document, publisher):
        app.config["LEDGER_ALLOW_OVERPAYMENT"] = True
        doc = make_document("100.00")
        payment = receive("150.00")

        allocation_service.allocate(payment.id, doc.id, "150.00")
        doc = document_service.get_document(doc.id)

        assert doc.payment_status == "OVERPAID"
        assert doc.status == "paid"
        assert doc.paid_amount == Decimal("150.00")
        assert doc.balance_amount == Decimal("0.00")

    def test_documents_that_cannot_take_payments(self, db_session, make_document, publisher):
        payment = receive("100.00")
        draft = make_document("10.00", issue=False)
        quote = make_document("10.00", document_type="QUOTATION")
        cancelled = make_document("10.00")
        lifecycle_service.cancel_document(cancelled.id, "voided")

        for doc in (draft, quote, cancelled):
            with pytest.raises(IllegalTransition):
                allocation_service.allocate(payment.id, doc.id, "5.00")

    def test_currency_mismatch(self, db_session, make_document, publisher):
        doc = make_document("100.00", currency="EUR")
        payment = receive("100.00")

        with pytest.raises(LedgerValidationError):
            allocation_service.allocate(payment.id, doc.id, "100.00")

    def test_partial_then_rest_pays_sale(self, db_session, make_document, publisher):
        sale = make_document("90.00", document_type="SALE")
        payment = receive("90.00")

        allocation_service.allocate(payment.id, sale.id, "30.00")
        allocation_service.allocate(payment.id, sale.id, "60.00")
        sale = document_service.get_document(sale.id)

        assert sale.status == "paid"
        assert sale.paid_amount == Decimal("90.00")
        assert allocation_service.check_balances(sale.id)


class TestPayDocument:
    """Receive and allocate in one transaction."""

    def test_full_payment(self, db_session, make_document, publisher):
        doc = make_document("215.00")

        allocation = allocation_service.create_full_payment(doc.id, method="CARD")
        doc = document_service.get_document(doc.id)
        payment = payment_service.get_payment(allocation.payment_id)

        assert allocation.amount == Decimal("215.00")
        assert payment.payer_ref == "CUST-1"
        assert payment.unallocated_amount == Decimal("0.00")
        assert doc.status == "paid"
        assert [e["event_type"] for e in publisher.events[-3:]] == [
            "payment.received",
            "payment.allocated",
            "document.paid",
        ]

    def test_full_payment_on_settled_document(self, db_session, make_document, publisher):
        doc = make_document("20.00")
        allocation_service.create_full_payment(doc.id, method="CASH")

        with pytest.raises(ExceedsBalance):
            allocation_service.create_full_payment(doc.id, method="CASH")
        assert db_session.query(Payment).count() == 1

    def test_partial_payment_over_balance(self, db_session, make_document, publisher):
        doc = make_document("20.00")

        with pytest.raises(ExceedsBalance) as exc:
            allocation_service.create_partial_payment(doc.id, "20.50", method="CASH")
        assert exc.value.details["balance_amount"] == "20.00"
        assert db_session.query(Payment).count() == 0

    def test_partial_payment_equal_to_balance(self, db_session, make_document, publisher):
        doc = make_document("20.00")

        allocation_service.create_partial_payment(doc.id, "5.00", method="CASH")
        allocation_service.create_partial_payment(doc.id, "15.00", method="CASH", payer_ref="GUARANTOR")
        doc = document_service.get_document(doc.id)

        assert doc.status == "paid"
        assert doc.payment_status == "PAID"
        payers = sorted(p.payer_ref for p in db_session.query(Payment).all())
        assert payers == ["CUST-1", "GUARANTOR"]


class TestReversal:
    """Reversal and reallocation never touch existing rows."""

    def test_reverse_restores_both_sides(self, db_session, make_document, publisher):
        doc = make_document("300.00")
        payment = receive("300.00")
        allocation = allocation_service.allocate(payment.id, doc.id, "300.00")

        reversal = allocation_service.reverse_allocation(allocation.id, "posted to wrong invoice")
        doc = document_service.get_document(doc.id)
        payment = payment_service.get_payment(payment.id)

        assert reversal.kind == "REVERSAL"
        assert reversal.reverses_allocation_id == allocation.id
        assert doc.status == "sent"
        assert doc.payment_status == "UNPAID"
        assert doc.balance_amount == Decimal("300.00")
        assert payment.unallocated_amount == Decimal("300.00")

        original = db_session.get(Allocation, allocation.id)
        assert original.kind == "ALLOCATION"
        assert original.amount == Decimal("300.00")
        assert len(publisher.of_type("allocation.reversed")) == 1

    def test_partial_reverse_reopens_paid_document(self, db_session, make_document, publisher):
        doc = make_document("300.00")
        payment = receive("300.00")
        first = allocation_service.allocate(payment.id, doc.id, "100.00")
        allocation_service.allocate(payment.id, doc.id, "200.00")

        allocation_service.reverse_allocation(first.id, "bounced")
        doc = document_service.get_document(doc.id)

        assert doc.status == "partially_paid"
        assert doc.payment_status == "PARTIALLY_PAID"
        assert doc.balance_amount == Decimal("100.00")

    def test_reverse_rules(self, db_session, make_document, publisher):
        doc = make_document("50.00")
        payment = receive("50.00")
        allocation = allocation_service.allocate(payment.id, doc.id, "50.00")

        with pytest.raises(LedgerValidationError):
            allocation_service.reverse_allocation(allocation.id, "")

        reversal = allocation_service.reverse_allocation(allocation.id, "refund")
        with pytest.raises(LedgerValidationError):
            allocation_service.reverse_allocation(allocation.id, "again")
        with pytest.raises(LedgerValidationError):
            allocation_service.reverse_allocation(reversal.id, "undo the undo")
        with pytest.raises(AllocationNotFound):
            allocation_service.reverse_allocation(9999, "missing")

    def test_reallocate_moves_money(self, db_session, make_document, publisher):
        doc_a = make_document("300.00")
        doc_b = make_document("250.00")
        payment = receive("300.00")
        allocation = allocation_service.allocate(payment.id, doc_a.id, "300.00")

        moved = allocation_service.reallocate(allocation.id, doc_b.id, "120.00", reason="split across invoices")
        doc_a = document_service.get_document(doc_a.id)
        doc_b = document_service.get_document(doc_b.id)
        payment = payment_service.get_payment(payment.id)

        assert moved.document_id == doc_b.id
        assert moved.amount == Decimal("120.00")
        assert doc_a.paid_amount == Decimal("180.00")
        assert doc_a.status == "partially_paid"
        assert doc_b.paid_amount == Decimal("120.00")
        assert doc_b.status == "partially_paid"
        assert payment.allocated_amount == Decimal("300.00")

        rows, total = allocation_service.list_allocations(AllocationFilter(document_id=doc_a.id))
        assert total == 3
        assert [(r.kind, r.amount) for r in rows] == [
            ("ALLOCATION", Decimal("300.00")),
            ("REVERSAL", Decimal("300.00")),
            ("ALLOCATION", Decimal("180.00")),
        ]

    def test_reallocate_is_atomic(self, db_session, make_document, publisher):
        doc_a = make_document("100.00")
        target = make_document("100.00", issue=False)
        payment = receive("100.00")
        allocation = allocation_service.allocate(payment.id, doc_a.id, "100.00")

        with pytest.raises(IllegalTransition):
            allocation_service.reallocate(allocation.id, target.id, reason="move")

        db_session.expire_all()
        doc_a = document_service.get_document(doc_a.id)
        assert doc_a.status == "paid"
        assert db_session.query(Allocation).filter_by(kind="REVERSAL").count() == 0

    def test_reallocate_more_than_original(self, db_session, make_document, publisher):
        doc_a = make_document("100.00")
        doc_b = make_document("100.00")
        payment = receive("200.00")
        allocation = allocation_service.allocate(payment.id, doc_a.id, "50.00")

        with pytest.raises(OverAllocation):
            allocation_service.reallocate(allocation.id, doc_b.id, "60.00", reason="move")


class TestEventPublication:
    """The outbox keeps events that failed to publish."""

    def test_publish_failure_keeps_ledger_change(self, app, db_session, make_document, publisher):
        doc = make_document("40.00")
        app.extensions["ledger_event_publisher"] = FailingPublisher()

        allocation_service.create_full_payment(doc.id, method="CASH")

        doc = document_service.get_document(doc.id)
        assert doc.status == "paid"
        pending = ledger_service.get_pending_events()
        assert {e.event_type for e in pending} == {"payment.received", "payment.allocated", "document.paid"}

        app.extensions["ledger_event_publisher"] = publisher
        assert ledger_service.republish_pending_events() == 3
        assert ledger_service.get_pending_events() == []
        assert db_session.query(LedgerEvent).filter(LedgerEvent.published_at.is_(None)).count() == 0


class TestAllocateMany:
    """One payment split across several documents in one transaction."""

    def test_split_across_documents(self, db_session, make_document, publisher):
        doc_a = make_document("300.00")
        doc_b = make_document("250.00")
        payment = receive("500.00")

        created = allocation_service.allocate_many(payment.id, [(doc_b.id, "200.00"), (doc_a.id, "300.00")])

        assert [(a.document_id, a.amount) for a in created] == [
            (doc_b.id, Decimal("200.00")),
            (doc_a.id, Decimal("300.00")),
        ]
        assert document_service.get_document(doc_a.id).status == "paid"
        assert document_service.get_document(doc_b.id).balance_amount == Decimal("50.00")
        assert payment_service.get_payment(payment.id).unallocated_amount == Decimal("0.00")
        assert len(publisher.of_type("payment.allocated")) == 2
        assert len(publisher.of_type("document.paid")) == 1

    def test_any_document_over_balance_writes_nothing(self, db_session, make_document, publisher):
        doc_a = make_document("300.00")
        doc_b = make_document("100.00")
        payment = receive("500.00")

        with pytest.raises(OverAllocation) as exc:
            allocation_service.allocate_many(payment.id, [(doc_a.id, "300.00"), (doc_b.id, "150.00")])

        assert exc.value.details["document_id"] == doc_b.id
        assert db_session.query(Allocation).count() == 0
        assert document_service.get_document(doc_a.id).status == "sent"
        assert payment_service.get_payment(payment.id).allocated_amount == Decimal("0.00")

    def test_shares_for_one_document_are_summed(self, db_session, make_document, publisher):
        doc = make_document("100.00")
        payment = receive("500.00")

        with pytest.raises(OverAllocation):
            allocation_service.allocate_many(payment.id, [
                {"document_id": doc.id, "amount": "60.00"},
                {"document_id": doc.id, "amount": "60.00"},
            ])
        assert db_session.query(Allocation).count() == 0

    def test_total_over_unallocated(self, db_session, make_document, publisher):
        doc_a = make_document("300.00")
        doc_b = make_document("300.00")
        payment = receive("400.00")

        with pytest.raises(OverAllocation) as exc:
            allocation_service.allocate_many(payment.id, [(doc_a.id, "300.00"), (doc_b.id, "200.00")])
        assert exc.value.details["requested"] == "500.00"
        assert db_session.query(Allocation).count() == 0

    def test_draft_in_the_split_rejects_all(self, db_session, make_document, publisher):
        doc = make_document("100.00")
        draft = make_document("100.00", issue=False)
        payment = receive("200.00")

        with pytest.raises(IllegalTransition):
            allocation_service.allocate_many(payment.id, [(doc.id, "100.00"), (draft.id, "50.00")])
        assert db_session.query(Allocation).count() == 0

    def test_bad_split_input(self, db_session, publisher):
        payment = receive("10.00")

        with pytest.raises(LedgerValidationError):
            allocation_service.allocate_many(payment.id, [])
        with pytest.raises(LedgerValidationError):
            allocation_service.allocate_many(payment.id, [{"amount": "5.00"}])
        with pytest.raises(LedgerValidationError):
            allocation_service.allocate_many(payment.id, [(1, "-5.00")])


@pytest.fixture
def file_app(tmp_path):
    """App on a file-backed SQLite database so threads share real connections."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': f"sqlite:///{tmp_path / 'ledger.sqlite3'}",
        'SQLALCHEMY_ENGINE_OPTIONS': {'connect_args': {'timeout': 30}},
        'LEDGER_RETRY_ATTEMPTS': 5,
    })
    with app.app_context():
        db.create_all()
    yield app
    with app.app_context():
        db.session.remove()
        db.drop_all()
        db.engine.dispose()


class TestConcurrentAllocation:
    def test_two_allocations_cannot_both_pass_the_balance_check(self, file_app):
        with file_app.app_context():
            doc = document_service.create_document(
                document_type="INVOICE",
                counterparty_ref="CUST-1",
                items=[{"product_ref": "P-1", "quantity": "1", "unit_price": "100.00"}],
            )
            lifecycle_service.transition_document(doc.id, "send")
            payment_ids = [receive("60.00").id, receive("60.00").id]
            document_id = doc.id
            db.session.remove()

        barrier = threading.Barrier(len(payment_ids))
        outcomes = []
        lock = threading.Lock()

        def worker(payment_id):
            with file_app.app_context():
                barrier.wait()
                try:
                    allocation_service.allocate(payment_id, document_id, "60.00")
                    result = "ok"
                except OverAllocation:
                    result = "OverAllocation"
                except Exception as exc:
                    result = type(exc).__name__
                finally:
                    db.session.remove()
                with lock:
                    outcomes.append(result)

        threads = [threading.Thread(target=worker, args=(pid,)) for pid in payment_ids]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=60)

        assert sorted(outcomes) == ["OverAllocation", "ok"]

        with file_app.app_context():
            doc = document_service.get_document(document_id)
            assert doc.paid_amount == Decimal("60.00")
            assert doc.balance_amount == Decimal("40.00")
            assert doc.status == "partially_paid"
            assert allocation_service.check_balances(document_id)
            allocated = [payment_service.get_payment(pid).allocated_amount for pid in payment_ids]
            assert sorted(allocated) == [Decimal("0.00"), Decimal("60.00")]
            assert all(
                p.allocated_amount <= p.amount
                for p in db.session.query(Payment).all()
            )
