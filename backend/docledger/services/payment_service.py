# Overview: Service-layer operations for the payment pool; money received independently of documents.

"""
Payment Pool Service

WHY: Cash often arrives before the payer says which document it covers. A
payment is recorded on receipt with nothing allocated, and sits in the pool
until the allocation engine binds parts of it to documents.

DESIGN PRINCIPLES:
- Payments are separate from documents (linked only through Allocation rows)
- amount is immutable after creation
- allocated_amount is a cache of the signed allocation sum, recomputed in the
  same transaction as every allocation insert
- unallocated_amount = amount - allocated_amount, never negative
"""

from __future__ import annotations

from decimal import Decimal

from flask import current_app
from sqlalchemy import case, func

from ..errors import LedgerValidationError, PaymentNotFound
from ..extensions import db
from ..filters import PaymentFilter
from ..models import Allocation, Payment
from ..money import MoneyError, ZERO, format_money, to_money
from ..time_utils import parse_iso_date, today
from .concurrency import lock_for_update, run_with_retry
from .document_service import next_document_number
from .ledger_service import append_ledger_event, publish_events


# =============================================================================
# PAYMENT METHODS (CONSTANTS)
# =============================================================================

METHOD_CASH = "CASH"
METHOD_CARD = "CARD"
METHOD_BANK_TRANSFER = "BANK_TRANSFER"
METHOD_CHECK = "CHECK"
METHOD_CREDIT = "CREDIT"

VALID_PAYMENT_METHODS = [
    METHOD_CASH,
    METHOD_CARD,
    METHOD_BANK_TRANSFER,
    METHOD_CHECK,
    METHOD_CREDIT,
]


# =============================================================================
# RECEIPT
# =============================================================================

def _validate_amount(amount) -> Decimal:
    try:
        value = to_money(amount, field="amount")
    except MoneyError as exc:
        raise LedgerValidationError(str(exc))
    if value <= 0:
        raise LedgerValidationError("Payment amount must be positive", details={"amount": str(value)})
    return value


def _receive_locked(
    *,
    payer_ref: str,
    amount: Decimal,
    method: str,
    reference: str | None,
    received_date,
    currency: str,
) -> tuple[Payment, object]:
    """
    Insert a payment and its payment.received event. Caller owns the transaction
    (used by receive_payment and by the atomic receive+allocate helpers).
    """
    number = next_document_number(document_type="PAYMENT", on_date=received_date)
    payment = Payment(
        payment_number=number,
        payer_ref=payer_ref,
        amount=amount,
        currency=currency,
        allocated_amount=ZERO,
        received_date=received_date,
        method=method,
        reference=reference,
    )
    db.session.add(payment)
    db.session.flush()

    ev = append_ledger_event(
        event_type="payment.received",
        entity_type="payment",
        entity_id=payment.id,
        payment_id=payment.id,
        payload={
            "payment_number": payment.payment_number,
            "payer_ref": payer_ref,
            "amount": str(amount),
            "currency": currency,
            "method": method,
        },
    )
    return payment, ev


def validate_method(method: str) -> str:
    if method not in VALID_PAYMENT_METHODS:
        raise LedgerValidationError(
            f"Invalid payment method: {method}. Must be one of {VALID_PAYMENT_METHODS}"
        )
    return method


def normalize_received_date(received_date):
    try:
        return parse_iso_date(received_date) or today()
    except ValueError as exc:
        raise LedgerValidationError(f"Invalid received_date: {exc}")


def normalize_receipt(*, payer_ref, amount, method, received_date=None, currency=None) -> dict:
    """Validate receipt inputs before any write. Returns the normalized values."""
    if not payer_ref:
        raise LedgerValidationError("payer_ref is required")
    currency = (currency or current_app.config["LEDGER_DEFAULT_CURRENCY"]).upper()
    if len(currency) != 3:
        raise LedgerValidationError(f"Invalid currency code '{currency}'")

    return {
        "payer_ref": str(payer_ref),
        "amount": _validate_amount(amount),
        "method": validate_method(method),
        "received_date": normalize_received_date(received_date),
        "currency": currency,
    }


def receive_payment(
    *,
    payer_ref: str,
    amount,
    method: str,
    reference: str | None = None,
    received_date=None,
    currency: str | None = None,
) -> Payment:
    """
    Record money received from a payer. No document is required.

    Args:
        payer_ref: Counterparty reference of the payer
        amount: Amount received (> 0)
        method: CASH, CARD, BANK_TRANSFER, CHECK, CREDIT
        reference: Bank reference, check number, auth code (optional)
        received_date: Date received (defaults to today)
        currency: ISO code (defaults to LEDGER_DEFAULT_CURRENCY)

    Returns:
        Payment with allocated_amount = 0

    Raises:
        LedgerValidationError: bad amount, method, date or currency
    """
    values = normalize_receipt(
        payer_ref=payer_ref,
        amount=amount,
        method=method,
        received_date=received_date,
        currency=currency,
    )

    def _op():
        payment, ev = _receive_locked(reference=reference, **values)
        db.session.commit()
        return payment, ev

    payment, ev = run_with_retry(_op)
    publish_events([ev])
    return payment


# =============================================================================
# LOOKUP
# =============================================================================

def get_payment_or_404(payment_id: int, lock: bool = False) -> Payment:
    query = db.session.query(Payment).filter(Payment.id == payment_id)
    if lock:
        query = lock_for_update(query)
    payment = query.first()
    if payment is None:
        raise PaymentNotFound(f"Payment {payment_id} not found", details={"payment_id": payment_id})
    return payment


def get_payment(payment_id: int) -> Payment:
    return get_payment_or_404(payment_id)


def list_payments(filters: PaymentFilter | None = None) -> tuple[list[Payment], int]:
    filters = filters or PaymentFilter()
    query = filters.apply(db.session.query(Payment))
    total = query.order_by(None).count()
    return filters.paginate(query).all(), total


# =============================================================================
# REPORTING
# =============================================================================

def get_payment_summary(payment_id: int) -> dict:
    """
    Payment with its allocation trail.

    Returns:
        - payment: Payment details
        - allocations: every ALLOCATION and REVERSAL row, oldest first
        - allocated_amount / unallocated_amount
    """
    payment = get_payment_or_404(payment_id)
    return {
        "payment": payment.to_dict(),
        "allocations": [a.to_dict() for a in payment.allocations],
        "allocated_amount": format_money(payment.allocated_amount),
        "unallocated_amount": format_money(payment.unallocated_amount),
    }


def get_payer_unallocated(payer_ref: str, currency: str | None = None) -> dict:
    """
    Open credit for a payer: payments that still have money to allocate.
    """
    query = db.session.query(Payment).filter(
        Payment.payer_ref == payer_ref,
        Payment.amount > Payment.allocated_amount,
    )
    if currency:
        query = query.filter(Payment.currency == currency.upper())
    payments = query.order_by(Payment.received_date, Payment.id).all()

    total = sum((p.unallocated_amount for p in payments), ZERO)
    return {
        "payer_ref": payer_ref,
        "currency": currency.upper() if currency else None,
        "total_unallocated": format_money(total),
        "payments": [p.to_dict() for p in payments],
    }


def sum_payment_allocations(payment_id: int) -> Decimal:
    """Signed sum of allocation rows for a payment (REVERSAL counts negative)."""
    signed = case((Allocation.kind == "REVERSAL", -Allocation.amount), else_=Allocation.amount)
    value = db.session.query(func.coalesce(func.sum(signed), 0)).filter(
        Allocation.payment_id == payment_id
    ).scalar()
    return to_money(value or 0)
