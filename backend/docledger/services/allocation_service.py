# Overview: Allocation engine; binds payment amounts to document balances and derives payment status.

"""
Allocation Engine

WHY: A payment and a document are linked only through Allocation rows. Both
sides are recomputed purely by summing those rows, so neither side can drift
from the audit trail.

INVARIANTS:
- payment.allocated_amount == signed sum of the payment's allocations
- 0 <= payment.allocated_amount <= payment.amount
- document.paid_amount == signed sum of the document's allocations
- document.balance_amount == max(0, total_amount - paid_amount)
- document.payment_status follows derive_payment_status()
- Allocation rows are never updated or deleted; a reversal is a new REVERSAL
  row that counts negatively

CONCURRENCY:
- Payment row is locked first, then document rows in ascending id order
- Capacity checks happen inside the same transaction as the allocation insert
- version_id on both rows turns a lost update into a retried StaleDataError
"""

from __future__ import annotations

from decimal import Decimal

from flask import current_app
from sqlalchemy import case, func

from ..errors import (
    AllocationNotFound,
    ExceedsBalance,
    IllegalTransition,
    LedgerValidationError,
    OverAllocation,
)
from ..extensions import db
from ..filters import AllocationFilter
from ..models import Allocation, Document, Payment
from ..money import MoneyError, ZERO, format_money, money_equal, non_negative, quantize, to_money
from .concurrency import run_with_retry
from .document_service import get_document_or_404
from .ledger_service import append_ledger_event, publish_events
from .lifecycle_service import (
    EVENT_PARTIAL_PAYMENT,
    EVENT_PAY,
    EVENT_PAYMENT_CLEARED,
    EVENT_PAYMENT_REVERSED,
    PAID,
    apply_event,
    can_transition,
    is_payable,
    states_allowing,
)
from .payment_service import (
    _receive_locked,
    get_payment_or_404,
    normalize_received_date,
    sum_payment_allocations,
    validate_method,
)


# =============================================================================
# CONSTANTS
# =============================================================================

KIND_ALLOCATION = "ALLOCATION"
KIND_REVERSAL = "REVERSAL"

PAYMENT_STATUS_UNPAID = "UNPAID"
PAYMENT_STATUS_PARTIAL = "PARTIALLY_PAID"
PAYMENT_STATUS_PAID = "PAID"
PAYMENT_STATUS_OVERPAID = "OVERPAID"


# =============================================================================
# DERIVATION
# =============================================================================

def derive_payment_status(total_amount: Decimal, paid_amount: Decimal) -> str:
    """
    Four-way payment status rule:
        paid == 0              -> UNPAID
        paid == total (+-0.01) -> PAID
        paid > total           -> OVERPAID
        otherwise              -> PARTIALLY_PAID
    """
    if paid_amount <= 0:
        return PAYMENT_STATUS_UNPAID
    if money_equal(paid_amount, total_amount):
        return PAYMENT_STATUS_PAID
    if paid_amount > total_amount:
        return PAYMENT_STATUS_OVERPAID
    return PAYMENT_STATUS_PARTIAL


def sum_document_allocations(document_id: int) -> Decimal:
    signed = case((Allocation.kind == KIND_REVERSAL, -Allocation.amount), else_=Allocation.amount)
    value = db.session.query(func.coalesce(func.sum(signed), 0)).filter(
        Allocation.document_id == document_id
    ).scalar()
    return to_money(value or 0)


def _fire(document: Document, event: str) -> str | None:
    """Apply a ledger-internal event if the document's table accepts it."""
    if not can_transition(document.document_type, document.status, event):
        return None
    return apply_event(document, event)


def _update_document_payment_status(document: Document) -> bool:
    """
    Recompute paid/balance/payment_status from allocation rows and move the
    workflow state to match. Caller owns the transaction.

    Returns:
        True when the document entered the paid state
    """
    paid = sum_document_allocations(document.id)
    document.paid_amount = paid
    document.balance_amount = non_negative(quantize(document.total_amount - paid))

    status = derive_payment_status(document.total_amount, paid)
    document.payment_status = status

    if status in (PAYMENT_STATUS_PAID, PAYMENT_STATUS_OVERPAID):
        if document.status != PAID:
            return _fire(document, EVENT_PAY) is not None
    elif status == PAYMENT_STATUS_PARTIAL:
        _fire(document, EVENT_PAYMENT_REVERSED if document.status == PAID else EVENT_PARTIAL_PAYMENT)
    else:
        _fire(document, EVENT_PAYMENT_CLEARED)
    return False


def _recompute_payment_allocated(payment: Payment) -> None:
    allocated = sum_payment_allocations(payment.id)
    if allocated > payment.amount or allocated < 0:
        # Guarded by the capacity checks; reaching this means the rows are corrupt
        raise OverAllocation(
            f"Payment {payment.payment_number} allocations {allocated} outside 0..{payment.amount}",
            details={"payment_id": payment.id, "allocated": str(allocated), "amount": str(payment.amount)},
        )
    payment.allocated_amount = allocated


# =============================================================================
# ALLOCATION
# =============================================================================

def _validate_amount(amount) -> Decimal:
    try:
        value = to_money(amount, field="amount")
    except MoneyError as exc:
        raise LedgerValidationError(str(exc))
    if value <= 0:
        raise LedgerValidationError("Allocation amount must be positive", details={"amount": str(value)})
    return value


def _ensure_accepts_payment(document: Document) -> None:
    if not is_payable(document):
        raise IllegalTransition(
            f"{document.document_type} documents cannot receive payments",
            details={"document_id": document.id, "document_type": document.document_type},
        )
    allowed = states_allowing(document.document_type, EVENT_PAY) | {PAID}
    if document.status not in allowed:
        raise IllegalTransition(
            f"Document {document.document_number} in status '{document.status}' cannot receive payments",
            details={"document_id": document.id, "status": document.status},
        )


def _allocate_locked(
    payment: Payment,
    document: Document,
    amount: Decimal,
    *,
    reason: str | None = None,
) -> tuple[Allocation, list]:
    """
    Validate capacity and insert one ALLOCATION row. Both rows must already be
    locked by the caller, who owns the transaction.
    """
    _ensure_accepts_payment(document)

    if payment.currency != document.currency:
        raise LedgerValidationError(
            f"Payment currency {payment.currency} does not match document currency {document.currency}",
            details={"payment_currency": payment.currency, "document_currency": document.currency},
        )

    unallocated = payment.unallocated_amount
    if amount > unallocated:
        raise OverAllocation(
            f"Allocation {amount} exceeds payment {payment.payment_number} unallocated amount {unallocated}",
            details={
                "payment_id": payment.id,
                "requested": str(amount),
                "unallocated_amount": str(unallocated),
            },
        )

    if not current_app.config.get("LEDGER_ALLOW_OVERPAYMENT", False) and amount > document.balance_amount:
        raise OverAllocation(
            f"Allocation {amount} exceeds document {document.document_number} balance {document.balance_amount}",
            details={
                "document_id": document.id,
                "requested": str(amount),
                "balance_amount": str(document.balance_amount),
            },
        )

    allocation = Allocation(
        payment_id=payment.id,
        document_id=document.id,
        amount=amount,
        kind=KIND_ALLOCATION,
        reason=reason,
    )
    db.session.add(allocation)
    db.session.flush()

    _recompute_payment_allocated(payment)
    became_paid = _update_document_payment_status(document)

    events = [append_ledger_event(
        event_type="payment.allocated",
        entity_type="allocation",
        entity_id=allocation.id,
        document_id=document.id,
        payment_id=payment.id,
        allocation_id=allocation.id,
        payload={
            "payment_number": payment.payment_number,
            "document_number": document.document_number,
            "amount": str(amount),
            "balance_amount": str(document.balance_amount),
            "payment_status": document.payment_status,
        },
    )]
    if became_paid:
        events.append(append_ledger_event(
            event_type="document.paid",
            entity_type="document",
            entity_id=document.id,
            document_id=document.id,
            payload={
                "document_number": document.document_number,
                "paid_amount": str(document.paid_amount),
                "payment_status": document.payment_status,
            },
        ))
    return allocation, events


def allocate(payment_id: int, document_id: int, amount, *, reason: str | None = None) -> Allocation:
    """
    Bind part of a payment to a document.

    Args:
        payment_id: Payment to draw from
        document_id: Document to apply to
        amount: Amount to bind (> 0)

    Returns:
        The new Allocation row

    Raises:
        LedgerValidationError: bad amount or currency mismatch
        OverAllocation: amount exceeds payment unallocated or document balance
        IllegalTransition: document cannot receive payments in its state
        PaymentNotFound, DocumentNotFound
    """
    value = _validate_amount(amount)

    def _op():
        payment = get_payment_or_404(payment_id, lock=True)
        document = get_document_or_404(document_id, lock=True)
        allocation, events = _allocate_locked(payment, document, value, reason=reason)
        db.session.commit()
        return allocation, events

    allocation, events = run_with_retry(_op)
    publish_events(events)
    return allocation


def _parse_split(allocations) -> list[tuple[int, Decimal]]:
    if not isinstance(allocations, (list, tuple)) or not allocations:
        raise LedgerValidationError("allocations must be a non-empty list")

    split = []
    for position, entry in enumerate(allocations):
        if isinstance(entry, dict):
            document_id, amount = entry.get("document_id"), entry.get("amount")
        elif isinstance(entry, (list, tuple)) and len(entry) == 2:
            document_id, amount = entry
        else:
            raise LedgerValidationError(f"Allocation {position + 1} must be a document_id and an amount")
        try:
            document_id = int(document_id)
        except (TypeError, ValueError):
            raise LedgerValidationError(f"Allocation {position + 1}: document_id is required")
        split.append((document_id, _validate_amount(amount)))
    return split


def allocate_many(payment_id: int, allocations, *, reason: str | None = None) -> list[Allocation]:
    """
    Split one payment across several documents in a single transaction.

    Args:
        payment_id: Payment to draw from
        allocations: [(document_id, amount), ...] or
            [{"document_id": ..., "amount": ...}, ...]

    Every capacity is checked before the first row is written: the total
    against the payment's unallocated amount, and each document's share
    (summed when a document appears twice) against its balance. Documents are
    locked in ascending id order after the payment.

    Returns:
        The new Allocation rows, in request order
    """
    split = _parse_split(allocations)

    def _op():
        payment = get_payment_or_404(payment_id, lock=True)
        documents = {
            document_id: get_document_or_404(document_id, lock=True)
            for document_id in sorted({document_id for document_id, _ in split})
        }

        requested = sum((amount for _, amount in split), ZERO)
        if requested > payment.unallocated_amount:
            raise OverAllocation(
                f"Allocations total {requested} exceeds payment {payment.payment_number} "
                f"unallocated amount {payment.unallocated_amount}",
                details={
                    "payment_id": payment.id,
                    "requested": str(requested),
                    "unallocated_amount": str(payment.unallocated_amount),
                },
            )

        per_document: dict[int, Decimal] = {}
        for document_id, amount in split:
            per_document[document_id] = per_document.get(document_id, ZERO) + amount

        allow_overpayment = current_app.config.get("LEDGER_ALLOW_OVERPAYMENT", False)
        for document_id, share in per_document.items():
            document = documents[document_id]
            _ensure_accepts_payment(document)
            if payment.currency != document.currency:
                raise LedgerValidationError(
                    f"Payment currency {payment.currency} does not match document currency {document.currency}",
                    details={"document_id": document.id, "document_currency": document.currency},
                )
            if not allow_overpayment and share > document.balance_amount:
                raise OverAllocation(
                    f"Allocations of {share} exceed document {document.document_number} balance {document.balance_amount}",
                    details={
                        "document_id": document.id,
                        "requested": str(share),
                        "balance_amount": str(document.balance_amount),
                    },
                )

        created, events = [], []
        for document_id, amount in split:
            allocation, evs = _allocate_locked(payment, documents[document_id], amount, reason=reason)
            created.append(allocation)
            events += evs

        db.session.commit()
        return created, events

    created, events = run_with_retry(_op)
    publish_events(events)
    current_app.logger.info(
        "Payment %s split across %d document(s)", payment_id, len({a.document_id for a in created})
    )
    return created


def _pay_document(document_id: int, amount, *, full: bool, receipt: dict, reference: str | None):
    def _op():
        document = get_document_or_404(document_id, lock=True)
        _ensure_accepts_payment(document)

        balance = document.balance_amount
        if full:
            value = balance
            if value <= 0:
                raise ExceedsBalance(
                    f"Document {document.document_number} has no remaining balance",
                    details={"document_id": document.id, "balance_amount": str(balance)},
                )
        else:
            value = _validate_amount(amount)
            if value > balance:
                raise ExceedsBalance(
                    f"Payment {value} exceeds document {document.document_number} balance {balance}",
                    details={"document_id": document.id, "requested": str(value), "balance_amount": str(balance)},
                )

        payment, received_ev = _receive_locked(
            payer_ref=receipt["payer_ref"] or document.counterparty_ref,
            amount=value,
            method=receipt["method"],
            reference=reference,
            received_date=receipt["received_date"],
            currency=document.currency,
        )
        allocation, events = _allocate_locked(payment, document, value)
        db.session.commit()
        return allocation, [received_ev] + events

    allocation, events = run_with_retry(_op)
    publish_events(events)
    return allocation


def _receipt_values(payer_ref, method, received_date) -> dict:
    # Amount and currency come from the document under lock
    return {
        "payer_ref": str(payer_ref) if payer_ref else None,
        "method": validate_method(method),
        "received_date": normalize_received_date(received_date),
    }


def create_full_payment(
    document_id: int,
    *,
    method: str,
    payer_ref: str | None = None,
    reference: str | None = None,
    received_date=None,
) -> Allocation:
    """
    Receive a payment equal to the document's current balance and allocate it
    fully, in one transaction. payer_ref defaults to the document counterparty.

    Raises:
        ExceedsBalance: document has nothing left to pay
    """
    receipt = _receipt_values(payer_ref, method, received_date)
    return _pay_document(document_id, None, full=True, receipt=receipt, reference=reference)


def create_partial_payment(
    document_id: int,
    amount,
    *,
    method: str,
    payer_ref: str | None = None,
    reference: str | None = None,
    received_date=None,
) -> Allocation:
    """
    Receive and allocate `amount` against a document in one transaction.

    Raises:
        ExceedsBalance: amount is greater than the remaining balance
    """
    receipt = _receipt_values(payer_ref, method, received_date)
    return _pay_document(document_id, amount, full=False, receipt=receipt, reference=reference)


# =============================================================================
# REVERSAL / REALLOCATION
# =============================================================================

def get_allocation_or_404(allocation_id: int) -> Allocation:
    allocation = db.session.query(Allocation).filter(Allocation.id == allocation_id).first()
    if allocation is None:
        raise AllocationNotFound(
            f"Allocation {allocation_id} not found", details={"allocation_id": allocation_id}
        )
    return allocation


def _reverse_locked(
    allocation: Allocation,
    payment: Payment,
    document: Document,
    reason: str,
) -> tuple[Allocation, list]:
    if allocation.kind != KIND_ALLOCATION:
        raise LedgerValidationError(
            f"Allocation {allocation.id} is a {allocation.kind} entry and cannot be reversed",
            details={"allocation_id": allocation.id, "kind": allocation.kind},
        )
    already = db.session.query(Allocation.id).filter(
        Allocation.reverses_allocation_id == allocation.id
    ).first()
    if already is not None:
        raise LedgerValidationError(
            f"Allocation {allocation.id} has already been reversed",
            details={"allocation_id": allocation.id, "reversal_id": already[0]},
        )

    reversal = Allocation(
        payment_id=payment.id,
        document_id=document.id,
        amount=allocation.amount,
        kind=KIND_REVERSAL,
        reverses_allocation_id=allocation.id,
        reason=reason,
    )
    db.session.add(reversal)
    db.session.flush()

    _recompute_payment_allocated(payment)
    _update_document_payment_status(document)

    ev = append_ledger_event(
        event_type="allocation.reversed",
        entity_type="allocation",
        entity_id=reversal.id,
        document_id=document.id,
        payment_id=payment.id,
        allocation_id=reversal.id,
        payload={
            "reverses_allocation_id": allocation.id,
            "amount": str(allocation.amount),
            "reason": reason,
            "balance_amount": str(document.balance_amount),
            "payment_status": document.payment_status,
        },
    )
    return reversal, [ev]


def _require_reason(reason: str | None) -> str:
    if not reason or not reason.strip():
        raise LedgerValidationError("A reason is required")
    return reason.strip()


def reverse_allocation(allocation_id: int, reason: str) -> Allocation:
    """
    Return an allocated amount to the payment pool by writing a compensating
    REVERSAL row. The original row is left untouched.

    Returns:
        The REVERSAL row
    """
    reason = _require_reason(reason)

    def _op():
        allocation = get_allocation_or_404(allocation_id)
        payment = get_payment_or_404(allocation.payment_id, lock=True)
        document = get_document_or_404(allocation.document_id, lock=True)
        reversal, events = _reverse_locked(allocation, payment, document, reason)
        db.session.commit()
        return reversal, events

    reversal, events = run_with_retry(_op)
    publish_events(events)
    return reversal


def reallocate(
    allocation_id: int,
    target_document_id: int,
    amount=None,
    *,
    reason: str,
) -> Allocation:
    """
    Move money from one document to another: reverse the original allocation,
    allocate `amount` (default: all of it) to the target and put any remainder
    back on the source document. One transaction.

    Returns:
        The new allocation on the target document
    """
    reason = _require_reason(reason)
    value = _validate_amount(amount) if amount is not None else None

    def _op():
        original = get_allocation_or_404(allocation_id)
        move = value if value is not None else original.amount
        if move > original.amount:
            raise OverAllocation(
                f"Cannot move {move}; allocation {original.id} is only {original.amount}",
                details={"allocation_id": original.id, "requested": str(move), "amount": str(original.amount)},
            )
        if original.document_id == target_document_id:
            raise LedgerValidationError("Target document is the allocation's current document")

        payment = get_payment_or_404(original.payment_id, lock=True)
        first_id, second_id = sorted((original.document_id, target_document_id))
        locked = {
            first_id: get_document_or_404(first_id, lock=True),
            second_id: get_document_or_404(second_id, lock=True),
        }
        source, target = locked[original.document_id], locked[target_document_id]

        _, events = _reverse_locked(original, payment, source, reason)
        moved, alloc_events = _allocate_locked(payment, target, move, reason=reason)
        events += alloc_events

        remainder = original.amount - move
        if remainder > 0:
            _, rest_events = _allocate_locked(payment, source, remainder, reason=reason)
            events += rest_events

        db.session.commit()
        return moved, events

    moved, events = run_with_retry(_op)
    publish_events(events)
    return moved


# =============================================================================
# REPORTING
# =============================================================================

def list_allocations(filters: AllocationFilter | None = None) -> tuple[list[Allocation], int]:
    filters = filters or AllocationFilter()
    query = filters.apply(db.session.query(Allocation))
    total = query.order_by(None).count()
    return filters.paginate(query).all(), total


def get_document_payment_summary(document_id: int) -> dict:
    """
    Payment position of a document.

    Returns:
        - total_amount / paid_amount / balance_amount
        - payment_status and workflow status
        - allocations: every ALLOCATION and REVERSAL row, oldest first
    """
    document = get_document_or_404(document_id)
    return {
        "document_id": document.id,
        "document_number": document.document_number,
        "status": document.status,
        "payment_status": document.payment_status,
        "total_amount": format_money(document.total_amount),
        "paid_amount": format_money(document.paid_amount),
        "balance_amount": format_money(document.balance_amount),
        "allocations": [a.to_dict() for a in document.allocations],
    }


def check_balances(document_id: int) -> bool:
    """True when the stored paid/balance figures agree with the allocation rows."""
    document = get_document_or_404(document_id)
    paid = sum_document_allocations(document.id)
    expected_balance = non_negative(quantize(document.total_amount - paid))
    return (
        document.paid_amount == paid
        and document.balance_amount == expected_balance
        and document.payment_status == derive_payment_status(document.total_amount, paid)
        and paid >= ZERO
    )
