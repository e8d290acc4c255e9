# Overview: Document state machine; one explicit transition table per document kind.

"""
Document Lifecycle Service

================================================================================
PURPOSE: Single source of truth for document workflow states and transitions
================================================================================

WHY THIS EXISTS:
- Every document kind gets one explicit, versioned (state, event) -> state table
- The table is total: any pair not listed is rejected with IllegalTransition
- Item/amount edits are allowed only in draft; afterwards DocumentLocked
- Cancellation needs a reason and is terminal; cancelled documents are never
  resurrected

STATE MACHINES (TRANSITION_TABLE_VERSION = 1):

    SALE / ORDER:  draft -confirm-> pending
    INVOICE:       draft -send----> sent
    payable kinds: pending|sent -partial_payment-> partially_paid
                   pending|sent|partially_paid|overdue -pay-> paid
                   pending|sent|partially_paid -mark_overdue-> overdue
    ORDER:         pending|partially_paid -convert-> converted
    QUOTATION:     draft -send-> sent -accept|decline|expire-> accepted|declined|expired
                   accepted -convert-> converted

PAID IS TERMINAL for user events. Its only exits are the ledger-internal
payment_reversed / payment_cleared events fired by allocation reversal.

================================================================================
"""

from __future__ import annotations

from ..errors import DocumentLocked, IllegalTransition, LedgerValidationError
from ..extensions import db
from ..models import Document
from ..time_utils import utcnow
from .concurrency import run_with_retry


TRANSITION_TABLE_VERSION = 1

# Document kinds
SALE = "SALE"
INVOICE = "INVOICE"
ORDER = "ORDER"
QUOTATION = "QUOTATION"
DOCUMENT_TYPES = (SALE, INVOICE, ORDER, QUOTATION)
PAYABLE_TYPES = (SALE, INVOICE, ORDER)

# States
DRAFT = "draft"
PENDING = "pending"
SENT = "sent"
PARTIALLY_PAID = "partially_paid"
PAID = "paid"
OVERDUE = "overdue"
CANCELLED = "cancelled"
DECLINED = "declined"
ACCEPTED = "accepted"
EXPIRED = "expired"
CONVERTED = "converted"

# Events
EVENT_CONFIRM = "confirm"
EVENT_SEND = "send"
EVENT_PARTIAL_PAYMENT = "partial_payment"
EVENT_PAY = "pay"
EVENT_MARK_OVERDUE = "mark_overdue"
EVENT_PAYMENT_REVERSED = "payment_reversed"
EVENT_PAYMENT_CLEARED = "payment_cleared"
EVENT_CANCEL = "cancel"
EVENT_CONVERT = "convert"
EVENT_ACCEPT = "accept"
EVENT_DECLINE = "decline"
EVENT_EXPIRE = "expire"

# Events that only the ledger itself may fire (never accepted from callers)
INTERNAL_EVENTS = frozenset({
    EVENT_PARTIAL_PAYMENT,
    EVENT_PAY,
    EVENT_MARK_OVERDUE,
    EVENT_PAYMENT_REVERSED,
    EVENT_PAYMENT_CLEARED,
})


def _payable_table(open_state: str, issue_event: str) -> dict[tuple[str, str], str]:
    return {
        (DRAFT, issue_event): open_state,
        (DRAFT, EVENT_CANCEL): CANCELLED,

        (open_state, EVENT_PARTIAL_PAYMENT): PARTIALLY_PAID,
        (open_state, EVENT_PAY): PAID,
        (open_state, EVENT_MARK_OVERDUE): OVERDUE,
        (open_state, EVENT_CANCEL): CANCELLED,

        (PARTIALLY_PAID, EVENT_PARTIAL_PAYMENT): PARTIALLY_PAID,
        (PARTIALLY_PAID, EVENT_PAY): PAID,
        (PARTIALLY_PAID, EVENT_MARK_OVERDUE): OVERDUE,
        (PARTIALLY_PAID, EVENT_PAYMENT_REVERSED): PARTIALLY_PAID,
        (PARTIALLY_PAID, EVENT_PAYMENT_CLEARED): open_state,
        (PARTIALLY_PAID, EVENT_CANCEL): CANCELLED,

        (OVERDUE, EVENT_PARTIAL_PAYMENT): OVERDUE,
        (OVERDUE, EVENT_PAY): PAID,
        (OVERDUE, EVENT_PAYMENT_REVERSED): OVERDUE,
        (OVERDUE, EVENT_PAYMENT_CLEARED): OVERDUE,
        (OVERDUE, EVENT_CANCEL): CANCELLED,

        (PAID, EVENT_PAYMENT_REVERSED): PARTIALLY_PAID,
        (PAID, EVENT_PAYMENT_CLEARED): open_state,
    }


_ORDER_TABLE = _payable_table(PENDING, EVENT_CONFIRM)
_ORDER_TABLE.update({
    (PENDING, EVENT_CONVERT): CONVERTED,
    (PARTIALLY_PAID, EVENT_CONVERT): CONVERTED,
})

TRANSITIONS: dict[str, dict[tuple[str, str], str]] = {
    SALE: _payable_table(PENDING, EVENT_CONFIRM),
    INVOICE: _payable_table(SENT, EVENT_SEND),
    ORDER: _ORDER_TABLE,
    QUOTATION: {
        (DRAFT, EVENT_SEND): SENT,
        (DRAFT, EVENT_CANCEL): CANCELLED,
        (SENT, EVENT_ACCEPT): ACCEPTED,
        (SENT, EVENT_DECLINE): DECLINED,
        (SENT, EVENT_EXPIRE): EXPIRED,
        (SENT, EVENT_CANCEL): CANCELLED,
        (ACCEPTED, EVENT_CONVERT): CONVERTED,
    },
}

# Ledger event names published for user-visible transitions
TRANSITION_EVENT_NAMES = {
    EVENT_CONFIRM: "document.confirmed",
    EVENT_SEND: "document.sent",
    EVENT_CANCEL: "document.cancelled",
    EVENT_CONVERT: "document.converted",
    EVENT_ACCEPT: "document.accepted",
    EVENT_DECLINE: "document.declined",
    EVENT_EXPIRE: "document.expired",
    EVENT_PAY: "document.paid",
    EVENT_MARK_OVERDUE: "document.overdue",
}


def validate_document_type(document_type: str) -> None:
    if document_type not in TRANSITIONS:
        raise LedgerValidationError(
            f"Invalid document_type '{document_type}'. Must be one of: {', '.join(DOCUMENT_TYPES)}"
        )


def states_for(document_type: str) -> set[str]:
    validate_document_type(document_type)
    table = TRANSITIONS[document_type]
    return {state for state, _ in table} | set(table.values())


def states_allowing(document_type: str, event: str) -> set[str]:
    """All states of a kind from which `event` is legal (used by batch scans)."""
    validate_document_type(document_type)
    return {state for (state, ev) in TRANSITIONS[document_type] if ev == event}


def is_terminal(document_type: str, status: str) -> bool:
    validate_document_type(document_type)
    return not any(state == status for (state, _) in TRANSITIONS[document_type])


def can_transition(document_type: str, status: str, event: str) -> bool:
    validate_document_type(document_type)
    return (status, event) in TRANSITIONS[document_type]


def next_status(document_type: str, status: str, event: str) -> str:
    """
    Look up the target state for (status, event).

    Raises:
        IllegalTransition: pair not in the kind's table
    """
    validate_document_type(document_type)
    try:
        return TRANSITIONS[document_type][(status, event)]
    except KeyError:
        raise IllegalTransition(
            f"Cannot apply '{event}' to {document_type} in status '{status}'",
            details={"document_type": document_type, "status": status, "event": event},
        )


def is_payable(document: Document) -> bool:
    return document.document_type in PAYABLE_TYPES


def ensure_editable(document: Document) -> None:
    """
    Items and amounts may only change while the document is a draft.

    Raises:
        DocumentLocked: document has left draft
    """
    if document.status != DRAFT:
        raise DocumentLocked(
            f"Document {document.document_number} is locked in status '{document.status}'",
            details={"document_id": document.id, "status": document.status},
        )


def apply_event(document: Document, event: str, *, reason: str | None = None) -> str:
    """
    Move a locked, loaded document through one transition. Caller owns the
    transaction (no commit here).

    Returns:
        The previous status
    """
    if event == EVENT_CANCEL:
        if not reason or not reason.strip():
            raise LedgerValidationError("Cancellation requires a reason")

    previous = document.status
    document.status = next_status(document.document_type, previous, event)

    if event == EVENT_CANCEL:
        document.cancel_reason = reason.strip()
        document.cancelled_at = utcnow()

    return previous


def transition_document(document_id: int, event: str, *, reason: str | None = None) -> Document:
    """
    Apply a caller-initiated workflow event (confirm, send, cancel, convert,
    accept, decline, expire).

    Payment-driven events are rejected here; they are fired only by the
    allocation engine and the overdue scanner.

    Raises:
        DocumentNotFound, IllegalTransition, LedgerValidationError
    """
    from .document_service import get_document_or_404
    from .ledger_service import append_ledger_event, publish_events

    if event in INTERNAL_EVENTS:
        raise IllegalTransition(
            f"Event '{event}' is applied by the ledger and cannot be requested directly",
            details={"event": event},
        )

    def _op():
        document = get_document_or_404(document_id, lock=True)
        previous = apply_event(document, event, reason=reason)

        ev = append_ledger_event(
            event_type=TRANSITION_EVENT_NAMES.get(event, "document.transitioned"),
            entity_type="document",
            entity_id=document.id,
            document_id=document.id,
            payload={
                "document_number": document.document_number,
                "from_status": previous,
                "to_status": document.status,
                "reason": reason,
            },
        )
        db.session.commit()
        return document, ev

    document, ev = run_with_retry(_op)
    publish_events([ev])
    return document


def cancel_document(document_id: int, reason: str) -> Document:
    """
    Cancel a document. Existing allocations are kept; new ones are refused.
    """
    return transition_document(document_id, EVENT_CANCEL, reason=reason)


def get_documents_by_status(
    document_type: str,
    status: str,
    *,
    limit: int = 200,
) -> list[Document]:
    """Query documents of one kind in one workflow state (work queues)."""
    if status not in states_for(document_type):
        raise LedgerValidationError(f"Invalid status '{status}' for {document_type}")

    q = db.session.query(Document).filter_by(document_type=document_type, status=status)
    return q.order_by(Document.due_date, Document.id).limit(limit).all()
