# Overview: Service-layer operations for ledger statistics; counts and sums over the typed filters.

from __future__ import annotations

from decimal import Decimal

from sqlalchemy import case, func

from ..extensions import db
from ..filters import AllocationFilter, DocumentFilter, PaymentFilter, ReturnFilter
from ..models import Allocation, Document, Payment, Return
from ..money import ZERO, format_money, to_money
from .allocation_service import (
    KIND_REVERSAL,
    PAYMENT_STATUS_OVERPAID,
    PAYMENT_STATUS_PAID,
    PAYMENT_STATUS_PARTIAL,
    PAYMENT_STATUS_UNPAID,
)
from .lifecycle_service import CANCELLED
from .replay_service import RETURN_TYPE_FULL, RETURN_TYPE_PARTIAL


def _money(value) -> Decimal:
    return to_money(value) if value is not None else ZERO


def _counts_by(filters, column) -> dict[str, int]:
    query = filters.apply(db.session.query(column, func.count()))
    rows = query.order_by(None).group_by(column).all()
    return {key: int(count) for key, count in rows}


def document_stats(filters: DocumentFilter | None = None) -> dict:
    """
    Totals across the documents matching a filter.

    Cancelled documents are counted but left out of the money figures.
    """
    filters = filters or DocumentFilter()
    live = Document.status != CANCELLED

    row = filters.apply(db.session.query(
        func.count(Document.id).label("document_count"),
        func.sum(case((live, Document.total_amount), else_=0)).label("total_amount"),
        func.sum(case((live, Document.paid_amount), else_=0)).label("paid_amount"),
        func.sum(case((live, Document.balance_amount), else_=0)).label("balance_amount"),
        func.sum(case((live, 1), else_=0)).label("live_count"),
    )).order_by(None).one()

    total = _money(row.total_amount)
    live_count = int(row.live_count or 0)
    by_payment_status = _counts_by(filters, Document.payment_status)

    return {
        "document_count": int(row.document_count or 0),
        "total_amount": format_money(total),
        "paid_amount": format_money(_money(row.paid_amount)),
        "balance_amount": format_money(_money(row.balance_amount)),
        "average_amount": format_money(to_money(total / live_count) if live_count else ZERO),
        "by_status": _counts_by(filters, Document.status),
        "by_payment_status": {
            status: by_payment_status.get(status, 0)
            for status in (
                PAYMENT_STATUS_UNPAID,
                PAYMENT_STATUS_PARTIAL,
                PAYMENT_STATUS_PAID,
                PAYMENT_STATUS_OVERPAID,
            )
        },
    }


def payment_stats(filters: PaymentFilter | None = None) -> dict:
    filters = filters or PaymentFilter()
    row = filters.apply(db.session.query(
        func.count(Payment.id).label("payment_count"),
        func.sum(Payment.amount).label("amount"),
        func.sum(Payment.allocated_amount).label("allocated_amount"),
    )).order_by(None).one()

    amount = _money(row.amount)
    allocated = _money(row.allocated_amount)
    return {
        "payment_count": int(row.payment_count or 0),
        "amount": format_money(amount),
        "allocated_amount": format_money(allocated),
        "unallocated_amount": format_money(amount - allocated),
        "by_method": _counts_by(filters, Payment.method),
    }


def allocation_stats(filters: AllocationFilter | None = None) -> dict:
    """
    Allocation activity. net_allocated counts REVERSAL rows negatively, the
    same way document and payment balances are derived.
    """
    filters = filters or AllocationFilter()
    is_reversal = Allocation.kind == KIND_REVERSAL
    row = filters.apply(db.session.query(
        func.sum(case((is_reversal, 0), else_=1)).label("allocation_count"),
        func.sum(case((is_reversal, 1), else_=0)).label("reversal_count"),
        func.sum(case((~is_reversal, Allocation.amount), else_=0)).label("allocated"),
        func.sum(case((is_reversal, Allocation.amount), else_=0)).label("reversed"),
        func.count(func.distinct(Allocation.payment_id)).label("payment_count"),
        func.count(func.distinct(Allocation.document_id)).label("document_count"),
    )).order_by(None).one()

    allocated = _money(row.allocated)
    reversed_ = _money(row.reversed)
    allocation_count = int(row.allocation_count or 0)
    return {
        "allocation_count": allocation_count,
        "reversal_count": int(row.reversal_count or 0),
        "allocated_amount": format_money(allocated),
        "reversed_amount": format_money(reversed_),
        "net_allocated": format_money(allocated - reversed_),
        "average_allocation": format_money(
            to_money(allocated / allocation_count) if allocation_count else ZERO
        ),
        "payments_with_allocations": int(row.payment_count or 0),
        "documents_with_allocations": int(row.document_count or 0),
    }


def return_stats(filters: ReturnFilter | None = None) -> dict:
    filters = filters or ReturnFilter()
    row = filters.apply(db.session.query(
        func.count(Return.id).label("return_count"),
        func.sum(Return.refund_amount).label("refund_amount"),
        func.count(func.distinct(Return.document_id)).label("document_count"),
    )).order_by(None).one()

    by_type = _counts_by(filters, Return.return_type)
    return {
        "return_count": int(row.return_count or 0),
        "refund_amount": format_money(_money(row.refund_amount)),
        "documents_with_returns": int(row.document_count or 0),
        "by_type": {
            RETURN_TYPE_FULL: by_type.get(RETURN_TYPE_FULL, 0),
            RETURN_TYPE_PARTIAL: by_type.get(RETURN_TYPE_PARTIAL, 0),
        },
    }
