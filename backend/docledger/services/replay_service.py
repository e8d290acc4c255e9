# Overview: Return recording and replay; reconstructs a document as of any point in its return history.

"""
Return Replay Engine

WHY: Returns are append-only events against a document. The document's stored
totals are never rewritten; instead its financial state as of any return is
recomputed by folding the ordered returns over the original line items.

FOLD RULE (per returned line):
- remaining_quantity -= quantity_returned
- a line disappears from the view once remaining_quantity reaches zero
- surviving lines are priced with the ORIGINAL unit economics: unit_price, and
  the line's discount and tax scaled by remaining / original quantity
- refund_amount is a cash figure and is never used to derive totals

INTEGRITY:
- sequence_no must run 1, 2, 3, ... per document; a gap raises SequenceGap and
  is logged at ERROR (it means upstream corruption, never skipped)
- DocumentLine.returned_quantity is a live counter kept by record_return();
  get_current_state() must always equal state_after(last return)
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal

from flask import current_app
from sqlalchemy import func

from ..errors import (
    IllegalTransition,
    LedgerValidationError,
    ReturnNotFound,
    SequenceGap,
)
from ..extensions import db
from ..models import Document, DocumentLine, Return, ReturnLine
from ..money import (
    MoneyError,
    ZERO,
    format_money,
    format_quantity,
    money_greater,
    quantize,
    to_money,
    to_quantity,
)
from .concurrency import run_with_retry
from .document_service import get_document_or_404
from .ledger_service import append_ledger_event, publish_events
from .lifecycle_service import CANCELLED, DRAFT, is_payable


RETURN_TYPE_FULL = "FULL"
RETURN_TYPE_PARTIAL = "PARTIAL"


# =============================================================================
# SNAPSHOTS
# =============================================================================

@dataclass
class ReplayLine:
    document_line_id: int
    product_ref: str
    product_name: str | None
    quantity: Decimal
    unit_price: Decimal
    discount_amount: Decimal
    tax_amount: Decimal
    line_total: Decimal

    def to_dict(self) -> dict:
        return {
            "document_line_id": self.document_line_id,
            "product_ref": self.product_ref,
            "product_name": self.product_name,
            "quantity": format_quantity(self.quantity),
            "unit_price": format_money(self.unit_price),
            "discount_amount": format_money(self.discount_amount),
            "tax_amount": format_money(self.tax_amount),
            "line_total": format_money(self.line_total),
        }


@dataclass
class ReplaySnapshot:
    document_id: int
    document_number: str
    # Last return folded into this view (0 = original document)
    sequence_no: int
    return_id: int | None
    items: list[ReplayLine] = field(default_factory=list)
    subtotal: Decimal = ZERO
    discount_amount: Decimal = ZERO
    tax_amount: Decimal = ZERO
    total_amount: Decimal = ZERO

    def to_dict(self) -> dict:
        return {
            "document_id": self.document_id,
            "document_number": self.document_number,
            "sequence_no": self.sequence_no,
            "return_id": self.return_id,
            "items": [line.to_dict() for line in self.items],
            "subtotal": format_money(self.subtotal),
            "discount_amount": format_money(self.discount_amount),
            "tax_amount": format_money(self.tax_amount),
            "total_amount": format_money(self.total_amount),
        }


def _price_line(line: DocumentLine, remaining: Decimal) -> ReplayLine:
    if remaining == line.quantity:
        discount, tax = line.discount_amount, line.tax_amount
    else:
        ratio = remaining / line.quantity
        discount = quantize(line.discount_amount * ratio)
        tax = quantize(line.tax_amount * ratio)
    gross = quantize(remaining * line.unit_price)
    return ReplayLine(
        document_line_id=line.id,
        product_ref=line.product_ref,
        product_name=line.product_name,
        quantity=remaining,
        unit_price=line.unit_price,
        discount_amount=discount,
        tax_amount=tax,
        line_total=gross - discount + tax,
    )


def _snapshot(
    document: Document,
    remaining: dict[int, Decimal],
    *,
    sequence_no: int = 0,
    return_id: int | None = None,
) -> ReplaySnapshot:
    snap = ReplaySnapshot(
        document_id=document.id,
        document_number=document.document_number,
        sequence_no=sequence_no,
        return_id=return_id,
    )
    for line in document.lines:
        qty = remaining[line.id]
        if qty <= 0:
            continue
        priced = _price_line(line, qty)
        snap.items.append(priced)
        snap.subtotal += quantize(priced.quantity * priced.unit_price)
        snap.discount_amount += priced.discount_amount
        snap.tax_amount += priced.tax_amount

    snap.total_amount = snap.subtotal - snap.discount_amount + snap.tax_amount
    return snap


# =============================================================================
# REPLAY
# =============================================================================

def _ordered_returns(document: Document) -> list[Return]:
    """All returns of a document in sequence order, verified contiguous."""
    returns = db.session.query(Return).filter(
        Return.document_id == document.id
    ).order_by(Return.sequence_no).all()

    for expected, ret in enumerate(returns, start=1):
        if ret.sequence_no != expected:
            current_app.logger.error(
                "Return sequence gap on document %s (id=%s): expected sequence %d, found %d (return id=%s)",
                document.document_number,
                document.id,
                expected,
                ret.sequence_no,
                ret.id,
            )
            raise SequenceGap(
                f"Return sequence for document {document.document_number} skips from {expected - 1} to {ret.sequence_no}",
                details={
                    "document_id": document.id,
                    "expected_sequence_no": expected,
                    "found_sequence_no": ret.sequence_no,
                },
            )
    return returns


def _fold(document: Document, returns: list[Return]) -> dict[int, Decimal]:
    remaining = {line.id: line.quantity for line in document.lines}
    for ret in returns:
        for rl in ret.lines:
            if rl.document_line_id not in remaining:
                raise LedgerValidationError(
                    f"Return {ret.sequence_no} references line {rl.document_line_id} not on document {document.document_number}",
                    details={"return_id": ret.id, "document_line_id": rl.document_line_id},
                )
            remaining[rl.document_line_id] -= rl.quantity_returned
            if remaining[rl.document_line_id] < 0:
                raise LedgerValidationError(
                    f"Return {ret.sequence_no} returns more of line {rl.document_line_id} than was sold",
                    details={"return_id": ret.id, "document_line_id": rl.document_line_id},
                )
    return remaining


def _locate(returns: list[Return], document: Document, return_id: int) -> int:
    for idx, ret in enumerate(returns):
        if ret.id == return_id:
            return idx
    raise ReturnNotFound(
        f"Return {return_id} does not belong to document {document.document_number}",
        details={"document_id": document.id, "return_id": return_id},
    )


def state_before(document_id: int, return_id: int | None = None) -> ReplaySnapshot:
    """
    Document as it stood immediately before the given return.

    With return_id=None every recorded return is folded in, the same view as
    state_after(document_id).

    Raises:
        ReturnNotFound: return_id is not one of this document's returns
        SequenceGap: the document's return sequence is not contiguous
    """
    document = get_document_or_404(document_id)
    returns = _ordered_returns(document)
    if return_id is None:
        applied = returns
    else:
        applied = returns[:_locate(returns, document, return_id)]
    last = applied[-1] if applied else None
    return _snapshot(
        document,
        _fold(document, applied),
        sequence_no=last.sequence_no if last else 0,
        return_id=last.id if last else None,
    )


def state_after(document_id: int, return_id: int | None = None) -> ReplaySnapshot:
    """
    Document as it stood immediately after the given return.

    With return_id=None every return is applied.

    Raises:
        ReturnNotFound, SequenceGap
    """
    document = get_document_or_404(document_id)
    returns = _ordered_returns(document)
    applied = returns if return_id is None else returns[:_locate(returns, document, return_id) + 1]
    last = applied[-1] if applied else None
    return _snapshot(
        document,
        _fold(document, applied),
        sequence_no=last.sequence_no if last else 0,
        return_id=last.id if last else None,
    )


def get_current_state(document_id: int) -> ReplaySnapshot:
    """Net state from the live returned_quantity counters."""
    document = get_document_or_404(document_id)
    remaining = {line.id: line.quantity - line.returned_quantity for line in document.lines}
    last_seq = db.session.query(func.max(Return.sequence_no)).filter(
        Return.document_id == document.id
    ).scalar() or 0
    last_id = None
    if last_seq:
        last_id = db.session.query(Return.id).filter_by(
            document_id=document.id, sequence_no=last_seq
        ).scalar()
    return _snapshot(document, remaining, sequence_no=last_seq, return_id=last_id)


# =============================================================================
# RECORDING
# =============================================================================

def _parse_return_items(items) -> dict[int, Decimal]:
    if not isinstance(items, (list, tuple)) or not items:
        raise LedgerValidationError("A return needs at least one item")

    requested: dict[int, Decimal] = {}
    for position, item in enumerate(items):
        if not isinstance(item, dict):
            raise LedgerValidationError(f"Return item {position + 1} must be an object")
        try:
            line_id = int(item.get("line_item_ref"))
        except (TypeError, ValueError):
            raise LedgerValidationError(f"Return item {position + 1}: line_item_ref is required")
        try:
            qty = to_quantity(item.get("quantity_returned"), field="quantity_returned")
        except MoneyError as exc:
            raise LedgerValidationError(f"Return item {position + 1}: {exc}")
        if qty <= 0:
            raise LedgerValidationError(f"Return item {position + 1}: quantity_returned must be greater than zero")
        requested[line_id] = requested.get(line_id, ZERO) + qty
    return requested


def record_return(
    document_id: int,
    items,
    *,
    reason: str | None = None,
    refund_amount=None,
) -> Return:
    """
    Append a return to a document's history.

    Args:
        document_id: Document the goods were sold on
        items: [{"line_item_ref": <document line id>, "quantity_returned": q}]
        reason: Free-text reason (optional)
        refund_amount: Cash refunded; defaults to the value of the returned
            units and may not exceed it

    Returns:
        The new Return (sequence_no = previous + 1)

    Raises:
        LedgerValidationError: unknown line, quantity beyond what is returnable,
            refund above the returned value
        IllegalTransition: document is a quotation, a draft or cancelled
    """
    requested = _parse_return_items(items)

    def _op():
        document = get_document_or_404(document_id, lock=True)
        if not is_payable(document) or document.status in (DRAFT, CANCELLED):
            raise IllegalTransition(
                f"Cannot record a return on {document.document_type} {document.document_number} in status '{document.status}'",
                details={"document_id": document.id, "status": document.status},
            )

        lines = {line.id: line for line in document.lines}
        remaining = {line.id: line.quantity - line.returned_quantity for line in document.lines}
        for line_id, qty in requested.items():
            if line_id not in lines:
                raise LedgerValidationError(
                    f"Line {line_id} is not on document {document.document_number}",
                    details={"document_id": document.id, "line_item_ref": line_id},
                )
            if qty > remaining[line_id]:
                raise LedgerValidationError(
                    f"Cannot return {qty} of line {line_id}; only {remaining[line_id]} returnable",
                    details={
                        "line_item_ref": line_id,
                        "requested": str(qty),
                        "returnable": str(remaining[line_id]),
                    },
                )

        before = _snapshot(document, remaining)
        after_remaining = dict(remaining)
        for line_id, qty in requested.items():
            after_remaining[line_id] -= qty
        after = _snapshot(document, after_remaining)
        computed_refund = before.total_amount - after.total_amount

        if refund_amount is None:
            refund = computed_refund
        else:
            try:
                refund = to_money(refund_amount, field="refund_amount")
            except MoneyError as exc:
                raise LedgerValidationError(str(exc))
            if refund < 0:
                raise LedgerValidationError("refund_amount cannot be negative")
            if money_greater(refund, computed_refund):
                raise LedgerValidationError(
                    f"refund_amount {refund} exceeds value of returned items {computed_refund}",
                    details={"refund_amount": str(refund), "returned_value": str(computed_refund)},
                )

        last_seq = db.session.query(func.max(Return.sequence_no)).filter(
            Return.document_id == document.id
        ).scalar() or 0

        ret = Return(
            document_id=document.id,
            sequence_no=last_seq + 1,
            return_type=RETURN_TYPE_FULL if all(q <= 0 for q in after_remaining.values()) else RETURN_TYPE_PARTIAL,
            refund_amount=refund,
            reason=reason,
        )
        db.session.add(ret)
        db.session.flush()

        for line_id, qty in requested.items():
            db.session.add(ReturnLine(return_id=ret.id, document_line_id=line_id, quantity_returned=qty))
            lines[line_id].returned_quantity = lines[line_id].returned_quantity + qty
        db.session.flush()

        ev = append_ledger_event(
            event_type="return.recorded",
            entity_type="return",
            entity_id=ret.id,
            document_id=document.id,
            return_id=ret.id,
            payload={
                "document_number": document.document_number,
                "sequence_no": ret.sequence_no,
                "return_type": ret.return_type,
                "refund_amount": str(refund),
                "net_total_amount": str(after.total_amount),
            },
        )
        db.session.commit()
        return ret, ev

    ret, ev = run_with_retry(_op)
    publish_events([ev])
    return ret


# =============================================================================
# LOOKUP
# =============================================================================

def get_return(return_id: int) -> Return:
    ret = db.session.query(Return).filter(Return.id == return_id).first()
    if ret is None:
        raise ReturnNotFound(f"Return {return_id} not found", details={"return_id": return_id})
    return ret


def get_document_returns(document_id: int) -> list[Return]:
    document = get_document_or_404(document_id)
    return db.session.query(Return).filter_by(
        document_id=document.id
    ).order_by(Return.sequence_no).all()
