# Overview: Line-item reconciliation; derives canonical document totals from items.

"""
Line-Item Reconciler

WHY: A stored document must never drift from the sum of its items. Callers
declare the totals they expect; the reconciler recomputes them from the lines,
rejects declarations that differ by more than one cent, and hands back the
canonical figures. Only the canonical figures are ever persisted.

FORMULAS:
- line_total     = quantity * unit_price - discount_amount + tax_amount
- calc_subtotal  = sum(quantity * unit_price)
- calc_discount  = sum(discount_amount)
- calc_tax       = sum(tax_amount), or the document-level tax override
- calc_total     = calc_subtotal - calc_discount + calc_tax

A tax override is apportioned across lines in proportion to line net value
(quantity * unit_price - discount), remainder on the last taxable line, so the
stored line taxes always add up to the document tax.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal

from ..errors import InconsistentTotals, LedgerValidationError
from ..money import (
    MoneyError,
    ZERO,
    money_equal,
    quantize,
    to_money,
    to_quantity,
)


@dataclass
class LineItemInput:
    product_ref: str
    quantity: Decimal
    unit_price: Decimal
    discount_amount: Decimal = ZERO
    tax_amount: Decimal = ZERO
    product_name: str | None = None
    product_sku: str | None = None

    @classmethod
    def from_dict(cls, data: dict, position: int = 0) -> "LineItemInput":
        """Build from request-style dicts; raises LedgerValidationError on bad input."""
        if not isinstance(data, dict):
            raise LedgerValidationError(f"Item {position + 1} must be an object")
        product_ref = data.get("product_ref")
        if not product_ref:
            raise LedgerValidationError(f"Item {position + 1}: product_ref is required")
        try:
            return cls(
                product_ref=str(product_ref),
                quantity=to_quantity(data.get("quantity"), field="quantity"),
                unit_price=to_money(data.get("unit_price"), field="unit_price"),
                discount_amount=to_money(data.get("discount_amount") or 0, field="discount_amount"),
                tax_amount=to_money(data.get("tax_amount") or 0, field="tax_amount"),
                product_name=data.get("product_name"),
                product_sku=data.get("product_sku"),
            )
        except MoneyError as exc:
            raise LedgerValidationError(f"Item {position + 1}: {exc}")


@dataclass
class ReconciledLine:
    item: LineItemInput
    tax_amount: Decimal
    line_total: Decimal

    @property
    def gross(self) -> Decimal:
        return quantize(self.item.quantity * self.item.unit_price)


@dataclass
class ReconciledTotals:
    subtotal: Decimal
    discount_amount: Decimal
    tax_amount: Decimal
    total_amount: Decimal
    lines: list[ReconciledLine] = field(default_factory=list)


def _validate_item(item: LineItemInput, position: int) -> None:
    label = f"Item {position + 1} ({item.product_ref})"
    if item.quantity <= 0:
        raise LedgerValidationError(f"{label}: quantity must be greater than zero")
    if item.unit_price < 0:
        raise LedgerValidationError(f"{label}: unit_price cannot be negative")
    if item.discount_amount < 0:
        raise LedgerValidationError(f"{label}: discount_amount cannot be negative")
    if item.tax_amount < 0:
        raise LedgerValidationError(f"{label}: tax_amount cannot be negative")


def _apportion_tax(items: list[LineItemInput], tax_total: Decimal) -> list[Decimal]:
    nets = [quantize(i.quantity * i.unit_price) - i.discount_amount for i in items]
    base = sum((n for n in nets if n > 0), ZERO)
    if base <= 0:
        # Nothing to weigh by; everything lands on the first line
        return [tax_total] + [ZERO] * (len(items) - 1)

    shares = [quantize(tax_total * n / base) if n > 0 else ZERO for n in nets]
    remainder = tax_total - sum(shares, ZERO)
    last_taxable = max(idx for idx, n in enumerate(nets) if n > 0)
    shares[last_taxable] += remainder
    return shares


def reconcile(
    items: list[LineItemInput],
    *,
    declared_subtotal=None,
    declared_total=None,
    tax_override=None,
) -> ReconciledTotals:
    """
    Validate items and compute canonical totals.

    Args:
        items: Proposed line items
        declared_subtotal: Caller's subtotal (None skips the check)
        declared_total: Caller's total (None skips the check)
        tax_override: Document-level tax replacing the per-line taxes

    Returns:
        ReconciledTotals to persist in place of the declared values

    Raises:
        LedgerValidationError: empty item list, bad line values, negative total
        InconsistentTotals: declared subtotal/total off by more than 0.01
    """
    if not items:
        raise LedgerValidationError("A document needs at least one line item")

    for position, item in enumerate(items):
        _validate_item(item, position)

    if tax_override is not None:
        try:
            tax_total = to_money(tax_override, field="tax_amount")
        except MoneyError as exc:
            raise LedgerValidationError(str(exc))
        if tax_total < 0:
            raise LedgerValidationError("tax_amount cannot be negative")
        line_taxes = _apportion_tax(items, tax_total)
    else:
        line_taxes = [item.tax_amount for item in items]

    lines = []
    for item, line_tax in zip(items, line_taxes):
        gross = quantize(item.quantity * item.unit_price)
        lines.append(ReconciledLine(
            item=item,
            tax_amount=line_tax,
            line_total=gross - item.discount_amount + line_tax,
        ))

    calc_subtotal = sum((line.gross for line in lines), ZERO)
    calc_discount = sum((item.discount_amount for item in items), ZERO)
    calc_tax = sum(line_taxes, ZERO)
    calc_total = calc_subtotal - calc_discount + calc_tax

    if calc_total < 0:
        raise LedgerValidationError(
            f"total_amount cannot be negative (computed {calc_total})",
            details={"calc_total": str(calc_total)},
        )

    if declared_subtotal is not None:
        declared = _declared(declared_subtotal, "subtotal")
        if not money_equal(calc_subtotal, declared):
            raise InconsistentTotals(
                f"Declared subtotal {declared} does not match computed subtotal {calc_subtotal}",
                details={"declared_subtotal": str(declared), "calc_subtotal": str(calc_subtotal)},
            )

    if declared_total is not None:
        declared = _declared(declared_total, "total_amount")
        if not money_equal(calc_total, declared):
            raise InconsistentTotals(
                f"Declared total {declared} does not match computed total {calc_total}",
                details={"declared_total": str(declared), "calc_total": str(calc_total)},
            )

    return ReconciledTotals(
        subtotal=calc_subtotal,
        discount_amount=calc_discount,
        tax_amount=calc_tax,
        total_amount=calc_total,
        lines=lines,
    )


def _declared(value, field_name: str) -> Decimal:
    try:
        return to_money(value, field=field_name)
    except MoneyError as exc:
        raise LedgerValidationError(str(exc))
