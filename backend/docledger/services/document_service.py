# Overview: Service-layer operations for documents: numbering, creation, amendment and lookup.

from __future__ import annotations

from datetime import date

from flask import current_app
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from ..collaborators import get_catalog
from ..errors import DocumentNotFound, LedgerValidationError, NumberingCollision
from ..extensions import db
from ..filters import DocumentFilter
from ..models import Document, DocumentLine, DocumentSequence
from ..time_utils import parse_iso_date, today
from .concurrency import lock_for_update, run_with_retry
from .ledger_service import append_ledger_event, publish_events
from .lifecycle_service import (
    TRANSITION_TABLE_VERSION,
    DRAFT,
    ensure_editable,
    validate_document_type,
)
from .reconciler_service import LineItemInput, ReconciledTotals, reconcile


DOCUMENT_PREFIXES = {
    "SALE": "SAL",
    "INVOICE": "INV",
    "ORDER": "ORD",
    "QUOTATION": "QUO",
    "PAYMENT": "PAY",
}


# =============================================================================
# NUMBERING
# =============================================================================

def _current_number(document_type: str, period: str) -> int:
    return (
        db.session.query(DocumentSequence.next_number)
        .filter_by(document_type=document_type, period=period)
        .scalar()
    )


def next_document_number(
    *,
    document_type: str,
    prefix: str | None = None,
    on_date: date | None = None,
    pad: int = 4,
) -> str:
    """
    Atomically allocate the next number for a (type, YYYYMM) sequence.

    The increment is a single UPDATE, so concurrent callers serialize on the
    sequence row. Caller owns the transaction (no commit here); a rolled-back
    creation releases its number together with everything else.
    """
    if not document_type:
        raise LedgerValidationError("document_type is required")
    prefix = prefix or DOCUMENT_PREFIXES.get(document_type)
    if not prefix:
        raise LedgerValidationError(f"No number prefix configured for '{document_type}'")

    period = (on_date or today()).strftime("%Y%m")
    stmt = (
        update(DocumentSequence)
        .where(
            DocumentSequence.document_type == document_type,
            DocumentSequence.period == period,
        )
        .values(next_number=DocumentSequence.next_number + 1)
    )

    result = db.session.execute(stmt)
    if result.rowcount:
        next_num = _current_number(document_type, period) - 1
    else:
        seq = DocumentSequence(document_type=document_type, period=period, next_number=2)
        try:
            with db.session.begin_nested():
                db.session.add(seq)
                db.session.flush()
            next_num = 1
        except IntegrityError:
            # Another transaction opened the period first
            result = db.session.execute(stmt)
            if not result.rowcount:
                raise
            next_num = _current_number(document_type, period) - 1

    return f"{prefix}-{period}-{next_num:0{pad}d}"


# =============================================================================
# LOOKUP
# =============================================================================

def get_document_or_404(document_id: int, lock: bool = False) -> Document:
    query = db.session.query(Document).filter(Document.id == document_id)
    if lock:
        query = lock_for_update(query)
    document = query.first()
    if document is None:
        raise DocumentNotFound(f"Document {document_id} not found", details={"document_id": document_id})
    return document


def get_document(document_id: int) -> Document:
    return get_document_or_404(document_id)


def get_document_by_number(document_number: str) -> Document:
    document = db.session.query(Document).filter_by(document_number=document_number).first()
    if document is None:
        raise DocumentNotFound(
            f"Document {document_number} not found",
            details={"document_number": document_number},
        )
    return document


def list_documents(filters: DocumentFilter | None = None) -> tuple[list[Document], int]:
    """List documents matching a typed filter. Returns (page, total)."""
    filters = filters or DocumentFilter()
    query = filters.apply(db.session.query(Document))
    total = query.order_by(None).count()
    return filters.paginate(query).all(), total


# =============================================================================
# CREATION / AMENDMENT
# =============================================================================

def _coerce_items(items) -> list[LineItemInput]:
    if not isinstance(items, (list, tuple)):
        raise LedgerValidationError("items must be a list")
    return [
        item if isinstance(item, LineItemInput) else LineItemInput.from_dict(item, position)
        for position, item in enumerate(items)
    ]


def _validate_dates(issue_date: date, due_date: date) -> None:
    if due_date < issue_date:
        raise LedgerValidationError(
            f"due_date {due_date.isoformat()} is before issue_date {issue_date.isoformat()}",
            details={"issue_date": issue_date.isoformat(), "due_date": due_date.isoformat()},
        )


def _build_lines(totals: ReconciledTotals) -> list[DocumentLine]:
    """Materialize reconciled lines, snapshotting catalog display data."""
    catalog = get_catalog()
    lines = []
    for position, rl in enumerate(totals.lines):
        item = rl.item
        name, sku = item.product_name, item.product_sku
        if not name or not sku:
            entry = catalog.resolve(item.product_ref)
            if entry is not None:
                name = name or entry.name
                sku = sku or entry.sku
        lines.append(DocumentLine(
            position=position,
            product_ref=item.product_ref,
            product_name=name or item.product_ref,
            product_sku=sku,
            quantity=item.quantity,
            unit_price=item.unit_price,
            discount_amount=item.discount_amount,
            tax_amount=rl.tax_amount,
            line_total=rl.line_total,
            returned_quantity=0,
        ))
    return lines


def _apply_totals(document: Document, totals: ReconciledTotals) -> None:
    document.subtotal = totals.subtotal
    document.discount_amount = totals.discount_amount
    document.tax_amount = totals.tax_amount
    document.total_amount = totals.total_amount
    document.paid_amount = 0
    document.balance_amount = totals.total_amount
    document.payment_status = "UNPAID"


def create_document(
    *,
    document_type: str,
    counterparty_ref: str,
    items,
    issue_date=None,
    due_date=None,
    currency: str | None = None,
    declared_subtotal=None,
    declared_total=None,
    tax_override=None,
    notes: str | None = None,
) -> Document:
    """
    Create a draft document from line items.

    Only the reconciler's canonical totals are stored. The number is taken from
    the (type, period) sequence inside the same transaction; if the number is
    already taken the insert is retried inside a savepoint with the next one.

    Raises:
        LedgerValidationError: bad kind, dates, currency or items
        InconsistentTotals: declared totals diverge from the items
        NumberingCollision: no free number after LEDGER_NUMBERING_ATTEMPTS tries
    """
    validate_document_type(document_type)
    if not counterparty_ref:
        raise LedgerValidationError("counterparty_ref is required")

    try:
        issue_date = parse_iso_date(issue_date) or today()
        due_date = parse_iso_date(due_date) or issue_date
    except ValueError as exc:
        raise LedgerValidationError(f"Invalid date: {exc}")
    _validate_dates(issue_date, due_date)

    currency = (currency or current_app.config["LEDGER_DEFAULT_CURRENCY"]).upper()
    if len(currency) != 3:
        raise LedgerValidationError(f"Invalid currency code '{currency}'")

    totals = reconcile(
        _coerce_items(items),
        declared_subtotal=declared_subtotal,
        declared_total=declared_total,
        tax_override=tax_override,
    )
    attempts = current_app.config.get("LEDGER_NUMBERING_ATTEMPTS", 5)

    def _op():
        document = None
        for attempt in range(attempts):
            number = next_document_number(document_type=document_type, on_date=issue_date)
            candidate = Document(
                document_type=document_type,
                document_number=number,
                counterparty_ref=str(counterparty_ref),
                issue_date=issue_date,
                due_date=due_date,
                currency=currency,
                status=DRAFT,
                transition_table_version=TRANSITION_TABLE_VERSION,
                notes=notes,
                lines=_build_lines(totals),
            )
            _apply_totals(candidate, totals)
            try:
                with db.session.begin_nested():
                    db.session.add(candidate)
                    db.session.flush()
            except IntegrityError:
                current_app.logger.warning(
                    "Document number %s already taken (attempt %d/%d)", number, attempt + 1, attempts
                )
                continue
            document = candidate
            break

        if document is None:
            raise NumberingCollision(
                f"Could not assign a {document_type} number after {attempts} attempts",
                details={"document_type": document_type, "attempts": attempts},
            )

        ev = append_ledger_event(
            event_type="document.created",
            entity_type="document",
            entity_id=document.id,
            document_id=document.id,
            payload={
                "document_number": document.document_number,
                "document_type": document.document_type,
                "counterparty_ref": document.counterparty_ref,
                "total_amount": str(document.total_amount),
                "currency": document.currency,
            },
        )
        db.session.commit()
        return document, ev

    document, ev = run_with_retry(_op)
    publish_events([ev])
    return document


def amend_document(
    document_id: int,
    *,
    items=None,
    declared_subtotal=None,
    declared_total=None,
    tax_override=None,
    counterparty_ref: str | None = None,
    issue_date=None,
    due_date=None,
    notes: str | None = None,
) -> Document:
    """
    Amend a draft document. Replacing items re-runs reconciliation.

    Raises:
        DocumentLocked: document has left draft
    """
    new_items = _coerce_items(items) if items is not None else None
    try:
        new_issue = parse_iso_date(issue_date)
        new_due = parse_iso_date(due_date)
    except ValueError as exc:
        raise LedgerValidationError(f"Invalid date: {exc}")

    def _op():
        document = get_document_or_404(document_id, lock=True)
        ensure_editable(document)

        effective_issue = new_issue or document.issue_date
        effective_due = new_due or document.due_date
        _validate_dates(effective_issue, effective_due)

        changed = []
        if new_items is not None:
            totals = reconcile(
                new_items,
                declared_subtotal=declared_subtotal,
                declared_total=declared_total,
                tax_override=tax_override,
            )
            document.lines = _build_lines(totals)
            _apply_totals(document, totals)
            changed.append("items")
        elif tax_override is not None or declared_subtotal is not None or declared_total is not None:
            # Without new items the stored lines are reconciled again
            totals = reconcile(
                [
                    LineItemInput(
                        product_ref=line.product_ref,
                        quantity=line.quantity,
                        unit_price=line.unit_price,
                        discount_amount=line.discount_amount,
                        tax_amount=line.tax_amount,
                        product_name=line.product_name,
                        product_sku=line.product_sku,
                    )
                    for line in document.lines
                ],
                declared_subtotal=declared_subtotal,
                declared_total=declared_total,
                tax_override=tax_override,
            )
            if tax_override is not None:
                document.lines = _build_lines(totals)
                _apply_totals(document, totals)
                changed.append("tax_amount")

        if counterparty_ref:
            document.counterparty_ref = str(counterparty_ref)
            changed.append("counterparty_ref")
        if new_issue:
            document.issue_date = new_issue
            changed.append("issue_date")
        if new_due:
            document.due_date = new_due
            changed.append("due_date")
        if notes is not None:
            document.notes = notes
            changed.append("notes")

        db.session.flush()
        ev = append_ledger_event(
            event_type="document.amended",
            entity_type="document",
            entity_id=document.id,
            document_id=document.id,
            payload={
                "document_number": document.document_number,
                "changed": changed,
                "total_amount": str(document.total_amount),
            },
        )
        db.session.commit()
        return document, ev

    document, ev = run_with_retry(_op)
    publish_events([ev])
    return document
