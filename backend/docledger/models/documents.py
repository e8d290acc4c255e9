from __future__ import annotations

from ..extensions import db
from ..money import format_money, format_quantity
from ..time_utils import to_utc_z, to_iso_date


Money = db.Numeric(14, 2, asdecimal=True)
Quantity = db.Numeric(12, 3, asdecimal=True)


class Document(db.Model):
    """
    Priced, payable business record (sale, invoice, order or quotation).

    WHY: The four kinds are structurally identical for ledger purposes; only
    their transition tables differ (see services/lifecycle_service.py).

    DERIVED FIELDS (never set directly by callers):
    - subtotal/tax_amount/discount_amount/total_amount: from the reconciler
    - paid_amount: signed sum of allocations
    - balance_amount: max(0, total_amount - paid_amount)
    - payment_status: UNPAID, PARTIALLY_PAID, PAID, OVERPAID
    """
    __tablename__ = "documents"
    __table_args__ = (
        db.UniqueConstraint("document_number", name="uq_documents_number"),
        db.CheckConstraint("due_date >= issue_date", name="ck_documents_due_after_issue"),
        db.Index("ix_documents_status_due", "status", "due_date"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    document_type = db.Column(db.String(16), nullable=False, index=True)  # SALE, INVOICE, ORDER, QUOTATION

    # Human-readable document number (e.g., "INV-202610-0001")
    document_number = db.Column(db.String(64), nullable=False)

    # Reference only; counterparty details live in another service
    counterparty_ref = db.Column(db.String(64), nullable=False, index=True)

    issue_date = db.Column(db.Date, nullable=False)
    due_date = db.Column(db.Date, nullable=False)
    currency = db.Column(db.String(3), nullable=False)

    # Totals (canonical, computed by the reconciler)
    subtotal = db.Column(Money, nullable=False, default=0)
    tax_amount = db.Column(Money, nullable=False, default=0)
    discount_amount = db.Column(Money, nullable=False, default=0)
    total_amount = db.Column(Money, nullable=False, default=0)

    # Payment tracking (derived from allocations)
    paid_amount = db.Column(Money, nullable=False, default=0)
    balance_amount = db.Column(Money, nullable=False, default=0)
    payment_status = db.Column(db.String(16), nullable=False, default="UNPAID", index=True)

    # Workflow
    status = db.Column(db.String(16), nullable=False, default="draft", index=True)
    transition_table_version = db.Column(db.Integer, nullable=False, default=1)
    cancel_reason = db.Column(db.String(255), nullable=True)
    cancelled_at = db.Column(db.DateTime(timezone=True), nullable=True)

    notes = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())
    version_id = db.Column(db.Integer, nullable=False, default=1)

    lines = db.relationship(
        "DocumentLine",
        backref="document",
        lazy=True,
        order_by="DocumentLine.position",
        cascade="all, delete-orphan",
    )
    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self, include_lines: bool = False) -> dict:
        data = {
            "id": self.id,
            "document_type": self.document_type,
            "document_number": self.document_number,
            "counterparty_ref": self.counterparty_ref,
            "issue_date": to_iso_date(self.issue_date),
            "due_date": to_iso_date(self.due_date),
            "currency": self.currency,
            "subtotal": format_money(self.subtotal),
            "tax_amount": format_money(self.tax_amount),
            "discount_amount": format_money(self.discount_amount),
            "total_amount": format_money(self.total_amount),
            "paid_amount": format_money(self.paid_amount),
            "balance_amount": format_money(self.balance_amount),
            "payment_status": self.payment_status,
            "status": self.status,
            "transition_table_version": self.transition_table_version,
            "cancel_reason": self.cancel_reason,
            "cancelled_at": to_utc_z(self.cancelled_at),
            "notes": self.notes,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
            "version_id": self.version_id,
        }
        if include_lines:
            data["items"] = [line.to_dict() for line in self.lines]
        return data


class DocumentLine(db.Model):
    """
    Line item on a document.

    product_name/product_sku are a snapshot taken at creation so historical
    documents stay readable after the catalog entry changes or disappears.
    returned_quantity is maintained when returns are recorded; replay never
    reads it.
    """
    __tablename__ = "document_lines"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    document_id = db.Column(db.Integer, db.ForeignKey("documents.id"), nullable=False, index=True)
    position = db.Column(db.Integer, nullable=False)

    product_ref = db.Column(db.String(64), nullable=False)
    product_name = db.Column(db.String(255), nullable=True)
    product_sku = db.Column(db.String(64), nullable=True)

    quantity = db.Column(Quantity, nullable=False)
    unit_price = db.Column(Money, nullable=False)
    discount_amount = db.Column(Money, nullable=False, default=0)
    tax_amount = db.Column(Money, nullable=False, default=0)
    line_total = db.Column(Money, nullable=False)

    returned_quantity = db.Column(Quantity, nullable=False, default=0)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "document_id": self.document_id,
            "position": self.position,
            "product_ref": self.product_ref,
            "product_name": self.product_name,
            "product_sku": self.product_sku,
            "quantity": format_quantity(self.quantity),
            "unit_price": format_money(self.unit_price),
            "discount_amount": format_money(self.discount_amount),
            "tax_amount": format_money(self.tax_amount),
            "line_total": format_money(self.line_total),
            "returned_quantity": format_quantity(self.returned_quantity),
        }


class DocumentSequence(db.Model):
    """
    Atomic per-(type, period) document sequences.

    WHY: Prevent race conditions when generating document numbers
    (PREFIX-YYYYMM-NNNN restarts at 1 every month).
    """
    __tablename__ = "document_sequences"
    __table_args__ = (
        db.UniqueConstraint("document_type", "period", name="uq_doc_sequences_type_period"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    document_type = db.Column(db.String(32), nullable=False, index=True)
    period = db.Column(db.String(6), nullable=False)  # YYYYMM
    next_number = db.Column(db.Integer, nullable=False, default=1)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "document_type": self.document_type,
            "period": self.period,
            "next_number": self.next_number,
            "updated_at": to_utc_z(self.updated_at),
        }
