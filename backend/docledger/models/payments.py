from __future__ import annotations

from ..extensions import db
from ..money import format_money
from ..time_utils import to_utc_z, to_iso_date
from .documents import Money


class Payment(db.Model):
    """
    Money received from a payer, independent of any one document.

    WHY: Cash often arrives before the payer says which invoice it covers.
    The payment sits in the pool until allocations bind it to documents.

    IMMUTABLE: amount never changes after creation. allocated_amount is a cache
    of the signed sum of this payment's allocations, recomputed in the same
    transaction as every allocation insert.
    """
    __tablename__ = "payments"
    __table_args__ = (
        db.UniqueConstraint("payment_number", name="uq_payments_number"),
        db.CheckConstraint("amount > 0", name="ck_payments_amount_positive"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    payment_number = db.Column(db.String(64), nullable=False)
    payer_ref = db.Column(db.String(64), nullable=False, index=True)

    amount = db.Column(Money, nullable=False)
    currency = db.Column(db.String(3), nullable=False)
    allocated_amount = db.Column(Money, nullable=False, default=0)

    received_date = db.Column(db.Date, nullable=False, index=True)
    method = db.Column(db.String(32), nullable=False, index=True)
    reference = db.Column(db.String(128), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), index=True)
    version_id = db.Column(db.Integer, nullable=False, default=1)

    allocations = db.relationship(
        "Allocation",
        backref="payment",
        lazy=True,
        order_by="Allocation.id",
    )
    __mapper_args__ = {"version_id_col": version_id}

    @property
    def unallocated_amount(self):
        return self.amount - self.allocated_amount

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "payment_number": self.payment_number,
            "payer_ref": self.payer_ref,
            "amount": format_money(self.amount),
            "currency": self.currency,
            "allocated_amount": format_money(self.allocated_amount),
            "unallocated_amount": format_money(self.unallocated_amount),
            "received_date": to_iso_date(self.received_date),
            "method": self.method,
            "reference": self.reference,
            "created_at": to_utc_z(self.created_at),
            "version_id": self.version_id,
        }


class Allocation(db.Model):
    """
    Binding of part of one payment to one document.

    APPEND-ONLY: rows are never updated or deleted. A REVERSAL row is the
    compensating entry for an earlier ALLOCATION and counts negatively in
    every sum (see signed_amount).
    """
    __tablename__ = "allocations"
    __table_args__ = (
        db.CheckConstraint("amount > 0", name="ck_allocations_amount_positive"),
        db.Index("ix_allocations_document_created", "document_id", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    payment_id = db.Column(db.Integer, db.ForeignKey("payments.id"), nullable=False, index=True)
    document_id = db.Column(db.Integer, db.ForeignKey("documents.id"), nullable=False, index=True)

    amount = db.Column(Money, nullable=False)
    kind = db.Column(db.String(16), nullable=False, default="ALLOCATION", index=True)  # ALLOCATION, REVERSAL
    reverses_allocation_id = db.Column(db.Integer, db.ForeignKey("allocations.id"), nullable=True, index=True)
    reason = db.Column(db.String(255), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    document = db.relationship("Document", backref=db.backref("allocations", lazy=True, order_by="Allocation.id"))

    @property
    def signed_amount(self):
        return -self.amount if self.kind == "REVERSAL" else self.amount

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "payment_id": self.payment_id,
            "document_id": self.document_id,
            "amount": format_money(self.amount),
            "kind": self.kind,
            "reverses_allocation_id": self.reverses_allocation_id,
            "reason": self.reason,
            "created_at": to_utc_z(self.created_at),
        }
