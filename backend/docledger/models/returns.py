from __future__ import annotations

from ..extensions import db
from ..money import format_money, format_quantity
from ..time_utils import to_utc_z
from .documents import Money, Quantity


class Return(db.Model):
    """
    Return event against a document.

    APPEND-ONLY: returns are never edited or reordered. sequence_no starts at 1
    and is contiguous per document; replay treats a gap as corruption.

    refund_amount is a cash figure. Replay never derives totals from it.
    """
    __tablename__ = "returns"
    __table_args__ = (
        db.UniqueConstraint("document_id", "sequence_no", name="uq_returns_document_sequence"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    document_id = db.Column(db.Integer, db.ForeignKey("documents.id"), nullable=False, index=True)
    sequence_no = db.Column(db.Integer, nullable=False)

    return_type = db.Column(db.String(16), nullable=False)  # FULL, PARTIAL
    refund_amount = db.Column(Money, nullable=False, default=0)
    reason = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), index=True)

    document = db.relationship("Document", backref=db.backref("returns", lazy=True, order_by="Return.sequence_no"))
    lines = db.relationship("ReturnLine", backref="return_doc", lazy=True, order_by="ReturnLine.id")

    def to_dict(self, include_lines: bool = True) -> dict:
        data = {
            "id": self.id,
            "document_id": self.document_id,
            "sequence_no": self.sequence_no,
            "return_type": self.return_type,
            "refund_amount": format_money(self.refund_amount),
            "reason": self.reason,
            "created_at": to_utc_z(self.created_at),
        }
        if include_lines:
            data["items_returned"] = [line.to_dict() for line in self.lines]
        return data


class ReturnLine(db.Model):
    """Quantity of one document line given back in a return."""
    __tablename__ = "return_lines"
    __table_args__ = (
        db.CheckConstraint("quantity_returned > 0", name="ck_return_lines_quantity_positive"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    return_id = db.Column(db.Integer, db.ForeignKey("returns.id"), nullable=False, index=True)
    document_line_id = db.Column(db.Integer, db.ForeignKey("document_lines.id"), nullable=False, index=True)
    quantity_returned = db.Column(Quantity, nullable=False)

    document_line = db.relationship("DocumentLine")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "return_id": self.return_id,
            "line_item_ref": self.document_line_id,
            "quantity_returned": format_quantity(self.quantity_returned),
        }
