from __future__ import annotations

import json

from ..extensions import db
from ..time_utils import to_utc_z


class LedgerEvent(db.Model):
    """
    Append-only outbox of ledger events.

    Rows are written inside the same transaction as the change they record and
    published after commit. published_at stays NULL when publication fails, so
    the row can be replayed; idempotency_key lets consumers drop duplicates.
    """
    __tablename__ = "ledger_events"
    __table_args__ = (
        db.UniqueConstraint("idempotency_key", name="uq_ledger_events_idempotency_key"),
        db.Index("ix_ledger_events_document_type", "document_id", "event_type"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    # What happened
    event_type = db.Column(db.String(64), nullable=False, index=True)  # e.g., document.created, payment.allocated

    # What it refers to (generic pointer)
    entity_type = db.Column(db.String(32), nullable=False)
    entity_id = db.Column(db.Integer, nullable=False)

    document_id = db.Column(db.Integer, db.ForeignKey("documents.id"), nullable=True, index=True)
    payment_id = db.Column(db.Integer, db.ForeignKey("payments.id"), nullable=True, index=True)
    allocation_id = db.Column(db.Integer, db.ForeignKey("allocations.id"), nullable=True)
    return_id = db.Column(db.Integer, db.ForeignKey("returns.id"), nullable=True)

    sequence = db.Column(db.Integer, nullable=False)
    idempotency_key = db.Column(db.String(128), nullable=False)

    payload = db.Column(db.Text, nullable=True)

    occurred_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), index=True)
    published_at = db.Column(db.DateTime(timezone=True), nullable=True, index=True)

    def payload_dict(self) -> dict:
        return json.loads(self.payload) if self.payload else {}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "event_type": self.event_type,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "document_id": self.document_id,
            "payment_id": self.payment_id,
            "allocation_id": self.allocation_id,
            "return_id": self.return_id,
            "sequence": self.sequence,
            "idempotency_key": self.idempotency_key,
            "payload": self.payload_dict(),
            "occurred_at": to_utc_z(self.occurred_at),
            "published_at": to_utc_z(self.published_at),
        }
