# Overview: Overdue scanner; idempotent batch moving past-due documents to overdue.

"""
Overdue Scanner

WHY: Reminders must go out exactly once per overdue transition, even when the
scan runs repeatedly or concurrently with payments.

DESIGN:
- Selection is advisory: candidates are re-read under a row lock and every
  condition (due date, balance, state) is re-checked at transition time, so a
  document paid mid-scan is never marked overdue
- Each document is handled in its own short transaction
- The status guard makes reruns no-ops: an overdue document has no
  mark_overdue transition, so it is never selected or reminded twice
"""

from __future__ import annotations

from datetime import date

from flask import current_app
from sqlalchemy import and_, or_

from ..errors import LedgerValidationError
from ..extensions import db
from ..models import Document, LedgerEvent
from ..time_utils import parse_iso_date, today
from .concurrency import run_with_retry
from .document_service import get_document_or_404
from .ledger_service import append_ledger_event, publish_events
from .lifecycle_service import (
    EVENT_MARK_OVERDUE,
    PAYABLE_TYPES,
    apply_event,
    can_transition,
    states_allowing,
)


def _as_of(value) -> date:
    try:
        return parse_iso_date(value) or today()
    except ValueError as exc:
        raise LedgerValidationError(f"Invalid as_of date: {exc}")


def _is_overdue(document: Document, as_of: date) -> bool:
    return (
        document.due_date < as_of
        and document.balance_amount > 0
        and can_transition(document.document_type, document.status, EVENT_MARK_OVERDUE)
    )


def find_overdue_candidates(as_of=None) -> list[Document]:
    """Documents past due with a balance, in a state that can still go overdue."""
    as_of = _as_of(as_of)
    state_clauses = []
    for document_type in PAYABLE_TYPES:
        states = states_allowing(document_type, EVENT_MARK_OVERDUE)
        if states:
            state_clauses.append(and_(
                Document.document_type == document_type,
                Document.status.in_(sorted(states)),
            ))

    return db.session.query(Document).filter(
        or_(*state_clauses),
        Document.due_date < as_of,
        Document.balance_amount > 0,
    ).order_by(Document.due_date, Document.id).all()


def _mark_overdue(document_id: int, as_of: date) -> LedgerEvent | None:
    def _op():
        document = get_document_or_404(document_id, lock=True)
        if not _is_overdue(document, as_of):
            # Paid, cancelled or already marked since selection
            db.session.rollback()
            return None

        previous = apply_event(document, EVENT_MARK_OVERDUE)
        ev = append_ledger_event(
            event_type="document.overdue",
            entity_type="document",
            entity_id=document.id,
            document_id=document.id,
            payload={
                "document_number": document.document_number,
                "counterparty_ref": document.counterparty_ref,
                "from_status": previous,
                "due_date": document.due_date.isoformat(),
                "balance_amount": str(document.balance_amount),
                "currency": document.currency,
                "as_of": as_of.isoformat(),
            },
            cycle=document.due_date.isoformat(),
        )
        db.session.commit()
        return ev

    return run_with_retry(_op)


def scan_overdue(as_of=None) -> int:
    """
    Move every eligible document to overdue and emit one reminder event each.

    Args:
        as_of: Reference date (defaults to today); documents due strictly
            before it are past due

    Returns:
        Number of documents transitioned in this run
    """
    as_of = _as_of(as_of)
    candidate_ids = [d.id for d in find_overdue_candidates(as_of)]
    # Candidate rows are re-read under lock below
    db.session.rollback()

    reminders = []
    for document_id in candidate_ids:
        ev = _mark_overdue(document_id, as_of)
        if ev is not None:
            reminders.append(ev)

    publish_events(reminders)
    current_app.logger.info(
        "Overdue scan as of %s: %d of %d candidates marked overdue",
        as_of.isoformat(),
        len(reminders),
        len(candidate_ids),
    )
    return len(reminders)
