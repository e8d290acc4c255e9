# Overview: Service-layer operations for the ledger event outbox.

from __future__ import annotations

import json
from typing import Iterable

from flask import current_app
from sqlalchemy import func

from ..collaborators import get_event_publisher
from ..extensions import db
from ..models import LedgerEvent
from ..time_utils import utcnow
"""
Ledger Event Invariants (authoritative)

- Append-only: events are never updated, except for stamping published_at.
- Events are written inside the same DB transaction as the change they record.
- Publication happens after commit. A publication failure never rolls back the
  ledger; the event stays pending (published_at IS NULL) for republish.
- idempotency_key = "<scope>:<event_type>:<sequence>", where scope is the
  document id (or "payment-<id>" for events with no document) and sequence
  counts events of that type within the scope. Overdue reminders also carry
  the due date: "<doc>:document.overdue:<due_date>:<sequence>".
"""


def append_ledger_event(
    *,
    event_type: str,
    entity_type: str,
    entity_id: int,
    document_id: int | None = None,
    payment_id: int | None = None,
    allocation_id: int | None = None,
    return_id: int | None = None,
    payload: dict | None = None,
    cycle: str | None = None,
) -> LedgerEvent:
    """
    Append an outbox event. Caller owns the transaction (no commit here).

    cycle, when given, goes into the key ahead of the sequence:
    "<scope>:<event_type>:<cycle>:<sequence>".
    """
    if document_id is not None:
        scope = str(document_id)
        scope_filter = LedgerEvent.document_id == document_id
    elif payment_id is not None:
        scope = f"payment-{payment_id}"
        scope_filter = db.and_(LedgerEvent.payment_id == payment_id, LedgerEvent.document_id.is_(None))
    else:
        raise ValueError("Ledger events need a document_id or payment_id scope")

    previous = db.session.query(func.count(LedgerEvent.id)).filter(
        scope_filter,
        LedgerEvent.event_type == event_type,
    ).scalar() or 0
    sequence = previous + 1

    ev = LedgerEvent(
        event_type=event_type,
        entity_type=entity_type,
        entity_id=entity_id,
        document_id=document_id,
        payment_id=payment_id,
        allocation_id=allocation_id,
        return_id=return_id,
        sequence=sequence,
        idempotency_key=f"{scope}:{event_type}:{cycle}:{sequence}" if cycle else f"{scope}:{event_type}:{sequence}",
        payload=json.dumps(payload or {}, sort_keys=True, default=str),
        occurred_at=utcnow(),
    )
    db.session.add(ev)
    db.session.flush()  # ensures ev.id is assigned without committing
    return ev


def publish_events(events: Iterable[LedgerEvent]) -> int:
    """
    Publish committed events. Returns the number published successfully.

    Must be called after the owning transaction commits.
    """
    publisher = get_event_publisher()
    published = 0
    for ev in events:
        try:
            publisher.publish(ev.to_dict())
        except Exception:
            current_app.logger.warning(
                "Failed to publish ledger event %s (%s); left pending for replay",
                ev.idempotency_key,
                ev.event_type,
                exc_info=True,
            )
            continue
        ev.published_at = utcnow()
        published += 1

    if published:
        db.session.commit()
    return published


def get_pending_events(limit: int = 500) -> list[LedgerEvent]:
    return db.session.query(LedgerEvent).filter(
        LedgerEvent.published_at.is_(None)
    ).order_by(LedgerEvent.id).limit(limit).all()


def republish_pending_events(limit: int = 500) -> int:
    """Retry publication of events whose earlier publication failed."""
    return publish_events(get_pending_events(limit=limit))


def get_document_events(document_id: int) -> list[LedgerEvent]:
    return db.session.query(LedgerEvent).filter_by(
        document_id=document_id
    ).order_by(LedgerEvent.id).all()
