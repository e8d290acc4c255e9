# Overview: Typed query filters; one dataclass per entity, translated once into predicates.

"""
Typed filters

WHY: Ad hoc dict filters silently ignore misspelled keys. Each entity has a
filter dataclass with an enumerated set of fields; from_args() rejects unknown
keys and coerces values, apply() is the only place that turns them into
SQLAlchemy predicates.
"""

from __future__ import annotations

from dataclasses import dataclass, fields
from datetime import date
from typing import Any, Mapping

from .errors import LedgerValidationError
from .models import Allocation, Document, Payment, Return
from .time_utils import parse_iso_date


MAX_LIMIT = 500

# Keys accepted by every filter but not stored on it
_PAGING_KEYS = {"page", "limit"}


def _coerce(name: str, annotation: str, value: Any):
    if value is None or value == "":
        return None
    try:
        if "date" in annotation:
            return parse_iso_date(value)
        if "int" in annotation:
            return int(value)
    except ValueError:
        raise LedgerValidationError(f"Invalid value for filter '{name}': {value!r}")
    return str(value)


class _BaseFilter:
    page: int = 1
    limit: int = 50

    @classmethod
    def from_args(cls, args: Mapping[str, Any]):
        known = {f.name: f for f in fields(cls)}
        unknown = sorted(set(args) - set(known) - _PAGING_KEYS)
        if unknown:
            raise LedgerValidationError(
                f"Unknown filter field(s): {', '.join(unknown)}",
                details={"allowed": sorted(known)},
            )
        values = {name: _coerce(name, str(known[name].type), args.get(name)) for name in known if name in args}
        instance = cls(**values)
        page = _coerce("page", "int", args.get("page"))
        limit = _coerce("limit", "int", args.get("limit"))
        instance.page = max(1, page or 1)
        instance.limit = min(MAX_LIMIT, max(1, limit or 50))
        return instance

    def paginate(self, query):
        return query.limit(self.limit).offset((self.page - 1) * self.limit)


@dataclass
class DocumentFilter(_BaseFilter):
    document_type: str | None = None
    status: str | None = None
    payment_status: str | None = None
    counterparty_ref: str | None = None
    currency: str | None = None
    issued_from: date | None = None
    issued_to: date | None = None
    due_before: date | None = None
    number_prefix: str | None = None

    def apply(self, query):
        if self.document_type:
            query = query.filter(Document.document_type == self.document_type)
        if self.status:
            query = query.filter(Document.status == self.status)
        if self.payment_status:
            query = query.filter(Document.payment_status == self.payment_status)
        if self.counterparty_ref:
            query = query.filter(Document.counterparty_ref == self.counterparty_ref)
        if self.currency:
            query = query.filter(Document.currency == self.currency)
        if self.issued_from:
            query = query.filter(Document.issue_date >= self.issued_from)
        if self.issued_to:
            query = query.filter(Document.issue_date <= self.issued_to)
        if self.due_before:
            query = query.filter(Document.due_date < self.due_before)
        if self.number_prefix:
            query = query.filter(Document.document_number.startswith(self.number_prefix))
        return query.order_by(Document.issue_date.desc(), Document.id.desc())


@dataclass
class PaymentFilter(_BaseFilter):
    payer_ref: str | None = None
    method: str | None = None
    currency: str | None = None
    received_from: date | None = None
    received_to: date | None = None
    has_unallocated: str | None = None

    def apply(self, query):
        if self.payer_ref:
            query = query.filter(Payment.payer_ref == self.payer_ref)
        if self.method:
            query = query.filter(Payment.method == self.method)
        if self.currency:
            query = query.filter(Payment.currency == self.currency)
        if self.received_from:
            query = query.filter(Payment.received_date >= self.received_from)
        if self.received_to:
            query = query.filter(Payment.received_date <= self.received_to)
        if self.has_unallocated is not None:
            if self.has_unallocated.lower() in ("1", "true", "yes"):
                query = query.filter(Payment.amount > Payment.allocated_amount)
            else:
                query = query.filter(Payment.amount <= Payment.allocated_amount)
        return query.order_by(Payment.received_date.desc(), Payment.id.desc())


@dataclass
class AllocationFilter(_BaseFilter):
    payment_id: int | None = None
    document_id: int | None = None
    kind: str | None = None

    def apply(self, query):
        if self.payment_id is not None:
            query = query.filter(Allocation.payment_id == self.payment_id)
        if self.document_id is not None:
            query = query.filter(Allocation.document_id == self.document_id)
        if self.kind:
            query = query.filter(Allocation.kind == self.kind)
        return query.order_by(Allocation.id)


@dataclass
class ReturnFilter(_BaseFilter):
    document_id: int | None = None
    return_type: str | None = None

    def apply(self, query):
        if self.document_id is not None:
            query = query.filter(Return.document_id == self.document_id)
        if self.return_type:
            query = query.filter(Return.return_type == self.return_type)
        return query.order_by(Return.document_id, Return.sequence_no)
