# Overview: Ledger error taxonomy shared by services and routes.

"""
Ledger errors

Every error carries a human-readable message plus a `details` dict with the
offending values, so routes can surface limits to the caller unchanged.

HTTP mapping (see routes/__init__.py):
- LedgerValidationError, InconsistentTotals, OverAllocation, ExceedsBalance -> 400
- DocumentNotFound, PaymentNotFound, AllocationNotFound, ReturnNotFound -> 404
- IllegalTransition, DocumentLocked -> 409
- SequenceGap, NumberingCollision -> 500
"""


class LedgerError(Exception):
    """Base class for domain errors raised by the ledger services."""

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.details = details or {}


class LedgerValidationError(LedgerError, ValueError):
    """400-level input problem (bad amount, unknown method, bad dates)."""


class DocumentNotFound(LedgerError):
    pass


class PaymentNotFound(LedgerError):
    pass


class AllocationNotFound(LedgerError):
    pass


class InconsistentTotals(LedgerError):
    """Declared totals diverge from the totals computed from the line items."""


class IllegalTransition(LedgerError):
    """(state, event) pair not present in the document kind's transition table."""


class DocumentLocked(LedgerError):
    """Items or amounts edited on a document that has left draft."""


class OverAllocation(LedgerError):
    """Allocation exceeds the payment's unallocated amount or the document balance."""


class ExceedsBalance(LedgerError):
    """Payment amount exceeds the document's remaining balance."""


class ReturnNotFound(LedgerError):
    pass


class SequenceGap(LedgerError):
    """Return sequence numbers are not contiguous; upstream data corruption."""


class NumberingCollision(LedgerError):
    """Document number could not be assigned after bounded retries."""
