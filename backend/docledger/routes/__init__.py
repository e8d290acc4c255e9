# Overview: Shared helpers for ledger API routes (error mapping, JSON parsing).

from flask import current_app, jsonify, request

from ..errors import (
    AllocationNotFound,
    DocumentLocked,
    DocumentNotFound,
    IllegalTransition,
    LedgerError,
    NumberingCollision,
    PaymentNotFound,
    ReturnNotFound,
    SequenceGap,
)


# Anything not listed here is a 400 (validation and capacity errors)
_STATUS_BY_ERROR = (
    ((DocumentNotFound, PaymentNotFound, AllocationNotFound, ReturnNotFound), 404),
    ((IllegalTransition, DocumentLocked), 409),
    ((SequenceGap, NumberingCollision), 500),
)


def status_for(exc: LedgerError) -> int:
    for classes, status in _STATUS_BY_ERROR:
        if isinstance(exc, classes):
            return status
    return 400


def error_response(exc: LedgerError):
    status = status_for(exc)
    if status >= 500:
        current_app.logger.error("Ledger integrity error: %s (%s)", exc, exc.details)
    return jsonify({"error": str(exc), "details": exc.details}), status


def json_body() -> dict:
    """Request JSON object; an absent or non-object body reads as {}."""
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def paginated(items, total: int, filters) -> dict:
    return {
        "items": [item.to_dict() for item in items],
        "count": len(items),
        "pagination": {
            "page": filters.page,
            "per_page": filters.limit,
            "total": total,
        },
    }
