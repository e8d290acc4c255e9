# Overview: Flask API routes for ledger statistics; parses filters and returns JSON responses.

# backend/docledger/routes/reports.py
"""
Report API Routes

Counts and sums over the same query params the list endpoints accept.
Paging params are accepted and ignored.
"""

from flask import Blueprint, jsonify, request, current_app

from ..errors import LedgerError
from ..filters import AllocationFilter, DocumentFilter, PaymentFilter, ReturnFilter
from ..services import reporting_service
from . import error_response


reports_bp = Blueprint("reports", __name__, url_prefix="/api/reports")


def _report(filter_cls, build, label: str):
    try:
        filters = filter_cls.from_args(request.args.to_dict())
        return jsonify({"stats": build(filters)}), 200

    except LedgerError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to build %s report", label)
        return jsonify({"error": "Internal server error"}), 500


@reports_bp.get("/documents")
def document_stats_route():
    """
    Document totals and counts by status / payment_status.

    Query params: document_type, status, payment_status, counterparty_ref,
    currency, issued_from, issued_to, due_before, number_prefix.
    """
    return _report(DocumentFilter, reporting_service.document_stats, "document")


@reports_bp.get("/payments")
def payment_stats_route():
    return _report(PaymentFilter, reporting_service.payment_stats, "payment")


@reports_bp.get("/allocations")
def allocation_stats_route():
    return _report(AllocationFilter, reporting_service.allocation_stats, "allocation")


@reports_bp.get("/returns")
def return_stats_route():
    """Query params: document_id, return_type."""
    return _report(ReturnFilter, reporting_service.return_stats, "return")
