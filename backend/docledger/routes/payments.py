# Overview: Flask API routes for the payment pool and allocations; parses input and returns JSON responses.

# backend/docledger/routes/payments.py
"""
Payment & Allocation API Routes

WHY: Payments are received on their own and bound to documents later.

DESIGN:
- POST /api/payments records money with nothing allocated
- Allocations are append-only: corrections go through reverse/reallocate,
  which write compensating rows
- Capacity errors carry the offending limits in "details"
"""

from flask import Blueprint, jsonify, request, current_app

from ..errors import LedgerError
from ..filters import AllocationFilter, PaymentFilter
from ..services import allocation_service, payment_service
from . import error_response, json_body, paginated


payments_bp = Blueprint("payments", __name__, url_prefix="/api/payments")


# =============================================================================
# PAYMENT RECEIPT
# =============================================================================

@payments_bp.post("/")
def receive_payment_route():
    """
    Record a payment into the pool.

    Request body:
    {
        "payer_ref": "CUST-42",
        "amount": "500.00",
        "method": "BANK_TRANSFER",
        "reference": "WIRE-991",  (optional)
        "received_date": "2026-10-17",  (optional)
        "currency": "USD"  (optional)
    }

    METHODS: CASH, CARD, BANK_TRANSFER, CHECK, CREDIT

    Returns:
        201: Payment recorded
        400: Invalid input
    """
    try:
        data = json_body()
        payment = payment_service.receive_payment(
            payer_ref=data.get("payer_ref"),
            amount=data.get("amount"),
            method=data.get("method"),
            reference=data.get("reference"),
            received_date=data.get("received_date"),
            currency=data.get("currency"),
        )
        return jsonify({"payment": payment.to_dict()}), 201

    except LedgerError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to receive payment")
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# PAYMENT QUERIES
# =============================================================================

@payments_bp.get("/")
def list_payments_route():
    """
    List payments.

    Query params: payer_ref, method, currency, received_from, received_to,
    has_unallocated, page, limit.
    """
    try:
        filters = PaymentFilter.from_args(request.args.to_dict())
        payments, total = payment_service.list_payments(filters)
        return jsonify(paginated(payments, total, filters)), 200

    except LedgerError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to list payments")
        return jsonify({"error": "Internal server error"}), 500


@payments_bp.get("/<int:payment_id>")
def get_payment_route(payment_id: int):
    """Payment with its allocation trail."""
    try:
        return jsonify(payment_service.get_payment_summary(payment_id)), 200

    except LedgerError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to get payment")
        return jsonify({"error": "Internal server error"}), 500


@payments_bp.get("/payers/<string:payer_ref>/unallocated")
def get_payer_unallocated_route(payer_ref: str):
    try:
        summary = payment_service.get_payer_unallocated(payer_ref, currency=request.args.get("currency"))
        return jsonify(summary), 200

    except LedgerError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to get payer credit")
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# ALLOCATIONS
# =============================================================================

@payments_bp.post("/<int:payment_id>/allocations")
def allocate_route(payment_id: int):
    """
    Allocate part of a payment to a document, or split it across several.

    Request body:
    {
        "document_id": 7,
        "amount": "300.00"
    }

    or, all-or-nothing across documents:
    {
        "allocations": [
            {"document_id": 7, "amount": "300.00"},
            {"document_id": 9, "amount": "200.00"}
        ]
    }

    Returns:
        201: Allocation created
        400: OverAllocation or invalid input
        404: Payment or document not found
        409: Document cannot receive payments in its status
    """
    try:
        data = json_body()
        if "allocations" in data:
            created = allocation_service.allocate_many(
                payment_id, data.get("allocations"), reason=data.get("reason")
            )
            return jsonify({
                "allocations": [a.to_dict() for a in created],
                "payment": payment_service.get_payment(payment_id).to_dict(),
                "documents": [
                    allocation_service.get_document_payment_summary(document_id)
                    for document_id in sorted({a.document_id for a in created})
                ],
            }), 201

        if data.get("document_id") is None:
            return jsonify({"error": "document_id and amount required"}), 400

        allocation = allocation_service.allocate(
            payment_id,
            data.get("document_id"),
            data.get("amount"),
            reason=data.get("reason"),
        )
        return jsonify({
            "allocation": allocation.to_dict(),
            "payment": payment_service.get_payment(payment_id).to_dict(),
            "document": allocation_service.get_document_payment_summary(allocation.document_id),
        }), 201

    except LedgerError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to allocate payment")
        return jsonify({"error": "Internal server error"}), 500


@payments_bp.get("/allocations")
def list_allocations_route():
    """Query params: payment_id, document_id, kind, page, limit."""
    try:
        filters = AllocationFilter.from_args(request.args.to_dict())
        allocations, total = allocation_service.list_allocations(filters)
        return jsonify(paginated(allocations, total, filters)), 200

    except LedgerError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to list allocations")
        return jsonify({"error": "Internal server error"}), 500


@payments_bp.post("/allocations/<int:allocation_id>/reverse")
def reverse_allocation_route(allocation_id: int):
    """
    Return an allocation's amount to the payment pool.

    Request body:
    {
        "reason": "Applied to wrong invoice"
    }
    """
    try:
        data = json_body()
        reversal = allocation_service.reverse_allocation(allocation_id, data.get("reason"))
        return jsonify({"reversal": reversal.to_dict()}), 201

    except LedgerError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to reverse allocation")
        return jsonify({"error": "Internal server error"}), 500


@payments_bp.post("/allocations/<int:allocation_id>/reallocate")
def reallocate_route(allocation_id: int):
    """
    Move an allocation (or part of it) to another document.

    Request body:
    {
        "document_id": 9,
        "amount": "120.00",  (optional, defaults to the whole allocation)
        "reason": "Customer asked to apply to order"
    }
    """
    try:
        data = json_body()
        if data.get("document_id") is None:
            return jsonify({"error": "document_id required"}), 400

        allocation = allocation_service.reallocate(
            allocation_id,
            data.get("document_id"),
            data.get("amount"),
            reason=data.get("reason"),
        )
        return jsonify({"allocation": allocation.to_dict()}), 201

    except LedgerError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to reallocate")
        return jsonify({"error": "Internal server error"}), 500
