# Overview: Flask API routes for documents; parses input and returns JSON responses.

# backend/docledger/routes/documents.py
"""
Document API Routes

WHY: Create, amend and move sales, invoices, orders and quotations through
their workflow over REST.

DESIGN:
- Totals in the body are declarations; the stored totals always come from
  the line items
- Workflow actions are POSTs to /<id>/<event>; the transition table decides
- Replay views are read-only and never touch the stored totals
"""

from flask import Blueprint, jsonify, request, current_app

from ..errors import LedgerError, LedgerValidationError
from ..filters import DocumentFilter
from ..services import allocation_service, document_service, lifecycle_service, replay_service
from ..services.ledger_service import get_document_events
from . import error_response, json_body, paginated


documents_bp = Blueprint("documents", __name__, url_prefix="/api/documents")


# =============================================================================
# DOCUMENT CREATION / AMENDMENT
# =============================================================================

@documents_bp.post("/")
def create_document_route():
    """
    Create a draft document.

    Request body:
    {
        "document_type": "INVOICE",
        "counterparty_ref": "CUST-42",
        "issue_date": "2026-10-01",
        "due_date": "2026-10-31",
        "currency": "USD",  (optional)
        "items": [
            {"product_ref": "P-1", "quantity": "2", "unit_price": "100.00", "tax_amount": "15.00"}
        ],
        "subtotal": "200.00",  (optional declaration)
        "total_amount": "215.00",  (optional declaration)
        "tax_amount": "15.00"  (optional document-level tax override)
    }

    Returns:
        201: Document created
        400: Invalid input or InconsistentTotals
        500: Server error
    """
    try:
        data = json_body()
        document = document_service.create_document(
            document_type=data.get("document_type"),
            counterparty_ref=data.get("counterparty_ref"),
            items=data.get("items"),
            issue_date=data.get("issue_date"),
            due_date=data.get("due_date"),
            currency=data.get("currency"),
            declared_subtotal=data.get("subtotal"),
            declared_total=data.get("total_amount"),
            tax_override=data.get("tax_amount"),
            notes=data.get("notes"),
        )
        return jsonify({"document": document.to_dict(include_lines=True)}), 201

    except LedgerError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to create document")
        return jsonify({"error": "Internal server error"}), 500


@documents_bp.patch("/<int:document_id>")
def amend_document_route(document_id: int):
    """
    Amend a draft document. Sending "items" replaces every line.

    Returns:
        200: Document amended
        409: Document is no longer a draft
    """
    try:
        data = json_body()
        document = document_service.amend_document(
            document_id,
            items=data.get("items"),
            declared_subtotal=data.get("subtotal"),
            declared_total=data.get("total_amount"),
            tax_override=data.get("tax_amount"),
            counterparty_ref=data.get("counterparty_ref"),
            issue_date=data.get("issue_date"),
            due_date=data.get("due_date"),
            notes=data.get("notes"),
        )
        return jsonify({"document": document.to_dict(include_lines=True)}), 200

    except LedgerError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to amend document")
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# DOCUMENT QUERIES
# =============================================================================

@documents_bp.get("/")
def list_documents_route():
    """
    List documents.

    Query params: document_type, status, payment_status, counterparty_ref,
    currency, issued_from, issued_to, due_before, number_prefix, page, limit.
    Unknown params are rejected.
    """
    try:
        filters = DocumentFilter.from_args(request.args.to_dict())
        documents, total = document_service.list_documents(filters)
        return jsonify(paginated(documents, total, filters)), 200

    except LedgerError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to list documents")
        return jsonify({"error": "Internal server error"}), 500


@documents_bp.get("/<int:document_id>")
def get_document_route(document_id: int):
    try:
        document = document_service.get_document(document_id)
        return jsonify({"document": document.to_dict(include_lines=True)}), 200

    except LedgerError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to get document")
        return jsonify({"error": "Internal server error"}), 500


@documents_bp.get("/<int:document_id>/payments")
def get_document_payments_route(document_id: int):
    """Payment position of a document with its allocation trail."""
    try:
        return jsonify(allocation_service.get_document_payment_summary(document_id)), 200

    except LedgerError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to get document payment summary")
        return jsonify({"error": "Internal server error"}), 500


@documents_bp.get("/<int:document_id>/events")
def get_document_events_route(document_id: int):
    try:
        document = document_service.get_document(document_id)
        events = get_document_events(document.id)
        return jsonify({"events": [ev.to_dict() for ev in events]}), 200

    except LedgerError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to get document events")
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# WORKFLOW
# =============================================================================

@documents_bp.post("/<int:document_id>/<string:event>")
def transition_document_route(document_id: int, event: str):
    """
    Apply a workflow event: confirm, send, cancel, convert, accept, decline, expire.

    Request body (cancel only):
    {
        "reason": "Customer withdrew order"
    }

    Returns:
        200: Transition applied
        409: Transition not allowed from the current status
    """
    try:
        data = json_body()
        document = lifecycle_service.transition_document(document_id, event, reason=data.get("reason"))
        return jsonify({"document": document.to_dict()}), 200

    except LedgerError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to transition document")
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# PAYMENT SHORTCUTS
# =============================================================================

@documents_bp.post("/<int:document_id>/pay")
def pay_document_route(document_id: int):
    """
    Receive a payment and allocate it to this document in one step.

    Request body:
    {
        "method": "BANK_TRANSFER",
        "amount": "50.00",  (omit to pay the full balance)
        "payer_ref": "CUST-42",  (optional, defaults to the counterparty)
        "reference": "WIRE-991",  (optional)
        "received_date": "2026-10-17"  (optional)
    }

    Returns:
        201: Payment received and allocated
        400: Amount exceeds the balance
    """
    try:
        data = json_body()
        kwargs = {
            "method": data.get("method"),
            "payer_ref": data.get("payer_ref"),
            "reference": data.get("reference"),
            "received_date": data.get("received_date"),
        }
        if data.get("amount") is None:
            allocation = allocation_service.create_full_payment(document_id, **kwargs)
        else:
            allocation = allocation_service.create_partial_payment(document_id, data.get("amount"), **kwargs)

        return jsonify({
            "allocation": allocation.to_dict(),
            "summary": allocation_service.get_document_payment_summary(document_id),
        }), 201

    except LedgerError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to pay document")
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# REPLAY
# =============================================================================

def _return_id_arg():
    value = request.args.get("return_id")
    if value in (None, ""):
        return None
    try:
        return int(value)
    except ValueError:
        raise LedgerValidationError(f"Invalid return_id: {value!r}")


@documents_bp.get("/<int:document_id>/state")
def get_document_state_route(document_id: int):
    """
    Replay a document around one of its returns.

    Query params:
        at: "before" | "after" | "current" (default "after")
        return_id: boundary return (optional)
    """
    try:
        at = request.args.get("at", "after")
        if at == "current":
            snapshot = replay_service.get_current_state(document_id)
        elif at == "before":
            snapshot = replay_service.state_before(document_id, _return_id_arg())
        elif at == "after":
            snapshot = replay_service.state_after(document_id, _return_id_arg())
        else:
            return jsonify({"error": "at must be one of: before, after, current"}), 400

        return jsonify({"state": snapshot.to_dict()}), 200

    except LedgerError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to replay document")
        return jsonify({"error": "Internal server error"}), 500
