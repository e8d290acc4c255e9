# Overview: Flask API routes for returns; parses input and returns JSON responses.

# backend/docledger/routes/returns.py
"""
Return API Routes

WHY: Record goods coming back against a document and read its return history.
Historical views of the document live under /api/documents/<id>/state.
"""

from flask import Blueprint, jsonify, current_app

from ..errors import LedgerError
from ..services import replay_service
from . import error_response, json_body


returns_bp = Blueprint("returns", __name__, url_prefix="/api/returns")


@returns_bp.post("/")
def record_return_route():
    """
    Record a return.

    Request body:
    {
        "document_id": 7,
        "items": [{"line_item_ref": 12, "quantity_returned": "1"}],
        "reason": "Damaged in transit",  (optional)
        "refund_amount": "50.00"  (optional, defaults to the returned value)
    }

    Returns:
        201: Return recorded
        400: Invalid items or refund
        409: Document cannot take returns in its status
    """
    try:
        data = json_body()
        if data.get("document_id") is None:
            return jsonify({"error": "document_id and items required"}), 400

        ret = replay_service.record_return(
            data.get("document_id"),
            data.get("items"),
            reason=data.get("reason"),
            refund_amount=data.get("refund_amount"),
        )
        return jsonify({"return": ret.to_dict()}), 201

    except LedgerError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to record return")
        return jsonify({"error": "Internal server error"}), 500


@returns_bp.get("/<int:return_id>")
def get_return_route(return_id: int):
    try:
        return jsonify({"return": replay_service.get_return(return_id).to_dict()}), 200

    except LedgerError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to get return")
        return jsonify({"error": "Internal server error"}), 500


@returns_bp.get("/documents/<int:document_id>")
def get_document_returns_route(document_id: int):
    try:
        returns = replay_service.get_document_returns(document_id)
        return jsonify({"returns": [r.to_dict() for r in returns]}), 200

    except LedgerError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to list document returns")
        return jsonify({"error": "Internal server error"}), 500
