# Overview: Flask API routes for the ledger event outbox.

from flask import Blueprint, jsonify, request, current_app

from ..services import ledger_service


events_bp = Blueprint("events", __name__, url_prefix="/api/events")


@events_bp.get("/pending")
def get_pending_events_route():
    """Events whose publication has not succeeded yet."""
    try:
        limit = min(max(request.args.get("limit", 500, type=int), 1), 500)
        events = ledger_service.get_pending_events(limit=limit)
        return jsonify({"events": [ev.to_dict() for ev in events], "count": len(events)}), 200

    except Exception:
        current_app.logger.exception("Failed to list pending events")
        return jsonify({"error": "Internal server error"}), 500


@events_bp.post("/republish")
def republish_events_route():
    try:
        published = ledger_service.republish_pending_events()
        return jsonify({"published": published}), 200

    except Exception:
        current_app.logger.exception("Failed to republish events")
        return jsonify({"error": "Internal server error"}), 500
