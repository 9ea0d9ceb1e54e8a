# Overview: Flask API routes for the loyalty earn rule.

from flask import Blueprint, request, jsonify, current_app

from ..decorators import require_json
from ..errors import LedgerError
from ..services import loyalty_service
from ..validation import optional_int, optional_str, require_int


loyalty_bp = Blueprint("loyalty", __name__, url_prefix="/api/loyalty")


@loyalty_bp.get("/rule")
def get_rule_route():
    rule = loyalty_service.get_active_rule()
    return jsonify({"rule": rule.to_dict() if rule else None}), 200


@loyalty_bp.put("/rule")
@require_json
def set_rule_route():
    """
    Publish a new rule version (the previous one is deactivated).

    Request body:
    {
        "points_per_currency_bps": 10000,  (10000 = 1 point per currency unit)
        "min_purchase_cents": 0,  (optional)
        "rule_name": "Standard"  (optional)
    }
    """
    try:
        data = request.get_json()
        rule = loyalty_service.set_active_rule(
            points_per_currency_bps=require_int(data, "points_per_currency_bps"),
            min_purchase_cents=optional_int(data, "min_purchase_cents") or 0,
            rule_name=optional_str(data, "rule_name", max_length=128),
        )
        return jsonify({"rule": rule.to_dict()}), 200

    except LedgerError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to publish loyalty rule")
        return jsonify({"error": "Internal server error"}), 500
