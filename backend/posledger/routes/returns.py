# Overview: Flask API routes for returns and refunds; parses input and returns JSON responses.

# backend/posledger/routes/returns.py
"""
Return Processing API Routes

WHY: The register submits a whole return (items, reason, refund method) in
one call; the processor settles it atomically.

DESIGN:
- Eligibility and returnable-item reads for the return screen
- One POST processes the return and its refund
- Idempotency-Key header makes the POST safe to retry
"""

from flask import Blueprint, request, jsonify, current_app

from ..decorators import require_json, get_idempotency_key
from ..errors import LedgerError
from ..services import return_service
from ..validation import require_int, require_str, optional_str, require_list


returns_bp = Blueprint("returns", __name__, url_prefix="/api/returns")


# =============================================================================
# RETURN PROCESSING
# =============================================================================

@returns_bp.post("/")
@require_json
def process_return_route():
    """
    Process a return and refund.

    Request body:
    {
        "sale_id": 123,
        "items": [{"sale_item_id": 456, "quantity": 2, "condition": "good"}],
        "reason": "Wrong size",
        "refund_method": "cash",   (cash, bank_transfer, store_credit, exchange)
        "processed_by": "alice",
        "notes": "..."  (optional)
    }

    Headers:
        Idempotency-Key (optional)

    Returns:
        201: Return processed (200 when replayed)
        400: Invalid input
        404: Sale not found
        422: Window expired, sale not paid, quantity exceeds returnable
    """
    try:
        data = request.get_json()

        result = return_service.process_return(
            require_int(data, "sale_id"),
            require_list(data, "items"),
            require_str(data, "reason"),
            require_str(data, "refund_method", max_length=32),
            require_str(data, "processed_by", max_length=128),
            optional_str(data, "notes", max_length=2000),
            idempotency_key=get_idempotency_key(),
        )
        return jsonify({"return": result}), 200 if result.get("replayed") else 201

    except LedgerError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to process return")
        return jsonify({"error": "Internal server error"}), 500


@returns_bp.post("/validate/<int:sale_id>")
@require_json
def validate_return_items_route(sale_id: int):
    """Dry-run the item checks for a prospective return."""
    try:
        data = request.get_json()
        result = return_service.validate_return_items(sale_id, require_list(data, "items"))
        return jsonify(result), 200

    except LedgerError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to validate return items")
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# READS
# =============================================================================

@returns_bp.get("/eligibility/<int:sale_id>")
def return_eligibility_route(sale_id: int):
    """
    Returns:
        200: {is_eligible, reason, days_since_sale, return_window_days}
    """
    try:
        return jsonify(return_service.validate_return_eligibility(sale_id)), 200
    except LedgerError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to check return eligibility")
        return jsonify({"error": "Internal server error"}), 500


@returns_bp.get("/returnable/<int:sale_id>")
def returnable_items_route(sale_id: int):
    try:
        items = return_service.get_returnable_items(sale_id)
        return jsonify({"sale_id": sale_id, "items": items}), 200
    except LedgerError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to load returnable items")
        return jsonify({"error": "Internal server error"}), 500


@returns_bp.get("/policies")
def return_policies_route():
    return jsonify(return_service.get_return_policies()), 200


@returns_bp.get("/sale/<int:sale_id>")
def sale_returns_route(sale_id: int):
    try:
        returns = return_service.get_sale_returns(sale_id)
        return jsonify({"sale_id": sale_id, "returns": [r.to_dict() for r in returns]}), 200
    except LedgerError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to load sale returns")
        return jsonify({"error": "Internal server error"}), 500


@returns_bp.get("/<int:return_id>")
def return_summary_route(return_id: int):
    """
    Return summary with items and refund transactions.
    """
    try:
        return jsonify({"return": return_service.get_return_summary(return_id)}), 200
    except LedgerError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to load return summary")
        return jsonify({"error": "Internal server error"}), 500
