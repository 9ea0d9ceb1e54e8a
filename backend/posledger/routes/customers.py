# Overview: Flask API routes for customer credit accounts; parses input and returns JSON responses.

from flask import Blueprint, request, jsonify, current_app

from ..decorators import require_json
from ..errors import LedgerError
from ..services import bnpl_service, customer_service, loyalty_service
from ..validation import optional_int, optional_str, require_amount_cents, require_str


customers_bp = Blueprint("customers", __name__, url_prefix="/api/customers")


@customers_bp.post("/")
@require_json
def create_customer_route():
    """
    Request body:
    {
        "name": "Jane Doe",
        "phone": "...",  (optional)
        "email": "...",  (optional)
        "credit_limit_cents": 500000  (optional, default 0)
    }
    """
    try:
        data = request.get_json()
        customer = customer_service.create_customer(
            name=require_str(data, "name"),
            phone=optional_str(data, "phone", max_length=32),
            email=optional_str(data, "email"),
            credit_limit_cents=optional_int(data, "credit_limit_cents") or 0,
        )
        return jsonify({"customer": customer.to_dict()}), 201

    except LedgerError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to create customer")
        return jsonify({"error": "Internal server error"}), 500


@customers_bp.get("/<int:customer_id>")
def get_customer_route(customer_id: int):
    try:
        return jsonify({"customer": customer_service.get_customer(customer_id).to_dict()}), 200
    except LedgerError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to load customer")
        return jsonify({"error": "Internal server error"}), 500


@customers_bp.put("/<int:customer_id>/credit-limit")
@require_json
def set_credit_limit_route(customer_id: int):
    try:
        data = request.get_json()
        customer = customer_service.set_credit_limit(
            customer_id, require_amount_cents(data, "credit_limit_cents")
        )
        return jsonify({"customer": customer.to_dict()}), 200

    except LedgerError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to update credit limit")
        return jsonify({"error": "Internal server error"}), 500


@customers_bp.get("/<int:customer_id>/bnpl-summary")
def customer_bnpl_summary_route(customer_id: int):
    """
    Returns:
        200: {total_outstanding_cents, available_credit_cents, active_count,
              overdue_amount_cents, ...}
        404: Customer not found
    """
    try:
        return jsonify(bnpl_service.get_customer_bnpl_summary(customer_id)), 200
    except LedgerError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to load BNPL summary")
        return jsonify({"error": "Internal server error"}), 500


@customers_bp.get("/<int:customer_id>/loyalty")
def customer_loyalty_route(customer_id: int):
    try:
        customer = customer_service.get_customer(customer_id)
        history = loyalty_service.get_loyalty_history(customer_id)
        return jsonify({
            "customer_id": customer.id,
            "loyalty_points": customer.loyalty_points,
            "transactions": [t.to_dict() for t in history],
        }), 200
    except LedgerError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to load loyalty history")
        return jsonify({"error": "Internal server error"}), 500
