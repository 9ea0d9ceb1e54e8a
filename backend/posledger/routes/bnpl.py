# Overview: Flask API routes for BNPL balances and payments; parses input and returns JSON responses.

from flask import Blueprint, request, jsonify, current_app

from ..decorators import require_json, get_idempotency_key
from ..errors import LedgerError, ValidationError, http_status_for_code
from ..services import bnpl_service
from ..time_utils import parse_iso_datetime
from ..validation import require_int, require_amount_cents, require_str, optional_datetime

"""
Time semantics:
- due_date / as_of accept ISO-8601 with Z/offsets; stored UTC-naive.
- `status` in responses is the effective status (may be `overdue`).
"""

bnpl_bp = Blueprint("bnpl", __name__, url_prefix="/api/bnpl")


def _as_of_arg():
    raw = request.args.get("as_of")
    try:
        return parse_iso_datetime(raw)
    except ValueError:
        raise ValidationError("as_of must be an ISO-8601 datetime", field="as_of")


@bnpl_bp.post("/")
@require_json
def create_bnpl_route():
    """
    Open a BNPL balance for an existing BNPL sale.

    Request body:
    {
        "sale_id": 1,
        "customer_id": 2,
        "amount_cents": 100000,
        "due_date": "2026-01-31T00:00:00Z"  (optional, default +BNPL_TERM_DAYS)
    }
    """
    try:
        data = request.get_json()
        result = bnpl_service.create_bnpl(
            require_int(data, "sale_id"),
            require_int(data, "customer_id"),
            require_amount_cents(data, "amount_cents"),
            optional_datetime(data, "due_date"),
            idempotency_key=get_idempotency_key(),
        )
        return jsonify({"bnpl_transaction": result}), 200 if result.get("replayed") else 201

    except LedgerError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to create BNPL transaction")
        return jsonify({"error": "Internal server error"}), 500


@bnpl_bp.post("/<int:bnpl_id>/payments")
@require_json
def bnpl_payment_route(bnpl_id: int):
    """
    Take a payment against a BNPL balance.

    Request body:
    {
        "amount_cents": 40000,
        "payment_method": "cash",  (cash, card, bank_transfer)
        "processed_by": "alice"
    }

    Returns:
        201: {success: true, remaining_amount_cents, payment_id, receipt_number, ...}
        4xx: {success: false, message, code, details, remaining_amount_cents}
    """
    try:
        data = request.get_json()
        result = bnpl_service.process_bnpl_payment(
            bnpl_id,
            require_amount_cents(data, "amount_cents"),
            require_str(data, "payment_method", max_length=32),
            require_str(data, "processed_by", max_length=128),
            idempotency_key=get_idempotency_key(),
        )
        if not result["success"]:
            return jsonify(result), http_status_for_code(result["code"])
        return jsonify(result), 200 if result.get("replayed") else 201

    except LedgerError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to process BNPL payment")
        return jsonify({"error": "Internal server error"}), 500


@bnpl_bp.get("/overdue")
def overdue_route():
    try:
        as_of = _as_of_arg()
        trackers = bnpl_service.list_overdue(as_of)
        return jsonify({
            "bnpl_transactions": [t.to_dict(as_of) for t in trackers],
            "count": len(trackers),
            "total_overdue_cents": sum(t.amount_due_cents for t in trackers),
        }), 200
    except LedgerError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to list overdue BNPL transactions")
        return jsonify({"error": "Internal server error"}), 500


@bnpl_bp.get("/<int:bnpl_id>")
def get_bnpl_route(bnpl_id: int):
    try:
        return jsonify({"bnpl_transaction": bnpl_service.get_bnpl(bnpl_id, _as_of_arg())}), 200
    except LedgerError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to load BNPL transaction")
        return jsonify({"error": "Internal server error"}), 500


@bnpl_bp.get("/<int:bnpl_id>/payments")
def bnpl_payment_history_route(bnpl_id: int):
    try:
        payments = bnpl_service.get_payment_history(bnpl_id)
        return jsonify({"bnpl_id": bnpl_id, "payments": [p.to_dict() for p in payments]}), 200
    except LedgerError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to load BNPL payment history")
        return jsonify({"error": "Internal server error"}), 500
