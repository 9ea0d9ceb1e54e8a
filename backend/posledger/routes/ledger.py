# Overview: Flask API routes for the cash ledger; parses input and returns JSON responses.

from flask import Blueprint, request, jsonify, current_app

from ..decorators import require_json, get_idempotency_key
from ..errors import LedgerError, ValidationError
from ..services import ledger_service, reconciliation_service
from ..time_utils import parse_iso_datetime
from ..validation import (
    optional_datetime,
    optional_str,
    require_amount_cents,
    require_str,
)

"""
Time semantics:
- API accepts ISO-8601 datetimes with Z/offsets; backend normalizes to UTC-naive internally.
- as_of filtering is inclusive: transaction_date <= as_of.
"""

ledger_bp = Blueprint("ledger", __name__, url_prefix="/api/ledger")


def _datetime_arg(name: str):
    try:
        return parse_iso_datetime(request.args.get(name))
    except ValueError:
        raise ValidationError(f"{name} must be an ISO-8601 datetime", field=name)


@ledger_bp.get("/balance")
def cash_balance_route():
    """
    Query params:
        fund: main | petty (optional, default all funds)
        as_of: ISO-8601 (optional, inclusive)
    """
    try:
        as_of = _datetime_arg("as_of")
        fund = request.args.get("fund")
        if fund:
            balance = ledger_service.get_cash_balance(as_of=as_of, fund=fund)
            return jsonify({"fund": fund, "balance_cents": balance}), 200
        return jsonify({"balances": ledger_service.get_fund_balances(as_of=as_of)}), 200

    except LedgerError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to compute cash balance")
        return jsonify({"error": "Internal server error"}), 500


@ledger_bp.get("/entries")
def list_entries_route():
    try:
        limit = request.args.get("limit", default=100, type=int)
        offset = request.args.get("offset", default=0, type=int)
        entries, total = ledger_service.list_entries(
            fund=request.args.get("fund"),
            reference_type=request.args.get("reference_type"),
            transaction_type=request.args.get("transaction_type"),
            from_date=_datetime_arg("start_date"),
            to_date=_datetime_arg("end_date"),
            limit=limit,
            offset=offset,
        )
        return jsonify({
            "entries": [e.to_dict() for e in entries],
            "total": total,
            "limit": limit,
            "offset": offset,
        }), 200

    except LedgerError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to list cash ledger entries")
        return jsonify({"error": "Internal server error"}), 500


@ledger_bp.post("/transfers")
@require_json
def transfer_route():
    """
    Request body:
    {
        "from_fund": "main",
        "to_fund": "petty",
        "amount_cents": 5000,
        "description": "..."  (optional)
    }
    """
    try:
        data = request.get_json()
        result = ledger_service.transfer_between_funds(
            require_str(data, "from_fund", max_length=16),
            require_str(data, "to_fund", max_length=16),
            require_amount_cents(data, "amount_cents"),
            optional_str(data, "description"),
            idempotency_key=get_idempotency_key(),
        )
        return jsonify({"transfer": result}), 200 if result.get("replayed") else 201

    except LedgerError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to transfer between funds")
        return jsonify({"error": "Internal server error"}), 500


@ledger_bp.post("/expenses")
@require_json
def expense_route():
    """
    Request body:
    {
        "category": "supplies",
        "description": "Receipt paper",
        "amount_cents": 1200,
        "payment_method": "cash",  (cash, bank_transfer, card, check)
        "fund": "petty",  (optional, default petty)
        "receipt_number": "...",  (optional)
        "notes": "...",  (optional)
        "expense_date": "..."  (optional ISO-8601)
    }
    """
    try:
        data = request.get_json()
        result = ledger_service.record_expense(
            category=require_str(data, "category", max_length=64),
            description=require_str(data, "description"),
            amount_cents=require_amount_cents(data, "amount_cents"),
            payment_method=data.get("payment_method") or "cash",
            fund=data.get("fund") or ledger_service.FUND_PETTY,
            receipt_number=optional_str(data, "receipt_number", max_length=64),
            notes=optional_str(data, "notes"),
            expense_date=optional_datetime(data, "expense_date"),
            idempotency_key=get_idempotency_key(),
        )
        return jsonify(result), 200 if result.get("replayed") else 201

    except LedgerError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to record expense")
        return jsonify({"error": "Internal server error"}), 500


@ledger_bp.post("/opening")
@require_json
def opening_balance_route():
    try:
        data = request.get_json()
        entry = ledger_service.record_opening_balance(
            require_str(data, "fund", max_length=16),
            require_amount_cents(data, "amount_cents"),
            reference_id=optional_str(data, "reference_id", max_length=64),
            description=optional_str(data, "description"),
        )
        return jsonify({"entry": entry.to_dict()}), 201

    except LedgerError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to record opening balance")
        return jsonify({"error": "Internal server error"}), 500


@ledger_bp.get("/reconcile")
def reconcile_route():
    """Read-only divergence report; never writes."""
    try:
        return jsonify(reconciliation_service.reconcile()), 200
    except Exception:
        current_app.logger.exception("Failed to run reconciliation")
        return jsonify({"error": "Internal server error"}), 500
