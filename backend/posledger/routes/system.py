# backend/posledger/routes/system.py
"""
System health and settings endpoints.
"""

import time
from flask import Blueprint, request, jsonify, current_app

from ..decorators import require_json
from ..errors import LedgerError
from ..extensions import db
from ..models import Customer, Sale, CashLedgerEntry
from ..services import settings_service
from ..time_utils import to_utc_z, utcnow
from ..validation import require_int

system_bp = Blueprint("system", __name__, url_prefix="/api/system")


def check_database_health() -> dict:
    """
    Check database connectivity and basic operations.

    Returns dict with status and details.
    """
    start_time = time.time()
    try:
        sale_count = db.session.query(Sale).count()
        customer_count = db.session.query(Customer).count()
        ledger_count = db.session.query(CashLedgerEntry).count()

        elapsed_ms = (time.time() - start_time) * 1000

        return {
            "status": "healthy",
            "latency_ms": round(elapsed_ms, 2),
            "details": {
                "sales": sale_count,
                "customers": customer_count,
                "cash_ledger_entries": ledger_count,
            }
        }
    except Exception:
        elapsed_ms = (time.time() - start_time) * 1000
        current_app.logger.exception("Database health check failed")
        return {
            "status": "unhealthy",
            "latency_ms": round(elapsed_ms, 2),
            "error": "Database error"
        }


@system_bp.get("/health")
def health():
    database = check_database_health()
    status = database["status"]
    return jsonify({
        "status": status,
        "timestamp": to_utc_z(utcnow()),
        "checks": {"database": database},
    }), 200 if status == "healthy" else 503


@system_bp.get("/settings/return-window")
def get_return_window_route():
    return jsonify({"return_window_days": settings_service.get_return_window_days()}), 200


@system_bp.put("/settings/return-window")
@require_json
def set_return_window_route():
    try:
        data = request.get_json()
        settings_service.set_return_window_days(require_int(data, "days"))
        return jsonify({"return_window_days": settings_service.get_return_window_days()}), 200

    except LedgerError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to update return window")
        return jsonify({"error": "Internal server error"}), 500
