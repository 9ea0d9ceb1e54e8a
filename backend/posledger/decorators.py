# Overview: Request helpers shared by API routes.

from functools import wraps
from flask import request, jsonify


IDEMPOTENCY_HEADER = "Idempotency-Key"


def require_json(f):
    """
    Require a JSON object body.

    Returns 400 with the ledger error shape when the body is missing,
    not JSON, or not an object.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        data = request.get_json(silent=True)
        if not isinstance(data, dict):
            return jsonify({
                "error": "Request body must be a JSON object",
                "code": "VALIDATION_ERROR",
                "details": {},
            }), 400
        return f(*args, **kwargs)

    return decorated_function


def get_idempotency_key():
    """Client idempotency key from the Idempotency-Key header (None when absent)."""
    key = request.headers.get(IDEMPOTENCY_HEADER)
    if key is None or not key.strip():
        return None
    return key.strip()
