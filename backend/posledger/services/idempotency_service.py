# Overview: Client idempotency keys for mutating ledger operations.

"""
Idempotency guard.

WHY: A client that times out and retries a refund or a BNPL payment must not
move money twice. Every mutating operation can carry an idempotency key; the
key, operation name, a fingerprint of the request and the JSON response are
written in the SAME transaction as the operation itself.

RULES:
- Same key, same operation, same payload -> stored response, `replayed: True`
- Same key with a different payload or operation -> IdempotencyConflict
- No key -> the operation simply runs
"""

from __future__ import annotations

import hashlib
import json
from typing import Any, Callable

from flask import current_app
from sqlalchemy.exc import IntegrityError

from ..errors import IdempotencyConflict, ValidationError
from ..extensions import db
from ..models import IdempotencyRecord
from .concurrency import run_with_retry


MAX_KEY_LENGTH = 128


def request_fingerprint(payload: dict) -> str:
    """Stable SHA-256 of the request payload (key order independent)."""
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def _normalize_key(key: str | None) -> str | None:
    if key is None:
        return None
    key = str(key).strip()
    if not key:
        return None
    if len(key) > MAX_KEY_LENGTH:
        raise ValidationError(
            f"Idempotency key must be at most {MAX_KEY_LENGTH} characters",
            field="idempotency_key",
        )
    return key


def _stored_response(key: str, operation: str, fingerprint: str) -> dict | None:
    record = db.session.query(IdempotencyRecord).filter_by(key=key).first()
    if record is None:
        return None
    if record.operation != operation:
        raise IdempotencyConflict(
            "Idempotency key was already used for a different operation",
            key=key,
            operation=record.operation,
        )
    if record.request_fingerprint != fingerprint:
        raise IdempotencyConflict(
            "Idempotency key was already used with a different request",
            key=key,
            operation=operation,
        )
    response = dict(record.response)
    response["replayed"] = True
    return response


def run_idempotent(
    *,
    operation: str,
    key: str | None,
    payload: dict,
    apply: Callable[[], dict[str, Any]],
) -> dict:
    """
    Run `apply` as one retried transaction, guarded by an idempotency key.

    `apply` performs the writes WITHOUT committing and returns a
    JSON-serializable response. This function records the key (when given)
    and commits.

    Returns:
        The response dict with `replayed` set (False on first execution).

    Raises:
        IdempotencyConflict: key reused with another payload/operation
    """
    key = _normalize_key(key)
    fingerprint = request_fingerprint(payload)

    def _op() -> dict:
        if key:
            replay = _stored_response(key, operation, fingerprint)
            if replay is not None:
                current_app.logger.info("Replayed %s for idempotency key %s", operation, key)
                return replay

        response = apply()
        response["replayed"] = False

        if key:
            db.session.add(
                IdempotencyRecord(
                    key=key,
                    operation=operation,
                    request_fingerprint=fingerprint,
                    response=response,
                )
            )
        db.session.commit()
        return response

    try:
        return run_with_retry(_op)
    except IntegrityError:
        # A concurrent call with the same key committed first
        if not key:
            raise
        replay = _stored_response(key, operation, fingerprint)
        if replay is None:
            raise
        current_app.logger.info("Replayed %s for idempotency key %s after race", operation, key)
        return replay
