# Overview: Error taxonomy shared by services and routes.

"""
Ledger error taxonomy.

Every rejected operation raises a subclass of LedgerError. Routes translate
them into structured JSON failures with `to_dict()`; nothing here knows about
HTTP beyond the suggested status code.

- ValidationError: malformed input (400)
- NotFoundError: missing sale / bnpl / customer / return (404)
- PolicyViolation: well-formed request the business rules refuse (409 / 422)
- ConsistencyError: ledger or customer totals diverge (500). Must never
  surface under correct atomic writes; raising it aborts the transaction.
"""

from __future__ import annotations

from typing import Any


class LedgerError(Exception):
    """Base class for every ledger failure."""

    code = "LEDGER_ERROR"
    http_status = 400

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict:
        return {
            "error": self.message,
            "code": self.code,
            "details": self.details,
        }


# =============================================================================
# CATEGORIES
# =============================================================================

class ValidationError(LedgerError):
    """400-level input problem."""
    code = "VALIDATION_ERROR"
    http_status = 400


class NotFoundError(LedgerError):
    code = "NOT_FOUND"
    http_status = 404


class PolicyViolation(LedgerError):
    code = "POLICY_VIOLATION"
    http_status = 422


class ConsistencyError(LedgerError):
    code = "CONSISTENCY_ERROR"
    http_status = 500


# =============================================================================
# NOT FOUND
# =============================================================================

class SaleNotFound(NotFoundError):
    code = "SALE_NOT_FOUND"


class BnplNotFound(NotFoundError):
    code = "BNPL_NOT_FOUND"


class CustomerNotFound(NotFoundError):
    code = "CUSTOMER_NOT_FOUND"


class ReturnNotFound(NotFoundError):
    code = "RETURN_NOT_FOUND"


class ProductNotFound(NotFoundError):
    code = "PRODUCT_NOT_FOUND"


# =============================================================================
# POLICY
# =============================================================================

class ReturnWindowExpired(PolicyViolation):
    code = "RETURN_WINDOW_EXPIRED"


class SaleNotPaid(PolicyViolation):
    code = "SALE_NOT_PAID"


class QuantityExceedsReturnable(PolicyViolation):
    code = "QUANTITY_EXCEEDS_RETURNABLE"


class NoReturnableItems(PolicyViolation):
    code = "NO_RETURNABLE_ITEMS"


class StoreCreditRequiresCustomer(PolicyViolation):
    code = "STORE_CREDIT_REQUIRES_CUSTOMER"


class AlreadyFullyPaid(PolicyViolation):
    code = "ALREADY_FULLY_PAID"
    http_status = 409


class AmountExceedsDue(PolicyViolation):
    code = "AMOUNT_EXCEEDS_DUE"


class InsufficientCredit(PolicyViolation):
    code = "INSUFFICIENT_CREDIT"


class InsufficientFunds(PolicyViolation):
    code = "INSUFFICIENT_FUNDS"


class InsufficientStock(PolicyViolation):
    code = "INSUFFICIENT_STOCK"


class IdempotencyConflict(PolicyViolation):
    code = "IDEMPOTENCY_CONFLICT"
    http_status = 409


# =============================================================================
# VALIDATION
# =============================================================================

class InvalidAmount(ValidationError):
    code = "INVALID_AMOUNT"


def http_status_for_code(code: str) -> int:
    """HTTP status of the LedgerError subclass carrying `code` (400 if unknown)."""
    pending = [LedgerError]
    while pending:
        cls = pending.pop()
        if cls.code == code:
            return cls.http_status
        pending.extend(cls.__subclasses__())
    return 400
