# Overview: Customer credit account: outstanding dues, available credit, store credit.

"""
Customer Credit Account

WHY: BNPL purchasing power, store credit and loyalty balances all live on the
customer row and are touched by sales, BNPL payments and returns. Every
balance change goes through the helpers below so the derived fields never
drift.

INVARIANTS (checked by verify_customer_balances before commit):
- available_credit_cents == max(0, credit_limit_cents - total_outstanding_dues_cents)
- total_outstanding_dues_cents == SUM(amount_due_cents) of the customer's
  BNPL transactions that are not paid

The helpers in the BALANCE MUTATION section never commit; callers lock the
customer row first and commit as part of their own operation.
"""

from __future__ import annotations

from flask import current_app

from ..errors import ConsistencyError, CustomerNotFound, InvalidAmount, ValidationError
from ..extensions import db
from ..models import BnplTransaction, Customer
from .concurrency import lock_for_update, run_with_retry


# =============================================================================
# LOOKUP
# =============================================================================

def get_customer(customer_id: int) -> Customer:
    customer = db.session.get(Customer, customer_id)
    if not customer:
        raise CustomerNotFound(f"Customer {customer_id} not found", customer_id=customer_id)
    return customer


def lock_customer(customer_id: int) -> Customer:
    """Load a customer row with SELECT ... FOR UPDATE."""
    customer = lock_for_update(db.session.query(Customer).filter_by(id=customer_id)).first()
    if not customer:
        raise CustomerNotFound(f"Customer {customer_id} not found", customer_id=customer_id)
    return customer


def create_customer(
    *,
    name: str,
    phone: str | None = None,
    email: str | None = None,
    credit_limit_cents: int = 0,
) -> Customer:
    if not name or not name.strip():
        raise ValidationError("name is required", field="name")
    if credit_limit_cents < 0:
        raise InvalidAmount("credit_limit_cents cannot be negative", field="credit_limit_cents")

    def _op() -> Customer:
        customer = Customer(
            name=name.strip(),
            phone=phone,
            email=email,
            credit_limit_cents=credit_limit_cents,
            total_outstanding_dues_cents=0,
            available_credit_cents=credit_limit_cents,
            current_balance_cents=0,
            loyalty_points=0,
            is_active=True,
        )
        db.session.add(customer)
        db.session.commit()
        return customer

    return run_with_retry(_op)


def set_credit_limit(customer_id: int, credit_limit_cents: int) -> Customer:
    """Change a customer's credit limit and recompute available credit."""
    if credit_limit_cents < 0:
        raise InvalidAmount("credit_limit_cents cannot be negative", field="credit_limit_cents")

    def _op() -> Customer:
        customer = lock_customer(customer_id)
        customer.credit_limit_cents = credit_limit_cents
        recompute_available_credit(customer)
        verify_customer_balances(customer)
        db.session.commit()
        current_app.logger.info("Credit limit for customer %d set to %d cents", customer_id, credit_limit_cents)
        return customer

    return run_with_retry(_op)


# =============================================================================
# BALANCE MUTATION (no commit; caller holds the row lock)
# =============================================================================

def recompute_available_credit(customer: Customer) -> int:
    customer.available_credit_cents = max(
        0, customer.credit_limit_cents - customer.total_outstanding_dues_cents
    )
    return customer.available_credit_cents


def add_outstanding_due(customer: Customer, amount_cents: int) -> None:
    """New BNPL balance: dues go up, available credit goes down."""
    if amount_cents <= 0:
        raise InvalidAmount("Outstanding due increase must be positive", field="amount_cents")
    customer.total_outstanding_dues_cents += amount_cents
    recompute_available_credit(customer)


def reduce_outstanding_due(customer: Customer, amount_cents: int) -> None:
    """BNPL payment or return credit: dues go down, available credit goes up."""
    if amount_cents <= 0:
        raise InvalidAmount("Outstanding due reduction must be positive", field="amount_cents")
    if amount_cents > customer.total_outstanding_dues_cents:
        raise ConsistencyError(
            "Reduction exceeds customer's outstanding dues",
            customer_id=customer.id,
            outstanding_cents=customer.total_outstanding_dues_cents,
            reduction_cents=amount_cents,
        )
    customer.total_outstanding_dues_cents -= amount_cents
    recompute_available_credit(customer)


def credit_store_balance(customer: Customer, amount_cents: int) -> None:
    """Store credit owed to the customer (store_credit / exchange refunds)."""
    if amount_cents <= 0:
        raise InvalidAmount("Store credit must be positive", field="amount_cents")
    customer.current_balance_cents += amount_cents


# =============================================================================
# CONSISTENCY
# =============================================================================

def outstanding_from_bnpl(customer_id: int) -> int:
    total = (
        db.session.query(db.func.coalesce(db.func.sum(BnplTransaction.amount_due_cents), 0))
        .filter(
            BnplTransaction.customer_id == customer_id,
            BnplTransaction.status != "paid",
        )
        .scalar()
    )
    return int(total or 0)


def customer_balance_problems(customer: Customer) -> list[dict]:
    """Describe every invariant the customer row currently violates (empty when consistent)."""
    problems = []

    expected_available = max(0, customer.credit_limit_cents - customer.total_outstanding_dues_cents)
    if customer.available_credit_cents != expected_available:
        problems.append({
            "field": "available_credit_cents",
            "stored": customer.available_credit_cents,
            "expected": expected_available,
        })

    expected_outstanding = outstanding_from_bnpl(customer.id)
    if customer.total_outstanding_dues_cents != expected_outstanding:
        problems.append({
            "field": "total_outstanding_dues_cents",
            "stored": customer.total_outstanding_dues_cents,
            "expected": expected_outstanding,
        })

    if customer.loyalty_points < 0:
        problems.append({"field": "loyalty_points", "stored": customer.loyalty_points, "expected": 0})

    return problems


def verify_customer_balances(customer: Customer) -> None:
    """
    Raise ConsistencyError if the customer's derived balances diverge.

    Called inside mutating operations right before commit; the raised error
    aborts (rolls back) the whole operation.
    """
    db.session.flush()
    problems = customer_balance_problems(customer)
    if problems:
        current_app.logger.error("Customer %d balances diverge: %s", customer.id, problems)
        raise ConsistencyError(
            f"Customer {customer.id} balances are inconsistent",
            customer_id=customer.id,
            problems=problems,
        )
