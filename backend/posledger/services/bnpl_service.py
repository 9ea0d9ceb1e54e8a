# Overview: Service-layer operations for BNPL (buy now, pay later) balances.

"""
BNPL Deferred-Payment Tracker

WHY: A BNPL sale hands the goods over now and collects the money later. The
tracker holds the open balance for one sale; the customer's credit account
mirrors it so available credit always reflects what is still owed.

STATE MACHINE (stored):
    pending -> partially_paid -> paid
amount_due only ever decreases (payments, or return credits). `overdue` is a
read-time projection of due_date and is never written.

DESIGN PRINCIPLES:
- amount_paid + amount_due == original_amount after every write
- One immutable BnplPayment row per successful payment call
- Loyalty points are earned when the balance is settled, exactly once
  (guarded by loyalty_awarded_at; paying a paid tracker is rejected)
- Sale.payment_status mirrors the tracker: pending_bnpl / partially_paid / paid
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Optional

from flask import current_app

from ..errors import (
    AlreadyFullyPaid,
    AmountExceedsDue,
    BnplNotFound,
    ConsistencyError,
    InsufficientCredit,
    InvalidAmount,
    LedgerError,
    PolicyViolation,
    SaleNotFound,
    ValidationError,
)
from ..extensions import db
from ..models import BnplPayment, BnplTransaction, Customer, Sale
from ..time_utils import to_utc_z, utcnow
from . import customer_service, loyalty_service
from .concurrency import lock_for_update
from .document_service import next_document_number
from .idempotency_service import run_idempotent
from .ledger_service import append_cash_entry


# =============================================================================
# CONSTANTS
# =============================================================================

BNPL_STATUS_PENDING = "pending"
BNPL_STATUS_PARTIALLY_PAID = "partially_paid"
BNPL_STATUS_PAID = "paid"
BNPL_STATUS_OVERDUE = "overdue"  # projection only

BNPL_PAYMENT_METHODS = ("cash", "card", "bank_transfer")

SALE_STATUS_FOR_BNPL = {
    BNPL_STATUS_PENDING: "pending_bnpl",
    BNPL_STATUS_PARTIALLY_PAID: "partially_paid",
    BNPL_STATUS_PAID: "paid",
}


# =============================================================================
# HELPERS
# =============================================================================

def _default_due_date() -> datetime:
    days = int(current_app.config.get("BNPL_TERM_DAYS", 30))
    return utcnow() + timedelta(days=days)


def derive_status(tracker: BnplTransaction) -> str:
    if tracker.amount_due_cents <= 0:
        return BNPL_STATUS_PAID
    if tracker.amount_paid_cents > 0:
        return BNPL_STATUS_PARTIALLY_PAID
    return BNPL_STATUS_PENDING


def effective_status(tracker: BnplTransaction, as_of: Optional[datetime] = None) -> str:
    """Stored status, or `overdue` when due_date has passed on an unpaid balance."""
    return tracker.effective_status(as_of)


def lock_bnpl(bnpl_id: int) -> BnplTransaction:
    tracker = lock_for_update(db.session.query(BnplTransaction).filter_by(id=bnpl_id)).first()
    if not tracker:
        raise BnplNotFound(f"BNPL transaction {bnpl_id} not found", bnpl_id=bnpl_id)
    return tracker


def _check_balance_invariant(tracker: BnplTransaction) -> None:
    if tracker.amount_paid_cents + tracker.amount_due_cents != tracker.original_amount_cents:
        raise ConsistencyError(
            f"BNPL transaction {tracker.id} balance does not add up",
            bnpl_id=tracker.id,
            amount_paid_cents=tracker.amount_paid_cents,
            amount_due_cents=tracker.amount_due_cents,
            original_amount_cents=tracker.original_amount_cents,
        )


def _sync_status(tracker: BnplTransaction, sale: Optional[Sale]) -> str:
    previous = tracker.status
    tracker.status = derive_status(tracker)
    if sale is not None:
        sale.payment_status = SALE_STATUS_FOR_BNPL[tracker.status]
    return previous


def _award_on_settlement(
    tracker: BnplTransaction,
    customer: Customer,
    *,
    return_id: Optional[int] = None,
    refunded_out_cents: int = 0,
) -> int:
    """
    Award loyalty on the money the customer keeps, once per tracker.

    That is the (adjusted) original amount less any part of it paid back out
    by the return that settled the balance.

    Returns points awarded (0 if already awarded or nothing earned).
    """
    if tracker.status != BNPL_STATUS_PAID or tracker.loyalty_awarded_at is not None:
        return 0

    tracker.loyalty_awarded_at = utcnow()
    kept_cents = tracker.original_amount_cents - refunded_out_cents
    if kept_cents <= 0:
        return 0
    txn = loyalty_service.award_points(
        customer,
        amount_cents=kept_cents,
        rule=loyalty_service.get_active_rule(),
        sale_id=tracker.sale_id,
        bnpl_transaction_id=tracker.id,
        return_id=return_id,
        reason="BNPL balance settled",
    )
    return txn.points_earned if txn else 0


# =============================================================================
# CREATION
# =============================================================================

def open_bnpl_for_sale(
    sale: Sale,
    customer: Customer,
    amount_cents: int,
    *,
    due_date: Optional[datetime] = None,
) -> BnplTransaction:
    """
    Open the tracker for a BNPL sale inside the caller's transaction.

    Caller holds the customer row lock. No commit.

    Raises:
        InvalidAmount: amount_cents <= 0
        PolicyViolation: Customer inactive or sale already has a tracker
        InsufficientCredit: amount exceeds the customer's available credit
    """
    if amount_cents <= 0:
        raise InvalidAmount("BNPL amount must be greater than zero", field="amount_cents")
    if not customer.is_active:
        raise PolicyViolation(f"Customer {customer.id} is inactive", customer_id=customer.id)

    existing = db.session.query(BnplTransaction).filter_by(sale_id=sale.id).first()
    if existing:
        raise PolicyViolation(
            f"Sale {sale.id} already has a BNPL transaction",
            sale_id=sale.id,
            bnpl_id=existing.id,
        )

    if amount_cents > customer.available_credit_cents:
        raise InsufficientCredit(
            "BNPL amount exceeds available credit",
            customer_id=customer.id,
            available_credit_cents=customer.available_credit_cents,
            requested_cents=amount_cents,
        )

    tracker = BnplTransaction(
        sale_id=sale.id,
        customer_id=customer.id,
        original_amount_cents=amount_cents,
        amount_paid_cents=0,
        amount_due_cents=amount_cents,
        returned_amount_cents=0,
        due_date=due_date or _default_due_date(),
        status=BNPL_STATUS_PENDING,
    )
    db.session.add(tracker)
    customer_service.add_outstanding_due(customer, amount_cents)
    sale.payment_status = SALE_STATUS_FOR_BNPL[BNPL_STATUS_PENDING]
    db.session.flush()

    current_app.logger.info(
        "Opened BNPL %d for sale %d: %d cents due %s",
        tracker.id, sale.id, amount_cents, to_utc_z(tracker.due_date),
    )
    return tracker


def create_bnpl(
    sale_id: int,
    customer_id: int,
    amount_cents: int,
    due_date: Optional[datetime] = None,
    *,
    idempotency_key: Optional[str] = None,
) -> dict:
    """
    Open a BNPL tracker for an existing BNPL sale.

    Args:
        sale_id: Sale recorded with payment_method=bnpl
        customer_id: Customer carrying the balance
        amount_cents: Amount financed (> 0, <= available credit)
        due_date: Defaults to now + BNPL_TERM_DAYS
        idempotency_key: Optional client key for safe retries

    Returns:
        Tracker dict plus `replayed`

    Raises:
        SaleNotFound, CustomerNotFound, InsufficientCredit, InvalidAmount
    """
    if amount_cents <= 0:
        raise InvalidAmount("BNPL amount must be greater than zero", field="amount_cents")

    payload = {
        "sale_id": sale_id,
        "customer_id": customer_id,
        "amount_cents": amount_cents,
        "due_date": to_utc_z(due_date),
    }

    def _apply() -> dict:
        sale = lock_for_update(db.session.query(Sale).filter_by(id=sale_id)).first()
        if not sale:
            raise SaleNotFound(f"Sale {sale_id} not found", sale_id=sale_id)
        if sale.payment_method != "bnpl":
            raise ValidationError(
                f"Sale {sale_id} was not a BNPL sale",
                field="sale_id",
                payment_method=sale.payment_method,
            )
        if sale.customer_id is not None and sale.customer_id != customer_id:
            raise ValidationError(
                f"Sale {sale_id} belongs to a different customer",
                field="customer_id",
            )

        customer = customer_service.lock_customer(customer_id)
        if sale.customer_id is None:
            sale.customer_id = customer.id

        tracker = open_bnpl_for_sale(sale, customer, amount_cents, due_date=due_date)
        customer_service.verify_customer_balances(customer)
        return tracker.to_dict()

    return run_idempotent(
        operation="bnpl.create",
        key=idempotency_key,
        payload=payload,
        apply=_apply,
    )


# =============================================================================
# PAYMENTS
# =============================================================================

def process_payment(
    bnpl_id: int,
    payment_amount_cents: int,
    payment_method: str,
    processed_by: str,
    *,
    idempotency_key: Optional[str] = None,
) -> dict:
    """
    Take a payment against a BNPL balance.

    WHY: Core collection operation. Moves money from amount_due to
    amount_paid, mirrors the customer and sale, writes the payment history
    row and the cash ledger entry (cash only), and awards loyalty on the
    transition into paid.

    Args:
        bnpl_id: Tracker being paid
        payment_amount_cents: 0 < amount <= amount_due
        payment_method: cash, card, bank_transfer
        processed_by: Operator name/id for the payment history
        idempotency_key: Optional client key; a replay returns the stored result

    Returns:
        {success, message, remaining_amount_cents, payment_id, receipt_number,
         bnpl_id, status, loyalty_points_awarded, replayed}

    Raises:
        BnplNotFound, AlreadyFullyPaid, InvalidAmount, AmountExceedsDue,
        ValidationError (unknown method / missing processed_by)
    """
    if payment_method not in BNPL_PAYMENT_METHODS:
        raise ValidationError(
            f"payment_method must be one of {list(BNPL_PAYMENT_METHODS)}",
            field="payment_method",
            value=payment_method,
        )
    if not processed_by:
        raise ValidationError("processed_by is required", field="processed_by")
    if payment_amount_cents <= 0:
        raise InvalidAmount("Payment amount must be greater than zero", field="payment_amount_cents")

    payload = {
        "bnpl_id": bnpl_id,
        "payment_amount_cents": payment_amount_cents,
        "payment_method": payment_method,
        "processed_by": processed_by,
    }

    def _apply() -> dict:
        tracker = lock_bnpl(bnpl_id)

        if tracker.status == BNPL_STATUS_PAID:
            raise AlreadyFullyPaid(
                f"BNPL transaction {bnpl_id} is already fully paid",
                bnpl_id=bnpl_id,
            )
        if payment_amount_cents > tracker.amount_due_cents:
            raise AmountExceedsDue(
                "Payment amount exceeds amount due",
                bnpl_id=bnpl_id,
                amount_due_cents=tracker.amount_due_cents,
                payment_amount_cents=payment_amount_cents,
            )

        customer = customer_service.lock_customer(tracker.customer_id)
        sale = lock_for_update(db.session.query(Sale).filter_by(id=tracker.sale_id)).first()

        tracker.amount_paid_cents += payment_amount_cents
        tracker.amount_due_cents -= payment_amount_cents
        _sync_status(tracker, sale)
        _check_balance_invariant(tracker)

        customer_service.reduce_outstanding_due(customer, payment_amount_cents)

        receipt_number = next_document_number("BNPL_PAYMENT")
        payment = BnplPayment(
            bnpl_transaction_id=tracker.id,
            amount_cents=payment_amount_cents,
            payment_method=payment_method,
            receipt_number=receipt_number,
            processed_by=processed_by,
            remaining_after_cents=tracker.amount_due_cents,
        )
        db.session.add(payment)
        db.session.flush()

        if payment_method == "cash":
            append_cash_entry(
                transaction_type="bnpl_payment",
                amount_cents=payment_amount_cents,
                reference_type="bnpl_payment",
                reference_id=payment.id,
                description=f"BNPL payment {receipt_number} for sale {tracker.sale_id}",
            )

        points = _award_on_settlement(tracker, customer)
        customer_service.verify_customer_balances(customer)

        if tracker.status == BNPL_STATUS_PAID:
            message = "Payment processed. BNPL balance fully paid."
        else:
            message = "Payment processed successfully."

        current_app.logger.info(
            "BNPL %d payment %s: %d cents via %s, %d cents remaining",
            tracker.id, receipt_number, payment_amount_cents, payment_method, tracker.amount_due_cents,
        )
        return {
            "success": True,
            "message": message,
            "bnpl_id": tracker.id,
            "status": tracker.status,
            "remaining_amount_cents": tracker.amount_due_cents,
            "payment_id": payment.id,
            "receipt_number": receipt_number,
            "loyalty_points_awarded": points,
        }

    return run_idempotent(
        operation="bnpl.payment",
        key=idempotency_key,
        payload=payload,
        apply=_apply,
    )


def process_bnpl_payment(
    bnpl_id: int,
    payment_amount_cents: int,
    payment_method: str,
    processed_by: str,
    *,
    idempotency_key: Optional[str] = None,
) -> dict:
    """
    process_payment, but a rejected payment comes back as a structured value.

    {success: False, message, code, details, remaining_amount_cents,
     payment_id: None, receipt_number: None}
    """
    try:
        return process_payment(
            bnpl_id,
            payment_amount_cents,
            payment_method,
            processed_by,
            idempotency_key=idempotency_key,
        )
    except LedgerError as exc:
        tracker = db.session.get(BnplTransaction, bnpl_id)
        return {
            "success": False,
            "message": exc.message,
            "code": exc.code,
            "details": exc.details,
            "remaining_amount_cents": tracker.amount_due_cents if tracker else None,
            "payment_id": None,
            "receipt_number": None,
        }


# =============================================================================
# RETURN CREDIT (called by the return processor; no commit)
# =============================================================================

def credit_from_return(
    tracker: BnplTransaction,
    customer: Customer,
    sale: Sale,
    refund_amount_cents: int,
    *,
    return_id: int,
) -> int:
    """
    Apply a refund against the open balance before any money is paid out.

    The credit is min(refund, amount_due). It lowers amount_due and
    original_amount together (returned_amount records it), so
    amount_paid + amount_due == original_amount keeps holding.

    Caller holds the tracker, customer and sale row locks.

    Returns:
        Credit applied in cents (0 when the tracker is already paid)
    """
    if tracker.status == BNPL_STATUS_PAID or refund_amount_cents <= 0:
        return 0

    credit = min(refund_amount_cents, tracker.amount_due_cents)
    if credit <= 0:
        return 0

    tracker.amount_due_cents -= credit
    tracker.original_amount_cents -= credit
    tracker.returned_amount_cents += credit
    _sync_status(tracker, sale)
    _check_balance_invariant(tracker)

    customer_service.reduce_outstanding_due(customer, credit)
    # the rest of the refund goes back to the customer as payout
    _award_on_settlement(
        tracker,
        customer,
        return_id=return_id,
        refunded_out_cents=refund_amount_cents - credit,
    )

    current_app.logger.info(
        "Return %d credited %d cents to BNPL %d, %d cents remaining",
        return_id, credit, tracker.id, tracker.amount_due_cents,
    )
    return credit


# =============================================================================
# READS
# =============================================================================

def get_bnpl(bnpl_id: int, as_of: Optional[datetime] = None) -> dict:
    tracker = db.session.get(BnplTransaction, bnpl_id)
    if not tracker:
        raise BnplNotFound(f"BNPL transaction {bnpl_id} not found", bnpl_id=bnpl_id)
    data = tracker.to_dict(as_of)
    data["payments"] = [p.to_dict() for p in tracker.payments]
    return data


def get_payment_history(bnpl_id: int) -> list[BnplPayment]:
    tracker = db.session.get(BnplTransaction, bnpl_id)
    if not tracker:
        raise BnplNotFound(f"BNPL transaction {bnpl_id} not found", bnpl_id=bnpl_id)
    return (
        db.session.query(BnplPayment)
        .filter_by(bnpl_transaction_id=bnpl_id)
        .order_by(BnplPayment.payment_date.asc(), BnplPayment.id.asc())
        .all()
    )


def get_customer_bnpl_summary(customer_id: int, as_of: Optional[datetime] = None) -> dict:
    """
    Totals for one customer's BNPL book.

    Returns:
        {customer_id, total_outstanding_cents, available_credit_cents,
         active_count, overdue_count, overdue_amount_cents,
         total_bnpl_amount_cents, total_paid_cents}
    """
    customer = customer_service.get_customer(customer_id)
    as_of = as_of or utcnow()

    trackers = db.session.query(BnplTransaction).filter_by(customer_id=customer_id).all()
    active = [t for t in trackers if t.status != BNPL_STATUS_PAID]
    overdue = [t for t in active if t.is_overdue(as_of)]

    return {
        "customer_id": customer.id,
        "total_outstanding_cents": customer.total_outstanding_dues_cents,
        "available_credit_cents": customer.available_credit_cents,
        "active_count": len(active),
        "overdue_count": len(overdue),
        "overdue_amount_cents": sum(t.amount_due_cents for t in overdue),
        "total_bnpl_amount_cents": sum(t.original_amount_cents for t in trackers),
        "total_paid_cents": sum(t.amount_paid_cents for t in trackers),
    }


def list_overdue(as_of: Optional[datetime] = None) -> list[BnplTransaction]:
    """Unpaid trackers whose due_date is before as_of (default now)."""
    as_of = as_of or utcnow()
    return (
        db.session.query(BnplTransaction)
        .filter(
            BnplTransaction.status != BNPL_STATUS_PAID,
            BnplTransaction.due_date < as_of,
        )
        .order_by(BnplTransaction.due_date.asc(), BnplTransaction.id.asc())
        .all()
    )
