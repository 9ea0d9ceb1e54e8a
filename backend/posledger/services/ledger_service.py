# Overview: Service-layer operations for the cash ledger; encapsulates business logic and database work.

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Optional

from flask import current_app
from sqlalchemy.exc import IntegrityError

from ..errors import InsufficientFunds, InvalidAmount, ValidationError
from ..extensions import db
from ..models import CashLedgerEntry, Expense
from ..time_utils import to_utc_z, utcnow
from .concurrency import run_with_retry
from .idempotency_service import run_idempotent

"""
Cash Ledger Invariants (authoritative)

- Append-only: entries are never updated or deleted.
- amount_cents is signed: inflows positive, outflows negative.
- Balance as of t is SUM(amount_cents) WHERE transaction_date <= t (inclusive).
- Exactly one entry per (reference_type, reference_id, fund). A second append
  for the same reference returns the existing entry and writes nothing.
- Entries are written inside the same DB transaction as the operation that
  causes them (sale, refund, BNPL payment, expense, transfer, opening).
"""


FUND_MAIN = "main"
FUND_PETTY = "petty"
FUNDS = (FUND_MAIN, FUND_PETTY)

TRANSACTION_TYPES = (
    "sale",
    "refund",
    "expense",
    "bnpl_payment",
    "transfer_in",
    "transfer_out",
    "opening",
    "adjustment",
)

EXPENSE_PAYMENT_METHODS = ("cash", "bank_transfer", "card", "check")


def _require_fund(fund: str, field: str = "fund") -> str:
    if fund not in FUNDS:
        raise ValidationError(f"{field} must be one of {list(FUNDS)}", field=field, value=fund)
    return fund


# =============================================================================
# APPEND / READ
# =============================================================================

def append_cash_entry(
    *,
    transaction_type: str,
    amount_cents: int,
    reference_type: str,
    reference_id,
    fund: str = FUND_MAIN,
    description: Optional[str] = None,
    transfer_id: Optional[str] = None,
    transaction_date: Optional[datetime] = None,
) -> CashLedgerEntry:
    """
    Append one cash ledger entry, exactly once per (reference_type, reference_id, fund).

    No commit: runs inside the caller's transaction.

    If an entry for the same reference already exists it is returned
    unchanged and a WARNING is logged; the unique constraint backs the
    pre-check when two writers race.
    """
    if transaction_type not in TRANSACTION_TYPES:
        raise ValidationError(
            f"transaction_type must be one of {list(TRANSACTION_TYPES)}",
            field="transaction_type",
            value=transaction_type,
        )
    _require_fund(fund)
    if amount_cents == 0:
        raise InvalidAmount("Cash ledger entries must be non-zero", field="amount_cents")
    if not reference_type or reference_id is None:
        raise ValidationError("reference_type and reference_id are required", field="reference_id")

    reference_id = str(reference_id)

    existing = _find_entry(reference_type, reference_id, fund)
    if existing is not None:
        current_app.logger.warning(
            "Duplicate cash ledger entry suppressed for %s %s (%s)",
            reference_type, reference_id, fund,
        )
        return existing

    entry = CashLedgerEntry(
        transaction_type=transaction_type,
        amount_cents=amount_cents,
        fund=fund,
        reference_type=reference_type,
        reference_id=reference_id,
        transfer_id=transfer_id,
        description=description,
        transaction_date=transaction_date or utcnow(),
    )
    try:
        with db.session.begin_nested():
            db.session.add(entry)
    except IntegrityError:
        existing = _find_entry(reference_type, reference_id, fund)
        if existing is None:
            raise
        current_app.logger.warning(
            "Duplicate cash ledger entry suppressed for %s %s (%s) after race",
            reference_type, reference_id, fund,
        )
        return existing
    return entry


def _find_entry(reference_type: str, reference_id: str, fund: str) -> CashLedgerEntry | None:
    return (
        db.session.query(CashLedgerEntry)
        .filter_by(reference_type=reference_type, reference_id=reference_id, fund=fund)
        .first()
    )


def get_cash_balance(*, as_of: Optional[datetime] = None, fund: Optional[str] = None) -> int:
    """Signed sum of entries (inclusive as_of); all funds when fund is None."""
    query = db.session.query(db.func.coalesce(db.func.sum(CashLedgerEntry.amount_cents), 0))
    if fund is not None:
        _require_fund(fund)
        query = query.filter(CashLedgerEntry.fund == fund)
    if as_of is not None:
        query = query.filter(CashLedgerEntry.transaction_date <= as_of)
    return int(query.scalar() or 0)


def get_fund_balances(*, as_of: Optional[datetime] = None) -> dict:
    balances = {fund: get_cash_balance(as_of=as_of, fund=fund) for fund in FUNDS}
    balances["total"] = sum(balances.values())
    return balances


def list_entries(
    *,
    fund: Optional[str] = None,
    reference_type: Optional[str] = None,
    transaction_type: Optional[str] = None,
    from_date: Optional[datetime] = None,
    to_date: Optional[datetime] = None,
    limit: int = 100,
    offset: int = 0,
) -> tuple[list[CashLedgerEntry], int]:
    query = db.session.query(CashLedgerEntry)
    if fund:
        query = query.filter(CashLedgerEntry.fund == _require_fund(fund))
    if reference_type:
        query = query.filter(CashLedgerEntry.reference_type == reference_type)
    if transaction_type:
        query = query.filter(CashLedgerEntry.transaction_type == transaction_type)
    if from_date:
        query = query.filter(CashLedgerEntry.transaction_date >= from_date)
    if to_date:
        query = query.filter(CashLedgerEntry.transaction_date <= to_date)

    total = query.count()

    if offset < 0:
        offset = 0
    if limit < 1:
        limit = 1
    if limit > 500:
        limit = 500

    rows = (
        query.order_by(CashLedgerEntry.transaction_date.desc(), CashLedgerEntry.id.desc())
        .offset(offset)
        .limit(limit)
        .all()
    )
    return rows, total


def _require_available(fund: str, amount_cents: int) -> None:
    available = get_cash_balance(fund=fund)
    if available < amount_cents:
        raise InsufficientFunds(
            f"Insufficient balance in {fund} fund",
            fund=fund,
            available_cents=available,
            requested_cents=amount_cents,
        )


# =============================================================================
# DIRECT LEDGER OPERATIONS (each is its own causing operation)
# =============================================================================

def transfer_between_funds(
    from_fund: str,
    to_fund: str,
    amount_cents: int,
    description: Optional[str] = None,
    *,
    idempotency_key: Optional[str] = None,
) -> dict:
    """
    Move cash between funds as two paired entries sharing a transfer_id.

    Args:
        from_fund: Source fund (debited, transfer_out negative)
        to_fund: Destination fund (credited, transfer_in positive)
        amount_cents: Positive amount to move
        description: Optional note stored on both entries
        idempotency_key: Optional client key for safe retries

    Returns:
        {transfer_id, from_fund, to_fund, amount_cents, entries, replayed}

    Raises:
        ValidationError: Unknown or identical funds
        InvalidAmount: amount_cents <= 0
        InsufficientFunds: Source fund balance below amount
    """
    _require_fund(from_fund, "from_fund")
    _require_fund(to_fund, "to_fund")
    if from_fund == to_fund:
        raise ValidationError("Cannot transfer to the same fund", field="to_fund")
    if amount_cents <= 0:
        raise InvalidAmount("Transfer amount must be greater than zero", field="amount_cents")

    payload = {
        "from_fund": from_fund,
        "to_fund": to_fund,
        "amount_cents": amount_cents,
        "description": description,
    }

    def _apply() -> dict:
        _require_available(from_fund, amount_cents)

        transfer_id = str(uuid.uuid4())
        now = utcnow()
        note = description or f"Transfer from {from_fund} to {to_fund}"

        out_entry = append_cash_entry(
            transaction_type="transfer_out",
            amount_cents=-amount_cents,
            fund=from_fund,
            reference_type="transfer",
            reference_id=transfer_id,
            transfer_id=transfer_id,
            description=note,
            transaction_date=now,
        )
        in_entry = append_cash_entry(
            transaction_type="transfer_in",
            amount_cents=amount_cents,
            fund=to_fund,
            reference_type="transfer",
            reference_id=transfer_id,
            transfer_id=transfer_id,
            description=note,
            transaction_date=now,
        )
        db.session.flush()

        current_app.logger.info(
            "Transferred %d cents from %s to %s (%s)", amount_cents, from_fund, to_fund, transfer_id
        )
        return {
            "transfer_id": transfer_id,
            "from_fund": from_fund,
            "to_fund": to_fund,
            "amount_cents": amount_cents,
            "entries": [out_entry.to_dict(), in_entry.to_dict()],
        }

    return run_idempotent(
        operation="ledger.transfer",
        key=idempotency_key,
        payload=payload,
        apply=_apply,
    )


def record_expense(
    *,
    category: str,
    description: str,
    amount_cents: int,
    payment_method: str = "cash",
    fund: str = FUND_PETTY,
    receipt_number: Optional[str] = None,
    notes: Optional[str] = None,
    expense_date: Optional[datetime] = None,
    idempotency_key: Optional[str] = None,
) -> dict:
    """
    Record an expense; cash expenses post exactly one negative entry to `fund`.

    Non-cash expenses (bank_transfer, card, check) do not touch the cash ledger.
    """
    if amount_cents <= 0:
        raise InvalidAmount("Expense amount must be greater than zero", field="amount_cents")
    if payment_method not in EXPENSE_PAYMENT_METHODS:
        raise ValidationError(
            f"payment_method must be one of {list(EXPENSE_PAYMENT_METHODS)}",
            field="payment_method",
            value=payment_method,
        )
    _require_fund(fund)

    payload = {
        "category": category,
        "description": description,
        "amount_cents": amount_cents,
        "payment_method": payment_method,
        "fund": fund,
        "receipt_number": receipt_number,
        "notes": notes,
        "expense_date": to_utc_z(expense_date),
    }

    def _apply() -> dict:
        if payment_method == "cash":
            _require_available(fund, amount_cents)

        expense = Expense(
            category=category,
            description=description,
            amount_cents=amount_cents,
            payment_method=payment_method,
            fund=fund,
            receipt_number=receipt_number,
            notes=notes,
            expense_date=expense_date or utcnow(),
        )
        db.session.add(expense)
        db.session.flush()

        entry = None
        if payment_method == "cash":
            entry = append_cash_entry(
                transaction_type="expense",
                amount_cents=-amount_cents,
                fund=fund,
                reference_type="expense",
                reference_id=expense.id,
                description=f"Expense: {description}",
                transaction_date=expense.expense_date,
            )
            db.session.flush()

        current_app.logger.info(
            "Recorded %s expense %d of %d cents (%s)", payment_method, expense.id, amount_cents, category
        )
        return {
            "expense": expense.to_dict(),
            "ledger_entry": entry.to_dict() if entry else None,
        }

    return run_idempotent(
        operation="ledger.expense",
        key=idempotency_key,
        payload=payload,
        apply=_apply,
    )


def record_opening_balance(
    fund: str,
    amount_cents: int,
    *,
    reference_id: Optional[str] = None,
    description: Optional[str] = None,
) -> CashLedgerEntry:
    """
    Seed a fund with an opening balance.

    reference_id defaults to today's date, so a fund gets at most one opening
    entry per day.
    """
    _require_fund(fund)
    if amount_cents <= 0:
        raise InvalidAmount("Opening balance must be greater than zero", field="amount_cents")

    now = utcnow()
    reference_id = reference_id or now.date().isoformat()

    def _op() -> CashLedgerEntry:
        entry = append_cash_entry(
            transaction_type="opening",
            amount_cents=amount_cents,
            fund=fund,
            reference_type="opening",
            reference_id=reference_id,
            description=description or f"Opening balance ({fund})",
            transaction_date=now,
        )
        db.session.commit()
        current_app.logger.info("Opening balance of %d cents recorded for %s fund", amount_cents, fund)
        return entry

    return run_with_retry(_op)
