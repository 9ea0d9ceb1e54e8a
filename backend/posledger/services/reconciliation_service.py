# Overview: Read-only reconciliation report over ledgers and customer balances.

"""
Reconciliation

WHY: Data written before the atomic write path existed may be missing ledger
rows or carry drifted customer totals. This report finds those rows and
explains them; it NEVER writes. Repairs are a human decision.
"""

from __future__ import annotations

from ..extensions import db
from ..models import (
    BnplPayment,
    BnplTransaction,
    CashLedgerEntry,
    Customer,
    Expense,
    Return,
    ReturnItem,
    Sale,
    SaleItem,
)
from .bnpl_service import derive_status
from .customer_service import customer_balance_problems


CASH_REFUND_METHODS = ("cash", "bank_transfer")


def _ledger_keys(reference_type: str) -> set[str]:
    rows = (
        db.session.query(CashLedgerEntry.reference_id)
        .filter(CashLedgerEntry.reference_type == reference_type)
        .all()
    )
    return {row[0] for row in rows}


def check_customers() -> list[dict]:
    issues = []
    for customer in db.session.query(Customer).order_by(Customer.id).all():
        problems = customer_balance_problems(customer)
        if problems:
            issues.append({"customer_id": customer.id, "problems": problems})
    return issues


def check_bnpl_transactions() -> list[dict]:
    issues = []
    for tracker in db.session.query(BnplTransaction).order_by(BnplTransaction.id).all():
        if tracker.amount_paid_cents + tracker.amount_due_cents != tracker.original_amount_cents:
            issues.append({
                "bnpl_id": tracker.id,
                "problem": "amount_paid + amount_due != original_amount",
                "amount_paid_cents": tracker.amount_paid_cents,
                "amount_due_cents": tracker.amount_due_cents,
                "original_amount_cents": tracker.original_amount_cents,
            })
        expected = derive_status(tracker)
        if tracker.status != expected:
            issues.append({
                "bnpl_id": tracker.id,
                "problem": "status does not match balance",
                "stored": tracker.status,
                "expected": expected,
            })
    return issues


def check_sale_items() -> list[dict]:
    """returned_quantity must equal the quantities on ReturnItems and never exceed quantity."""
    returned = dict(
        db.session.query(ReturnItem.sale_item_id, db.func.sum(ReturnItem.quantity))
        .group_by(ReturnItem.sale_item_id)
        .all()
    )
    issues = []
    for item in db.session.query(SaleItem).order_by(SaleItem.id).all():
        from_returns = int(returned.get(item.id) or 0)
        if item.returned_quantity != from_returns or from_returns > item.quantity:
            issues.append({
                "sale_item_id": item.id,
                "quantity": item.quantity,
                "returned_quantity": item.returned_quantity,
                "returned_by_return_items": from_returns,
            })
    return issues


def check_missing_cash_entries() -> list[dict]:
    """Qualifying sales, refunds, expenses and BNPL payments with no ledger entry."""
    missing = []

    sale_keys = _ledger_keys("sale")
    for sale_id, receipt, total in (
        db.session.query(Sale.id, Sale.receipt_number, Sale.total_amount_cents)
        .filter(Sale.payment_method == "cash", Sale.total_amount_cents > 0)
        .all()
    ):
        if str(sale_id) not in sale_keys:
            missing.append({"reference_type": "sale", "reference_id": sale_id, "document": receipt, "amount_cents": total})

    return_keys = _ledger_keys("return")
    for return_id, number, payout in (
        db.session.query(Return.id, Return.return_number, Return.payout_cents)
        .filter(Return.refund_method.in_(CASH_REFUND_METHODS), Return.payout_cents > 0)
        .all()
    ):
        if str(return_id) not in return_keys:
            missing.append({"reference_type": "return", "reference_id": return_id, "document": number, "amount_cents": -payout})

    expense_keys = _ledger_keys("expense")
    for expense_id, amount in (
        db.session.query(Expense.id, Expense.amount_cents).filter(Expense.payment_method == "cash").all()
    ):
        if str(expense_id) not in expense_keys:
            missing.append({"reference_type": "expense", "reference_id": expense_id, "amount_cents": -amount})

    payment_keys = _ledger_keys("bnpl_payment")
    for payment_id, receipt, amount in (
        db.session.query(BnplPayment.id, BnplPayment.receipt_number, BnplPayment.amount_cents)
        .filter(BnplPayment.payment_method == "cash")
        .all()
    ):
        if str(payment_id) not in payment_keys:
            missing.append({"reference_type": "bnpl_payment", "reference_id": payment_id, "document": receipt, "amount_cents": amount})

    return missing


def check_transfers() -> list[dict]:
    rows = (
        db.session.query(
            CashLedgerEntry.transfer_id,
            db.func.count(CashLedgerEntry.id),
            db.func.sum(CashLedgerEntry.amount_cents),
        )
        .filter(CashLedgerEntry.transfer_id.isnot(None))
        .group_by(CashLedgerEntry.transfer_id)
        .all()
    )
    return [
        {"transfer_id": transfer_id, "entries": count, "net_cents": int(net or 0)}
        for transfer_id, count, net in rows
        if count != 2 or int(net or 0) != 0
    ]


def reconcile() -> dict:
    """
    Run every check and return the findings.

    Returns:
        {ok, customers, bnpl_transactions, sale_items, missing_cash_entries,
         unbalanced_transfers}
    """
    report = {
        "customers": check_customers(),
        "bnpl_transactions": check_bnpl_transactions(),
        "sale_items": check_sale_items(),
        "missing_cash_entries": check_missing_cash_entries(),
        "unbalanced_transfers": check_transfers(),
    }
    report["ok"] = not any(report.values())
    return report
