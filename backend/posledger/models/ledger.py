from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z


class CashLedgerEntry(db.Model):
    """
    Append-only cash ledger.

    - amount_cents is signed: inflows positive, outflows negative.
    - Balance at time t is SUM(amount_cents) WHERE transaction_date <= t.
    - Exactly one entry per (reference_type, reference_id, fund).
    - Fund transfers are two rows (transfer_out / transfer_in) sharing
      transfer_id; never a single row.

    IMMUTABLE: Records are never updated or deleted.
    """
    __tablename__ = "cash_ledger"
    __table_args__ = (
        db.UniqueConstraint("reference_type", "reference_id", "fund", name="uq_cash_ledger_reference"),
        db.Index("ix_cash_ledger_fund_date", "fund", "transaction_date"),
        db.Index("ix_cash_ledger_transfer", "transfer_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    transaction_type = db.Column(db.String(32), nullable=False, index=True)
    amount_cents = db.Column(db.Integer, nullable=False)
    fund = db.Column(db.String(16), nullable=False, default="main")  # main, petty

    reference_type = db.Column(db.String(32), nullable=False)
    reference_id = db.Column(db.String(64), nullable=False)
    transfer_id = db.Column(db.String(36), nullable=True)

    description = db.Column(db.String(255), nullable=True)

    transaction_date = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "transaction_type": self.transaction_type,
            "amount_cents": self.amount_cents,
            "fund": self.fund,
            "reference_type": self.reference_type,
            "reference_id": self.reference_id,
            "transfer_id": self.transfer_id,
            "description": self.description,
            "transaction_date": to_utc_z(self.transaction_date),
            "created_at": to_utc_z(self.created_at),
        }


class Expense(db.Model):
    """Store expense; cash expenses post one negative cash ledger entry."""
    __tablename__ = "expenses"
    __table_args__ = (
        db.CheckConstraint("amount_cents > 0", name="ck_expenses_positive"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    category = db.Column(db.String(64), nullable=False, index=True)
    description = db.Column(db.String(255), nullable=False)
    amount_cents = db.Column(db.Integer, nullable=False)
    payment_method = db.Column(db.String(32), nullable=False, default="cash")  # cash, bank_transfer, card, check
    fund = db.Column(db.String(16), nullable=False, default="petty")
    receipt_number = db.Column(db.String(64), nullable=True)
    notes = db.Column(db.String(255), nullable=True)

    expense_date = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "category": self.category,
            "description": self.description,
            "amount_cents": self.amount_cents,
            "payment_method": self.payment_method,
            "fund": self.fund,
            "receipt_number": self.receipt_number,
            "notes": self.notes,
            "expense_date": to_utc_z(self.expense_date),
            "created_at": to_utc_z(self.created_at),
        }
