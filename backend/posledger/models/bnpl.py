from __future__ import annotations

from datetime import datetime

from ..extensions import db
from ..time_utils import to_utc_z, utcnow


class BnplTransaction(db.Model):
    """
    Deferred-payment balance for one BNPL sale.

    STATE MACHINE (stored): pending -> partially_paid -> paid
    amount_due only ever decreases. `overdue` is never stored; it is
    projected at read time from due_date (see effective_status).

    INVARIANT: amount_paid_cents + amount_due_cents == original_amount_cents
    Returns credited against the balance lower original_amount_cents and are
    tracked in returned_amount_cents.
    """
    __tablename__ = "bnpl_transactions"
    __table_args__ = (
        db.UniqueConstraint("sale_id", name="uq_bnpl_transactions_sale"),
        db.CheckConstraint(
            "amount_paid_cents + amount_due_cents = original_amount_cents",
            name="ck_bnpl_balance",
        ),
        db.CheckConstraint("amount_due_cents >= 0", name="ck_bnpl_due_nonneg"),
        db.Index("ix_bnpl_customer_status", "customer_id", "status"),
        db.Index("ix_bnpl_status_due", "status", "due_date"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    sale_id = db.Column(db.Integer, db.ForeignKey("sales.id"), nullable=False)
    customer_id = db.Column(db.Integer, db.ForeignKey("customers.id"), nullable=False, index=True)

    original_amount_cents = db.Column(db.Integer, nullable=False)
    amount_paid_cents = db.Column(db.Integer, nullable=False, default=0)
    amount_due_cents = db.Column(db.Integer, nullable=False)
    returned_amount_cents = db.Column(db.Integer, nullable=False, default=0)

    due_date = db.Column(db.DateTime(timezone=True), nullable=False)
    status = db.Column(db.String(16), nullable=False, default="pending")  # pending, partially_paid, paid

    # Set once, when loyalty points for the settled balance are awarded
    loyalty_awarded_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())
    version_id = db.Column(db.Integer, nullable=False, default=1)

    sale = db.relationship("Sale", backref=db.backref("bnpl_transaction", uselist=False, lazy=True))
    customer = db.relationship("Customer", backref=db.backref("bnpl_transactions", lazy=True))
    __mapper_args__ = {"version_id_col": version_id}

    def is_overdue(self, as_of: datetime | None = None) -> bool:
        as_of = as_of or utcnow()
        return self.status != "paid" and self.due_date < as_of

    def effective_status(self, as_of: datetime | None = None) -> str:
        if self.is_overdue(as_of):
            return "overdue"
        return self.status

    def to_dict(self, as_of: datetime | None = None) -> dict:
        return {
            "id": self.id,
            "sale_id": self.sale_id,
            "customer_id": self.customer_id,
            "original_amount_cents": self.original_amount_cents,
            "amount_paid_cents": self.amount_paid_cents,
            "amount_due_cents": self.amount_due_cents,
            "returned_amount_cents": self.returned_amount_cents,
            "due_date": to_utc_z(self.due_date),
            "status": self.effective_status(as_of),
            "stored_status": self.status,
            "loyalty_awarded_at": to_utc_z(self.loyalty_awarded_at),
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
            "version_id": self.version_id,
        }


class BnplPayment(db.Model):
    """
    Payment history for BNPL transactions.

    One row per successful payment call; never updated, never overwritten.
    """
    __tablename__ = "bnpl_payments"
    __table_args__ = (
        db.UniqueConstraint("receipt_number", name="uq_bnpl_payments_receipt"),
        db.CheckConstraint("amount_cents > 0", name="ck_bnpl_payments_positive"),
        db.Index("ix_bnpl_payments_txn_date", "bnpl_transaction_id", "payment_date"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    bnpl_transaction_id = db.Column(db.Integer, db.ForeignKey("bnpl_transactions.id"), nullable=False)

    amount_cents = db.Column(db.Integer, nullable=False)
    payment_method = db.Column(db.String(32), nullable=False)
    receipt_number = db.Column(db.String(64), nullable=False)
    processed_by = db.Column(db.String(128), nullable=False)

    # Balance right after this payment (receipts print it)
    remaining_after_cents = db.Column(db.Integer, nullable=False)

    payment_date = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    bnpl_transaction = db.relationship(
        "BnplTransaction",
        backref=db.backref("payments", lazy=True, order_by="BnplPayment.id"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "bnpl_transaction_id": self.bnpl_transaction_id,
            "amount_cents": self.amount_cents,
            "payment_method": self.payment_method,
            "receipt_number": self.receipt_number,
            "processed_by": self.processed_by,
            "remaining_after_cents": self.remaining_after_cents,
            "payment_date": to_utc_z(self.payment_date),
        }
