from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z


class Customer(db.Model):
    """
    Customer credit account.

    INVARIANTS:
    - available_credit_cents == max(0, credit_limit_cents - total_outstanding_dues_cents)
    - total_outstanding_dues_cents == SUM(amount_due_cents) over the customer's
      active BNPL transactions

    current_balance_cents is store credit owed to the customer (refunds by
    store credit / exchange).
    """
    __tablename__ = "customers"
    __table_args__ = (
        db.Index("ix_customers_active_name", "is_active", "name"),
        db.CheckConstraint("loyalty_points >= 0", name="ck_customers_points_nonneg"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    phone = db.Column(db.String(32), nullable=True)
    email = db.Column(db.String(255), nullable=True)

    credit_limit_cents = db.Column(db.Integer, nullable=False, default=0)
    total_outstanding_dues_cents = db.Column(db.Integer, nullable=False, default=0)
    available_credit_cents = db.Column(db.Integer, nullable=False, default=0)
    current_balance_cents = db.Column(db.Integer, nullable=False, default=0)
    loyalty_points = db.Column(db.Integer, nullable=False, default=0)

    is_active = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())
    version_id = db.Column(db.Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "phone": self.phone,
            "email": self.email,
            "credit_limit_cents": self.credit_limit_cents,
            "total_outstanding_dues_cents": self.total_outstanding_dues_cents,
            "available_credit_cents": self.available_credit_cents,
            "current_balance_cents": self.current_balance_cents,
            "loyalty_points": self.loyalty_points,
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
            "version_id": self.version_id,
        }


class LoyaltyRule(db.Model):
    """
    Versioned loyalty earn rule.

    Rows are never edited: publishing a rule inserts a new version and
    deactivates the previous one, so points recorded against an old version
    can always be recomputed.

    points_per_currency_bps: 10000 == 1 point per currency unit.
    """
    __tablename__ = "loyalty_rules"
    __table_args__ = (
        db.UniqueConstraint("version", name="uq_loyalty_rules_version"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    version = db.Column(db.Integer, nullable=False)
    rule_name = db.Column(db.String(128), nullable=False)
    points_per_currency_bps = db.Column(db.Integer, nullable=False, default=10000)
    min_purchase_cents = db.Column(db.Integer, nullable=False, default=0)
    is_active = db.Column(db.Boolean, nullable=False, default=True, index=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "version": self.version,
            "rule_name": self.rule_name,
            "points_per_currency_bps": self.points_per_currency_bps,
            "min_purchase_cents": self.min_purchase_cents,
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
        }


class LoyaltyTransaction(db.Model):
    """
    Append-only ledger of loyalty point events.

    One row per award (points_earned) or refund deduction (points_redeemed).
    rule_version pins the earn rate used so refunds deduct at the same rate.
    """
    __tablename__ = "loyalty_transactions"
    __table_args__ = (
        db.Index("ix_loyalty_txns_customer_date", "customer_id", "transaction_date"),
        db.Index("ix_loyalty_txns_sale", "sale_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    customer_id = db.Column(db.Integer, db.ForeignKey("customers.id"), nullable=False, index=True)
    sale_id = db.Column(db.Integer, db.ForeignKey("sales.id"), nullable=True)
    bnpl_transaction_id = db.Column(db.Integer, db.ForeignKey("bnpl_transactions.id"), nullable=True, index=True)
    return_id = db.Column(db.Integer, db.ForeignKey("returns.id"), nullable=True, index=True)

    rule_version = db.Column(db.Integer, nullable=True)
    points_earned = db.Column(db.Integer, nullable=False, default=0)
    points_redeemed = db.Column(db.Integer, nullable=False, default=0)
    reason = db.Column(db.String(255), nullable=True)

    transaction_date = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    customer = db.relationship("Customer", backref=db.backref("loyalty_transactions", lazy=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "customer_id": self.customer_id,
            "sale_id": self.sale_id,
            "bnpl_transaction_id": self.bnpl_transaction_id,
            "return_id": self.return_id,
            "rule_version": self.rule_version,
            "points_earned": self.points_earned,
            "points_redeemed": self.points_redeemed,
            "reason": self.reason,
            "transaction_date": to_utc_z(self.transaction_date),
        }
