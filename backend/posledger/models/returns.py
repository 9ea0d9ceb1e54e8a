from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z


class Return(db.Model):
    """
    Return document against a sale.

    The processor creates it already COMPLETED; pending/approved/rejected
    are kept for returns recorded by other workflows.

    refund_amount_cents is the full refund value of the returned goods.
    payout_cents is the part actually handed back through refund_method
    after any outstanding BNPL balance on the sale was credited first.
    """
    __tablename__ = "returns"
    __table_args__ = (
        db.UniqueConstraint("return_number", name="uq_returns_return_number"),
        db.Index("ix_returns_sale_date", "sale_id", "return_date"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    return_number = db.Column(db.String(64), nullable=False)

    sale_id = db.Column(db.Integer, db.ForeignKey("sales.id"), nullable=False, index=True)
    customer_id = db.Column(db.Integer, db.ForeignKey("customers.id"), nullable=True, index=True)

    return_reason = db.Column(db.String(255), nullable=False)
    return_status = db.Column(db.String(16), nullable=False, default="pending", index=True)

    refund_amount_cents = db.Column(db.Integer, nullable=False, default=0)
    payout_cents = db.Column(db.Integer, nullable=False, default=0)
    bnpl_credit_cents = db.Column(db.Integer, nullable=False, default=0)
    refund_method = db.Column(db.String(32), nullable=False)

    processed_by = db.Column(db.String(128), nullable=False)
    notes = db.Column(db.Text, nullable=True)

    return_date = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    sale = db.relationship("Sale", backref=db.backref("returns", lazy=True))
    customer = db.relationship("Customer")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "return_number": self.return_number,
            "sale_id": self.sale_id,
            "customer_id": self.customer_id,
            "return_reason": self.return_reason,
            "return_status": self.return_status,
            "refund_amount_cents": self.refund_amount_cents,
            "payout_cents": self.payout_cents,
            "bnpl_credit_cents": self.bnpl_credit_cents,
            "refund_method": self.refund_method,
            "processed_by": self.processed_by,
            "notes": self.notes,
            "return_date": to_utc_z(self.return_date),
            "created_at": to_utc_z(self.created_at),
        }


class ReturnItem(db.Model):
    """Returned quantity of one sale item, priced at the original unit price."""
    __tablename__ = "return_items"
    __table_args__ = (
        db.CheckConstraint("quantity > 0", name="ck_return_items_qty_positive"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    return_id = db.Column(db.Integer, db.ForeignKey("returns.id"), nullable=False, index=True)
    sale_item_id = db.Column(db.Integer, db.ForeignKey("sale_items.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False)

    quantity = db.Column(db.Integer, nullable=False)
    unit_price_cents = db.Column(db.Integer, nullable=False)
    refund_price_cents = db.Column(db.Integer, nullable=False)
    condition = db.Column(db.String(16), nullable=False, default="good")  # good, damaged, defective

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    return_doc = db.relationship("Return", backref=db.backref("items", lazy=True, order_by="ReturnItem.id"))
    sale_item = db.relationship("SaleItem", backref=db.backref("return_items", lazy=True))
    product = db.relationship("Product")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "return_id": self.return_id,
            "sale_item_id": self.sale_item_id,
            "product_id": self.product_id,
            "quantity": self.quantity,
            "unit_price_cents": self.unit_price_cents,
            "refund_price_cents": self.refund_price_cents,
            "condition": self.condition,
            "created_at": to_utc_z(self.created_at),
        }


class RefundTransaction(db.Model):
    """
    Audit record of a refund's monetary movement.

    Written for every completed return regardless of how the refund was
    settled (cash, bank transfer, store credit, exchange).

    IMMUTABLE: Records are never updated or deleted.
    """
    __tablename__ = "refund_transactions"
    __table_args__ = (
        db.Index("ix_refund_txns_date", "transaction_date"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    return_id = db.Column(db.Integer, db.ForeignKey("returns.id"), nullable=True, index=True)
    sale_id = db.Column(db.Integer, db.ForeignKey("sales.id"), nullable=True, index=True)
    customer_id = db.Column(db.Integer, db.ForeignKey("customers.id"), nullable=True, index=True)

    amount_cents = db.Column(db.Integer, nullable=False)
    payment_method = db.Column(db.String(32), nullable=False)
    status = db.Column(db.String(16), nullable=False, default="completed")  # pending, completed, failed
    notes = db.Column(db.String(255), nullable=True)

    transaction_date = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    return_doc = db.relationship("Return", backref=db.backref("refund_transactions", lazy=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "return_id": self.return_id,
            "sale_id": self.sale_id,
            "customer_id": self.customer_id,
            "amount_cents": self.amount_cents,
            "payment_method": self.payment_method,
            "status": self.status,
            "notes": self.notes,
            "transaction_date": to_utc_z(self.transaction_date),
        }
