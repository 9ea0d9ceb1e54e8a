from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z


class Sale(db.Model):
    """
    Completed sale.

    Financial totals are immutable after creation; only payment_status and
    return_status move afterwards.

    PAYMENT STATUS: paid, partially_paid, pending_bnpl, refunded
    RETURN STATUS: none, partial_return, full_return
    """
    __tablename__ = "sales"
    __table_args__ = (
        db.UniqueConstraint("receipt_number", name="uq_sales_receipt_number"),
        db.Index("ix_sales_payment_status_date", "payment_status", "sale_date"),
        db.Index("ix_sales_customer_date", "customer_id", "sale_date"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    receipt_number = db.Column(db.String(64), nullable=False)
    customer_id = db.Column(db.Integer, db.ForeignKey("customers.id"), nullable=True, index=True)

    # Amounts in cents
    subtotal_cents = db.Column(db.Integer, nullable=False, default=0)
    discount_cents = db.Column(db.Integer, nullable=False, default=0)
    total_amount_cents = db.Column(db.Integer, nullable=False)

    payment_method = db.Column(db.String(32), nullable=False)  # cash, card, bank_transfer, bnpl
    payment_status = db.Column(db.String(16), nullable=False, default="paid", index=True)
    return_status = db.Column(db.String(16), nullable=False, default="none", index=True)

    notes = db.Column(db.String(255), nullable=True)
    sale_date = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), index=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    version_id = db.Column(db.Integer, nullable=False, default=1)

    customer = db.relationship("Customer", backref=db.backref("sales", lazy=True))
    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "receipt_number": self.receipt_number,
            "customer_id": self.customer_id,
            "subtotal_cents": self.subtotal_cents,
            "discount_cents": self.discount_cents,
            "total_amount_cents": self.total_amount_cents,
            "payment_method": self.payment_method,
            "payment_status": self.payment_status,
            "return_status": self.return_status,
            "notes": self.notes,
            "sale_date": to_utc_z(self.sale_date),
            "created_at": to_utc_z(self.created_at),
            "version_id": self.version_id,
        }


class SaleItem(db.Model):
    """
    Line item on a sale.

    INVARIANT: 0 <= returned_quantity <= quantity (enforced by check constraint
    and by the return processor under row lock).
    """
    __tablename__ = "sale_items"
    __table_args__ = (
        db.CheckConstraint("returned_quantity >= 0", name="ck_sale_items_returned_nonneg"),
        db.CheckConstraint("returned_quantity <= quantity", name="ck_sale_items_returned_le_qty"),
        db.CheckConstraint("quantity > 0", name="ck_sale_items_qty_positive"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    sale_id = db.Column(db.Integer, db.ForeignKey("sales.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)

    quantity = db.Column(db.Integer, nullable=False)
    unit_price_cents = db.Column(db.Integer, nullable=False)
    # Recorded for receipts; refunds never prorate it
    discount_cents = db.Column(db.Integer, nullable=False, default=0)
    line_total_cents = db.Column(db.Integer, nullable=False)

    returned_quantity = db.Column(db.Integer, nullable=False, default=0)
    version_id = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    sale = db.relationship("Sale", backref=db.backref("items", lazy=True, order_by="SaleItem.id"))
    product = db.relationship("Product")
    __mapper_args__ = {"version_id_col": version_id}

    @property
    def is_returned(self) -> bool:
        return self.returned_quantity >= self.quantity

    @property
    def returnable_quantity(self) -> int:
        return self.quantity - self.returned_quantity

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "sale_id": self.sale_id,
            "product_id": self.product_id,
            "quantity": self.quantity,
            "unit_price_cents": self.unit_price_cents,
            "discount_cents": self.discount_cents,
            "line_total_cents": self.line_total_cents,
            "returned_quantity": self.returned_quantity,
            "is_returned": self.is_returned,
            "version_id": self.version_id,
            "created_at": to_utc_z(self.created_at),
        }
