"""Ledger core schema: sales, returns, BNPL, cash ledger, loyalty

Revision ID: 20261019_ledger_core
Revises:
Create Date: 2026-10-19
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "20261019_ledger_core"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps():
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
    ]


def upgrade():
    op.create_table(
        "products",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("sku", sa.String(64), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("price_cents", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("stock_quantity", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("1")),
        sa.Column("version_id", sa.Integer(), nullable=False, server_default=sa.text("1")),
        *_timestamps(),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("sku", name="uq_products_sku"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("products", schema=None) as batch_op:
        batch_op.create_index("ix_products_active_name", ["is_active", "name"], unique=False)

    op.create_table(
        "customers",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("phone", sa.String(32), nullable=True),
        sa.Column("email", sa.String(255), nullable=True),
        sa.Column("credit_limit_cents", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("total_outstanding_dues_cents", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("available_credit_cents", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("current_balance_cents", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("loyalty_points", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("1")),
        *_timestamps(),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.Column("version_id", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint("loyalty_points >= 0", name="ck_customers_points_nonneg"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("customers", schema=None) as batch_op:
        batch_op.create_index("ix_customers_active_name", ["is_active", "name"], unique=False)

    op.create_table(
        "loyalty_rules",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("rule_name", sa.String(128), nullable=False),
        sa.Column("points_per_currency_bps", sa.Integer(), nullable=False, server_default=sa.text("10000")),
        sa.Column("min_purchase_cents", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("1")),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("version", name="uq_loyalty_rules_version"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("loyalty_rules", schema=None) as batch_op:
        batch_op.create_index("ix_loyalty_rules_is_active", ["is_active"], unique=False)

    op.create_table(
        "sales",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("receipt_number", sa.String(64), nullable=False),
        sa.Column("customer_id", sa.Integer(), nullable=True),
        sa.Column("subtotal_cents", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("discount_cents", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("total_amount_cents", sa.Integer(), nullable=False),
        sa.Column("payment_method", sa.String(32), nullable=False),
        sa.Column("payment_status", sa.String(16), nullable=False, server_default="paid"),
        sa.Column("return_status", sa.String(16), nullable=False, server_default="none"),
        sa.Column("notes", sa.String(255), nullable=True),
        sa.Column("sale_date", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        *_timestamps(),
        sa.Column("version_id", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.ForeignKeyConstraint(["customer_id"], ["customers.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("receipt_number", name="uq_sales_receipt_number"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("sales", schema=None) as batch_op:
        batch_op.create_index("ix_sales_customer_id", ["customer_id"], unique=False)
        batch_op.create_index("ix_sales_payment_status", ["payment_status"], unique=False)
        batch_op.create_index("ix_sales_return_status", ["return_status"], unique=False)
        batch_op.create_index("ix_sales_sale_date", ["sale_date"], unique=False)
        batch_op.create_index("ix_sales_payment_status_date", ["payment_status", "sale_date"], unique=False)
        batch_op.create_index("ix_sales_customer_date", ["customer_id", "sale_date"], unique=False)

    op.create_table(
        "sale_items",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("sale_id", sa.Integer(), nullable=False),
        sa.Column("product_id", sa.Integer(), nullable=False),
        sa.Column("quantity", sa.Integer(), nullable=False),
        sa.Column("unit_price_cents", sa.Integer(), nullable=False),
        sa.Column("discount_cents", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("line_total_cents", sa.Integer(), nullable=False),
        sa.Column("returned_quantity", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("version_id", sa.Integer(), nullable=False, server_default=sa.text("1")),
        *_timestamps(),
        sa.ForeignKeyConstraint(["sale_id"], ["sales.id"]),
        sa.ForeignKeyConstraint(["product_id"], ["products.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint("returned_quantity >= 0", name="ck_sale_items_returned_nonneg"),
        sa.CheckConstraint("returned_quantity <= quantity", name="ck_sale_items_returned_le_qty"),
        sa.CheckConstraint("quantity > 0", name="ck_sale_items_qty_positive"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("sale_items", schema=None) as batch_op:
        batch_op.create_index("ix_sale_items_sale_id", ["sale_id"], unique=False)
        batch_op.create_index("ix_sale_items_product_id", ["product_id"], unique=False)

    op.create_table(
        "stock_movements",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("product_id", sa.Integer(), nullable=False),
        sa.Column("movement_type", sa.String(16), nullable=False),
        sa.Column("quantity", sa.Integer(), nullable=False),
        sa.Column("reference_type", sa.String(32), nullable=True),
        sa.Column("reference_id", sa.Integer(), nullable=True),
        sa.Column("notes", sa.String(255), nullable=True),
        sa.Column("movement_date", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.ForeignKeyConstraint(["product_id"], ["products.id"]),
        sa.PrimaryKeyConstraint("id"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("stock_movements", schema=None) as batch_op:
        batch_op.create_index("ix_stock_movements_product_id", ["product_id"], unique=False)
        batch_op.create_index("ix_stock_movements_reference", ["reference_type", "reference_id"], unique=False)
        batch_op.create_index("ix_stock_movements_product_date", ["product_id", "movement_date"], unique=False)

    op.create_table(
        "returns",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("return_number", sa.String(64), nullable=False),
        sa.Column("sale_id", sa.Integer(), nullable=False),
        sa.Column("customer_id", sa.Integer(), nullable=True),
        sa.Column("return_reason", sa.String(255), nullable=False),
        sa.Column("return_status", sa.String(16), nullable=False, server_default="pending"),
        sa.Column("refund_amount_cents", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("payout_cents", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("bnpl_credit_cents", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("refund_method", sa.String(32), nullable=False),
        sa.Column("processed_by", sa.String(128), nullable=False),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("return_date", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        *_timestamps(),
        sa.ForeignKeyConstraint(["sale_id"], ["sales.id"]),
        sa.ForeignKeyConstraint(["customer_id"], ["customers.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("return_number", name="uq_returns_return_number"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("returns", schema=None) as batch_op:
        batch_op.create_index("ix_returns_sale_id", ["sale_id"], unique=False)
        batch_op.create_index("ix_returns_customer_id", ["customer_id"], unique=False)
        batch_op.create_index("ix_returns_return_status", ["return_status"], unique=False)
        batch_op.create_index("ix_returns_sale_date", ["sale_id", "return_date"], unique=False)

    op.create_table(
        "return_items",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("return_id", sa.Integer(), nullable=False),
        sa.Column("sale_item_id", sa.Integer(), nullable=False),
        sa.Column("product_id", sa.Integer(), nullable=False),
        sa.Column("quantity", sa.Integer(), nullable=False),
        sa.Column("unit_price_cents", sa.Integer(), nullable=False),
        sa.Column("refund_price_cents", sa.Integer(), nullable=False),
        sa.Column("condition", sa.String(16), nullable=False, server_default="good"),
        *_timestamps(),
        sa.ForeignKeyConstraint(["return_id"], ["returns.id"]),
        sa.ForeignKeyConstraint(["sale_item_id"], ["sale_items.id"]),
        sa.ForeignKeyConstraint(["product_id"], ["products.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint("quantity > 0", name="ck_return_items_qty_positive"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("return_items", schema=None) as batch_op:
        batch_op.create_index("ix_return_items_return_id", ["return_id"], unique=False)
        batch_op.create_index("ix_return_items_sale_item_id", ["sale_item_id"], unique=False)

    op.create_table(
        "refund_transactions",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("return_id", sa.Integer(), nullable=True),
        sa.Column("sale_id", sa.Integer(), nullable=True),
        sa.Column("customer_id", sa.Integer(), nullable=True),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("payment_method", sa.String(32), nullable=False),
        sa.Column("status", sa.String(16), nullable=False, server_default="completed"),
        sa.Column("notes", sa.String(255), nullable=True),
        sa.Column("transaction_date", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.ForeignKeyConstraint(["return_id"], ["returns.id"]),
        sa.ForeignKeyConstraint(["sale_id"], ["sales.id"]),
        sa.ForeignKeyConstraint(["customer_id"], ["customers.id"]),
        sa.PrimaryKeyConstraint("id"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("refund_transactions", schema=None) as batch_op:
        batch_op.create_index("ix_refund_transactions_return_id", ["return_id"], unique=False)
        batch_op.create_index("ix_refund_transactions_sale_id", ["sale_id"], unique=False)
        batch_op.create_index("ix_refund_transactions_customer_id", ["customer_id"], unique=False)
        batch_op.create_index("ix_refund_txns_date", ["transaction_date"], unique=False)

    op.create_table(
        "bnpl_transactions",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("sale_id", sa.Integer(), nullable=False),
        sa.Column("customer_id", sa.Integer(), nullable=False),
        sa.Column("original_amount_cents", sa.Integer(), nullable=False),
        sa.Column("amount_paid_cents", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("amount_due_cents", sa.Integer(), nullable=False),
        sa.Column("returned_amount_cents", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("due_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status", sa.String(16), nullable=False, server_default="pending"),
        sa.Column("loyalty_awarded_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.Column("version_id", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.ForeignKeyConstraint(["sale_id"], ["sales.id"]),
        sa.ForeignKeyConstraint(["customer_id"], ["customers.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("sale_id", name="uq_bnpl_transactions_sale"),
        sa.CheckConstraint("amount_paid_cents + amount_due_cents = original_amount_cents", name="ck_bnpl_balance"),
        sa.CheckConstraint("amount_due_cents >= 0", name="ck_bnpl_due_nonneg"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("bnpl_transactions", schema=None) as batch_op:
        batch_op.create_index("ix_bnpl_transactions_customer_id", ["customer_id"], unique=False)
        batch_op.create_index("ix_bnpl_customer_status", ["customer_id", "status"], unique=False)
        batch_op.create_index("ix_bnpl_status_due", ["status", "due_date"], unique=False)

    op.create_table(
        "bnpl_payments",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("bnpl_transaction_id", sa.Integer(), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("payment_method", sa.String(32), nullable=False),
        sa.Column("receipt_number", sa.String(64), nullable=False),
        sa.Column("processed_by", sa.String(128), nullable=False),
        sa.Column("remaining_after_cents", sa.Integer(), nullable=False),
        sa.Column("payment_date", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.ForeignKeyConstraint(["bnpl_transaction_id"], ["bnpl_transactions.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("receipt_number", name="uq_bnpl_payments_receipt"),
        sa.CheckConstraint("amount_cents > 0", name="ck_bnpl_payments_positive"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("bnpl_payments", schema=None) as batch_op:
        batch_op.create_index("ix_bnpl_payments_txn_date", ["bnpl_transaction_id", "payment_date"], unique=False)

    op.create_table(
        "loyalty_transactions",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("customer_id", sa.Integer(), nullable=False),
        sa.Column("sale_id", sa.Integer(), nullable=True),
        sa.Column("bnpl_transaction_id", sa.Integer(), nullable=True),
        sa.Column("return_id", sa.Integer(), nullable=True),
        sa.Column("rule_version", sa.Integer(), nullable=True),
        sa.Column("points_earned", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("points_redeemed", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("reason", sa.String(255), nullable=True),
        sa.Column("transaction_date", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.ForeignKeyConstraint(["customer_id"], ["customers.id"]),
        sa.ForeignKeyConstraint(["sale_id"], ["sales.id"]),
        sa.ForeignKeyConstraint(["bnpl_transaction_id"], ["bnpl_transactions.id"]),
        sa.ForeignKeyConstraint(["return_id"], ["returns.id"]),
        sa.PrimaryKeyConstraint("id"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("loyalty_transactions", schema=None) as batch_op:
        batch_op.create_index("ix_loyalty_transactions_customer_id", ["customer_id"], unique=False)
        batch_op.create_index("ix_loyalty_transactions_bnpl_transaction_id", ["bnpl_transaction_id"], unique=False)
        batch_op.create_index("ix_loyalty_transactions_return_id", ["return_id"], unique=False)
        batch_op.create_index("ix_loyalty_txns_customer_date", ["customer_id", "transaction_date"], unique=False)
        batch_op.create_index("ix_loyalty_txns_sale", ["sale_id"], unique=False)

    op.create_table(
        "cash_ledger",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("transaction_type", sa.String(32), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("fund", sa.String(16), nullable=False, server_default="main"),
        sa.Column("reference_type", sa.String(32), nullable=False),
        sa.Column("reference_id", sa.String(64), nullable=False),
        sa.Column("transfer_id", sa.String(36), nullable=True),
        sa.Column("description", sa.String(255), nullable=True),
        sa.Column("transaction_date", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("reference_type", "reference_id", "fund", name="uq_cash_ledger_reference"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("cash_ledger", schema=None) as batch_op:
        batch_op.create_index("ix_cash_ledger_transaction_type", ["transaction_type"], unique=False)
        batch_op.create_index("ix_cash_ledger_fund_date", ["fund", "transaction_date"], unique=False)
        batch_op.create_index("ix_cash_ledger_transfer", ["transfer_id"], unique=False)

    op.create_table(
        "expenses",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("category", sa.String(64), nullable=False),
        sa.Column("description", sa.String(255), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("payment_method", sa.String(32), nullable=False, server_default="cash"),
        sa.Column("fund", sa.String(16), nullable=False, server_default="petty"),
        sa.Column("receipt_number", sa.String(64), nullable=True),
        sa.Column("notes", sa.String(255), nullable=True),
        sa.Column("expense_date", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint("amount_cents > 0", name="ck_expenses_positive"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("expenses", schema=None) as batch_op:
        batch_op.create_index("ix_expenses_category", ["category"], unique=False)

    op.create_table(
        "settings",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("key", sa.String(128), nullable=False),
        sa.Column("value", sa.String(255), nullable=False),
        sa.Column("description", sa.String(255), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("key", name="uq_settings_key"),
        sqlite_autoincrement=True,
    )

    op.create_table(
        "document_sequences",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("document_type", sa.String(32), nullable=False),
        sa.Column("next_number", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("document_type", name="uq_doc_sequences_type"),
        sqlite_autoincrement=True,
    )


def downgrade():
    op.drop_table("document_sequences")
    op.drop_table("settings")
    op.drop_table("expenses")
    op.drop_table("cash_ledger")
    op.drop_table("loyalty_transactions")
    op.drop_table("bnpl_payments")
    op.drop_table("bnpl_transactions")
    op.drop_table("refund_transactions")
    op.drop_table("return_items")
    op.drop_table("returns")
    op.drop_table("stock_movements")
    op.drop_table("sale_items")
    op.drop_table("sales")
    op.drop_table("loyalty_rules")
    op.drop_table("customers")
    op.drop_table("products")
