# Overview: Sale recorder; writes a sale with its items and the ledger side effects of the payment.

"""
Sale Recorder

WHY: Returns, BNPL balances and the cash ledger all hang off sales. This
records a finished sale in one transaction:
- Sale + SaleItems (totals fixed at creation)
- Stock decremented with an `out` movement per line
- payment_method=cash: one positive cash ledger entry
- payment_method=bnpl: a BNPL tracker for the sale total
- payment_method=cash/card with a customer: loyalty points under the active rule

Carts, discount engines and tax are not part of this ledger; line discounts
are recorded as given.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from flask import current_app

from ..errors import InvalidAmount, SaleNotFound, ValidationError
from ..extensions import db
from ..models import Sale, SaleItem
from ..time_utils import to_utc_z, utcnow
from ..validation import coerce_int
from . import bnpl_service, customer_service, inventory_service, loyalty_service
from .document_service import next_document_number
from .idempotency_service import run_idempotent
from .ledger_service import append_cash_entry


SALE_PAYMENT_METHODS = ("cash", "card", "bank_transfer", "bnpl")
LOYALTY_PAYMENT_METHODS = ("cash", "card")


def _parse_sale_lines(items) -> list[dict]:
    if not isinstance(items, (list, tuple)) or not items:
        raise ValidationError("items must be a non-empty list", field="items")

    lines = []
    for index, raw in enumerate(items):
        if not isinstance(raw, dict):
            raise ValidationError(f"items[{index}] must be an object", field="items")
        product_id = coerce_int(f"items[{index}].product_id", raw.get("product_id"))
        quantity = coerce_int(f"items[{index}].quantity", raw.get("quantity"))
        if quantity <= 0:
            raise ValidationError("quantity must be positive", field=f"items[{index}].quantity")

        unit_price = raw.get("unit_price_cents")
        unit_price = coerce_int(f"items[{index}].unit_price_cents", unit_price) if unit_price is not None else None
        discount = coerce_int(f"items[{index}].discount_cents", raw.get("discount_cents") or 0)
        if (unit_price is not None and unit_price < 0) or discount < 0:
            raise InvalidAmount("Prices and discounts cannot be negative", field=f"items[{index}]")

        lines.append({
            "product_id": product_id,
            "quantity": quantity,
            "unit_price_cents": unit_price,
            "discount_cents": discount,
        })
    return lines


def create_sale(
    *,
    items,
    payment_method: str,
    customer_id: Optional[int] = None,
    notes: Optional[str] = None,
    sale_date: Optional[datetime] = None,
    due_date: Optional[datetime] = None,
    idempotency_key: Optional[str] = None,
) -> dict:
    """
    Record a completed sale.

    Args:
        items: [{product_id, quantity, unit_price_cents?, discount_cents?}]
               unit_price_cents defaults to the product's price
        payment_method: cash, card, bank_transfer, bnpl
        customer_id: Required for bnpl
        notes: Free text
        sale_date: Business time of the sale (defaults to now)
        due_date: BNPL due date (defaults to now + BNPL_TERM_DAYS)
        idempotency_key: Optional client key for safe retries

    Returns:
        Sale dict with `items`, `bnpl_transaction` (bnpl only),
        `loyalty_points_awarded` and `replayed`

    Raises:
        ValidationError, ProductNotFound, CustomerNotFound, InsufficientStock,
        InsufficientCredit
    """
    if payment_method not in SALE_PAYMENT_METHODS:
        raise ValidationError(
            f"payment_method must be one of {list(SALE_PAYMENT_METHODS)}",
            field="payment_method",
            value=payment_method,
        )
    if payment_method == "bnpl" and customer_id is None:
        raise ValidationError("BNPL sales require a customer", field="customer_id")
    lines = _parse_sale_lines(items)

    payload = {
        "items": lines,
        "payment_method": payment_method,
        "customer_id": customer_id,
        "notes": notes,
        "sale_date": to_utc_z(sale_date),
        "due_date": to_utc_z(due_date),
    }

    def _apply() -> dict:
        customer = customer_service.lock_customer(customer_id) if customer_id is not None else None

        # Lock products in id order so concurrent sales cannot deadlock
        products = {
            product_id: inventory_service.lock_product(product_id)
            for product_id in sorted({line["product_id"] for line in lines})
        }

        priced = []
        subtotal = 0
        discount_total = 0
        for line in lines:
            product = products[line["product_id"]]
            unit_price = line["unit_price_cents"] if line["unit_price_cents"] is not None else product.price_cents
            gross = unit_price * line["quantity"]
            if line["discount_cents"] > gross:
                raise InvalidAmount("Line discount exceeds line total", field="discount_cents")
            subtotal += gross
            discount_total += line["discount_cents"]
            priced.append((line, product, unit_price, gross - line["discount_cents"]))

        total = subtotal - discount_total

        sale = Sale(
            receipt_number=next_document_number("SALE"),
            customer_id=customer.id if customer else None,
            subtotal_cents=subtotal,
            discount_cents=discount_total,
            total_amount_cents=total,
            payment_method=payment_method,
            payment_status="paid",
            return_status="none",
            notes=notes,
            sale_date=sale_date or utcnow(),
        )
        db.session.add(sale)
        db.session.flush()

        for line, product, unit_price, line_total in priced:
            db.session.add(
                SaleItem(
                    sale_id=sale.id,
                    product_id=product.id,
                    quantity=line["quantity"],
                    unit_price_cents=unit_price,
                    discount_cents=line["discount_cents"],
                    line_total_cents=line_total,
                    returned_quantity=0,
                )
            )
            inventory_service.remove_stock_for_sale(product, line["quantity"], sale_id=sale.id)

        tracker = None
        if payment_method == "bnpl":
            tracker = bnpl_service.open_bnpl_for_sale(sale, customer, total, due_date=due_date)
        elif payment_method == "cash" and total > 0:
            append_cash_entry(
                transaction_type="sale",
                amount_cents=total,
                reference_type="sale",
                reference_id=sale.id,
                description=f"Cash sale {sale.receipt_number}",
                transaction_date=sale.sale_date,
            )

        points = 0
        if customer is not None and payment_method in LOYALTY_PAYMENT_METHODS:
            txn = loyalty_service.award_points(
                customer,
                amount_cents=total,
                rule=loyalty_service.get_active_rule(),
                sale_id=sale.id,
                reason="Purchase",
            )
            points = txn.points_earned if txn else 0

        if customer is not None:
            customer_service.verify_customer_balances(customer)
        db.session.flush()

        current_app.logger.info(
            "Recorded sale %s: %d cents via %s", sale.receipt_number, total, payment_method
        )
        data = _sale_dict(sale)
        data["bnpl_transaction"] = tracker.to_dict() if tracker else None
        data["loyalty_points_awarded"] = points
        return data

    return run_idempotent(
        operation="sales.create",
        key=idempotency_key,
        payload=payload,
        apply=_apply,
    )


def _sale_dict(sale: Sale) -> dict:
    data = sale.to_dict()
    data["items"] = [item.to_dict() for item in sale.items]
    return data


def get_sale(sale_id: int) -> dict:
    sale = db.session.get(Sale, sale_id)
    if not sale:
        raise SaleNotFound(f"Sale {sale_id} not found", sale_id=sale_id)
    data = _sale_dict(sale)
    tracker = sale.bnpl_transaction
    data["bnpl_transaction"] = tracker.to_dict() if tracker else None
    data["returns"] = [r.to_dict() for r in sale.returns]
    return data
