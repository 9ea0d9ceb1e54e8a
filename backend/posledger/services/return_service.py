# Overview: Return/refund processor; reverses stock and settles the refund in one transaction.

"""
Return Processing Service

WHY: A return touches almost every ledger in the store: stock comes back,
money goes out (or becomes store credit), an open BNPL balance shrinks and
loyalty points earned on the sale are given back. All of it must happen
together or not at all.

DESIGN PRINCIPLES:
- Validation and policy checks run completely before the first write
- Sale and SaleItem rows are locked; returned_quantity never exceeds quantity
- Refunds are full unit price x quantity (line discounts are not prorated)
- An open BNPL balance is credited first; only the remainder is paid out
- Every return writes exactly one RefundTransaction for the full refund
- Refund methods are a closed set with one settlement handler each

LIFECYCLE:
Returns are created already COMPLETED by process_return. The pending /
approved / rejected statuses exist for returns recorded by other channels.
"""

from __future__ import annotations

from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Optional

from flask import current_app

from ..errors import (
    NoReturnableItems,
    QuantityExceedsReturnable,
    ReturnNotFound,
    ReturnWindowExpired,
    SaleNotFound,
    SaleNotPaid,
    StoreCreditRequiresCustomer,
    ValidationError,
)
from ..extensions import db
from ..models import (
    BnplTransaction,
    Customer,
    RefundTransaction,
    Return,
    ReturnItem,
    Sale,
    SaleItem,
)
from ..time_utils import days_between, utcnow
from ..validation import coerce_int
from . import bnpl_service, customer_service, inventory_service, loyalty_service
from .concurrency import lock_for_update
from .document_service import next_document_number
from .idempotency_service import run_idempotent
from .ledger_service import append_cash_entry
from .settings_service import get_return_window_days


# =============================================================================
# RETURN STATUS / POLICY CONSTANTS
# =============================================================================

RETURN_STATUS_PENDING = "pending"
RETURN_STATUS_APPROVED = "approved"
RETURN_STATUS_REJECTED = "rejected"
RETURN_STATUS_COMPLETED = "completed"

RETURNABLE_PAYMENT_STATUSES = ("paid", "partially_paid")

ITEM_CONDITIONS = ("good", "damaged", "defective")

SALE_RETURN_NONE = "none"
SALE_RETURN_PARTIAL = "partial_return"
SALE_RETURN_FULL = "full_return"


class RefundMethod(str, Enum):
    CASH = "cash"
    BANK_TRANSFER = "bank_transfer"
    STORE_CREDIT = "store_credit"
    EXCHANGE = "exchange"

    @classmethod
    def parse(cls, value) -> "RefundMethod":
        if isinstance(value, cls):
            return value
        try:
            return cls(value)
        except ValueError:
            raise ValidationError(
                f"refund_method must be one of {[m.value for m in cls]}",
                field="refund_method",
                value=value,
            )

    @property
    def requires_customer(self) -> bool:
        return self in (RefundMethod.STORE_CREDIT, RefundMethod.EXCHANGE)


@dataclass(frozen=True)
class ReturnLine:
    sale_item_id: int
    quantity: int
    condition: str = "good"


# =============================================================================
# INPUT PARSING
# =============================================================================

def parse_return_lines(items) -> list[ReturnLine]:
    """
    Validate raw item dicts and merge duplicate lines per sale item.

    Raises:
        ValidationError: Empty list, bad ids, quantity <= 0, unknown condition
    """
    if not isinstance(items, (list, tuple)) or not items:
        raise ValidationError("items must be a non-empty list", field="items")

    merged: "OrderedDict[int, ReturnLine]" = OrderedDict()
    for index, raw in enumerate(items):
        if isinstance(raw, ReturnLine):
            line = raw
        elif isinstance(raw, dict):
            line = ReturnLine(
                sale_item_id=coerce_int(f"items[{index}].sale_item_id", raw.get("sale_item_id")),
                quantity=coerce_int(f"items[{index}].quantity", raw.get("quantity")),
                condition=raw.get("condition") or "good",
            )
        else:
            raise ValidationError(f"items[{index}] must be an object", field="items")

        if line.quantity <= 0:
            raise ValidationError(
                "Return quantity must be positive",
                field=f"items[{index}].quantity",
                value=line.quantity,
            )
        if line.condition not in ITEM_CONDITIONS:
            raise ValidationError(
                f"condition must be one of {list(ITEM_CONDITIONS)}",
                field=f"items[{index}].condition",
                value=line.condition,
            )

        previous = merged.get(line.sale_item_id)
        if previous is not None:
            # Same sale item twice: quantities add up, first condition wins
            line = ReturnLine(previous.sale_item_id, previous.quantity + line.quantity, previous.condition)
        merged[line.sale_item_id] = line

    return list(merged.values())


# =============================================================================
# ELIGIBILITY
# =============================================================================

def _window_expired(sale: Sale, window_days: int, now: datetime) -> bool:
    return now - sale.sale_date > timedelta(days=window_days)


def validate_return_eligibility(sale_id: int, as_of: Optional[datetime] = None) -> dict:
    """
    Check whether a sale can be returned against, without raising.

    Check order: sale exists, payment status, return window, returnable items.

    Returns:
        {is_eligible, reason, days_since_sale, return_window_days}
    """
    window_days = get_return_window_days()
    now = as_of or utcnow()

    def _result(is_eligible: bool, reason: str, days_since_sale: int = 0) -> dict:
        return {
            "is_eligible": is_eligible,
            "reason": reason,
            "days_since_sale": days_since_sale,
            "return_window_days": window_days,
        }

    sale = db.session.get(Sale, sale_id)
    if not sale:
        return _result(False, "Sale not found")

    days_since_sale = days_between(sale.sale_date, now)

    if sale.payment_status not in RETURNABLE_PAYMENT_STATUSES:
        return _result(False, "Sale must be paid or partially paid to process returns", days_since_sale)

    if _window_expired(sale, window_days, now):
        return _result(False, "Return window expired", days_since_sale)

    if sale.return_status == SALE_RETURN_FULL:
        return _result(False, "Sale has already been fully returned", days_since_sale)

    if not any(item.returnable_quantity > 0 for item in sale.items):
        return _result(False, "No items available for return", days_since_sale)

    return _result(True, f"Sale is eligible for return within {window_days}-day window", days_since_sale)


def _require_eligible(sale: Sale, now: datetime) -> None:
    if sale.payment_status not in RETURNABLE_PAYMENT_STATUSES:
        raise SaleNotPaid(
            "Sale must be paid or partially paid to process returns",
            sale_id=sale.id,
            payment_status=sale.payment_status,
        )
    window_days = get_return_window_days()
    if _window_expired(sale, window_days, now):
        raise ReturnWindowExpired(
            "Return window expired",
            sale_id=sale.id,
            days_since_sale=days_between(sale.sale_date, now),
            return_window_days=window_days,
        )


def get_returnable_items(sale_id: int) -> list[dict]:
    """
    Per-item returnable quantities for a sale.

    Returns:
        [{sale_item_id, product_id, product_name, quantity_sold,
          quantity_returned, quantity_returnable, unit_price_cents}]
    """
    sale = db.session.get(Sale, sale_id)
    if not sale:
        raise SaleNotFound(f"Sale {sale_id} not found", sale_id=sale_id)

    return [
        {
            "sale_item_id": item.id,
            "product_id": item.product_id,
            "product_name": item.product.name if item.product else None,
            "quantity_sold": item.quantity,
            "quantity_returned": item.returned_quantity,
            "quantity_returnable": item.returnable_quantity,
            "unit_price_cents": item.unit_price_cents,
        }
        for item in sale.items
        if item.returnable_quantity > 0
    ]


def _check_lines(sale: Sale, lines: list[ReturnLine], sale_items: dict[int, SaleItem]) -> list[dict]:
    """Per-line problems (empty list when every line can be returned)."""
    problems = []
    for line in lines:
        item = sale_items.get(line.sale_item_id)
        if item is None:
            problems.append({
                "sale_item_id": line.sale_item_id,
                "error": f"Sale item {line.sale_item_id} does not belong to sale {sale.id}",
            })
            continue
        if line.quantity > item.returnable_quantity:
            problems.append({
                "sale_item_id": item.id,
                "requested_quantity": line.quantity,
                "returnable_quantity": item.returnable_quantity,
                "error": (
                    f"Requested quantity ({line.quantity}) exceeds "
                    f"returnable quantity ({item.returnable_quantity})"
                ),
            })
    return problems


def validate_return_items(sale_id: int, items) -> dict:
    """
    Dry-run the item checks of process_return.

    Returns:
        {is_valid, message, details}; details lists problems when invalid,
        or the requested lines with their unit prices when valid.
    """
    lines = parse_return_lines(items)
    sale = db.session.get(Sale, sale_id)
    if not sale:
        raise SaleNotFound(f"Sale {sale_id} not found", sale_id=sale_id)

    sale_items = {item.id: item for item in sale.items}
    problems = _check_lines(sale, lines, sale_items)
    if problems:
        return {"is_valid": False, "message": "Validation errors found", "details": problems}

    return {
        "is_valid": True,
        "message": "All items are valid for return",
        "details": [
            {
                "sale_item_id": line.sale_item_id,
                "requested_quantity": line.quantity,
                "returnable_quantity": sale_items[line.sale_item_id].returnable_quantity,
                "unit_price_cents": sale_items[line.sale_item_id].unit_price_cents,
            }
            for line in lines
        ],
    }


# =============================================================================
# REFUND SETTLEMENT HANDLERS (one per refund method)
# =============================================================================

def _settle_to_cash_ledger(return_doc: Return, customer: Optional[Customer], payout_cents: int) -> dict:
    entry = append_cash_entry(
        transaction_type="refund",
        amount_cents=-payout_cents,
        reference_type="return",
        reference_id=return_doc.id,
        description=f"Refund for return {return_doc.return_number} ({return_doc.refund_method})",
    )
    db.session.flush()
    return {"cash_ledger_entry_id": entry.id}


def _settle_to_store_credit(return_doc: Return, customer: Optional[Customer], payout_cents: int) -> dict:
    if customer is None:
        raise StoreCreditRequiresCustomer(
            "Store credit refunds require a customer on the sale",
            return_id=return_doc.id,
        )
    customer_service.credit_store_balance(customer, payout_cents)
    return {"store_credit_cents": payout_cents}


REFUND_HANDLERS: dict[RefundMethod, Callable[[Return, Optional[Customer], int], dict]] = {
    RefundMethod.CASH: _settle_to_cash_ledger,
    RefundMethod.BANK_TRANSFER: _settle_to_cash_ledger,
    RefundMethod.STORE_CREDIT: _settle_to_store_credit,
    RefundMethod.EXCHANGE: _settle_to_store_credit,
}


def _recompute_sale_return_status(sale: Sale) -> str:
    items = list(sale.items)
    if not any(item.returned_quantity > 0 for item in items):
        sale.return_status = SALE_RETURN_NONE
    elif all(item.is_returned for item in items):
        sale.return_status = SALE_RETURN_FULL
    else:
        sale.return_status = SALE_RETURN_PARTIAL
    return sale.return_status


# =============================================================================
# PROCESSING
# =============================================================================

def process_return(
    sale_id: int,
    items,
    reason: str,
    refund_method,
    processed_by: str,
    notes: Optional[str] = None,
    *,
    idempotency_key: Optional[str] = None,
) -> dict:
    """
    Process a return and its refund as one atomic operation.

    WHY: This is the orchestration point of the ledger. Everything below
    commits together or not at all:
    1. ReturnItems at full unit price; SaleItem.returned_quantity advances
    2. Stock goes back in (movement `in`, reference `return`)
    3. Loyalty points earned by the sale are deducted at the earn-time rate
    4. An open BNPL balance is credited first (min(refund, amount_due))
    5. The remaining payout is settled by refund_method
    6. One RefundTransaction audits the full refund
    7. Sale.return_status is recomputed and customer balances verified

    Args:
        sale_id: Sale being returned against
        items: [{sale_item_id, quantity, condition}]
        reason: Customer's reason for the return
        refund_method: cash, bank_transfer, store_credit, exchange
        processed_by: Operator name/id
        notes: Optional free text
        idempotency_key: Optional client key; a replay returns the stored result

    Returns:
        {return_id, return_number, sale_id, refund_amount_cents, payout_cents,
         bnpl_credit_cents, loyalty_points_deducted, refund_method,
         sale_return_status, settlement, replayed}

    Raises:
        SaleNotFound, SaleNotPaid, ReturnWindowExpired, NoReturnableItems,
        QuantityExceedsReturnable, StoreCreditRequiresCustomer, ValidationError
    """
    method = RefundMethod.parse(refund_method)
    lines = parse_return_lines(items)
    if not reason or not str(reason).strip():
        raise ValidationError("reason is required", field="reason")
    if not processed_by:
        raise ValidationError("processed_by is required", field="processed_by")
    reason = str(reason).strip()

    payload = {
        "sale_id": sale_id,
        "items": [[line.sale_item_id, line.quantity, line.condition] for line in lines],
        "reason": reason,
        "refund_method": method.value,
        "processed_by": processed_by,
        "notes": notes,
    }

    def _apply() -> dict:
        now = utcnow()

        # ---- checks (no writes yet) -------------------------------------
        sale = lock_for_update(db.session.query(Sale).filter_by(id=sale_id)).first()
        if not sale:
            raise SaleNotFound(f"Sale {sale_id} not found", sale_id=sale_id)
        _require_eligible(sale, now)

        sale_items = {
            item.id: item
            for item in lock_for_update(
                db.session.query(SaleItem).filter_by(sale_id=sale.id).order_by(SaleItem.id)
            ).all()
        }
        if not any(item.returnable_quantity > 0 for item in sale_items.values()):
            raise NoReturnableItems("No items available for return", sale_id=sale.id)

        problems = _check_lines(sale, lines, sale_items)
        foreign = [p for p in problems if "returnable_quantity" not in p]
        if foreign:
            raise ValidationError(foreign[0]["error"], field="items", problems=foreign)
        if problems:
            raise QuantityExceedsReturnable(
                problems[0]["error"],
                sale_id=sale.id,
                problems=problems,
            )

        if method.requires_customer and sale.customer_id is None:
            raise StoreCreditRequiresCustomer(
                f"{method.value} refunds require a customer on the sale",
                sale_id=sale.id,
                refund_method=method.value,
            )

        customer = customer_service.lock_customer(sale.customer_id) if sale.customer_id else None
        tracker = lock_for_update(
            db.session.query(BnplTransaction).filter_by(sale_id=sale.id)
        ).first()

        total_refund = sum(sale_items[line.sale_item_id].unit_price_cents * line.quantity for line in lines)

        # ---- writes ------------------------------------------------------
        return_doc = Return(
            return_number=next_document_number("RETURN"),
            sale_id=sale.id,
            customer_id=sale.customer_id,
            return_reason=reason,
            return_status=RETURN_STATUS_COMPLETED,
            refund_amount_cents=total_refund,
            refund_method=method.value,
            processed_by=processed_by,
            notes=notes,
            return_date=now,
        )
        db.session.add(return_doc)
        db.session.flush()

        for line in lines:
            item = sale_items[line.sale_item_id]
            db.session.add(
                ReturnItem(
                    return_id=return_doc.id,
                    sale_item_id=item.id,
                    product_id=item.product_id,
                    quantity=line.quantity,
                    unit_price_cents=item.unit_price_cents,
                    refund_price_cents=item.unit_price_cents * line.quantity,
                    condition=line.condition,
                )
            )
            item.returned_quantity += line.quantity

            product = inventory_service.lock_product(item.product_id)
            inventory_service.restock_from_return(
                product, line.quantity, return_id=return_doc.id, condition=line.condition
            )

        points_deducted = 0
        if customer is not None:
            points_deducted = loyalty_service.deduct_points_for_refund(
                customer,
                sale_id=sale.id,
                refund_amount_cents=total_refund,
                return_id=return_doc.id,
            )

        bnpl_credit = 0
        if tracker is not None and customer is not None:
            bnpl_credit = bnpl_service.credit_from_return(
                tracker, customer, sale, total_refund, return_id=return_doc.id
            )

        payout = total_refund - bnpl_credit
        return_doc.bnpl_credit_cents = bnpl_credit
        return_doc.payout_cents = payout

        settlement = {}
        if payout > 0:
            settlement = REFUND_HANDLERS[method](return_doc, customer, payout)

        db.session.add(
            RefundTransaction(
                return_id=return_doc.id,
                sale_id=sale.id,
                customer_id=sale.customer_id,
                amount_cents=total_refund,
                payment_method=method.value,
                status="completed",
                notes=f"Refund for return {return_doc.return_number}",
                transaction_date=now,
            )
        )

        _recompute_sale_return_status(sale)
        if customer is not None:
            customer_service.verify_customer_balances(customer)
        db.session.flush()

        current_app.logger.info(
            "Return %s on sale %d: refund %d cents (bnpl credit %d, payout %d via %s)",
            return_doc.return_number, sale.id, total_refund, bnpl_credit, payout, method.value,
        )
        return {
            "return_id": return_doc.id,
            "return_number": return_doc.return_number,
            "sale_id": sale.id,
            "refund_amount_cents": total_refund,
            "payout_cents": payout,
            "bnpl_credit_cents": bnpl_credit,
            "loyalty_points_deducted": points_deducted,
            "refund_method": method.value,
            "sale_return_status": sale.return_status,
            "settlement": settlement,
        }

    return run_idempotent(
        operation="returns.process",
        key=idempotency_key,
        payload=payload,
        apply=_apply,
    )


def process_return_and_refund(
    sale_id: int,
    items,
    reason: str,
    refund_method,
    processed_by: str,
    notes: Optional[str] = None,
    *,
    idempotency_key: Optional[str] = None,
) -> int:
    """Entry point used by the register: process_return, returning only the return id."""
    result = process_return(
        sale_id,
        items,
        reason,
        refund_method,
        processed_by,
        notes,
        idempotency_key=idempotency_key,
    )
    return result["return_id"]


# =============================================================================
# READS
# =============================================================================

def get_return(return_id: int) -> Return:
    return_doc = db.session.get(Return, return_id)
    if not return_doc:
        raise ReturnNotFound(f"Return {return_id} not found", return_id=return_id)
    return return_doc


def get_return_summary(return_id: int) -> dict:
    """
    Return with its items and refund transactions (what a receipt prints).
    """
    return_doc = get_return(return_id)
    sale = return_doc.sale

    data = return_doc.to_dict()
    data["sale_receipt_number"] = sale.receipt_number if sale else None
    data["items"] = []
    for item in return_doc.items:
        row = item.to_dict()
        row["product_name"] = item.sale_item.product.name if item.sale_item and item.sale_item.product else None
        data["items"].append(row)
    data["refund_transactions"] = [t.to_dict() for t in return_doc.refund_transactions]
    data["total_items_returned"] = sum(item.quantity for item in return_doc.items)
    return data


def get_sale_returns(sale_id: int) -> list[Return]:
    if not db.session.get(Sale, sale_id):
        raise SaleNotFound(f"Sale {sale_id} not found", sale_id=sale_id)
    return (
        db.session.query(Return)
        .filter_by(sale_id=sale_id)
        .order_by(Return.return_date.desc(), Return.id.desc())
        .all()
    )


def get_return_policies() -> dict:
    return {
        "return_window_days": get_return_window_days(),
        "returnable_payment_statuses": list(RETURNABLE_PAYMENT_STATUSES),
        "refund_methods": [m.value for m in RefundMethod],
        "item_conditions": list(ITEM_CONDITIONS),
        "discounts_prorated": False,
    }
