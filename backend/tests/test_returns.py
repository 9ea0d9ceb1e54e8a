# Overview: Pytest coverage for the return/refund processor.

"""
Return Processing Tests

Covers:
- Eligibility (payment status, return window, fully returned sales)
- Full and partial returns: stock back in, returned quantities, sale status
- Rejections leave no trace (no return row, no stock, no cash)
- Refund settlement per method, BNPL credit before payout
- Loyalty deduction and idempotent replay
"""

import pytest

from posledger.errors import (
    NoReturnableItems,
    QuantityExceedsReturnable,
    ReturnWindowExpired,
    SaleNotFound,
    SaleNotPaid,
    StoreCreditRequiresCustomer,
    ValidationError,
)
from posledger.extensions import db
from posledger.models import (
    BnplTransaction,
    CashLedgerEntry,
    Customer,
    LoyaltyTransaction,
    Product,
    RefundTransaction,
    Return,
    Sale,
    SaleItem,
    StockMovement,
)
from posledger.services import bnpl_service, ledger_service, return_service, sales_service, settings_service


def _items(sale):
    """sale_item ids in line order."""
    return [item["id"] for item in sale["items"]]


def _return(sale, lines, refund_method="cash", **kwargs):
    return return_service.process_return(
        sale["id"],
        [{"sale_item_id": sid, "quantity": qty} for sid, qty in lines],
        "Customer changed mind",
        refund_method,
        "alice",
        **kwargs,
    )


class TestEligibility:
    def test_recent_paid_sale_is_eligible(self, db_session, product, make_sale):
        sale = make_sale([(product, 1)], days_ago=29)

        result = return_service.validate_return_eligibility(sale["id"])
        assert result["is_eligible"] is True
        assert result["reason"] == "Sale is eligible for return within 30-day window"
        assert result["days_since_sale"] == 29
        assert result["return_window_days"] == 30

    def test_window_expired_after_31_days(self, db_session, product, make_sale):
        sale = make_sale([(product, 1)], days_ago=31)

        result = return_service.validate_return_eligibility(sale["id"])
        assert result["is_eligible"] is False
        assert result["reason"] == "Return window expired"

        with pytest.raises(ReturnWindowExpired):
            _return(sale, [(_items(sale)[0], 1)])
        assert db_session.query(Return).count() == 0

    def test_window_follows_setting(self, db_session, product, make_sale):
        settings_service.set_return_window_days(7)
        sale = make_sale([(product, 1)], days_ago=10)

        result = return_service.validate_return_eligibility(sale["id"])
        assert result["is_eligible"] is False
        assert result["return_window_days"] == 7

    def test_unknown_sale(self, db_session):
        result = return_service.validate_return_eligibility(424242)
        assert result == {
            "is_eligible": False,
            "reason": "Sale not found",
            "days_since_sale": 0,
            "return_window_days": 30,
        }
        with pytest.raises(SaleNotFound):
            return_service.process_return(424242, [{"sale_item_id": 1, "quantity": 1}], "x", "cash", "alice")

    def test_pending_bnpl_sale_cannot_be_returned(self, db_session, customer, product, make_sale):
        sale = make_sale([(product, 1)], payment_method="bnpl", customer=customer)

        result = return_service.validate_return_eligibility(sale["id"])
        assert result["reason"] == "Sale must be paid or partially paid to process returns"

        with pytest.raises(SaleNotPaid):
            _return(sale, [(_items(sale)[0], 1)])

    def test_returnable_items_excludes_returned_lines(self, db_session, product, product_b, make_sale):
        sale = make_sale([(product, 2), (product_b, 1)])
        first, second = _items(sale)
        _return(sale, [(second, 1)])

        items = return_service.get_returnable_items(sale["id"])
        assert [i["sale_item_id"] for i in items] == [first]
        assert items[0]["quantity_returnable"] == 2
        assert items[0]["product_name"] == "Widget"


class TestProcessReturn:
    def test_full_return_restores_stock_and_marks_sale(self, db_session, product, product_b, make_sale):
        sale = make_sale([(product, 3), (product_b, 2)])
        first, second = _items(sale)

        result = _return(sale, [(first, 3), (second, 2)])

        assert result["refund_amount_cents"] == 3 * 500 + 2 * 250
        assert result["payout_cents"] == 2000
        assert result["bnpl_credit_cents"] == 0
        assert result["sale_return_status"] == "full_return"
        assert result["return_number"] == "RET-000001"

        assert db.session.get(Product, product.id).stock_quantity == 50
        assert db.session.get(Product, product_b.id).stock_quantity == 20
        assert db.session.get(Sale, sale["id"]).return_status == "full_return"
        assert [i.returned_quantity for i in db_session.query(SaleItem).order_by(SaleItem.id)] == [3, 2]

        movements = db_session.query(StockMovement).filter_by(reference_type="return").all()
        assert sorted(m.quantity for m in movements) == [2, 3]
        assert {m.movement_type for m in movements} == {"in"}

        refunds = db_session.query(RefundTransaction).all()
        assert [r.amount_cents for r in refunds] == [2000]

        refund_entry = db_session.query(CashLedgerEntry).filter_by(reference_type="return").one()
        assert refund_entry.amount_cents == -2000
        assert ledger_service.get_cash_balance() == 0

    def test_over_quantity_rejected_without_changes(self, db_session, product, make_sale):
        sale = make_sale([(product, 3)])
        item_id = _items(sale)[0]

        with pytest.raises(QuantityExceedsReturnable) as exc:
            _return(sale, [(item_id, 4)])
        assert exc.value.details["problems"][0]["returnable_quantity"] == 3

        assert db_session.query(Return).count() == 0
        assert db_session.query(RefundTransaction).count() == 0
        assert db.session.get(SaleItem, item_id).returned_quantity == 0
        assert db.session.get(Product, product.id).stock_quantity == 47
        assert db_session.query(CashLedgerEntry).count() == 1
        assert db.session.get(Sale, sale["id"]).return_status == "none"

    def test_partial_returns_accumulate(self, db_session, product, make_sale):
        sale = make_sale([(product, 3)])
        item_id = _items(sale)[0]

        first = _return(sale, [(item_id, 1)])
        assert first["sale_return_status"] == "partial_return"

        second = _return(sale, [(item_id, 2)])
        assert second["sale_return_status"] == "full_return"
        assert second["return_number"] == "RET-000002"

        eligibility = return_service.validate_return_eligibility(sale["id"])
        assert eligibility["reason"] == "Sale has already been fully returned"

        with pytest.raises(NoReturnableItems):
            _return(sale, [(item_id, 1)])

    def test_duplicate_lines_are_merged(self, db_session, product, make_sale):
        sale = make_sale([(product, 3)])
        item_id = _items(sale)[0]

        with pytest.raises(QuantityExceedsReturnable):
            _return(sale, [(item_id, 2), (item_id, 2)])

        result = _return(sale, [(item_id, 1), (item_id, 2)])
        assert result["refund_amount_cents"] == 1500

    def test_item_from_another_sale_rejected(self, db_session, product, make_sale):
        sale = make_sale([(product, 1)])
        other = make_sale([(product, 1)])

        with pytest.raises(ValidationError):
            _return(sale, [(_items(other)[0], 1)])

    def test_invalid_input_rejected(self, db_session, product, make_sale):
        sale = make_sale([(product, 1)])
        item_id = _items(sale)[0]

        with pytest.raises(ValidationError):
            _return(sale, [(item_id, 0)])
        with pytest.raises(ValidationError):
            _return(sale, [(item_id, 1)], refund_method="cheque")
        with pytest.raises(ValidationError):
            return_service.process_return(sale["id"], [], "reason", "cash", "alice")
        with pytest.raises(ValidationError):
            return_service.process_return(
                sale["id"], [{"sale_item_id": item_id, "quantity": 1, "condition": "mint"}],
                "reason", "cash", "alice",
            )

    def test_discounted_line_refunds_full_unit_price(self, db_session, product):
        sale = sales_service.create_sale(
            items=[{"product_id": product.id, "quantity": 2, "discount_cents": 200}],
            payment_method="cash",
        )
        result = _return(sale, [(_items(sale)[0], 2)])

        assert sale["total_amount_cents"] == 800
        assert result["refund_amount_cents"] == 1000

    def test_process_return_and_refund_returns_id(self, db_session, product, make_sale):
        sale = make_sale([(product, 1)])
        return_id = return_service.process_return_and_refund(
            sale["id"], [{"sale_item_id": _items(sale)[0], "quantity": 1}], "Defect", "cash", "alice",
        )
        assert db.session.get(Return, return_id).sale_id == sale["id"]

    def test_replay_does_not_return_twice(self, db_session, product, make_sale):
        sale = make_sale([(product, 2)])
        item_id = _items(sale)[0]

        first = _return(sale, [(item_id, 1)], idempotency_key="ret-1")
        again = _return(sale, [(item_id, 1)], idempotency_key="ret-1")

        assert again["replayed"] is True
        assert again["return_id"] == first["return_id"]
        assert db_session.query(Return).count() == 1
        assert db.session.get(SaleItem, item_id).returned_quantity == 1
        assert db.session.get(Product, product.id).stock_quantity == 49


class TestRefundSettlement:
    def test_bank_transfer_posts_to_cash_ledger(self, db_session, product, make_sale):
        sale = make_sale([(product, 1)], payment_method="card")
        result = _return(sale, [(_items(sale)[0], 1)], refund_method="bank_transfer")

        assert "cash_ledger_entry_id" in result["settlement"]
        assert ledger_service.get_cash_balance() == -500

    def test_store_credit_goes_to_customer(self, db_session, customer, product, loyalty_rule, make_sale):
        sale = make_sale([(product, 2)], customer=customer)
        assert sale["loyalty_points_awarded"] == 10

        result = _return(sale, [(_items(sale)[0], 1)], refund_method="store_credit")

        customer = db.session.get(Customer, customer.id)
        assert result["settlement"] == {"store_credit_cents": 500}
        assert result["loyalty_points_deducted"] == 5
        assert customer.current_balance_cents == 500
        assert customer.loyalty_points == 5
        assert db_session.query(CashLedgerEntry).filter_by(reference_type="return").count() == 0

    def test_store_credit_requires_customer(self, db_session, product, make_sale):
        sale = make_sale([(product, 2)])

        for method in ("store_credit", "exchange"):
            with pytest.raises(StoreCreditRequiresCustomer):
                _return(sale, [(_items(sale)[0], 1)], refund_method=method)

        assert db_session.query(Return).count() == 0
        assert db.session.get(Product, product.id).stock_quantity == 48

    def test_bnpl_balance_credited_before_payout(self, db_session, customer, product, make_sale):
        sale = make_sale([(product, 2)], payment_method="bnpl", customer=customer)
        bnpl_id = sale["bnpl_transaction"]["id"]
        bnpl_service.process_payment(bnpl_id, 400, "cash", "alice")
        first, = _items(sale)

        result = _return(sale, [(first, 1)])

        tracker = db.session.get(BnplTransaction, bnpl_id)
        assert result["bnpl_credit_cents"] == 500
        assert result["payout_cents"] == 0
        assert result["settlement"] == {}
        assert tracker.amount_due_cents == 100
        assert tracker.original_amount_cents == 500
        assert tracker.returned_amount_cents == 500
        assert tracker.amount_paid_cents + tracker.amount_due_cents == tracker.original_amount_cents
        assert db.session.get(Customer, customer.id).total_outstanding_dues_cents == 100
        assert db_session.query(CashLedgerEntry).filter_by(reference_type="return").count() == 0
        assert db_session.query(RefundTransaction).one().amount_cents == 500

    def test_bnpl_credit_settles_and_pays_out_remainder(
        self, db_session, customer, product, loyalty_rule, make_sale
    ):
        sale = make_sale([(product, 2)], payment_method="bnpl", customer=customer)
        bnpl_id = sale["bnpl_transaction"]["id"]
        bnpl_service.process_payment(bnpl_id, 400, "cash", "alice")
        item_id = _items(sale)[0]

        _return(sale, [(item_id, 1)])
        result = _return(sale, [(item_id, 1)])

        tracker = db.session.get(BnplTransaction, bnpl_id)
        customer = db.session.get(Customer, customer.id)
        assert result["bnpl_credit_cents"] == 100
        assert result["payout_cents"] == 400
        assert tracker.status == "paid"
        assert tracker.amount_due_cents == 0
        assert customer.total_outstanding_dues_cents == 0
        assert customer.available_credit_cents == customer.credit_limit_cents
        assert db.session.get(Sale, sale["id"]).payment_status == "paid"
        # 400 taken in as a BNPL payment, 400 paid back out
        assert ledger_service.get_cash_balance() == 0
        # everything paid was refunded, so settling earns nothing
        assert tracker.loyalty_awarded_at is not None
        assert customer.loyalty_points == 0
        assert db_session.query(LoyaltyTransaction).count() == 0

    def test_full_return_settling_bnpl_earns_no_points(
        self, db_session, customer, product, loyalty_rule, make_sale
    ):
        sale = make_sale([(product, 2)], payment_method="bnpl", customer=customer)
        bnpl_id = sale["bnpl_transaction"]["id"]
        bnpl_service.process_payment(bnpl_id, 400, "cash", "alice")

        result = _return(sale, [(_items(sale)[0], 2)])

        tracker = db.session.get(BnplTransaction, bnpl_id)
        assert result["refund_amount_cents"] == 1000
        assert result["bnpl_credit_cents"] == 600
        assert result["payout_cents"] == 400
        assert result["sale_return_status"] == "full_return"
        assert tracker.status == "paid"
        assert tracker.amount_paid_cents == 400
        assert db.session.get(Customer, customer.id).loyalty_points == 0

    def test_partial_return_settling_bnpl_earns_on_kept_goods(
        self, db_session, customer, product, loyalty_rule, make_sale
    ):
        sale = make_sale([(product, 2)], payment_method="bnpl", customer=customer)
        bnpl_id = sale["bnpl_transaction"]["id"]
        bnpl_service.process_payment(bnpl_id, 700, "cash", "alice")
        item_id = _items(sale)[0]

        first = _return(sale, [(item_id, 1)])

        tracker = db.session.get(BnplTransaction, bnpl_id)
        assert first["bnpl_credit_cents"] == 300
        assert first["payout_cents"] == 200
        assert tracker.status == "paid"
        # one widget (500) is kept
        assert db.session.get(Customer, customer.id).loyalty_points == 5

        second = _return(sale, [(item_id, 1)])

        assert second["bnpl_credit_cents"] == 0
        assert second["payout_cents"] == 500
        assert second["loyalty_points_deducted"] == 5
        assert db.session.get(Customer, customer.id).loyalty_points == 0
        assert ledger_service.get_cash_balance() == 0


class TestReads:
    def test_return_summary(self, db_session, product, product_b, make_sale):
        sale = make_sale([(product, 2), (product_b, 1)])
        first, second = _items(sale)
        result = _return(sale, [(first, 2), (second, 1)], notes="Box damaged")

        summary = return_service.get_return_summary(result["return_id"])

        assert summary["sale_receipt_number"] == sale["receipt_number"]
        assert summary["total_items_returned"] == 3
        assert [i["product_name"] for i in summary["items"]] == ["Widget", "Gadget"]
        assert len(summary["refund_transactions"]) == 1
        assert summary["notes"] == "Box damaged"

    def test_validate_items_dry_run(self, db_session, product, make_sale):
        sale = make_sale([(product, 2)])
        item_id = _items(sale)[0]

        bad = return_service.validate_return_items(sale["id"], [{"sale_item_id": item_id, "quantity": 3}])
        assert bad["is_valid"] is False
        assert bad["details"][0]["returnable_quantity"] == 2

        good = return_service.validate_return_items(sale["id"], [{"sale_item_id": item_id, "quantity": 2}])
        assert good["is_valid"] is True
        assert db_session.query(Return).count() == 0

    def test_sale_returns_newest_first(self, db_session, product, make_sale):
        sale = make_sale([(product, 2)])
        item_id = _items(sale)[0]
        first = _return(sale, [(item_id, 1)])
        second = _return(sale, [(item_id, 1)])

        returns = return_service.get_sale_returns(sale["id"])
        assert [r.id for r in returns] == [second["return_id"], first["return_id"]]

    def test_policies(self, db_session):
        policies = return_service.get_return_policies()
        assert policies["refund_methods"] == ["cash", "bank_transfer", "store_credit", "exchange"]
        assert policies["discounts_prorated"] is False
