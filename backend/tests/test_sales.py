# Overview: Pytest coverage for the sale recorder.

import pytest

from posledger.errors import InsufficientStock, InvalidAmount, ProductNotFound, ValidationError
from posledger.extensions import db
from posledger.models import CashLedgerEntry, Customer, Product, Sale, StockMovement
from posledger.services import ledger_service, sales_service


class TestCreateSale:
    def test_cash_sale_records_items_stock_and_cash(self, db_session, product, product_b, make_sale):
        sale = make_sale([(product, 3), (product_b, 2)])

        assert sale["receipt_number"] == "RCP-000001"
        assert sale["total_amount_cents"] == 2000
        assert sale["payment_status"] == "paid"
        assert sale["return_status"] == "none"
        assert [(i["quantity"], i["line_total_cents"]) for i in sale["items"]] == [(3, 1500), (2, 500)]

        assert db.session.get(Product, product.id).stock_quantity == 47
        assert db.session.get(Product, product_b.id).stock_quantity == 18
        outs = db_session.query(StockMovement).filter_by(reference_type="sale", reference_id=sale["id"]).all()
        assert sorted(m.quantity for m in outs) == [2, 3]

        entry = db_session.query(CashLedgerEntry).one()
        assert entry.reference_type == "sale"
        assert entry.reference_id == str(sale["id"])
        assert ledger_service.get_cash_balance() == 2000

    def test_receipt_numbers_are_sequential(self, db_session, product, make_sale):
        numbers = [make_sale([(product, 1)])["receipt_number"] for _ in range(3)]
        assert numbers == ["RCP-000001", "RCP-000002", "RCP-000003"]

    def test_card_sale_writes_no_cash(self, db_session, product, make_sale):
        make_sale([(product, 1)], payment_method="card")
        assert db_session.query(CashLedgerEntry).count() == 0

    def test_unit_price_and_discount_override(self, db_session, product):
        sale = sales_service.create_sale(
            items=[{"product_id": product.id, "quantity": 2, "unit_price_cents": 450, "discount_cents": 100}],
            payment_method="cash",
        )
        assert sale["subtotal_cents"] == 900
        assert sale["discount_cents"] == 100
        assert sale["total_amount_cents"] == 800

    def test_discount_larger_than_line_rejected(self, db_session, product):
        with pytest.raises(InvalidAmount):
            sales_service.create_sale(
                items=[{"product_id": product.id, "quantity": 1, "discount_cents": 501}],
                payment_method="cash",
            )
        assert db_session.query(Sale).count() == 0

    def test_insufficient_stock_writes_nothing(self, db_session, product, product_b, make_sale):
        with pytest.raises(InsufficientStock):
            make_sale([(product, 1), (product_b, 21)])

        assert db_session.query(Sale).count() == 0
        assert db.session.get(Product, product.id).stock_quantity == 50
        assert db_session.query(CashLedgerEntry).count() == 0

    def test_unknown_product(self, db_session):
        with pytest.raises(ProductNotFound):
            sales_service.create_sale(items=[{"product_id": 999, "quantity": 1}], payment_method="cash")

    def test_bad_input(self, db_session, product):
        with pytest.raises(ValidationError):
            sales_service.create_sale(items=[], payment_method="cash")
        with pytest.raises(ValidationError):
            sales_service.create_sale(items=[{"product_id": product.id, "quantity": 1}], payment_method="barter")
        with pytest.raises(ValidationError):
            sales_service.create_sale(items=[{"product_id": product.id, "quantity": 1.5}], payment_method="cash")


class TestLoyaltyOnSale:
    def test_cash_and_card_sales_earn_points(self, db_session, customer, product, loyalty_rule, make_sale):
        cash = make_sale([(product, 2)], customer=customer)
        card = make_sale([(product, 1)], payment_method="card", customer=customer)

        assert cash["loyalty_points_awarded"] == 10
        assert card["loyalty_points_awarded"] == 5
        assert db.session.get(Customer, customer.id).loyalty_points == 15

    def test_bank_transfer_sale_earns_nothing(self, db_session, customer, product, loyalty_rule, make_sale):
        sale = make_sale([(product, 2)], payment_method="bank_transfer", customer=customer)
        assert sale["loyalty_points_awarded"] == 0


class TestIdempotentSale:
    def test_replay_returns_same_sale(self, db_session, product, make_sale):
        first = make_sale([(product, 1)], idempotency_key="sale-1")
        again = make_sale([(product, 1)], idempotency_key="sale-1")

        assert again["replayed"] is True
        assert again["id"] == first["id"]
        assert db_session.query(Sale).count() == 1
        assert db.session.get(Product, product.id).stock_quantity == 49

    def test_get_sale_includes_bnpl_and_returns(self, db_session, customer, product, make_sale):
        sale = make_sale([(product, 1)], payment_method="bnpl", customer=customer)

        data = sales_service.get_sale(sale["id"])
        assert data["bnpl_transaction"]["amount_due_cents"] == 500
        assert data["returns"] == []
