# Overview: Pytest coverage for retry, numbering, idempotency helpers and racing writers.

import pytest
from sqlalchemy.orm.exc import StaleDataError

from posledger.errors import (
    AlreadyFullyPaid,
    AmountExceedsDue,
    IdempotencyConflict,
    QuantityExceedsReturnable,
    ValidationError,
)
from posledger.extensions import db
from posledger.models import (
    BnplPayment,
    BnplTransaction,
    Customer,
    Product,
    RefundTransaction,
    Return,
    ReturnItem,
    SaleItem,
)
from posledger.services import (
    bnpl_service,
    customer_service,
    document_service,
    idempotency_service,
    inventory_service,
    ledger_service,
    reconciliation_service,
    return_service,
    sales_service,
)
from posledger.services.concurrency import run_with_retry


class TestRunWithRetry:
    def test_retries_stale_data_then_succeeds(self, db_session):
        calls = []

        def flaky():
            calls.append(1)
            if len(calls) < 3:
                raise StaleDataError("row changed")
            return "ok"

        assert run_with_retry(flaky, attempts=3, backoff_base=0) == "ok"
        assert len(calls) == 3

    def test_gives_up_after_attempts(self, db_session):
        calls = []

        def always_stale():
            calls.append(1)
            raise StaleDataError("row changed")

        with pytest.raises(StaleDataError):
            run_with_retry(always_stale, attempts=2, backoff_base=0)
        assert len(calls) == 2

    def test_other_errors_are_not_retried(self, db_session):
        calls = []

        def broken():
            calls.append(1)
            raise ValueError("boom")

        with pytest.raises(ValueError):
            run_with_retry(broken, attempts=3, backoff_base=0)
        assert len(calls) == 1


class TestDocumentNumbers:
    def test_numbers_are_per_type(self, db_session):
        assert document_service.next_document_number("RETURN") == "RET-000001"
        assert document_service.next_document_number("RETURN") == "RET-000002"
        assert document_service.next_document_number("BNPL_PAYMENT") == "BNPL-000001"
        assert document_service.next_document_number("CUSTOM", prefix="CX", pad=3) == "CX-001"


class TestIdempotencyHelpers:
    def test_fingerprint_ignores_key_order(self):
        a = idempotency_service.request_fingerprint({"a": 1, "b": [1, 2]})
        b = idempotency_service.request_fingerprint({"b": [1, 2], "a": 1})
        assert a == b
        assert a != idempotency_service.request_fingerprint({"a": 2, "b": [1, 2]})

    def test_blank_key_means_no_key(self, db_session):
        calls = []

        def apply():
            calls.append(1)
            return {"n": len(calls)}

        idempotency_service.run_idempotent(operation="test.op", key="  ", payload={}, apply=apply)
        idempotency_service.run_idempotent(operation="test.op", key="  ", payload={}, apply=apply)
        assert len(calls) == 2

    def test_key_reused_for_other_operation(self, db_session):
        idempotency_service.run_idempotent(operation="test.one", key="k1", payload={}, apply=lambda: {})
        with pytest.raises(IdempotencyConflict):
            idempotency_service.run_idempotent(operation="test.two", key="k1", payload={}, apply=lambda: {})

    def test_overlong_key_rejected(self, db_session):
        with pytest.raises(ValidationError):
            idempotency_service.run_idempotent(operation="test.op", key="k" * 129, payload={}, apply=lambda: {})


def _race_on_numbering(monkeypatch, app, module, competing):
    """
    Run `competing` in a second app context the first time `module`
    allocates a document number.

    By then the first caller has read every row it needs but written
    nothing, so the competing call commits in between and the first
    caller's flush hits a version conflict.
    """
    real = module.next_document_number
    raced = []

    def _allocate(document_type, **kwargs):
        if not raced:
            raced.append(document_type)
            with app.app_context():
                competing()
        return real(document_type, **kwargs)

    monkeypatch.setattr(module, "next_document_number", _allocate)
    return raced


class TestRacingWriters:
    def test_racing_returns_of_the_last_unit(self, file_app, monkeypatch, caplog):
        widget = inventory_service.create_product(sku="W-1", name="Widget", price_cents=500, stock_quantity=5)
        gadget = inventory_service.create_product(sku="G-1", name="Gadget", price_cents=250, stock_quantity=5)
        sale = sales_service.create_sale(
            items=[
                {"product_id": widget.id, "quantity": 1},
                {"product_id": gadget.id, "quantity": 1},
            ],
            payment_method="cash",
        )
        widget_line = sale["items"][0]["id"]
        winners = []

        def competing():
            winners.append(
                return_service.process_return(
                    sale["id"], [{"sale_item_id": widget_line, "quantity": 1}], "Damaged", "cash", "bob"
                )
            )

        raced = _race_on_numbering(monkeypatch, file_app, return_service, competing)

        with pytest.raises(QuantityExceedsReturnable):
            return_service.process_return(
                sale["id"], [{"sale_item_id": widget_line, "quantity": 1}], "Damaged", "cash", "alice"
            )

        assert raced == ["RETURN"]
        assert "Retrying ledger operation after StaleDataError" in caplog.text
        assert winners[0]["refund_amount_cents"] == 500

        returned = (
            db.session.query(db.func.sum(ReturnItem.quantity))
            .filter(ReturnItem.sale_item_id == widget_line)
            .scalar()
        )
        assert returned == 1
        assert db.session.get(SaleItem, widget_line).returned_quantity == 1
        assert db.session.query(Return).count() == 1
        assert db.session.query(RefundTransaction).count() == 1
        assert db.session.get(Product, widget.id).stock_quantity == 5
        # 750 taken for the sale, 500 refunded once
        assert ledger_service.get_cash_balance() == 250
        assert reconciliation_service.reconcile()["ok"] is True

    @pytest.mark.parametrize("amount, rejected_with", [
        (1000, AlreadyFullyPaid),
        (600, AmountExceedsDue),
    ])
    def test_racing_payments_on_one_tracker(self, file_app, monkeypatch, caplog, amount, rejected_with):
        customer = customer_service.create_customer(name="Sam Lee", credit_limit_cents=100000)
        widget = inventory_service.create_product(sku="W-1", name="Widget", price_cents=500, stock_quantity=5)
        sale = sales_service.create_sale(
            items=[{"product_id": widget.id, "quantity": 2}],
            payment_method="bnpl",
            customer_id=customer.id,
        )
        bnpl_id = sale["bnpl_transaction"]["id"]
        winners = []

        def competing():
            winners.append(bnpl_service.process_payment(bnpl_id, amount, "cash", "bob"))

        raced = _race_on_numbering(monkeypatch, file_app, bnpl_service, competing)

        with pytest.raises(rejected_with):
            bnpl_service.process_payment(bnpl_id, amount, "cash", "alice")

        assert raced == ["BNPL_PAYMENT"]
        assert "Retrying ledger operation after StaleDataError" in caplog.text
        assert winners[0]["success"] is True

        tracker = db.session.get(BnplTransaction, bnpl_id)
        assert tracker.amount_paid_cents == amount
        assert tracker.amount_due_cents == 1000 - amount
        assert tracker.amount_paid_cents + tracker.amount_due_cents == tracker.original_amount_cents
        assert db.session.query(BnplPayment).count() == 1
        assert db.session.get(Customer, customer.id).total_outstanding_dues_cents == tracker.amount_due_cents
        assert ledger_service.get_cash_balance() == amount
        assert reconciliation_service.reconcile()["ok"] is True
