# Overview: Pytest coverage for customer credit accounts.

import pytest

from posledger.errors import ConsistencyError, CustomerNotFound, InvalidAmount, ValidationError
from posledger.extensions import db
from posledger.services import customer_service


class TestCustomerAccount:
    def test_new_customer_has_full_available_credit(self, db_session, customer):
        assert customer.credit_limit_cents == 500000
        assert customer.available_credit_cents == 500000
        assert customer.total_outstanding_dues_cents == 0
        assert customer.loyalty_points == 0

    def test_name_required(self, db_session):
        with pytest.raises(ValidationError):
            customer_service.create_customer(name="  ")

    def test_unknown_customer(self, db_session):
        with pytest.raises(CustomerNotFound):
            customer_service.get_customer(99999)

    def test_set_credit_limit_recomputes_available(self, db_session, customer):
        updated = customer_service.set_credit_limit(customer.id, 200000)

        assert updated.credit_limit_cents == 200000
        assert updated.available_credit_cents == 200000

    def test_negative_credit_limit_rejected(self, db_session, customer):
        with pytest.raises(InvalidAmount):
            customer_service.set_credit_limit(customer.id, -1)


class TestBalanceHelpers:
    def test_due_changes_move_available_credit(self, db_session, customer):
        customer_service.add_outstanding_due(customer, 120000)
        assert customer.total_outstanding_dues_cents == 120000
        assert customer.available_credit_cents == 380000

        customer_service.reduce_outstanding_due(customer, 20000)
        assert customer.total_outstanding_dues_cents == 100000
        assert customer.available_credit_cents == 400000

    def test_available_credit_never_negative(self, db_session, customer):
        customer.credit_limit_cents = 1000
        customer_service.add_outstanding_due(customer, 5000)
        assert customer.available_credit_cents == 0

    def test_reduction_beyond_dues_is_a_consistency_error(self, db_session, customer):
        customer_service.add_outstanding_due(customer, 1000)
        with pytest.raises(ConsistencyError):
            customer_service.reduce_outstanding_due(customer, 1001)

    def test_store_credit_accumulates(self, db_session, customer):
        customer_service.credit_store_balance(customer, 700)
        customer_service.credit_store_balance(customer, 300)
        assert customer.current_balance_cents == 1000

    def test_verify_detects_dues_without_bnpl(self, db_session, customer):
        customer_service.add_outstanding_due(customer, 1000)

        problems = customer_service.customer_balance_problems(customer)
        assert [p["field"] for p in problems] == ["total_outstanding_dues_cents"]

        with pytest.raises(ConsistencyError):
            customer_service.verify_customer_balances(customer)
        db.session.rollback()
