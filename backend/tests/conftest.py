"""
Pytest fixtures for posledger backend tests.

Provides an in-memory database, the test client and small factories for
customers, products, loyalty rules and sales.
"""

from datetime import timedelta

import pytest

from posledger import create_app
from posledger.extensions import db
from posledger.services import customer_service, inventory_service, loyalty_service, sales_service
from posledger.time_utils import utcnow


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'RETURN_WINDOW_DAYS': 30,
        'LEDGER_RETRY_ATTEMPTS': 3,
    })

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def db_session(app):
    """Create fresh database for each test."""
    with app.app_context():
        # Clear all data but keep schema
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()

        yield db.session

        # Cleanup after test
        db.session.rollback()


@pytest.fixture(scope='function')
def loyalty_rule(db_session):
    """Active earn rule: 1 point per currency unit."""
    return loyalty_service.set_active_rule(points_per_currency_bps=10000, rule_name="Standard")


@pytest.fixture(scope='function')
def customer(db_session):
    """Customer with a 5,000.00 credit limit."""
    return customer_service.create_customer(
        name="Jane Doe",
        phone="555-0100",
        email="jane@example.com",
        credit_limit_cents=500000,
    )


@pytest.fixture(scope='function')
def product(db_session):
    return inventory_service.create_product(sku="SKU-001", name="Widget", price_cents=500, stock_quantity=50)


@pytest.fixture(scope='function')
def product_b(db_session):
    return inventory_service.create_product(sku="SKU-002", name="Gadget", price_cents=250, stock_quantity=20)


@pytest.fixture(scope='function')
def make_sale(db_session):
    """
    Factory: record a sale.

    lines: [(product, quantity)]; returns the sale dict from the recorder.
    """
    def _make(lines, *, payment_method="cash", customer=None, days_ago=0, **kwargs):
        return sales_service.create_sale(
            items=[{"product_id": p.id, "quantity": qty} for p, qty in lines],
            payment_method=payment_method,
            customer_id=customer.id if customer is not None else None,
            sale_date=utcnow() - timedelta(days=days_ago) if days_ago else None,
            **kwargs,
        )
    return _make


@pytest.fixture(scope='function')
def file_app(tmp_path):
    """
    Application on a file-backed SQLite database.

    Each pushed app context gets its own session and connection, so two
    contexts behave like two workers racing on the same rows.
    """
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': f"sqlite:///{tmp_path / 'ledger.db'}",
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'RETURN_WINDOW_DAYS': 30,
        'LEDGER_RETRY_ATTEMPTS': 3,
    })

    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()
        db.engine.dispose()
