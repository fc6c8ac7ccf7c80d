"""
Pytest fixtures for gasledger backend tests.

Provides the app on an in-memory database, a clean session per test, and
small factories for catalog rows.
"""

import pytest

from gasledger import create_app
from gasledger.extensions import db
from gasledger.models import Customer, Employee, Product
from gasledger.models.catalog import CATEGORY_CYLINDER, CATEGORY_GAS


TEST_CONFIG = {
    'TESTING': True,
    'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
    'SQLALCHEMY_TRACK_MODIFICATIONS': False,
    'INVOICE_START_NUMBER': 10000,
    'ASSIGNMENT_OVERSELL_POLICY': 'warn',
    'DB_RETRY_ATTEMPTS': 3,
    'DB_RETRY_BACKOFF': 0,
}


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app(TEST_CONFIG)

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
def make_product(db_session):
    def _make(name="LPG 12kg", category=CATEGORY_GAS, *, stock=0, full=0, empty=0, least_price_cents=4500, code=None):
        product = Product(
            name=name,
            product_code=code,
            category=category,
            least_price_cents=least_price_cents,
            current_stock=stock if category == CATEGORY_GAS else full + empty,
            available_full=full,
            available_empty=empty,
        )
        db_session.add(product)
        db_session.commit()
        return product
    return _make


@pytest.fixture(scope='function')
def gas(make_product):
    """Gas product with 10 units on hand."""
    return make_product("LPG 12kg", CATEGORY_GAS, stock=10, least_price_cents=4500, code="GAS-12")


@pytest.fixture(scope='function')
def cylinder(make_product):
    """12kg cylinder: 6 full, 4 empty."""
    return make_product("Cylinder 12kg", CATEGORY_CYLINDER, full=6, empty=4, least_price_cents=15000, code="CYL-12")


@pytest.fixture(scope='function')
def employee(db_session):
    emp = Employee(name="Driver One", email="driver1@example.com")
    db_session.add(emp)
    db_session.commit()
    return emp


@pytest.fixture(scope='function')
def customer(db_session):
    cust = Customer(name="Corner Restaurant", phone="555-0101")
    db_session.add(cust)
    db_session.commit()
    return cust
