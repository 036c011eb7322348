"""
Pytest fixtures for backoffice tests.

Provides the application on in-memory SQLite, a per-test table wipe, and
catalog fixtures (organization, two locations, products).
"""

import pytest

from backoffice import create_app
from backoffice.extensions import db
from backoffice.models import Location, Organization, Product, ReferenceType
from backoffice.services import stock_ledger


ACTOR = "tester"


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'LEDGER_RETRY_BACKOFF': 0,
        'MARKETPLACE_SYNC_ENABLED': False,
        'CELERY_TASK_ALWAYS_EAGER': True,
        'CELERY_TASK_EAGER_PROPAGATES': True,
        'MARKETPLACE_SYNC_BACKOFF_BASE': 0,
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
def org(db_session):
    org = Organization(name="Acme Retail", code="ACME")
    db_session.add(org)
    db_session.commit()
    return org


@pytest.fixture(scope='function')
def other_org(db_session):
    org = Organization(name="Beta Inc", code="BETA")
    db_session.add(org)
    db_session.commit()
    return org


@pytest.fixture(scope='function')
def loc_a(db_session, org):
    """Location A (main store)."""
    location = Location(org_id=org.id, name="Store A", is_main=True)
    db_session.add(location)
    db_session.commit()
    return location


@pytest.fixture(scope='function')
def loc_b(db_session, org):
    """Location B (warehouse)."""
    location = Location(org_id=org.id, name="Warehouse B")
    db_session.add(location)
    db_session.commit()
    return location


@pytest.fixture(scope='function')
def make_product(db_session, org):
    """Factory: make_product(sku="X") -> Product in the default org."""
    counter = {"n": 0}

    def _make(sku=None, name=None, org_id=None):
        counter["n"] += 1
        product = Product(
            org_id=org_id or org.id,
            sku=sku or f"SKU-{counter['n']}",
            name=name or f"Product {counter['n']}",
            price_cents=1000,
        )
        db_session.add(product)
        db_session.commit()
        return product

    return _make


@pytest.fixture(scope='function')
def product(make_product):
    return make_product(sku="WIDGET", name="Widget")


@pytest.fixture(scope='function')
def seed_stock(db_session):
    """seed_stock(product_id, location_id, qty): opening stock through the ledger (ADJUSTMENT)."""
    def _seed(product_id, location_id, quantity):
        return stock_ledger.apply_stock_delta(product_id, location_id, quantity, stock_ledger.MovementMeta(
            reason="Opening stock",
            reference_type=ReferenceType.ADJUSTMENT,
            actor=ACTOR,
        ))

    return _seed
