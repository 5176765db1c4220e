"""
Pytest fixtures for storefront backend tests.

Provides an in-memory application, a fresh database per test, and small
factories for the catalog and loyalty rows the checkout reads.
"""

import pytest

from storefront import create_app
from storefront.extensions import db
from storefront.models import Store, Product, ProductVariant, LoyaltyAccount, LoyaltyTransaction, LoyaltyReward


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
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
def store(db_session):
    store = Store(name="Main Street", code="MAIN")
    db_session.add(store)
    db_session.commit()
    return store


@pytest.fixture(scope='function')
def product(db_session, store):
    """Kurta priced at 1000.00 (100000 paise)."""
    product = Product(store_id=store.id, sku="KURTA-01", name="Cotton Kurta", base_price_cents=100_000)
    db_session.add(product)
    db_session.commit()
    return product


@pytest.fixture(scope='function')
def make_variant(db_session, product):
    """Factory: make_variant(stock=3, sku=None, threshold=None, adjustment=0)."""
    counter = {"n": 0}

    def _make(stock=10, sku=None, threshold=None, adjustment=0, product_id=None):
        counter["n"] += 1
        variant = ProductVariant(
            product_id=product_id or product.id,
            sku=sku or f"KURTA-01-{counter['n']}",
            size="M",
            color="Indigo",
            stock_quantity=stock,
            opening_stock=stock,
            low_stock_threshold=threshold,
            price_adjustment_cents=adjustment,
        )
        db_session.add(variant)
        db_session.commit()
        return variant

    return _make


@pytest.fixture(scope='function')
def variant(make_variant):
    return make_variant(stock=10)


@pytest.fixture(scope='function')
def make_account(db_session, store):
    """Factory for a loyalty account whose balance is backed by a ledger entry."""
    def _make(phone="9876543210", points=0, lifetime=None):
        account = LoyaltyAccount(
            store_id=store.id,
            customer_phone=phone,
            customer_name="Asha",
            total_points=points,
            lifetime_points=points if lifetime is None else lifetime,
        )
        db_session.add(account)
        db_session.flush()
        if points:
            db_session.add(LoyaltyTransaction(
                loyalty_account_id=account.id,
                transaction_type="earned",
                points=points,
                description="Opening balance",
            ))
        db_session.commit()
        return account

    return _make


@pytest.fixture(scope='function')
def make_reward(db_session, store):
    def _make(points_required=80, discount_type="fixed", discount_value=5_000, max_redemptions=None, is_active=True):
        reward = LoyaltyReward(
            store_id=store.id,
            name=f"{discount_value} off",
            points_required=points_required,
            discount_type=discount_type,
            discount_value=discount_value,
            max_redemptions=max_redemptions,
            is_active=is_active,
        )
        db_session.add(reward)
        db_session.commit()
        return reward

    return _make
