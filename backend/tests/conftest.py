"""
Pytest fixtures for shiftledger backend tests.

Provides an in-memory database, a test client, and a store with an
operator, payment methods and a product ready for checkout.
"""

import pytest
from shiftledger import create_app
from shiftledger.extensions import db
from shiftledger.models import Store, User, Product, PaymentMethod
from shiftledger.services import shift_service, sales_ledger_service


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
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
def store(db_session):
    """Store charging 15% tax."""
    store = Store(name="Main Store", code="MAIN", currency="SDG", tax_enabled=True, tax_rate_bps=1500)
    db_session.add(store)
    db_session.commit()
    return store


@pytest.fixture(scope='function')
def operator(db_session, store):
    user = User(store_id=store.id, username="cashier", display_name="Cashier")
    db_session.add(user)
    db_session.commit()
    return user


@pytest.fixture(scope='function')
def cash_method(db_session, store):
    method = PaymentMethod(store_id=store.id, name="كاش", name_en="Cash", kind="CASH")
    db_session.add(method)
    db_session.commit()
    return method


@pytest.fixture(scope='function')
def card_method(db_session, store):
    method = PaymentMethod(store_id=store.id, name="Visa", name_en="Visa", kind="CARD", sort_order=1)
    db_session.add(method)
    db_session.commit()
    return method


@pytest.fixture(scope='function')
def transfer_method(db_session, store):
    """Bank-app transfer: needs a transaction reference."""
    method = PaymentMethod(
        store_id=store.id,
        name="بنكك",
        name_en="Bankak",
        kind="BANK_TRANSFER",
        requires_reference=True,
        sort_order=2,
    )
    db_session.add(method)
    db_session.commit()
    return method


@pytest.fixture(scope='function')
def product(db_session, store):
    """Priced at 100.00, 50 in stock."""
    product = Product(store_id=store.id, sku="SKU-001", name="Tea 1kg", price_cents=10000, stock_quantity=50)
    db_session.add(product)
    db_session.commit()
    return product


@pytest.fixture(scope='function')
def open_shift(db_session, store, operator):
    """Open shift with a 500.00 float."""
    return shift_service.open_shift(store.id, operator.id, 50000)


@pytest.fixture(scope='function')
def make_product(db_session, store):
    """Factory for extra products in the test store."""
    def _make(*, sku, price_cents, stock_quantity, name=None):
        product = Product(
            store_id=store.id,
            sku=sku,
            name=name or sku,
            price_cents=price_cents,
            stock_quantity=stock_quantity,
        )
        db_session.add(product)
        db_session.commit()
        return product
    return _make


@pytest.fixture(scope='function')
def sell(db_session):
    """Ring up `quantity` of one product with one payment method."""
    def _sell(shift, product, method, quantity=1, **kwargs):
        payment = {"payment_method_id": method.id}
        payment.update(kwargs.pop("payment", {}))
        return sales_ledger_service.create_sale(
            shift,
            [{"product_id": product.id, "quantity": quantity}],
            payment,
            **kwargs,
        )
    return _sell
