import os

# Must be set before checkout_service is imported: the engine is built at import time
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["STAGING_BACKEND"] = "memory"
os.environ["PAYMENT_FEED_ENABLED"] = "false"

import pytest
from fastapi.testclient import TestClient

from checkout_service.auth import get_current_user
from checkout_service.checkout import confirm_checkout
from checkout_service.database import SessionLocal, engine
from checkout_service.errors import ExternalServiceFailure
from checkout_service.models import Base, Cart, CartItem, Product, ProductImage
from checkout_service.notifications import NotificationDispatcher, get_dispatcher
from checkout_service.staging import MemoryStagingStore, begin_checkout, get_staging_store


class FakeDispatcher(NotificationDispatcher):
    """Dispatcher that records messages in memory for test assertions."""

    def __init__(self):
        self.sent_messages: list[dict] = []
        self.should_succeed = True

    def send(self, destination: str, text: str) -> None:
        if not self.should_succeed:
            raise ExternalServiceFailure("Notification bus unavailable")
        self.sent_messages.append({"destination": destination, "text": text})


@pytest.fixture(autouse=True)
def reset_db():
    """Fresh schema for every test"""
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield


@pytest.fixture()
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def store():
    return MemoryStagingStore(ttl_seconds=600)


@pytest.fixture()
def dispatcher():
    return FakeDispatcher()


@pytest.fixture()
def make_product(db):
    def _make(name="Kaos Vintage", price=100_000, stock=1, category="atasan", visible=True, image_url=None):
        product = Product(name=name, price=price, stock=stock, category=category, is_visible=visible)
        if image_url:
            product.images = [ProductImage(url=image_url)]
        db.add(product)
        db.commit()
        db.refresh(product)
        return product

    return _make


@pytest.fixture()
def make_cart(db):
    def _make(user_id, *lines):
        """lines: (product, quantity) pairs"""
        cart = Cart(user_id=user_id)
        cart.items = [CartItem(product_id=product.id, quantity=quantity) for product, quantity in lines]
        db.add(cart)
        db.commit()
        db.refresh(cart)
        return cart

    return _make


@pytest.fixture()
def current_user():
    return {"id": 1, "role": "user", "username": "buyer", "email": "buyer@example.com"}


@pytest.fixture()
def client(current_user, store, dispatcher):
    from checkout_service.main import app

    app.dependency_overrides[get_current_user] = lambda: current_user
    app.dependency_overrides[get_staging_store] = lambda: store
    app.dependency_overrides[get_dispatcher] = lambda: dispatcher
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


@pytest.fixture()
def placed_order(db, store, make_product, make_cart):
    """An order by user 1 for two products, both hidden by checkout."""
    shirt = make_product(name="Kemeja Flanel", price=100_000)
    bag = make_product(name="Tas Kulit", price=50_000)
    cart = make_cart(1, (shirt, 1), (bag, 1))
    begin_checkout(db, store, user_id=1, line_ids=[line.id for line in cart.items], shipping_cost=15_000)
    order = confirm_checkout(db, store, user_id=1)
    return order, [shirt.id, bag.id]
