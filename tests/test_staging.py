import datetime as dt
import threading

import pytest

from checkout_service.errors import InsufficientStock, NoStagedOrder, ValidationError
from checkout_service.models import CartItem, Product
from checkout_service.schemas import StagedLine, StagedOrder
from checkout_service.staging import (
    MemoryStagingStore,
    RedisStagingStore,
    begin_checkout,
    peek_staged,
)


def _staged(user_id=1, total=115_000):
    return StagedOrder(
        user_id=user_id,
        lines=[StagedLine(cart_item_id=1, product_id=1, product_name="Kaos Vintage", price=total - 15_000, quantity=1)],
        shipping_cost=15_000,
        subtotal=total - 15_000,
        total=total,
        staged_at=dt.datetime(2025, 1, 1, tzinfo=dt.timezone.utc),
    )


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


class FakeRedis:
    """Just enough of the redis client API for the staging store."""

    def __init__(self):
        self.data = {}
        self.expiries = {}

    def set(self, key, value, ex=None, nx=False):
        if nx and key in self.data:
            return None
        self.data[key] = value.encode() if isinstance(value, str) else value
        self.expiries[key] = ex
        return True

    def get(self, key):
        return self.data.get(key)

    def getdel(self, key):
        self.expiries.pop(key, None)
        return self.data.pop(key, None)

    def delete(self, key):
        self.expiries.pop(key, None)
        return 1 if self.data.pop(key, None) is not None else 0


class TestMemoryStagingStore:
    def test_put_overwrites_previous_snapshot(self):
        store = MemoryStagingStore(ttl_seconds=60)
        store.put(_staged(total=115_000))
        store.put(_staged(total=215_000))

        assert store.get(1).total == 215_000

    def test_take_consumes_exactly_once(self):
        store = MemoryStagingStore(ttl_seconds=60)
        store.put(_staged())

        assert store.take(1) is not None
        assert store.take(1) is None
        assert store.get(1) is None

    def test_snapshots_expire(self):
        clock = FakeClock()
        store = MemoryStagingStore(ttl_seconds=60, clock=clock)
        store.put(_staged(user_id=1))
        store.put(_staged(user_id=2))

        clock.now += 61

        assert store.get(1) is None
        assert store.purge_expired() == 1
        assert store.take(2) is None

    def test_restore_does_not_clobber_newer_snapshot(self):
        store = MemoryStagingStore(ttl_seconds=60)
        old = _staged(total=115_000)
        store.put(old)
        taken = store.take(1)
        store.put(_staged(total=315_000))

        assert store.restore(taken) is False
        assert store.get(1).total == 315_000

        store.delete(1)
        assert store.restore(taken) is True
        assert store.get(1).total == 115_000

    def test_concurrent_take_has_a_single_winner(self):
        store = MemoryStagingStore(ttl_seconds=60)
        store.put(_staged())
        results = []
        barrier = threading.Barrier(8)

        def _take():
            barrier.wait()
            results.append(store.take(1))

        threads = [threading.Thread(target=_take) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len([r for r in results if r is not None]) == 1


class TestRedisStagingStore:
    def test_round_trip_with_ttl(self):
        client = FakeRedis()
        store = RedisStagingStore(client, ttl_seconds=900)
        store.put(_staged())

        assert client.expiries["checkout:staged:1"] == 900
        assert store.get(1) == _staged()
        assert store.take(1) == _staged()
        assert store.get(1) is None

    def test_restore_uses_set_if_absent(self):
        client = FakeRedis()
        store = RedisStagingStore(client, ttl_seconds=900)
        store.put(_staged(total=415_000))

        assert store.restore(_staged(total=115_000)) is False
        assert store.get(1).total == 415_000


class TestBeginCheckout:
    def test_computes_totals_with_shipping(self, db, store, make_product, make_cart):
        shirt = make_product(name="Kemeja Flanel", price=100_000, stock=2)
        bag = make_product(name="Tas Kulit", price=50_000, stock=3)
        cart = make_cart(1, (shirt, 2), (bag, 1))

        staged = begin_checkout(db, store, user_id=1, line_ids=[line.id for line in cart.items], shipping_cost=15_000)

        assert staged.subtotal == 250_000
        assert staged.shipping_cost == 15_000
        assert staged.total == 265_000
        assert store.get(1) == staged

    def test_only_selected_lines_are_staged(self, db, store, make_product, make_cart):
        shirt = make_product(name="Kemeja Flanel", price=100_000)
        bag = make_product(name="Tas Kulit", price=50_000)
        cart = make_cart(1, (shirt, 1), (bag, 1))

        staged = begin_checkout(db, store, user_id=1, line_ids=[cart.items[1].id], shipping_cost=15_000)

        assert [line.product_name for line in staged.lines] == ["Tas Kulit"]
        assert staged.total == 65_000

    def test_does_not_touch_cart_or_products(self, db, store, make_product, make_cart):
        product = make_product()
        cart = make_cart(1, (product, 1))

        begin_checkout(db, store, user_id=1, line_ids=[cart.items[0].id])

        db.expire_all()
        assert db.query(CartItem).count() == 1
        assert db.get(Product, product.id).is_visible is True

    def test_empty_selection_is_rejected(self, db, store):
        with pytest.raises(ValidationError):
            begin_checkout(db, store, user_id=1, line_ids=[])
        assert store.get(1) is None

    def test_foreign_lines_are_rejected(self, db, store, make_product, make_cart):
        product = make_product()
        theirs = make_cart(2, (product, 1))

        with pytest.raises(ValidationError) as exc_info:
            begin_checkout(db, store, user_id=1, line_ids=[theirs.items[0].id])

        assert exc_info.value.details["item_ids"] == [theirs.items[0].id]

    def test_quantity_above_live_stock(self, db, store, make_product, make_cart):
        product = make_product(stock=3)
        cart = make_cart(1, (product, 3))
        product.stock = 1
        db.commit()

        with pytest.raises(InsufficientStock):
            begin_checkout(db, store, user_id=1, line_ids=[cart.items[0].id])

    def test_new_checkout_overwrites_previous(self, db, store, make_product, make_cart):
        shirt = make_product(name="Kemeja Flanel", price=100_000)
        bag = make_product(name="Tas Kulit", price=50_000)
        cart = make_cart(1, (shirt, 1), (bag, 1))

        begin_checkout(db, store, user_id=1, line_ids=[cart.items[0].id], shipping_cost=15_000)
        begin_checkout(db, store, user_id=1, line_ids=[cart.items[1].id], shipping_cost=15_000)

        assert peek_staged(store, 1).total == 65_000


class TestPeekStaged:
    def test_missing_snapshot_is_a_first_class_result(self, store):
        with pytest.raises(NoStagedOrder):
            peek_staged(store, 1)
