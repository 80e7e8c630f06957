"""Checkout staging.

``begin_checkout`` turns the cart lines a user picked into a price-locked
:class:`~checkout_service.schemas.StagedOrder` and parks it in a per-user
slot. Confirmation consumes the slot exactly once. Slots expire after
``STAGING_TTL_SECONDS`` so abandoned checkouts are reclaimed.
"""

from __future__ import annotations

import datetime as dt
import threading
import time
from abc import ABC, abstractmethod
from functools import lru_cache
from typing import Callable, Dict, Iterable, Optional, Tuple

import redis
import structlog
from sqlalchemy.orm import Session, joinedload

from . import config
from .errors import InsufficientStock, NoStagedOrder, ValidationError
from .models import Cart, CartItem
from .schemas import StagedLine, StagedOrder

logger = structlog.get_logger(__name__)


class StagingStore(ABC):
    """One staged order per user. A new ``put`` overwrites the previous one."""

    @abstractmethod
    def put(self, staged: StagedOrder) -> None:
        ...

    @abstractmethod
    def get(self, user_id: int) -> Optional[StagedOrder]:
        ...

    @abstractmethod
    def take(self, user_id: int) -> Optional[StagedOrder]:
        """Atomically remove and return the user's staged order."""
        ...

    @abstractmethod
    def restore(self, staged: StagedOrder) -> bool:
        """Put a taken snapshot back unless a newer one was staged meanwhile."""
        ...

    @abstractmethod
    def delete(self, user_id: int) -> None:
        ...


class MemoryStagingStore(StagingStore):
    """In-process store. Suitable for a single worker and for tests."""

    def __init__(self, ttl_seconds: int = config.STAGING_TTL_SECONDS, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._slots: Dict[int, Tuple[float, StagedOrder]] = {}

    def _live(self, user_id: int) -> Optional[StagedOrder]:
        slot = self._slots.get(user_id)
        if slot is None:
            return None
        expires_at, staged = slot
        if expires_at <= self._clock():
            del self._slots[user_id]
            return None
        return staged

    def put(self, staged: StagedOrder) -> None:
        with self._lock:
            self._slots[staged.user_id] = (self._clock() + self.ttl_seconds, staged)

    def get(self, user_id: int) -> Optional[StagedOrder]:
        with self._lock:
            return self._live(user_id)

    def take(self, user_id: int) -> Optional[StagedOrder]:
        with self._lock:
            staged = self._live(user_id)
            if staged is not None:
                del self._slots[user_id]
            return staged

    def restore(self, staged: StagedOrder) -> bool:
        with self._lock:
            if self._live(staged.user_id) is not None:
                return False
            self._slots[staged.user_id] = (self._clock() + self.ttl_seconds, staged)
            return True

    def delete(self, user_id: int) -> None:
        with self._lock:
            self._slots.pop(user_id, None)

    def purge_expired(self) -> int:
        with self._lock:
            now = self._clock()
            expired = [uid for uid, (expires_at, _) in self._slots.items() if expires_at <= now]
            for uid in expired:
                del self._slots[uid]
            return len(expired)


class RedisStagingStore(StagingStore):
    """Redis-backed store; expiry is delegated to key TTLs."""

    def __init__(self, client: redis.Redis, ttl_seconds: int = config.STAGING_TTL_SECONDS, prefix: str = "checkout:staged:"):
        self.client = client
        self.ttl_seconds = ttl_seconds
        self.prefix = prefix

    @classmethod
    def from_url(cls, url: str, **kwargs) -> "RedisStagingStore":
        return cls(redis.Redis.from_url(url), **kwargs)

    def _key(self, user_id: int) -> str:
        return f"{self.prefix}{int(user_id)}"

    @staticmethod
    def _load(raw) -> Optional[StagedOrder]:
        if raw is None:
            return None
        return StagedOrder.model_validate_json(raw)

    def put(self, staged: StagedOrder) -> None:
        self.client.set(self._key(staged.user_id), staged.model_dump_json(), ex=self.ttl_seconds)

    def get(self, user_id: int) -> Optional[StagedOrder]:
        return self._load(self.client.get(self._key(user_id)))

    def take(self, user_id: int) -> Optional[StagedOrder]:
        return self._load(self.client.getdel(self._key(user_id)))

    def restore(self, staged: StagedOrder) -> bool:
        return bool(self.client.set(self._key(staged.user_id), staged.model_dump_json(), ex=self.ttl_seconds, nx=True))

    def delete(self, user_id: int) -> None:
        self.client.delete(self._key(user_id))


def build_staging_store() -> StagingStore:
    if config.STAGING_BACKEND == "redis":
        return RedisStagingStore.from_url(config.STAGING_REDIS_URL, ttl_seconds=config.STAGING_TTL_SECONDS)
    if config.STAGING_BACKEND != "memory":
        raise ValueError(f"Unknown STAGING_BACKEND: {config.STAGING_BACKEND}")
    return MemoryStagingStore(ttl_seconds=config.STAGING_TTL_SECONDS)


@lru_cache(maxsize=1)
def get_staging_store() -> StagingStore:
    return build_staging_store()


def begin_checkout(
    db: Session,
    store: StagingStore,
    user_id: int,
    line_ids: Iterable[int],
    shipping_cost: int = config.SHIPPING_COST,
) -> StagedOrder:
    """Stage the selected cart lines for payment.

    Only computes and stores the snapshot; the cart and products are left
    untouched until confirmation.
    """
    ids = list(dict.fromkeys(int(i) for i in line_ids))
    if not ids:
        raise ValidationError("Select at least one cart item to check out")

    lines = (
        db.query(CartItem)
        .join(Cart, Cart.id == CartItem.cart_id)
        .options(joinedload(CartItem.product))
        .filter(Cart.user_id == user_id, CartItem.id.in_(ids))
        .order_by(CartItem.id)
        .all()
    )
    found = {line.id for line in lines}
    missing = [i for i in ids if i not in found]
    if missing:
        raise ValidationError("Some selected items are not in your cart", item_ids=missing)

    for line in lines:
        if line.quantity > line.product.stock:
            raise InsufficientStock(line.product_id, line.product.stock, line.quantity)

    staged_lines = [
        StagedLine(
            cart_item_id=line.id,
            product_id=line.product_id,
            product_name=line.product.name,
            price=line.product.price,
            quantity=line.quantity,
        )
        for line in lines
    ]
    subtotal = sum(line.line_total for line in staged_lines)
    staged = StagedOrder(
        user_id=user_id,
        lines=staged_lines,
        shipping_cost=shipping_cost,
        subtotal=subtotal,
        total=subtotal + shipping_cost,
        staged_at=dt.datetime.now(dt.timezone.utc),
    )
    store.put(staged)

    logger.info("checkout_staged", user_id=user_id, lines=len(staged_lines), total=staged.total)
    return staged


def peek_staged(store: StagingStore, user_id: int) -> StagedOrder:
    staged = store.get(user_id)
    if staged is None:
        raise NoStagedOrder(user_id)
    return staged
