"""Order/payment transaction engine.

``confirm_checkout`` consumes a user's staged order and, in one database
transaction, creates the order with its lines, the pending payment, hides
every ordered product and removes the consumed cart lines. Either all of
it is committed or none of it is.
"""

from typing import Dict, List

import structlog
from sqlalchemy.orm import Session

from . import crud
from .errors import CheckoutError, InsufficientStock, NoStagedOrder, TransactionFailure
from .models import Order, OrderItem, OrderStatus, Payment, PaymentMethod, PaymentStatus, Product
from .schemas import StagedOrder
from .staging import StagingStore
from .visibility import VisibilityGate, visibility_gate

logger = structlog.get_logger(__name__)


def _requested_quantities(staged: StagedOrder) -> Dict[int, int]:
    merged: Dict[int, int] = {}
    for line in staged.lines:
        merged[line.product_id] = merged.get(line.product_id, 0) + line.quantity
    return merged


def _lock_and_check_products(db: Session, requested: Dict[int, int]) -> List[Product]:
    # Lock rows in a stable order to avoid deadlocks
    product_ids = sorted(requested)
    products = {
        p.id: p
        for p in db.query(Product)
        .filter(Product.id.in_(product_ids))
        .order_by(Product.id)
        .with_for_update()
        .all()
    }
    for pid in product_ids:
        qty = requested[pid]
        product = products.get(pid)
        if product is None:
            raise InsufficientStock(pid, 0, qty, message=f"Product {pid} is no longer available")
        if not product.is_visible:
            raise InsufficientStock(pid, 0, qty, message=f"Product '{product.name}' has already been ordered")
        if product.stock < qty:
            raise InsufficientStock(pid, product.stock, qty)
    return [products[pid] for pid in product_ids]


def _place_order(db: Session, staged: StagedOrder, method: PaymentMethod, gate: VisibilityGate) -> Order:
    requested = _requested_quantities(staged)
    _lock_and_check_products(db, requested)

    db_order = Order(
        user_id=staged.user_id,
        total_amount=staged.total,
        shipping_cost=staged.shipping_cost,
        status=OrderStatus.PENDING.value,
    )
    # Prices come from the snapshot, never from a fresh catalog lookup
    db_order.items = [
        OrderItem(
            product_id=line.product_id,
            product_name=line.product_name,
            quantity=line.quantity,
            price=line.price,
        )
        for line in staged.lines
    ]
    db.add(db_order)
    db.flush()  # Get order ID without committing

    db.add(
        Payment(
            order_id=db_order.id,
            method=method.value,
            status=PaymentStatus.PENDING.value,
            amount=db_order.total_amount,
        )
    )

    gate.hide(db, requested.keys())
    crud.delete_cart_lines(db, staged.user_id, [line.cart_item_id for line in staged.lines])
    return db_order


def confirm_checkout(
    db: Session,
    store: StagingStore,
    user_id: int,
    method: PaymentMethod = PaymentMethod.BANK_TRANSFER,
    gate: VisibilityGate = visibility_gate,
) -> Order:
    """Turn the user's staged order into a durable order and payment.

    Raises ``NoStagedOrder`` when nothing is staged, which is also what a
    second confirmation of an already consumed snapshot gets.
    """
    staged = store.take(user_id)
    if staged is None:
        raise NoStagedOrder(user_id)

    try:
        db_order = _place_order(db, staged, method, gate)
        db.commit()
    except CheckoutError:
        db.rollback()
        store.restore(staged)
        raise
    except Exception as exc:
        db.rollback()
        store.restore(staged)
        logger.exception("order_transaction_failed", user_id=user_id, total=staged.total)
        raise TransactionFailure("Failed to place order") from exc

    db.refresh(db_order)
    logger.info(
        "order_confirmed",
        user_id=user_id,
        order_id=db_order.id,
        payment_id=db_order.payment.id,
        total=db_order.total_amount,
        products=sorted(_requested_quantities(staged)),
    )
    return db_order
