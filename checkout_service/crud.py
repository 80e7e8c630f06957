import datetime as dt
from typing import Dict, Iterable, List, Optional

import structlog
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, joinedload, selectinload

from .errors import InsufficientStock, InvalidQuantity, NotFound, TransactionFailure
from .models import Cart, CartItem, Order, Payment, Product

logger = structlog.get_logger(__name__)


# -----------------------------
# Catalog reads
# -----------------------------

def get_product(db: Session, product_id: int) -> Optional[Product]:
    return db.query(Product).filter(Product.id == product_id).first()


def get_visible_products(db: Session, skip: int = 0, limit: int = 100, category: Optional[str] = None) -> List[Product]:
    query = db.query(Product).filter(Product.is_visible.is_(True))
    if category:
        query = query.filter(Product.category == category)
    return query.order_by(Product.id).offset(skip).limit(limit).all()


# -----------------------------
# Cart store
# -----------------------------

def get_cart_by_user(db: Session, user_id: int) -> Optional[Cart]:
    return db.query(Cart).filter(Cart.user_id == user_id).first()


def load_cart(db: Session, user_id: int) -> Dict:
    """Return the user's cart with a product projection per line.

    A user without a cart gets an empty cart object, not an error.
    """
    cart = (
        db.query(Cart)
        .options(selectinload(Cart.items).joinedload(CartItem.product).selectinload(Product.images))
        .filter(Cart.user_id == user_id)
        .first()
    )
    if cart is None:
        return {"id": None, "user_id": user_id, "items": [], "subtotal": 0}

    items = []
    for line in cart.items:
        product = line.product
        items.append(
            {
                "id": line.id,
                "product_id": product.id,
                "quantity": line.quantity,
                "product": {
                    "id": product.id,
                    "name": product.name,
                    "price": product.price,
                    "stock": product.stock,
                    "image_url": product.images[0].url if product.images else None,
                },
            }
        )
    return {
        "id": cart.id,
        "user_id": cart.user_id,
        "items": items,
        "subtotal": sum(i["product"]["price"] * i["quantity"] for i in items),
    }


def add_or_increment(db: Session, user_id: int, product_id: int) -> CartItem:
    """Add one unit of a product to the user's cart, creating the cart if needed."""
    # Two first-adds racing on the same user collide on carts.user_id; the loser retries once.
    for attempt in (1, 2):
        try:
            return _add_or_increment(db, user_id, product_id)
        except IntegrityError as exc:
            db.rollback()
            if attempt == 2:
                logger.error("cart_add_conflict", user_id=user_id, product_id=product_id)
                raise TransactionFailure("Could not update cart, please retry") from exc


def _add_or_increment(db: Session, user_id: int, product_id: int) -> CartItem:
    try:
        # Lock the product row: every change to a line of this product is serialized here
        product = (
            db.query(Product)
            .filter(Product.id == product_id)
            .with_for_update()
            .first()
        )
        if not product:
            raise NotFound(f"Product with id {product_id} not found", product_id=product_id)

        now = dt.datetime.now(dt.timezone.utc)
        cart = get_cart_by_user(db, user_id)
        if cart is None:
            cart = Cart(user_id=user_id, created_at=now, updated_at=now)
            db.add(cart)
            db.flush()

        line = (
            db.query(CartItem)
            .filter(CartItem.cart_id == cart.id, CartItem.product_id == product_id)
            .with_for_update()
            .first()
        )
        new_quantity = (line.quantity if line else 0) + 1
        if new_quantity > product.stock:
            raise InsufficientStock(product.id, product.stock, new_quantity)

        if line is None:
            line = CartItem(cart_id=cart.id, product_id=product.id, quantity=new_quantity)
            db.add(line)
        else:
            line.quantity = new_quantity
        cart.updated_at = now

        db.commit()
    except IntegrityError:
        raise
    except Exception:
        db.rollback()
        raise

    db.refresh(line)
    return line


def set_quantity(db: Session, user_id: int, line_id: int, new_quantity: int) -> CartItem:
    """Overwrite a line's quantity. Out-of-range values are rejected, never clamped."""
    try:
        line = (
            db.query(CartItem)
            .join(Cart, Cart.id == CartItem.cart_id)
            .filter(CartItem.id == line_id, Cart.user_id == user_id)
            .with_for_update(of=CartItem)
            .first()
        )
        if not line:
            raise NotFound(f"Cart item with id {line_id} not found", item_id=line_id)

        stock = line.product.stock
        if new_quantity < 1 or new_quantity > stock:
            raise InvalidQuantity(
                f"Quantity must be between 1 and {stock}",
                item_id=line_id,
                requested=new_quantity,
                stock=stock,
            )

        line.quantity = new_quantity
        db.commit()
    except Exception:
        db.rollback()
        raise

    db.refresh(line)
    return line


def delete_cart_lines(db: Session, user_id: int, line_ids: Iterable[int]) -> int:
    """Delete lines from the user's own cart inside the current transaction.

    Ids that belong to another user's cart are ignored. The cart row goes away
    with its last line. Does not commit.
    """
    ids = {int(i) for i in line_ids}
    if not ids:
        return 0

    cart = get_cart_by_user(db, user_id)
    if cart is None:
        return 0

    deleted = (
        db.query(CartItem)
        .filter(CartItem.cart_id == cart.id, CartItem.id.in_(ids))
        .delete(synchronize_session="fetch")
    )

    remaining = db.query(CartItem).filter(CartItem.cart_id == cart.id).count()
    if remaining == 0:
        db.query(Cart).filter(Cart.id == cart.id).delete(synchronize_session="fetch")
    else:
        cart.updated_at = dt.datetime.now(dt.timezone.utc)

    return int(deleted or 0)


def remove_lines(db: Session, user_id: int, line_ids: Iterable[int]) -> int:
    try:
        deleted = delete_cart_lines(db, user_id, line_ids)
        db.commit()
    except Exception:
        db.rollback()
        raise
    return deleted


def remove_line(db: Session, user_id: int, line_id: int) -> None:
    if remove_lines(db, user_id, [line_id]) == 0:
        raise NotFound(f"Cart item with id {line_id} not found", item_id=line_id)


# -----------------------------
# Orders & payments
# -----------------------------

def get_order(db: Session, order_id: int) -> Optional[Order]:

    return db.query(Order).options(selectinload(Order.items)).filter(Order.id == order_id).first()


def get_orders(db: Session, skip: int = 0, limit: int = 100) -> List[Order]:

    return db.query(Order).options(selectinload(Order.items)).order_by(Order.id.desc()).offset(skip).limit(limit).all()


def get_orders_by_user(db: Session, user_id: int, skip: int = 0, limit: int = 100) -> List[Order]:

    return (
        db.query(Order)
        .options(selectinload(Order.items))
        .filter(Order.user_id == user_id)
        .order_by(Order.id.desc())
        .offset(skip)
        .limit(limit)
        .all()
    )


def get_order_count(db: Session) -> int:

    return db.query(Order).count()


def get_user_order_count(db: Session, user_id: int) -> int:

    return db.query(Order).filter(Order.user_id == user_id).count()


def delete_order(db: Session, order_id: int) -> Optional[Order]:
    """Delete an order together with its lines and payment."""
    db_order = get_order(db, order_id)
    if db_order:
        try:
            db.delete(db_order)
            db.commit()
        except Exception:
            db.rollback()
            raise
    return db_order


def get_payment(db: Session, payment_id: int) -> Optional[Payment]:
    return db.query(Payment).filter(Payment.id == payment_id).first()


def get_payment_by_order(db: Session, order_id: int) -> Optional[Payment]:
    return db.query(Payment).filter(Payment.order_id == order_id).first()


def get_payments(db: Session, skip: int = 0, limit: int = 100) -> List[Payment]:
    return db.query(Payment).order_by(Payment.id.desc()).offset(skip).limit(limit).all()


def get_payment_count(db: Session) -> int:
    return db.query(Payment).count()


def get_payments_by_user(db: Session, user_id: int, skip: int = 0, limit: int = 100) -> List[Payment]:
    return (
        db.query(Payment)
        .join(Order, Order.id == Payment.order_id)
        .options(joinedload(Payment.order))
        .filter(Order.user_id == user_id)
        .order_by(Payment.id.desc())
        .offset(skip)
        .limit(limit)
        .all()
    )


def get_user_payment_count(db: Session, user_id: int) -> int:
    return db.query(Payment).join(Order, Order.id == Payment.order_id).filter(Order.user_id == user_id).count()
