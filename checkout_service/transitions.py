"""Status transition manager for orders and payments.

Allowed moves live in ``ORDER_TRANSITIONS`` and ``PAYMENT_TRANSITIONS``.
Both tables are permissive today (any status may follow any other); a
stricter policy only needs to edit them.

Marking a payment ``FAILED`` cancels its order and makes the ordered
products visible again, in the same transaction as the payment update.
Writing ``FAILED`` over a payment that is already ``FAILED`` does not
cascade again.
"""

import datetime as dt
from typing import Dict, FrozenSet, Optional, TypeVar

import structlog
from sqlalchemy.orm import Session

from .errors import CheckoutError, InvalidTransition, NotFound, TransactionFailure, ValidationError
from .models import Order, OrderStatus, Payment, PaymentStatus
from .visibility import VisibilityGate, visibility_gate

logger = structlog.get_logger(__name__)

S = TypeVar("S", OrderStatus, PaymentStatus)

ORDER_TRANSITIONS: Dict[OrderStatus, FrozenSet[OrderStatus]] = {
    status: frozenset(OrderStatus) for status in OrderStatus
}

PAYMENT_TRANSITIONS: Dict[PaymentStatus, FrozenSet[PaymentStatus]] = {
    status: frozenset(PaymentStatus) for status in PaymentStatus
}


def is_allowed(table: Dict[S, FrozenSet[S]], current: S, new: S) -> bool:
    return new in table.get(current, frozenset())


def check_transition(table: Dict[S, FrozenSet[S]], current: S, new: S) -> None:
    if not is_allowed(table, current, new):
        raise InvalidTransition(
            f"Status cannot change from {current.value} to {new.value}",
            current=current.value,
            requested=new.value,
        )


def _lock_order(db: Session, order_id: int) -> Optional[Order]:
    return db.query(Order).filter(Order.id == order_id).with_for_update().first()


def set_order_status(db: Session, order_id: int, new_status: OrderStatus) -> Order:
    """Write a new order status. Cancelling here does not restore visibility."""
    try:
        db_order = _lock_order(db, order_id)
        if not db_order:
            raise NotFound(f"Order with id {order_id} not found", order_id=order_id)

        previous = OrderStatus(db_order.status)
        check_transition(ORDER_TRANSITIONS, previous, new_status)

        db_order.status = new_status.value
        db_order.updated_at = dt.datetime.now(dt.timezone.utc)
        db.commit()
    except CheckoutError:
        db.rollback()
        raise
    except Exception as exc:
        db.rollback()
        logger.exception("order_status_update_failed", order_id=order_id, status=new_status.value)
        raise TransactionFailure("Failed to update order status") from exc

    db.refresh(db_order)
    logger.info("order_status_changed", order_id=order_id, previous=previous.value, status=new_status.value)
    return db_order


def _cancel_order_and_restore(db: Session, order_id: int, gate: VisibilityGate, now: dt.datetime) -> Order:
    db_order = _lock_order(db, order_id)
    if not db_order:
        raise TransactionFailure(f"Payment references missing order {order_id}")

    check_transition(ORDER_TRANSITIONS, OrderStatus(db_order.status), OrderStatus.CANCELLED)
    db_order.status = OrderStatus.CANCELLED.value
    db_order.updated_at = now

    gate.restore(db, [item.product_id for item in db_order.items])
    return db_order


def set_payment_status(
    db: Session,
    payment_id: int,
    new_status: PaymentStatus,
    completed_at: Optional[dt.datetime] = None,
    gate: VisibilityGate = visibility_gate,
) -> Payment:
    if new_status == PaymentStatus.SUCCESS and completed_at is None:
        raise ValidationError("completed_at is required when marking a payment SUCCESS", field="completed_at")

    try:
        payment = db.query(Payment).filter(Payment.id == payment_id).with_for_update().first()
        if not payment:
            raise NotFound(f"Payment with id {payment_id} not found", payment_id=payment_id)

        previous = PaymentStatus(payment.status)
        check_transition(PAYMENT_TRANSITIONS, previous, new_status)

        now = dt.datetime.now(dt.timezone.utc)
        payment.status = new_status.value
        payment.updated_at = now
        if new_status == PaymentStatus.SUCCESS:
            payment.completed_at = completed_at

        # Only the first FAILED cascades; the products may belong to a newer order by now
        cascaded = new_status == PaymentStatus.FAILED and previous != PaymentStatus.FAILED
        if cascaded:
            _cancel_order_and_restore(db, payment.order_id, gate, now)

        db.commit()
    except CheckoutError:
        db.rollback()
        raise
    except Exception as exc:
        db.rollback()
        logger.exception("payment_status_update_failed", payment_id=payment_id, status=new_status.value)
        raise TransactionFailure("Failed to update payment status") from exc

    db.refresh(payment)
    logger.info(
        "payment_status_changed",
        payment_id=payment_id,
        order_id=payment.order_id,
        previous=previous.value,
        status=new_status.value,
        cascaded=cascaded,
    )
    return payment
