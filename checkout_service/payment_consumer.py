"""Applies payment results published by the payment service.

Settlement itself happens elsewhere; this module only maps
``payment.succeeded`` / ``payment.failed`` events onto
:func:`~checkout_service.transitions.set_payment_status`, so a failed
payment runs the same cancellation cascade as an admin update.
"""

from __future__ import annotations

import datetime as dt
from typing import Any, Dict, Optional

import structlog

from . import crud
from .database import SessionLocal
from .errors import NotFound, ValidationError
from .messaging import start_consumer_in_thread
from .models import PaymentStatus
from .transitions import set_payment_status

logger = structlog.get_logger(__name__)

PAYMENT_RESULTS_QUEUE = "checkout-service.payment.results.q"

EVENT_STATUSES = {
    "payment.succeeded": PaymentStatus.SUCCESS,
    "payment.failed": PaymentStatus.FAILED,
}


def _parse_iso_z(value: Optional[str]) -> Optional[dt.datetime]:
    """Parse ISO8601 string that may end with 'Z'."""
    if not value:
        return None
    v = value.strip()
    if v.endswith("Z"):
        v = v[:-1] + "+00:00"
    try:
        parsed = dt.datetime.fromisoformat(v)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=dt.timezone.utc)
    return parsed.astimezone(dt.timezone.utc)


def handle_payment_event(payload: Dict[str, Any], session_factory=SessionLocal) -> Optional[int]:
    """Expected payload:
    {
      "event": "payment.succeeded" | "payment.failed",
      "order_id": 123,
      "occurred_at": "2025-12-29T12:00:00Z" (optional)
    }
    Returns the updated payment id, or None when the event was skipped.
    """
    new_status = EVENT_STATUSES.get(payload.get("event") or "")
    order_id = payload.get("order_id")
    if new_status is None or not order_id:
        logger.info("payment_event_ignored", event=payload.get("event"), order_id=order_id)
        return None

    db = session_factory()
    try:
        payment = crud.get_payment_by_order(db, int(order_id))
        if not payment:
            logger.warning("payment_event_unknown_order", order_id=order_id)
            return None

        completed_at = None
        if new_status == PaymentStatus.SUCCESS:
            completed_at = _parse_iso_z(payload.get("occurred_at")) or dt.datetime.now(dt.timezone.utc)

        try:
            set_payment_status(db, payment.id, new_status, completed_at=completed_at)
        except (ValidationError, NotFound) as exc:
            logger.warning("payment_event_rejected", order_id=order_id, error=exc.code, message=exc.message)
            return None
        return payment.id
    finally:
        db.close()


def start_payment_results_consumer() -> None:
    start_consumer_in_thread(
        queue_name=PAYMENT_RESULTS_QUEUE,
        binding_keys=list(EVENT_STATUSES),
        handler=handle_payment_event,
    )
