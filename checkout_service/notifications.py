"""Order-confirmation message and its dispatch.

The message is read by a human operator on a messaging channel, so its
layout must stay stable: header line, one block per item, then subtotal,
shipping and grand total.
"""

from __future__ import annotations

import datetime as dt
from abc import ABC, abstractmethod
from functools import lru_cache
from typing import Optional
from urllib.parse import quote

import structlog
from pika.exceptions import AMQPError

from . import config
from .errors import ExternalServiceFailure
from .messaging import publish_event
from .models import Order
from .schemas import Recipient

logger = structlog.get_logger(__name__)

ORDER_MESSAGE_HEADER = "📦 PESANAN-THRIFTEASE 📦"
RULE = "=" * 25


def format_rupiah(amount: int) -> str:
    return f"Rp {amount:,}"


def build_order_message(order: Order, recipient: Optional[Recipient] = None) -> str:
    subtotal = order.total_amount - order.shipping_cost

    lines = [ORDER_MESSAGE_HEADER, RULE, f"📄 Order ID: {order.id}"]

    if recipient is not None:
        lines.append("")
        if recipient.full_name:
            lines.append(f"👤 Nama Pemesan: {recipient.full_name}")
        if recipient.phone_number:
            lines.append(f"📱 No. Telepon: {recipient.phone_number}")
        if recipient.address:
            lines.append("🏡 Alamat Pengiriman:")
            lines.append(f"    {recipient.address}")

    lines += ["", "🛒 Detail Pesanan:"]
    for item in order.items:
        lines.append(f"- {item.product_name}")
        lines.append(f"    📦 Qty: {item.quantity}")
        lines.append(f"    💰 Subtotal: {format_rupiah(item.price * item.quantity)}")

    lines += [
        "",
        RULE,
        f"💵 Subtotal Produk: {format_rupiah(subtotal)}",
        f"🚚 Ongkir: {format_rupiah(order.shipping_cost)}",
        RULE,
        f"💳 Total Pembayaran: {format_rupiah(order.total_amount)}",
        RULE,
        "🙏 Terima kasih telah berbelanja di Thriftease!",
        "Kami akan segera memproses pesanan Anda.",
    ]
    return "\n".join(lines)


def build_whatsapp_url(text: str, number: str = config.ORDER_WHATSAPP_NUMBER) -> str:
    return f"https://wa.me/{number}?text={quote(text, safe='')}"


class NotificationDispatcher(ABC):
    """Delivers a preformatted text to a destination."""

    @abstractmethod
    def send(self, destination: str, text: str) -> None:
        ...


class EventBusDispatcher(NotificationDispatcher):
    """Hands the message to the notification service over the event bus."""

    routing_key = "notification.requested"

    def send(self, destination: str, text: str) -> None:
        try:
            publish_event(
                self.routing_key,
                {
                    "event": self.routing_key,
                    "occurred_at": dt.datetime.now(dt.timezone.utc).isoformat().replace("+00:00", "Z"),
                    "destination": destination,
                    "text": text,
                },
            )
        except (AMQPError, OSError) as exc:
            raise ExternalServiceFailure(f"Notification bus unavailable: {exc}") from exc


@lru_cache(maxsize=1)
def get_dispatcher() -> NotificationDispatcher:
    return EventBusDispatcher()


def dispatch_order_confirmation(
    dispatcher: NotificationDispatcher,
    order_id: int,
    text: str,
    destination: str = config.NOTIFY_DESTINATION,
) -> bool:
    """Send the confirmation. Failure is logged; the order stays committed."""
    try:
        dispatcher.send(destination, text)
    except ExternalServiceFailure as exc:
        logger.warning("notification_dispatch_failed", order_id=order_id, destination=destination, error=exc.message)
        return False

    logger.info("notification_dispatched", order_id=order_id, destination=destination)
    return True
