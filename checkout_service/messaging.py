from __future__ import annotations

import json
import threading
import time
from typing import Callable, Iterable

import pika
import structlog
from pika.exceptions import AMQPError

from . import config

logger = structlog.get_logger(__name__)


def _connect() -> pika.BlockingConnection:
    params = pika.URLParameters(config.RABBITMQ_URL)
    # a few sane defaults
    params.heartbeat = 30
    params.blocked_connection_timeout = 30
    return pika.BlockingConnection(params)


def publish_event(routing_key: str, payload: dict) -> None:
    connection = _connect()
    try:
        ch = connection.channel()
        ch.exchange_declare(exchange=config.EVENTS_EXCHANGE, exchange_type="topic", durable=True)
        body = json.dumps(payload, ensure_ascii=False).encode("utf-8")
        ch.basic_publish(
            exchange=config.EVENTS_EXCHANGE,
            routing_key=routing_key,
            body=body,
            properties=pika.BasicProperties(
                content_type="application/json",
                delivery_mode=2,  # persistent
            ),
        )
    finally:
        connection.close()


def start_consumer_in_thread(
    *,
    queue_name: str,
    binding_keys: Iterable[str],
    handler: Callable[[dict], None],
    prefetch_count: int = 10,
    daemon: bool = True,
) -> threading.Thread:
    binding_keys = list(binding_keys)

    def _run() -> None:
        while True:
            connection = None
            try:
                connection = _connect()
                ch = connection.channel()
                ch.exchange_declare(exchange=config.EVENTS_EXCHANGE, exchange_type="topic", durable=True)

                ch.queue_declare(queue=queue_name, durable=True)
                for key in binding_keys:
                    ch.queue_bind(exchange=config.EVENTS_EXCHANGE, queue=queue_name, routing_key=key)

                ch.basic_qos(prefetch_count=prefetch_count)

                def _on_message(ch_, method, properties, body: bytes):
                    try:
                        payload = json.loads(body.decode("utf-8"))
                        handler(payload)
                        ch_.basic_ack(delivery_tag=method.delivery_tag)
                    except Exception:
                        logger.exception("consumer_handler_failed", queue=queue_name, routing_key=method.routing_key)
                        # No requeue, to avoid poison-message loops
                        ch_.basic_nack(delivery_tag=method.delivery_tag, requeue=False)

                ch.basic_consume(queue=queue_name, on_message_callback=_on_message, auto_ack=False)
                ch.start_consuming()
            except Exception as exc:
                # broker down, network issues, etc.
                logger.warning("consumer_connection_lost", queue=queue_name, error=str(exc))
                time.sleep(3)
            finally:
                if connection is not None and connection.is_open:
                    try:
                        connection.close()
                    except AMQPError:
                        pass

    t = threading.Thread(target=_run, name=f"consumer:{queue_name}", daemon=daemon)
    t.start()
    return t
