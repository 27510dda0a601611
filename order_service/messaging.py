import json
from datetime import datetime, timezone
from uuid import uuid4

import aio_pika

from order_service.config import RABBITMQ_URL
from order_service.logger import get_logger

logger = get_logger(__name__)

ORDER_EXCHANGE = "order_exchange"


def build_order_event(event_type: str, order, **extra) -> dict:
    event = {
        "event_id": str(uuid4()),
        "event_type": event_type,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "order_id": order.id,
        "user_id": order.user_id,
        "status": order.status.value,
        "total_amount": str(order.total_amount),
    }
    event.update(extra)
    return event


class EventPublisher:
    """Publishes order events for the notification and delivery services.

    Publishing is best effort: a broker outage is logged and never undoes a
    committed order change.
    """

    def __init__(self, url: str = RABBITMQ_URL, exchange_name: str = ORDER_EXCHANGE):
        self.url = url
        self.exchange_name = exchange_name
        self.connection = None
        self.channel = None
        self.exchange = None

    async def connect(self):
        try:
            self.connection = await aio_pika.connect_robust(self.url)
            self.channel = await self.connection.channel()
            self.exchange = await self.channel.declare_exchange(
                self.exchange_name, aio_pika.ExchangeType.TOPIC, durable=True
            )
            logger.info("RabbitMQ setup complete")
        except Exception as e:
            logger.error("Error setting up RabbitMQ: {}", e)

    async def close(self):
        if self.connection is not None and not self.connection.is_closed:
            await self.connection.close()

    async def publish(self, routing_key: str, message_data: dict):
        if self.exchange is None:
            logger.warning("RabbitMQ exchange not available, dropping {}", message_data["event_type"])
            return

        message = aio_pika.Message(
            json.dumps(message_data).encode("utf-8"),
            content_type="application/json",
            delivery_mode=aio_pika.DeliveryMode.PERSISTENT,
        )
        try:
            await self.exchange.publish(message, routing_key=routing_key)
            logger.info("Published event to {}: {}", routing_key, message_data["event_type"])
        except Exception as e:
            logger.error("Error publishing event {}: {}", message_data["event_type"], e)

    async def order_created(self, order):
        await self.publish("order.created", build_order_event(
            "OrderCreated", order,
            payment_method=order.payment_method.value,
            items=[
                {"product_id": item.product_id, "quantity": item.quantity, "price": str(item.price)}
                for item in order.items
            ],
        ))

    async def order_status_changed(self, order, previous_status):
        event_type = f"Order{order.status.value.capitalize()}"
        await self.publish(
            f"order.{order.status.value}",
            build_order_event(event_type, order, previous_status=previous_status.value),
        )
