"""RabbitMQ relay that fans live tracking events out across service nodes."""
import json
import logging
from typing import Any, Awaitable, Callable, Optional

import aio_pika
from aio_pika import DeliveryMode, ExchangeType, Message
from aio_pika.abc import AbstractChannel, AbstractConnection, AbstractExchange, AbstractQueue
from tenacity import retry, stop_after_attempt, wait_exponential

from .events import TrackingEvent, deserialize_event

logger = logging.getLogger(__name__)

EXCHANGE_NAME = "tracking_events"


class MessageBroker:
    """
    Topic-exchange relay for live events.

    Every node binds its own exclusive, auto-deleted queue, so a published
    event reaches all nodes once. Messages are transient and never retried:
    live updates are best-effort, at-most-once.
    """

    def __init__(self, rabbitmq_url: str, node_id: str):
        self.rabbitmq_url = rabbitmq_url
        self.node_id = node_id
        self.connection: Optional[AbstractConnection] = None
        self.channel: Optional[AbstractChannel] = None
        self.exchange: Optional[AbstractExchange] = None
        self.queue: Optional[AbstractQueue] = None

    @retry(
        stop=stop_after_attempt(5),
        wait=wait_exponential(multiplier=1, min=2, max=10)
    )
    async def connect(self):
        """Establish connection to RabbitMQ."""
        logger.info("Connecting to RabbitMQ...")
        self.connection = await aio_pika.connect_robust(self.rabbitmq_url)
        self.channel = await self.connection.channel()

        self.exchange = await self.channel.declare_exchange(
            EXCHANGE_NAME,
            ExchangeType.TOPIC,
            durable=True
        )

        logger.info("Connected to RabbitMQ successfully")

    async def disconnect(self):
        """Close connection to RabbitMQ."""
        if self.connection:
            await self.connection.close()
            logger.info("Disconnected from RabbitMQ")

    async def publish_event(self, event: TrackingEvent):
        """
        Relay an event to the other nodes.

        Args:
            event: The event to relay; its origin_node is stamped with this node
        """
        if not self.exchange:
            raise RuntimeError("Message broker not connected")

        event = event.model_copy(update={"origin_node": self.node_id})
        message = Message(
            body=json.dumps(event.model_dump(mode="json")).encode(),
            delivery_mode=DeliveryMode.NOT_PERSISTENT,
            content_type="application/json",
            headers={
                "event_type": event.event_type.value,
                "event_id": str(event.event_id),
                "origin_node": self.node_id,
            }
        )

        await self.exchange.publish(
            message,
            routing_key=f"shipment.{event.event_type.value}"
        )

        logger.debug(
            f"Relayed event: {event.event_type.value} "
            f"(id={event.event_id}, shipment={event.shipment_id})"
        )

    async def consume_relayed(self, handler: Callable[[TrackingEvent], Awaitable[Any]]):
        """
        Consume events published by other nodes.

        Args:
            handler: Async function delivering the event to local observers
        """
        if not self.channel:
            raise RuntimeError("Message broker not connected")

        self.queue = await self.channel.declare_queue(
            f"tracking_relay.{self.node_id}",
            exclusive=True,
            auto_delete=True,
        )
        await self.queue.bind(self.exchange, routing_key="shipment.#")

        async def process_message(message: aio_pika.IncomingMessage):
            async with message.process(requeue=False, ignore_processed=True):
                try:
                    event = deserialize_event(json.loads(message.body.decode()))
                    if event.origin_node == self.node_id:
                        return
                    await handler(event)
                except Exception as e:
                    # Dropped, not requeued
                    logger.error(f"Error handling relayed event: {str(e)}", exc_info=True)

        await self.queue.consume(process_message)
        logger.info(f"Consuming relayed events on queue {self.queue.name}")
