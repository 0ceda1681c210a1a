"""
Async RabbitMQ consumer for the notification outbox using aio-pika.
"""
import asyncio
import logging
from typing import Awaitable, Callable, Optional

import aio_pika
from aio_pika import connect_robust
from aio_pika.abc import AbstractIncomingMessage

from .config import config

logger = logging.getLogger(__name__)


class RabbitMQClient:
    """Async RabbitMQ consumer bound to the notification exchange."""

    def __init__(self, queue_name: Optional[str] = None):
        """
        Initialize RabbitMQ client.

        Args:
            queue_name: Name of the queue to consume from.
        """
        self.queue_name = queue_name or config.RABBITMQ_QUEUE
        self.connection = None
        self.channel = None
        self.queue = None

    async def connect(self) -> bool:
        """
        Connect, declare the exchange and queue, and bind them.

        Returns:
            True if connection successful, False otherwise.
        """
        try:
            self.connection = await connect_robust(
                config.get_rabbitmq_url(),
                heartbeat=600,
                client_properties={
                    'connection_name': f'notification-worker-{self.queue_name}'
                }
            )

            self.channel = await self.connection.channel()
            await self.channel.set_qos(prefetch_count=config.RABBITMQ_PREFETCH_COUNT)

            exchange = await self.channel.declare_exchange(
                config.NOTIFICATION_EXCHANGE,
                aio_pika.ExchangeType.TOPIC,
                durable=True
            )
            self.queue = await self.channel.declare_queue(
                self.queue_name,
                durable=True,
                arguments={
                    'x-message-ttl': 86400000,  # 24 hours
                }
            )
            await self.queue.bind(exchange, routing_key=config.NOTIFICATION_ROUTING_KEY)

            logger.info(
                f"Connected to RabbitMQ: {config.RABBITMQ_HOST}:{config.RABBITMQ_PORT}, "
                f"Queue: {self.queue_name} <- {config.NOTIFICATION_EXCHANGE}"
                f"/{config.NOTIFICATION_ROUTING_KEY}"
            )
            return True

        except Exception as e:
            logger.error(f"Failed to connect to RabbitMQ: {e}")
            return False

    async def consume(self, callback: Callable[[AbstractIncomingMessage], Awaitable[None]]):
        """
        Consume messages until cancelled.

        The callback settles each message itself; anything it leaves
        unsettled after raising is requeued.
        """
        if not self.connection or not self.queue:
            if not await self.connect():
                raise RuntimeError("Failed to connect to RabbitMQ")

        try:
            logger.info(f"Starting to consume from queue: {self.queue_name}")

            async with self.queue.iterator() as queue_iter:
                async for message in queue_iter:
                    try:
                        await callback(message)
                        if not message.processed:
                            await message.ack()

                    except Exception as e:
                        logger.error(f"Error processing message: {e}", exc_info=True)
                        if not message.processed:
                            await message.nack(requeue=True)

        except asyncio.CancelledError:
            logger.info("Consumer cancelled, shutting down gracefully")
            raise

    async def close(self):
        """Close RabbitMQ connection."""
        try:
            if self.channel and not self.channel.is_closed:
                await self.channel.close()

            if self.connection and not self.connection.is_closed:
                await self.connection.close()
                logger.info("RabbitMQ connection closed")

        except Exception as e:
            logger.error(f"Error closing RabbitMQ connection: {e}")
