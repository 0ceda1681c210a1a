"""RabbitMQ outbox for participant notifications."""
import json
from typing import Optional
import aio_pika
from aio_pika import connect_robust, Message, DeliveryMode
from aio_pika.pool import Pool
import logging

from ..shared.models import utc_now
from .config import settings

logger = logging.getLogger(__name__)

VOTE_COMPLETED = "vote_completed"


class NotificationPublisher:
    """
    Async RabbitMQ publisher with connection pooling.

    Publishing only enqueues the event; the notification worker delivers
    it. A failed publish is reported through the return value and never
    raised, so it cannot undo the vote that triggered it.
    """

    def __init__(self):
        self.connection_pool: Optional[Pool] = None
        self.channel_pool: Optional[Pool] = None

    async def get_connection(self) -> aio_pika.Connection:
        """Get a connection from the pool."""
        return await connect_robust(settings.rabbitmq_url)

    async def get_channel(self) -> aio_pika.Channel:
        """Get a channel from the pool."""
        async with self.connection_pool.acquire() as connection:
            return await connection.channel()

    async def initialize(self):
        """Initialize connection and channel pools."""
        try:
            self.connection_pool = Pool(
                self.get_connection,
                max_size=settings.RABBITMQ_POOL_SIZE
            )
            self.channel_pool = Pool(
                self.get_channel,
                max_size=settings.RABBITMQ_POOL_SIZE
            )

            async with self.channel_pool.acquire() as channel:
                await channel.declare_exchange(
                    settings.NOTIFICATION_EXCHANGE,
                    aio_pika.ExchangeType.TOPIC,
                    durable=True
                )

            logger.info("Notification publisher initialized successfully")

        except Exception as e:
            logger.error(f"Failed to initialize notification publisher: {e}")
            raise

    async def publish(self, participant_id: str, kind: str, payload: dict) -> bool:
        """
        Enqueue a notification for a participant.

        Args:
            participant_id: Recipient
            kind: Notification kind, e.g. "vote_completed"
            payload: Kind-specific data (test id, title, slug, ...)

        Returns:
            bool: True if published successfully, False otherwise
        """
        event = {
            "participant_id": participant_id,
            "kind": kind,
            "payload": payload,
            "created_at": utc_now().isoformat(),
        }
        try:
            async with self.channel_pool.acquire() as channel:
                exchange = await channel.get_exchange(settings.NOTIFICATION_EXCHANGE)

                message = Message(
                    body=json.dumps(event).encode(),
                    delivery_mode=DeliveryMode.PERSISTENT,
                    content_type="application/json",
                    timestamp=utc_now()
                )

                await exchange.publish(
                    message,
                    routing_key=settings.NOTIFICATION_ROUTING_KEY
                )

                logger.info(
                    f"Published notification: participant={participant_id}, "
                    f"kind={kind}, test_id={payload.get('test_id')}"
                )
                return True

        except Exception as e:
            logger.error(f"Failed to publish notification: {e}")
            return False

    async def check_health(self) -> bool:
        """
        Check RabbitMQ connection health.

        Returns:
            bool: True if healthy, False otherwise
        """
        try:
            async with self.channel_pool.acquire() as channel:
                await channel.declare_queue("health_check", auto_delete=True)
                return True
        except Exception as e:
            logger.error(f"RabbitMQ health check failed: {e}")
            return False

    async def close(self):
        """Close all connections and channels."""
        try:
            if self.channel_pool:
                await self.channel_pool.close()
            if self.connection_pool:
                await self.connection_pool.close()
            logger.info("Notification publisher closed successfully")
        except Exception as e:
            logger.error(f"Error closing notification publisher: {e}")
