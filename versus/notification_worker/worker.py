"""
Notification worker service.

Consumes "vote completed" events from the outbox exchange and pushes each
one into the participant's Redis inbox (a capped list, newest first),
where the account and notification UI read them.
"""
import asyncio
import json
import logging
import signal
import sys
from typing import Any, Dict, Optional

import redis.asyncio as redis
from aio_pika.abc import AbstractIncomingMessage
from prometheus_client import Counter, start_http_server

from .config import config
from .rabbitmq_client import RabbitMQClient

# Configure logging
logging.basicConfig(
    level=getattr(logging, config.LOG_LEVEL),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.StreamHandler(sys.stdout)
    ]
)
logger = logging.getLogger(__name__)

# Prometheus metrics
notifications_delivered = Counter(
    'notifications_delivered_total',
    'Notification events handled by the worker',
    ['status']
)

REQUIRED_FIELDS = ('participant_id', 'kind', 'payload')


class InvalidEvent(ValueError):
    """Event is malformed and will never be deliverable."""
    pass


class NotificationWorker:
    """Delivers outbox events into per-participant inboxes."""

    def __init__(self, redis_client: Optional[redis.Redis] = None, rabbitmq: Optional[RabbitMQClient] = None):
        self.redis = redis_client or redis.from_url(
            config.get_redis_url(),
            encoding="utf-8",
            decode_responses=True
        )
        self.rabbitmq = rabbitmq or RabbitMQClient()
        self.consumer_task: Optional[asyncio.Task] = None

    @staticmethod
    def inbox_key(participant_id: str) -> str:
        return f"{config.INBOX_PREFIX}:{participant_id}"

    @staticmethod
    def parse_event(body: bytes) -> Dict[str, Any]:
        """
        Decode and check an outbox message body.

        Raises:
            InvalidEvent: If the body is not a JSON event with a recipient
        """
        try:
            event = json.loads(body.decode())
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise InvalidEvent(f"Undecodable message: {e}") from e
        if not isinstance(event, dict):
            raise InvalidEvent("Event must be a JSON object")
        missing = [name for name in REQUIRED_FIELDS if not event.get(name)]
        if missing:
            raise InvalidEvent(f"Event missing fields: {', '.join(missing)}")
        if not isinstance(event['payload'], dict):
            raise InvalidEvent("Event payload must be a JSON object")
        return event

    async def deliver(self, event: Dict[str, Any]) -> int:
        """
        Push an event onto the front of the participant's inbox.

        The inbox is trimmed to INBOX_MAX_LENGTH entries.

        Returns:
            int: Inbox length after the push
        """
        key = self.inbox_key(event['participant_id'])
        entry = json.dumps({
            'kind': event['kind'],
            'payload': event['payload'],
            'created_at': event.get('created_at'),
            'read': False,
        })
        length = await self.redis.lpush(key, entry)
        await self.redis.ltrim(key, 0, config.INBOX_MAX_LENGTH - 1)
        return min(length, config.INBOX_MAX_LENGTH)

    async def _on_message(self, message: AbstractIncomingMessage):
        """
        Callback for RabbitMQ messages.

        Malformed events are rejected for good; Redis failures are
        requeued so the event is retried.
        """
        try:
            event = self.parse_event(message.body)
        except InvalidEvent as e:
            logger.error(f"Dropping notification event: {e}")
            notifications_delivered.labels(status='invalid').inc()
            await message.reject(requeue=False)
            return

        try:
            await self.deliver(event)
        except redis.RedisError as e:
            logger.error(f"Redis error delivering notification: {e}")
            notifications_delivered.labels(status='error').inc()
            await message.nack(requeue=True)
            return

        notifications_delivered.labels(status='delivered').inc()
        logger.info(
            f"Notification delivered: participant={event['participant_id']}, "
            f"kind={event['kind']}, test_id={event['payload'].get('test_id')}"
        )
        await message.ack()

    def _request_shutdown(self, signum):
        logger.info(f"Received signal {signum}, initiating graceful shutdown...")
        if self.consumer_task:
            self.consumer_task.cancel()

    async def start(self):
        """Start the worker and consume until a shutdown signal arrives."""
        logger.info(f"Starting Prometheus metrics server on port {config.PROMETHEUS_PORT}")
        start_http_server(config.PROMETHEUS_PORT)

        await self.redis.ping()
        logger.info("Redis connection established")

        loop = asyncio.get_running_loop()
        for signum in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(signum, self._request_shutdown, signum)

        self.consumer_task = asyncio.create_task(self.rabbitmq.consume(self._on_message))
        try:
            await self.consumer_task
        except asyncio.CancelledError:
            logger.info("Consumer cancelled")

    async def shutdown(self):
        """Graceful shutdown."""
        logger.info("Shutting down notification worker...")
        await self.rabbitmq.close()
        try:
            await self.redis.close()
        except Exception as e:
            logger.error(f"Error closing Redis connection: {e}")
        logger.info("Notification worker shutdown complete")


async def main():
    """Main entry point."""
    logger.info("=" * 60)
    logger.info("Starting Notification Worker")
    logger.info(f"RabbitMQ: {config.RABBITMQ_HOST}:{config.RABBITMQ_PORT}")
    logger.info(f"Queue: {config.RABBITMQ_QUEUE}")
    logger.info(f"Inbox: {config.INBOX_PREFIX}:<participant> (max {config.INBOX_MAX_LENGTH})")
    logger.info("=" * 60)

    worker = NotificationWorker()

    try:
        await worker.start()
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
    finally:
        await worker.shutdown()


def run():
    asyncio.run(main())


if __name__ == "__main__":
    run()
