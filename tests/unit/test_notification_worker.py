"""Unit tests for the notification worker's inbox delivery."""

import json

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from versus.notification_worker.config import config
from versus.notification_worker.worker import InvalidEvent, NotificationWorker


class InboxRedis:
    """Minimal list-backed stand-in for the Redis commands the worker uses."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.lists = {}

    async def lpush(self, key, value):
        if self.fail:
            raise RedisConnectionError("redis down")
        self.lists.setdefault(key, []).insert(0, value)
        return len(self.lists[key])

    async def ltrim(self, key, start, end):
        self.lists[key] = self.lists[key][start:end + 1]


class IncomingMessage:
    """Records how the worker settled a message."""

    def __init__(self, body):
        self.body = body if isinstance(body, bytes) else json.dumps(body).encode()
        self.outcome = None

    async def ack(self):
        self.outcome = "ack"

    async def nack(self, requeue=True):
        self.outcome = f"nack:{requeue}"

    async def reject(self, requeue=False):
        self.outcome = f"reject:{requeue}"


def completed_event(participant_id="user-alice", test_id="t1"):
    return {
        "participant_id": participant_id,
        "kind": "vote_completed",
        "payload": {"test_id": test_id, "test_slug": "best-coffee-abc123"},
        "created_at": "2026-01-15T10:30:00+00:00",
    }


@pytest.mark.asyncio
class TestNotificationWorker:

    async def test_delivers_into_participant_inbox(self):
        redis_client = InboxRedis()
        worker = NotificationWorker(redis_client=redis_client, rabbitmq=object())
        message = IncomingMessage(completed_event())

        await worker._on_message(message)

        assert message.outcome == "ack"
        inbox = redis_client.lists[f"{config.INBOX_PREFIX}:user-alice"]
        entry = json.loads(inbox[0])
        assert entry["kind"] == "vote_completed"
        assert entry["payload"]["test_id"] == "t1"
        assert entry["read"] is False

    async def test_inbox_is_capped_newest_first(self, monkeypatch):
        monkeypatch.setattr(config, "INBOX_MAX_LENGTH", 3)
        redis_client = InboxRedis()
        worker = NotificationWorker(redis_client=redis_client, rabbitmq=object())

        for index in range(5):
            await worker.deliver(completed_event(test_id=f"t{index}"))

        inbox = redis_client.lists[f"{config.INBOX_PREFIX}:user-alice"]
        assert [json.loads(e)["payload"]["test_id"] for e in inbox] == ["t4", "t3", "t2"]

    @pytest.mark.parametrize(
        "body",
        [
            b"not json",
            b"[1, 2]",
            json.dumps({"kind": "vote_completed", "payload": {"test_id": "t1"}}).encode(),
            json.dumps({"participant_id": "u1", "kind": "vote_completed", "payload": "oops"}).encode(),
            json.dumps({"participant_id": "u1", "kind": "vote_completed", "payload": ["t1"]}).encode(),
        ],
    )
    async def test_malformed_events_are_rejected(self, body):
        redis_client = InboxRedis()
        worker = NotificationWorker(redis_client=redis_client, rabbitmq=object())
        message = IncomingMessage(body)

        await worker._on_message(message)

        assert message.outcome == "reject:False"
        assert redis_client.lists == {}

    async def test_redis_failure_requeues(self):
        worker = NotificationWorker(redis_client=InboxRedis(fail=True), rabbitmq=object())
        message = IncomingMessage(completed_event())

        await worker._on_message(message)

        assert message.outcome == "nack:True"

    async def test_parse_event_requires_recipient(self):
        event = completed_event()
        event["participant_id"] = None

        with pytest.raises(InvalidEvent):
            NotificationWorker.parse_event(json.dumps(event).encode())
