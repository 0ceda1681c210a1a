"""Resolve request credentials to a participant identity."""
import logging
from dataclasses import dataclass
from typing import Optional

import redis.asyncio as redis

from .config import settings

logger = logging.getLogger(__name__)

ADMIN_ROLE = "admin"


@dataclass(frozen=True)
class Identity:
    """Who is calling: a participant id (None for guests) and an admin flag."""
    participant_id: Optional[str] = None
    is_admin: bool = False

    @property
    def is_guest(self) -> bool:
        return self.participant_id is None


GUEST = Identity()


def bearer_token(authorization: Optional[str]) -> Optional[str]:
    """Extract the token from an ``Authorization: Bearer <token>`` header."""
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


class IdentityResolver:
    """
    Looks up session tokens issued by the account service.

    The account service stores each live token as a Redis hash
    ``auth_tokens:<token>`` with ``user_id`` and ``role`` fields. Unknown or
    missing tokens resolve to a guest.
    """

    def __init__(self, client: redis.Redis):
        self.client = client

    @classmethod
    def from_settings(cls) -> "IdentityResolver":
        client = redis.from_url(
            settings.redis_url,
            encoding="utf-8",
            decode_responses=True
        )
        return cls(client)

    async def resolve(self, authorization: Optional[str]) -> Identity:
        token = bearer_token(authorization)
        if token is None:
            return GUEST

        record = await self.client.hgetall(f"{settings.AUTH_TOKEN_PREFIX}:{token}")
        if not record or not record.get("user_id"):
            logger.debug("Unknown auth token, treating caller as guest")
            return GUEST

        return Identity(
            participant_id=record["user_id"],
            is_admin=record.get("role") == ADMIN_ROLE,
        )

    async def check_health(self) -> bool:
        try:
            await self.client.ping()
            return True
        except Exception as e:
            logger.error(f"Redis health check failed: {e}")
            return False

    async def close(self):
        try:
            await self.client.close()
            logger.info("Redis connection closed")
        except Exception as e:
            logger.error(f"Error closing Redis connection: {e}")
