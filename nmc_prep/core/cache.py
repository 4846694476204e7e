import json
import logging
import time
from typing import Optional

import redis

from nmc_prep.core.config import settings

logger = logging.getLogger(__name__)

redis_client = redis.Redis.from_url(settings.REDIS_URL, decode_responses=True)

def progress_key(user_id: str, session_id: str) -> str:
    return f"nmcprep:progress:{user_id}:{session_id}"

def view_key(user_id: str, device_id: str) -> str:
    return f"nmcprep:view:{user_id}:{device_id}"

def submit_key(session_id: str) -> str:
    return f"submit:{session_id}"

def cancel_key(session_id: str) -> str:
    return f"cancel:correction:{session_id}"

def denylist_key(jti: str) -> str:
    return f"denylist:{jti}"


class ProgressStore:
    """
    Best-effort crash-recovery state. Not authoritative: the database is.
    load() and save() never raise; a broken Redis just means no resume.
    """

    def __init__(self, client: Optional[redis.Redis] = None, ttl_seconds: Optional[int] = None):
        self.client = client or redis_client
        self.ttl = ttl_seconds or settings.PROGRESS_TTL_SECONDS

    def load(self, key: str) -> Optional[dict]:
        try:
            raw = self.client.get(key)
        except redis.RedisError as e:
            logger.warning("Could not load %s: %s", key, e)
            return None
        if not raw:
            return None
        try:
            data = json.loads(raw)
        except ValueError:
            logger.warning("Discarding unreadable state at %s", key)
            return None
        return data if isinstance(data, dict) else None

    def save(self, key: str, state: dict) -> bool:
        try:
            self.client.set(key, json.dumps(state, default=str), ex=self.ttl)
            return True
        except (redis.RedisError, TypeError, ValueError) as e:
            logger.warning("Could not save %s: %s", key, e)
            return False

    def delete(self, key: str) -> None:
        try:
            self.client.delete(key)
        except redis.RedisError as e:
            logger.warning("Could not delete %s: %s", key, e)


class RedisLatch:
    """One-shot latch shared by every process that can end a session."""

    def __init__(self, key: str, client: Optional[redis.Redis] = None, ttl_seconds: Optional[int] = None):
        self.key = key
        self.client = client or redis_client
        # a submitter that dies mid-write frees the latch when this runs out
        self.ttl = ttl_seconds or settings.SUBMIT_LATCH_TTL_SECONDS

    def acquire(self) -> bool:
        return bool(self.client.set(self.key, "1", nx=True, ex=self.ttl))

    def reset(self) -> None:
        self.client.delete(self.key)


class RedisCancellationToken:
    def __init__(self, session_id: str, client: Optional[redis.Redis] = None, ttl_seconds: int = 86400):
        self.key = cancel_key(session_id)
        self.client = client or redis_client
        self.ttl = ttl_seconds

    def cancel(self) -> None:
        self.client.set(self.key, "1", ex=self.ttl)

    def clear(self) -> None:
        self.client.delete(self.key)

    def is_cancelled(self) -> bool:
        return bool(self.client.exists(self.key))


class TokenDenylist:
    def __init__(self, client: Optional[redis.Redis] = None):
        self.client = client or redis_client

    def add(self, jti: str, expires_at: Optional[int] = None) -> None:
        ttl = int(expires_at - time.time()) if expires_at else settings.ACCESS_TOKEN_EXPIRE_MINUTES * 60
        if ttl > 0:
            self.client.set(denylist_key(jti), "1", ex=ttl)

    def contains(self, jti: str) -> bool:
        return bool(self.client.exists(denylist_key(jti)))
