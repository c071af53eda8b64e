from typing import Protocol

import redis
from config import REDIS_URL

_client: redis.Redis | None = None


def get_redis() -> redis.Redis:
    global _client
    if _client is None:
        _client = redis.Redis.from_url(REDIS_URL, decode_responses=True)
    return _client


def close_redis():
    global _client
    if _client:
        _client.close()
        _client = None


class KeyValue(Protocol):
    """Atomic primitives the lock watcher needs from the backing store."""

    def set_if_absent_or_same_owner(self, key: str, owner: str, ttl: float) -> bool: ...

    def extend_if_same_owner(self, key: str, owner: str, ttl: float) -> bool: ...

    def delete_if_same_owner(self, key: str, owner: str) -> bool: ...

    def delete(self, key: str) -> None: ...


# Lua scripts run atomically on the server, so each check-and-act is one step.
_ACQUIRE = """
local current = redis.call('get', KEYS[1])
if current == false or current == ARGV[1] then
    redis.call('set', KEYS[1], ARGV[1], 'PX', ARGV[2])
    return 1
end
return 0
"""

_EXTEND = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('pexpire', KEYS[1], ARGV[2])
else
    return 0
end
"""

_RELEASE = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('del', KEYS[1])
else
    return 0
end
"""


def _millis(ttl: float) -> int:
    return max(1, int(ttl * 1000))


class RedisKeyValue:
    """
    KeyValue backed by a redis-py client.

    Ownership checks happen inside Lua scripts; nothing is read and then
    written from the client side.
    """

    def __init__(self, client: redis.Redis | None = None):
        self._client = client

    @property
    def client(self) -> redis.Redis:
        if self._client is None:
            self._client = get_redis()
        return self._client

    def set_if_absent_or_same_owner(self, key: str, owner: str, ttl: float) -> bool:
        return bool(self.client.eval(_ACQUIRE, 1, key, owner, _millis(ttl)))

    def extend_if_same_owner(self, key: str, owner: str, ttl: float) -> bool:
        return bool(self.client.eval(_EXTEND, 1, key, owner, _millis(ttl)))

    def delete_if_same_owner(self, key: str, owner: str) -> bool:
        return bool(self.client.eval(_RELEASE, 1, key, owner))

    def delete(self, key: str) -> None:
        self.client.delete(key)
