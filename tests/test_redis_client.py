"""Tests for the Redis-backed key-value operations."""

from unittest.mock import MagicMock, patch

import pytest
import redis

import redis_client
from redis_client import RedisKeyValue


@pytest.fixture
def client():
    return MagicMock(spec=redis.Redis)


def test_acquire_runs_script_with_owner_and_millis(client):
    client.eval.return_value = 1
    kv = RedisKeyValue(client)

    assert kv.set_if_absent_or_same_owner("lock:a", "node-a:1", 1.5) is True

    script, numkeys, key, owner, ttl = client.eval.call_args.args
    assert "'set', KEYS[1], ARGV[1], 'PX', ARGV[2]" in script
    assert (numkeys, key, owner, ttl) == (1, "lock:a", "node-a:1", 1500)


def test_acquire_reports_contention(client):
    client.eval.return_value = 0
    assert RedisKeyValue(client).set_if_absent_or_same_owner("lock:a", "node-a:1", 1.0) is False


def test_extend_uses_pexpire(client):
    client.eval.return_value = 1
    kv = RedisKeyValue(client)

    assert kv.extend_if_same_owner("lock:a", "node-a:1", 0.2) is True

    script, *args = client.eval.call_args.args
    assert "pexpire" in script
    assert args == [1, "lock:a", "node-a:1", 200]


def test_extend_of_foreign_key_fails(client):
    client.eval.return_value = 0
    assert RedisKeyValue(client).extend_if_same_owner("lock:a", "node-a:1", 1.0) is False


def test_release_is_compare_and_delete(client):
    client.eval.return_value = 0
    kv = RedisKeyValue(client)

    assert kv.delete_if_same_owner("lock:a", "node-a:1") is False

    script, *args = client.eval.call_args.args
    assert "redis.call('del', KEYS[1])" in script
    assert args == [1, "lock:a", "node-a:1"]


def test_delete_is_unconditional(client):
    RedisKeyValue(client).delete("lock:a")
    client.delete.assert_called_once_with("lock:a")
    client.eval.assert_not_called()


def test_tiny_ttl_is_at_least_one_millisecond(client):
    client.eval.return_value = 1
    RedisKeyValue(client).set_if_absent_or_same_owner("lock:a", "o", 0.0001)
    assert client.eval.call_args.args[-1] == 1


def test_store_errors_propagate(client):
    client.eval.side_effect = redis.ConnectionError("refused")
    with pytest.raises(redis.ConnectionError):
        RedisKeyValue(client).set_if_absent_or_same_owner("lock:a", "o", 1.0)


def test_shared_client_is_created_once_and_closed():
    redis_client.close_redis()
    fake = MagicMock(spec=redis.Redis)
    with patch.object(redis.Redis, "from_url", return_value=fake) as from_url:
        try:
            assert redis_client.get_redis() is fake
            assert redis_client.get_redis() is fake
            from_url.assert_called_once_with(redis_client.REDIS_URL, decode_responses=True)
        finally:
            redis_client.close_redis()

    fake.close.assert_called_once()
    assert redis_client._client is None


def test_key_value_falls_back_to_shared_client():
    fake = MagicMock(spec=redis.Redis)
    with patch.object(redis_client, "get_redis", return_value=fake):
        RedisKeyValue().delete("lock:a")
    fake.delete.assert_called_once_with("lock:a")
