"""Shared fixtures: an in-memory store honoring the atomic key-value contract."""

import threading
import time

import pytest

from scheduler import StandaloneScheduler


class FakeKeyValue:
    """Thread-safe stand-in for Redis. Each operation is atomic under one lock."""

    def __init__(self):
        self._data: dict[str, tuple[str, float]] = {}
        self._lock = threading.Lock()
        self.calls: list[tuple[str, str]] = []
        self.extend_errors: list[Exception] = []

    def _live(self, key):
        entry = self._data.get(key)
        if entry is None:
            return None
        owner, expires_at = entry
        if time.monotonic() >= expires_at:
            del self._data[key]
            return None
        return owner

    def set_if_absent_or_same_owner(self, key, owner, ttl):
        with self._lock:
            self.calls.append(("acquire", owner))
            current = self._live(key)
            if current is None or current == owner:
                self._data[key] = (owner, time.monotonic() + ttl)
                return True
            return False

    def extend_if_same_owner(self, key, owner, ttl):
        with self._lock:
            self.calls.append(("extend", owner))
            if self.extend_errors:
                raise self.extend_errors.pop(0)
            if self._live(key) != owner:
                return False
            self._data[key] = (owner, time.monotonic() + ttl)
            return True

    def delete_if_same_owner(self, key, owner):
        with self._lock:
            self.calls.append(("release", owner))
            if self._live(key) != owner:
                return False
            del self._data[key]
            return True

    def delete(self, key):
        with self._lock:
            self.calls.append(("delete", key))
            self._data.pop(key, None)

    # test helpers

    def owner_of(self, key):
        with self._lock:
            return self._live(key)

    def put(self, key, owner, ttl=60.0):
        with self._lock:
            self._data[key] = (owner, time.monotonic() + ttl)

    def expire(self, key):
        with self._lock:
            self._data.pop(key, None)

    def count(self, op):
        with self._lock:
            return sum(1 for name, _ in self.calls if name == op)


class AlwaysHeldKeyValue(FakeKeyValue):
    """Every acquisition finds the key held by somebody else."""

    def set_if_absent_or_same_owner(self, key, owner, ttl):
        with self._lock:
            self.calls.append(("acquire", owner))
        return False


@pytest.fixture
def kv():
    return FakeKeyValue()


@pytest.fixture
def held_kv():
    return AlwaysHeldKeyValue()


@pytest.fixture
def scheduler():
    s = StandaloneScheduler(max_workers=4, grace=1.0)
    yield s
    s.close()
