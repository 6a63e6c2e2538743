"""
Key/value stores backing the rate limiter and the domain abuse detector.

Only process-local storage ships here. A deployment running several proxy
processes needs a shared implementation of CounterStore (for example on top of
a distributed cache) so that every process sees the same counters.
"""

import threading


class CounterStore:
    """Interface shared by every store implementation."""

    def get(self, key):
        raise NotImplementedError

    def set(self, key, value):
        raise NotImplementedError

    def delete(self, key):
        raise NotImplementedError

    def items(self):
        raise NotImplementedError

    def update(self, key, fn):
        """
        Atomically read-modify-write one entry.

        fn receives the current value (or None) and returns (new_value, result).
        A new_value of None removes the entry. The result is handed back to the caller.
        """
        raise NotImplementedError

    def sweep(self, is_expired):
        """Delete every entry for which is_expired(key, value) holds. Returns the removed keys."""
        raise NotImplementedError


class MemoryStore(CounterStore):
    """A dict guarded by a lock. Entries vanish with the process."""

    def __init__(self):
        self._data = {}
        self._lock = threading.Lock()

    def get(self, key):
        with self._lock:
            return self._data.get(key)

    def set(self, key, value):
        with self._lock:
            self._data[key] = value

    def delete(self, key):
        with self._lock:
            self._data.pop(key, None)

    def items(self):
        with self._lock:
            return list(self._data.items())

    def update(self, key, fn):
        with self._lock:
            new_value, result = fn(self._data.get(key))
            if new_value is None:
                self._data.pop(key, None)
            else:
                self._data[key] = new_value
            return result

    def sweep(self, is_expired):
        with self._lock:
            expired = [key for key, value in self._data.items() if is_expired(key, value)]
            for key in expired:
                del self._data[key]
            return expired
