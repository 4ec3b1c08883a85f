"""Process-wide keyed counter store for the abuse guards.

Best-effort by contract:
  - lives in process memory, reset on every restart
  - NOT shared between instances (each replica counts on its own)
  - never consulted for usage-session correctness

Swap for a shared cache (Redis, Mongo TTL collection) if cross-instance
limits ever matter.
"""
import threading
from typing import Any, Dict, Iterator, Optional, Tuple


class CounterStore:
    """Thread-safe dict keyed by guard-specific strings."""

    def __init__(self) -> None:
        self._data: Dict[str, Any] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            return self._data.get(key)

    def set(self, key: str, record: Any) -> None:
        with self._lock:
            self._data[key] = record

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def clear(self, prefix: Optional[str] = None) -> None:
        with self._lock:
            if prefix is None:
                self._data.clear()
                return
            for key in [k for k in self._data if k.startswith(prefix)]:
                del self._data[key]

    def items(self, prefix: str = "") -> Iterator[Tuple[str, Any]]:
        with self._lock:
            snapshot = [(k, v) for k, v in self._data.items() if k.startswith(prefix)]
        return iter(snapshot)

    def __len__(self) -> int:
        return len(self._data)


_store = CounterStore()


def get_counter_store() -> CounterStore:
    return _store


def reset_counters() -> None:
    """Drop every guard record (tests, admin reset)."""
    _store.clear()
