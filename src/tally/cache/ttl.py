import time
from dataclasses import dataclass
from typing import Callable, Dict, Generic, Hashable, Optional, TypeVar

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")


@dataclass
class _Slot(Generic[V]):
    value: V
    stored_at: float


class TTLCache(Generic[K, V]):
    """
    An in-process map whose entries disappear after a fixed time-to-live.

    Properties:
    - get() never returns an entry whose age is >= ttl
    - set() and touch() restart an entry's age
    - sweep() only removes expired entries
    - The underlying dict is private; there is no iteration over entries

    All methods are synchronous, so on a single event loop no two callers
    interleave inside one operation.
    """

    def __init__(self, ttl: float, clock: Callable[[], float] = time.monotonic):
        if ttl <= 0:
            raise ValueError(f"ttl must be positive, got {ttl}")
        self.ttl = ttl
        self._clock = clock
        self._slots: Dict[K, _Slot[V]] = {}

    def _expired(self, slot: _Slot[V], now: float) -> bool:
        return now - slot.stored_at >= self.ttl

    def get(self, key: K) -> Optional[V]:
        slot = self._slots.get(key)
        if slot is None:
            return None
        if self._expired(slot, self._clock()):
            return None
        return slot.value

    def set(self, key: K, value: V) -> None:
        now = self._clock()
        self._slots[key] = _Slot(value=value, stored_at=now)

    def touch(self, key: K, update: Callable[[V], V]) -> bool:
        """Replace a live entry with ``update(entry)`` and restart its age.

        Returns False without calling ``update`` if the key is absent or expired.
        """
        slot = self._slots.get(key)
        now = self._clock()
        if slot is None or self._expired(slot, now):
            return False
        self._slots[key] = _Slot(value=update(slot.value), stored_at=now)
        return True

    def invalidate(self, key: K) -> bool:
        return self._slots.pop(key, None) is not None

    def sweep(self) -> int:
        """Drop every expired entry; returns how many were removed."""
        now = self._clock()
        expired = [key for key, slot in self._slots.items() if self._expired(slot, now)]
        for key in expired:
            del self._slots[key]
        return len(expired)

    def __len__(self) -> int:
        return len(self._slots)
