"""
Pending Table
=============

Bounded map of in-flight calls, keyed by thread id.

- Lock striping: each key hashes to one shard with its own lock, so concurrent
  hooks on different threads only contend when they share a shard.
- Capacity is a non-blocking slot counter shared by all shards. Inserting a new
  key when no slot is free fails silently; overwriting an existing key never
  needs a slot.
- Orphaned entries (exit never seen) are only reclaimed when their key is reused.
"""

from __future__ import annotations

import threading
from typing import Dict, List, Optional

from ._types import PendingRequest

DEFAULT_SHARDS = 64


class PendingTable:
    def __init__(self, capacity: int, shards: int = DEFAULT_SHARDS):
        if capacity < 1:
            raise ValueError(f"capacity must be >= 1, got {capacity}")
        self.capacity = capacity
        self._nshards = max(1, min(shards, capacity))
        self._locks: List[threading.Lock] = [threading.Lock() for _ in range(self._nshards)]
        self._shards: List[Dict[int, PendingRequest]] = [{} for _ in range(self._nshards)]
        self._slots = threading.BoundedSemaphore(capacity)

    def upsert(self, key: int, request: PendingRequest) -> bool:
        """Insert or overwrite. Returns False if the table is full and the key is new."""
        idx = key % self._nshards
        shard = self._shards[idx]
        with self._locks[idx]:
            if key not in shard:
                if not self._slots.acquire(blocking=False):
                    return False
            shard[key] = request
        return True

    def pop(self, key: int) -> Optional[PendingRequest]:
        idx = key % self._nshards
        with self._locks[idx]:
            request = self._shards[idx].pop(key, None)
        if request is not None:
            self._slots.release()
        return request

    def get(self, key: int) -> Optional[PendingRequest]:
        idx = key % self._nshards
        with self._locks[idx]:
            return self._shards[idx].get(key)

    def __contains__(self, key: int) -> bool:
        return self.get(key) is not None

    def __len__(self) -> int:
        return sum(len(s) for s in self._shards)
