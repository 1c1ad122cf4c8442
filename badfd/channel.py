"""
Event Channel
=============

Bounded, lossy, multi-producer / single-consumer ring of fixed-size slots.

Producers call `reserve()`, which claims the next slot or returns None when the
ring is full, then `commit()` (or `discard()`) the reservation. The consumer sees
records strictly in claim order and stops at the first slot that is still being
written, so a partially written record is never observable.

Usage:
  channel = EventChannel(1 << 24)
  res = channel.reserve()
  if res is not None:
      res.commit(event)
  for raw in channel.poll(timeout=0.3):
      AnomalyEvent.unpack(raw)
"""

from __future__ import annotations

import logging
import threading
from typing import List, Optional

from ._types import AnomalyEvent, EVENT_SIZE
from .errors import ChannelClosed

logger = logging.getLogger("channel")

_FREE = 0
_BUSY = 1
_COMMITTED = 2
_DISCARDED = 3


class Reservation:
    __slots__ = ("_channel", "seq", "view", "_done")

    def __init__(self, channel: "EventChannel", seq: int, view: memoryview):
        self._channel = channel
        self.seq = seq
        self.view = view
        self._done = False

    def commit(self, event: Optional[AnomalyEvent] = None) -> None:
        """Publish the slot. If `event` is given it is encoded into the slot first."""
        if self._done:
            raise RuntimeError(f"reservation {self.seq} already released")
        if event is not None:
            event.pack_into(self.view)
        self._done = True
        self._channel._publish(self.seq, _COMMITTED)

    def discard(self) -> None:
        """Release the slot without ever exposing it to the consumer."""
        if self._done:
            raise RuntimeError(f"reservation {self.seq} already released")
        self._done = True
        self._channel._publish(self.seq, _DISCARDED)


class EventChannel:
    def __init__(self, capacity: int, record_size: int = EVENT_SIZE):
        slots = capacity // record_size
        if slots < 1:
            raise ValueError(f"capacity {capacity} cannot hold a single {record_size}-byte record")
        self.record_size = record_size
        self.slots = slots
        self._buf = bytearray(slots * record_size)
        self._state = bytearray(slots)
        # head: next sequence to claim. tail: next sequence the consumer reads.
        self._head = 0
        self._tail = 0
        self._claim_lock = threading.Lock()
        self._ready = threading.Event()
        self._closed = False

    # ----------------------------
    # Producer side
    # ----------------------------

    def reserve(self) -> Optional[Reservation]:
        with self._claim_lock:
            seq = self._head
            # a stale tail only under-reports free space
            if seq - self._tail >= self.slots:
                return None
            self._head = seq + 1
            idx = seq % self.slots
            self._state[idx] = _BUSY
        start = idx * self.record_size
        return Reservation(self, seq, memoryview(self._buf)[start:start + self.record_size])

    def _publish(self, seq: int, state: int) -> None:
        self._state[seq % self.slots] = state
        self._ready.set()

    # ----------------------------
    # Consumer side
    # ----------------------------

    def drain(self, max_records: Optional[int] = None) -> List[bytes]:
        """Return committed records in claim order without waiting."""
        out: List[bytes] = []
        tail = self._tail
        while max_records is None or len(out) < max_records:
            if tail == self._head:
                break
            idx = tail % self.slots
            state = self._state[idx]
            if state == _BUSY or state == _FREE:
                break
            if state == _COMMITTED:
                start = idx * self.record_size
                out.append(bytes(self._buf[start:start + self.record_size]))
            self._state[idx] = _FREE
            tail += 1
            self._tail = tail
        return out

    def poll(self, timeout: Optional[float] = None) -> List[bytes]:
        """
        Drain committed records, waiting up to `timeout` seconds for the first one.
        Raises ChannelClosed once the channel is closed and nothing is left.
        """
        self._ready.clear()
        records = self.drain()
        if records:
            return records
        if self._closed:
            raise ChannelClosed("event channel closed")
        self._ready.wait(timeout)
        records = self.drain()
        if not records and self._closed:
            raise ChannelClosed("event channel closed")
        return records

    def read_events(self, timeout: Optional[float] = None) -> List[AnomalyEvent]:
        return [AnomalyEvent.unpack(raw) for raw in self.poll(timeout)]

    def close(self) -> None:
        self._closed = True
        self._ready.set()
        logger.debug("Event channel closed with %d slot(s) not yet consumed", len(self))

    @property
    def closed(self) -> bool:
        return self._closed

    def __len__(self) -> int:
        """Slots claimed and not yet consumed (committed or in flight)."""
        return self._head - self._tail

    @property
    def free_slots(self) -> int:
        return self.slots - len(self)
