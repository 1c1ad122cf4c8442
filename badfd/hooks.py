"""
Entry/exit hooks for the open family of calls.

The hooks run inline with the traced call, so they never block, never retry and
never raise. Every failure is a silent local drop, counted in `HookStats`.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, asdict
from typing import Callable, Dict, Optional

from ._types import AnomalyEvent, FILENAME_LEN, PathRef, PendingRequest, TASK_COMM_LEN, TaskInfo
from .channel import EventChannel
from .config import TracerConfig
from .pending import PendingTable
from .policy import AnomalyPolicy

logger = logging.getLogger("hooks")

TaskLookup = Callable[[int], TaskInfo]


def _default_task_lookup(tid: int) -> TaskInfo:
    return TaskInfo(pid=tid, comm=b"")


@dataclass
class HookStats:
    """Diagnostic counters. Updated without locks, so approximate under contention."""
    entries: int = 0
    exits: int = 0
    anomalies: int = 0
    emitted: int = 0
    correlation_misses: int = 0
    table_full_drops: int = 0
    channel_full_drops: int = 0
    read_failures: int = 0
    encode_failures: int = 0

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)


class OpenHooks:
    def __init__(
            self,
            config: TracerConfig,
            channel: Optional[EventChannel] = None,
            table: Optional[PendingTable] = None,
            task_lookup: TaskLookup = _default_task_lookup,
            clock: Callable[[], int] = time.monotonic_ns,
    ):
        self.config = config
        self.policy = AnomalyPolicy(config)
        self.table = table if table is not None else PendingTable(config.pending_capacity)
        self.channel = channel if channel is not None else EventChannel(config.channel_capacity)
        self.task_lookup = task_lookup
        self.clock = clock
        self.stats = HookStats()

    def on_entry(self, tid: int, start_ns: Optional[int] = None, path_ref: Optional[PathRef] = None) -> None:
        """Record the start of a call. The path is kept as a reference, never read here."""
        self.stats.entries += 1
        if start_ns is None:
            start_ns = self.clock()
        if not self.table.upsert(tid, PendingRequest(start_ns, path_ref)):
            self.stats.table_full_drops += 1

    def on_exit(self, tid: int, ret: int, now_ns: Optional[int] = None) -> bool:
        """Finish a call. Returns True if an event was committed to the channel."""
        self.stats.exits += 1
        req = self.table.pop(tid)
        if req is None:
            self.stats.correlation_misses += 1
            return False

        if now_ns is None:
            now_ns = self.clock()
        duration_ns = max(0, now_ns - req.start_ns)

        if not self.policy(ret, duration_ns):
            return False

        self.stats.anomalies += 1
        res = self.channel.reserve()
        if res is None:
            self.stats.channel_full_drops += 1
            return False

        task = self._lookup_task(tid)
        try:
            event = AnomalyEvent(
                pid=task.pid,
                ret=ret,
                duration_ns=duration_ns,
                comm=task.comm[:TASK_COMM_LEN],
                fname=self._read_path(req.path_ref),
            )
            res.commit(event)
        except Exception:
            # a slot left reserved would hide every record committed after it
            res.discard()
            self.stats.encode_failures += 1
            return False
        self.stats.emitted += 1
        return True

    def _lookup_task(self, tid: int) -> TaskInfo:
        try:
            return self.task_lookup(tid)
        except Exception as e:
            logger.debug("Task lookup failed for tid %d: %r", tid, e)
            return TaskInfo(pid=tid, comm=b"")

    def _read_path(self, path_ref: Optional[PathRef]) -> bytes:
        if path_ref is None:
            self.stats.read_failures += 1
            return b""
        try:
            data = path_ref.read(FILENAME_LEN)
        except Exception:
            self.stats.read_failures += 1
            return b""
        # room for the terminator, like a bounded string copy
        return bytes(data[:FILENAME_LEN - 1])
