"""
Controller: wires config, hooks and a hook source together and drains the event
channel until the source goes away or the caller asks to stop.
"""

from __future__ import annotations

import logging
import signal
import threading
from typing import Callable, List, Optional, Protocol, Sequence

from ._types import AnomalyEvent
from .config import TracerConfig
from .errors import ChannelClosed
from .hooks import HookStats, OpenHooks
from .procfs import proc_task_lookup

logger = logging.getLogger("controller")

EventSink = Callable[[AnomalyEvent], None]


class HookSource(Protocol):
    def start(self) -> None:
        ...

    def wait(self, timeout: Optional[float] = None) -> Optional[int]:
        ...

    def stop(self) -> None:
        ...


class Controller:
    """
    One instance = one tracing session.

    The configuration snapshot is fixed when the hooks are built; changing the
    threshold means building a new controller.
    """

    POLL_TIMEOUT = 0.3

    def __init__(self, config: TracerConfig, sinks: Sequence[EventSink] = (), hooks: Optional[OpenHooks] = None):
        self.config = config
        self.hooks = hooks if hooks is not None else OpenHooks(config, task_lookup=proc_task_lookup)
        self.sinks: List[EventSink] = list(sinks)
        self.events_drained = 0

    @property
    def channel(self):
        return self.hooks.channel

    @property
    def stats(self) -> HookStats:
        return self.hooks.stats

    def request_stop(self, *_args) -> None:
        self.channel.close()

    def install_signal_handlers(self) -> None:
        signal.signal(signal.SIGINT, self.request_stop)
        signal.signal(signal.SIGTERM, self.request_stop)

    def _dispatch(self, events: List[AnomalyEvent]) -> None:
        for event in events:
            self.events_drained += 1
            for sink in self.sinks:
                try:
                    sink(event)
                except Exception as e:
                    logger.error("Event sink failed on %s: %r", event, e, exc_info=logger.isEnabledFor(logging.DEBUG))

    def drain_once(self, timeout: Optional[float] = None) -> int:
        """Deliver whatever is committed, waiting up to `timeout` for the first record."""
        events = self.channel.read_events(timeout)
        self._dispatch(events)
        return len(events)

    def consume(self) -> None:
        """Drain until the channel is closed and empty."""
        while True:
            try:
                self.drain_once(self.POLL_TIMEOUT)
            except ChannelClosed:
                break

    def run(self, source: HookSource) -> HookStats:
        logger.info(
            "Tracing open calls (threshold=%sms, table=%d entries, channel=%d slots)",
            f"{self.config.threshold_ms:g}", self.config.pending_capacity, self.config.channel_slots,
        )

        def _watch_source() -> None:
            source.wait()
            logger.debug("Hook source finished")
            self.channel.close()

        source.start()
        watcher = threading.Thread(target=_watch_source, name="source-watcher", daemon=True)
        watcher.start()
        try:
            self.consume()
        finally:
            source.stop()
            # anything committed between the last poll and shutdown
            self._dispatch([AnomalyEvent.unpack(raw) for raw in self.channel.drain()])
            self._log_stats()
        return self.stats

    def _log_stats(self) -> None:
        s = self.stats
        logger.info("Drained %d anomalies (%d calls traced).", self.events_drained, s.exits)
        if s.table_full_drops or s.channel_full_drops:
            logger.warning(
                "Dropped calls: %d (pending table full), %d (event channel full)",
                s.table_full_drops, s.channel_full_drops,
            )
