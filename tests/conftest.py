# tests/conftest.py
import pytest

from badfd._types import EVENT_SIZE, TaskInfo
from badfd.channel import EventChannel
from badfd.config import NS_PER_MS, TracerConfig
from badfd.hooks import OpenHooks
from tests.utils.fakes import FakeClock


def tasks_by_tid(tid):
    return TaskInfo(pid=tid + 10000, comm=b"cat")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def make_hooks(clock):
    def _make(threshold_ms=100, slots=64, pending_capacity=16):
        config = TracerConfig(
            threshold_ns=threshold_ms * NS_PER_MS,
            pending_capacity=pending_capacity,
            channel_capacity=slots * EVENT_SIZE,
        )
        return OpenHooks(config, task_lookup=tasks_by_tid, clock=clock)

    return _make


@pytest.fixture
def hooks(make_hooks):
    return make_hooks()


@pytest.fixture
def channel():
    return EventChannel(4 * EVENT_SIZE)
