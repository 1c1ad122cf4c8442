import errno

import pytest

from badfd._types import AnomalyEvent, FILENAME_LEN, TaskInfo
from tests.utils.fakes import BytesRef, FailingRef

MS = 1_000_000


def _events(hooks):
    return [AnomalyEvent.unpack(raw) for raw in hooks.channel.drain()]


# ------------------ Policy through the hooks -----------------------


def test_fast_success_emits_nothing_and_clears_pending(hooks, clock):
    ref = BytesRef(b"/etc/hosts")
    hooks.on_entry(7, clock.at_ms(0)(), ref)
    assert hooks.on_exit(7, 3, clock.at_ms(50)()) is False

    assert 7 not in hooks.table
    assert _events(hooks) == []
    assert ref.reads == 0, "the path must only be read for anomalies"


@pytest.mark.parametrize("elapsed_ms", [0, 1, 99, 500])
def test_failure_is_reported_regardless_of_duration(hooks, clock, elapsed_ms):
    hooks.on_entry(7, clock.at_ms(0)(), BytesRef(b"/nope"))
    assert hooks.on_exit(7, -errno.ENOENT, clock.at_ms(elapsed_ms)()) is True

    (event,) = _events(hooks)
    assert event.ret == -errno.ENOENT
    assert event.duration_ns == elapsed_ms * MS
    assert event.fname_str == "/nope"


@pytest.mark.parametrize("ret", [0, 3, -13])
def test_slow_call_is_reported_regardless_of_result(hooks, clock, ret):
    hooks.on_entry(7, clock.at_ms(0)(), BytesRef(b"/slow"))
    assert hooks.on_exit(7, ret, clock.at_ms(100)()) is True
    (event,) = _events(hooks)
    assert event.ret == ret
    assert event.duration_ns == 100 * MS


def test_zero_threshold_reports_every_completed_call(make_hooks, clock):
    hooks = make_hooks(threshold_ms=0)
    for tid, ret in ((1, 0), (2, 5), (3, -2)):
        hooks.on_entry(tid, clock.at_ms(10)(), BytesRef(b"/f%d" % tid))
        hooks.on_exit(tid, ret, clock.at_ms(10)())

    assert [(e.pid, e.ret) for e in _events(hooks)] == [(10001, 0), (10002, 5), (10003, -2)]


# ------------------ Correlation -----------------------


def test_exit_without_entry_is_ignored(hooks, clock):
    assert hooks.on_exit(42, -1, clock.at_ms(10)()) is False
    assert _events(hooks) == []
    assert hooks.stats.correlation_misses == 1


def test_second_entry_overwrites_first(hooks, clock):
    hooks.on_entry(7, clock.at_ms(0)(), BytesRef(b"/first"))
    hooks.on_entry(7, clock.at_ms(300)(), BytesRef(b"/second"))
    hooks.on_exit(7, -1, clock.at_ms(310)())

    (event,) = _events(hooks)
    assert event.duration_ns == 10 * MS
    assert event.fname_str == "/second"
    assert len(hooks.table) == 0


def test_entry_and_exit_default_to_hook_clock(hooks, clock):
    clock.at_ms(1)
    hooks.on_entry(7, path_ref=BytesRef(b"/x"))
    clock.at_ms(250)
    assert hooks.on_exit(7, 0) is True
    assert _events(hooks)[0].duration_ns == 249 * MS


def test_exit_before_recorded_start_counts_as_zero_duration(hooks):
    hooks.on_entry(7, 500 * MS, BytesRef(b"/x"))
    hooks.on_exit(7, -1, 400 * MS)
    assert _events(hooks)[0].duration_ns == 0


# ------------------ Drops -----------------------


def test_channel_full_keeps_first_events_in_order(make_hooks, clock):
    hooks = make_hooks(slots=3)
    for tid in range(1, 6):
        hooks.on_entry(tid, clock.at_ms(0)(), BytesRef(b"/f%d" % tid))
    results = [hooks.on_exit(tid, -1, clock.at_ms(1)()) for tid in range(1, 6)]

    assert results == [True, True, True, False, False]
    assert [e.fname_str for e in _events(hooks)] == ["/f1", "/f2", "/f3"]
    assert hooks.stats.channel_full_drops == 2
    assert hooks.stats.anomalies == 5
    assert len(hooks.table) == 0, "dropped events still release their pending entry"


def test_table_exhaustion_drops_new_entries_silently(make_hooks, clock):
    hooks = make_hooks(pending_capacity=2)
    for tid in (1, 2, 3):
        hooks.on_entry(tid, clock.at_ms(0)(), BytesRef(b"/f"))

    assert hooks.stats.table_full_drops == 1
    assert hooks.on_exit(3, -1, clock.at_ms(1)()) is False
    assert hooks.on_exit(1, -1, clock.at_ms(1)()) is True

    # the freed slot is usable again
    hooks.on_entry(3, clock.at_ms(2)(), BytesRef(b"/f3"))
    assert 3 in hooks.table


def test_failed_deferred_read_still_emits(hooks, clock):
    hooks.on_entry(7, clock.at_ms(0)(), FailingRef())
    assert hooks.on_exit(7, -14, clock.at_ms(1)()) is True
    (event,) = _events(hooks)
    assert event.fname == b"\x00" * FILENAME_LEN
    assert hooks.stats.read_failures == 1


def test_long_path_is_truncated_and_terminated(hooks, clock):
    hooks.on_entry(7, clock.at_ms(0)(), BytesRef(b"a" * 1000))
    hooks.on_exit(7, -1, clock.at_ms(1)())
    (event,) = _events(hooks)
    assert event.fname == b"a" * (FILENAME_LEN - 1) + b"\x00"


def test_task_lookup_failure_falls_back_to_tid(make_hooks, clock):
    hooks = make_hooks()

    def broken(tid):
        raise FileNotFoundError(tid)

    hooks.task_lookup = broken
    hooks.on_entry(7, clock.at_ms(0)(), BytesRef(b"/x"))
    hooks.on_exit(7, -1, clock.at_ms(1)())
    (event,) = _events(hooks)
    assert event.pid == 7
    assert event.comm_str == ""


def test_unencodable_event_is_discarded_and_later_events_still_drain(make_hooks, clock):
    hooks = make_hooks()
    hooks.task_lookup = lambda tid: TaskInfo(pid=tid, comm="cat")
    hooks.on_entry(7, clock.at_ms(0)(), BytesRef(b"/bad"))
    assert hooks.on_exit(7, -1, clock.at_ms(1)()) is False
    assert hooks.stats.encode_failures == 1

    hooks.task_lookup = lambda tid: TaskInfo(pid=tid, comm=b"cat")
    hooks.on_entry(8, clock.at_ms(2)(), BytesRef(b"/good"))
    assert hooks.on_exit(8, -1, clock.at_ms(3)()) is True

    assert [e.fname_str for e in _events(hooks)] == ["/good"]
    assert len(hooks.channel) == 0


# ------------------ Reference scenario -----------------------


def test_threshold_100ms_scenario(hooks, clock):
    tid = 7
    hooks.on_entry(tid, clock.at_ms(0)(), BytesRef(b"/a"))
    assert hooks.on_exit(tid, 0, clock.at_ms(50)()) is False

    hooks.on_entry(tid, clock.at_ms(60)(), BytesRef(b"/b"))
    assert hooks.on_exit(tid, 0, clock.at_ms(200)()) is True

    hooks.on_entry(tid, clock.at_ms(210)(), BytesRef(b"/c"))
    assert hooks.on_exit(tid, -2, clock.at_ms(215)()) is True

    events = _events(hooks)
    assert [(e.duration_ns, e.ret) for e in events] == [(140_000_000, 0), (5_000_000, -2)]
    assert [e.comm_str for e in events] == ["cat", "cat"]
    assert hooks.stats.to_dict() == {
        "entries": 3,
        "exits": 3,
        "anomalies": 2,
        "emitted": 2,
        "correlation_misses": 0,
        "table_full_drops": 0,
        "channel_full_drops": 0,
        "read_failures": 0,
        "encode_failures": 0,
    }
