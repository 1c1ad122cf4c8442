import threading

import pytest

from badfd._types import PendingRequest
from badfd.pending import PendingTable


def test_upsert_pop_roundtrip():
    table = PendingTable(4)
    req = PendingRequest(10, None)
    assert table.upsert(1, req) is True
    assert table.get(1) is req
    assert table.pop(1) is req
    assert table.pop(1) is None
    assert len(table) == 0


def test_overwrite_does_not_consume_capacity():
    table = PendingTable(1)
    assert table.upsert(1, PendingRequest(1, None))
    assert table.upsert(1, PendingRequest(2, None))
    assert table.get(1).start_ns == 2
    assert table.upsert(2, PendingRequest(3, None)) is False
    assert len(table) == 1


def test_capacity_is_global_across_shards():
    table = PendingTable(3, shards=8)
    assert [table.upsert(k, PendingRequest(k, None)) for k in range(5)] == [True, True, True, False, False]
    table.pop(0)
    assert table.upsert(4, PendingRequest(4, None)) is True


def test_invalid_capacity():
    with pytest.raises(ValueError):
        PendingTable(0)


def test_concurrent_threads_each_own_their_key():
    table = PendingTable(64)
    errors = []

    def worker(tid):
        for i in range(500):
            table.upsert(tid, PendingRequest(i, None))
            got = table.pop(tid)
            if got is None or got.start_ns != i:
                errors.append((tid, i, got))

    threads = [threading.Thread(target=worker, args=(tid,)) for tid in range(16)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    assert len(table) == 0
