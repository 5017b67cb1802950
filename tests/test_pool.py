import logging
import random
import threading
import time

import pytest

from portblock.errors import InsufficientPortsError, TakeTimeoutError
from portblock.pool import PortPool, ReconcileLoop


def _pool(fake_probe, metrics, first=8000, size=10, free=None):
    if free is None:
        free = range(first + 1, first + size)
    return PortPool(first, size, free_ports=free, probe=fake_probe.probe, metrics=metrics)


def _wait_for(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


def test_take_is_fifo(fake_probe, metrics):
    pool = _pool(fake_probe, metrics)
    assert pool.take(3) == [8001, 8002, 8003]
    assert pool.take(2) == [8004, 8005]
    assert pool.free_count == 4


def test_take_zero_returns_nothing(fake_probe, metrics):
    pool = _pool(fake_probe, metrics)
    assert pool.take(0) == []
    assert pool.free_count == 9


def test_take_more_than_free_leaves_pool_unchanged(fake_probe, metrics):
    pool = _pool(fake_probe, metrics)
    before = pool.snapshot()
    with pytest.raises(InsufficientPortsError) as exc:
        pool.take(10)
    assert exc.value.requested == 10
    assert exc.value.available == 9
    assert pool.snapshot() == before


def test_take_discards_ports_bound_since_scan(fake_probe, metrics):
    pool = _pool(fake_probe, metrics)
    fake_probe.busy = {8002}
    assert pool.take(2) == [8001, 8003]
    assert 8002 not in pool
    assert pool.free_count == 6


def test_take_starved_by_stale_ports_restores_confirmed(fake_probe, metrics):
    pool = _pool(fake_probe, metrics, free=[8001, 8002, 8003])
    fake_probe.busy = {8002, 8003}
    with pytest.raises(InsufficientPortsError):
        pool.take(2)
    assert pool.snapshot() == {"free": [8001], "pending": []}


def test_initial_ports_outside_block_are_ignored(fake_probe, metrics):
    pool = _pool(fake_probe, metrics, free=[8000, 8001, 8010, 9000])
    assert pool.snapshot()["free"] == [8001]


def test_return_uses_block_end_as_bound(fake_probe, metrics):
    pool = _pool(fake_probe, metrics, first=8000, size=100, free=[])
    pool.return_ports([8000, 8001, 8099, 8100, 8150, 7999])
    assert pool.snapshot()["pending"] == [8001, 8099]


def test_return_does_not_duplicate(fake_probe, metrics):
    pool = _pool(fake_probe, metrics)
    ports = pool.take(2)
    pool.return_ports(ports)
    pool.return_ports(ports + [8005])
    assert pool.snapshot()["pending"] == [8001, 8002]


def test_return_empty_is_noop(fake_probe, metrics):
    pool = _pool(fake_probe, metrics)
    pool.return_ports([])
    assert pool.pending_count == 0


def test_reconcile_moves_only_unbound_ports(fake_probe, metrics):
    pool = _pool(fake_probe, metrics, free=[])
    pool.return_ports([8001, 8002, 8003, 8004])
    fake_probe.busy = {8002, 8004}

    assert pool.reconcile() == [8001, 8003]
    assert pool.snapshot() == {"free": [8001, 8003], "pending": [8002, 8004]}

    fake_probe.busy = set()
    assert pool.reconcile() == [8002, 8004]
    assert pool.snapshot() == {"free": [8001, 8003, 8002, 8004], "pending": []}


def test_take_return_reconcile_restores_free_count(fake_probe, metrics):
    pool = _pool(fake_probe, metrics)
    ports = pool.take(4)
    pool.return_ports(ports)
    assert pool.free_count == 5
    pool.reconcile()
    assert pool.free_count == 9
    assert sorted(pool.snapshot()["free"]) == list(range(8001, 8010))


def test_take_times_out_when_lock_held(fake_probe, metrics):
    pool = _pool(fake_probe, metrics)
    with pool.lock:
        with pytest.raises(TakeTimeoutError):
            pool.take(1, timeout=0.01)
    assert pool.free_count == 9


def test_concurrent_takes_hand_out_distinct_ports(fake_probe, metrics):
    pool = _pool(fake_probe, metrics, size=100)
    results = []
    lock = threading.Lock()

    def worker():
        ports = pool.take(5)
        with lock:
            results.extend(ports)

    threads = [threading.Thread(target=worker) for _ in range(10)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(results) == 50
    assert len(set(results)) == 50
    assert pool.free_count == 49


def test_metrics_track_pool_counts(fake_probe, metrics):
    pool = _pool(fake_probe, metrics)
    pool.return_ports(pool.take(3))
    free = metrics.registry.get_sample_value("portblock_free_ports", {"first_port": "8000"})
    pending = metrics.registry.get_sample_value("portblock_pending_ports", {"first_port": "8000"})
    assert (free, pending) == (6, 3)


def test_reconcile_loop_refills_and_stops(fake_probe, metrics):
    pool = _pool(fake_probe, metrics)
    pool.return_ports(pool.take(3))
    loop = ReconcileLoop(pool, interval_s=0.01)
    loop.start()
    try:
        assert _wait_for(lambda: pool.free_count == 9)
    finally:
        loop.stop()
        loop.stop()
    assert loop.stopped
    assert not loop.is_alive()


def test_reconcile_loop_survives_failing_cycle(metrics, caplog):
    calls = {"n": 0}

    def flaky_probe(port):
        calls["n"] += 1
        if calls["n"] == 1:
            raise RuntimeError("boom")
        return False

    pool = PortPool(8000, 10, free_ports=[], probe=flaky_probe, metrics=metrics)
    pool.return_ports([8001])
    caplog.set_level(logging.ERROR, logger="portblock.pool")
    loop = ReconcileLoop(pool, interval_s=0.01)
    loop.start()
    try:
        assert _wait_for(lambda: pool.free_count == 1)
    finally:
        loop.stop()

    failures = [r for r in caplog.records if "Reconcile cycle failed" in r.getMessage()]
    assert failures
    assert failures[0].exc_info is not None
    assert failures[0].exc_info[0] is RuntimeError


def test_reconcile_concurrent_with_take_and_return_keeps_lists_disjoint(metrics):
    first, size = 8000, 64
    rng = random.Random(7)
    rng_lock = threading.Lock()

    def sometimes_busy(port):
        with rng_lock:
            return rng.random() < 0.1

    pool = PortPool(first, size, free_ports=range(first + 1, first + size), probe=sometimes_busy, metrics=metrics)
    loop = ReconcileLoop(pool, interval_s=0.001)
    errors = []

    def worker():
        for _ in range(300):
            try:
                ports = pool.take(2)
            except InsufficientPortsError:
                time.sleep(0.001)
                continue
            except Exception as e:
                errors.append(e)
                return
            pool.return_ports(ports)

    threads = [threading.Thread(target=worker) for _ in range(8)]
    loop.start()
    try:
        for t in threads:
            t.start()
        for t in threads:
            t.join()
    finally:
        loop.stop()

    assert errors == []
    snap = pool.snapshot()
    free, pending = snap["free"], snap["pending"]
    assert len(free) == len(set(free))
    assert len(pending) == len(set(pending))
    assert not set(free) & set(pending)
    assert all(first < p < first + size for p in free + pending)
