# tests/core/test_workers.py
import threading

import pytest

from sensor_spool.core.workers import OverflowPolicy, PoolClosedError, WorkerPool


def test_fifo_order_single_worker():
    pool = WorkerPool("t", workers=1, capacity=100)
    seen = []
    for i in range(50):
        pool.submit(lambda i=i: seen.append(i))
    pool.shutdown(wait=True)
    assert seen == list(range(50))


def test_inline_overflow_drains_queue_first():
    pool = WorkerPool("t", workers=1, capacity=2)
    started, gate = threading.Event(), threading.Event()
    seen = []

    def blocker():
        started.set()
        gate.wait(5)
        seen.append("blocker")

    pool.submit(blocker)
    assert started.wait(5)
    pool.submit(lambda: seen.append(1))
    pool.submit(lambda: seen.append(2))

    queued = []
    t = threading.Thread(
        target=lambda: queued.append(pool.submit(lambda: seen.append(3), OverflowPolicy.EXECUTE_INLINE))
    )
    t.start()
    t.join(0.2)  # let it park on the run lock
    gate.set()
    t.join(5)
    pool.shutdown(wait=True)

    assert queued == [False]
    assert seen == ["blocker", 1, 2, 3]


def test_block_caller_waits_for_space():
    pool = WorkerPool("t", workers=1, capacity=1)
    gate = threading.Event()
    seen = []
    pool.submit(lambda: gate.wait(5))
    pool.submit(lambda: seen.append("a"))

    t = threading.Thread(target=lambda: pool.submit(lambda: seen.append("b"), OverflowPolicy.BLOCK_CALLER))
    t.start()
    t.join(0.1)
    assert t.is_alive()  # parked until the channel has room
    gate.set()
    t.join(5)
    pool.shutdown(wait=True)
    assert seen == ["a", "b"]


def test_submit_after_shutdown_raises():
    pool = WorkerPool("t")
    pool.shutdown()
    assert pool.is_shutdown
    with pytest.raises(PoolClosedError):
        pool.submit(lambda: None)


def test_shutdown_without_drain_reports_dropped():
    pool = WorkerPool("t", workers=1, capacity=10)
    started, gate = threading.Event(), threading.Event()
    pool.submit(lambda: (started.set(), gate.wait(5)))
    assert started.wait(5)
    for _ in range(3):
        pool.submit(lambda: None)
    dropped = pool.shutdown(wait=False, drain=False)
    gate.set()
    assert dropped == 3


def test_task_errors_go_to_on_error():
    errors = []
    pool = WorkerPool("t", on_error=errors.append)

    def boom():
        raise RuntimeError("boom")

    pool.submit(boom)
    pool.shutdown(wait=True)
    assert len(errors) == 1 and str(errors[0]) == "boom"


def test_worker_count_is_bounded():
    with pytest.raises(ValueError):
        WorkerPool("t", workers=3)
