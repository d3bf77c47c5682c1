# tests/core/test_dispatcher.py
import time

from sensor_spool.core.dispatcher import Dispatcher
from sensor_spool.core.hooks import NoopHooks
from sensor_spool.core.pressure import PressureLevel
from sensor_spool.core.record import Record
from sensor_spool.core.workers import OverflowPolicy


def rec(i: int) -> Record:
    return Record(timestamp_ms=i, sensor_name="accelerometer", x=0.0, y=0.0, z=9.81, accuracy=3, user_id="u")


class ListConsumer:
    def __init__(self, delay: float = 0.0):
        self.delay = delay
        self.seen: list[int] = []

    def on_record(self, record):
        if self.delay:
            time.sleep(self.delay)
        self.seen.append(record.timestamp_ms)


class FailingConsumer:
    def on_record(self, record):
        raise RuntimeError("consumer down")


class TraceHooks(NoopHooks):
    def __init__(self):
        self.overflows = 0
        self.errors = []
        self.rebuilt = []

    def overflow(self, *, policy, qsize):
        self.overflows += 1

    def consumer_error(self, consumer, *, exc):
        self.errors.append(str(exc))

    def pool_rebuilt(self, *, pool):
        self.rebuilt.append(pool)


def test_no_loss_under_saturation():
    hooks = TraceHooks()
    d = Dispatcher(hooks, workers=2, capacity=2, overflow=OverflowPolicy.EXECUTE_INLINE)
    slow, fast = ListConsumer(delay=0.0005), ListConsumer()
    plain: list[int] = []
    d.register(slow)
    d.register(fast)
    d.register(lambda r: plain.append(r.timestamp_ms))

    n = 300
    for i in range(n):
        d.dispatch(rec(i))
    assert d.flush(timeout=10)

    expected = list(range(n))
    assert slow.seen == expected
    assert fast.seen == expected
    assert plain == expected
    assert d.stats.dispatched == n
    assert hooks.overflows == d.stats.inline
    d.shutdown()


def test_block_caller_policy_also_delivers_everything():
    d = Dispatcher(workers=1, capacity=1, overflow=OverflowPolicy.BLOCK_CALLER)
    c = ListConsumer(delay=0.0002)
    d.register(c)
    for i in range(100):
        d.dispatch(rec(i))
    d.shutdown(wait=True)
    assert c.seen == list(range(100))
    assert d.stats.inline == 0


def test_failing_consumer_is_isolated():
    hooks = TraceHooks()
    d = Dispatcher(hooks)
    good = ListConsumer()
    d.register(FailingConsumer())
    d.register(good)
    for i in range(5):
        d.dispatch(rec(i))
    d.flush(timeout=5)
    assert good.seen == [0, 1, 2, 3, 4]
    assert d.stats.consumer_errors == 5
    assert hooks.errors == ["consumer down"] * 5
    d.shutdown()


def test_register_is_idempotent():
    d = Dispatcher()
    c = ListConsumer()
    assert d.register(c) is True
    assert d.register(c) is False
    assert d.consumers == (c,)
    assert d.unregister(c) is True
    assert d.unregister(c) is False
    d.shutdown()


def test_dispatch_after_shutdown_is_absorbed():
    d = Dispatcher()
    c = ListConsumer()
    d.register(c)
    d.shutdown()
    d.dispatch(rec(1))
    assert not d.active
    assert c.seen == []
    assert d.stats.absorbed == 1


def test_torn_down_pool_is_rebuilt_once():
    hooks = TraceHooks()
    d = Dispatcher(hooks)
    c = ListConsumer()
    d.register(c)
    d._pool.shutdown()  # as if the host killed the worker

    d.dispatch(rec(1))
    d.dispatch(rec(2))
    d.flush(timeout=5)
    assert c.seen == [1, 2]
    assert d.stats.rebuilt == 1
    assert hooks.rebuilt == ["dispatch"]
    d.shutdown()


def test_resource_pressure():
    d = Dispatcher()
    d.on_resource_pressure(PressureLevel.MODERATE)
    assert d.collecting
    d.on_resource_pressure("critical")
    assert d.active and not d.collecting
    d.start_collecting()
    assert d.collecting
    d.on_resource_pressure(PressureLevel.COMPLETE)
    assert not d.active and not d.collecting
