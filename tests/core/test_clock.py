# tests/core/test_clock.py
from datetime import UTC, datetime

from sensor_spool.core.clock import ManualClock, SampleClock, stamp, to_wall


def test_stamp_is_utc_with_millis():
    clock = ManualClock.utc(2024, 1, 2, 3, 4, 5)
    clock.advance(123)
    assert stamp(clock.now_ms()) == "20240102_030405_123"
    assert to_wall(clock.now_ms()) == datetime(2024, 1, 2, 3, 4, 5, 123000, tzinfo=UTC)


def test_sample_clock_shares_one_timestamp_per_period():
    base = ManualClock(1_000)
    clock = SampleClock(base, period_ms=10)

    # pass-through until collection starts
    assert clock.now_ms() == 1_000
    base.advance(3)
    assert clock.now_ms() == 1_003

    clock.start()
    t0 = clock.now_ms()
    base.advance(4)
    assert clock.now_ms() == t0
    base.advance(5)
    assert clock.now_ms() == t0
    base.advance(1)  # 10 ms after t0
    assert clock.now_ms() == t0 + 10

    clock.stop()
    base.advance(2)
    assert clock.now_ms() == base.now_ms()
