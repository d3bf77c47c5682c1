# core/dispatcher.py
import threading
from collections.abc import Callable
from dataclasses import dataclass
from functools import partial
from typing import Any

from sensor_spool.core.hooks import NoopHooks, PipelineHooks
from sensor_spool.core.pressure import PressureLevel
from sensor_spool.core.record import Record
from sensor_spool.core.workers import OverflowPolicy, PoolClosedError, WorkerPool

# anything with .on_record(record), or a plain callable taking the record
Consumer = Any
Handler = Callable[[Record], None]


@dataclass
class DispatchStats:
    dispatched: int = 0
    inline: int = 0
    rebuilt: int = 0
    absorbed: int = 0
    consumer_errors: int = 0


class Dispatcher:
    """
    Fans every record out to all registered consumers on a small worker pool.

    Nothing is dropped: a saturated channel runs the delivery on the
    producer's thread (OverflowPolicy.EXECUTE_INLINE) and a pool that was torn
    down while the dispatcher is still active is rebuilt once. After
    shutdown() records are silently absorbed.
    """

    def __init__(
        self,
        hooks: PipelineHooks | None = None,
        *,
        workers: int = 1,
        capacity: int = 50,
        overflow: OverflowPolicy = OverflowPolicy.EXECUTE_INLINE,
        name: str = "dispatch",
    ):
        self._hooks = hooks or NoopHooks()
        self.name, self.overflow = name, overflow
        self._workers, self._capacity = workers, capacity
        self._consumers: list[Consumer] = []
        self._lock = threading.Lock()  # consumer list only
        self._pool_lock = threading.Lock()
        self._stats_lock = threading.Lock()
        self._active = True
        self._collecting = threading.Event()
        self._collecting.set()
        self.stats = DispatchStats()
        self._pool = self._make_pool()

    # ---------------- consumers -----------------------

    def register(self, consumer: Consumer) -> bool:
        with self._lock:
            if consumer in self._consumers:
                return False
            self._consumers.append(consumer)
            return True

    def unregister(self, consumer: Consumer) -> bool:
        with self._lock:
            if consumer not in self._consumers:
                return False
            self._consumers.remove(consumer)
            return True

    @property
    def consumers(self) -> tuple[Consumer, ...]:
        with self._lock:
            return tuple(self._consumers)

    # ---------------- state -----------------------

    @property
    def active(self) -> bool:
        return self._active

    @property
    def collecting(self) -> bool:
        return self._active and self._collecting.is_set()

    def start_collecting(self) -> None:
        if self._active:
            self._collecting.set()

    def stop_collecting(self) -> None:
        self._collecting.clear()

    # ---------------- dispatch -----------------------

    def dispatch(self, record: Record) -> None:
        if not self._active:
            self._bump("absorbed")
            return
        with self._lock:
            if not self._consumers:
                return
            snapshot = tuple(self._consumers)

        self._bump("dispatched")
        task = partial(self._deliver, record, snapshot)
        pool = self._pool
        self._hooks.dispatch(record, qsize=pool.qsize, consumers=len(snapshot))
        for retry in (False, True):
            try:
                queued = pool.submit(task, self.overflow)
            except PoolClosedError:
                if not self._active:
                    self._bump("absorbed")
                    return
                if retry:
                    break
                pool = self._rebuild_pool(pool)
                continue
            if not queued:
                self._bump("inline")
                self._hooks.overflow(policy=self.overflow.value, qsize=pool.capacity)
            return
        # rebuilt pool refused as well: deliver on the caller's thread
        self._bump("inline")
        self._deliver(record, snapshot)

    def flush(self, timeout: float | None = None) -> bool:
        """Block until every delivery queued so far has run."""
        done = threading.Event()
        try:
            self._pool.submit(done.set, OverflowPolicy.BLOCK_CALLER)
        except PoolClosedError:
            return True
        return done.wait(timeout)

    def shutdown(self, *, wait: bool = True, timeout: float | None = 5.0) -> None:
        if not self._active:
            return
        self._active = False
        self._collecting.clear()
        with self._pool_lock:
            pool = self._pool
        pool.shutdown(wait=wait, timeout=timeout)

    def on_resource_pressure(self, level: PressureLevel | int | str) -> None:
        level = PressureLevel.parse(level)
        self._hooks.pressure("dispatcher", level=level.name)
        if level >= PressureLevel.CRITICAL:
            self.stop_collecting()
        if level >= PressureLevel.COMPLETE:
            self.shutdown(wait=False)

    # ---------------- internals -----------------------

    def _deliver(self, record: Record, consumers: tuple[Consumer, ...]) -> None:
        for c in consumers:
            handler: Handler = getattr(c, "on_record", c)
            try:
                handler(record)
            except Exception as exc:
                self._bump("consumer_errors")
                self._hooks.consumer_error(c, exc=exc)

    def _make_pool(self) -> WorkerPool:
        return WorkerPool(
            self.name,
            workers=self._workers,
            capacity=self._capacity,
            on_error=lambda exc: self._hooks.error("dispatcher", reason="task_failed", error=str(exc)),
        )

    def _rebuild_pool(self, stale: WorkerPool) -> WorkerPool:
        with self._pool_lock:
            if self._pool is stale and self._active:
                self._pool = self._make_pool()
                self._bump("rebuilt")
                self._hooks.pool_rebuilt(pool=self.name)
            return self._pool

    def _bump(self, field: str) -> None:
        with self._stats_lock:
            setattr(self.stats, field, getattr(self.stats, field) + 1)
