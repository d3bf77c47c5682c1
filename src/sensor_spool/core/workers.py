# core/workers.py
import threading
from collections import deque
from collections.abc import Callable
from enum import Enum

Task = Callable[[], None]


class OverflowPolicy(Enum):
    """What `WorkerPool.submit` does when the bounded channel is full."""

    BLOCK_CALLER = "block_caller"
    EXECUTE_INLINE = "execute_inline"


class PoolClosedError(RuntimeError):
    pass


class WorkerPool:
    """
    Bounded FIFO channel drained by one or two daemon threads.

    Tasks are popped and run under a single run lock, so execution order is
    submission order even when a saturated channel makes the caller run work
    inline: the caller first drains what is already queued, then runs its own
    task. The overflow policy is chosen by the submitting component, not here.
    """

    def __init__(
        self,
        name: str,
        *,
        workers: int = 1,
        capacity: int = 50,
        on_error: Callable[[BaseException], None] | None = None,
    ):
        if not 1 <= workers <= 2:
            raise ValueError(f"workers must be 1 or 2, got {workers}")
        if capacity < 1:
            raise ValueError(f"capacity must be >= 1, got {capacity}")
        self.name, self.capacity = name, capacity
        self._on_error = on_error
        self._tasks: deque[Task] = deque()
        self._cv = threading.Condition()
        self._run_lock = threading.RLock()
        self._closed = False
        self._threads = [
            threading.Thread(target=self._worker, name=f"{name}-{i}", daemon=True)
            for i in range(workers)
        ]
        for t in self._threads:
            t.start()

    @property
    def qsize(self) -> int:
        with self._cv:
            return len(self._tasks)

    @property
    def is_shutdown(self) -> bool:
        with self._cv:
            return self._closed

    def submit(self, task: Task, overflow: OverflowPolicy = OverflowPolicy.BLOCK_CALLER) -> bool:
        """Queue `task`. Returns False when the overflow policy ran it inline instead."""
        with self._cv:
            if self._closed:
                raise PoolClosedError(self.name)
            if len(self._tasks) < self.capacity:
                self._tasks.append(task)
                self._cv.notify_all()
                return True
            if overflow is OverflowPolicy.BLOCK_CALLER:
                while len(self._tasks) >= self.capacity and not self._closed:
                    self._cv.wait()
                if self._closed:
                    raise PoolClosedError(self.name)
                self._tasks.append(task)
                self._cv.notify_all()
                return True
        self.run_inline(task)
        return False

    def run_inline(self, task: Task) -> None:
        with self._run_lock:
            while (queued := self._pop()) is not None:
                self._run(queued)
            self._run(task)

    def shutdown(self, *, wait: bool = True, drain: bool = True, timeout: float | None = None) -> int:
        """Stop accepting work. Queued tasks still run unless `drain` is False; returns how many were dropped."""
        with self._cv:
            self._closed = True
            dropped = 0
            if not drain:
                dropped = len(self._tasks)
                self._tasks.clear()
            self._cv.notify_all()
        if wait:
            me = threading.current_thread()
            for t in self._threads:
                if t is not me:
                    t.join(timeout)
        return dropped

    # ------------------------------------------------------------------

    def _pop(self) -> Task | None:
        with self._cv:
            if not self._tasks:
                return None
            task = self._tasks.popleft()
            self._cv.notify_all()
            return task

    def _run(self, task: Task) -> None:
        try:
            task()
        except Exception as exc:
            if self._on_error is not None:
                self._on_error(exc)

    def _worker(self) -> None:
        while True:
            with self._run_lock:
                task = self._pop()
                if task is not None:
                    self._run(task)
                    continue
            with self._cv:
                while not self._tasks and not self._closed:
                    self._cv.wait()
                if self._closed and not self._tasks:
                    return
