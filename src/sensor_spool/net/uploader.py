# net/uploader.py
from __future__ import annotations

import itertools
import threading
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from functools import partial
from pathlib import Path

from sensor_spool.app.protocols import UploadCallbacks
from sensor_spool.core.hooks import NoopHooks, PipelineHooks
from sensor_spool.core.pressure import PressureLevel
from sensor_spool.core.workers import OverflowPolicy, PoolClosedError, WorkerPool
from sensor_spool.io.segments import Segment, SegmentState
from sensor_spool.net.transport import (
    Endpoint,
    RecoverableTransportError,
    StreamTruncatedError,
    TransferCancelled,
    TransferRequest,
    Transport,
    TransportError,
)

MAX_ERROR_CHARS = 500
DEFAULT_PARTIAL_RECEIPT = (404, 500)


class BatchInFlightError(RuntimeError):
    pass


@dataclass(frozen=True)
class BatchResult:
    success_count: int
    fail_count: int
    total: int
    cancelled: bool = False
    errors: str = ""

    @property
    def ok(self) -> bool:
        return self.fail_count == 0 and not self.cancelled


@dataclass(frozen=True)
class ProbeResult:
    ok: bool
    message: str


# ----------------- per-attempt outcomes -----------------------


@dataclass(frozen=True)
class Success:
    body: str = ""


@dataclass(frozen=True)
class RetryableError:
    reason: str
    offset: int = 0


@dataclass(frozen=True)
class FatalError:
    reason: str


@dataclass(frozen=True)
class Cancelled:
    reason: str = "cancelled"


AttemptResult = Success | RetryableError | FatalError | Cancelled


def summarize(errors: Iterable[str], limit: int = MAX_ERROR_CHARS) -> str:
    text = "; ".join(errors)
    return text if len(text) <= limit else text[:limit] + "..."


class UploadCoordinator:
    """
    Uploads one batch of segments at a time, sequentially, with per-segment
    retries and resumable offsets.

    A batch ends with exactly one terminal callback: `on_success` when every
    segment went through, `on_failure` otherwise (cancellation included).
    Callbacks and progress run on a dedicated single-thread callback context,
    never on the network thread.
    """

    def __init__(
        self,
        transport: Transport,
        *,
        hooks: PipelineHooks | None = None,
        max_retries: int = 3,
        retry_delay_s: float = 3.0,
        partial_receipt_codes: Iterable[int] = DEFAULT_PARTIAL_RECEIPT,
        on_uploaded: Callable[[Segment], None] | None = None,
        on_failed: Callable[[Segment], None] | None = None,
        workers: int = 2,
    ):
        self.transport = transport
        self.max_retries = max(0, max_retries)
        self.retry_delay_s = retry_delay_s
        self.partial_receipt_codes = frozenset(partial_receipt_codes)
        self._hooks = hooks or NoopHooks()
        self._on_uploaded = on_uploaded
        self._on_failed = on_failed

        self._pool = WorkerPool("upload", workers=workers, capacity=4, on_error=self._task_failed)
        self._callbacks = WorkerPool("upload-callbacks", workers=1, capacity=256, on_error=self._task_failed)

        self._lock = threading.Lock()  # batch state
        self._busy = False
        self._closed = False
        self._cancel: threading.Event | None = None
        self._batch_ids = itertools.count(1)

        self._progress: dict[str, int] = {}
        self._progress_lock = threading.Lock()
        self._active: dict[str, TransferRequest] = {}

    # ---------------- batches -----------------------

    @property
    def is_uploading(self) -> bool:
        with self._lock:
            return self._busy

    def upload_batch(
        self,
        segments: Iterable[Segment | Path | str],
        endpoint: Endpoint,
        callbacks: UploadCallbacks | None = None,
    ) -> int:
        """Start a batch in the background and return its id."""
        items = [s if isinstance(s, Segment) else Segment.from_path(s) for s in segments]
        if not items:
            raise ValueError("no segments to upload")
        with self._lock:
            if self._closed:
                raise PoolClosedError("upload")
            if self._busy:
                raise BatchInFlightError("an upload batch is already in flight")
            self._busy = True
            cancel = self._cancel = threading.Event()
        batch_id = next(self._batch_ids)
        try:
            self._pool.submit(
                partial(self._run_batch, batch_id, items, endpoint, callbacks, cancel),
                OverflowPolicy.BLOCK_CALLER,
            )
        except PoolClosedError:
            with self._lock:
                self._busy = False
            raise
        return batch_id

    def cancel_all(self) -> None:
        with self._lock:
            if self._cancel is not None:
                self._cancel.set()
        with self._progress_lock:
            self._active.clear()

    # ---------------- progress table -----------------------

    def uploaded_bytes(self, path: Path | str) -> int:
        with self._progress_lock:
            return self._progress.get(str(path), 0)

    def clear_progress(self, path: Path | str | None = None) -> None:
        with self._progress_lock:
            if path is None:
                self._progress.clear()
            else:
                self._progress.pop(str(path), None)

    @property
    def active_transfers(self) -> tuple[str, ...]:
        with self._progress_lock:
            return tuple(self._active)

    # ---------------- misc -----------------------

    def probe(self, endpoint: Endpoint, timeout_s: float = 3.0) -> ProbeResult:
        try:
            resp = self.transport.ping(endpoint, timeout_s)
        except RecoverableTransportError as exc:
            if "timed out" in str(exc).lower():
                return ProbeResult(False, "connection timed out, check the server address")
            return ProbeResult(False, f"connection failed: {exc}")
        except TransportError as exc:
            return ProbeResult(False, f"connection failed: {exc}")
        if resp.ok:
            return ProbeResult(True, "connected")
        return ProbeResult(False, f"server responded with HTTP {resp.status}")

    def on_resource_pressure(self, level: PressureLevel | int | str) -> None:
        level = PressureLevel.parse(level)
        self._hooks.pressure("uploader", level=level.name)
        if level >= PressureLevel.CRITICAL:
            self.cancel_all()
            self.clear_progress()
        if level >= PressureLevel.MODERATE:
            self.transport.release_idle()

    def shutdown(self, *, wait: bool = True, timeout: float | None = 5.0) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
        self.cancel_all()
        self._pool.shutdown(wait=wait, timeout=timeout)
        self._callbacks.shutdown(wait=wait, timeout=timeout)
        close = getattr(self.transport, "close", None)
        if close is not None:
            close()

    # ---------------- internals -----------------------

    def _run_batch(self, batch_id, items: list[Segment], endpoint, callbacks, cancel: threading.Event) -> None:
        total = len(items)
        self._hooks.batch_start(batch_id=batch_id, segments=total)
        success, errors, handled = 0, [], 0
        try:
            for i, seg in enumerate(items):
                if cancel.is_set():
                    break
                outcome = self._upload_one(seg, endpoint, cancel, i, total, callbacks)
                handled += 1
                if isinstance(outcome, Success):
                    success += 1
                elif isinstance(outcome, Cancelled):
                    errors.append(f"{seg.name}: {outcome.reason}")
                    break
                else:
                    errors.append(f"{seg.name}: {outcome.reason}")
        except Exception as exc:
            errors.append(f"batch aborted: {exc}")
        finally:
            # segments never reached still go back to their owner
            for seg in items[handled:]:
                self._handoff_failed(seg)
            cancelled = cancel.is_set()
            result = BatchResult(
                success_count=success,
                fail_count=total - success,
                total=total,
                cancelled=cancelled,
                errors=summarize(errors),
            )
            with self._lock:
                self._busy = False
            self._hooks.batch_end(result)
            if callbacks is not None:
                if result.ok:
                    self._post(callbacks.on_progress, 100)
                    self._post(callbacks.on_success, result)
                else:
                    self._post(callbacks.on_failure, result)

    def _upload_one(self, seg: Segment, endpoint, cancel, index: int, total: int, callbacks) -> AttemptResult:
        try:
            size = seg.path.stat().st_size
        except OSError:
            size = -1
        if size <= 0:
            outcome = FatalError("file not found" if size < 0 else "empty file")
            self._hooks.segment_done(seg, ok=False, reason=outcome.reason)
            self._handoff_failed(seg)
            return outcome
        seg.size = size
        if seg.state in (SegmentState.SEALED, SegmentState.FAILED_KEEP):
            seg.mark(SegmentState.UPLOADING)

        key = str(seg.path)
        last = [-1]

        def progress(acked: int, of: int) -> None:
            if callbacks is None:
                return
            pct = int((index * 100 + acked * 100 // max(1, of)) / total)
            if pct != last[0]:
                last[0] = pct
                self._post(callbacks.on_progress, pct)

        attempt = 0
        while True:
            attempt += 1
            if cancel.is_set():
                outcome = Cancelled()
                break
            offset = self._resume_offset(key, size)
            self._hooks.attempt(seg, attempt=attempt, offset=offset)
            outcome = self._attempt(endpoint, TransferRequest(seg.path, offset, size), cancel, progress)
            if not isinstance(outcome, RetryableError):
                break
            self._hooks.attempt_failed(seg, attempt=attempt, outcome="retryable", reason=outcome.reason)
            if attempt > self.max_retries:
                break
            if cancel.wait(self.retry_delay_s * attempt):
                outcome = Cancelled()
                break

        if isinstance(outcome, Success):
            self.clear_progress(key)
            self._hooks.segment_done(seg, ok=True)
            self._handoff_uploaded(seg)
        else:
            if isinstance(outcome, FatalError):
                self._hooks.attempt_failed(seg, attempt=attempt, outcome="fatal", reason=outcome.reason)
            self._hooks.segment_done(seg, ok=False, reason=outcome.reason)
            self._handoff_failed(seg)
        return outcome

    def _attempt(self, endpoint, req: TransferRequest, cancel, progress) -> AttemptResult:
        key = str(req.path)
        with self._progress_lock:
            self._active[key] = req
        try:
            resp = self.transport.send(endpoint, req, cancel=cancel, on_progress=progress)
        except TransferCancelled:
            return Cancelled()
        except StreamTruncatedError as exc:
            self._set_offset(key, 0)
            return RetryableError(f"stream truncated: {exc}", 0)
        except RecoverableTransportError as exc:
            offset = min(req.offset + max(0, exc.committed), req.size)
            self._set_offset(key, offset)
            return RetryableError(str(exc) or type(exc).__name__, offset)
        except TransportError as exc:
            return FatalError(str(exc) or type(exc).__name__)
        except Exception as exc:
            return FatalError(f"{type(exc).__name__}: {exc}")
        finally:
            with self._progress_lock:
                self._active.pop(key, None)

        if resp.ok:
            return Success(resp.body)
        if resp.status in self.partial_receipt_codes:
            self._set_offset(key, req.offset)
        else:
            self.clear_progress(key)
        detail = f": {resp.body[:200]}" if resp.body else ""
        return RetryableError(f"HTTP {resp.status}{detail}", req.offset)

    def _resume_offset(self, key: str, size: int) -> int:
        with self._progress_lock:
            offset = self._progress.get(key, 0)
            if offset >= size:
                self._progress.pop(key, None)
                return 0
            return offset

    def _set_offset(self, key: str, offset: int) -> None:
        with self._progress_lock:
            if offset > 0:
                self._progress[key] = offset
            else:
                self._progress.pop(key, None)

    def _handoff_uploaded(self, seg: Segment) -> None:
        try:
            if self._on_uploaded is not None:
                self._on_uploaded(seg)
            else:
                seg.path.unlink(missing_ok=True)
                if seg.state is SegmentState.UPLOADING:
                    seg.mark(SegmentState.UPLOADED)
        except Exception as exc:
            self._hooks.error("uploader", reason="handoff_failed", segment=seg.name, error=str(exc))

    def _handoff_failed(self, seg: Segment) -> None:
        try:
            if self._on_failed is not None:
                self._on_failed(seg)
            elif seg.state is SegmentState.UPLOADING:
                seg.mark(SegmentState.FAILED_KEEP)
        except Exception as exc:
            self._hooks.error("uploader", reason="handoff_failed", segment=seg.name, error=str(exc))

    def _task_failed(self, exc: BaseException) -> None:
        self._hooks.error("uploader", reason="task_failed", error=str(exc))

    def _post(self, fn, *args) -> None:
        try:
            self._callbacks.submit(partial(fn, *args), OverflowPolicy.BLOCK_CALLER)
        except PoolClosedError:
            fn(*args)
