# io/segment_log.py
from __future__ import annotations

import gzip
import json
import os
import shutil
import threading
from collections.abc import Callable, Iterable
from datetime import datetime
from pathlib import Path

from sensor_spool.app.protocols import MetadataProvider
from sensor_spool.core.clock import Clock, SystemClock, to_wall
from sensor_spool.core.hooks import NoopHooks, PipelineHooks
from sensor_spool.core.pressure import PressureLevel
from sensor_spool.core.record import Record
from sensor_spool.io.segments import (
    UPLOAD_PREFIX,
    Compression,
    Segment,
    SegmentInfo,
    SegmentState,
    describe,
    discover_segments,
    segment_name,
)

DEFAULT_MAX_SEGMENT_BYTES = 1024**3
DEFAULT_ROTATION_INTERVAL_S = 3600.0
STATE_FILE = ".spool_state.json"


class _CountingFile:
    """Binary file wrapper that counts the bytes actually handed to the OS file."""

    def __init__(self, raw):
        self.raw = raw
        self.written = 0
        self.discard = False

    def write(self, data) -> int:
        if self.discard:
            return len(data)
        n = self.raw.write(data)
        self.written += len(data) if n is None else n
        return n

    def flush(self) -> None:
        if not self.discard:
            self.raw.flush()

    def close(self) -> None:
        self.raw.close()


class _SegmentStream:
    """One open segment file: appendable text, or a single gzip stream for the whole file."""

    def __init__(self, path: Path, compression: Compression, buffer_bytes: int):
        gz = compression is Compression.GZIP
        # a gzip stream cannot be appended to, so gzip segments always start empty
        raw = open(path, "wb" if gz else "ab", buffering=buffer_bytes)
        self._sink = _CountingFile(raw)
        self._gz = gzip.GzipFile(fileobj=self._sink, mode="wb") if gz else None
        self.broken = False

    def write(self, data: bytes) -> int:
        before = self._sink.written
        try:
            (self._gz or self._sink).write(data)
            self.flush()
        except OSError:
            self.broken = True
            raise
        return self._sink.written - before

    def flush(self) -> None:
        if self._gz is not None:
            self._gz.flush()
        self._sink.flush()

    def close(self) -> None:
        try:
            if self._gz is not None:
                # after a failed write the CRC covers bytes the file never got:
                # leave the stream without a trailer instead of a wrong one
                self._sink.discard = self.broken
                self._gz.close()  # leaves the file object open
        finally:
            self._sink.close()


class _RotationTimer(threading.Thread):
    def __init__(self, interval_s: float, fn: Callable[[], None], on_error: Callable[[BaseException], None]):
        super().__init__(name="segment-rotation", daemon=True)
        self.interval_s, self._fn, self._on_error = interval_s, fn, on_error
        self._stopped = threading.Event()

    def run(self) -> None:
        while not self._stopped.wait(self.interval_s):
            try:
                self._fn()
            except Exception as exc:
                self._on_error(exc)

    def stop(self) -> None:
        self._stopped.set()


class SegmentLogWriter:
    """
    Append-only, crash-recoverable record log split into rotating segments.

    Every stream lifecycle step (open, write, rotate, snapshot, close) runs
    under one lock owned by the writer. Writes only happen while the external
    recording flag is on.

    Startup recovery: empty files are deleted, the newest file below the size
    threshold is resumed when it is plain text (a finished gzip stream cannot
    be appended to, so a gzip candidate is sealed instead), and every other
    file is sealed and queued for upload. With `resume=False` (offline tools)
    nothing is resumed and every file is sealed.
    """

    def __init__(
        self,
        directory: Path | str,
        *,
        recording: Callable[[], bool],
        metadata: MetadataProvider | None = None,
        clock: Clock | None = None,
        hooks: PipelineHooks | None = None,
        compress: bool = True,
        max_segment_bytes: int = DEFAULT_MAX_SEGMENT_BYTES,
        rotation_interval_s: float = DEFAULT_ROTATION_INTERVAL_S,
        min_forced_rotation_interval_s: float = 0.0,
        buffer_bytes: int = 8 * 1024,
        start_timer: bool = True,
        resume: bool = True,
    ):
        if max_segment_bytes <= 0:
            raise ValueError("max_segment_bytes must be > 0")
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)
        self.compression = Compression.GZIP if compress else Compression.PLAIN
        self.max_segment_bytes = max_segment_bytes
        self.rotation_interval_s = rotation_interval_s
        self.min_forced_rotation_interval_s = min_forced_rotation_interval_s
        self._recording = recording
        self._metadata = metadata
        self._clock = clock or SystemClock()
        self._hooks = hooks or NoopHooks()
        self._buffer_bytes = buffer_bytes
        self._resume = resume

        self._lock = threading.RLock()
        self._active: Segment | None = None
        self._stream: _SegmentStream | None = None
        self._sealed: list[Segment] = []
        self._closed = False
        self._timer: _RotationTimer | None = None
        self._last_rotation_ms = self._clock.now_ms()
        self._last_upload_ms: int | None = self._load_state().get("last_upload_ms")

        with self._lock:
            self._recover()
            if self._active is None:
                self._open_new_locked()
        if start_timer:
            self._start_timer()

    # ---------------- properties -----------------------

    @property
    def active_segment(self) -> Segment | None:
        return self._active

    @property
    def sealed_segments(self) -> tuple[Segment, ...]:
        with self._lock:
            return tuple(self._sealed)

    @property
    def pending_count(self) -> int:
        with self._lock:
            n = sum(1 for s in self._sealed if s.state is not SegmentState.UPLOADING)
            return n + (1 if self._active is not None and self._active.has_data else 0)

    @property
    def pending_bytes(self) -> int:
        with self._lock:
            total = sum(s.size for s in self._sealed)
            return total + (self._active.size if self._active is not None else 0)

    @property
    def last_upload_at(self) -> datetime | None:
        return to_wall(self._last_upload_ms) if self._last_upload_ms else None

    # ---------------- write path -----------------------

    def on_record(self, record: Record) -> None:
        if not self._recording():
            return
        data = record.to_line().encode("utf-8")
        with self._lock:
            if self._closed:
                return
            try:
                n = self._write_locked(data)
            except OSError as exc:
                self._hooks.write_retry(self._active, exc=exc)
                self._reopen_locked()
                n = self._write_locked(data)  # second failure goes to the caller
            size = self._active.grow(n)
            self._hooks.record_written(self._active, nbytes=n)
            if size >= self.max_segment_bytes:
                self._rotate_locked("size")

    def flush(self) -> None:
        with self._lock:
            if self._stream is not None:
                self._stream.flush()

    # ---------------- rotation -----------------------

    def rotate(self, reason: str = "manual") -> Segment | None:
        """Seal the active segment and start a new one. No-op when it holds no records."""
        with self._lock:
            if self._closed:
                return None
            return self._rotate_locked(reason)

    def set_max_segment_bytes(self, n: int) -> None:
        if n <= 0:
            raise ValueError("max_segment_bytes must be > 0")
        with self._lock:
            self.max_segment_bytes = n

    def set_rotation_interval(self, seconds: float) -> None:
        self._stop_timer()
        self.rotation_interval_s = seconds
        if not self._closed:
            self._start_timer()

    # ---------------- upload hand-off -----------------------

    def segments_for_upload(self, include_active: bool = True) -> list[Segment]:
        """
        Sealed segments plus a point-in-time view of the active one.

        A plain active segment is copied to an `upload_` file and keeps
        receiving writes. A gzip one has to be finalized to be a valid archive,
        so the snapshot *is* a rotation: it is sealed, queued and returned.
        """
        with self._lock:
            out = [
                s
                for s in self._sealed
                if s.state in (SegmentState.SEALED, SegmentState.FAILED_KEEP)
            ]
            active = self._active
            if not include_active or self._closed or active is None or not active.has_data:
                return out
            if active.compression is Compression.GZIP:
                since_ms = self._clock.now_ms() - self._last_rotation_ms
                if since_ms >= self.min_forced_rotation_interval_s * 1000:
                    sealed = self._rotate_locked("snapshot")
                    if sealed is not None:
                        out.append(sealed)
            else:
                out.append(self._snapshot_plain_locked())
            return out

    def mark_uploaded(self, segments: Iterable[Segment]) -> int:
        done: set[Path] = set()
        with self._lock:
            for seg in segments:
                if seg is self._active:
                    continue
                try:
                    seg.path.unlink(missing_ok=True)
                except OSError as exc:
                    self._hooks.error("segment_log", reason="delete_failed", path=str(seg.path), error=str(exc))
                    continue
                if seg.state is not SegmentState.UPLOADED:
                    seg.mark(SegmentState.UPLOADED)
                done.add(seg.path)
            if done:
                self._sealed = [s for s in self._sealed if s.path not in done]
                self._last_upload_ms = self._clock.now_ms()
                self._save_state()
        return len(done)

    def mark_failed(self, segments: Iterable[Segment]) -> None:
        with self._lock:
            known = {s.path for s in self._sealed}
            for seg in segments:
                if seg.temporary:
                    # the data still lives in the active segment
                    seg.path.unlink(missing_ok=True)
                    continue
                if seg.state is SegmentState.UPLOADING:
                    seg.mark(SegmentState.FAILED_KEEP)
                if seg.path not in known and seg.path.exists():
                    self._sealed.append(seg)

    # ---------------- housekeeping -----------------------

    def purge(self, keep_recent: int = 0) -> int:
        """Delete segment files other than the active one, keeping the `keep_recent` newest."""
        with self._lock:
            active = self._active.path if self._active is not None else None
            files = [p for p in discover_segments(self.directory) if p != active]
            deleted: set[Path] = set()
            for p in files[max(0, keep_recent):]:
                try:
                    p.unlink()
                    deleted.add(p)
                except OSError as exc:
                    self._hooks.error("segment_log", reason="purge_failed", path=str(p), error=str(exc))
            self._sealed = [s for s in self._sealed if s.path not in deleted]
            return len(deleted)

    def describe(self) -> list[SegmentInfo]:
        with self._lock:
            active = self._active.path if self._active is not None else None
            return [describe(p, active=p == active) for p in discover_segments(self.directory)]

    def on_resource_pressure(self, level: PressureLevel | int | str) -> None:
        level = PressureLevel.parse(level)
        self._hooks.pressure("segment_log", level=level.name)
        if level >= PressureLevel.CRITICAL:
            if self._recording():
                self.rotate("pressure")
        elif level >= PressureLevel.MODERATE:
            self.flush()

    def close(self) -> None:
        self._stop_timer()
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self._close_stream_locked()

    def __enter__(self) -> SegmentLogWriter:
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    # ---------------- internals -----------------------

    def _recover(self) -> None:
        candidate: Path | None = None
        found: list[Segment] = []
        deleted = 0
        for p in discover_segments(self.directory):
            try:
                size = p.stat().st_size
            except FileNotFoundError:
                continue
            if size == 0:
                try:
                    p.unlink()
                    deleted += 1
                except OSError as exc:
                    self._hooks.error("segment_log", reason="delete_empty_failed", path=str(p), error=str(exc))
                continue
            if (
                self._resume
                and candidate is None
                and size < self.max_segment_bytes
                and not p.name.startswith(UPLOAD_PREFIX)
            ):
                candidate = p
                continue
            found.append(Segment.from_path(p))

        resumed = None
        if candidate is not None:
            if Compression.of(candidate) is Compression.PLAIN:
                resumed = self._resume_locked(candidate)
            if resumed is None:
                seg = Segment.from_path(candidate)
                self._hooks.segment_sealed(seg, reason="recovered")
                found.insert(0, seg)
        # oldest first, so uploads drain in recording order
        self._sealed.extend(reversed(found))
        self._hooks.recovery(
            directory=str(self.directory),
            resumed=resumed.name if resumed else None,
            sealed=len(found),
            deleted=deleted,
        )

    def _resume_locked(self, path: Path) -> Segment | None:
        seg = Segment.from_path(path, state=SegmentState.WRITING)
        try:
            self._stream = _SegmentStream(path, Compression.PLAIN, self._buffer_bytes)
        except OSError as exc:
            self._hooks.error("segment_log", reason="resume_failed", path=str(path), error=str(exc))
            return None
        self._active = seg
        self._hooks.segment_opened(seg, resumed=True)
        return seg

    def _open_new_locked(self) -> Segment:
        """Name a fresh segment. The file itself is created by the first write."""
        self._close_stream_locked()
        ms = self._clock.now_ms()
        user = self._metadata.current_user_id() if self._metadata is not None else None
        path = self.directory / segment_name(user, ms, self.compression)
        while path.exists():
            ms += 1
            path = self.directory / segment_name(user, ms, self.compression)
        self._active = Segment(path=path, compression=self.compression, state=SegmentState.WRITING)
        self._hooks.segment_opened(self._active, resumed=False)
        return self._active

    def _write_locked(self, data: bytes) -> int:
        if self._active is None:
            self._open_new_locked()
        if self._stream is None:
            self._stream = _SegmentStream(self._active.path, self._active.compression, self._buffer_bytes)
        return self._stream.write(data)

    def _reopen_locked(self) -> None:
        seg = self._active
        self._close_stream_locked()
        if seg is not None and seg.compression is Compression.GZIP and seg.has_data:
            # reopening would truncate the file: keep what it holds and move on
            self._seal_locked(seg, "reopen")
            self._open_new_locked()

    def _rotate_locked(self, reason: str) -> Segment | None:
        seg = self._active
        if seg is None or not seg.has_data:
            return None
        self._close_stream_locked()
        self._seal_locked(seg, reason)
        self._open_new_locked()
        return seg

    def _seal_locked(self, seg: Segment, reason: str) -> None:
        if seg.path.exists():
            seg.size = seg.path.stat().st_size
        seg.mark(SegmentState.SEALED)
        self._sealed.append(seg)
        self._last_rotation_ms = self._clock.now_ms()
        self._hooks.segment_sealed(seg, reason=reason)

    def _close_stream_locked(self) -> None:
        stream, self._stream = self._stream, None
        if stream is None:
            return
        try:
            stream.close()
        except OSError as exc:
            self._hooks.error("segment_log", reason="close_failed", error=str(exc))

    def _snapshot_plain_locked(self) -> Segment:
        seg = self._active
        if self._stream is not None:
            self._stream.flush()
        copy = self.directory / f"{UPLOAD_PREFIX}{self._clock.now_ms()}_{seg.name}"
        shutil.copyfile(seg.path, copy)
        return Segment.from_path(copy)

    def _on_timer(self) -> None:
        if not self._recording():
            return
        self.rotate("interval")

    def _start_timer(self) -> None:
        if self.rotation_interval_s <= 0:
            return
        self._timer = _RotationTimer(
            self.rotation_interval_s,
            self._on_timer,
            lambda exc: self._hooks.error("segment_log", reason="rotation_failed", error=str(exc)),
        )
        self._timer.start()

    def _stop_timer(self) -> None:
        timer, self._timer = self._timer, None
        if timer is not None:
            timer.stop()
            if timer is not threading.current_thread():
                timer.join(timeout=1.0)

    def _load_state(self) -> dict:
        try:
            return json.loads((self.directory / STATE_FILE).read_text(encoding="utf-8"))
        except (OSError, ValueError):
            return {}

    def _save_state(self) -> None:
        path = self.directory / STATE_FILE
        tmp = path.with_suffix(".tmp")
        try:
            tmp.write_text(json.dumps({"last_upload_ms": self._last_upload_ms}), encoding="utf-8")
            os.replace(tmp, path)
        except OSError as exc:
            self._hooks.error("segment_log", reason="state_save_failed", error=str(exc))
