# io/segments.py
from __future__ import annotations

import gzip
import json
import threading
import zlib
from collections.abc import Iterator
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path

from sensor_spool.core.clock import stamp, to_wall
from sensor_spool.core.record import Record

SEGMENT_MARKER = "_sensor_data_"
LEGACY_PREFIX = "sensor_data_"
UPLOAD_PREFIX = "upload_"
DEFAULT_USER = "default_user"


class Compression(Enum):
    PLAIN = ".jsonl"
    GZIP = ".jsonl.gz"

    @property
    def suffix(self) -> str:
        return self.value

    @classmethod
    def of(cls, path: Path | str) -> Compression:
        return cls.GZIP if str(path).endswith(cls.GZIP.value) else cls.PLAIN


class SegmentState(Enum):
    WRITING = "writing"
    SEALED = "sealed"
    UPLOADING = "uploading"
    UPLOADED = "uploaded"
    FAILED_KEEP = "failed_keep"


_TRANSITIONS: dict[SegmentState, frozenset[SegmentState]] = {
    SegmentState.WRITING: frozenset({SegmentState.SEALED}),
    SegmentState.SEALED: frozenset({SegmentState.UPLOADING, SegmentState.UPLOADED}),
    SegmentState.UPLOADING: frozenset({SegmentState.UPLOADED, SegmentState.FAILED_KEEP}),
    SegmentState.FAILED_KEEP: frozenset({SegmentState.UPLOADING, SegmentState.UPLOADED}),
    SegmentState.UPLOADED: frozenset(),
}


class SegmentStateError(RuntimeError):
    pass


@dataclass(eq=False)
class Segment:
    path: Path
    compression: Compression
    size: int = 0  # bytes handed to the file (compressed bytes for gzip)
    records: int = 0
    state: SegmentState = SegmentState.SEALED
    temporary: bool = False  # upload snapshot copy of the active segment
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    @classmethod
    def from_path(cls, path: Path | str, state: SegmentState = SegmentState.SEALED) -> Segment:
        p = Path(path)
        size = p.stat().st_size if p.exists() else 0
        return cls(
            path=p,
            compression=Compression.of(p),
            size=size,
            state=state,
            temporary=p.name.startswith(UPLOAD_PREFIX),
        )

    @property
    def name(self) -> str:
        return self.path.name

    @property
    def has_data(self) -> bool:
        # gzip files carry a header even when no record was written
        return self.records > 0 or (self.compression is Compression.PLAIN and self.size > 0)

    def mark(self, state: SegmentState) -> None:
        with self._lock:
            if state not in _TRANSITIONS[self.state]:
                raise SegmentStateError(f"{self.name}: {self.state.value} -> {state.value}")
            self.state = state

    def grow(self, nbytes: int) -> int:
        with self._lock:
            self.size += max(0, nbytes)
            self.records += 1
            return self.size


@dataclass(frozen=True)
class SegmentInfo:
    name: str
    size: int
    modified: datetime
    active: bool = False

    def __str__(self) -> str:
        tail = " (active)" if self.active else ""
        return f"{self.name} - {format_size(self.size)} - {self.modified:%m-%d %H:%M}{tail}"


# ----------------- naming -----------------------


def safe_user(user_id: str | None) -> str:
    u = (user_id or "").strip().replace("/", "_").replace("\\", "_")
    return u or DEFAULT_USER


def segment_name(user_id: str | None, ms: int, compression: Compression) -> str:
    return f"{safe_user(user_id)}{SEGMENT_MARKER}{stamp(ms)}{compression.suffix}"


def is_segment_name(name: str) -> bool:
    if not (name.endswith(Compression.PLAIN.value) or name.endswith(Compression.GZIP.value)):
        return False
    return SEGMENT_MARKER in name or name.startswith(LEGACY_PREFIX)


def discover_segments(directory: Path | str) -> list[Path]:
    """Segment files in `directory`, most recently modified first."""
    d = Path(directory)
    if not d.is_dir():
        return []
    found = [p for p in d.iterdir() if p.is_file() and is_segment_name(p.name)]
    return sorted(found, key=lambda p: p.stat().st_mtime, reverse=True)


def describe(path: Path, *, active: bool = False) -> SegmentInfo:
    st = path.stat()
    return SegmentInfo(
        name=path.name, size=st.st_size, modified=to_wall(int(st.st_mtime * 1000)), active=active
    )


def format_size(n: int) -> str:
    if n < 1024:
        return f"{n} B"
    if n < 1024**2:
        return f"{n / 1024:.2f} KB"
    if n < 1024**3:
        return f"{n / 1024**2:.2f} MB"
    return f"{n / 1024**3:.2f} GB"


# ----------------- reading -----------------------


def read_segment(path: Path | str) -> Iterator[Record]:
    """
    Yield the records of a plain or gzip segment. A gzip file cut short by a
    crash yields everything up to the last flushed line; malformed lines are
    skipped.
    """
    p = Path(path)
    opener = gzip.open if Compression.of(p) is Compression.GZIP else open
    with opener(p, "rt", encoding="utf-8") as fp:
        try:
            for line in fp:
                line = line.strip()
                if not line:
                    continue
                try:
                    yield Record.from_wire(json.loads(line))
                except (ValueError, KeyError, TypeError):
                    continue
        except (EOFError, zlib.error, gzip.BadGzipFile):
            return
