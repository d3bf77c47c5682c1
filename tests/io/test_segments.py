# tests/io/test_segments.py
import gzip
import os

import pytest

from sensor_spool.core.record import Record
from sensor_spool.io.segments import (
    Compression,
    Segment,
    SegmentState,
    SegmentStateError,
    discover_segments,
    format_size,
    is_segment_name,
    read_segment,
    segment_name,
)


def rec(i: int) -> Record:
    return Record(timestamp_ms=i, sensor_name="magnetometer", x=1.0, y=2.0, z=3.0, accuracy=1, user_id="u")


def test_segment_names():
    assert segment_name("alice", 0, Compression.PLAIN) == "alice_sensor_data_19700101_000000_000.jsonl"
    assert segment_name("", 1_001, Compression.GZIP) == "default_user_sensor_data_19700101_000001_001.jsonl.gz"
    assert is_segment_name("alice_sensor_data_19700101_000000_000.jsonl")
    assert is_segment_name("sensor_data_19700101_000000_000.jsonl.gz")  # legacy prefix
    assert is_segment_name("upload_5_alice_sensor_data_19700101_000000_000.jsonl")
    assert not is_segment_name("alice_sensor_data_19700101_000000_000.csv")
    assert not is_segment_name(".spool_state.json")


def test_state_transitions():
    seg = Segment(path=None, compression=Compression.PLAIN, state=SegmentState.WRITING)
    with pytest.raises(SegmentStateError):
        seg.mark(SegmentState.UPLOADING)
    seg.mark(SegmentState.SEALED)
    with pytest.raises(SegmentStateError):
        seg.mark(SegmentState.SEALED)  # sealed exactly once
    seg.mark(SegmentState.UPLOADING)
    seg.mark(SegmentState.FAILED_KEEP)
    seg.mark(SegmentState.UPLOADING)
    seg.mark(SegmentState.UPLOADED)
    with pytest.raises(SegmentStateError):
        seg.mark(SegmentState.UPLOADING)


def test_discover_newest_first(tmp_path):
    old = tmp_path / segment_name("u", 0, Compression.PLAIN)
    new = tmp_path / segment_name("u", 5_000, Compression.GZIP)
    old.write_text("x\n")
    new.write_bytes(b"x")
    (tmp_path / "notes.txt").write_text("ignored")
    os.utime(old, (100, 100))
    os.utime(new, (200, 200))
    assert discover_segments(tmp_path) == [new, old]
    assert discover_segments(tmp_path / "missing") == []


def test_from_path_flags_upload_copies(tmp_path):
    p = tmp_path / ("upload_1_" + segment_name("u", 0, Compression.PLAIN))
    p.write_text("abc\n")
    seg = Segment.from_path(p)
    assert seg.temporary and seg.size == 4 and seg.state is SegmentState.SEALED


def test_read_segment_skips_bad_lines(tmp_path):
    p = tmp_path / segment_name("u", 0, Compression.PLAIN)
    p.write_text(rec(1).to_line() + "not json\n\n" + rec(2).to_line(), encoding="utf-8")
    assert [r.timestamp_ms for r in read_segment(p)] == [1, 2]


def test_read_segment_tolerates_missing_gzip_trailer(tmp_path):
    p = tmp_path / segment_name("u", 0, Compression.GZIP)
    data = gzip.compress("".join(rec(i).to_line() for i in range(20)).encode())
    p.write_bytes(data[:-8])  # drop CRC and size, as after a crash
    assert [r.timestamp_ms for r in read_segment(p)] == list(range(20))


def test_read_segment_stops_at_bad_gzip_trailer(tmp_path):
    p = tmp_path / segment_name("u", 0, Compression.GZIP)
    data = bytearray(gzip.compress("".join(rec(i).to_line() for i in range(20)).encode()))
    data[-8] ^= 0xFF  # wrong CRC
    p.write_bytes(bytes(data))
    assert [r.timestamp_ms for r in read_segment(p)] == list(range(20))


def test_format_size():
    assert format_size(12) == "12 B"
    assert format_size(2048) == "2.00 KB"
    assert format_size(3 * 1024**2) == "3.00 MB"
    assert format_size(1024**3) == "1.00 GB"
