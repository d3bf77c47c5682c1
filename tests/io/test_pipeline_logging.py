# tests/io/test_pipeline_logging.py
import json
import logging
from pathlib import Path

from sensor_spool.core.clock import ManualClock
from sensor_spool.core.record import Record
from sensor_spool.io.pipeline_logging import PipelineLogging, _default_json_logger
from sensor_spool.io.segments import Compression, Segment
from sensor_spool.net.uploader import BatchResult


def test_segment_events_are_structured(caplog):
    log = logging.getLogger("tests.pipeline")
    hooks = PipelineLogging(run_id="r-1", clock=ManualClock.utc(2024, 1, 1), logger=log)
    seg = Segment(path=Path("/tmp/u_sensor_data_20240101_000000_000.jsonl"), compression=Compression.PLAIN, size=42)

    with caplog.at_level(logging.INFO, logger="tests.pipeline"):
        hooks.segment_sealed(seg, reason="size")
        hooks.batch_end(BatchResult(success_count=1, fail_count=1, total=2, errors="x: HTTP 500"))

    sealed, batch = caplog.records
    assert sealed.getMessage() == "segment_sealed"
    assert sealed.extra["run_id"] == "r-1"
    assert sealed.extra["segment"] == seg.name
    assert sealed.extra["reason"] == "size"
    assert sealed.extra["wall"].startswith("2024-01-01T00:00:00")
    assert batch.extra["failed"] == 1 and batch.extra["errors"] == "x: HTTP 500"


def test_per_record_events_are_sampled_in_debug(caplog):
    log = logging.getLogger("tests.sampled")
    hooks = PipelineLogging(debug=True, sample_every=10, logger=log)
    r = Record(timestamp_ms=1, sensor_name="gravity", x=0, y=0, z=1, accuracy=3, user_id="u")

    with caplog.at_level(logging.DEBUG, logger="tests.sampled"):
        for _ in range(25):
            hooks.dispatch(r, qsize=0, consumers=1)
    assert [rec.extra["n"] for rec in caplog.records] == [10, 20]

    quiet = PipelineLogging(debug=False, logger=logging.getLogger("tests.quiet"))
    with caplog.at_level(logging.DEBUG, logger="tests.quiet"):
        quiet.dispatch(r, qsize=0, consumers=1)
    assert len(caplog.records) == 2


def test_default_logger_formats_json():
    log = _default_json_logger(name="tests.json_fmt", level="INFO")
    (handler,) = log.handlers
    record = log.makeRecord(log.name, logging.WARNING, __file__, 1, "write_retry", (), None)
    record.extra = {"run_id": "local", "segment": "a.jsonl"}
    payload = json.loads(handler.format(record))
    assert payload == {
        "level": "WARNING",
        "msg": "write_retry",
        "logger": "tests.json_fmt",
        "run_id": "local",
        "segment": "a.jsonl",
    }
    assert _default_json_logger(name="tests.json_fmt").handlers == [handler]
