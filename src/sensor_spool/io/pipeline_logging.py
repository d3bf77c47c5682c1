# io/pipeline_logging.py
import json
import logging
import sys

from sensor_spool.core.clock import to_wall
from sensor_spool.core.hooks import NoopHooks


def _default_json_logger(name="sensor_spool", level="INFO"):
    logger = logging.getLogger(name)
    if not logger.handlers:
        h = logging.StreamHandler(sys.stdout)

        class _JsonFormatter(logging.Formatter):
            def format(self, record: logging.LogRecord) -> str:
                payload = {
                    "level": record.levelname,
                    "msg": record.getMessage(),
                    "logger": record.name,
                }
                extra = getattr(record, "extra", None)
                if isinstance(extra, dict):
                    payload.update(extra)
                return json.dumps(payload, default=str)

        h.setFormatter(_JsonFormatter())
        logger.addHandler(h)
        logger.setLevel(level)
    return logger


class PipelineLogging(NoopHooks):
    """
    One place to shape and emit structured logs for the dispatcher, the segment log and uploads.
    """

    def __init__(
        self,
        run_id: str = "local",
        clock=None,
        level: str = "INFO",
        debug: bool = False,
        sample_every: int = 1000,
        logger: logging.Logger | None = None,
    ):
        self.run_id, self.clock, self.debug, self.sample_every = (
            run_id,
            clock,
            debug,
            max(1, sample_every),
        )
        self.log = logger or _default_json_logger(level=level)
        self._dispatched = 0
        self._written = 0

    # --------------- Helpers -----------------------------

    def _emit(self, level: str, msg: str, **extra):
        payload = {"run_id": self.run_id}
        if self.clock is not None:
            payload["wall"] = to_wall(self.clock.now_ms()).isoformat()
        self.log.log(getattr(logging, level), msg, extra={"extra": {**payload, **extra}})

    @staticmethod
    def _seg(segment) -> dict:
        if segment is None:
            return {}
        return {
            "segment": segment.name,
            "size": segment.size,
            "state": segment.state.value,
        }

    def _sampled(self, n: int) -> bool:
        return self.debug and (n % self.sample_every) == 0

    # --------------------------------------------------------

    # dispatcher

    def dispatch(self, record, *, qsize, consumers):
        self._dispatched += 1
        if self._sampled(self._dispatched):
            self._emit(
                "DEBUG",
                "dispatch",
                sensor=record.sensor_name,
                t=record.timestamp_ms,
                qsize=qsize,
                consumers=consumers,
                n=self._dispatched,
            )

    def overflow(self, *, policy, qsize):
        if self.debug:
            self._emit("DEBUG", "dispatch_overflow", policy=policy, qsize=qsize)

    def pool_rebuilt(self, *, pool):
        self._emit("WARNING", "pool_rebuilt", pool=pool)

    def consumer_error(self, consumer, *, exc: BaseException):
        self._emit("ERROR", "consumer_error", consumer=type(consumer).__name__, error=str(exc))

    # segment log

    def recovery(self, *, directory, resumed, sealed, deleted):
        self._emit("INFO", "recovery", directory=directory, resumed=resumed, sealed=sealed, deleted=deleted)

    def segment_opened(self, segment, *, resumed: bool):
        self._emit("INFO", "segment_opened", **self._seg(segment), resumed=resumed)

    def segment_sealed(self, segment, *, reason: str):
        self._emit("INFO", "segment_sealed", **self._seg(segment), records=segment.records, reason=reason)

    def record_written(self, segment, *, nbytes: int):
        self._written += 1
        if self._sampled(self._written):
            self._emit("DEBUG", "record_written", **self._seg(segment), nbytes=nbytes, n=self._written)

    def write_retry(self, segment, *, exc: BaseException):
        self._emit("WARNING", "write_retry", **self._seg(segment), error=str(exc))

    # uploads

    def batch_start(self, *, batch_id, segments):
        self._emit("INFO", "batch_start", batch_id=batch_id, segments=segments)

    def attempt(self, segment, *, attempt, offset):
        level = "INFO" if attempt > 1 or offset else ("DEBUG" if self.debug else None)
        if level:
            self._emit(level, "upload_attempt", **self._seg(segment), attempt=attempt, offset=offset)

    def attempt_failed(self, segment, *, attempt, outcome, reason):
        self._emit("WARNING", "upload_attempt_failed", **self._seg(segment), attempt=attempt, outcome=outcome, reason=reason)

    def segment_done(self, segment, *, ok: bool, reason: str | None = None):
        self._emit("INFO" if ok else "WARNING", "segment_uploaded" if ok else "segment_failed", **self._seg(segment), reason=reason)

    def batch_end(self, result):
        self._emit(
            "INFO",
            "batch_end",
            success=result.success_count,
            failed=result.fail_count,
            total=result.total,
            cancelled=result.cancelled,
            errors=result.errors or None,
        )

    # shared

    def pressure(self, component: str, *, level):
        self._emit("WARNING", "resource_pressure", component=component, level=level)

    def error(self, component: str, *, reason: str, **kw):
        self._emit("ERROR", f"{component}_error", reason=reason, **kw)
