# core/hooks.py
from typing import Protocol


class PipelineHooks(Protocol):
    # dispatcher
    def dispatch(self, record, *, qsize, consumers): ...
    def overflow(self, *, policy, qsize): ...
    def pool_rebuilt(self, *, pool): ...
    def consumer_error(self, consumer, *, exc: BaseException): ...

    # segment log
    def recovery(self, *, directory, resumed, sealed, deleted): ...
    def segment_opened(self, segment, *, resumed: bool): ...
    def segment_sealed(self, segment, *, reason: str): ...
    def record_written(self, segment, *, nbytes: int): ...
    def write_retry(self, segment, *, exc: BaseException): ...

    # uploads
    def batch_start(self, *, batch_id, segments): ...
    def attempt(self, segment, *, attempt, offset): ...
    def attempt_failed(self, segment, *, attempt, outcome, reason): ...
    def segment_done(self, segment, *, ok: bool, reason: str | None = None): ...
    def batch_end(self, result): ...

    # shared
    def pressure(self, component: str, *, level): ...
    def error(self, component: str, *, reason: str, **kw): ...


class NoopHooks:
    def dispatch(self, *_, **__):
        pass

    def overflow(self, **_):
        pass

    def pool_rebuilt(self, **_):
        pass

    def consumer_error(self, *_, **__):
        pass

    def recovery(self, **_):
        pass

    def segment_opened(self, *_, **__):
        pass

    def segment_sealed(self, *_, **__):
        pass

    def record_written(self, *_, **__):
        pass

    def write_retry(self, *_, **__):
        pass

    def batch_start(self, **_):
        pass

    def attempt(self, *_, **__):
        pass

    def attempt_failed(self, *_, **__):
        pass

    def segment_done(self, *_, **__):
        pass

    def batch_end(self, *_, **__):
        pass

    def pressure(self, *_, **__):
        pass

    def error(self, *_, **__):
        pass
