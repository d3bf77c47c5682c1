# sensor_spool/app/build.py
from collections.abc import Mapping
from dataclasses import dataclass

from sensor_spool.app.collector import SensorCollector
from sensor_spool.app.protocols import MetadataProvider, StaticMetadata, UploadCallbacks
from sensor_spool.config.models import SpoolModel
from sensor_spool.core.clock import Clock, SampleClock, SystemClock
from sensor_spool.core.dispatcher import Dispatcher
from sensor_spool.core.hooks import NoopHooks, PipelineHooks
from sensor_spool.core.pressure import PressureLevel
from sensor_spool.core.switch import RecordingSwitch
from sensor_spool.core.workers import OverflowPolicy
from sensor_spool.io.pipeline_logging import PipelineLogging  # JSON logs
from sensor_spool.io.segment_log import SegmentLogWriter
from sensor_spool.net.transport import Endpoint, RequestsTransport, Transport
from sensor_spool.net.uploader import BatchInFlightError, UploadCoordinator


@dataclass
class App:
    model: SpoolModel
    clock: Clock
    hooks: PipelineHooks
    recording: RecordingSwitch
    dispatcher: Dispatcher
    writer: SegmentLogWriter
    uploader: UploadCoordinator
    collector: SensorCollector
    endpoint: Endpoint | None = None

    def sync(self, callbacks: UploadCallbacks | None = None, endpoint: Endpoint | None = None) -> int | None:
        """Upload everything pending. Returns the batch id, or None when there is nothing to send."""
        target = endpoint or self.endpoint
        if target is None:
            raise ValueError("no upload endpoint configured")
        if self.uploader.is_uploading:
            raise BatchInFlightError("an upload batch is already in flight")
        segments = self.writer.segments_for_upload()
        if not segments:
            return None
        try:
            return self.uploader.upload_batch(segments, target, callbacks)
        except Exception:
            # drop the snapshot copy taken for this batch
            self.writer.mark_failed(segments)
            raise

    def on_resource_pressure(self, level: PressureLevel | int | str) -> None:
        for component in (self.dispatcher, self.writer, self.uploader):
            component.on_resource_pressure(level)

    def close(self) -> None:
        self.collector.stop()
        self.dispatcher.shutdown()
        self.writer.close()
        self.uploader.shutdown()


def build(
    cfg: SpoolModel | Mapping,
    *,
    use_logging: bool = True,
    clock: Clock | None = None,
    metadata: MetadataProvider | None = None,
    transport: Transport | None = None,
    start_timer: bool = True,
    resume: bool = True,
) -> App:
    # 0) Validate config
    model = cfg if isinstance(cfg, SpoolModel) else SpoolModel.model_validate(cfg)

    # 1) Clock, metadata & hooks
    clock = clock or SystemClock()
    metadata = metadata or StaticMetadata(user_id=model.user_id)
    hooks = (
        PipelineLogging(
            run_id=model.run_id,
            clock=clock,
            level=model.log.level,
            debug=model.log.debug,
            sample_every=model.log.sample_every,
        )
        if use_logging
        else NoopHooks()
    )

    # 2) Dispatcher
    dispatcher = Dispatcher(
        hooks,
        workers=model.dispatch.workers,
        capacity=model.dispatch.capacity,
        overflow=OverflowPolicy(model.dispatch.overflow),
    )

    # 3) Durable log
    recording = RecordingSwitch(on=model.recording)
    st = model.storage
    writer = SegmentLogWriter(
        st.directory,
        recording=recording,
        metadata=metadata,
        clock=clock,
        hooks=hooks,
        compress=st.compress,
        max_segment_bytes=st.max_segment_bytes,
        rotation_interval_s=st.rotation_interval_s,
        min_forced_rotation_interval_s=st.min_forced_rotation_interval_s,
        buffer_bytes=st.buffer_bytes,
        start_timer=start_timer,
        resume=resume,
    )
    dispatcher.register(writer)

    # 4) Uploads: successful segments go back to the writer for deletion
    up = model.upload
    uploader = UploadCoordinator(
        transport
        or RequestsTransport(connect_timeout_s=up.connect_timeout_s, read_timeout_s=up.read_timeout_s),
        hooks=hooks,
        max_retries=up.max_retries,
        retry_delay_s=up.retry_delay_s,
        partial_receipt_codes=up.partial_receipt_codes,
        on_uploaded=lambda seg: writer.mark_uploaded([seg]),
        on_failed=lambda seg: writer.mark_failed([seg]),
        workers=up.workers,
    )

    # 5) Producer glue
    collector = SensorCollector(
        dispatcher, metadata, SampleClock(clock, period_ms=model.dispatch.sampling_period_ms)
    )

    return App(model, clock, hooks, recording, dispatcher, writer, uploader, collector, up.endpoint())
