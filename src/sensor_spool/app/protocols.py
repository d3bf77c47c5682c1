from typing import Protocol, runtime_checkable

from sensor_spool.core.record import Record


# ------------- Record flow --------------------
@runtime_checkable
class RecordConsumer(Protocol):
    """
    Anything registered with the dispatcher.
    Runs on a dispatcher worker (or inline on the producer's thread under
    saturation); exceptions stay inside the consumer's own fault boundary.
    """

    def on_record(self, record: Record) -> None: ...


@runtime_checkable
class MetadataProvider(Protocol):
    """
    Lookups only: current user id and the foreground app as (name, package).
    Holds no reference that keeps the host alive.
    """

    def current_user_id(self) -> str: ...
    def foreground_app(self) -> tuple[str, str]: ...


class StaticMetadata:
    """Fixed metadata, for headless runs and tests."""

    def __init__(self, user_id: str = "test", app_name: str = "", package_name: str = ""):
        self.user_id, self.app_name, self.package_name = user_id, app_name, package_name

    def current_user_id(self) -> str:
        return self.user_id

    def foreground_app(self) -> tuple[str, str]:
        return self.app_name, self.package_name


# --------------- Host signals -------------------------


@runtime_checkable
class PressureAware(Protocol):
    def on_resource_pressure(self, level) -> None: ...


@runtime_checkable
class UploadCallbacks(Protocol):
    """Delivered on the uploader's callback thread; exactly one of on_success/on_failure per batch."""

    def on_progress(self, percent: int) -> None: ...
    def on_success(self, result) -> None: ...
    def on_failure(self, result) -> None: ...
