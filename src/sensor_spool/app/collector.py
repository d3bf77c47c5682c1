# app/collector.py
from collections.abc import Iterable

import numpy as np

from sensor_spool.app.protocols import MetadataProvider
from sensor_spool.core.clock import SampleClock
from sensor_spool.core.dispatcher import Dispatcher
from sensor_spool.core.record import Record

SENSORS = ("accelerometer", "gyroscope", "magnetometer", "gravity")


class SensorCollector:
    """
    Producer side: turns raw (x, y, z) readings into records and hands them
    to the dispatcher. Readings are only accepted while the dispatcher is
    collecting; every reading within one sampling period shares a timestamp.
    """

    def __init__(self, dispatcher: Dispatcher, metadata: MetadataProvider, clock: SampleClock | None = None):
        self.dispatcher = dispatcher
        self.metadata = metadata
        self.clock = clock or SampleClock()
        self.accepted = 0

    def start(self) -> None:
        self.clock.start()
        self.dispatcher.start_collecting()

    def stop(self) -> None:
        self.dispatcher.stop_collecting()
        self.clock.stop()

    def on_sample(self, sensor_name: str, x: float, y: float, z: float, accuracy: int = 3) -> Record | None:
        if not self.dispatcher.collecting:
            return None
        app_name, package_name = self.metadata.foreground_app()
        record = Record(
            timestamp_ms=self.clock.now_ms(),
            sensor_name=sensor_name,
            x=x,
            y=y,
            z=z,
            accuracy=accuracy,
            user_id=self.metadata.current_user_id(),
            foreground_app_name=app_name or "",
            foreground_package_name=package_name or "",
        )
        self.dispatcher.dispatch(record)
        self.accepted += 1
        return record

    def on_block(self, sensor_name: str, values: Iterable, accuracy: int = 3) -> int:
        """Feed an (n, 3) block of readings for one sensor; returns how many were accepted."""
        arr = np.asarray(values, dtype=np.float32).reshape(-1, 3)
        n = 0
        for x, y, z in arr:
            if self.on_sample(sensor_name, float(x), float(y), float(z), accuracy) is None:
                break
            n += 1
        return n
