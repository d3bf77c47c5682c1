# core/record.py
from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any

import numpy as np

SENSOR_TYPE = "sensor"


def _f32(v: float) -> float | None:
    # channels are float32 on the wire; round-trip through numpy to keep that precision.
    # NaN and inf have no JSON form and are written as null
    f = np.float32(v)
    return float(f) if np.isfinite(f) else None


def _channel(values: dict[str, Any], key: str) -> float:
    v = values.get(key, 0.0)
    return float("nan") if v is None else float(v)


@dataclass(frozen=True)
class Record:
    timestamp_ms: int
    sensor_name: str  # "accelerometer", "gyroscope", "magnetometer", "gravity"
    x: float
    y: float
    z: float
    accuracy: int
    user_id: str
    foreground_app_name: str = ""
    foreground_package_name: str = ""
    type: str = SENSOR_TYPE

    def to_wire(self) -> dict[str, Any]:
        return {
            "timestamp_ms": int(self.timestamp_ms),
            "type": self.type,
            "user_id": self.user_id,
            "foreground_app_name": self.foreground_app_name,
            "foreground_package_name": self.foreground_package_name,
            "sensor_name": self.sensor_name,
            "values": {"x": _f32(self.x), "y": _f32(self.y), "z": _f32(self.z)},
            "accuracy": int(self.accuracy),
        }

    def to_line(self) -> str:
        return json.dumps(self.to_wire(), separators=(",", ":"), ensure_ascii=False, allow_nan=False) + "\n"

    @classmethod
    def from_wire(cls, payload: dict[str, Any]) -> Record:
        values = payload.get("values") or {}
        return cls(
            timestamp_ms=int(payload["timestamp_ms"]),
            sensor_name=payload.get("sensor_name", "unknown"),
            x=_channel(values, "x"),
            y=_channel(values, "y"),
            z=_channel(values, "z"),
            accuracy=int(payload.get("accuracy", 0)),
            user_id=payload.get("user_id", ""),
            foreground_app_name=payload.get("foreground_app_name", ""),
            foreground_package_name=payload.get("foreground_package_name", ""),
            type=payload.get("type", SENSOR_TYPE),
        )
