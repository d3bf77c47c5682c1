# core/pressure.py
from enum import IntEnum


class PressureLevel(IntEnum):
    """Host memory/resource pressure, ordered by severity."""

    LOW = 1  # running low, nothing to do yet
    MODERATE = 2  # release caches and idle resources
    CRITICAL = 3  # release everything that can be rebuilt later
    COMPLETE = 4  # process is about to be reclaimed

    @classmethod
    def parse(cls, v: "PressureLevel | int | str") -> "PressureLevel":
        if isinstance(v, str):
            return cls[v.strip().upper()]
        return cls(v)
