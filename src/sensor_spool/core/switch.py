# core/switch.py
import threading


class RecordingSwitch:
    """Externally controlled on/off flag; the segment log only writes while it is on."""

    def __init__(self, on: bool = False):
        self._ev = threading.Event()
        if on:
            self._ev.set()

    def __call__(self) -> bool:
        return self._ev.is_set()

    def on(self) -> None:
        self._ev.set()

    def off(self) -> None:
        self._ev.clear()

    def set(self, value: bool) -> None:
        if value:
            self._ev.set()
        else:
            self._ev.clear()

    @property
    def is_on(self) -> bool:
        return self._ev.is_set()
