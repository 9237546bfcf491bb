# Author: Omi Shrestha

"""
Display state shared by the screens, and the dispatcher that keeps every
change to it on the event loop thread.
"""

import asyncio
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from notification_handler import mean_rr_ms

HR_PLACEHOLDER = "Heart Rate: -- bpm"
HRV_PLACEHOLDER = "HRV: -- ms"


class UiThread:
    """
    Marshals callbacks onto the event loop that owns the display.

    Callbacks posted from the loop thread run inline, anything else is
    queued with call_soon_threadsafe and runs in posting order.
    """

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None):
        self.loop = loop or asyncio.get_running_loop()
        self._thread_id = None

    def _on_loop_thread(self):
        if self._thread_id is None:
            try:
                if asyncio.get_running_loop() is self.loop:
                    self._thread_id = threading.get_ident()
            except RuntimeError:
                return False
        return self._thread_id == threading.get_ident()

    def run_on_ui_thread(self, callback: Callable, *args):
        if self._on_loop_thread():
            callback(*args)
        else:
            self.loop.call_soon_threadsafe(callback, *args)

    def post_delayed(self, callback: Callable, delay: float, *args) -> asyncio.TimerHandle:
        return self.loop.call_later(delay, callback, *args)


@dataclass
class Toast:
    """Transient user-visible notice"""
    message: str
    long: bool = False
    timestamp: float = field(default_factory=time.time)


class Toaster:
    """Collects toasts and hands each one to the registered listeners."""

    def __init__(self, limit=50):
        self.history = deque(maxlen=limit)
        self.listeners: List[Callable[[Toast], None]] = []

    def show(self, message: str, long: bool = False) -> Toast:
        toast = Toast(message, long)
        self.history.append(toast)
        for listener in self.listeners:
            listener(toast)
        return toast

    def recent(self, limit=10):
        history = list(self.history)
        return history[-limit:]


class HrDisplay:
    """Text shown on the heart rate screen."""

    def __init__(self, device_id: str, toaster: Optional[Toaster] = None):
        self.device_id_text = device_id
        self.hr_text = HR_PLACEHOLDER
        self.hrv_text = HRV_PLACEHOLDER
        self.state_text = ""
        self.battery_level = None
        self.device_info = {}
        self.last_sample = None
        self.toaster = toaster or Toaster()

    def show_sample(self, sample):
        self.last_sample = sample
        self.hr_text = f"Heart Rate: {sample.hr} bpm"
        # Samples without RR intervals keep the previous HRV
        if sample.rrs_ms:
            self.hrv_text = f"HRV: {mean_rr_ms(sample.rrs_ms)} ms"

    def reset(self):
        self.hr_text = HR_PLACEHOLDER
        self.hrv_text = HRV_PLACEHOLDER
        self.last_sample = None

    def toast(self, message: str, long: bool = False):
        return self.toaster.show(message, long)

    def snapshot(self):
        return {
            "device_id": self.device_id_text,
            "state": self.state_text,
            "heart_rate": self.hr_text,
            "hrv": self.hrv_text,
            "battery_level": self.battery_level,
            "device_info": dict(self.device_info),
            "last_sample": {
                "hr": self.last_sample.hr,
                "rrs_ms": list(self.last_sample.rrs_ms),
                "rr_available": self.last_sample.rr_available,
                # None when the sensor can't report skin contact
                "contact_status": (self.last_sample.contact_status
                                   if self.last_sample.contact_status_supported else None),
            } if self.last_sample else None,
        }
