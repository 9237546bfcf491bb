"""Unit tests for display state and UI thread dispatch."""

import asyncio
import threading

import pytest

from ble_device import HrSample
from display import HR_PLACEHOLDER, HRV_PLACEHOLDER, HrDisplay, Toaster, UiThread


class TestUiThread:

    @pytest.mark.asyncio
    async def test_runs_inline_on_loop_thread(self):
        ui = UiThread()
        calls = []

        ui.run_on_ui_thread(calls.append, 1)

        assert calls == [1]

    @pytest.mark.asyncio
    async def test_other_threads_are_queued_onto_loop(self):
        ui = UiThread()
        loop_thread = threading.get_ident()
        seen = []

        def record():
            seen.append(threading.get_ident())

        await asyncio.to_thread(ui.run_on_ui_thread, record)
        await asyncio.sleep(0)

        assert seen == [loop_thread]

    @pytest.mark.asyncio
    async def test_post_delayed(self):
        ui = UiThread()
        calls = []

        ui.post_delayed(calls.append, 0.01, "done")
        await asyncio.sleep(0.05)

        assert calls == ["done"]


class TestHrDisplay:

    def test_placeholders(self):
        display = HrDisplay("A1B2C3D4")

        assert display.hr_text == HR_PLACEHOLDER
        assert display.hrv_text == HRV_PLACEHOLDER

    def test_reset_after_samples(self):
        display = HrDisplay("A1B2C3D4")
        display.show_sample(HrSample(hr=70, rrs_ms=[850, 870]))

        assert display.hrv_text == "HRV: 860.0 ms"
        display.reset()

        assert display.hr_text == HR_PLACEHOLDER
        assert display.hrv_text == HRV_PLACEHOLDER
        assert display.snapshot()["last_sample"] is None

    def test_snapshot(self):
        display = HrDisplay("A1B2C3D4")
        display.battery_level = 80
        display.show_sample(HrSample(hr=70, rrs_ms=[850], contact_status=True,
                                     contact_status_supported=True, rr_available=True))

        snapshot = display.snapshot()

        assert snapshot["device_id"] == "A1B2C3D4"
        assert snapshot["heart_rate"] == "Heart Rate: 70 bpm"
        assert snapshot["battery_level"] == 80
        assert snapshot["last_sample"] == {
            "hr": 70, "rrs_ms": [850], "rr_available": True, "contact_status": True}

    def test_snapshot_without_contact_support(self):
        display = HrDisplay("A1B2C3D4")
        display.show_sample(HrSample(hr=70, contact_status=False))

        sample = display.snapshot()["last_sample"]

        assert sample["contact_status"] is None
        assert sample["rr_available"] is False


def test_toaster_notifies_and_keeps_history():
    toaster = Toaster(limit=2)
    shown = []
    toaster.listeners.append(lambda t: shown.append(t.message))

    toaster.show("one")
    toaster.show("two", long=True)
    toaster.show("three")

    assert shown == ["one", "two", "three"]
    assert [t.message for t in toaster.recent()] == ["two", "three"]
    assert toaster.recent(1)[0].message == "three"
