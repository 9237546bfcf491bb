"""Pytest configuration and shared fixtures."""

import pytest

from ble_device import DiscoveredDevice
from ble_utils import Scanner
from device_registry import DeviceRegistry
from hr_transport import HrTransport, InvalidArgument, Subscription
from permissions import Permissions


class MockScanner(Scanner):
    """Scanner that records calls and lets tests push advertisements."""

    def __init__(self):
        self.start_calls = 0
        self.stop_calls = 0
        self.on_result = None
        self.on_failed = None

    def start_scan(self, on_result, on_failed):
        self.start_calls += 1
        self.on_result = on_result
        self.on_failed = on_failed

    def stop_scan(self):
        self.stop_calls += 1

    def advertise(self, name, address, rssi=-60):
        self.on_result(DiscoveredDevice(address=address, name=name, rssi=rssi))

    def fail(self, code):
        self.on_failed(code)


class MockSubscription(Subscription):
    def __init__(self):
        super().__init__()
        self.dispose_calls = 0

    def dispose(self):
        self.dispose_calls += 1
        super().dispose()


class MockTransport(HrTransport):
    """Transport double: records requests, tests drive the callbacks."""

    def __init__(self, reject_ids=False):
        self.reject_ids = reject_ids
        self.callback = None
        self.connect_calls = []
        self.subscriptions = []
        self.shutdown_calls = 0
        self._handlers = None

    def set_callback(self, callback):
        self.callback = callback

    def connect_to_device(self, device_id):
        if self.reject_ids:
            raise InvalidArgument(f"Invalid device id: {device_id!r}")
        self.connect_calls.append(device_id)

    def start_hr_streaming(self, device_id, on_next, on_error, on_complete):
        subscription = MockSubscription()
        self.subscriptions.append(subscription)
        self._handlers = (on_next, on_error, on_complete)
        return subscription

    def emit_sample(self, sample):
        self._handlers[0](sample)

    def emit_error(self, error):
        self.subscriptions[-1].terminate()
        self._handlers[1](error)

    def emit_complete(self):
        self.subscriptions[-1].terminate()
        self._handlers[2]()

    def shutdown(self):
        self.shutdown_calls += 1


@pytest.fixture
def scanner():
    return MockScanner()


@pytest.fixture
def transport():
    return MockTransport()


@pytest.fixture
def denied_permissions():
    """Nothing granted and every request refused."""
    return Permissions(granted=())


@pytest.fixture
def registry(tmp_path):
    return DeviceRegistry(str(tmp_path / "prefs" / "preferences.json"))
