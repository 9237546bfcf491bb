# Author: Omi Shrestha

import asyncio
import re
from enum import IntEnum
from typing import Optional

from bleak import BleakScanner
from bleak.exc import (
    BleakBluetoothNotAvailableError,
    BleakBluetoothNotAvailableReason,
    BleakError,
)

from ble_device import DiscoveredDevice

# Heart Rate Service
HR_SERVICE_UUID = "0000180d-0000-1000-8000-00805f9b34fb"
HR_MEASUREMENT_UUID = "00002a37-0000-1000-8000-00805f9b34fb"

# Battery Service
BATTERY_LEVEL_UUID = "00002a19-0000-1000-8000-00805f9b34fb"

# Device Information Service characteristics
DIS_CHAR_UUIDS = {
    "00002a29-0000-1000-8000-00805f9b34fb": "manufacturer",
    "00002a24-0000-1000-8000-00805f9b34fb": "model_number",
    "00002a25-0000-1000-8000-00805f9b34fb": "serial_number",
    "00002a27-0000-1000-8000-00805f9b34fb": "hardware_revision",
    "00002a26-0000-1000-8000-00805f9b34fb": "firmware_revision",
    "00002a28-0000-1000-8000-00805f9b34fb": "software_revision",
}

MAC_ADDRESS_RE = re.compile(r"^[0-9A-Fa-f]{2}(:[0-9A-Fa-f]{2}){5}$")
# macOS reports CoreBluetooth UUIDs instead of MAC addresses
CB_UUID_RE = re.compile(r"^[0-9A-Fa-f]{8}-([0-9A-Fa-f]{4}-){3}[0-9A-Fa-f]{12}$")
# Printed on the sensor and appended to its advertised name
POLAR_ID_RE = re.compile(r"^[0-9A-Fa-f]{8}$")


class ScanFailure(IntEnum):
    """Reasons passed to a scan's failure callback"""
    ALREADY_STARTED = 1
    APPLICATION_REGISTRATION_FAILED = 2
    INTERNAL_ERROR = 3
    FEATURE_UNSUPPORTED = 4


# Shown when a scan or the startup check finds Bluetooth unusable
BLUETOOTH_NOTICES = {
    ScanFailure.FEATURE_UNSUPPORTED: "Device doesn't support Bluetooth",
    ScanFailure.APPLICATION_REGISTRATION_FAILED: "Bluetooth is turned off or not allowed. Please enable it.",
}


def scan_failure_for(error: Exception) -> ScanFailure:
    """Map an exception from starting a scan to a ScanFailure code."""
    if isinstance(error, BleakBluetoothNotAvailableError):
        if error.reason in (BleakBluetoothNotAvailableReason.NO_BLUETOOTH,
                            BleakBluetoothNotAvailableReason.NO_BLE_CENTRAL_ROLE):
            return ScanFailure.FEATURE_UNSUPPORTED
        # Powered off or denied, the user can fix it
        return ScanFailure.APPLICATION_REGISTRATION_FAILED
    return ScanFailure.INTERNAL_ERROR


def is_address(device_id: str) -> bool:
    return bool(MAC_ADDRESS_RE.match(device_id) or CB_UUID_RE.match(device_id))


def is_polar_id(device_id: str) -> bool:
    return bool(POLAR_ID_RE.match(device_id))


def is_valid_device_id(device_id) -> bool:
    if not isinstance(device_id, str) or not device_id:
        return False
    return is_address(device_id) or is_polar_id(device_id)


class Scanner:
    """
    Advertisement scanner used by the device search screen.

    start_scan() and stop_scan() return immediately; results and failures
    arrive later through the callbacks given to start_scan().
    """

    def start_scan(self, on_result, on_failed):
        raise NotImplementedError

    def stop_scan(self):
        raise NotImplementedError


class BleakScannerBackend(Scanner):
    """Scanner over bleak. Must be driven from the event loop thread."""

    def __init__(self):
        self._scanner = None
        self._start_task = None
        self._tasks = set()

    @property
    def is_scanning(self):
        return self._scanner is not None

    def _spawn(self, coro):
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def start_scan(self, on_result, on_failed):
        if self._scanner is not None:
            on_failed(ScanFailure.ALREADY_STARTED)
            return

        # No name or service filter here, results are filtered by the caller
        def detection_callback(device, advertisement_data):
            on_result(DiscoveredDevice(
                address=device.address,
                name=device.name or advertisement_data.local_name,
                rssi=advertisement_data.rssi,
            ))

        self._scanner = BleakScanner(detection_callback=detection_callback)
        self._start_task = self._spawn(self._start(self._scanner, on_failed))

    async def _start(self, scanner, on_failed):
        try:
            await scanner.start()
            print("[SCAN] Scanner started")
            return True
        except (BleakError, OSError) as e:
            print(f"[SCAN] Scanner failed to start: {e}")
            if self._scanner is scanner:
                self._scanner = None
            on_failed(scan_failure_for(e))
            return False

    def stop_scan(self):
        scanner, start_task = self._scanner, self._start_task
        self._scanner = None
        self._start_task = None
        if scanner is None:
            return
        self._spawn(self._stop(scanner, start_task))

    async def _stop(self, scanner, start_task):
        if start_task is not None and not await start_task:
            return
        try:
            await scanner.stop()
            print("[SCAN] Scanner stopped")
        except (BleakError, OSError) as e:
            print(f"[SCAN] Scanner stop error: {e}")

    async def wait_idle(self):
        """Wait for pending start/stop operations to finish."""
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)


async def check_bluetooth() -> Optional[ScanFailure]:
    """
    Start and stop a short scan to find out whether Bluetooth is usable.

    Returns None when it is, otherwise the ScanFailure describing why not.
    """
    scanner = BleakScanner()
    try:
        await scanner.start()
    except (BleakError, OSError) as e:
        print(f"[BLE] Bluetooth unavailable: {e}")
        return scan_failure_for(e)

    try:
        await scanner.stop()
    except (BleakError, OSError) as e:
        print(f"[BLE] Scanner stop error: {e}")
    return None
