# Author: Omi Shrestha

"""
Device search screen logic.

Runs a time-bounded advertisement scan, keeps the devices whose name
contains the Polar H10 marker, and hands the chosen one back to the caller.
"""

from typing import Callable, List, Optional

from ble_device import DiscoveredDevice
from ble_utils import BLUETOOTH_NOTICES, Scanner
from config import DEVICE_NAME_MARKER, SCAN_PERIOD
from display import Toaster, UiThread
from permissions import BLUETOOTH_CONNECT, BLUETOOTH_SCAN, Permissions, check_and_request

SCAN_PERMISSIONS = (BLUETOOTH_SCAN, BLUETOOTH_CONNECT)

START_SCAN_LABEL = "Start Scan"
STOP_SCAN_LABEL = "Stop Scan"


class DeviceList:
    """Discovered devices in order of first sighting, unique by address."""

    def __init__(self):
        self.devices: List[DiscoveredDevice] = []
        self._addresses = set()
        self.on_item_inserted: List[Callable[[int], None]] = []
        self.on_cleared: List[Callable[[], None]] = []

    def __len__(self):
        return len(self.devices)

    def __iter__(self):
        return iter(self.devices)

    def add_device(self, device: DiscoveredDevice) -> bool:
        if device.address in self._addresses:
            return False
        self._addresses.add(device.address)
        self.devices.append(device)
        position = len(self.devices) - 1
        for listener in self.on_item_inserted:
            listener(position)
        return True

    def clear_devices(self):
        self.devices.clear()
        self._addresses.clear()
        for listener in self.on_cleared:
            listener()

    def find(self, address: str) -> Optional[DiscoveredDevice]:
        for device in self.devices:
            if device.address == address:
                return device
        return None


class ScanCoordinator:
    def __init__(self, scanner: Scanner, ui: UiThread, permissions: Optional[Permissions] = None,
                 toaster: Optional[Toaster] = None, name_marker: str = DEVICE_NAME_MARKER,
                 scan_period: float = SCAN_PERIOD):
        self.scanner = scanner
        self.ui = ui
        self.permissions = permissions or Permissions()
        self.toaster = toaster or Toaster()
        self.name_marker = name_marker
        self.scan_period = scan_period
        self.device_list = DeviceList()
        self.is_scanning = False
        self.scan_button_label = START_SCAN_LABEL
        self._stop_timer = None

    def _check_and_request_permissions(self) -> bool:
        return check_and_request(self.permissions, SCAN_PERMISSIONS,
                                 self.on_permissions_result)

    def toggle_scan(self):
        """Scan button: start when idle, stop while scanning."""
        if not self.is_scanning:
            self.start_scan()
        else:
            self.stop_scan()

    def start_scan(self) -> bool:
        if not self._check_and_request_permissions():
            return False

        self.device_list.clear_devices()
        if self.is_scanning:
            # The platform scan keeps running, only the results and the period restart
            print(f"[SCAN] Restarting scan for '{self.name_marker}' devices ({self.scan_period:g}s)...")
        else:
            self.is_scanning = True
            self.scan_button_label = STOP_SCAN_LABEL
            print(f"[SCAN] Scanning for '{self.name_marker}' devices ({self.scan_period:g}s)...")
            self.scanner.start_scan(self._on_result_callback, self._on_failed_callback)

        if self._stop_timer is not None:
            self._stop_timer.cancel()
        self._stop_timer = self.ui.post_delayed(self._on_scan_period_elapsed, self.scan_period)
        return True

    def _on_scan_period_elapsed(self):
        self._stop_timer = None
        print("[SCAN] Scan period elapsed")
        self.stop_scan()

    def stop_scan(self):
        if not self._check_and_request_permissions():
            return

        if self._stop_timer is not None:
            self._stop_timer.cancel()
            self._stop_timer = None

        was_scanning = self.is_scanning
        self.is_scanning = False
        self.scan_button_label = START_SCAN_LABEL
        if was_scanning:
            self.scanner.stop_scan()
            print(f"[SCAN] Stopped, {len(self.device_list)} device(s) found")

    # Scanner callbacks may come from any thread
    def _on_result_callback(self, device: DiscoveredDevice):
        self.ui.run_on_ui_thread(self.on_scan_result, device)

    def _on_failed_callback(self, error_code):
        self.ui.run_on_ui_thread(self.on_scan_failed, error_code)

    def on_scan_result(self, device: DiscoveredDevice):
        if not self.is_scanning:
            return
        name = device.name
        if not name or self.name_marker.lower() not in name.lower():
            return
        if self.device_list.add_device(device):
            print(f"[SCAN] Found {name} - MAC: {device.address}")

    def on_scan_failed(self, error_code):
        print(f"[SCAN] Scan failed with error code: {int(error_code)}")
        self.toaster.show(BLUETOOTH_NOTICES.get(error_code, "Scan failed. Please try again."))
        self.stop_scan()

    def on_permissions_result(self, results):
        if results and all(results.values()):
            # The user re-invokes the action that asked for them
            print("[SCAN] Scan permissions granted")
        else:
            self.toaster.show("Bluetooth scan permission is required for device search", long=True)

    def select(self, address: str):
        """
        Pick a discovered device. Stops the scan and returns the
        {address, name} result for the caller, or None.
        """
        device = self.device_list.find(address)
        if device is None:
            print(f"[SCAN] No discovered device with address {address}")
            return None
        if not self._check_and_request_permissions():
            return None
        self.stop_scan()
        return {"address": device.address, "name": device.name}

    def close(self):
        self.stop_scan()
