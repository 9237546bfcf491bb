# Author: Omi Shrestha

from typing import Optional

from ble_utils import BLUETOOTH_NOTICES, ScanFailure
from device_registry import DeviceRegistry
from display import Toaster
from permissions import BLUETOOTH_CONNECT, BLUETOOTH_SCAN, Permissions, check_and_request

MENU_PERMISSIONS = (BLUETOOTH_SCAN, BLUETOOTH_CONNECT)


class MainMenu:
    """Main screen: remembers the device and launches the other two screens."""

    def __init__(self, registry: DeviceRegistry, permissions: Optional[Permissions] = None,
                 toaster: Optional[Toaster] = None):
        self.registry = registry
        self.permissions = permissions or Permissions()
        self.toaster = toaster or Toaster()
        self.device_id = registry.remembered_device_id
        self._search_allowed = False

    def on_bluetooth_checked(self, failure: Optional[ScanFailure]) -> bool:
        """Result of check_bluetooth() at startup. False when Bluetooth can't be used."""
        if failure is None:
            return True
        print(f"[MENU] Bluetooth unavailable: {failure.name}")
        self.toaster.show(BLUETOOTH_NOTICES.get(failure, "Bluetooth is not available"), long=True)
        return False

    def on_click_connect_hr(self) -> Optional[dict]:
        """
        Returns the launch arguments for the heart rate screen, or None when
        no device is known yet and the user has to enter one.
        """
        if not self.device_id:
            self.device_id = self.registry.remembered_device_id
            if not self.device_id:
                print("[MENU] No device remembered, asking for an id")
                return None
        self.toaster.show(f"Connecting {self.device_id}", long=True)
        return {"id": self.device_id}

    def on_click_search_devices(self) -> bool:
        """True when the search screen may be opened, also after a granted request."""
        self._search_allowed = False
        if check_and_request(self.permissions, MENU_PERMISSIONS,
                             self.on_permissions_result):
            self._search_allowed = True
        return self._search_allowed

    def on_permissions_result(self, results):
        if results and all(results.values()):
            print("[MENU] Needed permissions are granted")
            self.on_click_search_devices()
        else:
            print("[MENU] Needed permissions are missing")
            self.toaster.show("Needed permissions are required to search for Bluetooth devices",
                              long=True)

    def on_device_selected(self, result: Optional[dict]):
        """Result of the search screen: {address, name} or None if cancelled."""
        if not result or not result.get("address"):
            return
        self.device_id = result["address"]
        self.registry.remember_device(self.device_id)
        self.toaster.show(f"Device selected: {self.device_id}", long=True)

    def enter_device_id(self, text: str) -> Optional[str]:
        """Manual entry from the device id dialog."""
        device_id = (text or "").strip().upper()
        if not device_id:
            return None
        self.device_id = device_id
        self.registry.remember_device(device_id)
        return device_id
