# Author: Omi Shrestha

import asyncio

from ble_utils import BleakScannerBackend, ScanFailure, check_bluetooth
from device_registry import DeviceRegistry
from display import HrDisplay, Toaster, UiThread
from hr_session import HrSession
from hr_transport import BleakHrTransport
from main_menu import MainMenu
from permissions import Permissions
from scan_coordinator import ScanCoordinator


def print_toast(toast):
    print(f"\n>> {toast.message}")


async def search_screen(ui, permissions, toaster):
    """Device search screen. Returns {address, name} or None."""
    scanner = BleakScannerBackend()
    coordinator = ScanCoordinator(scanner, ui, permissions, toaster)

    def on_item_inserted(position):
        device = coordinator.device_list.devices[position]
        print(f"  {position + 1}. {device.name or 'Unknown Device'} - MAC: {device.address}")

    coordinator.device_list.on_item_inserted.append(on_item_inserted)

    print("\n=== Device Search ===")
    print("  - Number to select a device")
    print("  - 's' to start/stop scanning")
    print("  - 'q' to go back")
    coordinator.start_scan()

    try:
        while True:
            try:
                choice = await asyncio.to_thread(input, "")
            except (EOFError, KeyboardInterrupt):
                print("\nSearch cancelled.")
                return None

            choice = choice.strip().lower()
            if choice == 'q':
                return None
            elif choice == 's':
                coordinator.toggle_scan()
                print(f"[{coordinator.scan_button_label}]")
                continue

            try:
                idx = int(choice) - 1
            except ValueError:
                print("Please enter a number.")
                continue
            if not 0 <= idx < len(coordinator.device_list):
                print("Invalid selection. Try again.")
                continue

            result = coordinator.select(coordinator.device_list.devices[idx].address)
            if result is not None:
                return result
    finally:
        coordinator.close()
        await scanner.wait_idle()


async def hr_screen(launch_args, ui, permissions, toaster):
    """Heart rate screen for the device in launch_args['id']."""
    display = HrDisplay(launch_args.get("id"), toaster)
    transport = BleakHrTransport()

    async with HrSession(launch_args.get("id"), transport, ui, display, permissions) as session:
        print(f"\n=== Heart Rate: {display.device_id_text} ===")
        print("  - Enter to refresh")
        print("  - 'c' to (re)connect")
        print("  - 'q' to go back")
        session.connect()

        while True:
            try:
                command = await asyncio.to_thread(input, "")
            except (EOFError, KeyboardInterrupt):
                break

            command = command.strip().lower()
            if command == 'q':
                break
            elif command == 'c':
                session.connect()

            print(f"[{session.state.value}] {display.hr_text} | {display.hrv_text}"
                  + (f" | Battery: {display.battery_level}%" if display.battery_level is not None else ""))


async def main():
    """Main application entry point."""
    ui = UiThread()
    toaster = Toaster()
    toaster.listeners.append(print_toast)
    permissions = Permissions()
    menu = MainMenu(DeviceRegistry(), permissions, toaster)

    failure = await check_bluetooth()
    if not menu.on_bluetooth_checked(failure) and failure == ScanFailure.FEATURE_UNSUPPORTED:
        return

    while True:
        print("\n=== Polar H10 ===")
        print(f"Device: {menu.device_id or 'none'}")
        print("  1. Connect HR")
        print("  2. Search devices")
        print("  3. Enter device id")
        print("  q. Quit")

        try:
            choice = await asyncio.to_thread(input, "Select: ")
        except (EOFError, KeyboardInterrupt):
            print("\nExiting...")
            break

        choice = choice.strip().lower()
        if choice == 'q':
            break

        elif choice == '1':
            launch_args = menu.on_click_connect_hr()
            if launch_args is None:
                text = await asyncio.to_thread(input, "Enter your Polar device's ID: ")
                menu.enter_device_id(text)
                continue
            await hr_screen(launch_args, ui, permissions, toaster)

        elif choice == '2':
            if menu.on_click_search_devices():
                menu.on_device_selected(await search_screen(ui, permissions, toaster))

        elif choice == '3':
            text = await asyncio.to_thread(input, f"Enter your Polar device's ID [{menu.device_id or ''}]: ")
            menu.enter_device_id(text)


if __name__ == "__main__":
    asyncio.run(main())
