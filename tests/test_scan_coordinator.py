"""Unit tests for the device search screen logic."""

import asyncio

import pytest

from ble_utils import ScanFailure
from display import Toaster, UiThread
from permissions import Permissions
from scan_coordinator import START_SCAN_LABEL, STOP_SCAN_LABEL, ScanCoordinator


def make_coordinator(scanner, permissions=None, scan_period=10.0):
    toaster = Toaster()
    coordinator = ScanCoordinator(scanner, UiThread(), permissions or Permissions(),
                                  toaster, scan_period=scan_period)
    return coordinator, toaster


class TestScanResults:

    @pytest.mark.asyncio
    async def test_duplicates_kept_once_in_first_sighting_order(self, scanner):
        coordinator, _ = make_coordinator(scanner)
        coordinator.start_scan()

        scanner.advertise("Polar H10 A1B2C3D4", "AA:AA:AA:AA:AA:01")
        scanner.advertise("Polar H10 B1B2C3D4", "AA:AA:AA:AA:AA:02")
        scanner.advertise("Polar H10 A1B2C3D4", "AA:AA:AA:AA:AA:01")
        scanner.advertise("Polar H10 C1B2C3D4", "AA:AA:AA:AA:AA:03")
        scanner.advertise("Polar H10 B1B2C3D4", "AA:AA:AA:AA:AA:02")

        addresses = [d.address for d in coordinator.device_list]
        assert addresses == ["AA:AA:AA:AA:AA:01", "AA:AA:AA:AA:AA:02", "AA:AA:AA:AA:AA:03"]

    @pytest.mark.asyncio
    async def test_name_filter_is_case_insensitive_substring(self, scanner):
        coordinator, _ = make_coordinator(scanner)
        coordinator.start_scan()

        scanner.advertise("POLAR H10 1234ABCD", "AA:AA:AA:AA:AA:01")
        scanner.advertise("my polar h10", "AA:AA:AA:AA:AA:02")
        scanner.advertise("Polar OH1", "AA:AA:AA:AA:AA:03")
        scanner.advertise(None, "AA:AA:AA:AA:AA:04")
        scanner.advertise("", "AA:AA:AA:AA:AA:05")

        addresses = [d.address for d in coordinator.device_list]
        assert addresses == ["AA:AA:AA:AA:AA:01", "AA:AA:AA:AA:AA:02"]

    @pytest.mark.asyncio
    async def test_insertion_notified_once_at_end(self, scanner):
        coordinator, _ = make_coordinator(scanner)
        inserted = []
        coordinator.device_list.on_item_inserted.append(inserted.append)
        coordinator.start_scan()

        scanner.advertise("Polar H10 A", "AA:AA:AA:AA:AA:01")
        scanner.advertise("Polar H10 A", "AA:AA:AA:AA:AA:01")
        scanner.advertise("Polar H10 B", "AA:AA:AA:AA:AA:02")

        assert inserted == [0, 1]

    @pytest.mark.asyncio
    async def test_start_clears_previous_results(self, scanner):
        coordinator, _ = make_coordinator(scanner)
        cleared = []
        coordinator.device_list.on_cleared.append(lambda: cleared.append(True))
        coordinator.start_scan()
        scanner.advertise("Polar H10 A", "AA:AA:AA:AA:AA:01")
        coordinator.stop_scan()

        coordinator.start_scan()

        assert len(coordinator.device_list) == 0
        assert len(cleared) == 2

        # Same address counts as new in a fresh session
        scanner.advertise("Polar H10 A", "AA:AA:AA:AA:AA:01")
        assert len(coordinator.device_list) == 1

    @pytest.mark.asyncio
    async def test_results_after_stop_are_ignored(self, scanner):
        coordinator, _ = make_coordinator(scanner)
        coordinator.start_scan()
        coordinator.stop_scan()

        scanner.advertise("Polar H10 A", "AA:AA:AA:AA:AA:01")

        assert len(coordinator.device_list) == 0

    @pytest.mark.asyncio
    async def test_results_from_another_thread_are_marshaled(self, scanner):
        coordinator, _ = make_coordinator(scanner)
        coordinator.start_scan()

        await asyncio.to_thread(scanner.advertise, "Polar H10 A", "AA:AA:AA:AA:AA:01")
        await asyncio.sleep(0)

        assert len(coordinator.device_list) == 1


class TestScanLifecycle:

    @pytest.mark.asyncio
    async def test_start_and_stop_toggle_button(self, scanner):
        coordinator, _ = make_coordinator(scanner)

        coordinator.toggle_scan()
        assert coordinator.is_scanning
        assert coordinator.scan_button_label == STOP_SCAN_LABEL
        assert scanner.start_calls == 1

        coordinator.toggle_scan()
        assert not coordinator.is_scanning
        assert coordinator.scan_button_label == START_SCAN_LABEL
        assert scanner.stop_calls == 1

    @pytest.mark.asyncio
    async def test_stop_when_idle_is_noop(self, scanner):
        coordinator, _ = make_coordinator(scanner)

        coordinator.stop_scan()
        coordinator.stop_scan()

        assert scanner.stop_calls == 0
        assert coordinator.scan_button_label == START_SCAN_LABEL

    @pytest.mark.asyncio
    async def test_auto_stop_after_scan_period(self, scanner):
        coordinator, _ = make_coordinator(scanner, scan_period=0.05)
        coordinator.start_scan()

        await asyncio.sleep(0.15)

        assert not coordinator.is_scanning
        assert scanner.stop_calls == 1

    @pytest.mark.asyncio
    async def test_manual_stop_cancels_timer(self, scanner):
        coordinator, _ = make_coordinator(scanner, scan_period=0.2)
        coordinator.start_scan()
        await asyncio.sleep(0.12)
        coordinator.stop_scan()
        coordinator.start_scan()

        # Past the first scan's deadline, inside the second one
        await asyncio.sleep(0.12)
        assert coordinator.is_scanning

    @pytest.mark.asyncio
    async def test_scan_failure_notifies_and_stops(self, scanner):
        coordinator, toaster = make_coordinator(scanner)
        coordinator.start_scan()

        scanner.fail(ScanFailure.INTERNAL_ERROR)

        assert not coordinator.is_scanning
        assert scanner.stop_calls == 1
        assert toaster.recent(1)[0].message == "Scan failed. Please try again."

    @pytest.mark.asyncio
    async def test_start_while_scanning_restarts_period_and_results(self, scanner):
        coordinator, toaster = make_coordinator(scanner, scan_period=0.2)
        coordinator.start_scan()
        scanner.advertise("Polar H10 A", "AA:AA:AA:AA:AA:01")
        await asyncio.sleep(0.12)

        assert coordinator.start_scan() is True

        assert scanner.start_calls == 1
        assert len(coordinator.device_list) == 0
        # Past the first start's deadline, inside the restarted one
        await asyncio.sleep(0.12)
        assert coordinator.is_scanning
        assert toaster.recent() == []

    @pytest.mark.asyncio
    async def test_unsupported_adapter_has_own_notice(self, scanner):
        coordinator, toaster = make_coordinator(scanner)
        coordinator.start_scan()

        scanner.fail(ScanFailure.FEATURE_UNSUPPORTED)

        assert not coordinator.is_scanning
        assert toaster.recent(1)[0].message == "Device doesn't support Bluetooth"

    @pytest.mark.asyncio
    async def test_close_stops_scan(self, scanner):
        coordinator, _ = make_coordinator(scanner)
        coordinator.start_scan()

        coordinator.close()

        assert not coordinator.is_scanning
        assert scanner.stop_calls == 1


class TestSelection:

    @pytest.mark.asyncio
    async def test_select_stops_scan_and_returns_device(self, scanner):
        coordinator, _ = make_coordinator(scanner)
        coordinator.start_scan()
        scanner.advertise("Polar H10 A1B2C3D4", "AA:BB:CC:DD:EE:FF")

        result = coordinator.select("AA:BB:CC:DD:EE:FF")

        assert result == {"address": "AA:BB:CC:DD:EE:FF", "name": "Polar H10 A1B2C3D4"}
        assert not coordinator.is_scanning

    @pytest.mark.asyncio
    async def test_select_unknown_address(self, scanner):
        coordinator, _ = make_coordinator(scanner)
        coordinator.start_scan()

        assert coordinator.select("00:00:00:00:00:00") is None
        assert coordinator.is_scanning


class TestPermissions:

    @pytest.mark.asyncio
    async def test_denied_permission_defers_scan(self, scanner, denied_permissions):
        coordinator, toaster = make_coordinator(scanner, denied_permissions)

        assert coordinator.start_scan() is False

        assert scanner.start_calls == 0
        assert not coordinator.is_scanning
        assert toaster.recent(1)[0].message == \
            "Bluetooth scan permission is required for device search"

    @pytest.mark.asyncio
    async def test_grant_does_not_retry_automatically(self, scanner):
        permissions = Permissions(granted=(), requester=lambda missing: True)
        coordinator, _ = make_coordinator(scanner, permissions)

        assert coordinator.start_scan() is False
        assert scanner.start_calls == 0

        # User presses the button again
        assert coordinator.start_scan() is True
        assert scanner.start_calls == 1
